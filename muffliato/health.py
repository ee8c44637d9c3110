"""
Consistency of the store and the checks run by 'muffliato doctor'.

A device's status is never stored. It is derived from which of its two
artifacts exist:

    public key   wrapped key   status
    yes          yes           active
    yes          no            pending   (waiting for someone to register it)
    no           yes           orphan    (left behind, safe to clean)
    no           no            absent
"""

import enum
import logging
import os
import pathlib
import stat
import typing

import attr

from .config import ProjectRegistry, UserConfig
from .context import Context
from .errors import ConfigInvalid, NotInitialized, PermissionDenied
from .incantations import resolve_files
from .secrets import Secret
from .store import Store, WriteBatch
from .utils import find_repository, relative

log = logging.getLogger(__name__)


class DeviceStatus(enum.Enum):
    ACTIVE = 'active'
    PENDING = 'pending'
    ORPHAN = 'orphan'
    ABSENT = 'absent'

    def __str__(self):
        return self.value


def status_of(has_public_key: bool, has_wrapped_key: bool) -> DeviceStatus:
    if has_public_key and has_wrapped_key:
        return DeviceStatus.ACTIVE
    if has_public_key:
        return DeviceStatus.PENDING
    if has_wrapped_key:
        return DeviceStatus.ORPHAN
    return DeviceStatus.ABSENT


def status(store: Store, device_id: str) -> DeviceStatus:
    return status_of(store.has_public_key(device_id), store.has_wrapped_key(device_id))


def active_devices(store: Store) -> typing.List[str]:
    return sorted(set(store.public_key_ids()) & set(store.wrapped_key_ids()))


def pending_devices(store: Store) -> typing.List[str]:
    return sorted(set(store.public_key_ids()) - set(store.wrapped_key_ids()))


def find_orphans(store: Store) -> typing.List[str]:
    return sorted(set(store.wrapped_key_ids()) - set(store.public_key_ids()))


@attr.s(frozen=True, kw_only=True)
class DeviceAccess:
    device_id: str = attr.ib()
    email: str = attr.ib(default='')
    name: str = attr.ib(default='')
    status: DeviceStatus = attr.ib()


def access(store: Store) -> typing.List[DeviceAccess]:
    """Every device known to the registry or present in the store."""
    registry = store.load_registry()
    result = []
    for device_id in sorted(set(registry.devices) | set(store.device_ids())):
        device = registry.devices.get(device_id)
        result.append(DeviceAccess(
            device_id=device_id,
            email=device.email if device else '',
            name=device.name if device else '',
            status=status(store, device_id)))
    return sorted(result, key=lambda d: (d.email, d.name, d.device_id))


@attr.s(frozen=True, kw_only=True)
class CleanResult:
    removed: typing.List[str] = attr.ib(factory=list)
    dry_run: bool = attr.ib(default=False)


def clean(ctx: Context) -> CleanResult:
    """Delete orphaned wrapped keys. Pending devices are never touched."""
    ctx.store.require()
    orphans = find_orphans(ctx.store)
    if not orphans:
        log.info("No orphaned wrapped keys")
        return CleanResult(dry_run=ctx.dry_run)
    if ctx.dry_run:
        return CleanResult(removed=orphans, dry_run=True)

    ctx.options.permit(
        f"Delete {len(orphans)} orphaned wrapped key(s): {', '.join(orphans)}?",
        PermissionDenied("delete orphaned wrapped keys"))

    batch = WriteBatch()
    for device_id in orphans:
        batch.delete(ctx.store.wrapped_key_path(device_id))
    batch.apply()
    ctx.audit.record('clean', devices=orphans)
    return CleanResult(removed=orphans)


class FileState(enum.Enum):
    CURRENT = 'current'
    STALE = 'stale'
    UNENCRYPTED = 'unencrypted'
    ENCRYPTED_ONLY = 'encrypted_only'

    def __str__(self):
        return self.value


@attr.s(frozen=True, kw_only=True)
class FileStatus:
    secret: Secret = attr.ib()
    state: FileState = attr.ib()


def file_state(secret: Secret) -> FileState:
    if not secret.ciphertext.exists():
        return FileState.UNENCRYPTED
    if not secret.plaintext.exists():
        return FileState.ENCRYPTED_ONLY
    if secret.plaintext.stat().st_mtime > secret.ciphertext.stat().st_mtime:
        return FileState.STALE
    return FileState.CURRENT


def file_status(store: Store) -> typing.List[FileStatus]:
    return [FileStatus(secret=s, state=file_state(s)) for s in store.secret_files()]


class Severity(enum.IntEnum):
    PASS = 0
    WARNING = 1
    ERROR = 2

    def __str__(self):
        return self.name.lower()


@attr.s(frozen=True, kw_only=True)
class Check:
    name: str = attr.ib()
    severity: Severity = attr.ib()
    message: str = attr.ib()
    suggestion: str = attr.ib(default='')


@attr.s(frozen=True, kw_only=True)
class DoctorReport:
    checks: typing.List[Check] = attr.ib(factory=list)

    @property
    def severity(self) -> Severity:
        return max((c.severity for c in self.checks), default=Severity.PASS)

    @property
    def exit_code(self) -> int:
        return int(self.severity)

    def __getitem__(self, name: str) -> Check:
        for check in self.checks:
            if check.name == name:
                return check
        raise KeyError(name)


def doctor(ctx: Context) -> DoctorReport:
    """Run every check in order and collect their results."""
    checks: typing.List[Check] = []
    registry = _check_registry(ctx.store, checks)
    _check_user_config(ctx, checks)
    _check_private_key(ctx, registry, checks)
    if registry is not None:
        _check_pending(ctx.store, registry, checks)
        _check_orphans(ctx.store, checks)
        _check_ignored(ctx.store, checks)
        _check_unencrypted(ctx.store, checks)
    report = DoctorReport(checks=checks)
    log.info(f"Doctor finished with severity {report.severity}")
    return report


def _check_registry(store: Store, checks: typing.List[Check]) -> typing.Optional[ProjectRegistry]:
    try:
        registry = store.load_registry()
    except NotInitialized as error:
        checks.append(Check(
            name='registry', severity=Severity.ERROR, message=error.message,
            suggestion="Run 'muffliato init' in the project root"))
        return None
    except ConfigInvalid as error:
        checks.append(Check(
            name='registry', severity=Severity.ERROR, message=error.message,
            suggestion=f"Fix the syntax of {store.registry_path}"))
        return None
    checks.append(Check(
        name='registry', severity=Severity.PASS,
        message=f"Project {registry.name} ({registry.project_id})"))
    return registry


def _check_user_config(ctx: Context, checks: typing.List[Check]) -> None:
    path = ctx.settings.user_config_path
    if not path.exists():
        checks.append(Check(
            name='user config', severity=Severity.WARNING,
            message=f"No user config at {path}",
            suggestion="Run 'muffliato create' to set up this machine"))
        return
    try:
        user = UserConfig.load(path)
    except ConfigInvalid as error:
        checks.append(Check(
            name='user config', severity=Severity.ERROR, message=error.message,
            suggestion=f"Fix the syntax of {path}"))
        return
    checks.append(Check(
        name='user config', severity=Severity.PASS,
        message=f"User {user.email or '<no email>'} ({user.user_id})"))


def _check_private_key(
        ctx: Context,
        registry: typing.Optional[ProjectRegistry],
        checks: typing.List[Check]) -> None:
    if registry is None:
        checks.append(Check(
            name='private key', severity=Severity.ERROR,
            message="Cannot locate the private key without a project registry"))
        return

    path = ctx.keys.private_key_path(registry.project_id)
    if not path.is_file():
        checks.append(Check(
            name='private key', severity=Severity.ERROR,
            message=f"No private key for this project at {path}",
            suggestion="Run 'muffliato create' to generate one"))
        return
    checks.append(Check(name='private key', severity=Severity.PASS, message=f"Found {path}"))

    mode = stat.S_IMODE(os.stat(path).st_mode)
    if mode != 0o600:
        checks.append(Check(
            name='private key permissions', severity=Severity.WARNING,
            message=f"{path} has mode {mode:04o}, expected 0600",
            suggestion=f"Run 'chmod 600 {path}'"))
    else:
        checks.append(Check(
            name='private key permissions', severity=Severity.PASS,
            message="Private key is only readable by its owner"))


def _describe(registry: ProjectRegistry, device_ids: typing.Iterable[str]) -> str:
    return ', '.join(
        str(registry.devices[d]) if d in registry.devices else d
        for d in device_ids)


def _check_pending(store: Store, registry: ProjectRegistry, checks: typing.List[Check]) -> None:
    pending = pending_devices(store)
    if pending:
        checks.append(Check(
            name='pending devices', severity=Severity.WARNING,
            message=f"{len(pending)} device(s) waiting for access: {_describe(registry, pending)}",
            suggestion="Someone with access should run 'muffliato register'"))
    else:
        checks.append(Check(
            name='pending devices', severity=Severity.PASS,
            message="Every public key has a wrapped key"))


def _check_orphans(store: Store, checks: typing.List[Check]) -> None:
    orphans = find_orphans(store)
    if orphans:
        checks.append(Check(
            name='orphaned keys', severity=Severity.ERROR,
            message=f"{len(orphans)} wrapped key(s) without a public key: {', '.join(orphans)}",
            suggestion="Run 'muffliato clean' to remove them"))
    else:
        checks.append(Check(
            name='orphaned keys', severity=Severity.PASS,
            message="Every wrapped key has a public key"))


def _check_ignored(store: Store, checks: typing.List[Check]) -> None:
    repo = find_repository(store.root)
    if repo is None:
        checks.append(Check(
            name='gitignore', severity=Severity.WARNING,
            message=f"{store.root} is not in a git repository",
            suggestion="Plaintext secrets can only be checked against .gitignore in a repository"))
        return

    working_dir = pathlib.Path(repo.working_dir).resolve()
    plaintexts = [relative(p.resolve(), working_dir) for p in resolve_files((), store.root, want_ciphertext=False)]
    ignored = set(repo.ignored(*plaintexts)) if plaintexts else set()
    exposed = sorted(set(plaintexts) - ignored)
    if exposed:
        checks.append(Check(
            name='gitignore', severity=Severity.ERROR,
            message=f"Plaintext secret(s) not ignored by git: {', '.join(exposed)}",
            suggestion="Add '*.env' and '.env*' patterns to .gitignore, keeping '!*.muffliato'"))
    else:
        checks.append(Check(
            name='gitignore', severity=Severity.PASS,
            message=f"All {len(plaintexts)} plaintext secret(s) are ignored by git"))


def _check_unencrypted(store: Store, checks: typing.List[Check]) -> None:
    unencrypted = [s for s in store.secret_files() if file_state(s) is FileState.UNENCRYPTED]
    if unencrypted:
        checks.append(Check(
            name='unencrypted files', severity=Severity.WARNING,
            message=f"Plaintext without ciphertext: "
                    f"{', '.join(relative(s.plaintext, store.root) for s in unencrypted)}",
            suggestion="Run 'muffliato encrypt' to seal them"))
    else:
        checks.append(Check(
            name='unencrypted files', severity=Severity.PASS,
            message="Every plaintext secret has a ciphertext"))
