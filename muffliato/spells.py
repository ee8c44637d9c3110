"""
The key lifecycle: creating, registering, rotating, re-keying and revoking
device keys.

Every spell takes the invocation's Context first. Spells work everything out
in memory and only touch the disk at the very end, through a WriteBatch, so a
failure while preparing leaves the store exactly as it was.
"""

import logging
import pathlib
import shutil
import typing

import attr

from . import crypto
from .config import Device, ProjectEntry, ProjectRegistry, is_valid_email, new_id, sanitize_device_name, utcnow
from .context import Context
from .errors import (
    AlreadyExists,
    AuthenticationFailed,
    ConflictingOptions,
    DecryptionFailed,
    DeviceAlreadyExists,
    FileNotFound,
    InvalidEmail,
    InvalidKey,
    LastDeviceRevocation,
    PartialFailure,
    PermissionDenied,
    UserOrDeviceNotFound,
    WrongFileType,
)
from .health import DeviceStatus, active_devices, status
from .keeper import CIPHERTEXT_MODE
from .store import PUBLIC_KEY_SUFFIX, WriteBatch

log = logging.getLogger(__name__)

PUBLIC_KEY_MODE = 0o644
WRAPPED_KEY_MODE = 0o600
REGISTRY_MODE = 0o644

RESIDUAL_RISK = (
    "Revocation only protects secrets written from now on. Anyone who copied "
    "the ciphertext and their wrapped key before being revoked can still read "
    "that copy. If you suspect that happened, change the secret values "
    "themselves, not just the keys.")


def _email(ctx: Context, email: typing.Optional[str]) -> str:
    email = email or ctx.user.email
    if not is_valid_email(email):
        raise InvalidEmail(email)
    return email


def _read_artifact(path: pathlib.Path) -> bytes:
    try:
        return path.read_bytes()
    except FileNotFoundError:
        raise FileNotFound(path) from None
    except OSError as error:
        raise PermissionDenied(f"read {path} ({error.strerror})") from None


def _remember(ctx: Context, registry: ProjectRegistry, device: Device) -> None:
    """Record this machine's device for the project in the user config."""
    entry = ProjectEntry(device_id=device.device_id, device_name=device.name, project_name=registry.name)
    ctx.save_user(attr.evolve(ctx.user.with_project(registry.project_id, entry), email=device.email))


def init_project(
        ctx: Context,
        name: typing.Optional[str] = None,
        email: typing.Optional[str] = None,
        device_name: typing.Optional[str] = None) -> ProjectRegistry:
    """
    Create the store, a key for this device and the first project key.

    The device that runs init is active as soon as it finishes. If any step
    fails the half-built store directory is removed again.
    """
    if ctx.store.exists():
        raise AlreadyExists(
            f"{ctx.store.directory} already exists - this project is already set up",
            path=ctx.store.directory)
    email = _email(ctx, email)
    registry = ProjectRegistry.new(name or ctx.store.root.name)
    if ctx.dry_run:
        log.info(f"Dry run: would create project {registry.name} in {ctx.store.directory}")
        return registry

    created = not ctx.store.directory.exists()
    try:
        ctx.store.ensure()
        ctx.store.save_registry(registry)
        keypair = create(ctx, device_name=device_name, email=email)
        bootstrap(ctx, keypair.private)
    except Exception:
        if created:
            log.warning(f"Removing incomplete store {ctx.store.directory}")
            shutil.rmtree(ctx.store.directory, ignore_errors=True)
        raise

    ctx.audit.record('init', project=registry.name, project_id=registry.project_id)
    return registry


def create(
        ctx: Context,
        device_name: typing.Optional[str] = None,
        email: typing.Optional[str] = None) -> crypto.KeyPair:
    """
    Generate a keypair for this machine and publish its public half.

    The device is pending afterwards: someone with access has to register it.
    Replacing an existing key needs the guard's permission, and also drops
    the device's wrapped key because the new private key cannot open it.
    """
    registry = ctx.registry()
    email = _email(ctx, email)
    store, keys = ctx.store, ctx.keys

    device_id = ctx.device_id(registry)
    existing = registry.devices.get(device_id) if device_id else None
    if keys.exists(registry.project_id) or (device_id and store.has_public_key(device_id)):
        label = existing.name if existing else (device_id or 'this machine')
        ctx.options.permit(
            f"A key for {label} already exists in this project. Replace it?",
            DeviceAlreadyExists(device_id or '', label))
    device_id = device_id or new_id()

    if device_name:
        name = sanitize_device_name(device_name)
        other = registry.device_named(email, name)
        if other and other.device_id != device_id:
            raise AlreadyExists(
                f"{email} already has a device named {name} - choose another name",
                email=email,
                name=name)
    elif existing:
        name = existing.name
    else:
        name = registry.unique_device_name(email)

    device = Device(device_id=device_id, user_id=ctx.user.user_id, email=email, name=name, created_at=utcnow())
    keypair = crypto.generate_keypair()
    log.info(f"Generated a keypair for device {name} ({device_id})")
    if ctx.dry_run:
        return keypair

    staged = keys.stage(registry.project_id, keypair.private_pem())
    batch = WriteBatch()
    batch.write(store.public_key_path(device_id), keypair.public_pem(), PUBLIC_KEY_MODE)
    batch.write(store.registry_path, registry.with_device(device).dumps(), REGISTRY_MODE)
    if store.has_wrapped_key(device_id):
        log.warning(f"Removing the wrapped key of {name}, the new key cannot open it")
        batch.delete(store.wrapped_key_path(device_id))
    try:
        batch.apply()
    except PartialFailure as error:
        if store.public_key_path(device_id) in error.context['succeeded']:
            keys.commit(registry.project_id, staged, keypair.public_pem())
        else:
            keys.discard(staged)
        raise
    keys.commit(registry.project_id, staged, keypair.public_pem())

    _remember(ctx, registry, device)
    ctx.audit.record('create', device=name, device_id=device_id)
    return keypair


def bootstrap(ctx: Context, private_key: crypto.PrivateKey) -> str:
    """
    Give the first device of a project the first project key.

    Only possible while the store holds no wrapped keys at all, otherwise
    access has to be granted by someone who already has it.
    """
    ctx.registry()
    if ctx.store.wrapped_key_ids():
        raise AlreadyExists(
            "This project already has wrapped keys - ask someone with access "
            "to run 'muffliato register' for this device")
    device_id = ctx.invoker(private_key)

    symmetric_key = crypto.generate_symmetric_key()
    wrapped = crypto.wrap(symmetric_key, private_key.public_key())
    unreadable = ctx.store.ciphertexts()
    if unreadable:
        log.warning(f"{len(unreadable)} existing ciphertext file(s) cannot be opened with the new project key")
    if ctx.dry_run:
        return device_id

    ctx.store.write_wrapped_key(device_id, wrapped)
    log.info(f"Device {device_id} holds the first project key")
    ctx.audit.record('bootstrap', device_id=device_id)
    return device_id


def register(
        ctx: Context,
        private_key: crypto.PrivateKey,
        device_id: str,
        public_key: typing.Optional[crypto.PublicKey] = None,
        email: typing.Optional[str] = None,
        name: typing.Optional[str] = None) -> Device:
    """
    Grant a device access by wrapping the project key for it.

    The granter proves its own access by unwrapping the current project key.
    The grantee's public key is read from the store, or given directly when
    keys are exchanged out of band.
    """
    store = ctx.store
    registry = ctx.registry()
    granter, symmetric_key = ctx.unlock(private_key)

    confirmed = False
    replace_public = public_key is not None
    if public_key is None:
        if not store.has_public_key(device_id):
            raise UserOrDeviceNotFound(device_id)
        public_key = crypto.load_public_key(store.read_public_key(device_id))
    elif store.has_public_key(device_id):
        if _same_key(store.read_public_key(device_id), public_key):
            replace_public = False
        else:
            ctx.options.permit(
                f"Device {device_id} already has a different public key. Replace it?",
                AlreadyExists(
                    f"Device {device_id} already has a different public key - use --force to replace it",
                    device_id=device_id))
            confirmed = True

    device = registry.devices.get(device_id)
    if device is None:
        if not email:
            raise UserOrDeviceNotFound(device_id)
        if not is_valid_email(email):
            raise InvalidEmail(email)
        device = Device(device_id=device_id, email=email, name=registry.unique_device_name(email, name))

    if not confirmed and status(store, device_id) is DeviceStatus.ACTIVE:
        ctx.options.permit(
            f"{device} already has access. Overwrite its wrapped key?",
            AlreadyExists(
                f"{device} already has access - use --force to overwrite its wrapped key",
                device_id=device_id))

    wrapped = crypto.wrap(symmetric_key, public_key)
    batch = WriteBatch()
    if replace_public:
        batch.write(store.public_key_path(device_id), crypto.public_pem(public_key), PUBLIC_KEY_MODE)
    batch.write(store.wrapped_key_path(device_id), wrapped, WRAPPED_KEY_MODE)
    if registry.devices.get(device_id) != device:
        batch.write(store.registry_path, registry.with_device(device).dumps(), REGISTRY_MODE)

    log.info(f"Registering {device} ({device_id}) with the key of {granter}")
    if ctx.dry_run:
        return device

    batch.apply()
    ctx.audit.record('register', target_user=device.email, target_uuid=device_id, device=device.name)
    return device


def _same_key(data: bytes, public_key: crypto.PublicKey) -> bool:
    try:
        current = crypto.load_public_key(data)
    except InvalidKey:
        return False
    return crypto.fingerprint(current) == crypto.fingerprint(public_key)


def register_key_file(
        ctx: Context,
        private_key: crypto.PrivateKey,
        path: pathlib.Path,
        email: typing.Optional[str] = None,
        name: typing.Optional[str] = None) -> Device:
    """
    Register a device from a public key file received out of band.

    A file named after a device id ('<device id>.pub') registers that device.
    Any other name is a new device: it gets a fresh id and needs an email,
    and its public key, wrapped key and registry entry are written together.
    """
    if not path.exists():
        raise FileNotFound(path)
    if not path.is_file() or not path.name.endswith(PUBLIC_KEY_SUFFIX):
        raise WrongFileType(path, f"public key ({PUBLIC_KEY_SUFFIX})")
    public_key = crypto.load_public_key(_read_artifact(path))

    registry = ctx.registry()
    stem = path.name[:-len(PUBLIC_KEY_SUFFIX)]
    if stem in registry.devices or ctx.store.has_public_key(stem):
        device_id = stem
    else:
        if not email:
            raise UserOrDeviceNotFound(stem)
        device_id = new_id()
        log.info(f"{path.name} is not named after a known device, registering it as {device_id}")
    return register(ctx, private_key, device_id, public_key=public_key, email=email, name=name)


def register_user(
        ctx: Context,
        private_key: crypto.PrivateKey,
        email: str,
        device_name: typing.Optional[str] = None) -> typing.List[Device]:
    """
    Register a user's devices by email.

    Pending devices are registered. When none are pending, every device of
    the user is registered again, which asks for permission.
    """
    registry = ctx.registry()
    candidates = [
        d for d in find_devices(registry, email, device_name)
        if ctx.store.has_public_key(d.device_id)
    ]
    if not candidates:
        raise UserOrDeviceNotFound(email)
    pending = [d for d in candidates if status(ctx.store, d.device_id) is DeviceStatus.PENDING]
    return [register(ctx, private_key, d.device_id) for d in pending or candidates]


def find_devices(
        registry: ProjectRegistry,
        email: str,
        device_name: typing.Optional[str] = None) -> typing.List[Device]:
    """A user's devices, or just the one with the given name."""
    devices = registry.devices_for(email)
    if device_name:
        devices = [d for d in devices if d.name == device_name]
        if not devices:
            raise UserOrDeviceNotFound(f"{email} ({device_name})")
    if not devices:
        raise UserOrDeviceNotFound(email)
    return devices


def find_device_ids(
        ctx: Context,
        identifier: str,
        device_name: typing.Optional[str] = None) -> typing.List[str]:
    """Resolve a device id, or an email with an optional device name."""
    registry = ctx.registry()
    if identifier in registry.devices or identifier in ctx.store.device_ids():
        if device_name:
            raise ConflictingOptions("A device name can only be given with an email address")
        return [identifier]
    return [d.device_id for d in find_devices(registry, identifier, device_name)]


def rename_device(
        ctx: Context,
        identifier: str,
        new_name: str,
        device_name: typing.Optional[str] = None) -> Device:
    """
    Give a device a new name in the registry.

    The device is picked by id, or by its owner's email when they have one
    device (or several, with ``device_name`` choosing one). Renaming this
    machine's own device also updates the user config.
    """
    registry = ctx.registry()
    device_ids = find_device_ids(ctx, identifier, device_name)
    if len(device_ids) > 1:
        names = ', '.join(registry.devices[d].name for d in device_ids)
        raise ConflictingOptions(f"{identifier} has several devices ({names}) - choose one with --device")
    device = registry.devices.get(device_ids[0])
    if device is None:
        raise UserOrDeviceNotFound(device_ids[0])

    name = sanitize_device_name(new_name)
    if name == device.name:
        log.info(f"{device} is already named {name}")
        return device
    taken = registry.device_named(device.email, name)
    if taken is not None:
        raise AlreadyExists(
            f"{device.email} already has a device named {name} ({taken.device_id})",
            device_id=taken.device_id,
            name=name)

    renamed = attr.evolve(device, name=name)
    if ctx.dry_run:
        return renamed
    ctx.store.save_registry(registry.with_device(renamed))
    if ctx.device_id(registry) == device.device_id:
        _remember(ctx, registry, renamed)
    ctx.audit.record('rename', device_id=device.device_id, old_name=device.name, name=name)
    return renamed


def rotate(ctx: Context, private_key: crypto.PrivateKey) -> crypto.KeyPair:
    """
    Replace this device's keypair. Other devices are untouched.

    The new private key is staged next to the old one. If replacing the store
    artifacts or the local private key fails the previous artifacts are put
    back and the staged key is thrown away, so the old key keeps working.
    """
    store, keys = ctx.store, ctx.keys
    registry = ctx.registry()
    device_id, symmetric_key = ctx.unlock(private_key)
    device = registry.devices.get(device_id)
    label = str(device) if device else device_id

    keypair = crypto.generate_keypair()
    wrapped = crypto.wrap(symmetric_key, keypair.public)
    if crypto.unwrap(wrapped, keypair.private) != symmetric_key:
        raise DecryptionFailed("re-wrapped key")
    log.info(f"Generated a new keypair for {label}")
    if ctx.dry_run:
        return keypair

    ctx.options.permit(
        f"Replace the keypair of {label}?",
        PermissionDenied(f"rotate the keypair of {label}"))

    previous = WriteBatch()
    previous.write(store.public_key_path(device_id), store.read_public_key(device_id), PUBLIC_KEY_MODE)
    previous.write(store.wrapped_key_path(device_id), store.read_wrapped_key(device_id), WRAPPED_KEY_MODE)

    staged = keys.stage(registry.project_id, keypair.private_pem())
    swap = WriteBatch()
    swap.write(store.public_key_path(device_id), keypair.public_pem(), PUBLIC_KEY_MODE)
    swap.write(store.wrapped_key_path(device_id), wrapped, WRAPPED_KEY_MODE)
    try:
        swap.apply()
    except PartialFailure:
        log.warning(f"Restoring the previous keys of {label}")
        keys.discard(staged)
        previous.apply()
        raise
    try:
        keys.commit(registry.project_id, staged, keypair.public_pem())
    except OSError:
        # Still staged means the old private key is in place.
        if staged.exists():
            log.warning(f"Could not store the new private key, restoring the previous keys of {label}")
            previous.apply()
            keys.discard(staged)
        raise

    if device is not None and ctx.device_id(registry) != device_id:
        _remember(ctx, registry, device)
    ctx.audit.record('rotate', device_id=device_id)
    return keypair


@attr.s(frozen=True, kw_only=True)
class SyncResult:
    files_changed: int = attr.ib(default=0)
    devices_changed: int = attr.ib(default=0)
    devices_excluded: typing.Tuple[str, ...] = attr.ib(default=(), converter=tuple)
    dry_run: bool = attr.ib(default=False)


def plan_sync(
        ctx: Context,
        private_key: crypto.PrivateKey,
        exclude: typing.Iterable[str] = ()) -> typing.Tuple[WriteBatch, SyncResult]:
    """
    Work out a complete re-key in memory.

    Every ciphertext is opened with the current project key, a new project
    key is wrapped for each active device that is not excluded, and every
    secret is sealed again under it. Nothing is written.
    """
    store = ctx.store
    excluded = sorted(set(exclude))
    _, current_key = ctx.unlock(private_key)

    plaintexts: typing.Dict[pathlib.Path, bytes] = {}
    for path in store.ciphertexts():
        try:
            plaintexts[path] = crypto.sym_decrypt(_read_artifact(path), current_key)
        except AuthenticationFailed:
            raise AuthenticationFailed(path) from None
    files_changed = len(plaintexts)
    log.debug(f"Opened {files_changed} secret file(s)")

    new_key = crypto.generate_symmetric_key()
    devices = [d for d in active_devices(store) if d not in excluded]
    if not devices:
        raise LastDeviceRevocation(excluded)

    batch = WriteBatch()
    for device_id in devices:
        public_key = crypto.load_public_key(store.read_public_key(device_id))
        batch.write(store.wrapped_key_path(device_id), crypto.wrap(new_key, public_key), WRAPPED_KEY_MODE)
    for path, plaintext in plaintexts.items():
        batch.write(path, crypto.sym_encrypt(plaintext, new_key), CIPHERTEXT_MODE)
    for device_id in excluded:
        if store.has_wrapped_key(device_id):
            batch.delete(store.wrapped_key_path(device_id))
    plaintexts.clear()

    return batch, SyncResult(
        files_changed=files_changed,
        devices_changed=len(devices),
        devices_excluded=excluded,
        dry_run=ctx.dry_run)


def sync(
        ctx: Context,
        private_key: crypto.PrivateKey,
        exclude: typing.Iterable[str] = ()) -> SyncResult:
    """Re-key the project: a new project key and every secret sealed again."""
    registry = ctx.registry()
    exclude = list(exclude)
    known = set(registry.devices) | set(ctx.store.device_ids())
    for device_id in exclude:
        if device_id not in known:
            raise UserOrDeviceNotFound(device_id)

    batch, result = plan_sync(ctx, private_key, exclude)
    log.info(f"Re-keying {result.files_changed} file(s) for {result.devices_changed} device(s)")
    if ctx.dry_run:
        return result

    batch.apply()
    ctx.audit.record('sync', files_count=result.files_changed, users_count=result.devices_changed)
    return result


@attr.s(frozen=True, kw_only=True)
class RevokeResult:
    revoked: typing.Tuple[str, ...] = attr.ib(converter=tuple)
    files_changed: int = attr.ib(default=0)
    devices_remaining: int = attr.ib(default=0)
    dry_run: bool = attr.ib(default=False)
    warning: str = attr.ib(default=RESIDUAL_RISK)


def revoke(
        ctx: Context,
        private_key: crypto.PrivateKey,
        device_ids: typing.Iterable[str],
        allow_lockout: bool = False) -> RevokeResult:
    """
    Remove devices from the project and re-key it without them.

    The targets' artifacts and registry entries are removed and the project
    is synced with them excluded, so they cannot read anything written from
    now on. Revoking every active device is refused unless lockout is
    explicitly allowed.
    """
    store = ctx.store
    registry = ctx.registry()
    targets = sorted(set(device_ids))
    if not targets:
        raise UserOrDeviceNotFound('')
    known = set(registry.devices) | set(store.device_ids())
    for device_id in targets:
        if device_id not in known:
            raise UserOrDeviceNotFound(device_id)

    remaining = [d for d in active_devices(store) if d not in targets]
    if not remaining and not allow_lockout:
        raise LastDeviceRevocation(targets)

    invoker, _ = ctx.unlock(private_key)
    labels = ', '.join(str(registry.devices[d]) if d in registry.devices else d for d in targets)
    if invoker in targets:
        log.warning("This device is revoking its own access")

    if remaining:
        sync_batch, synced = plan_sync(ctx, private_key, exclude=targets)
    else:
        log.warning("No active devices will remain - nobody will be able to decrypt this project")
        sync_batch, synced = WriteBatch(), SyncResult(devices_excluded=targets, dry_run=ctx.dry_run)

    result = RevokeResult(
        revoked=targets,
        files_changed=synced.files_changed,
        devices_remaining=len(remaining),
        dry_run=ctx.dry_run)
    if ctx.dry_run:
        return result

    ctx.options.permit(
        f"Revoke access for {labels}?",
        PermissionDenied(f"revoke access for {labels}"))

    batch = WriteBatch()
    for device_id in targets:
        batch.delete(store.public_key_path(device_id))
        batch.delete(store.wrapped_key_path(device_id))
    batch.write(store.registry_path, registry.without_devices(targets).dumps(), REGISTRY_MODE)
    batch.changes.extend(c for c in sync_batch.changes if c.path not in batch.paths)
    batch.apply()

    ctx.audit.record(
        'revoke',
        devices=targets,
        target_user=sorted({registry.devices[d].email for d in targets if d in registry.devices}),
        files_count=result.files_changed)
    return result
