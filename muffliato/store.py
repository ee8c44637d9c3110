"""
Persistence for the project store and the device's local keys.

The project store is committed to version control:

    .muffliato/
        config.toml                     the project registry
        public_keys/<device id>.pub     each device's public key
        secrets/<device id>.muffliato   the project key wrapped for each device
        audit.jsonl                     the audit log

Private keys never enter the project tree. They live on the machine that owns
them, in the data directory:

    <data dir>/keys/<project id>/privkey        mode 0600
    <data dir>/keys/<project id>/pubkey.pub

Nothing here performs cryptography or makes decisions; every write replaces
its file atomically.
"""

import logging
import os
import pathlib
import typing

import attr

from .config import ProjectRegistry
from .errors import NotInitialized, PartialFailure
from .incantations import ProjectIncantation
from .secrets import STORE_DIRECTORY, SUFFIX, Secret, pair
from .utils import atomic_write

log = logging.getLogger(__name__)

PUBLIC_KEY_SUFFIX = '.pub'
WRAPPED_KEY_SUFFIX = SUFFIX


def _ids(directory: pathlib.Path, suffix: str) -> typing.List[str]:
    if not directory.is_dir():
        return []
    return sorted(
        path.name[:-len(suffix)] for path in directory.iterdir()
        if path.is_file() and path.name.endswith(suffix) and len(path.name) > len(suffix))


@attr.s(frozen=True)
class Store:
    root: pathlib.Path = attr.ib(converter=lambda p: pathlib.Path(p).absolute())

    @property
    def directory(self) -> pathlib.Path:
        return self.root / STORE_DIRECTORY

    @property
    def public_keys(self) -> pathlib.Path:
        return self.directory / 'public_keys'

    @property
    def secrets(self) -> pathlib.Path:
        return self.directory / 'secrets'

    @property
    def registry_path(self) -> pathlib.Path:
        return self.directory / 'config.toml'

    @property
    def audit_path(self) -> pathlib.Path:
        return self.directory / 'audit.jsonl'

    def exists(self) -> bool:
        return self.directory.is_dir() and self.registry_path.is_file()

    def require(self) -> None:
        if not self.exists():
            raise NotInitialized(self.root)

    def ensure(self) -> None:
        for directory in (self.public_keys, self.secrets):
            directory.mkdir(parents=True, exist_ok=True)

    # Public keys

    def public_key_path(self, device_id: str) -> pathlib.Path:
        return self.public_keys / f"{device_id}{PUBLIC_KEY_SUFFIX}"

    def public_key_ids(self) -> typing.List[str]:
        return _ids(self.public_keys, PUBLIC_KEY_SUFFIX)

    def has_public_key(self, device_id: str) -> bool:
        return self.public_key_path(device_id).is_file()

    def read_public_key(self, device_id: str) -> bytes:
        return self.public_key_path(device_id).read_bytes()

    def write_public_key(self, device_id: str, pem: bytes) -> None:
        atomic_write(self.public_key_path(device_id), pem, mode=0o644)

    # Wrapped keys

    def wrapped_key_path(self, device_id: str) -> pathlib.Path:
        return self.secrets / f"{device_id}{WRAPPED_KEY_SUFFIX}"

    def wrapped_key_ids(self) -> typing.List[str]:
        return _ids(self.secrets, WRAPPED_KEY_SUFFIX)

    def has_wrapped_key(self, device_id: str) -> bool:
        return self.wrapped_key_path(device_id).is_file()

    def read_wrapped_key(self, device_id: str) -> bytes:
        return self.wrapped_key_path(device_id).read_bytes()

    def write_wrapped_key(self, device_id: str, wrapped: bytes) -> None:
        atomic_write(self.wrapped_key_path(device_id), wrapped, mode=0o600)

    def device_ids(self) -> typing.List[str]:
        """Every device that has at least one artifact in the store."""
        return sorted(set(self.public_key_ids()) | set(self.wrapped_key_ids()))

    # Registry

    def load_registry(self) -> ProjectRegistry:
        self.require()
        return ProjectRegistry.load(self.registry_path)

    def save_registry(self, registry: ProjectRegistry) -> None:
        registry.save(self.registry_path)

    # Secret files

    def secret_files(self) -> typing.List[Secret]:
        """Every plaintext/ciphertext pair in the project."""
        paths = [
            *ProjectIncantation(root=self.root, want_ciphertext=False).search(),
            *ProjectIncantation(root=self.root, want_ciphertext=True).search(),
        ]
        return pair(paths)

    def ciphertexts(self) -> typing.List[pathlib.Path]:
        return list(ProjectIncantation(root=self.root, want_ciphertext=True).search())


def _delete(path: pathlib.Path) -> bool:
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    log.debug(f"Deleted {path}")
    return True


@attr.s(frozen=True)
class Write:
    path: pathlib.Path = attr.ib()
    data: bytes = attr.ib(repr=False)
    mode: int = attr.ib(default=0o600)

    def apply(self) -> None:
        atomic_write(self.path, self.data, mode=self.mode)


@attr.s(frozen=True)
class Delete:
    path: pathlib.Path = attr.ib()

    def apply(self) -> None:
        _delete(self.path)


@attr.s
class WriteBatch:
    """
    Writes staged in memory and applied together at the end of an operation.

    Every change is applied even if an earlier one fails, and the outcome of
    each path is recorded so a failure can name exactly what was written.
    """

    changes: typing.List[typing.Union[Write, Delete]] = attr.ib(factory=list)

    def write(self, path: pathlib.Path, data: bytes, mode: int = 0o600) -> None:
        self.changes.append(Write(path, data, mode))

    def delete(self, path: pathlib.Path) -> None:
        self.changes.append(Delete(path))

    @property
    def paths(self) -> typing.List[pathlib.Path]:
        return [change.path for change in self.changes]

    def apply(self) -> typing.List[pathlib.Path]:
        succeeded: typing.List[pathlib.Path] = []
        failed: typing.Dict[pathlib.Path, str] = {}
        for change in self.changes:
            try:
                change.apply()
            except OSError as error:
                log.warning(f"Could not update {change.path}: {error.strerror or error}")
                failed[change.path] = error.strerror or type(error).__name__
            else:
                succeeded.append(change.path)
        if failed:
            raise PartialFailure(succeeded, failed)
        log.info(f"Applied {len(succeeded)} change(s)")
        return succeeded


@attr.s(frozen=True)
class DeviceKeys:
    """A machine's private keys, one directory per project."""

    directory: pathlib.Path = attr.ib()

    def project_directory(self, project_id: str) -> pathlib.Path:
        return self.directory / project_id

    def private_key_path(self, project_id: str) -> pathlib.Path:
        return self.project_directory(project_id) / 'privkey'

    def public_key_path(self, project_id: str) -> pathlib.Path:
        return self.project_directory(project_id) / 'pubkey.pub'

    def staged_key_path(self, project_id: str) -> pathlib.Path:
        return self.project_directory(project_id) / 'privkey.new'

    def exists(self, project_id: str) -> bool:
        return self.private_key_path(project_id).is_file()

    def read_private_key(self, project_id: str) -> bytes:
        return self.private_key_path(project_id).read_bytes()

    def stage(self, project_id: str, private_pem: bytes) -> pathlib.Path:
        """Durably write a new private key next to the current one."""
        directory = self.project_directory(project_id)
        directory.mkdir(parents=True, exist_ok=True, mode=0o700)
        os.chmod(directory, 0o700)
        staged = self.staged_key_path(project_id)
        atomic_write(staged, private_pem, mode=0o600)
        return staged

    def commit(self, project_id: str, staged: pathlib.Path, public_pem: bytes) -> None:
        """Replace the current private key with a staged one."""
        os.replace(staged, self.private_key_path(project_id))
        atomic_write(self.public_key_path(project_id), public_pem, mode=0o644)
        log.info(f"Stored private key at {self.private_key_path(project_id)}")

    def discard(self, staged: pathlib.Path) -> None:
        if _delete(staged):
            log.info(f"Discarded unused key {staged}")
