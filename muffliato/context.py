"""
Everything one invocation needs, passed explicitly to every operation.

A Context is built once per command from the project root, the machine's
settings and the command's options. Nothing is kept in module globals, so
several contexts (for several devices) can be used side by side.
"""

import logging
import pathlib
import typing

import attr

from . import crypto
from .audit import AuditLog
from .config import ProjectRegistry, Settings, UserConfig
from .errors import DecryptionFailed, MuffliatoException, NoAccess
from .store import DeviceKeys, Store

log = logging.getLogger(__name__)

Confirm = typing.Callable[[str], bool]


def never(message: str) -> bool:
    return False


@attr.s(frozen=True, kw_only=True)
class Options:
    dry_run: bool = attr.ib(default=False)
    force: bool = attr.ib(default=False)
    confirm: Confirm = attr.ib(default=never)

    def permit(self, message: str, error: MuffliatoException) -> None:
        """
        Allow an overwrite or destructive step, or raise the given error.

        Forced operations are always allowed. Otherwise the confirm callback
        decides - the command line asks the user, and library callers that
        pass nothing are refused.
        """
        if self.force:
            log.info(f"Proceeding without confirmation: {message}")
            return
        if self.confirm(message):
            return
        raise error


@attr.s(kw_only=True)
class Context:
    store: Store = attr.ib()
    settings: Settings = attr.ib(factory=Settings)
    options: Options = attr.ib(factory=Options)
    user: UserConfig = attr.ib()
    audit: AuditLog = attr.ib()

    @user.default
    def _load_user(self) -> UserConfig:
        return UserConfig.load(self.settings.user_config_path)

    @audit.default
    def _audit(self) -> AuditLog:
        return AuditLog(path=self.store.audit_path, user=self.user.email, user_id=self.user.user_id)

    @classmethod
    def open(
            cls,
            root: pathlib.Path,
            settings: typing.Optional[Settings] = None,
            options: typing.Optional[Options] = None) -> 'Context':
        return cls(
            store=Store(root),
            settings=settings or Settings(),
            options=options or Options())

    @property
    def keys(self) -> DeviceKeys:
        return DeviceKeys(self.settings.keys_dir)

    @property
    def dry_run(self) -> bool:
        return self.options.dry_run

    def registry(self) -> ProjectRegistry:
        return self.store.load_registry()

    def device_id(self, registry: typing.Optional[ProjectRegistry] = None) -> typing.Optional[str]:
        """This machine's device in the project, according to the user config."""
        registry = registry or self.registry()
        return self.user.device_id(registry.project_id)

    def save_user(self, user: UserConfig) -> None:
        user.save(self.settings.user_config_path)
        self.user = user
        self.audit = self._audit()

    def private_key(
            self,
            data: typing.Optional[bytes] = None,
            passphrase: typing.Optional[bytes] = None) -> crypto.PrivateKey:
        """
        Load the invoking device's private key.

        Uses the given key material (e.g. read from stdin) or this machine's
        stored key for the project.
        """
        if data is None:
            registry = self.registry()
            if not self.keys.exists(registry.project_id):
                raise NoAccess(
                    self.device_id(registry),
                    f"no private key for this project at "
                    f"{self.keys.private_key_path(registry.project_id)} - run 'muffliato create'")
            data = self.keys.read_private_key(registry.project_id)
        return crypto.load_private_key(data, passphrase)

    def invoker(self, private_key: crypto.PrivateKey) -> str:
        """
        Find the device a private key belongs to.

        The device recorded in the user config is tried first, then every public
        key in the store is compared by fingerprint.
        """
        fingerprint = crypto.fingerprint(private_key.public_key())
        candidates = [self.device_id()] + self.store.public_key_ids()
        for device_id in candidates:
            if device_id and self.store.has_public_key(device_id) and self._matches(device_id, fingerprint):
                return device_id
        raise NoAccess(None, "the private key does not match any device's public key in this project")

    def _matches(self, device_id: str, fingerprint: str) -> bool:
        try:
            public = crypto.load_public_key(self.store.read_public_key(device_id))
        except MuffliatoException:
            log.warning(f"Ignoring unreadable public key for device {device_id}")
            return False
        return crypto.fingerprint(public) == fingerprint

    def unlock(self, private_key: crypto.PrivateKey) -> typing.Tuple[str, bytes]:
        """
        Recover the project key through the invoking device's wrapped key.

        Holding a wrapped key that the private key can open is the proof of
        current access every privileged operation relies on.
        """
        device_id = self.invoker(private_key)
        if not self.store.has_wrapped_key(device_id):
            raise NoAccess(
                device_id,
                "this device is pending - ask someone with access to run "
                "'muffliato register' for it")
        try:
            symmetric_key = crypto.unwrap(self.store.read_wrapped_key(device_id), private_key)
        except DecryptionFailed:
            raise NoAccess(device_id, "the wrapped key for this device could not be decrypted") from None
        log.debug(f"Unlocked the project key with device {device_id}")
        return device_id, symmetric_key
