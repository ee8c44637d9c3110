"""
Selective encryption and decryption of secret files.

Files are chosen by the patterns given (or the whole project when there are
none), every output is produced in memory, and only then are the files
written one by one, each replaced atomically.
"""

import logging
import pathlib
import typing

import attr

from . import crypto
from .context import Context
from .errors import AuthenticationFailed, PartialFailure, PermissionDenied
from .incantations import resolve_files
from .secrets import Secret
from .utils import atomic_write, relative

log = logging.getLogger(__name__)

PLAINTEXT_MODE = 0o644
CIPHERTEXT_MODE = 0o600

Output = typing.Tuple[pathlib.Path, bytes]


@attr.s(frozen=True, kw_only=True)
class FileReport:
    succeeded: typing.List[pathlib.Path] = attr.ib(factory=list)
    failed: typing.Dict[pathlib.Path, str] = attr.ib(factory=dict)
    skipped: typing.List[pathlib.Path] = attr.ib(factory=list)
    dry_run: bool = attr.ib(default=False)

    @property
    def ok(self) -> bool:
        return not self.failed

    def raise_for_failures(self) -> None:
        if self.failed:
            raise PartialFailure(self.succeeded, self.failed)


@attr.s(frozen=True)
class SecretKeeper:
    ctx: Context = attr.ib()

    @property
    def root(self) -> pathlib.Path:
        return self.ctx.store.root

    def encrypt(self, private_key: crypto.PrivateKey, patterns: typing.Sequence[str] = ()) -> FileReport:
        """
        Seal plaintext files into their ciphertext siblings.

        A ciphertext that already holds the same plaintext is left alone
        unless the operation is forced, so unchanged secrets produce no diff.
        """
        paths = resolve_files(patterns, self.root, want_ciphertext=False)
        _, key = self.ctx.unlock(private_key)
        log.info(f"Encrypting {len(paths)} file(s)")

        outputs: typing.List[Output] = []
        failed: typing.Dict[pathlib.Path, str] = {}
        skipped: typing.List[pathlib.Path] = []
        for path in paths:
            secret = Secret.from_path(path)
            try:
                plaintext = secret.read_plaintext()
            except OSError as error:
                failed[secret.ciphertext] = f"could not read {secret.plaintext.name}: {error.strerror}"
                continue
            if not self.ctx.options.force and self._unchanged(secret, plaintext, key):
                log.debug(f"Skipping {secret.ciphertext} as {secret.plaintext.name} has not changed")
                skipped.append(secret.ciphertext)
                continue
            outputs.append((secret.ciphertext, crypto.sym_encrypt(plaintext, key)))

        return self._write('encrypt', outputs, failed, skipped, mode=CIPHERTEXT_MODE)

    def decrypt(self, private_key: crypto.PrivateKey, patterns: typing.Sequence[str] = ()) -> FileReport:
        """
        Open ciphertext files into their plaintext siblings.

        A plaintext with local changes is only overwritten when the guard
        permits it. Files that fail to authenticate are reported and left
        untouched.
        """
        paths = resolve_files(patterns, self.root, want_ciphertext=True)
        _, key = self.ctx.unlock(private_key)
        log.info(f"Decrypting {len(paths)} file(s)")

        outputs: typing.List[Output] = []
        failed: typing.Dict[pathlib.Path, str] = {}
        skipped: typing.List[pathlib.Path] = []
        for path in paths:
            secret = Secret.from_path(path)
            try:
                plaintext = crypto.sym_decrypt(secret.read_ciphertext(), key)
            except OSError as error:
                failed[secret.plaintext] = f"could not read {secret.ciphertext.name}: {error.strerror}"
                continue
            except AuthenticationFailed as error:
                failed[secret.plaintext] = AuthenticationFailed(secret.ciphertext).message
                log.debug(f"Rejected {secret.ciphertext}: {error.kind}")
                continue

            current = _read(secret.plaintext)
            if current == plaintext:
                skipped.append(secret.plaintext)
                continue
            if current is not None:
                try:
                    self.ctx.options.permit(
                        f"Overwrite local changes in {relative(secret.plaintext, self.root)}?",
                        PermissionDenied(f"overwrite local changes in {secret.plaintext}"))
                except PermissionDenied as error:
                    failed[secret.plaintext] = f"{error.message} - use --force to discard them"
                    continue
            outputs.append((secret.plaintext, plaintext))

        return self._write('decrypt', outputs, failed, skipped, mode=PLAINTEXT_MODE)

    def _unchanged(self, secret: Secret, plaintext: bytes, key: bytes) -> bool:
        ciphertext = _read(secret.ciphertext)
        if ciphertext is None:
            return False
        try:
            return crypto.sym_decrypt(ciphertext, key) == plaintext
        except AuthenticationFailed:
            return False

    def _write(
            self,
            operation: str,
            outputs: typing.Sequence[Output],
            failed: typing.Dict[pathlib.Path, str],
            skipped: typing.List[pathlib.Path],
            mode: int) -> FileReport:
        if self.ctx.dry_run:
            log.info(f"Dry run: not writing {len(outputs)} file(s)")
            return FileReport(
                succeeded=[path for path, _ in outputs],
                failed=failed,
                skipped=skipped,
                dry_run=True)

        succeeded = []
        for path, data in outputs:
            try:
                atomic_write(path, data, mode=mode)
            except OSError as error:
                log.warning(f"Could not write {path}: {error.strerror}")
                failed[path] = error.strerror or type(error).__name__
            else:
                succeeded.append(path)

        if succeeded:
            self.ctx.audit.record(operation, files=[relative(path, self.root) for path in succeeded])
        return FileReport(succeeded=succeeded, failed=failed, skipped=skipped)


def _read(path: pathlib.Path) -> typing.Optional[bytes]:
    try:
        return path.read_bytes()
    except FileNotFoundError:
        return None
