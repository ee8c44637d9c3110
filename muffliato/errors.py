"""
Every failure the core can report is one of the exceptions below.

Each carries a stable ``kind`` tag and a ``context`` dict of structured fields
so callers can branch on what went wrong without parsing messages. They derive
from click's exception so the command line can print them directly.
"""

import pathlib
import typing

import click


class MuffliatoException(click.ClickException):
    kind = 'error'

    def __init__(self, message: str, **context: typing.Any) -> None:
        super().__init__(message)
        self.context = context


class NotInitialized(MuffliatoException):
    kind = 'not_initialized'

    def __init__(self, root: pathlib.Path) -> None:
        super().__init__(
            f"No secret store found in {root} - run 'muffliato init' first",
            root=root)


class AlreadyExists(MuffliatoException):
    kind = 'already_exists'


class DeviceAlreadyExists(AlreadyExists):
    kind = 'device_already_exists'

    def __init__(self, device_id: str, name: str) -> None:
        super().__init__(
            f"A key for device {name} ({device_id}) already exists in this "
            f"project - use --force to replace it",
            device_id=device_id,
            name=name)


class NoAccess(MuffliatoException):
    kind = 'no_access'

    def __init__(self, device_id: typing.Optional[str], reason: str) -> None:
        super().__init__(
            f"This device does not have access to the project: {reason}",
            device_id=device_id,
            reason=reason)


class DecryptionFailed(MuffliatoException):
    kind = 'decryption_failed'

    def __init__(self, what: str = "wrapped key") -> None:
        super().__init__(
            f"Could not decrypt the {what} - the private key does not match "
            f"or the data is corrupted",
            what=what)


class AuthenticationFailed(MuffliatoException):
    kind = 'authentication_failed'

    def __init__(self, path: typing.Optional[pathlib.Path] = None) -> None:
        target = f"{path}" if path else "ciphertext"
        super().__init__(
            f"Could not authenticate {target} - it was encrypted with a "
            f"different project key or has been modified",
            path=path)


class UserOrDeviceNotFound(MuffliatoException):
    kind = 'not_found'

    def __init__(self, identifier: str) -> None:
        super().__init__(
            f"No user or device matching {identifier} is registered in this project",
            identifier=identifier)


class InvalidPattern(MuffliatoException):
    kind = 'invalid_pattern'

    def __init__(self, pattern: str, reason: str) -> None:
        super().__init__(
            f"Invalid file pattern {pattern!r}: {reason}",
            pattern=pattern,
            reason=reason)


class FileNotFound(MuffliatoException):
    kind = 'file_not_found'

    def __init__(self, path: pathlib.Path) -> None:
        super().__init__(f"File not found: {path}", path=path)


class WrongFileType(MuffliatoException):
    kind = 'wrong_file_type'

    def __init__(self, path: pathlib.Path, expected: str) -> None:
        super().__init__(
            f"{path} is not a {expected} file",
            path=path,
            expected=expected)


class ConfigInvalid(MuffliatoException):
    kind = 'config_invalid'

    def __init__(
            self,
            path: pathlib.Path,
            reason: str,
            line: typing.Optional[int] = None,
            column: typing.Optional[int] = None) -> None:
        where = f"{path}" if line is None else f"{path}:{line}:{column}"
        super().__init__(
            f"Configuration file {where} is invalid: {reason}",
            path=path,
            line=line,
            column=column,
            reason=reason)


class ConflictingOptions(MuffliatoException):
    kind = 'conflicting_options'


class PermissionDenied(MuffliatoException):
    kind = 'permission_denied'

    def __init__(self, action: str) -> None:
        super().__init__(f"Not permitted to {action}", action=action)


class LastDeviceRevocation(MuffliatoException):
    kind = 'last_device_revocation'

    def __init__(self, device_ids: typing.Sequence[str]) -> None:
        super().__init__(
            "Refusing to revoke the last active device - nobody would be able "
            "to decrypt the project's secrets again",
            device_ids=tuple(device_ids))


class InvalidKey(MuffliatoException):
    kind = 'invalid_key'

    def __init__(self, reason: str) -> None:
        super().__init__(f"Unusable key: {reason}", reason=reason)


class PassphraseRequired(InvalidKey):
    kind = 'passphrase_required'

    def __init__(self) -> None:
        super().__init__("the private key is protected by a passphrase")


class PartialFailure(MuffliatoException):
    """Some paths of a write phase were written and some were not."""

    kind = 'partial_failure'

    def __init__(
            self,
            succeeded: typing.Sequence[pathlib.Path],
            failed: typing.Mapping[pathlib.Path, str]) -> None:
        lines = ', '.join(f"{path} ({reason})" for path, reason in failed.items())
        super().__init__(
            f"Wrote {len(succeeded)} file(s) but failed to write "
            f"{len(failed)}: {lines}",
            succeeded=tuple(succeeded),
            failed=dict(failed))


class InvalidEmail(MuffliatoException):
    kind = 'invalid_email'

    def __init__(self, email: str) -> None:
        super().__init__(
            f"{email!r} is not a valid email address - pass one with --email",
            email=email)
