"""
Secret files come in pairs: a plaintext file and its ciphertext sibling.

The rules used to pair filenames are:

    * Any file with '.env' in its name is a plaintext secret ('.env',
      'prod.env', '.env.local').
    * Its ciphertext sibling has the same name with '.muffliato' appended
      ('.env.muffliato').
    * Nothing inside the '.muffliato' store directory is a secret file.
"""

import logging
import pathlib
import typing

import attr

log = logging.getLogger(__name__)

STORE_DIRECTORY = '.muffliato'
SUFFIX = '.muffliato'
MARKER = '.env'

PLAINTEXT = 'plaintext'
CIPHERTEXT = 'ciphertext'


def is_plaintext(path: pathlib.Path) -> bool:
    return MARKER in path.name and not path.name.endswith(SUFFIX)


def is_ciphertext(path: pathlib.Path) -> bool:
    return MARKER in path.name and path.name.endswith(SUFFIX)


def in_store(path: pathlib.Path) -> bool:
    """Check if any component of a path is the store directory."""
    return STORE_DIRECTORY in path.parts[:-1]


def file_type(want_ciphertext: bool) -> str:
    return CIPHERTEXT if want_ciphertext else PLAINTEXT


def matches_type(path: pathlib.Path, want_ciphertext: bool) -> bool:
    if in_store(path):
        return False
    return is_ciphertext(path) if want_ciphertext else is_plaintext(path)


@attr.s(frozen=True, kw_only=True)
class Secret:
    plaintext: pathlib.Path = attr.ib()
    ciphertext: pathlib.Path = attr.ib()

    @classmethod
    def from_path(cls, path: pathlib.Path) -> 'Secret':
        """Pair a plaintext or ciphertext path with its sibling."""
        if is_ciphertext(path):
            return cls(plaintext=path.with_name(path.name[:-len(SUFFIX)]), ciphertext=path)
        return cls(plaintext=path, ciphertext=path.with_name(path.name + SUFFIX))

    def __str__(self):
        return self.plaintext.name

    def read_plaintext(self) -> bytes:
        log.debug(f"Reading plaintext {self.plaintext}")
        return self.plaintext.read_bytes()

    def read_ciphertext(self) -> bytes:
        log.debug(f"Reading ciphertext {self.ciphertext}")
        return self.ciphertext.read_bytes()


def pair(paths: typing.Iterable[pathlib.Path]) -> typing.List[Secret]:
    """Collapse plaintext and ciphertext paths into unique secret pairs."""
    secrets: typing.Dict[pathlib.Path, Secret] = {}
    for path in paths:
        secret = Secret.from_path(path)
        secrets.setdefault(secret.plaintext, secret)
    return sorted(secrets.values(), key=lambda s: s.plaintext)
