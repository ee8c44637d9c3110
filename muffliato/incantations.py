"""
Each Incantation turns one user supplied pattern into a list of files.

Patterns are resolved in this order:

    * An existing directory selects every matching file below it.
    * A pattern containing '*', '?' or '[' is expanded as a glob ('**' matches
      any number of directories). Expanded paths of the wrong type are dropped.
    * Anything else is a literal path that must exist and must already be of
      the requested type.

Resolving never widens scope: a pattern that matches nothing resolves to
nothing, it never falls back to every file in the project.
"""

import logging
import os
import pathlib
import typing

import attr

from .errors import FileNotFound, InvalidPattern, WrongFileType
from .secrets import STORE_DIRECTORY, file_type, matches_type

log = logging.getLogger(__name__)

Paths = typing.Sequence[pathlib.Path]

WILDCARDS = frozenset('*?[')


@attr.s(frozen=True, kw_only=True)
class Incantation:
    root: pathlib.Path = attr.ib(converter=lambda p: pathlib.Path(p).absolute())
    want_ciphertext: bool = attr.ib()

    def search(self) -> Paths:
        raise NotImplementedError

    def walk(self, directory: pathlib.Path) -> Paths:
        """Find files of the requested type below a directory, skipping the store."""
        found: typing.List[pathlib.Path] = []
        for dirpath, dirnames, filenames in os.walk(directory):
            dirnames[:] = sorted(d for d in dirnames if d != STORE_DIRECTORY)
            for filename in sorted(filenames):
                path = pathlib.Path(dirpath, filename)
                if self.regular(path) and matches_type(path, self.want_ciphertext):
                    found.append(path)
        return tuple(found)

    @staticmethod
    def regular(path: pathlib.Path) -> bool:
        return path.is_file() and not path.is_symlink()

    def absolute(self, pattern: str) -> pathlib.Path:
        path = pathlib.Path(pattern).expanduser()
        return path if path.is_absolute() else self.root / path


class ProjectIncantation(Incantation):
    """Select every file of the requested type in the project."""

    def search(self) -> Paths:
        log.info(f"Searching for {file_type(self.want_ciphertext)} files in {self.root}")
        return self.walk(self.root)


@attr.s(frozen=True, kw_only=True)
class DirectoryIncantation(Incantation):
    directory: pathlib.Path = attr.ib()

    def search(self) -> Paths:
        log.info(f"Searching for {file_type(self.want_ciphertext)} files in {self.directory}")
        return self.walk(self.directory)


@attr.s(frozen=True, kw_only=True)
class GlobIncantation(Incantation):
    pattern: str = attr.ib()

    def search(self) -> Paths:
        base, relative = self.split()
        if not relative:
            raise InvalidPattern(self.pattern, "pattern has no wildcard component")
        if not base.is_dir():
            log.info(f"Pattern {self.pattern} matched nothing: {base} is not a directory")
            return ()

        try:
            matches = sorted(base.glob(relative))
        except (ValueError, NotImplementedError) as error:
            raise InvalidPattern(self.pattern, str(error)) from None

        selected = tuple(
            path for path in matches
            if self.regular(path) and matches_type(path, self.want_ciphertext))
        log.info(f"Pattern {self.pattern} matched {len(selected)} of {len(matches)} paths")
        return selected

    def split(self) -> typing.Tuple[pathlib.Path, str]:
        """Split the pattern into a literal base directory and a glob below it."""
        parts = self.absolute(self.pattern).parts
        for index, part in enumerate(parts):
            if WILDCARDS.intersection(part):
                return pathlib.Path(*parts[:index]), '/'.join(parts[index:])
        return pathlib.Path(*parts), ''


@attr.s(frozen=True, kw_only=True)
class LiteralIncantation(Incantation):
    path: pathlib.Path = attr.ib()

    def search(self) -> Paths:
        if not self.path.exists():
            raise FileNotFound(self.path)
        if not self.regular(self.path) or not matches_type(self.path, self.want_ciphertext):
            raise WrongFileType(self.path, file_type(self.want_ciphertext))
        return (self.path,)


def incantation(pattern: str, root: pathlib.Path, want_ciphertext: bool) -> Incantation:
    """Choose how a single pattern should be resolved."""
    if not pattern:
        raise InvalidPattern(pattern, "pattern is empty")

    base = Incantation(root=root, want_ciphertext=want_ciphertext)
    path = base.absolute(pattern)

    if path.is_dir():
        return DirectoryIncantation(root=root, want_ciphertext=want_ciphertext, directory=path)
    if WILDCARDS.intersection(pattern):
        return GlobIncantation(root=root, want_ciphertext=want_ciphertext, pattern=pattern)
    return LiteralIncantation(root=root, want_ciphertext=want_ciphertext, path=path)


def resolve_files(
        patterns: typing.Sequence[str],
        root: pathlib.Path,
        want_ciphertext: bool) -> typing.List[pathlib.Path]:
    """
    Resolve patterns to a deduplicated list of files of one type.

    With no patterns, every file of the requested type in the project is
    returned. Otherwise each pattern is resolved on its own and the results are
    combined in the order they were first seen.
    """
    if not patterns:
        return list(ProjectIncantation(root=root, want_ciphertext=want_ciphertext).search())

    seen: typing.Set[str] = set()
    files: typing.List[pathlib.Path] = []
    for pattern in patterns:
        for path in incantation(pattern, root, want_ciphertext).search():
            key = os.path.normpath(path)
            if key not in seen:
                seen.add(key)
                files.append(pathlib.Path(key))

    log.info(f"Resolved {len(patterns)} pattern(s) to {len(files)} file(s)")
    return files
