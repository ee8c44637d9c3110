import logging
import os
import pathlib
import tempfile
import typing

import git

log = logging.getLogger(__name__)


def find_git_directory() -> typing.Optional[pathlib.Path]:
    try:
        repo = git.Repo(search_parent_directories=True)
    except git.exc.InvalidGitRepositoryError:
        return None
    return pathlib.Path(repo.working_dir)


def find_project_directory() -> pathlib.Path:
    """The current git repository, or the working directory outside of one."""
    return find_git_directory() or pathlib.Path.cwd()


def find_repository(path: pathlib.Path) -> typing.Optional[git.Repo]:
    """Open the git repository containing a path, if there is one."""
    try:
        return git.Repo(path, search_parent_directories=True)
    except (git.exc.InvalidGitRepositoryError, git.exc.NoSuchPathError):
        return None


def in_directory(
        path: pathlib.Path,
        directory: pathlib.Path) -> bool:
    """Check if a path is a subpath of a directory."""
    try:
        path.relative_to(directory)
    except ValueError:
        return False
    else:
        return True


def atomic_write(path: pathlib.Path, data: bytes, mode: int = 0o600) -> None:
    """
    Write bytes to a path so that readers only ever see the old or new file.

    The data is written to a temporary file in the same directory, flushed to
    disk and then renamed over the destination.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temporary = tempfile.mkstemp(
        prefix=f'.{path.name}.', suffix='.tmp', dir=path.parent)
    try:
        with os.fdopen(fd, 'wb') as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(temporary, mode)
        os.replace(temporary, path)
    except BaseException:
        pathlib.Path(temporary).unlink(missing_ok=True)
        raise
    log.debug(f"Wrote {len(data)} bytes to {path}")


def relative(path: pathlib.Path, root: pathlib.Path) -> str:
    return os.path.relpath(path.as_posix(), root.as_posix())
