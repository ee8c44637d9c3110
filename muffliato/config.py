"""
Configuration files.

The project registry lives inside the store and is committed with it:

    .muffliato/config.toml
        [project]            project_id, name
        [devices.<id>]       user_id, email, name, created_at

The user config lives outside any project, one per machine:

    <config dir>/config.toml
        [user]               user_id, email
        [projects.<id>]      device_id, device_name, project_name

Both are plain TOML. Settings that locate these files are explicit values,
passed to whatever needs them.
"""

import datetime
import logging
import os
import pathlib
import re
import socket
import tomllib
import typing
import uuid

import attr
import click
import tomli_w

from .errors import ConfigInvalid
from .utils import atomic_write

log = logging.getLogger(__name__)

APP_NAME = 'muffliato'

_LOCATION = re.compile(r'\(at line (\d+), column (\d+)\)')


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0)


def load_toml(path: pathlib.Path) -> typing.Dict[str, typing.Any]:
    """Parse a TOML file, reporting syntax errors with their location."""
    try:
        with path.open('rb') as handle:
            return tomllib.load(handle)
    except tomllib.TOMLDecodeError as error:
        line = getattr(error, 'lineno', None)
        column = getattr(error, 'colno', None)
        reason = getattr(error, 'msg', None) or str(error)
        if line is None:
            match = _LOCATION.search(str(error))
            if match:
                line, column = int(match.group(1)), int(match.group(2))
                reason = _LOCATION.sub('', reason).strip()
        raise ConfigInvalid(path, reason, line=line, column=column) from None
    except UnicodeDecodeError:
        raise ConfigInvalid(path, "file is not valid UTF-8") from None


def save_toml(path: pathlib.Path, data: typing.Mapping[str, typing.Any], mode: int = 0o644) -> None:
    atomic_write(path, tomli_w.dumps(data).encode('utf-8'), mode=mode)


def _table(data: typing.Mapping[str, typing.Any], key: str, path: pathlib.Path) -> typing.Dict[str, typing.Any]:
    value = data.get(key, {})
    if not isinstance(value, dict):
        raise ConfigInvalid(path, f"[{key}] must be a table")
    return value


def _string(table: typing.Mapping[str, typing.Any], key: str, path: pathlib.Path) -> str:
    value = table.get(key, '')
    if not isinstance(value, str):
        raise ConfigInvalid(path, f"{key} must be a string")
    return value


def default_config_dir() -> pathlib.Path:
    override = os.environ.get('MUFFLIATO_CONFIG_DIR')
    return pathlib.Path(override) if override else pathlib.Path(click.get_app_dir(APP_NAME))


def default_data_dir() -> pathlib.Path:
    override = os.environ.get('MUFFLIATO_DATA_DIR')
    if override:
        return pathlib.Path(override)
    xdg = os.environ.get('XDG_DATA_HOME')
    base = pathlib.Path(xdg) if xdg else pathlib.Path.home() / '.local' / 'share'
    return base / APP_NAME


@attr.s(frozen=True, kw_only=True)
class Settings:
    """Where this machine keeps its user config and private keys."""

    config_dir: pathlib.Path = attr.ib(factory=default_config_dir)
    data_dir: pathlib.Path = attr.ib(factory=default_data_dir)

    @property
    def user_config_path(self) -> pathlib.Path:
        return self.config_dir / 'config.toml'

    @property
    def keys_dir(self) -> pathlib.Path:
        return self.data_dir / 'keys'


@attr.s(frozen=True, kw_only=True)
class Device:
    device_id: str = attr.ib()
    user_id: str = attr.ib(default='')
    email: str = attr.ib(default='')
    name: str = attr.ib(default='')
    created_at: datetime.datetime = attr.ib(factory=utcnow)

    def __str__(self):
        return f"{self.email} ({self.name})" if self.name else self.email or self.device_id

    def to_toml(self) -> typing.Dict[str, typing.Any]:
        return {
            'user_id': self.user_id,
            'email': self.email,
            'name': self.name,
            'created_at': self.created_at,
        }


@attr.s(frozen=True, kw_only=True)
class ProjectRegistry:
    project_id: str = attr.ib()
    name: str = attr.ib()
    devices: typing.Mapping[str, Device] = attr.ib(factory=dict)

    @classmethod
    def new(cls, name: str) -> 'ProjectRegistry':
        return cls(project_id=new_id(), name=name)

    @classmethod
    def load(cls, path: pathlib.Path) -> 'ProjectRegistry':
        data = load_toml(path)
        project = _table(data, 'project', path)
        project_id = _string(project, 'project_id', path)
        if not project_id:
            raise ConfigInvalid(path, "project_id is missing from [project]")

        devices = {}
        for device_id, table in _table(data, 'devices', path).items():
            if not isinstance(table, dict):
                raise ConfigInvalid(path, f"[devices.{device_id}] must be a table")
            created_at = table.get('created_at')
            devices[device_id] = Device(
                device_id=device_id,
                user_id=_string(table, 'user_id', path),
                email=_string(table, 'email', path),
                name=_string(table, 'name', path),
                created_at=created_at if isinstance(created_at, datetime.datetime) else utcnow())

        return cls(
            project_id=project_id,
            name=_string(project, 'name', path),
            devices=devices)

    def save(self, path: pathlib.Path) -> None:
        save_toml(path, self.to_toml())

    def dumps(self) -> bytes:
        return tomli_w.dumps(self.to_toml()).encode('utf-8')

    def to_toml(self) -> typing.Dict[str, typing.Any]:
        return {
            'project': {'project_id': self.project_id, 'name': self.name},
            'devices': {
                device_id: device.to_toml()
                for device_id, device in sorted(self.devices.items())
            },
        }

    def with_device(self, device: Device) -> 'ProjectRegistry':
        return attr.evolve(self, devices={**self.devices, device.device_id: device})

    def without_devices(self, device_ids: typing.Iterable[str]) -> 'ProjectRegistry':
        remove = set(device_ids)
        return attr.evolve(self, devices={
            device_id: device for device_id, device in self.devices.items()
            if device_id not in remove
        })

    def devices_for(self, email: str) -> typing.List[Device]:
        return sorted(
            (d for d in self.devices.values() if d.email == email),
            key=lambda d: d.name)

    def device_named(self, email: str, name: str) -> typing.Optional[Device]:
        for device in self.devices_for(email):
            if device.name == name:
                return device
        return None

    def unique_device_name(self, email: str, name: typing.Optional[str] = None) -> str:
        """Pick a device name for a user that none of their other devices use."""
        base = sanitize_device_name(name or socket.gethostname() or 'device')
        taken = {d.name for d in self.devices_for(email)}
        candidate, counter = base, 2
        while candidate in taken:
            candidate = f"{base}-{counter}"
            counter += 1
        return candidate


def sanitize_device_name(name: str) -> str:
    cleaned = re.sub(r'[^A-Za-z0-9._-]+', '-', name.strip().lower()).strip('-')
    return cleaned or 'device'


@attr.s(frozen=True, kw_only=True)
class ProjectEntry:
    device_id: str = attr.ib()
    device_name: str = attr.ib(default='')
    project_name: str = attr.ib(default='')


@attr.s(frozen=True, kw_only=True)
class UserConfig:
    user_id: str = attr.ib(factory=new_id)
    email: str = attr.ib(default='')
    projects: typing.Mapping[str, ProjectEntry] = attr.ib(factory=dict)

    @classmethod
    def load(cls, path: pathlib.Path) -> 'UserConfig':
        """Load the user config, or a fresh one if it does not exist yet."""
        if not path.exists():
            log.debug(f"No user config at {path}, using a new identity")
            return cls()

        data = load_toml(path)
        user = _table(data, 'user', path)
        projects = {}
        for project_id, table in _table(data, 'projects', path).items():
            if not isinstance(table, dict):
                raise ConfigInvalid(path, f"[projects.{project_id}] must be a table")
            projects[project_id] = ProjectEntry(
                device_id=_string(table, 'device_id', path),
                device_name=_string(table, 'device_name', path),
                project_name=_string(table, 'project_name', path))

        return cls(
            user_id=_string(user, 'user_id', path) or new_id(),
            email=_string(user, 'email', path),
            projects=projects)

    def save(self, path: pathlib.Path) -> None:
        save_toml(path, {
            'user': {'user_id': self.user_id, 'email': self.email},
            'projects': {
                project_id: {
                    'device_id': entry.device_id,
                    'device_name': entry.device_name,
                    'project_name': entry.project_name,
                }
                for project_id, entry in sorted(self.projects.items())
            },
        }, mode=0o600)

    def with_project(self, project_id: str, entry: ProjectEntry) -> 'UserConfig':
        return attr.evolve(self, projects={**self.projects, project_id: entry})

    def device_id(self, project_id: str) -> typing.Optional[str]:
        entry = self.projects.get(project_id)
        return entry.device_id if entry else None


EMAIL = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')


def is_valid_email(email: str) -> bool:
    return bool(EMAIL.match(email))
