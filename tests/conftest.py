import pathlib
import typing

import attr
import click.testing
import pytest

import muffliato.cli
from muffliato import spells
from muffliato.config import Settings
from muffliato.context import Confirm, Context, Options, never
from muffliato.crypto import PrivateKey


def write(path: pathlib.Path, content: str) -> pathlib.Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


@attr.s(frozen=True)
class Machine:
    """One device working on the shared project, with its own config and keys."""

    name: str = attr.ib()
    email: str = attr.ib()
    root: pathlib.Path = attr.ib()
    settings: Settings = attr.ib()

    def __str__(self):
        return self.name

    def context(self, dry_run: bool = False, force: bool = False, confirm: Confirm = never) -> Context:
        return Context.open(
            self.root,
            settings=self.settings,
            options=Options(dry_run=dry_run, force=force, confirm=confirm))

    def private_key(self) -> PrivateKey:
        return self.context().private_key()

    def device_id(self) -> str:
        return self.context().device_id()

    @property
    def env(self) -> typing.Dict[str, str]:
        return {
            'MUFFLIATO_CONFIG_DIR': str(self.settings.config_dir),
            'MUFFLIATO_DATA_DIR': str(self.settings.data_dir),
        }


@pytest.fixture()
def project(tmp_path) -> pathlib.Path:
    root = tmp_path / 'project'
    root.mkdir()
    return root


@pytest.fixture()
def machine(tmp_path, project):
    def machine_func(name: str, email: str) -> Machine:
        return Machine(
            name=name,
            email=email,
            root=project,
            settings=Settings(
                config_dir=tmp_path / 'machines' / name / 'config',
                data_dir=tmp_path / 'machines' / name / 'data'))

    return machine_func


@pytest.fixture()
def alice(machine) -> Machine:
    """The device that set the project up, and so has access."""
    alice = machine('alice', 'alice@example.com')
    spells.init_project(alice.context(), email=alice.email, device_name='laptop')
    return alice


@pytest.fixture()
def bob(machine, alice) -> Machine:
    """A second device that has created a key but not been registered yet."""
    bob = machine('bob', 'bob@example.com')
    spells.create(bob.context(), email=bob.email, device_name='desktop')
    return bob


@pytest.fixture()
def secrets(project) -> typing.Dict[str, pathlib.Path]:
    return {
        'root': write(project / '.env', "KEY=value\n"),
        'app': write(project / 'app' / 'prod.env', "DATABASE_URL=postgres://db/app\n"),
        'local': write(project / 'app' / '.env.local', "DEBUG=1\n"),
    }


@pytest.fixture()
def invoke(project):
    def invoke_func(
            machine: Machine,
            arguments: typing.Sequence[str],
            input: typing.Optional[typing.Union[str, bytes]] = None,
            exit_code: int = 0) -> typing.List[str]:
        assert all(isinstance(arg, str) for arg in arguments)
        runner = click.testing.CliRunner()
        result = runner.invoke(
            muffliato.cli.main,
            ['-p', str(project), *arguments],
            env=machine.env,
            input=input)
        if result.exit_code != exit_code:
            message = f"Command muffliato {' '.join(arguments)} exited with {result.exit_code}:\n{result.output}"
            raise Exception(message) from result.exception
        return result.output.splitlines()

    return invoke_func
