import functools
import logging
import os
import pathlib
import typing

import attr
import click

from . import __doc__, __version__, health, spells
from .config import Settings, UserConfig
from .context import Context, Options
from .crypto import PrivateKey
from .errors import ConfigInvalid, ConflictingOptions, PassphraseRequired
from .keeper import FileReport, SecretKeeper
from .store import Store
from .utils import find_project_directory, in_directory

log = logging.getLogger(__name__)

SEVERITY_COLOURS = {
    health.Severity.PASS: 'green',
    health.Severity.WARNING: 'yellow',
    health.Severity.ERROR: 'red',
}

STATUS_COLOURS = {
    health.DeviceStatus.ACTIVE: 'green',
    health.DeviceStatus.PENDING: 'yellow',
    health.DeviceStatus.ORPHAN: 'red',
    health.DeviceStatus.ABSENT: 'red',
}


@functools.lru_cache()
def rel(path: pathlib.Path) -> str:
    """
    Convert a path to a relative Path.

    Returns a string as these should only be used for presentation.
    """
    return os.path.relpath(path.as_posix(), pathlib.Path.cwd().as_posix())


def enc(path: pathlib.Path) -> str:
    """Style a path to an encrypted file."""
    return click.style(rel(path), fg='green')


def dec(path: pathlib.Path) -> str:
    """Style a path to a decrypted file."""
    return click.style(rel(path), fg='red')


class PathType(click.Path):
    def convert(self, value, param, ctx):
        return pathlib.Path(super().convert(value, param, ctx))


@attr.s(frozen=True)
class Invocation:
    """What the group knows before a command picks its options."""

    root: pathlib.Path = attr.ib()

    def context(self, dry_run: bool = False, force: bool = False) -> Context:
        return Context.open(
            self.root,
            settings=Settings(),
            options=Options(dry_run=dry_run, force=force, confirm=confirm))


def confirm(message: str) -> bool:
    return click.confirm(message, default=False)


def private_key(ctx: Context, stdin: bool) -> PrivateKey:
    """
    Load the invoking device's private key.

    A passphrase is taken from $MUFFLIATO_PASSPHRASE, or asked for when the
    key was not read from stdin.
    """
    data = click.get_binary_stream('stdin').read() if stdin else None
    passphrase = os.environ.get('MUFFLIATO_PASSPHRASE')
    try:
        return ctx.private_key(data, passphrase.encode('utf-8') if passphrase else None)
    except PassphraseRequired:
        if stdin:
            raise
        entered = click.prompt("Passphrase for the private key", hide_input=True)
        return ctx.private_key(data, entered.encode('utf-8'))


def show_dry_run(dry_run: bool) -> None:
    if dry_run:
        click.secho("Dry run - nothing was written", fg='yellow')


def show_report(report: FileReport, action: str, style: typing.Callable[[pathlib.Path], str]) -> None:
    if not (report.succeeded or report.skipped or report.failed):
        click.secho("No matching files", fg='yellow')
        return
    verb = f"Would have {action}" if report.dry_run else action.capitalize()
    for path in report.succeeded:
        click.echo(f"{verb} {style(path)}")
    for path in report.skipped:
        click.echo(f"Skipping {style(path)} as it is unchanged")
    for path, reason in report.failed.items():
        click.secho(f"Failed {rel(path)}: {reason}", fg='red', err=True)
    report.raise_for_failures()


dry_run_option = click.option(
    '-n', '--dry-run', 'dry_run',
    default=False,
    is_flag=True,
    help="Resolve and validate everything but write nothing.")

force_option = click.option(
    '-f', '--force', '-y', '--yes', 'force',
    default=False,
    is_flag=True,
    help="Do not ask for confirmation.")

private_key_option = click.option(
    '--private-key-stdin', 'stdin',
    default=False,
    is_flag=True,
    help="Read the private key from stdin instead of this machine's key store.")

patterns_argument = click.argument(
    'patterns',
    type=click.STRING,
    required=False,
    nargs=-1)

email_option = click.option(
    '-e', '--email',
    type=click.STRING,
    default=None,
    help="Your email address, remembered after the first use.")


def absolute(root: pathlib.Path, patterns: typing.Sequence[str]) -> typing.List[str]:
    """
    Make patterns absolute.

    Inside the project they are relative to the working directory, outside it
    (e.g. with --path) to the project root.
    """
    cwd = pathlib.Path.cwd()
    base = cwd if in_directory(cwd.resolve(), root.resolve()) else root
    return [os.path.join(base, pattern) for pattern in patterns]


@click.group(help=__doc__)
@click.option(
    '-p', '--path',
    type=PathType(
        file_okay=False,
        dir_okay=True,
        exists=True),
    default=find_project_directory,
    required=True,
    help="Defaults to the current git repository.")
@click.option(
    '-d', '--debug', 'debug',
    default=False,
    is_flag=True,
    help="Enable debug logging.")
@click.pass_context
def main(ctx, debug: bool, path: pathlib.Path):
    logging.basicConfig(level=(logging.DEBUG if debug else logging.WARNING))
    ctx.obj = Invocation(path)


@main.command()
def version():
    """Show the application version."""
    click.echo(f"muffliato {__version__}")


@main.command()
@click.option('--name', type=click.STRING, default=None, help="Defaults to the directory name.")
@email_option
@click.option('--device', 'device_name', type=click.STRING, default=None, help="Defaults to the hostname.")
@dry_run_option
@click.pass_obj
def init(
        invocation: Invocation,
        name: typing.Optional[str],
        email: typing.Optional[str],
        device_name: typing.Optional[str],
        dry_run: bool):
    """Set up a secret store in the project with this device as its first member."""
    ctx = invocation.context(dry_run=dry_run)
    registry = spells.init_project(ctx, name=name, email=email, device_name=device_name)
    click.echo(f"Created project {registry.name} in {rel(ctx.store.directory)}")
    show_dry_run(dry_run)


@main.command()
@email_option
@click.option('--device', 'device_name', type=click.STRING, default=None, help="Defaults to the hostname.")
@force_option
@dry_run_option
@click.pass_obj
def create(
        invocation: Invocation,
        email: typing.Optional[str],
        device_name: typing.Optional[str],
        force: bool,
        dry_run: bool):
    """
    Create a keypair for this device.

    The device is pending until someone with access registers it. Commit the
    new public key so they can.
    """
    ctx = invocation.context(dry_run=dry_run, force=force)
    keypair = spells.create(ctx, device_name=device_name, email=email)
    click.echo(f"Created a key with fingerprint {keypair.fingerprint[:16]}")
    if not dry_run:
        click.echo(f"Commit {rel(ctx.store.public_keys)} and ask someone with access to run "
                   f"'muffliato register {ctx.user.email}'")
    show_dry_run(dry_run)


@main.command()
@click.argument('identifier', type=click.STRING, required=False)
@click.option('--device', 'device_name', type=click.STRING, default=None, help="Only this device of the user.")
@click.option(
    '-k', '--key-file',
    type=PathType(dir_okay=False),
    default=None,
    help="Register the public key in this file.")
@click.option('-e', '--email', type=click.STRING, default=None, help="Owner of a new key file.")
@force_option
@dry_run_option
@private_key_option
@click.pass_obj
def register(
        invocation: Invocation,
        identifier: typing.Optional[str],
        device_name: typing.Optional[str],
        key_file: typing.Optional[pathlib.Path],
        email: typing.Optional[str],
        force: bool,
        dry_run: bool,
        stdin: bool):
    """
    Grant a user's devices (by email) or a device (by id) access.

    With --key-file, register a public key received some other way. A file
    named '<device id>.pub' registers that device; any other file registers a
    new device for --email.
    """
    if identifier and key_file:
        raise ConflictingOptions("Give either an email or device id, or --key-file, not both")
    if not identifier and not key_file:
        raise ConflictingOptions("Give an email, a device id or --key-file")

    ctx = invocation.context(dry_run=dry_run, force=force)
    key = private_key(ctx, stdin)
    if key_file:
        devices = [spells.register_key_file(ctx, key, key_file, email=email, name=device_name)]
    elif identifier in ctx.registry().devices or ctx.store.has_public_key(identifier):
        devices = [spells.register(ctx, key, identifier, email=email)]
    else:
        devices = spells.register_user(ctx, key, identifier, device_name)

    for device in devices:
        click.echo(f"Registered {click.style(str(device), fg='green')} ({device.device_id})")
    show_dry_run(dry_run)


@main.command()
@force_option
@dry_run_option
@private_key_option
@click.pass_obj
def rotate(invocation: Invocation, force: bool, dry_run: bool, stdin: bool):
    """Replace this device's keypair, keeping its access."""
    ctx = invocation.context(dry_run=dry_run, force=force)
    keypair = spells.rotate(ctx, private_key(ctx, stdin))
    click.echo(f"Rotated to a key with fingerprint {keypair.fingerprint[:16]}")
    show_dry_run(dry_run)


@main.command()
@click.option(
    '-x', '--exclude',
    metavar='ID',
    multiple=True,
    type=click.STRING,
    help="Do not give the new project key to this device.")
@dry_run_option
@private_key_option
@click.pass_obj
def sync(invocation: Invocation, exclude: typing.Sequence[str], dry_run: bool, stdin: bool):
    """Re-key the project and seal every secret again."""
    ctx = invocation.context(dry_run=dry_run)
    result = spells.sync(ctx, private_key(ctx, stdin), exclude=exclude)
    click.echo(f"Re-encrypted {result.files_changed} file(s) for {result.devices_changed} device(s)")
    show_dry_run(dry_run)


@main.command()
@click.argument('identifier', type=click.STRING, required=True)
@click.option('--device', 'device_name', type=click.STRING, default=None, help="Only this device of the user.")
@click.option(
    '--allow-lockout',
    default=False,
    is_flag=True,
    help="Allow revoking the last device with access. Nobody will be able to decrypt anything.")
@force_option
@dry_run_option
@private_key_option
@click.pass_obj
def revoke(
        invocation: Invocation,
        identifier: str,
        device_name: typing.Optional[str],
        allow_lockout: bool,
        force: bool,
        dry_run: bool,
        stdin: bool):
    """Remove a user's devices (by email) or a device (by id) and re-key the project."""
    ctx = invocation.context(dry_run=dry_run, force=force)
    device_ids = spells.find_device_ids(ctx, identifier, device_name)
    result = spells.revoke(ctx, private_key(ctx, stdin), device_ids, allow_lockout=allow_lockout)
    for device_id in result.revoked:
        click.echo(f"Revoked {click.style(device_id, fg='red')}")
    click.echo(f"Re-encrypted {result.files_changed} file(s) for {result.devices_remaining} device(s)")
    click.secho(result.warning, fg='yellow', err=True)
    show_dry_run(dry_run)


@main.command('rename-device')
@click.argument('identifier', type=click.STRING, required=True)
@click.argument('new_name', type=click.STRING, required=True)
@click.option('--device', 'device_name', type=click.STRING, default=None, help="The device to rename, by its current name.")
@dry_run_option
@click.pass_obj
def rename_device(
        invocation: Invocation,
        identifier: str,
        new_name: str,
        device_name: typing.Optional[str],
        dry_run: bool):
    """Rename a device, chosen by id or by its owner's email."""
    ctx = invocation.context(dry_run=dry_run)
    device = spells.rename_device(ctx, identifier, new_name, device_name)
    click.echo(f"Renamed {device.device_id} to {click.style(device.name, fg='green')}")
    show_dry_run(dry_run)


@main.command()
@force_option
@dry_run_option
@click.pass_obj
def clean(invocation: Invocation, force: bool, dry_run: bool):
    """Delete wrapped keys whose public key is gone."""
    ctx = invocation.context(dry_run=dry_run, force=force)
    result = health.clean(ctx)
    if not result.removed:
        click.echo("No orphaned wrapped keys")
    for device_id in result.removed:
        click.echo(f"{'Would delete' if dry_run else 'Deleted'} the wrapped key of {device_id}")
    show_dry_run(dry_run)


@main.command()
@click.pass_context
def doctor(click_ctx):
    """Check the project and this device for problems."""
    invocation = click_ctx.obj
    try:
        ctx = invocation.context()
    except ConfigInvalid as error:
        log.debug(f"Checking without the user config: {error.message}")
        ctx = Context(store=Store(invocation.root), settings=Settings(), user=UserConfig())
    report = health.doctor(ctx)
    for check in report.checks:
        label = click.style(f"[{check.severity}]", fg=SEVERITY_COLOURS[check.severity])
        click.echo(f"{label} {check.name}: {check.message}")
        if check.suggestion and check.severity is not health.Severity.PASS:
            click.echo(f"    {check.suggestion}")
    click_ctx.exit(report.exit_code)


@main.command()
@patterns_argument
@force_option
@dry_run_option
@private_key_option
@click.pass_obj
def encrypt(
        invocation: Invocation,
        patterns: typing.Sequence[str],
        force: bool,
        dry_run: bool,
        stdin: bool):
    """
    Create encrypted secrets from plaintext files.

    Patterns may be files, directories or globs. Without any, every plaintext
    secret in the project is encrypted.
    """
    ctx = invocation.context(dry_run=dry_run, force=force)
    report = SecretKeeper(ctx).encrypt(private_key(ctx, stdin), absolute(ctx.store.root, patterns))
    show_report(report, 'encrypted', enc)
    show_dry_run(dry_run)


@main.command()
@patterns_argument
@force_option
@dry_run_option
@private_key_option
@click.pass_obj
def decrypt(
        invocation: Invocation,
        patterns: typing.Sequence[str],
        force: bool,
        dry_run: bool,
        stdin: bool):
    """
    Create plaintext files from encrypted secrets.

    Patterns may be files, directories or globs. Without any, every encrypted
    secret in the project is decrypted.
    """
    ctx = invocation.context(dry_run=dry_run, force=force)
    report = SecretKeeper(ctx).decrypt(private_key(ctx, stdin), absolute(ctx.store.root, patterns))
    show_report(report, 'decrypted', dec)
    show_dry_run(dry_run)


@main.command()
@click.pass_obj
def status(invocation: Invocation):
    """List secret files and whether their ciphertext is up to date."""
    ctx = invocation.context()
    ctx.store.require()
    for entry in health.file_status(ctx.store):
        click.echo(f"{entry.state}: {enc(entry.secret.ciphertext)} -> {dec(entry.secret.plaintext)}")


@main.command()
@click.pass_obj
def access(invocation: Invocation):
    """List every device in the project and its access."""
    for device in health.access(invocation.context().store):
        state = click.style(str(device.status), fg=STATUS_COLOURS[device.status])
        click.echo(f"{device.email or '<unknown>'} {device.name or '-'} {device.device_id} {state}")


@main.command()
@click.pass_obj
def history(invocation: Invocation):
    """Show the audit log of changes to the store."""
    ctx = invocation.context()
    ctx.store.require()
    for event in ctx.audit.entries():
        details = ' '.join(
            f"{key}={value}" for key, value in event.items()
            if key not in ('ts', 'user', 'uuid', 'op'))
        click.echo(f"{event.get('ts')} {event.get('user')} {click.style(str(event.get('op')), bold=True)} {details}")
