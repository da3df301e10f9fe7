import functools
import logging
import os.path
import pathlib
import signal
import typing

import click

from . import __doc__, __version__
from .cipher import DEFAULT_ITERATIONS, MAX_ITERATIONS
from .config import Settings
from .password import MasterPassword
from .store import Store
from .store import init as create_store
from .store import init_here as adopt_store
from .utils import (
    MIN_PASSWORD_LENGTH,
    SyncConflictError,
    UsageError,
    ValidationError,
    validate_key,
    validate_value,
)

log = logging.getLogger(__name__)


@functools.lru_cache()
def rel(path: pathlib.Path) -> str:
    """
    Convert a path to a relative Path.

    Returns a string as these should only be used for presentation.
    """
    return os.path.relpath(path.as_posix(), pathlib.Path.cwd().as_posix())


class PathType(click.Path):
    def convert(self, value, param, ctx):
        return pathlib.Path(super().convert(value, param, ctx))


class CommandGroup(click.Group):
    """A command group that exits with status 1 for unknown commands."""

    def resolve_command(self, ctx, args):
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError as error:
            raise UsageError(error.format_message()) from error


def interrupt(signum, frame):
    raise KeyboardInterrupt


def master_password(password: typing.Optional[str], new: bool = False) -> MasterPassword:
    """
    Take the master password from the command line or prompt for it.

    A new store asks for the password twice and requires a minimum length.
    """
    if password is not None:
        log.warning("Passing the master password as an argument can expose it "
                    "to other users and to your shell history")
    else:
        password = click.prompt(
            "New master password" if new else "Master password",
            hide_input=True,
            confirmation_prompt=new,
            err=True)

    if not password:
        raise UsageError("The master password cannot be empty")
    if new and len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"The master password must be at least {MIN_PASSWORD_LENGTH} characters")

    return MasterPassword.from_text(password)


password_argument = click.argument(
    'password',
    required=False,
    default=None)


@click.group(cls=CommandGroup, help=__doc__)
@click.option(
    '-C', '--directory',
    type=PathType(
        file_okay=False,
        dir_okay=True,
        exists=True),
    envvar='CREDMATCH_DIRECTORY',
    default='.',
    help="Directory containing the store. Defaults to the current directory.")
@click.option(
    '--remote',
    envvar='CREDMATCH_REMOTE',
    default='origin',
    show_default=True,
    help="Name of the git remote to sync with.")
@click.option(
    '--offline',
    envvar='CREDMATCH_OFFLINE',
    default=False,
    is_flag=True,
    help="Commit changes locally without pulling or pushing.")
@click.option(
    '--iterations',
    envvar='CREDMATCH_ITERATIONS',
    type=click.IntRange(1, MAX_ITERATIONS),
    default=DEFAULT_ITERATIONS,
    hidden=True)
@click.option(
    '-d', '--debug', 'debug',
    default=False,
    is_flag=True,
    help="Enable debug logging.")
@click.pass_context
def main(
        ctx,
        directory: pathlib.Path,
        remote: str,
        offline: bool,
        iterations: int,
        debug: bool):
    logging.basicConfig(level=(logging.DEBUG if debug else logging.WARNING))
    signal.signal(signal.SIGTERM, interrupt)
    ctx.obj = Settings(
        directory=directory.resolve(),
        remote=remote,
        offline=offline,
        iterations=iterations)


@main.command()
def version():
    """Show the application version."""
    click.echo(f"credmatch {__version__}")


@main.command()
@click.argument('url', required=False)
@click.pass_obj
def init(settings: Settings, url: typing.Optional[str]):
    """Clone or create a credential repository in .credmatch-store."""
    store = create_store(settings, url)
    click.echo(f"Initialised credential store in {rel(store.path)}", err=True)


@main.command()
@click.pass_obj
def init_here(settings: Settings):
    """Use the current git working tree as the credential repository."""
    store = adopt_store(settings)
    click.echo(f"Using {rel(store.path)} as the credential store", err=True)


@main.command()
@click.argument('key', required=False)
@click.argument('value', required=False)
@password_argument
@click.pass_obj
def store(
        settings: Settings,
        key: typing.Optional[str],
        value: typing.Optional[str],
        password: typing.Optional[str]):
    """
    Store a credential, replacing any existing value.

    The change is committed to the store's repository and pushed.
    """
    if not key or not value:
        raise UsageError("Usage: credmatch store <key> <value> [password]")
    validate_key(key)
    validate_value(value)

    backend = Store.open(settings)
    backend.pull()
    with master_password(password, new=not backend.exists) as secret:
        pushed = backend.store(secret, key, value)

    if pushed:
        click.echo(f"Stored {key}", err=True)
    else:
        click.secho(f"Stored {key} locally, it has not been pushed", fg='yellow', err=True)


@main.command()
@click.argument('key', required=False)
@password_argument
@click.pass_obj
def fetch(
        settings: Settings,
        key: typing.Optional[str],
        password: typing.Optional[str]):
    """Print the value of a credential."""
    if not key:
        raise UsageError("Usage: credmatch fetch <key> [password]")

    backend = Store.open(settings)
    backend.pull()
    with master_password(password) as secret:
        value = backend.fetch(secret, key)
    click.echo(value)


@main.command(name='list')
@password_argument
@click.pass_obj
def list_(settings: Settings, password: typing.Optional[str]):
    """Print all credentials as key=value lines."""
    backend = Store.open(settings)
    backend.pull()
    if not backend.exists:
        click.echo("No credentials stored", err=True)
        return

    with master_password(password) as secret, backend.session(secret) as ledger:
        if not ledger:
            click.echo("No credentials stored", err=True)
        for key, value in ledger:
            click.echo(f"{key}={value}")


@main.command()
@click.pass_obj
def sync(settings: Settings):
    """Pull remote changes and push local ones."""
    backend = Store.open(settings)
    try:
        pulled, pushed = backend.synchronise()
    except SyncConflictError as error:
        log.warning(error.format_message())
        pulled = pushed = False

    if pulled and pushed:
        click.echo(f"Store is up to date with {settings.remote}", err=True)
    else:
        click.secho("Could not sync, using local credentials", fg='yellow', err=True)


@main.command()
@click.pass_obj
def status(settings: Settings):
    """Show the store's location and repository state."""
    backend = Store.open(settings)
    info = backend.status()
    click.echo(f"Mode:         {backend.mode.value}")
    click.echo(f"Location:     {rel(backend.path)}")
    click.echo(f"Credentials:  {'present' if backend.exists else 'none stored yet'}")
    click.echo(f"Remote:       {info.remote or 'none'}")
    click.echo(f"Branch:       {info.branch or 'detached'}")
    click.echo(f"Working tree: {info.working_tree}")
    if info.ahead is not None:
        click.echo(f"Ahead/behind: {info.ahead}/{info.behind}")
    click.echo(f"Last commit:  {info.last_commit or 'none'}")
