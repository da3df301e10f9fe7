import pathlib
import typing

import attr
import click.testing
import git
import pytest

import credmatch.cli
from credmatch.cipher import Cipher
from credmatch.config import Settings
from credmatch.password import MasterPassword

PASSWORD = 'correct horse battery'
ITERATIONS = 1000


@pytest.fixture(autouse=True)
def environment(monkeypatch):
    """Isolate git from the user's configuration and keep key derivation fast."""
    monkeypatch.setenv('GIT_CONFIG_GLOBAL', '/dev/null')
    monkeypatch.setenv('GIT_CONFIG_NOSYSTEM', '1')
    monkeypatch.setenv('GIT_AUTHOR_NAME', 'Credmatch Tests')
    monkeypatch.setenv('GIT_AUTHOR_EMAIL', 'tests@credmatch.invalid')
    monkeypatch.setenv('GIT_COMMITTER_NAME', 'Credmatch Tests')
    monkeypatch.setenv('GIT_COMMITTER_EMAIL', 'tests@credmatch.invalid')
    monkeypatch.setenv('CREDMATCH_ITERATIONS', str(ITERATIONS))
    for name in ('CREDMATCH_DIRECTORY', 'CREDMATCH_REMOTE', 'CREDMATCH_OFFLINE'):
        monkeypatch.delenv(name, raising=False)


@attr.s(frozen=True)
class Credmatch:
    """Run the command line against one directory."""

    directory: pathlib.Path = attr.ib()

    def __call__(
            self,
            *arguments: str,
            input: typing.Optional[str] = None,
            exit_code: int = 0) -> click.testing.Result:
        assert all(isinstance(arg, str) for arg in arguments)
        runner = click.testing.CliRunner()
        result = runner.invoke(
            credmatch.cli.main,
            ['-C', self.directory.as_posix(), *arguments],
            input=input)
        if result.exit_code != exit_code:
            message = (f"Command credmatch {' '.join(arguments)} exited with "
                       f"{result.exit_code}, expected {exit_code}:\n{result.output}")
            raise Exception(message) from result.exception
        return result

    @property
    def store_path(self) -> pathlib.Path:
        return self.directory / '.credmatch-store'


@pytest.fixture()
def cipher() -> Cipher:
    return Cipher(iterations=ITERATIONS)


@pytest.fixture()
def passphrase() -> str:
    return PASSWORD


@pytest.fixture()
def password():
    with MasterPassword.from_text(PASSWORD) as secret:
        yield secret


@pytest.fixture()
def workspace(tmp_path) -> pathlib.Path:
    path = tmp_path / 'workspace'
    path.mkdir()
    return path


@pytest.fixture()
def settings(workspace) -> Settings:
    return Settings(directory=workspace, iterations=ITERATIONS)


@pytest.fixture()
def invoke(workspace) -> Credmatch:
    return Credmatch(workspace)


@pytest.fixture()
def here(workspace, invoke) -> Credmatch:
    """A store using a fresh git working tree without a remote."""
    git.Repo.init(workspace)
    invoke('init-here')
    return invoke


@pytest.fixture()
def remote(tmp_path) -> pathlib.Path:
    path = tmp_path / 'remote.git'
    git.Repo.init(path, bare=True)
    return path


@pytest.fixture()
def clone(tmp_path, remote) -> typing.Callable[[str], Credmatch]:
    """Create a dedicated store cloned from the shared remote."""
    def clone_func(name: str) -> Credmatch:
        directory = tmp_path / name
        directory.mkdir()
        invoke = Credmatch(directory)
        invoke('init', remote.as_posix())
        return invoke

    return clone_func
