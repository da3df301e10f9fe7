"""Use a credential store from Python without going through the command line."""

import pathlib
import typing

from .config import Settings
from .password import MasterPassword
from .store import Store


def fetch(directory: pathlib.Path, key: str, password: str, **settings) -> str:
    backend = Store.open(Settings(directory=directory, **settings))
    backend.pull()
    with MasterPassword.from_text(password) as secret:
        return backend.fetch(secret, key)


def store(directory: pathlib.Path, key: str, value: str, password: str, **settings) -> bool:
    backend = Store.open(Settings(directory=directory, **settings))
    backend.pull()
    with MasterPassword.from_text(password) as secret:
        return backend.store(secret, key, value)


def entries(directory: pathlib.Path, password: str, **settings) -> typing.Dict[str, str]:
    backend = Store.open(Settings(directory=directory, **settings))
    backend.pull()
    with MasterPassword.from_text(password) as secret:
        return dict(backend.entries(secret))
