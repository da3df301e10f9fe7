import enum
import json
import logging
import pathlib
import typing

import attr

from .cipher import DEFAULT_ITERATIONS
from .utils import StoreIOError

log = logging.getLogger(__name__)

STORE_DIRECTORY = '.credmatch-store'
MARKER = '.credmatch'
CREDENTIALS_FILE = 'credentials.enc'
MARKER_VERSION = 1


class StoreMode(enum.Enum):
    DEDICATED = 'dedicated'
    CURRENT_DIRECTORY = 'current-directory'


@attr.s(frozen=True, kw_only=True)
class Settings:
    """Everything a command needs to know about where and how to work."""

    directory: pathlib.Path = attr.ib(factory=pathlib.Path.cwd, converter=pathlib.Path)
    remote: str = attr.ib(default='origin')
    offline: bool = attr.ib(default=False)
    iterations: int = attr.ib(default=DEFAULT_ITERATIONS)

    @property
    def dedicated_path(self) -> pathlib.Path:
        return self.directory / STORE_DIRECTORY


def resolve_location(directory: pathlib.Path, mode: StoreMode) -> pathlib.Path:
    if mode is StoreMode.DEDICATED:
        return directory / STORE_DIRECTORY
    return directory


def write_marker(location: pathlib.Path, mode: StoreMode) -> pathlib.Path:
    marker = location / MARKER
    log.debug(f"Writing {mode.value} mode marker to {marker}")
    marker.write_text(json.dumps({'mode': mode.value, 'version': MARKER_VERSION}) + '\n')
    return marker


def read_marker(location: pathlib.Path) -> typing.Optional[StoreMode]:
    """Read the mode recorded in a store location, if there is one."""
    marker = location / MARKER
    if not marker.is_file():
        return None
    try:
        text = marker.read_text()
    except OSError as error:
        raise StoreIOError(f"Could not read {marker}: {error.strerror}") from error
    try:
        return StoreMode(json.loads(text)['mode'])
    except (ValueError, KeyError, TypeError):
        log.warning(f"Ignoring unreadable store marker {marker}")
        return None


def detect_mode(directory: pathlib.Path) -> typing.Optional[StoreMode]:
    """
    Work out which kind of store a directory uses.

    A marker in the dedicated store directory wins over one in the directory
    itself. Returns None when neither exists.
    """
    dedicated = read_marker(directory / STORE_DIRECTORY)
    if dedicated is StoreMode.DEDICATED:
        return dedicated
    here = read_marker(directory)
    if here is StoreMode.CURRENT_DIRECTORY:
        return here
    return None
