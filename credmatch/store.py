import contextlib
import logging
import os
import pathlib
import shutil
import typing

import attr
import git

from .cipher import Cipher
from .config import (
    CREDENTIALS_FILE,
    MARKER,
    Settings,
    StoreMode,
    detect_mode,
    read_marker,
    resolve_location,
    write_marker,
)
from .ledger import Entry, Ledger
from .password import MasterPassword
from .sync import Divergence, Sync, SyncStatus, mask_url
from .utils import (
    CredmatchException,
    NotInitializedError,
    StoreIOError,
    UsageError,
    atomic_write,
    find_git_directory,
    git_exclude,
    validate_key,
    validate_remote_url,
    validate_value,
)

log = logging.getLogger(__name__)


def ensure_initialized(path: pathlib.Path, mode: StoreMode) -> None:
    """Raise NotInitializedError unless a store location is a usable git working tree."""
    if mode is StoreMode.DEDICATED:
        working_tree = find_git_directory(path) if path.is_dir() else None
        if working_tree is None or working_tree.resolve() != path.resolve():
            raise NotInitializedError(path.parent)
    elif not (path / '.git').exists():
        raise NotInitializedError(path)


def init(settings: Settings, url: typing.Optional[str]) -> 'Store':
    """Clone (or create) a dedicated store repository in the settings' directory."""
    if not url:
        raise UsageError("Missing repository URL: credmatch init <repo-url>")
    validate_remote_url(url)

    if detect_mode(settings.directory) is not None:
        raise UsageError(f"A credential store already exists in {settings.directory}")

    path = settings.dedicated_path
    if path.exists():
        raise UsageError(f"{path} already exists")

    try:
        try:
            log.info(f"Cloning {mask_url(url)} into {path}")
            git.Repo.clone_from(url, path, origin=settings.remote)
        except git.GitCommandError as error:
            log.warning("Could not clone the repository, creating a new one")
            log.debug(str(error.stderr or '').strip())
            shutil.rmtree(path, ignore_errors=True)
            repo = git.Repo.init(path)
            repo.create_remote(settings.remote, url)
        os.chmod(path, 0o700)
        write_marker(path, StoreMode.DEDICATED)
        git_exclude(path, f'/{MARKER}')
    except BaseException as error:
        shutil.rmtree(path, ignore_errors=True)
        if isinstance(error, (git.GitCommandError, OSError)):
            raise CredmatchException(f"Could not create a credential store in {path}") from error
        raise

    outer = find_git_directory(settings.directory, search_parent_directories=True)
    if outer is not None:
        relative = path.resolve().relative_to(outer.resolve()).as_posix()
        git_exclude(outer, f'/{relative}/')

    return Store.open(settings)


def init_here(settings: Settings) -> 'Store':
    """Use the settings' directory, which must be a git working tree, as the store."""
    directory = settings.directory
    if read_marker(settings.dedicated_path) is StoreMode.DEDICATED:
        raise UsageError(f"A dedicated credential store already exists in {directory}")
    if not (directory / '.git').exists():
        raise UsageError(f"{directory} is not a git working tree")

    if read_marker(directory) is StoreMode.CURRENT_DIRECTORY:
        log.info(f"{directory} is already a credential store")
    else:
        write_marker(directory, StoreMode.CURRENT_DIRECTORY)
        git_exclude(directory, f'/{MARKER}')

    return Store.open(settings)


@attr.s(frozen=True, kw_only=True)
class Store:
    mode: StoreMode = attr.ib()
    path: pathlib.Path = attr.ib()
    cipher: Cipher = attr.ib(factory=Cipher)
    sync: Sync = attr.ib(factory=Sync)

    @classmethod
    def open(cls, settings: Settings) -> 'Store':
        mode = detect_mode(settings.directory)
        if mode is None:
            raise NotInitializedError(settings.directory)
        path = resolve_location(settings.directory, mode)
        ensure_initialized(path, mode)
        log.debug(f"Using {mode.value} store in {path}")
        return cls(
            mode=mode,
            path=path,
            cipher=Cipher(iterations=settings.iterations),
            sync=Sync(remote=settings.remote, offline=settings.offline))

    @property
    def credentials(self) -> pathlib.Path:
        return self.path / CREDENTIALS_FILE

    @property
    def exists(self) -> bool:
        return self.credentials.exists()

    def read_encrypted(self) -> typing.Optional[str]:
        """Return the encrypted text, or None if nothing has been stored yet."""
        try:
            return self.credentials.read_text(encoding='utf-8', errors='replace')
        except FileNotFoundError:
            return None
        except OSError as error:
            raise StoreIOError(f"Could not read {self.credentials.name}: {error.strerror}") from error

    def write_encrypted(self, text: str) -> None:
        atomic_write(self.credentials, text)

    def pull(self) -> bool:
        return self.sync.pull_latest(self.path)

    def load(self, password: MasterPassword) -> Ledger:
        text = self.read_encrypted()
        if text is None:
            log.info("No credentials have been stored yet")
            return Ledger()
        return Ledger.parse(self.cipher.decrypt(password, text))

    @contextlib.contextmanager
    def session(self, password: MasterPassword) -> typing.Iterator[Ledger]:
        """Load the ledger, and forget it when the block exits."""
        ledger = self.load(password)
        try:
            yield ledger
        finally:
            ledger.clear()

    def reconcile(self, password: MasterPassword, ledger: Ledger, merge: Divergence) -> None:
        theirs = Ledger() if merge.theirs is None else Ledger.parse(self.cipher.decrypt(password, merge.theirs))
        base = Ledger() if merge.base is None else Ledger.parse(self.cipher.decrypt(password, merge.base))
        try:
            ledger.merge(theirs, base)
        finally:
            theirs.clear()
            base.clear()

    def store(self, password: MasterPassword, key: str, value: str) -> bool:
        """
        Set a credential, write the store and publish it.

        Returns True if the change reached the remote.
        """
        validate_key(key)
        validate_value(value)
        with self.session(password) as ledger:
            merge = self.sync.divergence(self.path, self.credentials)
            if merge is not None:
                self.reconcile(password, ledger, merge)
            ledger.upsert(key, value)
            self.write_encrypted(self.cipher.encrypt(password, ledger.serialize()))
        log.info(f"Stored {key} in {self.credentials}")
        return self.sync.publish(
            self.path, [self.credentials], f"Update credential {key}", merge=merge)

    def fetch(self, password: MasterPassword, key: str) -> str:
        with self.session(password) as ledger:
            return ledger.lookup(key)

    def entries(self, password: MasterPassword) -> typing.Sequence[Entry]:
        with self.session(password) as ledger:
            return ledger.all()

    def synchronise(self) -> typing.Tuple[bool, bool]:
        """Pull the remote's changes and push any local commits it is missing."""
        pulled = self.pull()
        pushed = self.sync.push_pending(self.path) if pulled else False
        return pulled, pushed

    def status(self) -> SyncStatus:
        return self.sync.status(self.path)
