import logging
import os
import pathlib
import re
import tempfile
import typing

import click
import git

log = logging.getLogger(__name__)

MAX_KEY_LENGTH = 256
MIN_PASSWORD_LENGTH = 8

CONTROL_CHARACTERS = re.compile(r'[\x00-\x1f\x7f]')
REMOTE_URL = re.compile(r'^(https://|ssh://|file://|git@[A-Za-z0-9._-]+:)\S+$')


class CredmatchException(click.ClickException):
    exit_code = 1


class UsageError(CredmatchException):
    """A required argument is missing or the invocation makes no sense."""


class ValidationError(UsageError):
    """An argument was given but is not acceptable."""
    exit_code = 3


class NotInitializedError(CredmatchException):
    def __init__(self, directory: pathlib.Path):
        super().__init__(
            f"No credential store in {directory} - "
            f"run 'credmatch init <url>' or 'credmatch init-here' first")


class DecryptionError(CredmatchException):
    def __init__(self, reason: str = "wrong master password or corrupt store"):
        super().__init__(f"Could not decrypt credentials: {reason}")


class NotFoundError(CredmatchException):
    exit_code = 4

    def __init__(self, key: str):
        super().__init__(f"No credential named {key}")


class SyncConflictError(CredmatchException):
    """The remote moved on since our last pull and rejected a push."""


class StoreIOError(CredmatchException):
    pass


def find_git_directory(
        path: pathlib.Path,
        search_parent_directories: bool = False) -> typing.Optional[pathlib.Path]:
    """Return the working tree containing a path, or None."""
    try:
        repo = git.Repo(path, search_parent_directories=search_parent_directories)
    except (git.exc.InvalidGitRepositoryError, git.exc.NoSuchPathError):
        return None
    if repo.bare:
        return None
    return pathlib.Path(repo.working_dir)


def git_exclude(repo_path: pathlib.Path, pattern: str) -> None:
    """Add a pattern to a repository's .git/info/exclude if it is missing."""
    repo = git.Repo(repo_path)
    exclude = pathlib.Path(repo.git_dir) / 'info' / 'exclude'
    lines = exclude.read_text().splitlines() if exclude.exists() else []
    if pattern in lines:
        return
    log.debug(f"Excluding {pattern} in {exclude}")
    exclude.parent.mkdir(parents=True, exist_ok=True)
    with exclude.open('a') as f:
        if lines and lines[-1]:
            f.write('\n')
        f.write(f"{pattern}\n")


def atomic_write(path: pathlib.Path, text: str) -> None:
    """
    Replace the contents of a file without ever exposing a partial write.

    The text is written to a temporary file (mode 0600) in the same directory,
    flushed to disk and renamed over the target. On failure the temporary file
    is removed and the previous contents of the target are left untouched.
    """
    log.debug(f"Writing {path} atomically")
    try:
        fd, temp_path = tempfile.mkstemp(
            prefix=f'.{path.name}.',
            suffix='.tmp',
            dir=str(path.parent))
    except OSError as error:
        raise StoreIOError(f"Could not write {path.name}: {error.strerror}") from error

    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            os.fchmod(f.fileno(), 0o600)
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except BaseException as error:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        if isinstance(error, OSError):
            raise StoreIOError(f"Could not write {path.name}: {error.strerror}") from error
        raise


def validate_key(key: str) -> None:
    if not key:
        raise ValidationError("Credential names cannot be empty")
    if len(key) > MAX_KEY_LENGTH:
        raise ValidationError(
            f"Credential names cannot be longer than {MAX_KEY_LENGTH} characters")
    if '=' in key:
        raise ValidationError("Credential names cannot contain '='")
    if CONTROL_CHARACTERS.search(key):
        raise ValidationError("Credential names cannot contain control characters")


def validate_value(value: str) -> None:
    if CONTROL_CHARACTERS.search(value):
        raise ValidationError(
            "Credential values cannot contain line breaks or control characters")


def validate_remote_url(url: str) -> None:
    """Accept the URL forms git can clone from: remote URLs or a local path."""
    if REMOTE_URL.match(url) or pathlib.Path(url).expanduser().exists():
        return
    raise ValidationError(
        "Invalid repository URL - expected https://, ssh://, "
        "git@host:path, file:// or an existing local path")
