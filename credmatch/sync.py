"""
Synchronise a credential store with its git remote.

Pulling is best effort: when the remote cannot be reached or its changes
cannot be merged the local copy of the store is used as it is. Publishing
always commits locally; a push that fails for network reasons is only a
warning, but a push the remote rejects because it has moved on raises a
SyncConflictError so that the change is not silently left behind.
"""

import logging
import pathlib
import re
import typing

import attr
import git

from .utils import CredmatchException, NotInitializedError, SyncConflictError

log = logging.getLogger(__name__)

REJECTED = git.PushInfo.REJECTED | git.PushInfo.REMOTE_REJECTED
CONFLICT_MARKERS = ('[rejected]', 'non-fast-forward', 'fetch first')


def mask_url(url: str) -> str:
    """Hide any credentials embedded in a remote URL."""
    return re.sub(r'//[^/@]+@', '//***@', url)


@attr.s(frozen=True, kw_only=True)
class SyncStatus:
    remote: typing.Optional[str] = attr.ib()
    branch: typing.Optional[str] = attr.ib()
    working_tree: str = attr.ib()
    last_commit: typing.Optional[str] = attr.ib()
    ahead: typing.Optional[int] = attr.ib(default=None)
    behind: typing.Optional[int] = attr.ib(default=None)


@attr.s(frozen=True, kw_only=True)
class Divergence:
    """The remote's and the common ancestor's copy of a diverged file."""

    ref: str = attr.ib()
    theirs: typing.Optional[str] = attr.ib(repr=False)
    base: typing.Optional[str] = attr.ib(repr=False)


@attr.s(frozen=True)
class Sync:
    remote: str = attr.ib(default='origin')
    offline: bool = attr.ib(default=False)

    @staticmethod
    def repo(path: pathlib.Path) -> git.Repo:
        try:
            return git.Repo(path)
        except (git.exc.InvalidGitRepositoryError, git.exc.NoSuchPathError):
            raise NotInitializedError(path) from None

    @staticmethod
    def branch(repo: git.Repo) -> typing.Optional[str]:
        try:
            return repo.active_branch.name
        except TypeError:
            return None

    def find_remote(self, repo: git.Repo) -> typing.Optional[git.Remote]:
        try:
            return repo.remote(self.remote)
        except ValueError:
            return None

    @staticmethod
    def has_ref(repo: git.Repo, ref: str) -> bool:
        try:
            repo.git.rev_parse('--verify', '--quiet', ref)
        except git.GitCommandError:
            return False
        return True

    @staticmethod
    def warn(message: str, error: git.GitCommandError) -> None:
        log.warning(message)
        for line in str(error.stderr or '').splitlines():
            if line.strip():
                log.debug(line.strip())

    def pull_latest(self, path: pathlib.Path) -> bool:
        """
        Merge the remote's copy of the current branch into the store.

        Returns True when the store is up to date with the remote.
        """
        if self.offline:
            log.debug("Offline, not pulling")
            return False

        repo = self.repo(path)
        remote = self.find_remote(repo)
        if remote is None:
            log.info(f"No remote named {self.remote}, using local credentials")
            return False

        branch = self.branch(repo)
        if branch is None:
            log.warning("HEAD is detached, not pulling")
            return False

        log.info(f"Fetching from {remote.name}")
        try:
            repo.git.fetch(remote.name)
        except git.GitCommandError as error:
            self.warn(f"Could not fetch from {remote.name}, using local credentials", error)
            return False

        if not self.has_ref(repo, f'refs/remotes/{remote.name}/{branch}'):
            log.info(f"{remote.name} has no branch {branch} yet")
            return True

        try:
            repo.git.pull('--no-rebase', '--no-edit', remote.name, branch)
        except git.GitCommandError as error:
            self.warn(f"Could not merge {remote.name}/{branch}, using local credentials", error)
            self.abort_merge(repo)
            return False

        log.info(f"Merged {remote.name}/{branch}")
        return True

    @staticmethod
    def abort_merge(repo: git.Repo) -> None:
        if (pathlib.Path(repo.git_dir) / 'MERGE_HEAD').exists():
            log.info("Aborting conflicted merge")
            repo.git.merge('--abort')

    def commit(self, repo: git.Repo, paths: typing.Sequence[str], message: str) -> None:
        log.debug(f"Committing {', '.join(paths)}")
        repo.git.add('--', *paths)
        repo.git.commit('-m', message, '--', *paths)

    def push(self, repo: git.Repo) -> bool:
        remote = self.find_remote(repo)
        if remote is None:
            log.info(f"No remote named {self.remote}, changes are only stored locally")
            return False

        if self.offline:
            log.debug("Offline, not pushing")
            return False

        branch = self.branch(repo)
        if branch is None:
            return False
        if not repo.head.is_valid():
            log.debug("Nothing committed yet, not pushing")
            return True

        log.info(f"Pushing {branch} to {remote.name}")
        try:
            infos = remote.push(refspec=f'{branch}:{branch}', set_upstream=True)
        except git.GitCommandError as error:
            if any(marker in str(error.stderr) for marker in CONFLICT_MARKERS):
                raise self.conflict(remote.name) from None
            self.warn(f"Could not push to {remote.name}", error)
            log.warning("Changes are committed locally, run 'credmatch sync' to push them later")
            return False

        for info in infos:
            if info.flags & REJECTED:
                raise self.conflict(remote.name)
            if info.flags & git.PushInfo.ERROR:
                log.warning(f"Could not push to {remote.name}: {info.summary.strip()}")
                return False
        return True

    @staticmethod
    def conflict(remote: str) -> SyncConflictError:
        return SyncConflictError(
            f"{remote} has changes that are not in the local store - "
            f"the change is committed locally, run 'credmatch store' "
            f"again to merge them and retry")

    @staticmethod
    def relative(repo: git.Repo, file: pathlib.Path) -> str:
        return file.resolve().relative_to(pathlib.Path(repo.working_dir).resolve()).as_posix()

    @staticmethod
    def show(commit: git.Commit, path: str) -> typing.Optional[str]:
        try:
            return (commit.tree / path).data_stream.read().decode('utf-8')
        except KeyError:
            return None

    def divergence(self, path: pathlib.Path, file: pathlib.Path) -> typing.Optional[Divergence]:
        """
        Find remote changes to a file that a pull could not bring in.

        Only applies when the local branch and its remote tracking branch have
        both moved on, and the file is the only thing that differs between
        them. Uses the last fetched state of the remote.
        """
        repo = self.repo(path)
        branch = self.branch(repo)
        if self.find_remote(repo) is None or branch is None or not repo.head.is_valid():
            return None

        ref = f'{self.remote}/{branch}'
        if not self.has_ref(repo, f'refs/remotes/{ref}'):
            return None

        ours, theirs = repo.head.commit, repo.commit(ref)
        bases = repo.merge_base(ours, theirs)
        if ours == theirs or (bases and bases[0] == theirs):
            return None

        relative = self.relative(repo, file)
        changed: typing.Set[str] = set()
        for diff in ours.diff(theirs):
            changed.update(p for p in (diff.a_path, diff.b_path) if p)
        if changed - {relative}:
            log.warning(f"{ref} has diverged with changes to other files, not merging")
            return None

        log.info(f"{ref} has diverged, merging credentials")
        return Divergence(
            ref=ref,
            theirs=self.show(theirs, relative),
            base=self.show(bases[0], relative) if bases else None)

    def publish(
            self,
            path: pathlib.Path,
            files: typing.Sequence[pathlib.Path],
            message: str,
            merge: typing.Optional[Divergence] = None) -> bool:
        """
        Commit changed files and push them, returning True if the push succeeded.

        With a merge the commit gets the diverged remote branch as a second
        parent, so that the push is a fast-forward.
        """
        repo = self.repo(path)
        paths = [self.relative(repo, f) for f in files]
        try:
            if merge is None:
                self.commit(repo, paths, message)
            else:
                log.debug(f"Committing {', '.join(paths)} as a merge with {merge.ref}")
                repo.git.add('--', *paths)
                repo.index.commit(
                    f"{message} (merged with {merge.ref})",
                    parent_commits=[repo.head.commit, repo.commit(merge.ref)],
                    head=True)
        except git.GitCommandError as error:
            for line in str(error.stderr or '').splitlines():
                log.debug(line)
            raise CredmatchException(
                f"Could not commit to the store repository (git exited with {error.status})") from error
        return self.push(repo)

    def push_pending(self, path: pathlib.Path) -> bool:
        """Push commits left behind by an earlier failed push."""
        return self.push(self.repo(path))

    def status(self, path: pathlib.Path) -> SyncStatus:
        """Describe the store's repository without touching the network."""
        repo = self.repo(path)
        remote = self.find_remote(repo)
        branch = self.branch(repo)

        last_commit = None
        if repo.head.is_valid():
            commit = repo.head.commit
            last_commit = (f"{commit.hexsha[:8]} {commit.summary} "
                           f"({commit.committed_datetime:%Y-%m-%d %H:%M})")

        ahead = behind = None
        tracking = f'refs/remotes/{self.remote}/{branch}'
        if remote is not None and branch and repo.head.is_valid() and self.has_ref(repo, tracking):
            counts = repo.git.rev_list('--left-right', '--count', f'{branch}...{tracking}')
            ahead, behind = (int(n) for n in counts.split())

        return SyncStatus(
            remote=mask_url(remote.url) if remote is not None else None,
            branch=branch,
            working_tree='dirty' if repo.is_dirty() else 'clean',
            last_commit=last_commit,
            ahead=ahead,
            behind=behind)
