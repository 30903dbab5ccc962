"""Synchronization orchestrator.

A push runs under the work tree lock and moves through these steps:

1. Read the sync cookie and the current HEAD / merge base.
2. If the git state is unchanged and an fsmonitor helper is configured, try
   the fast path. A usable answer means the mirror's tree shape is intact and
   no remote reset is needed.
3. Otherwise reconcile the mirror (remote script, on a worker thread) while
   collecting changes with git locally. The local result is awaited first.
4. Transfer the change set, if any.
5. Persist the cookie if anything was sent or the git state moved.
6. Give the speculative fetch a short grace period, then unlock.
"""

import fcntl
import logging
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from pathlib import Path

from .changes import ChangeSet, changes_via_fsmonitor, changes_via_status
from .config import Config
from .constants import APP_NAME, BACKGROUND_GRACE, GIT_DIR_NAME, LOCK_FILE_NAME
from .cookie import read_sync_cookie, write_sync_cookie
from .errors import LockError, SyncError
from .git_wrapper import GitRepo
from .process import BackgroundTask, Runner
from .remote import fetch_command, run_remote, sync_command
from .transfer import pull_files, push_files

logger = logging.getLogger(APP_NAME)


def find_workdir(start: Path | None = None) -> Path:
    """Walks up from `start` (default: cwd) to the directory holding `.git`.

    Raises:
        SyncError: If no enclosing work tree exists.
    """
    current = (start or Path.cwd()).resolve()
    for candidate in (current, *current.parents):
        if (candidate / GIT_DIR_NAME).exists():
            return candidate
    raise SyncError(f"Not inside a git work tree: {current}")


@contextmanager
def workdir_lock(repo: GitRepo, wait: bool = True) -> Iterator[Path]:
    """Holds the work tree's advisory sync lock.

    Args:
        repo (GitRepo): The local work tree.
        wait (bool, optional): Block until the lock is free. When False, a
                               busy lock raises immediately.

    Yields:
        Path: The lock file.

    Raises:
        LockError: If `wait` is False and another run holds the lock.
    """
    lock_path = repo.git_dir / LOCK_FILE_NAME
    with open(lock_path, "a") as f:
        flags = fcntl.LOCK_EX if wait else fcntl.LOCK_EX | fcntl.LOCK_NB
        try:
            fcntl.flock(f.fileno(), flags)
        except BlockingIOError as e:
            raise LockError(
                f"Another sync is running in {repo.path} (lock: {lock_path})"
            ) from e
        try:
            yield lock_path
        finally:
            fcntl.flock(f.fileno(), fcntl.LOCK_UN)


class Syncer:
    """Runs push and pull synchronizations for one resolved configuration.

    Attributes:
        config (Config): The invocation's configuration.
        runner (Runner): Executes every external command.
    """

    def __init__(self, config: Config, runner: Runner):
        self.config = config
        self.runner = runner

    def push(self, repo: GitRepo) -> list[str]:
        """Makes the mirror match the local work tree.

        Args:
            repo (GitRepo): The local work tree.

        Returns:
            list[str]: The changed paths that were synchronized.

        Raises:
            SyncError: On lock, cookie, remote or transfer failures.
            CommandError: If a required git, ssh or rsync command fails.
        """
        with workdir_lock(repo, self.config.wait_for_lock):
            return self._push(repo)

    def pull(self, repo: GitRepo) -> list[str]:
        """Copies the mirror's untracked and unstaged files to the local tree.

        Returns:
            list[str]: The paths that were pulled.
        """
        with workdir_lock(repo, self.config.wait_for_lock):
            paths = pull_files(repo, self.config, self.runner)
        logger.info(f"pulled {len(paths)} files {paths}")
        return paths

    def _push(self, repo: GitRepo) -> list[str]:
        cookie = read_sync_cookie(repo, self.config)
        state_changed = cookie.git_state_changed()

        change_set: ChangeSet | None = None
        if not state_changed and self.config.fsmonitor_enabled:
            change_set = changes_via_fsmonitor(repo, self.config, cookie)
            if change_set is None:
                logger.info("fsmonitor gave no usable result; using git status")

        background: BackgroundTask | None = None
        if change_set is None:
            script = sync_command(self.config, cookie, self.runner.env)
            pool = ThreadPoolExecutor(max_workers=1)
            try:
                reconcile = pool.submit(
                    run_remote, self.runner, self.config, script, combined=True
                )
                # Without a change list nothing downstream can proceed.
                change_set = changes_via_status(repo, cookie)
                if change_set:
                    background = self._start_fetch()
                reconcile.result()
            finally:
                # A failed detection must not wait on the remote script.
                pool.shutdown(wait=False, cancel_futures=True)
        elif change_set:
            background = self._start_fetch()

        if change_set:
            push_files(repo, self.config, change_set, self.runner)

        # A no-op run must leave the cookie untouched.
        if change_set or state_changed:
            try:
                write_sync_cookie(repo, cookie)
            except OSError as e:
                logger.warning(f"failed to write sync cookie: {e}")

        if background is not None:
            background.wait(BACKGROUND_GRACE)

        logger.info(
            f"synced {len(change_set)} files via {change_set.source} {change_set.paths}"
        )
        return change_set.paths

    def _start_fetch(self) -> BackgroundTask | None:
        """Primes the mirror's object store in case reconciliation needs a fetch."""
        try:
            return self.runner.start(fetch_command(self.config))
        except OSError as e:
            logger.warning(f"speculative fetch failed to start: {e}")
            return None
