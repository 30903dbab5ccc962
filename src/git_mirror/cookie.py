"""Persisted synchronization state ("sync cookie").

The cookie records which commits the mirror was last reconciled against and
when that run started. A run whose head and merge base match the cookie can
skip the remote reset and may use the fsmonitor fast path.
"""

import contextlib
import json
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path

from .config import Config
from .constants import APP_NAME, COOKIE_FILE_NAME, NS_PER_SECOND
from .errors import CookieError
from .git_wrapper import GitRepo

logger = logging.getLogger(APP_NAME)


@dataclass
class SyncCookie:
    """Last-sync state read from disk plus the current state of the work tree.

    Attributes:
        last_head_hash (str): HEAD at the end of the previous sync.
        last_merge_base_hash (str): The merge base at the end of the previous sync.
        last_sync_start_ns (int): Start of the previous sync, whole seconds in ns.
        head_hash (str): HEAD now.
        merge_base_hash (str): The merge base now.
        sync_start_ns (int): Start of this sync, whole seconds in ns.
    """

    last_head_hash: str = ""
    last_merge_base_hash: str = ""
    last_sync_start_ns: int = 0
    head_hash: str = ""
    merge_base_hash: str = ""
    sync_start_ns: int = 0

    def git_state_changed(self) -> bool:
        """Whether HEAD or the merge base moved since the last recorded sync."""
        return not (
            self.last_head_hash != ""
            and self.last_head_hash == self.head_hash
            and self.last_merge_base_hash == self.merge_base_hash
        )

    def to_json(self) -> str:
        """Serializes the current state as the next run's `Last*` fields."""
        return json.dumps(
            {
                "LastHeadHash": self.head_hash,
                "LastMergeBaseHash": self.merge_base_hash,
                "LastSyncStartNs": str(self.sync_start_ns),
            }
        )

    def load_json(self, content: str) -> None:
        """Fills the `Last*` fields from a serialized cookie.

        Raises:
            ValueError: If the content is not a valid cookie.
        """
        data = json.loads(content)
        if not isinstance(data, dict):
            raise ValueError("cookie is not a JSON object")
        self.last_head_hash = str(data.get("LastHeadHash", ""))
        self.last_merge_base_hash = str(data.get("LastMergeBaseHash", ""))
        self.last_sync_start_ns = int(data.get("LastSyncStartNs", 0))


def cookie_path(repo: GitRepo) -> Path:
    return repo.git_dir / COOKIE_FILE_NAME


def read_sync_cookie(repo: GitRepo, config: Config) -> SyncCookie:
    """Reads the cookie and captures the work tree's current state.

    Args:
        repo (GitRepo): The local work tree.
        config (Config): Supplies the upstream ref for the merge base.

    Returns:
        SyncCookie: Defaults for the `Last*` fields when no cookie exists.

    Raises:
        CommandError: If HEAD or the merge base cannot be resolved.
        CookieError: If the cookie file exists but cannot be read or parsed.
    """
    cookie = SyncCookie(
        # Whole seconds: the fsmonitor clock has one-second granularity.
        sync_start_ns=int(time.time()) * NS_PER_SECOND,
        head_hash=repo.head_commit(),
        merge_base_hash=repo.merge_base(config.upstream_ref),
    )

    path = cookie_path(repo)
    try:
        content = path.read_text()
    except FileNotFoundError:
        logger.debug(f"No sync cookie at {path}; a full reset will follow.")
        return cookie
    except OSError as e:
        raise CookieError(f"Failed to read sync cookie {path}: {e}") from e

    try:
        cookie.load_json(content)
    except (ValueError, TypeError) as e:
        raise CookieError(f"Corrupt sync cookie {path}: {e}") from e
    return cookie


def write_sync_cookie(repo: GitRepo, cookie: SyncCookie) -> None:
    """Persists the cookie atomically.

    Args:
        repo (GitRepo): The local work tree.
        cookie (SyncCookie): The state captured at the start of this run.

    Raises:
        OSError: If the cookie could not be written.
    """
    path = cookie_path(repo)
    tmp_file = path.with_suffix(".tmp")

    try:
        with open(tmp_file, "w") as f:
            f.write(cookie.to_json())
            f.flush()
            os.fsync(f.fileno())

        os.replace(tmp_file, path)
    except OSError:
        with contextlib.suppress(OSError):
            tmp_file.unlink()
        raise
