"""Change-set collection.

Two strategies produce the set of files that differ between the local work
tree and the mirror:

* the fast path asks the fsmonitor helper what changed since the last sync;
  it is only trusted when HEAD and the merge base are unchanged, and it
  declines (returns None) whenever its answer is unusable;
* the slow path asks git itself (status plus a diff against the merge base)
  and is authoritative.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

from .config import Config
from .constants import (
    APP_NAME,
    FSMONITOR_EVERYTHING,
    FSMONITOR_MAX_FILES,
    FSMONITOR_PROTOCOL,
    FSMONITOR_TIMEOUT,
    GIT_DIR_NAME,
    NS_PER_SECOND,
)
from .cookie import SyncCookie
from .errors import CommandError
from .git_wrapper import GitRepo, split_null_terminated

logger = logging.getLogger(APP_NAME)

UNMERGED_STATUSES = frozenset({"DD", "AU", "UD", "UA", "DU", "AA", "UU"})
"""frozenset[str]: Porcelain codes marking an unresolved merge conflict."""


@dataclass
class StatusReport:
    """Parsed `git status -z --porcelain` output.

    Attributes:
        changed (list[str]): Every path needing transfer, both sides of renames.
        untracked (list[str]): Untracked files.
        unstaged (list[str]): Tracked files with work tree modifications.
        added (list[str]): Paths newly added to the index.
        renamed (list[tuple[str, str]]): (old, new) pairs.
        conflicted (list[str]): Unmerged paths, excluded everywhere else.
    """

    changed: list[str] = field(default_factory=list)
    untracked: list[str] = field(default_factory=list)
    unstaged: list[str] = field(default_factory=list)
    added: list[str] = field(default_factory=list)
    renamed: list[tuple[str, str]] = field(default_factory=list)
    conflicted: list[str] = field(default_factory=list)


@dataclass
class ChangeSet:
    """The files one sync run has to ship to the mirror.

    Attributes:
        paths (list[str]): Sorted, unique, repository-relative file paths.
        renamed (list[tuple[str, str]]): (old, new) pairs among `paths`.
        added (list[str]): Paths to stage in the mirror's index after transfer.
        source (str): The strategy that produced the set.
    """

    paths: list[str] = field(default_factory=list)
    renamed: list[tuple[str, str]] = field(default_factory=list)
    added: list[str] = field(default_factory=list)
    source: str = "status"

    def __len__(self) -> int:
        return len(self.paths)

    def __bool__(self) -> bool:
        return bool(self.paths)


def parse_porcelain_status(data: str) -> StatusReport:
    """Parses NUL-delimited porcelain v1 status output.

    Rename and copy entries are followed by an extra record holding the
    source path (`R  new\\0old\\0`). Unmerged entries are logged and kept
    out of every list except `conflicted`; they need manual resolution and a
    follow-up sync.

    Args:
        data (str): Raw `git status -z --porcelain` output.

    Returns:
        StatusReport: The classified entries.
    """
    report = StatusReport()
    entries = split_null_terminated(data)
    i = 0
    while i < len(entries):
        entry = entries[i]
        i += 1
        if len(entry) < 4:
            logger.warning(f"ignoring malformed status entry: {entry!r}")
            continue
        status, fname = entry[:2], entry[3:]

        if status in UNMERGED_STATUSES:
            logger.warning(f"ignoring unmerged file: {fname}")
            report.conflicted.append(fname)
            continue

        if "R" in status or "C" in status:
            source = entries[i] if i < len(entries) else ""
            i += 1
            report.changed.append(fname)
            report.added.append(fname)
            if "R" in status and source:
                report.changed.append(source)
                report.renamed.append((source, fname))
            continue

        if fname.endswith("/"):
            # Untracked directory; only reported without --untracked-files=all.
            continue

        report.changed.append(fname)
        if status == "??":
            report.untracked.append(fname)
            continue
        if status[0] == "A":
            report.added.append(fname)
        if status[1] != " ":
            report.unstaged.append(fname)

    return report


def fsmonitor_since(cookie: SyncCookie) -> int:
    """Returns the fsmonitor cutoff for a cookie, in nanoseconds.

    The helper's clock has one-second granularity, so the cutoff is rewound
    one full second before the (whole-second) start of the previous sync.
    """
    since = (cookie.last_sync_start_ns // NS_PER_SECOND) * NS_PER_SECOND
    return max(since - NS_PER_SECOND, 0)


def _is_candidate(root: Path, fname: str) -> bool:
    if not fname or fname == GIT_DIR_NAME or fname.startswith(GIT_DIR_NAME + "/"):
        return False
    # Directory events carry no content; git only tracks files and symlinks.
    path = root / fname
    return not (path.is_dir() and not path.is_symlink())


def changes_via_fsmonitor(
    repo: GitRepo, config: Config, cookie: SyncCookie
) -> ChangeSet | None:
    """Collects changes from the fsmonitor helper.

    Args:
        repo (GitRepo): The local work tree.
        config (Config): Supplies the helper path.
        cookie (SyncCookie): Supplies the previous sync start time.

    Returns:
        ChangeSet | None: The changes, or None when the helper's answer is
        unusable (error, timeout, too many paths, or "everything changed")
        and the caller must fall back to the slow path.
    """
    cmd = [config.fsmonitor_path, FSMONITOR_PROTOCOL, str(fsmonitor_since(cookie))]
    try:
        out = repo.runner.output(cmd, cwd=repo.path, timeout=FSMONITOR_TIMEOUT)
    except (CommandError, OSError) as e:
        logger.warning(f"fsmonitor failed: {e}")
        return None

    file_paths = split_null_terminated(out)
    if len(file_paths) > FSMONITOR_MAX_FILES:
        logger.warning(f"fsmonitor returned too many changes: {len(file_paths)}")
        return None
    if file_paths == [FSMONITOR_EVERYTHING]:
        logger.info("fsmonitor reported that everything may have changed")
        return None

    candidates = {f for f in file_paths if _is_candidate(repo.path, f)}
    report = StatusReport()
    try:
        if candidates:
            candidates.difference_update(repo.check_ignore(sorted(candidates)))
        if candidates:
            report = parse_porcelain_status(
                repo.status_z(sorted(candidates), untracked="no")
            )
    except CommandError as e:
        logger.warning(f"fsmonitor result filtering failed: {e}")
        return None

    candidates.update(old for old, _ in report.renamed)
    candidates.difference_update(report.conflicted)
    return ChangeSet(
        paths=sorted(candidates),
        renamed=report.renamed,
        added=[f for f in report.added if f in candidates],
        source="fsmonitor",
    )


def changes_via_status(repo: GitRepo, cookie: SyncCookie) -> ChangeSet:
    """Collects changes authoritatively from git.

    Runs the work tree status (uncommitted and untracked changes) and the diff
    from the merge base to HEAD (committed but unsynchronized changes)
    concurrently and merges them.

    Args:
        repo (GitRepo): The local work tree.
        cookie (SyncCookie): Supplies the current merge base.

    Returns:
        ChangeSet: The merged, sorted change set.

    Raises:
        CommandError: If either git query fails.
    """
    with ThreadPoolExecutor(max_workers=2) as pool:
        status_future = pool.submit(repo.status_z)
        diff_future = pool.submit(repo.diff_names, cookie.merge_base_hash)
        report = parse_porcelain_status(status_future.result())
        committed = diff_future.result()

    file_set = set(report.changed)
    file_set.update(committed)
    file_set.difference_update(report.conflicted)
    return ChangeSet(
        paths=sorted(file_set),
        renamed=report.renamed,
        added=report.added,
        source="status",
    )
