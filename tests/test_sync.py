"""Tests for the synchronization orchestrator."""

import fcntl
import threading
import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from git_mirror.changes import ChangeSet
from git_mirror.config import Config
from git_mirror.cookie import SyncCookie
from git_mirror.errors import (
    CommandError,
    LockError,
    RemoteUnreachableError,
    SyncError,
)
from git_mirror.git_wrapper import GitRepo
from git_mirror.process import Runner
from git_mirror.sync import Syncer, find_workdir, workdir_lock


def make_cookie(changed: bool) -> SyncCookie:
    return SyncCookie(
        last_head_hash="h",
        last_merge_base_hash="m",
        head_hash="h2" if changed else "h",
        merge_base_hash="m",
    )


@pytest.fixture
def deps(mocker: MagicMock) -> dict[str, MagicMock]:
    """Replaces every collaborator of the orchestrator with a mock."""
    return {
        "read_cookie": mocker.patch("git_mirror.sync.read_sync_cookie"),
        "write_cookie": mocker.patch("git_mirror.sync.write_sync_cookie"),
        "fsmonitor": mocker.patch("git_mirror.sync.changes_via_fsmonitor"),
        "status": mocker.patch("git_mirror.sync.changes_via_status"),
        "run_remote": mocker.patch("git_mirror.sync.run_remote"),
        "push_files": mocker.patch("git_mirror.sync.push_files"),
        "pull_files": mocker.patch("git_mirror.sync.pull_files"),
    }


@pytest.fixture
def runner(mocker: MagicMock) -> Runner:
    runner = Runner(trace=False)
    mocker.patch.object(runner, "start")
    return runner


@pytest.fixture
def fs_config() -> Config:
    return Config(remote_url="devbox:work", fsmonitor_path="watch-helper")


def test_find_workdir_walks_up(tmp_path: Path) -> None:
    (tmp_path / ".git").mkdir()
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    assert find_workdir(nested) == tmp_path.resolve()


def test_find_workdir_outside_repository(tmp_path: Path) -> None:
    with pytest.raises(SyncError, match="Not inside a git work tree"):
        find_workdir(tmp_path)


def test_first_sync_takes_slow_path(
    deps: dict[str, MagicMock],
    runner: Runner,
    fake_repo: GitRepo,
    fs_config: Config,
) -> None:
    """Verifies a changed git state skips fsmonitor and resets the mirror."""
    cookie = make_cookie(changed=True)
    deps["read_cookie"].return_value = cookie
    change_set = ChangeSet(paths=["a.py"])
    deps["status"].return_value = change_set

    paths = Syncer(fs_config, runner).push(fake_repo)

    assert paths == ["a.py"]
    deps["fsmonitor"].assert_not_called()
    deps["run_remote"].assert_called_once()
    assert deps["run_remote"].call_args.kwargs == {"combined": True}
    deps["push_files"].assert_called_once_with(fake_repo, fs_config, change_set, runner)
    deps["write_cookie"].assert_called_once_with(fake_repo, cookie)
    runner.start.assert_called_once()
    runner.start.return_value.wait.assert_called_once_with(2.0)


def test_fast_path_skips_reconciliation(
    deps: dict[str, MagicMock],
    runner: Runner,
    fake_repo: GitRepo,
    fs_config: Config,
) -> None:
    deps["read_cookie"].return_value = make_cookie(changed=False)
    deps["fsmonitor"].return_value = ChangeSet(paths=["b.py"], source="fsmonitor")

    assert Syncer(fs_config, runner).push(fake_repo) == ["b.py"]

    deps["run_remote"].assert_not_called()
    deps["status"].assert_not_called()
    deps["push_files"].assert_called_once()
    deps["write_cookie"].assert_called_once()
    runner.start.assert_called_once()


def test_fast_path_decline_falls_back(
    deps: dict[str, MagicMock],
    runner: Runner,
    fake_repo: GitRepo,
    fs_config: Config,
) -> None:
    deps["read_cookie"].return_value = make_cookie(changed=False)
    deps["fsmonitor"].return_value = None
    deps["status"].return_value = ChangeSet(paths=["c.py"])

    assert Syncer(fs_config, runner).push(fake_repo) == ["c.py"]
    deps["run_remote"].assert_called_once()


def test_no_op_sync_leaves_cookie_alone(
    deps: dict[str, MagicMock],
    runner: Runner,
    fake_repo: GitRepo,
    config: Config,
) -> None:
    """Verifies nothing is transferred or persisted when nothing changed."""
    deps["read_cookie"].return_value = make_cookie(changed=False)
    deps["status"].return_value = ChangeSet()

    assert Syncer(config, runner).push(fake_repo) == []

    deps["fsmonitor"].assert_not_called()
    deps["push_files"].assert_not_called()
    deps["write_cookie"].assert_not_called()
    runner.start.assert_not_called()


def test_state_change_without_files_still_writes_cookie(
    deps: dict[str, MagicMock],
    runner: Runner,
    fake_repo: GitRepo,
    config: Config,
) -> None:
    deps["read_cookie"].return_value = make_cookie(changed=True)
    deps["status"].return_value = ChangeSet()

    assert Syncer(config, runner).push(fake_repo) == []
    deps["push_files"].assert_not_called()
    deps["write_cookie"].assert_called_once()


def test_unreachable_mirror_aborts_without_cookie(
    deps: dict[str, MagicMock],
    runner: Runner,
    fake_repo: GitRepo,
    config: Config,
) -> None:
    deps["read_cookie"].return_value = make_cookie(changed=True)
    deps["status"].return_value = ChangeSet(paths=["a.py"])
    deps["run_remote"].side_effect = RemoteUnreachableError("devbox")

    with pytest.raises(RemoteUnreachableError):
        Syncer(config, runner).push(fake_repo)

    deps["push_files"].assert_not_called()
    deps["write_cookie"].assert_not_called()


def test_cookie_write_failure_is_logged(
    deps: dict[str, MagicMock],
    runner: Runner,
    fake_repo: GitRepo,
    config: Config,
    caplog: pytest.LogCaptureFixture,
) -> None:
    """Verifies that a failed cookie write does not fail a successful sync."""
    deps["read_cookie"].return_value = make_cookie(changed=True)
    deps["status"].return_value = ChangeSet(paths=["a.py"])
    deps["write_cookie"].side_effect = OSError("read-only file system")

    assert Syncer(config, runner).push(fake_repo) == ["a.py"]
    assert "failed to write sync cookie" in caplog.text


def test_fetch_start_failure_is_logged(
    deps: dict[str, MagicMock],
    runner: Runner,
    fake_repo: GitRepo,
    config: Config,
    caplog: pytest.LogCaptureFixture,
) -> None:
    deps["read_cookie"].return_value = make_cookie(changed=True)
    deps["status"].return_value = ChangeSet(paths=["a.py"])
    runner.start.side_effect = FileNotFoundError("ssh")

    assert Syncer(config, runner).push(fake_repo) == ["a.py"]
    assert "speculative fetch failed to start" in caplog.text


def test_pull_delegates_under_lock(
    deps: dict[str, MagicMock],
    runner: Runner,
    fake_repo: GitRepo,
    config: Config,
) -> None:
    deps["pull_files"].return_value = ["notes.txt"]
    assert Syncer(config, runner).pull(fake_repo) == ["notes.txt"]
    deps["pull_files"].assert_called_once_with(fake_repo, config, runner)
    assert (fake_repo.git_dir / "git-mirror.mutex").exists()


def test_lock_contention_without_waiting(fake_repo: GitRepo) -> None:
    """Verifies that a busy lock fails fast when waiting is disabled."""
    lock_path = fake_repo.git_dir / "git-mirror.mutex"
    with open(lock_path, "a") as holder:
        fcntl.flock(holder.fileno(), fcntl.LOCK_EX)
        try:
            with pytest.raises(LockError, match="Another sync is running"):
                with workdir_lock(fake_repo, wait=False):
                    pass
        finally:
            fcntl.flock(holder.fileno(), fcntl.LOCK_UN)

    with workdir_lock(fake_repo, wait=False) as path:
        assert path == lock_path


def test_failed_detection_does_not_wait_for_remote_script(
    deps: dict[str, MagicMock],
    runner: Runner,
    fake_repo: GitRepo,
    config: Config,
) -> None:
    """Verifies a fatal local error unlocks without waiting on the mirror."""
    release = threading.Event()
    deps["read_cookie"].return_value = make_cookie(changed=True)
    deps["run_remote"].side_effect = lambda *args, **kwargs: release.wait(10)
    deps["status"].side_effect = CommandError(["git"], 128, "fatal: bad object")

    try:
        start = time.monotonic()
        with pytest.raises(CommandError):
            Syncer(config, runner).push(fake_repo)
        assert time.monotonic() - start < 5

        with workdir_lock(fake_repo, wait=False):
            pass
        assert deps["run_remote"].called
    finally:
        release.set()
