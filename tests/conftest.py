"""Shared fixtures for the Git Mirror test suite."""

import shutil
import subprocess
from pathlib import Path

import pytest

from git_mirror.config import Config
from git_mirror.git_wrapper import GitRepo
from git_mirror.process import Runner

requires_git = pytest.mark.skipif(
    shutil.which("git") is None, reason="git is not installed"
)


@pytest.fixture
def fake_repo(tmp_path: Path) -> GitRepo:
    """A work tree with an empty .git directory; git itself is never run."""
    (tmp_path / ".git").mkdir()
    return GitRepo(tmp_path, Runner(trace=False))


@pytest.fixture
def config() -> Config:
    """A resolved configuration pointing at a made-up mirror."""
    return Config(remote_url="devbox:src/project")


@pytest.fixture
def sync_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Provides every environment variable the restricted environment requires."""
    monkeypatch.setenv("PATH", "/usr/local/bin:/usr/bin:/bin")
    monkeypatch.setenv("USER", "tester")
    monkeypatch.setenv("LOGNAME", "tester")
    monkeypatch.setenv("HOME", "/home/tester")
    monkeypatch.setenv("SSH_AUTH_SOCK", "/tmp/agent.sock")


def git(cwd: Path, *args: str) -> str:
    """Runs a git command for test setup and returns its stripped output."""
    return subprocess.run(
        ["git", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    ).stdout.strip()


def init_repo(path: Path) -> Path:
    """Creates a repository with one commit and a deterministic identity."""
    path.mkdir(parents=True, exist_ok=True)
    git(path, "init", "-q")
    git(path, "config", "user.name", "Test")
    git(path, "config", "user.email", "test@example.com")
    git(path, "config", "commit.gpgsign", "false")
    (path / "README").write_text("hello\n")
    git(path, "add", "README")
    git(path, "commit", "-q", "-m", "initial")
    return path
