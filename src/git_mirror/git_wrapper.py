import logging
from pathlib import Path

from .constants import APP_NAME, GIT_DIR_NAME
from .errors import SyncError
from .process import Runner

logger = logging.getLogger(APP_NAME)


def split_null_terminated(data: str) -> list[str]:
    """Splits NUL-delimited command output into records.

    A trailing NUL is optional; empty input yields an empty list.
    """
    if not data:
        return []
    if data.endswith("\0"):
        data = data[:-1]
    return data.split("\0")


def join_null_terminated(items: list[str]) -> str:
    """Joins records into NUL-terminated form (the inverse of the split)."""
    if not items:
        return ""
    return "\0".join(items) + "\0"


class GitConfig(dict):
    """The flattened output of `git config -l`.

    Lookups follow `git config` case rules: section and variable names are
    case-insensitive, subsection names are case-sensitive.
    """

    @staticmethod
    def normalize(key: str) -> str:
        parts = key.split(".")
        if len(parts) >= 3:
            return ".".join(
                [parts[0].lower(), *parts[1:-1], parts[-1].lower()]
            )
        return key.lower()

    @classmethod
    def parse(cls, data: str) -> "GitConfig":
        """Parses `git config -z -l` output (`key\\nvalue\\0` records).

        Args:
            data (str): The raw output.

        Returns:
            GitConfig: The parsed configuration. Later values win.
        """
        config = cls()
        for entry in split_null_terminated(data):
            key, sep, value = entry.partition("\n")
            if not sep:
                # A bare key is a boolean set to true (e.g. `[core] bare`).
                logger.debug(f"git config entry without value: {key}")
                value = "true"
            config[cls.normalize(key)] = value
        return config

    def get(self, key: str, default: str | None = None) -> str | None:  # type: ignore[override]
        return super().get(self.normalize(key), default)


class GitRepo:
    """A wrapper around the Git command-line interface for one work tree.

    Every query goes through a shared `Runner`, so each call is traced and
    subject to the run-wide deadline.

    Attributes:
        path (Path): The file system path to the work tree root.
        runner (Runner): The process runner executing git.
    """

    def __init__(self, path: Path, runner: Runner | None = None):
        """Initializes the GitRepo instance.

        Args:
            path (Path): The path to the work tree root.
            runner (Runner | None): The process runner. Defaults to a plain Runner.

        Raises:
            SyncError: If the path does not contain a .git directory.
        """
        self.path = Path(path)
        self.runner = runner or Runner()
        if not self.git_dir.exists():
            raise SyncError(f"Not a git repository: {self.path}")

    @property
    def git_dir(self) -> Path:
        return self.path / GIT_DIR_NAME

    def _run(
        self,
        args: list[str],
        strip: bool = True,
        stdin: str | None = None,
        timeout: float | None = None,
        accept: tuple[int, ...] = (),
    ) -> str:
        """Executes a git command within the work tree.

        Args:
            args (list[str]): Arguments to pass to git.
            strip (bool, optional): Whether to strip surrounding whitespace.
                                    NUL-delimited output must not be stripped.
            stdin (str | None, optional): Data fed to the command.
            timeout (float | None, optional): Per-call timeout in seconds.
            accept (tuple[int, ...], optional): Extra exit codes meaning success.

        Returns:
            str: The command's stdout.

        Raises:
            CommandError: If git exits with an unaccepted status.
        """
        out = self.runner.output(
            ["git", *args],
            cwd=self.path,
            stdin=stdin,
            timeout=timeout,
            accept=accept,
        )
        return out.strip() if strip else out

    def head_commit(self) -> str:
        """Returns the full hash of HEAD."""
        return self._run(["rev-parse", "HEAD"])

    def merge_base(self, ref: str, other: str = "HEAD") -> str:
        """Returns the best common ancestor of two revisions.

        Args:
            ref (str): Typically the upstream tracking ref.
            other (str, optional): The second revision. Defaults to HEAD.
        """
        return self._run(["merge-base", ref, other])

    def status_z(self, paths: list[str] | None = None, untracked: str = "all") -> str:
        """Returns raw `git status -z --porcelain` output.

        Args:
            paths (list[str] | None, optional): Limit the query to these paths.
            untracked (str, optional): The `--untracked-files` mode.
        """
        cmd = ["status", "-z", "--porcelain", f"--untracked-files={untracked}"]
        if paths:
            cmd.extend(["--", *(f":(literal){p}" for p in paths)])
        return self._run(cmd, strip=False)

    def diff_names(self, base: str, target: str = "HEAD") -> list[str]:
        """Lists files that differ between two commits, renames split in two."""
        out = self._run(
            ["diff", "-z", "--no-renames", "--name-only", target, base], strip=False
        )
        return split_null_terminated(out)

    def check_ignore(self, paths: list[str]) -> list[str]:
        """Returns the subset of `paths` that git would ignore.

        Exit status 1 ("nothing ignored") is a normal answer.
        """
        if not paths:
            return []
        # --no-index keeps this cheap; tracked-but-ignored files may show up.
        out = self._run(
            ["check-ignore", "-z", "--stdin", "--no-index"],
            strip=False,
            stdin=join_null_terminated(paths),
            accept=(1,),
        )
        return split_null_terminated(out)

    def remote_names(self) -> list[str]:
        """Lists configured remote aliases."""
        return self._run(["remote"]).split()

    def remote_url(self, name: str) -> str:
        """Returns the URL configured for a remote alias."""
        return self._run(["remote", "get-url", name])

    def config(self) -> GitConfig:
        """Dumps the effective git configuration."""
        return GitConfig.parse(self._run(["config", "-z", "-l"], strip=False))
