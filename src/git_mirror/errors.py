"""Exception hierarchy for Git Mirror.

Two roots: `CommandError` for an external command that failed, and
`SyncError` for everything else that aborts a synchronization run. The CLI
reports both and exits non-zero; recoverable conditions never raise past the
component that detects them.
"""

import os


def _prefix_lines(binary: str, text: str) -> str:
    """Prefixes every line of a command's diagnostic output with its binary name."""
    prefix = f"  {binary}: "
    lines = text.rstrip("\n").split("\n")
    return "\n".join(prefix + line for line in lines)


class CommandError(RuntimeError):
    """An external command exited with a status the caller did not accept.

    Attributes:
        argv (list[str]): The command line that was executed.
        returncode (int): The exit status of the process.
        stderr (str): Captured diagnostic output (may be empty).
        stdout (str): Captured standard output (may be empty).
    """

    def __init__(
        self, argv: list[str], returncode: int, stderr: str = "", stdout: str = ""
    ):
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr
        self.stdout = stdout
        super().__init__(self._format())

    @property
    def binary(self) -> str:
        return os.path.basename(self.argv[0]) if self.argv else "?"

    def _format(self) -> str:
        msg = f"{self.binary} failed with exit status {self.returncode}"
        if self.stderr.strip():
            msg += "\n" + _prefix_lines(self.binary, self.stderr)
        return msg


class CommandTimeout(CommandError):
    """An external command was killed because its time budget ran out."""

    def __init__(self, argv: list[str], timeout: float | None, stderr: str = ""):
        self.timeout = timeout
        super().__init__(argv, -1, stderr)

    def _format(self) -> str:
        msg = f"{self.binary} timed out after {self.timeout or 0:.3f}s"
        if self.stderr.strip():
            msg += "\n" + _prefix_lines(self.binary, self.stderr)
        return msg


class SyncError(RuntimeError):
    """A fatal condition that aborts the synchronization run."""


class MissingEnvironmentError(SyncError):
    """A required environment variable is absent."""


class ConfigError(SyncError):
    """The git configuration does not describe a usable mirror."""


class CookieError(SyncError):
    """The persisted sync cookie could not be read."""


class LockError(SyncError):
    """Another synchronization run holds the work tree lock."""


class TransferError(SyncError):
    """The transfer stage could not build or ship its manifest."""


class RemoteUnreachableError(SyncError):
    """ssh could not connect to the mirror host."""

    def __init__(self, addr: str):
        self.addr = addr
        super().__init__(f"cannot reach remote host {addr!r} over ssh")
