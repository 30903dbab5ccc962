import logging
import os
import shlex
import subprocess
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from .constants import APP_NAME, REQUIRED_ENV_KEYS
from .errors import CommandError, CommandTimeout, MissingEnvironmentError

logger = logging.getLogger(APP_NAME)


def quote_word(word: str) -> str:
    """Quotes a single word for a POSIX shell.

    A leading `~/` stays outside the quotes so the receiving shell still
    expands it to the home directory; everything after it is quoted.

    Args:
        word (str): The raw word.

    Returns:
        str: A shell-safe representation of the word.
    """
    if word.startswith("~/"):
        rest = word[2:]
        return "~/" + shlex.quote(rest) if rest else "~/"
    return shlex.quote(word)


def quote_cmd(argv: Sequence[str]) -> str:
    """Renders an argument vector as a copy-pasteable shell command."""
    return " ".join(quote_word(arg) for arg in argv)


def restricted_env(environ: Mapping[str, str] | None = None) -> dict[str, str]:
    """Builds the minimal environment handed to every child process.

    Args:
        environ (Mapping[str, str] | None): The source environment.
                                           Defaults to `os.environ`.

    Returns:
        dict[str, str]: The required keys plus any `GIT_TRACE*` variables.

    Raises:
        MissingEnvironmentError: If a required key is missing or empty.
    """
    source = os.environ if environ is None else environ
    env = {}
    for key in REQUIRED_ENV_KEYS:
        value = source.get(key)
        if not value:
            raise MissingEnvironmentError(f"invalid environment, missing key: {key}")
        env[key] = value
    for key, value in source.items():
        if key.startswith("GIT_TRACE"):
            env[key] = value
    return env


def _text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="surrogateescape")
    return value


@dataclass
class Result:
    """The outcome of a finished command.

    Attributes:
        argv (list[str]): The executed command line.
        returncode (int): The exit status.
        stdout (str): Captured standard output ("" when not captured).
        stderr (str): Captured diagnostic output ("" when not captured).
        elapsed (float): Wall-clock seconds spent waiting on the process.
    """

    argv: list[str]
    returncode: int
    stdout: str
    stderr: str
    elapsed: float


class BackgroundTask:
    """A detached process the caller checks on once, at shutdown.

    Failures are logged and never raised; a task that outlives its grace
    period is left running.
    """

    def __init__(self, argv: list[str], proc: subprocess.Popen):
        self.argv = argv
        self.proc = proc

    def wait(self, grace: float) -> int | None:
        """Waits up to `grace` seconds for the process to finish.

        Args:
            grace (float): The maximum number of seconds to wait.

        Returns:
            int | None: The exit status, or None if the process is still running.
        """
        try:
            _, stderr = self.proc.communicate(timeout=grace)
        except subprocess.TimeoutExpired:
            logger.warning(
                f"background process still running after {grace:.1f}s: "
                f"{quote_cmd(self.argv)}"
            )
            return None

        if self.proc.returncode != 0:
            err = CommandError(self.argv, self.proc.returncode, _text(stderr))
            logger.warning(f"background process failed: {err}")
        return self.proc.returncode


class Runner:
    """Executes external commands on behalf of every Git Mirror component.

    All commands share one environment and one optional run-wide deadline;
    each invocation is timed and, when tracing, logged at DEBUG level.

    Attributes:
        env (dict[str, str] | None): The child environment (None inherits ours).
        deadline (float | None): A `time.monotonic()` instant after which every
                                 command times out immediately.
        trace (bool): Whether to log each command with its duration.
    """

    def __init__(
        self,
        env: dict[str, str] | None = None,
        deadline: float | None = None,
        trace: bool = True,
    ):
        self.env = env
        self.deadline = deadline
        self.trace = trace

    @classmethod
    def with_timeout(
        cls,
        timeout: float | None,
        env: dict[str, str] | None = None,
        trace: bool = True,
    ) -> "Runner":
        """Creates a runner whose deadline is `timeout` seconds from now."""
        deadline = time.monotonic() + timeout if timeout else None
        return cls(env=env, deadline=deadline, trace=trace)

    def _budget(self, timeout: float | None) -> float | None:
        if self.deadline is None:
            return timeout
        remaining = max(self.deadline - time.monotonic(), 0.0)
        return remaining if timeout is None else min(timeout, remaining)

    def _exec(
        self,
        argv: Sequence[str],
        *,
        cwd: Path | str | None,
        stdin: str | None,
        timeout: float | None,
        stdout: int | None,
        stderr: int | None,
        accept: Sequence[int],
    ) -> Result:
        argv = [str(arg) for arg in argv]
        budget = self._budget(timeout)
        start = time.monotonic()
        try:
            proc = subprocess.run(
                argv,
                cwd=cwd,
                env=self.env,
                input=stdin,
                stdout=stdout,
                stderr=stderr,
                timeout=budget,
                encoding="utf-8",
                errors="surrogateescape",
            )
        except subprocess.TimeoutExpired as e:
            raise CommandTimeout(argv, budget, _text(e.stderr)) from e
        finally:
            elapsed = time.monotonic() - start
            if self.trace:
                logger.debug(f"perf: {elapsed:.3f}s exec: {quote_cmd(argv)}")

        result = Result(
            argv, proc.returncode, _text(proc.stdout), _text(proc.stderr), elapsed
        )
        if result.returncode != 0 and result.returncode not in accept:
            diagnostics = result.stdout if stderr == subprocess.STDOUT else result.stderr
            raise CommandError(argv, result.returncode, diagnostics, result.stdout)
        return result

    def run(
        self,
        argv: Sequence[str],
        cwd: Path | str | None = None,
        stdin: str | None = None,
        timeout: float | None = None,
        accept: Sequence[int] = (),
    ) -> Result:
        """Runs a command, letting stdout through and capturing stderr.

        Raises:
            CommandError: If the exit status is non-zero and not in `accept`.
            CommandTimeout: If the command outlived its budget.
        """
        return self._exec(
            argv,
            cwd=cwd,
            stdin=stdin,
            timeout=timeout,
            stdout=None,
            stderr=subprocess.PIPE,
            accept=accept,
        )

    def output(
        self,
        argv: Sequence[str],
        cwd: Path | str | None = None,
        stdin: str | None = None,
        timeout: float | None = None,
        accept: Sequence[int] = (),
    ) -> str:
        """Runs a command and returns its captured stdout."""
        return self._exec(
            argv,
            cwd=cwd,
            stdin=stdin,
            timeout=timeout,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            accept=accept,
        ).stdout

    def combined_output(
        self,
        argv: Sequence[str],
        cwd: Path | str | None = None,
        stdin: str | None = None,
        timeout: float | None = None,
        accept: Sequence[int] = (),
    ) -> str:
        """Runs a command and returns stdout and stderr interleaved.

        On failure the interleaved output is attached as the error's stderr.
        """
        return self._exec(
            argv,
            cwd=cwd,
            stdin=stdin,
            timeout=timeout,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            accept=accept,
        ).stdout

    def start(self, argv: Sequence[str], cwd: Path | str | None = None) -> BackgroundTask:
        """Launches a command without waiting for it.

        Raises:
            OSError: If the binary cannot be executed.
        """
        argv = [str(arg) for arg in argv]
        if self.trace:
            logger.debug(f"spawn: {quote_cmd(argv)}")
        proc = subprocess.Popen(
            argv,
            cwd=cwd,
            env=self.env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            encoding="utf-8",
            errors="surrogateescape",
        )
        return BackgroundTask(argv, proc)
