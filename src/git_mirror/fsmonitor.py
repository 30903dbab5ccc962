"""A `core.fsmonitor` hook backed by watchman.

Enable it with `git config core.fsmonitor git-mirror-fsmonitor`. git runs the
hook from the work tree root as `git-mirror-fsmonitor <version> <timestamp_ns>`
and reads NUL-terminated paths from its standard output.
"""

import json
import logging
import os
import sys

from .constants import APP_NAME, FSMONITOR_EVERYTHING, FSMONITOR_PROTOCOL, NS_PER_SECOND
from .errors import CommandError, SyncError
from .git_wrapper import join_null_terminated
from .process import Runner

logger = logging.getLogger(APP_NAME)

USAGE = "git-mirror-fsmonitor <protocol> <timestamp_nanoseconds>"


class WatchmanError(SyncError):
    """watchman answered a request with an error."""


def watchman_command(runner: Runner, request: list) -> dict:
    """Sends one JSON request to `watchman -j` and decodes the reply.

    Raises:
        WatchmanError: If the reply carries an error or cannot be decoded.
    """
    try:
        # watchman reports its own errors in the JSON body.
        out = runner.output(["watchman", "-j"], stdin=json.dumps(request), accept=(1,))
    except (CommandError, OSError) as e:
        raise WatchmanError(str(e)) from e

    try:
        reply = json.loads(out)
    except json.JSONDecodeError as e:
        raise WatchmanError(f"unreadable watchman reply: {e}") from e
    if reply.get("error"):
        raise WatchmanError(reply["error"])
    return reply


def build_query(workdir: str, since: int) -> list:
    """Files and symlinks changed since `since`, minus ones created and deleted since."""
    return [
        "query",
        workdir,
        {
            "fields": ["name"],
            "expression": [
                "allof",
                ["anyof", ["type", "f"], ["type", "l"]],
                ["not", ["allof", ["since", since, "cclock"], ["not", "exists"]]],
            ],
            "since": since,
        },
    ]


def is_not_watched(message: str) -> bool:
    return "unable to resolve root" in message and message.endswith("is not watched")


def changed_files(runner: Runner, workdir: str, timestamp_ns: int) -> list[str]:
    """Asks watchman which work tree files changed since `timestamp_ns`.

    An unwatched root is registered and reported as everything changed,
    since watchman's first answer for a new root is a full listing anyway.

    Raises:
        WatchmanError: For any other watchman failure.
    """
    # watchman has one second resolution.
    since = timestamp_ns // NS_PER_SECOND
    try:
        reply = watchman_command(runner, build_query(workdir, since))
    except WatchmanError as e:
        if not is_not_watched(str(e)):
            raise
        logger.info(f"registering {workdir} with watchman")
        watchman_command(runner, ["watch-project", workdir])
        return [FSMONITOR_EVERYTHING]

    return [
        name
        for name in reply.get("files", [])
        if name != ".git" and not name.startswith(".git/")
    ]


def main(argv: list[str] | None = None) -> None:
    """Entry point for the git-mirror-fsmonitor hook."""
    args = sys.argv[1:] if argv is None else argv
    logging.basicConfig(format="git-mirror-fsmonitor: %(message)s")

    if len(args) < 2:
        logger.error(f"Not enough arguments: {USAGE}")
        sys.exit(1)
    version, raw_timestamp = args[0], args[1]
    if version != FSMONITOR_PROTOCOL:
        logger.error(f"Unsupported fsmonitor hook version {version}")
        sys.exit(1)
    try:
        timestamp_ns = int(raw_timestamp, 0)
    except ValueError as e:
        logger.error(f"Timestamp cannot be parsed: {e}")
        sys.exit(1)

    try:
        files = changed_files(Runner(trace=False), os.getcwd(), timestamp_ns)
    except WatchmanError as e:
        logger.error(f"watchman error: {e}")
        sys.exit(1)

    sys.stdout.write(join_null_terminated(files))
    sys.stdout.flush()


if __name__ == "__main__":
    main()
