import argparse
import logging
import os
import sys

from rich.console import Console
from rich.markup import escape

from .config import Config, parse_time
from .constants import APP_NAME
from .errors import CommandError, SyncError
from .git_wrapper import GitRepo
from .process import Runner, restricted_env
from .sync import Syncer, find_workdir

logger = logging.getLogger(APP_NAME)
console = Console()
err_console = Console(stderr=True)

DESCRIPTION = """\
git-mirror keeps a mirror work tree on another host in sync with the local
one, using git to find changes, ssh to reset the mirror, and rsync to copy
files. It is destructive to the mirror: it will clean, reset and check out
commits there so both work trees match.

Settings are read from the [sync] section of the git config:
  sync.remoteName     remote alias of the mirror (default "sync")
  sync.excludePaths   colon-delimited patterns kept by the mirror's git clean
  sync.rsyncRemotePath, sync.gitRemotePath, sync.rsyncLocalPath,
  sync.sshControlPath, sync.upstreamRef
If core.fsmonitor names a helper, it is used to find changes quickly.
"""


def trace_requested(environ: dict[str, str] | None = None) -> bool:
    """Whether GIT_TRACE asks for debug output."""
    value = (environ if environ is not None else os.environ).get("GIT_TRACE", "")
    return value not in ("", "0")


def setup_logging(verbose: bool) -> None:
    """Configures the logging subsystem.

    Args:
        verbose (bool): If True, log every command with its duration.
    """
    formatter = logging.Formatter(
        "[%(asctime)s] %(levelname)s: %(message)s", "%Y-%m-%d %H:%M:%S"
    )
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    logger.handlers = [stream_handler]
    logger.setLevel(logging.DEBUG if verbose or trace_requested() else logging.WARNING)


def _duration(value: str) -> float:
    try:
        return parse_time(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description=DESCRIPTION,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--timeout",
        type=_duration,
        default=None,
        help="Time budget for the whole run (e.g. 500ms, 10s, 2m)",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Log every command executed"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    push_parser = subparsers.add_parser(
        "push", help="Make the mirror work tree match the local one"
    )
    pull_parser = subparsers.add_parser(
        "pull", help="Copy untracked and unstaged files from the mirror"
    )
    for sub in (push_parser, pull_parser):
        sub.add_argument(
            "remote", nargs="?", help="Remote alias (default: sync.remoteName)"
        )
        sub.add_argument(
            "--no-wait",
            action="store_true",
            help="Fail instead of waiting when another sync holds the lock",
        )
    return parser


def run_sync(args: argparse.Namespace) -> tuple[Config, list[str]]:
    """Resolves the configuration and runs the requested synchronization."""
    runner = Runner.with_timeout(
        args.timeout, env=restricted_env(), trace=args.verbose or trace_requested()
    )
    repo = GitRepo(find_workdir(), runner)
    config = Config.load(
        repo,
        args.remote,
        ssh_debug=bool(os.environ.get("GIT_MIRROR_DEBUG")),
        wait_for_lock=not args.no_wait,
    )
    syncer = Syncer(config, runner)

    if args.command == "push":
        with console.status(
            f"[bold blue]Pushing to {escape(config.remote_url)}...[/bold blue]",
            spinner="dots",
        ):
            return config, syncer.push(repo)
    with console.status(
        f"[bold blue]Pulling from {escape(config.remote_url)}...[/bold blue]",
        spinner="dots",
    ):
        return config, syncer.pull(repo)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the git-mirror CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    try:
        config, paths = run_sync(args)
    except (SyncError, CommandError, OSError) as e:
        err_console.print(f"[bold red]ERROR:[/bold red] {escape(str(e))}")
        sys.exit(1)

    direction = "to" if args.command == "push" else "from"
    console.print(
        f"[bold green]SUCCESS:[/bold green] {args.command}ed {len(paths)} files "
        f"{direction} {escape(config.remote_url)}"
    )


if __name__ == "__main__":
    main()
