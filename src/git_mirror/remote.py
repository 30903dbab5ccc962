"""Remote side of a sync: ssh invocation and the reconciliation script.

The reconciliation script brings the mirror's checked-out commit and work
tree cleanliness in line with the local merge base. It runs as a single ssh
round trip and only pays for fetch, checkout and clean when they are needed.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass

from .changes import StatusReport, parse_porcelain_status
from .config import Config
from .constants import (
    APP_NAME,
    MIRROR_UPSTREAM,
    REMOTE_JOB_FAILED_EXIT,
    SSH_UNREACHABLE_EXIT,
)
from .cookie import SyncCookie
from .errors import CommandError, RemoteUnreachableError
from .git_wrapper import join_null_terminated
from .process import Runner, quote_word

logger = logging.getLogger(APP_NAME)

SSH_OPTIONS = {
    "ConnectTimeout": "5",
    "ControlMaster": "auto",
    "ControlPersist": "15m",
    "ForwardAgent": "yes",
    # Keeps "Shared connection to ... closed." off stderr with control sockets.
    "LogLevel": "quiet",
    "ServerAliveInterval": "60",
    "StrictHostKeyChecking": "no",
    "TCPKeepAlive": "yes",
    "UserKnownHostsFile": "/dev/null",
}

REMOTE_SHELL = "/bin/bash --noprofile --norc -c"

# Every value is injected through the quoted assignments prepended by
# render_sync_script; the body itself is never formatted.
SYNC_SCRIPT_BODY = r"""
set -u
set -o pipefail

SERIALIZED_CHECKOUT_REQUIRED=0

head_hash=$("$GIT" -C "$REMOTE_DIR" rev-parse HEAD)
if [[ -z $head_hash ]]; then
  echo "ERROR: unable to find HEAD revision on remote workdir $REMOTE_DIR" >&2
  exit 1
fi

if [[ $head_hash != "$COMMIT_HASH" ]]; then
  if ! "$GIT" -C "$REMOTE_DIR" cat-file -e "$COMMIT_HASH" 2>/dev/null; then
    # Serialized with the speculative fetch, which skips itself while this runs.
    flock "$REMOTE_DIR/.git/FETCH_HEAD" "$GIT" -C "$REMOTE_DIR" fetch -q "$MIRROR_UPSTREAM" || exit 1
    if ! "$GIT" -C "$REMOTE_DIR" cat-file -e "$COMMIT_HASH" 2>/dev/null; then
      echo "ERROR: $COMMIT_HASH does not exist on $REMOTE_DIR. Did you link your local repo to the correct remote repo?" >&2
      exit 1
    fi
  fi
  # Cleaning while checkout rewrites the index is unsafe.
  SERIALIZED_CHECKOUT_REQUIRED=1
fi

pids=()
if [[ $SERIALIZED_CHECKOUT_REQUIRED == 1 ]]; then
  "$GIT" -C "$REMOTE_DIR" checkout -qf "$COMMIT_HASH" || exit
elif [[ $CHECKOUT_REQUIRED == 1 ]]; then
  "$GIT" -C "$REMOTE_DIR" checkout -qf "$COMMIT_HASH" &
  pids+=($!)
fi

if [[ $CLEAN_REQUIRED == 1 ]]; then
  "$GIT" -C "$REMOTE_DIR" clean -qfdx ${EXCLUDES[@]+"${EXCLUDES[@]}"} &
  pids+=($!)
fi

rc=0
for pid in ${pids[@]+"${pids[@]}"}; do
  if ! wait "$pid"; then
    rc=$JOB_FAILED_EXIT
  fi
done

exit $rc
"""


@dataclass(frozen=True)
class RemoteDirective:
    """What the reconciliation script has to do on the mirror.

    Attributes:
        commit_hash (str): The commit the mirror must have checked out.
        checkout_required (bool): Force a checkout even if HEAD matches.
        clean_required (bool): Remove untracked and ignored files.
    """

    commit_hash: str
    checkout_required: bool
    clean_required: bool

    @classmethod
    def from_cookie(cls, cookie: SyncCookie) -> "RemoteDirective":
        """Both steps are forced whenever the local git state moved.

        Even when the mirror's HEAD already matches, the index and staged state
        may differ, so checkout and clean cannot be skipped.
        """
        changed = cookie.git_state_changed()
        return cls(
            commit_hash=cookie.merge_base_hash,
            checkout_required=changed,
            clean_required=changed,
        )


def ssh_args(config: Config, addr: str = "", remote_cmd: str | None = None) -> list[str]:
    """Builds ssh arguments for a multiplexed, non-interactive connection.

    Args:
        config (Config): Supplies the control socket template.
        addr (str, optional): The ssh destination; omitted for `rsync -e`.
        remote_cmd (str | None, optional): A bash script to run remotely.

    Returns:
        list[str]: Arguments following the `ssh` binary.
    """
    args = ["-F", "/dev/null"]
    if config.ssh_debug:
        args.append("-vvv")
    options = dict(SSH_OPTIONS, ControlPath=config.ssh_control_path)
    for key, value in sorted(options.items()):
        args.append(f"-o{key}={value}")
    if addr:
        args.append(addr)
    if remote_cmd is not None:
        args.append(f"{REMOTE_SHELL} {quote_word(remote_cmd)}")
    return args


def ssh_command(config: Config, remote_cmd: str) -> list[str]:
    """Returns the argv running `remote_cmd` on the mirror host."""
    return ["ssh", *ssh_args(config, config.remote_addr, remote_cmd)]


def render_sync_script(
    config: Config,
    directive: RemoteDirective,
    env: Mapping[str, str] | None = None,
) -> str:
    """Renders the reconciliation script for one run.

    Args:
        config (Config): Supplies the mirror directory, git path and excludes.
        directive (RemoteDirective): The target commit and required steps.
        env (Mapping[str, str] | None): `GIT_TRACE*` entries are exported remotely.

    Returns:
        str: A complete bash script.
    """
    lines = [
        f"export {key}={quote_word(value)}"
        for key, value in sorted((env or {}).items())
        if key.startswith("GIT_TRACE")
    ]
    excludes = " ".join(quote_word(f"--exclude={p}") for p in config.exclude_paths)
    lines += [
        f"GIT={quote_word(config.git_remote_path)}",
        f"REMOTE_DIR={quote_word(config.remote_dir)}",
        f"COMMIT_HASH={quote_word(directive.commit_hash)}",
        f"MIRROR_UPSTREAM={quote_word(MIRROR_UPSTREAM)}",
        f"CHECKOUT_REQUIRED={int(directive.checkout_required)}",
        f"CLEAN_REQUIRED={int(directive.clean_required)}",
        f"JOB_FAILED_EXIT={REMOTE_JOB_FAILED_EXIT}",
        f"EXCLUDES=({excludes})",
    ]
    return "\n".join(lines) + "\n" + SYNC_SCRIPT_BODY


def sync_command(
    config: Config, cookie: SyncCookie, env: Mapping[str, str] | None = None
) -> list[str]:
    """Returns the ssh argv that reconciles the mirror for this run."""
    directive = RemoteDirective.from_cookie(cookie)
    logger.debug(
        f"remote directive: commit={directive.commit_hash} "
        f"checkout={directive.checkout_required} clean={directive.clean_required}"
    )
    return ssh_command(config, render_sync_script(config, directive, env))


def run_remote(
    runner: Runner,
    config: Config,
    argv: list[str],
    stdin: str | None = None,
    combined: bool = False,
) -> str:
    """Runs an ssh command, classifying transport failures.

    With `combined`, the remote stdout and stderr are captured as one stream,
    so failure messages keep the script's progress output in order.

    Raises:
        RemoteUnreachableError: If ssh exits with its reserved status 255.
        CommandError: If the remote command itself failed.
    """
    try:
        if combined:
            return runner.combined_output(argv, stdin=stdin)
        return runner.output(argv, stdin=stdin)
    except CommandError as e:
        if e.returncode == SSH_UNREACHABLE_EXIT:
            raise RemoteUnreachableError(config.remote_addr) from e
        raise


def fetch_command(config: Config) -> list[str]:
    """Returns the ssh argv of a speculative, self-backgrounding mirror fetch.

    The remote flock on FETCH_HEAD keeps it from racing a fetch started by the
    reconciliation script.
    """
    remote_dir = config.remote_dir.rstrip("/")
    script = (
        f"flock --nonblock {quote_word(remote_dir + '/.git/FETCH_HEAD')} "
        f"{quote_word(config.git_remote_path)} -C {quote_word(remote_dir)} "
        f"fetch -q {quote_word(MIRROR_UPSTREAM)} "
        "< /dev/null > /dev/null 2>&1 &"
    )
    return ssh_command(config, script)


def remote_status(runner: Runner, config: Config) -> StatusReport:
    """Returns the mirror's work tree status."""
    script = (
        f"{quote_word(config.git_remote_path)} -C {quote_word(config.remote_dir)} "
        "status -z --porcelain --untracked-files=all"
    )
    return parse_porcelain_status(run_remote(runner, config, ssh_command(config, script)))


def stage_paths(runner: Runner, config: Config, paths: list[str]) -> None:
    """Adds paths to the mirror's index; the path list travels on stdin."""
    if not paths:
        return
    script = (
        f"{quote_word(config.git_remote_path)} --literal-pathspecs "
        f"-C {quote_word(config.remote_dir)} "
        "add -f --pathspec-from-file=- --pathspec-file-nul"
    )
    run_remote(
        runner, config, ssh_command(config, script), stdin=join_null_terminated(paths)
    )
