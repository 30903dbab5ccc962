import atexit
import logging
import os
import tempfile
from pathlib import Path

from .changes import ChangeSet
from .config import Config
from .constants import APP_NAME, MANIFEST_PREFIX
from .errors import TransferError
from .git_wrapper import GitRepo, join_null_terminated
from .process import Runner, quote_cmd
from .remote import remote_status, ssh_args, stage_paths

logger = logging.getLogger(APP_NAME)


def topmost_missing_dir(workdir: Path, fname: str) -> str:
    """Finds the highest missing directory above a missing file.

    rsync only emits a directory deletion when a whole subtree vanished, so
    listing the files inside it would leave stale content on the mirror. The
    directory is returned relative to `workdir` with a trailing slash, which
    is rsync's convention for directories. A file whose parent still exists
    is returned unchanged, as is a path that reappeared after the caller saw
    it missing; rsync copies whatever exists when it runs.

    Args:
        workdir (Path): The work tree root.
        fname (str): A repository-relative path that no longer exists.

    Returns:
        str: The path to put in the manifest.
    """
    names = [name for name in fname.strip("/").split("/") if name]
    current = workdir
    for depth, name in enumerate(names, start=1):
        current = current / name
        if not os.path.lexists(current):
            if depth == len(names):
                return fname
            return "/".join(names[:depth]) + "/"
    logger.debug(f"{fname} reappeared while building the transfer manifest")
    return fname


def sanitize_paths(workdir: Path, paths: list[str]) -> list[str]:
    """Rewrites paths under deleted directories and sorts the result."""
    sanitized = set()
    for fname in paths:
        if not os.path.lexists(workdir / fname):
            fname = topmost_missing_dir(workdir, fname)
        sanitized.add(fname)
    return sorted(sanitized)


def write_manifest(paths: list[str]) -> Path:
    """Writes a NUL-terminated rsync manifest, removed when the process exits.

    Args:
        paths (list[str]): Relative paths, already sanitized.

    Returns:
        Path: The manifest location (under $TMPDIR).

    Raises:
        TransferError: If the manifest cannot be written.
    """
    try:
        fd, name = tempfile.mkstemp(prefix=MANIFEST_PREFIX)
    except OSError as e:
        raise TransferError(f"Failed to create transfer manifest: {e}") from e
    manifest = Path(name)
    atexit.register(lambda: manifest.unlink(missing_ok=True))
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(join_null_terminated(paths).encode("utf-8", errors="surrogateescape"))
    except OSError as e:
        raise TransferError(f"Failed to write transfer manifest {manifest}: {e}") from e
    return manifest


def rsync_args(config: Config, manifest: Path, src: str, dst: str) -> list[str]:
    """Builds rsync arguments for a manifest-driven transfer.

    Archive-style attributes, compression, deletion of manifest entries that
    are missing on the source side, and the same multiplexed ssh transport
    the reconciliation script uses.
    """
    args = [
        "-czlptgo",
        "-e",
        quote_cmd(["ssh", *ssh_args(config)]),
        "--delete-missing-args",
        # Sanitized entries may be non-empty directories on the receiving side.
        "--force",
        "--from0",
        "--files-from",
        str(manifest),
    ]
    if config.rsync_remote_path:
        args.extend(["--rsync-path", config.rsync_remote_path])
    args.extend([src, dst])
    return args


def push_files(
    repo: GitRepo, config: Config, change_set: ChangeSet, runner: Runner
) -> list[str]:
    """Ships a change set to the mirror.

    Args:
        repo (GitRepo): The local work tree.
        config (Config): The resolved configuration.
        change_set (ChangeSet): The files to transfer.
        runner (Runner): Executes rsync and ssh.

    Returns:
        list[str]: The manifest entries that were sent.

    Raises:
        CommandError: If rsync or the remote index update fails.
        TransferError: If the manifest cannot be built.
    """
    paths = sanitize_paths(repo.path, change_set.paths)
    if not paths:
        return []
    manifest = write_manifest(paths)
    runner.run(
        [
            config.rsync_local_path,
            *rsync_args(config, manifest, str(repo.path), config.remote_url),
        ]
    )

    added = [f for f in change_set.added if os.path.lexists(repo.path / f)]
    if added:
        logger.debug(f"staging {len(added)} added files on the mirror")
        stage_paths(runner, config, added)
    return paths


def pull_files(repo: GitRepo, config: Config, runner: Runner) -> list[str]:
    """Copies the mirror's untracked and unstaged files into the local tree.

    Committed state is not pulled; only work tree edits made on the mirror.

    Returns:
        list[str]: The paths that were transferred.
    """
    report = remote_status(runner, config)
    paths = sorted(set(report.untracked) | set(report.unstaged))
    if not paths:
        return []
    logger.debug(f"pulling {len(paths)} files from the mirror")
    manifest = write_manifest(paths)
    runner.run(
        [
            config.rsync_local_path,
            *rsync_args(config, manifest, config.remote_url, str(repo.path)),
        ]
    )
    return paths
