import logging
import re
from dataclasses import dataclass, field, fields, replace

from .constants import (
    APP_NAME,
    CONFIG_SECTION,
    DEFAULT_GIT_PATH,
    DEFAULT_REMOTE_NAME,
    DEFAULT_RSYNC_PATH,
    DEFAULT_SSH_CONTROL_PATH,
    DEFAULT_UPSTREAM_REF,
)
from .errors import ConfigError
from .git_wrapper import GitConfig, GitRepo

logger = logging.getLogger(APP_NAME)

# git config variable (lowercased, as git reports it) -> Config field
SYNC_KEYS = {
    "remotename": "remote_name",
    "excludepaths": "exclude_paths",
    "gitremotepath": "git_remote_path",
    "rsynclocalpath": "rsync_local_path",
    "rsyncremotepath": "rsync_remote_path",
    "sshcontrolpath": "ssh_control_path",
    "upstreamref": "upstream_ref",
}


def parse_time(value: float | int | str) -> float:
    """Converts human-readable durations (e.g., '500ms', '2s', '1m') to seconds."""
    if isinstance(value, (int, float)):
        return float(value)
    match = re.match(
        r"^(\d+(?:\.\d+)?)\s*(ms|s|sec|m|min|h|hr)?s?$", str(value).strip().lower()
    )
    if not match:
        raise ValueError(f"Invalid time format '{value}'")
    num, unit = float(match.group(1)), match.group(2) or "s"
    multiplier = {
        "ms": 0.001,
        "s": 1,
        "sec": 1,
        "m": 60,
        "min": 60,
        "h": 3600,
        "hr": 3600,
    }
    return num * multiplier[unit]


def split_remote_url(url: str) -> tuple[str, str]:
    """Splits an scp-style `host:path` remote URL.

    Args:
        url (str): The remote URL, e.g. `devbox:src/project`.

    Returns:
        tuple[str, str]: The ssh address and the mirror directory.

    Raises:
        ConfigError: If the URL is not of the form `host:path`.
    """
    addr, sep, path = url.partition(":")
    if not sep or not addr or not path or "://" in url:
        raise ConfigError(
            f"Remote URL '{url}' is not an ssh 'host:path' address"
        )
    return addr, path


@dataclass(frozen=True)
class Config:
    """Settings for one Git Mirror invocation.

    Attributes:
        remote_name (str): The git remote alias pointing at the mirror.
        remote_url (str): The `host:path` URL of that remote.
        exclude_paths (tuple[str, ...]): Patterns the mirror's clean step keeps.
        git_remote_path (str): The git binary on the mirror host.
        rsync_local_path (str): The local rsync binary.
        rsync_remote_path (str): An rsync binary override on the mirror host.
        ssh_control_path (str): The ssh control socket template.
        upstream_ref (str): The ref used to compute the common-ancestor commit.
        fsmonitor_path (str): The change-notification helper ("" disables it).
        ssh_debug (bool): Whether to run ssh with `-vvv`.
        wait_for_lock (bool): Whether to block on a busy work tree lock.
    """

    remote_name: str = DEFAULT_REMOTE_NAME
    remote_url: str = ""
    exclude_paths: tuple[str, ...] = field(default_factory=tuple)
    git_remote_path: str = DEFAULT_GIT_PATH
    rsync_local_path: str = DEFAULT_RSYNC_PATH
    rsync_remote_path: str = ""
    ssh_control_path: str = DEFAULT_SSH_CONTROL_PATH
    upstream_ref: str = DEFAULT_UPSTREAM_REF
    fsmonitor_path: str = ""
    ssh_debug: bool = False
    wait_for_lock: bool = True

    @property
    def remote_addr(self) -> str:
        return split_remote_url(self.remote_url)[0]

    @property
    def remote_dir(self) -> str:
        return split_remote_url(self.remote_url)[1]

    @property
    def fsmonitor_enabled(self) -> bool:
        return bool(self.fsmonitor_path)

    @classmethod
    def load(
        cls,
        repo: GitRepo,
        remote_name: str | None = None,
        **overrides,
    ) -> "Config":
        """Resolves the configuration from the work tree's git config.

        Args:
            repo (GitRepo): The local work tree.
            remote_name (str | None): A remote alias overriding `sync.remoteName`.
            **overrides: Values for CLI-only fields (ssh_debug, wait_for_lock).

        Returns:
            Config: The resolved, immutable configuration.

        Raises:
            ConfigError: If the remote is unknown or its URL is unusable.
        """
        instance = cls.from_git_config(repo.config())
        if remote_name:
            instance = replace(instance, remote_name=remote_name)

        if instance.remote_name not in repo.remote_names():
            raise ConfigError(
                f"No git remote named '{instance.remote_name}'. "
                f"Add one with: git remote add {instance.remote_name} host:path"
            )

        instance = replace(
            instance, remote_url=repo.remote_url(instance.remote_name), **overrides
        )
        # Fail early on a URL that ssh/rsync cannot use.
        split_remote_url(instance.remote_url)
        return instance

    @classmethod
    def from_git_config(cls, git_config: GitConfig) -> "Config":
        """Builds a Config from the `[sync]` section and `core.fsmonitor`."""
        prefix = f"{CONFIG_SECTION}."
        updates = {
            key[len(prefix) :]: value
            for key, value in git_config.items()
            if key.startswith(prefix) and key.count(".") == 1
        }
        instance = cls._update_dataclass(cls(), updates)

        fsmonitor = (git_config.get("core.fsmonitor") or "").strip()
        if fsmonitor.lower() in ("", "true", "false"):
            fsmonitor = ""
        return replace(instance, fsmonitor_path=fsmonitor)

    @staticmethod
    def _update_dataclass(instance: "Config", updates: dict[str, str]) -> "Config":
        """Applies git config values, warning on unknown keys."""
        invalid_keys = set(updates) - set(SYNC_KEYS)
        if invalid_keys:
            logger.warning(
                f"Unknown config keys in [{CONFIG_SECTION}]: "
                f"{', '.join(sorted(invalid_keys))}. Ignoring."
            )

        valid_fields = {f.name for f in fields(instance)}
        filtered_updates: dict = {}
        for key, value in updates.items():
            name = SYNC_KEYS.get(key)
            if name not in valid_fields:
                continue
            if name == "exclude_paths":
                filtered_updates[name] = tuple(p for p in value.split(":") if p)
            else:
                filtered_updates[name] = value.strip()

        return replace(instance, **filtered_updates)
