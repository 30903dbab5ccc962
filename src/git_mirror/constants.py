"""Global constants for Git Mirror.

This module defines the files Git Mirror keeps inside a work tree's metadata
directory, the defaults used when the git config is silent, and the limits
and exit codes shared between the local process and the remote script.
"""

# --- Identity ---
APP_NAME = "git-mirror"
"""str: The human-readable application name (also the logger name)."""

CONFIG_SECTION = "sync"
"""str: The git config section holding Git Mirror settings."""

# --- Work tree layout ---
GIT_DIR_NAME = ".git"
"""str: The version-control metadata directory name."""

COOKIE_FILE_NAME = "git-mirror-cookie.json"
"""str: The sync cookie file, stored under the metadata directory."""

LOCK_FILE_NAME = "git-mirror.mutex"
"""str: The advisory lock file, stored under the metadata directory."""

MANIFEST_PREFIX = "git-mirror-file-manifest-"
"""str: Prefix for the temporary rsync manifest files."""

# --- Defaults ---
DEFAULT_REMOTE_NAME = "sync"
"""str: The git remote alias pointing at the mirror."""

DEFAULT_SSH_CONTROL_PATH = "/tmp/ssh_mux_%h_%p_%r"
"""str: Control socket template for ssh connection reuse."""

DEFAULT_GIT_PATH = "git"
"""str: The git binary used on the mirror host."""

DEFAULT_RSYNC_PATH = "rsync"
"""str: The local rsync binary."""

DEFAULT_UPSTREAM_REF = "@{upstream}"
"""str: The ref whose merge base with HEAD is the common-ancestor commit."""

MIRROR_UPSTREAM = "origin"
"""str: The remote the mirror fetches missing commits from."""

# --- Change detection ---
FSMONITOR_PROTOCOL = "1"
"""str: The fsmonitor hook protocol version spoken by Git Mirror."""

FSMONITOR_TIMEOUT = 1.0
"""float: Seconds the fast path may spend waiting on the fsmonitor helper."""

FSMONITOR_MAX_FILES = 100
"""int: Above this many changed paths the fast path gives up."""

FSMONITOR_EVERYTHING = "/"
"""str: The fsmonitor answer meaning "assume everything changed"."""

NS_PER_SECOND = 1_000_000_000

# --- Process handling ---
REQUIRED_ENV_KEYS = ["PATH", "USER", "LOGNAME", "HOME", "SSH_AUTH_SOCK"]
"""list[str]: Environment variables every child process must receive."""

SSH_UNREACHABLE_EXIT = 255
"""int: The exit code ssh reserves for connection failures."""

REMOTE_JOB_FAILED_EXIT = 254
"""int: The reconciliation script's exit code when a background job failed."""

BACKGROUND_GRACE = 2.0
"""float: Seconds to wait for the speculative fetch before giving up on it."""
