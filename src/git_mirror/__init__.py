"""Git Mirror: keep a remote work tree identical to a local one.

This package provides the command-line interface, the change detection and
remote reconciliation logic, and a watchman-backed fsmonitor hook used to
mirror a local git work tree onto another host over ssh and rsync.
"""

from . import (
    changes,
    cli,
    config,
    constants,
    cookie,
    errors,
    fsmonitor,
    git_wrapper,
    process,
    remote,
    sync,
    transfer,
)

__all__ = [
    "changes",
    "cli",
    "config",
    "constants",
    "cookie",
    "errors",
    "fsmonitor",
    "git_wrapper",
    "process",
    "remote",
    "sync",
    "transfer",
]
