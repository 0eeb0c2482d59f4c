"""homesync: keep configuration files in sync across machines.

Tracked files ("packages") are copied into a local git mirror, pushed to a
remote, and applied back onto disk on other machines. A background daemon
watches the tracked files and stages every change as it happens.
"""

from . import (
    cli,
    config,
    constants,
    daemon,
    engine,
    errors,
    git_wrapper,
    mirror,
    package,
    path,
    watcher,
)

__all__ = [
    "cli",
    "config",
    "constants",
    "daemon",
    "engine",
    "errors",
    "git_wrapper",
    "mirror",
    "package",
    "path",
    "watcher",
]
