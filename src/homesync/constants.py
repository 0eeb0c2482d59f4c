import os
from pathlib import Path

"""Global constants and path definitions for homesync.

This module defines the filesystem layout (adhering to XDG standards where applicable),
application identifiers, and the names of the bookkeeping files homesync keeps
inside its mirror repository.
"""

# --- Identity ---
APP_NAME = "homesync"
"""str: The human-readable application name."""

# --- Paths ---
_XDG_STATE = os.environ.get("XDG_STATE_HOME")
_BASE_STATE = Path(_XDG_STATE) if _XDG_STATE else Path.home() / ".local/state"

STATE_DIR = _BASE_STATE / "homesync"
"""Path: The directory for runtime state data (logs, pid file)."""

LOG_FILE = STATE_DIR / "daemon.log"
"""Path: The file path for the daemon process logs."""

PID_FILE = STATE_DIR / "daemon.pid"
"""Path: The file path storing the daemon's process ID."""

# --- Configuration Paths ---
DEFAULT_CONFIG_PATHS = [
    "$HOME/.homesync.toml",
    "$HOME/.config/homesync/homesync.toml",
    "$XDG_CONFIG_HOME/homesync.toml",
    "$XDG_CONFIG_HOME/homesync/homesync.toml",
]
"""list[str]: Candidate locations of the config file, ordered by priority."""

# --- Mirror Layout ---
SENTINEL_FILE = ".homesync"
"""str: Marker file identifying a repository as managed by homesync."""

LOCK_FILE = "homesync.lock"
"""str: Advisory lock file name, created inside the mirror's .git directory."""

RESERVED_NAMES = frozenset({".git", SENTINEL_FILE})
"""frozenset[str]: Mirror-relative names that are never treated as packages.

Any other top-level name starting with ``.git`` (``.gitignore``,
``.gitattributes``) is left alone as well.
"""

# --- Daemon Defaults ---
DEFAULT_DEBOUNCE = 0.5
"""float: Seconds during which repeated events for one package are coalesced."""

DEFAULT_POLL_INTERVAL = 5.0
"""float: Seconds between checks for candidate directories that do not exist yet."""

EVENT_QUEUE_SIZE = 1024
"""int: Capacity of the queue between the watcher and the daemon loop."""
