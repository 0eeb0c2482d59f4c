import logging
import re
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .constants import (
    APP_NAME,
    DEFAULT_CONFIG_PATHS,
    DEFAULT_DEBOUNCE,
    DEFAULT_POLL_INTERVAL,
)
from .errors import ConfigError
from .path import expand

logger = logging.getLogger(APP_NAME)


def parse_size(value: int | str) -> int:
    """Converts human-readable size strings (e.g., '100MB') to bytes."""
    if isinstance(value, int):
        return value
    match = re.match(r"^(\d+(?:\.\d+)?)\s*([kmg]b?)$", str(value).strip().lower())
    if not match:
        raise ValueError(f"Invalid size format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {
        "k": 1024,
        "kb": 1024,
        "m": 1024**2,
        "mb": 1024**2,
        "g": 1024**3,
        "gb": 1024**3,
    }
    return int(num * multiplier[unit])


def parse_time(value: int | float | str) -> float:
    """Converts human-readable time strings (e.g., '500ms', '2s', '1m') to seconds."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    match = re.match(
        r"^(\d+(?:\.\d+)?)\s*(ms|s|sec|m|min|h|hr)s?$", str(value).strip().lower()
    )
    if not match:
        raise ValueError(f"Invalid time format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
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


@dataclass
class UserConfig:
    """Identity recorded on mirror commits.

    Attributes:
        name (str): The commit author name. Empty defers to git's own config.
        email (str): The commit author email.
    """

    name: str = ""
    email: str = ""


@dataclass
class SshConfig:
    """SSH key used when talking to the remote.

    Attributes:
        private (str | None): Path template of the private key.
        public (str | None): Path template of the public key (informational).
    """

    private: str | None = None
    public: str | None = None


@dataclass
class RemoteRef:
    """The remote endpoint the mirror is synced with.

    Attributes:
        name (str): The git remote name.
        branch (str): The branch pushed to and pulled from.
        url (str): The remote URL. Empty means the remote is managed by hand.
    """

    name: str = "origin"
    branch: str = "master"
    url: str = ""

    @property
    def tracking_branch(self) -> str:
        return f"{self.name}/{self.branch}"


@dataclass
class ReposConfig:
    """Location of the local mirror and its remote.

    Attributes:
        local (str): Path template of the mirror working tree.
        remote (RemoteRef): The remote endpoint.
    """

    local: str = "$HOME/.homesync"
    remote: RemoteRef = field(default_factory=RemoteRef)


@dataclass
class DaemonConfig:
    """Daemon operational settings.

    Attributes:
        debounce (float): Seconds during which events for one package coalesce.
        poll_interval (float): Seconds between checks for missing directories.
    """

    debounce: float = DEFAULT_DEBOUNCE
    poll_interval: float = DEFAULT_POLL_INTERVAL


@dataclass
class LimitsConfig:
    """Resource limitation settings.

    Attributes:
        max_log_size (int): Max bytes for log files before rotation.
    """

    max_log_size: int = 5 * 1024 * 1024


@dataclass
class Config:
    """Parsed homesync configuration.

    Attributes:
        user (UserConfig): Commit identity.
        ssh (SshConfig): SSH key settings.
        repos (ReposConfig): Mirror and remote locations.
        daemon (DaemonConfig): Daemon behavior settings.
        limits (LimitsConfig): Resource limits.
        unmanaged (list[str]): Mirror-relative paths excluded from syncing.
        packages (list[tuple[str, list[str]]]): Package names and their
            candidate path templates, in declared order.
        path (Path | None): The file this configuration was loaded from.
    """

    user: UserConfig = field(default_factory=UserConfig)
    ssh: SshConfig = field(default_factory=SshConfig)
    repos: ReposConfig = field(default_factory=ReposConfig)
    daemon: DaemonConfig = field(default_factory=DaemonConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    unmanaged: list[str] = field(default_factory=list)
    packages: list[tuple[str, list[str]]] = field(default_factory=list)
    path: Path | None = None

    @property
    def local_path(self) -> Path:
        """The expanded mirror directory."""
        return expand(self.repos.local)

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Locates and parses the configuration file.

        Args:
            path (Path | None): An explicit config file. When omitted, the
                default candidate locations are searched in priority order.

        Returns:
            Config: The parsed configuration.

        Raises:
            ConfigError: If no file is found or its contents are malformed.
        """
        config_path = path if path is not None else find_config()

        try:
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
        except FileNotFoundError as e:
            raise ConfigError(f"Config file not found: {config_path}") from e
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Config syntax error in {config_path}: {e}") from e
        except OSError as e:
            raise ConfigError(f"Could not read {config_path}: {e}") from e

        instance = cls.from_dict(data)
        instance.path = Path(config_path)
        return instance

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Config":
        """Builds a configuration from an already parsed TOML document.

        Raises:
            ConfigError: If ``repos``, ``unmanaged`` or ``packages`` are malformed.
        """
        instance = cls()

        if "user" in data:
            instance.user = cls._update_dataclass("user", instance.user, data["user"])
        if "ssh" in data:
            instance.ssh = cls._update_dataclass("ssh", instance.ssh, data["ssh"])
        if "daemon" in data:
            instance.daemon = cls._update_dataclass(
                "daemon", instance.daemon, data["daemon"]
            )
        if "limits" in data:
            instance.limits = cls._update_dataclass(
                "limits", instance.limits, data["limits"]
            )

        repos = data.get("repos")
        if not isinstance(repos, dict) or not isinstance(repos.get("local"), str):
            raise ConfigError("Config must define [repos] with a 'local' path.")
        remote = repos.get("remote", {})
        if not isinstance(remote, dict):
            raise ConfigError("[repos.remote] must be a table.")
        instance.repos = ReposConfig(
            local=repos["local"],
            remote=cls._update_dataclass("repos.remote", RemoteRef(), remote),
        )

        unmanaged = data.get("unmanaged", [])
        if not isinstance(unmanaged, list) or not all(
            isinstance(u, str) for u in unmanaged
        ):
            raise ConfigError("'unmanaged' must be a list of mirror-relative paths.")
        instance.unmanaged = list(unmanaged)

        packages = data.get("packages", {})
        if not isinstance(packages, dict):
            raise ConfigError("[packages] must be a table of path lists.")
        for name, candidates in packages.items():
            if not isinstance(candidates, list) or not all(
                isinstance(c, str) for c in candidates
            ):
                raise ConfigError(
                    f"Package '{name}' must map to a list of path templates."
                )
            instance.packages.append((name, list(candidates)))

        return instance

    @staticmethod
    def _update_dataclass(section_name: str, instance: Any, updates: dict) -> Any:
        """Updates a dataclass, warning on invalid keys and parsing human-readable formats."""
        if not isinstance(updates, dict):
            raise ConfigError(f"[{section_name}] must be a table.")
        valid_keys = instance.__dataclass_fields__.keys()
        filtered_updates = {}

        invalid_keys = set(updates.keys()) - set(valid_keys)
        if invalid_keys:
            logger.warning(
                f"Unknown config keys in [{section_name}]: "
                f"{', '.join(sorted(invalid_keys))}. Ignoring."
            )

        for k, v in updates.items():
            if k not in valid_keys:
                continue

            try:
                if k == "max_log_size":
                    filtered_updates[k] = parse_size(v)
                elif k in ["debounce", "poll_interval"]:
                    filtered_updates[k] = parse_time(v)
                else:
                    filtered_updates[k] = v
            except ValueError as e:
                logger.warning(
                    f"Config error in [{section_name}].{k}: {e}. Falling back to default."
                )

        return replace(instance, **filtered_updates)


def find_config(candidates: list[str] | None = None) -> Path:
    """Returns the first existing config file among the candidate templates.

    Raises:
        ConfigError: If none of the candidates exists.
    """
    templates = candidates if candidates is not None else DEFAULT_CONFIG_PATHS
    for template in templates:
        candidate = expand(template)
        if candidate.is_file():
            return candidate
    raise ConfigError(
        "Could not find a configuration file. Looked in: " + ", ".join(templates)
    )


CONFIG_TEMPLATE = """\
# homesync configuration
#
# Top-level keys must come before the first [table].
unmanaged = ["LICENSE", "README.md"]

[user]
name = ""
email = ""

[ssh]
# private = "$HOME/.ssh/id_ed25519"

[repos]
local = "$HOME/.homesync"

[repos.remote]
name = "origin"
branch = "master"
url = ""

[daemon]
# debounce = "500ms"
# poll_interval = "5s"

[packages]
homesync = [
    "$HOME/.homesync.toml",
    "$HOME/.config/homesync/homesync.toml",
    "$XDG_CONFIG_HOME/homesync.toml",
    "$XDG_CONFIG_HOME/homesync/homesync.toml",
]
"""
"""str: Written by ``homesync config`` when no configuration exists yet."""
