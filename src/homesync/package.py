import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import TYPE_CHECKING

from .constants import APP_NAME, RESERVED_NAMES
from .errors import ConfigError
from .path import PathResolver, Resolution

if TYPE_CHECKING:
    from .config import Config

logger = logging.getLogger(APP_NAME)


@dataclass(frozen=True)
class Package:
    """A tracked configuration file.

    Attributes:
        name (str): Unique key, also the file name inside the mirror.
        candidates (tuple[str, ...]): Path templates, highest priority first.
    """

    name: str
    candidates: tuple[str, ...]


@dataclass(frozen=True)
class UnmanagedEntry:
    """A mirror-relative path versioned alongside packages but never synced."""

    path: str


def _validate_name(name: str) -> None:
    if not name or name in (".", ".."):
        raise ConfigError(f"Invalid package name '{name}'.")
    if "/" in name or "\\" in name or "\0" in name:
        raise ConfigError(
            f"Package name '{name}' must be a single path component "
            "(the mirror stores one flat file per package)."
        )
    if name in RESERVED_NAMES or name.startswith(".git"):
        raise ConfigError(f"Package name '{name}' is reserved.")


class PackageModel:
    """The packages and unmanaged entries of one configuration generation.

    A model is immutable once built. Re-resolution and config reloads produce
    a new model instead of mutating the current one.
    """

    def __init__(
        self,
        packages: list[Package],
        unmanaged: list[UnmanagedEntry],
        resolver: PathResolver | None = None,
    ):
        self.resolver = resolver or PathResolver()
        self._packages = {p.name: p for p in packages}
        self.unmanaged = tuple(unmanaged)
        self.resolutions: dict[str, Resolution] = {
            p.name: self.resolver.resolve(p) for p in packages
        }

    @classmethod
    def build(
        cls,
        packages: Iterable[tuple[str, Iterable[str]]],
        unmanaged: Iterable[str] = (),
        resolver: PathResolver | None = None,
    ) -> "PackageModel":
        """Validates raw package declarations and builds a model.

        Args:
            packages: ``(name, candidates)`` pairs in declared order.
            unmanaged: Mirror-relative paths excluded from syncing.
            resolver (PathResolver | None): Resolver used for the initial pass.

        Raises:
            ConfigError: On duplicate, colliding, or invalid names, or on an
                empty candidate list.
        """
        entries = []
        for raw in unmanaged:
            rel = PurePosixPath(raw)
            if rel.is_absolute() or ".." in rel.parts or not rel.parts:
                raise ConfigError(f"Unmanaged entry '{raw}' must be mirror-relative.")
            entries.append(UnmanagedEntry(rel.as_posix()))
        unmanaged_names = {e.path for e in entries}

        seen: dict[str, str] = {}
        built = []
        for name, candidates in packages:
            _validate_name(name)
            folded = name.casefold()
            if folded in seen:
                if seen[folded] == name:
                    raise ConfigError(f"Duplicate package '{name}'.")
                raise ConfigError(
                    f"Packages '{seen[folded]}' and '{name}' collide in the mirror."
                )
            if name in unmanaged_names:
                raise ConfigError(f"Package '{name}' is also listed as unmanaged.")
            candidates = tuple(candidates)
            if not candidates:
                raise ConfigError(f"Package '{name}' has no candidate paths.")
            seen[folded] = name
            built.append(Package(name, candidates))

        return cls(built, entries, resolver)

    @classmethod
    def from_config(
        cls, config: "Config", resolver: PathResolver | None = None
    ) -> "PackageModel":
        """Builds a model from a loaded configuration."""
        return cls.build(config.packages, config.unmanaged, resolver)

    def __iter__(self) -> Iterator[Package]:
        return iter(self._packages.values())

    def __len__(self) -> int:
        return len(self._packages)

    def __contains__(self, name: object) -> bool:
        return name in self._packages

    @property
    def names(self) -> list[str]:
        return list(self._packages)

    def get(self, name: str) -> Package:
        """Returns a package by name.

        Raises:
            KeyError: If no package of that name is configured.
        """
        return self._packages[name]

    def select(self, names: Iterable[str] | None = None) -> list[Package]:
        """Returns the named packages (all when ``names`` is None) in declared order.

        Unknown names are ignored here; callers report them.
        """
        if names is None:
            return list(self)
        wanted = set(names)
        return [p for p in self if p.name in wanted]

    def resolution(self, name: str) -> Resolution:
        return self.resolutions[name]

    def is_unmanaged(self, rel_path: str) -> bool:
        """True if a mirror-relative path is excluded from syncing."""
        rel = PurePosixPath(rel_path).as_posix()
        head = rel.split("/", 1)[0]
        if head in RESERVED_NAMES or head.startswith(".git"):
            return True
        return any(
            rel == e.path or rel.startswith(e.path.rstrip("/") + "/")
            for e in self.unmanaged
        )

    def refresh(self) -> "PackageModel":
        """Re-runs resolution and returns a new model of the same generation."""
        logger.debug("Re-resolving package paths.")
        return PackageModel(list(self), list(self.unmanaged), self.resolver)
