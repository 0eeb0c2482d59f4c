import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from .constants import APP_NAME

if TYPE_CHECKING:
    from .package import Package

logger = logging.getLogger(APP_NAME)

_VAR_PATTERN = re.compile(r"\$(?:\{(\w+)\}|(\w+))")


def expand(template: str | os.PathLike[str]) -> Path:
    """Expands environment variable placeholders in a path template.

    Both ``$VAR`` and ``${VAR}`` forms are substituted textually. Unset
    variables expand to an empty string, so a template such as
    ``$XDG_CONFIG_HOME/tmux.conf`` becomes ``/tmux.conf`` and simply fails to
    match later on. A leading ``~`` expands to the home directory, and relative
    results are anchored at the current working directory.

    Args:
        template (str | os.PathLike[str]): The path template to expand.

    Returns:
        Path: The absolute, expanded path. Nothing is checked on disk.
    """
    text = os.fspath(template)
    expanded = _VAR_PATTERN.sub(
        lambda m: os.environ.get(m.group(1) or m.group(2), ""), text
    )
    return Path(os.path.abspath(os.path.expanduser(expanded)))


class ResolutionState(Enum):
    """Outcome of probing a package's candidate paths."""

    UNRESOLVED = "unresolved"
    RESOLVED = "resolved"
    AMBIGUOUS = "ambiguous"


@dataclass(frozen=True)
class Resolution:
    """The active on-disk path selected for a package.

    Attributes:
        package (str): Name of the resolved package.
        state (ResolutionState): Whether zero, one, or several candidates exist.
        path (Path | None): The earliest existing candidate, or None.
        matches (tuple[Path, ...]): Every existing candidate, in declared order.
    """

    package: str
    state: ResolutionState
    path: Path | None = None
    matches: tuple[Path, ...] = field(default_factory=tuple)

    @property
    def resolved(self) -> bool:
        return self.path is not None


class PathResolver:
    """Selects the active on-disk location of a package.

    Resolution is read-only: candidates are probed in declared order and the
    first one that exists as a regular file wins. Nothing is ever created.
    """

    def candidates(self, package: "Package") -> list[Path]:
        """Returns the expanded candidate paths of a package, in declared order."""
        return [expand(c) for c in package.candidates]

    def resolve(self, package: "Package") -> Resolution:
        """Resolves a package to its earliest existing candidate.

        Args:
            package (Package): The package to resolve.

        Returns:
            Resolution: ``RESOLVED`` or ``AMBIGUOUS`` with the first existing
            candidate as ``path``, or ``UNRESOLVED`` when none exists.
        """
        matches = []
        for candidate in self.candidates(package):
            try:
                if candidate.is_file():
                    matches.append(candidate)
            except OSError as e:
                # Permission errors on a parent make the candidate non-matching.
                logger.debug(f"Probe failed for {candidate}: {e}")

        if not matches:
            return Resolution(package.name, ResolutionState.UNRESOLVED)

        state = ResolutionState.RESOLVED
        if len(matches) > 1:
            state = ResolutionState.AMBIGUOUS
        return Resolution(package.name, state, matches[0], tuple(matches))

    def first_candidate(self, package: "Package") -> Path:
        """Returns the highest-priority candidate, whether or not it exists."""
        return expand(package.candidates[0])
