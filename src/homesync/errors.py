"""Exception hierarchy shared by every homesync component.

Per-package errors (``ResolutionFailure``, ``IoFailure``, ``AlreadyExists``)
are collected into operation reports. ``BackendFailure`` aborts the whole
operation, and ``ConfigError`` is fatal at startup.
"""


class HomesyncError(Exception):
    """Base class for all homesync errors."""


class ConfigError(HomesyncError):
    """The configuration file is missing, malformed, or declares invalid packages."""


class ResolutionFailure(HomesyncError):
    """No candidate path of a package exists on disk."""


class IoFailure(HomesyncError):
    """A read, write, or permission error on a tracked or mirrored file."""


class NotMirrored(IoFailure):
    """The mirror holds no copy of the requested package."""


class AlreadyExists(HomesyncError):
    """The target of a materialization exists and overwriting was not allowed."""


class OverwriteRefused(AlreadyExists):
    """An ``apply`` target exists and ``--overwrite`` was not given."""


class BackendFailure(HomesyncError):
    """A git command failed. The core never subdivides this boundary."""
