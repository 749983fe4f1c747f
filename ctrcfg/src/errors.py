from __future__ import annotations


class SyncError(RuntimeError):
    """Base class for errors raised while reconciling an object."""


class ValidationError(SyncError):
    """The intent object is malformed; terminal until its spec changes."""


class ReferenceParseError(SyncError):
    """The release payload image reference could not be parsed."""


class SuffixCollisionError(SyncError):
    """The computed artifact name is already owned by another object."""


class ConfigError(RuntimeError):
    """Raised when the controller process configuration is invalid."""
