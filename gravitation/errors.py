"""Exception types shared across the gravitation package."""

from __future__ import annotations


class GravitationError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(GravitationError, ValueError):
    """Malformed flags, fixture or state file. Fatal at startup."""


class StorageError(ConfigurationError):
    """A persisted state file could not be read."""


class PeerUnreachable(GravitationError, ConnectionError):
    """No usable address for a peer, or the connection failed."""


class ProtocolError(GravitationError):
    """The remote side answered a request with an error."""


class ProfileUnavailable(GravitationError):
    """The remote profile could not be obtained or was malformed."""


__all__ = [
    "GravitationError",
    "ConfigurationError",
    "StorageError",
    "PeerUnreachable",
    "ProtocolError",
    "ProfileUnavailable",
]
