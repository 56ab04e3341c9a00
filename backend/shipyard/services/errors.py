"""Shipyard exception definitions."""

from __future__ import annotations

from datetime import datetime


class ShipyardError(Exception):
    """Base class for errors raised by the repository cache."""


class UnknownClusterError(ShipyardError):
    """Raised when a cluster key is not present in the registry."""

    def __init__(self, cluster_key: str) -> None:
        super().__init__(f'Cluster "{cluster_key}" not found in registry')
        self.cluster_key = cluster_key


class UpstreamError(ShipyardError):
    """Generic wrapper for GitHub API failures."""

    kind = "upstream_error"


class UpstreamAuthError(UpstreamError):
    """Credentials are missing or were rejected. Not retried automatically."""

    kind = "auth"


class UpstreamRateLimited(UpstreamError):
    """GitHub refused the request because the quota is exhausted."""

    kind = "rate_limited"

    def __init__(self, message: str, reset_at: datetime | None = None) -> None:
        super().__init__(message)
        self.reset_at = reset_at


class UpstreamUnavailable(UpstreamError):
    """Network failure, timeout or 5xx from GitHub."""

    kind = "unavailable"


class UpstreamMalformedResponse(UpstreamError):
    """GitHub answered with something we could not interpret."""

    kind = "malformed"


__all__ = [
    "ShipyardError",
    "UnknownClusterError",
    "UpstreamAuthError",
    "UpstreamError",
    "UpstreamMalformedResponse",
    "UpstreamRateLimited",
    "UpstreamUnavailable",
]
