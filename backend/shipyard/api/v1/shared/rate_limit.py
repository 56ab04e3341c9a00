"""Shared rate limiter for API endpoints.

Admin endpoints import ``limiter`` and decorate themselves with
``limiter.limit(admin_limit())`` so every router applies the same policy.
"""

from typing import Callable

from slowapi import Limiter
from slowapi.util import get_remote_address

from shipyard.core.config import get_settings

# slowapi expects list[str | Callable[..., str]]
LimitsType = list[str | Callable[..., str]]

_limiter: Limiter | None = None


def get_limiter() -> Limiter:
    """Get or create the shared rate limiter instance.

    Storage defaults to process memory; ``RATE_LIMIT_STORAGE_URI`` may point
    at any backend supported by the ``limits`` package.
    """
    global _limiter
    if _limiter is None:
        settings = get_settings()
        default_limits: LimitsType = [
            f"{settings.rate_limit_requests_per_minute}/minute",
            f"{settings.rate_limit_requests_per_hour}/hour",
            f"{settings.rate_limit_requests_per_day}/day",
        ]
        _limiter = Limiter(
            key_func=get_remote_address,
            storage_uri=settings.rate_limit_storage_uri,
            default_limits=default_limits,
            enabled=settings.rate_limit_enabled,
        )
    return _limiter


def admin_limit() -> str:
    return f"{get_settings().rate_limit_admin_per_minute}/minute"


limiter = get_limiter()
