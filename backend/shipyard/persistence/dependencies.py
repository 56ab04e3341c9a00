from __future__ import annotations

import logging
from functools import lru_cache

from shipyard.core.config import get_settings
from shipyard.core.database import get_session_factory
from shipyard.persistence.repositories import (
    InMemoryRepositoryCacheStore,
    RepositoryCacheStore,
    SqlRepositoryCacheStore,
)

logger = logging.getLogger(__name__)


@lru_cache
def get_cache_store() -> RepositoryCacheStore:
    """Return the process-wide cache store selected by CACHE_STORE_BACKEND."""
    settings = get_settings()
    if settings.cache_store_backend == "memory":
        logger.info("Using in-memory repository cache store")
        return InMemoryRepositoryCacheStore()
    return SqlRepositoryCacheStore(get_session_factory())
