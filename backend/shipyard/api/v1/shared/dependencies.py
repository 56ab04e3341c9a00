"""
Shared dependency injection functions for API endpoints.

Each factory is cached so the whole process shares one fetcher, one cache
manager and one orchestrator. In-process single-flight depends on that.
"""

from functools import lru_cache

from shipyard.core.config import get_settings
from shipyard.core.registry import get_registry
from shipyard.persistence.dependencies import get_cache_store
from shipyard.services.batch import ClusterBatchResolver
from shipyard.services.cache_manager import RepositoryCacheManager
from shipyard.services.github_client import GitHubClient
from shipyard.services.refresh import RefreshOrchestrator


@lru_cache
def get_github_client() -> GitHubClient:
    return GitHubClient(settings=get_settings())


@lru_cache
def get_cache_manager() -> RepositoryCacheManager:
    return RepositoryCacheManager.from_settings(get_cache_store(), get_settings())


@lru_cache
def get_refresh_orchestrator() -> RefreshOrchestrator:
    return RefreshOrchestrator.from_settings(
        get_cache_manager(), get_github_client(), get_registry(), get_settings()
    )


@lru_cache
def get_batch_resolver() -> ClusterBatchResolver:
    return ClusterBatchResolver(get_refresh_orchestrator())
