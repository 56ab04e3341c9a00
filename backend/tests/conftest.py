from __future__ import annotations

import sys
from pathlib import Path
from typing import Iterator

import pytest
from fastapi.testclient import TestClient

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from shipyard.api.v1.shared.dependencies import (  # noqa: E402
    get_batch_resolver,
    get_github_client,
    get_refresh_orchestrator,
)
from shipyard.api.v1.shared.rate_limit import limiter  # noqa: E402
from shipyard.core.registry import DEFAULT_REGISTRY, RegistryConfig  # noqa: E402
from shipyard.main import create_app  # noqa: E402
from shipyard.persistence.repositories import InMemoryRepositoryCacheStore  # noqa: E402
from shipyard.services.batch import ClusterBatchResolver  # noqa: E402
from shipyard.services.cache_manager import RepositoryCacheManager  # noqa: E402
from shipyard.services.refresh import RefreshOrchestrator  # noqa: E402
from tests.fakes import FakeClock, FakeFetcher  # noqa: E402


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: marks tests as integration tests")


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store() -> InMemoryRepositoryCacheStore:
    return InMemoryRepositoryCacheStore()


@pytest.fixture()
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture()
def registry() -> RegistryConfig:
    return DEFAULT_REGISTRY


@pytest.fixture()
def manager(store, clock) -> RepositoryCacheManager:
    return RepositoryCacheManager(
        store,
        error_threshold=3,
        error_backoff_seconds=1800,
        refresh_lease_seconds=300,
        fetch_timeout_seconds=5,
        clock=clock,
    )


@pytest.fixture()
def orchestrator(manager, fetcher, registry) -> RefreshOrchestrator:
    return RefreshOrchestrator(
        manager,
        fetcher,
        registry,
        default_ttl_seconds=6 * 3600,
        active_ttl_seconds=2 * 3600,
    )


@pytest.fixture()
def resolver(orchestrator) -> ClusterBatchResolver:
    return ClusterBatchResolver(orchestrator)


@pytest.fixture()
def api_client(orchestrator, resolver, fetcher) -> Iterator[TestClient]:
    """Full app wired to the in-memory store and fake fetcher."""
    app = create_app()
    app.dependency_overrides[get_refresh_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_batch_resolver] = lambda: resolver
    app.dependency_overrides[get_github_client] = lambda: fetcher

    original_enabled = limiter.enabled
    limiter.enabled = False
    try:
        with TestClient(app) as client:
            yield client
    finally:
        limiter.enabled = original_enabled
