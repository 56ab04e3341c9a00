"""Per-request cache policy: serve fresh, serve stale and refresh, or fetch."""

from __future__ import annotations

import asyncio
import logging
from typing import Sequence

from shipyard.core.config import Settings
from shipyard.core.metrics import record_cache_event
from shipyard.core.registry import ClusterGroup, RegistryConfig
from shipyard.models.repository import CacheStatusLabel, ClusterResult, RepositoryItem
from shipyard.persistence.repositories import CacheRecord
from shipyard.services.cache_manager import (
    CACHE_NAME,
    RefreshOutcome,
    RepositoryCacheManager,
)
from shipyard.services.errors import UnknownClusterError
from shipyard.services.github_client import RepositoryFetcher

logger = logging.getLogger(__name__)


def refresh_failed(result: ClusterResult) -> bool:
    """True when a forced refresh did not fetch, even if stored items were served."""
    return result.error is not None or result.cache_status != "miss"


class RefreshOrchestrator:
    """Decide per request how a cluster is served and coordinate refreshes.

    Refreshes running in this process are tracked per cluster so concurrent
    callers share a single upstream fetch. Across processes the store's
    ``refreshing`` status is the only coordination point.
    """

    def __init__(
        self,
        manager: RepositoryCacheManager,
        fetcher: RepositoryFetcher,
        registry: RegistryConfig,
        *,
        default_ttl_seconds: float = 6 * 3600,
        active_ttl_seconds: float = 2 * 3600,
        background_refresh: bool = True,
    ) -> None:
        self._manager = manager
        self._fetcher = fetcher
        self._registry = registry
        self.default_ttl_seconds = default_ttl_seconds
        self.active_ttl_seconds = active_ttl_seconds
        self.background_refresh = background_refresh
        self._in_flight: dict[str, asyncio.Task[RefreshOutcome]] = {}
        self._background: set[asyncio.Task[RefreshOutcome]] = set()

    @classmethod
    def from_settings(
        cls,
        manager: RepositoryCacheManager,
        fetcher: RepositoryFetcher,
        registry: RegistryConfig,
        settings: Settings,
    ) -> "RefreshOrchestrator":
        return cls(
            manager,
            fetcher,
            registry,
            default_ttl_seconds=settings.repo_cache_ttl_seconds,
            active_ttl_seconds=settings.repo_cache_active_ttl_seconds,
            background_refresh=settings.repo_cache_background_refresh,
        )

    @property
    def registry(self) -> RegistryConfig:
        return self._registry

    def ttl_for(self, group: ClusterGroup) -> float:
        return self.active_ttl_seconds if group.active else self.default_ttl_seconds

    def _group(self, cluster_key: str) -> ClusterGroup:
        group = self._registry.get_group(cluster_key)
        if group is None:
            raise UnknownClusterError(cluster_key)
        return group

    async def get_cluster(
        self, cluster_key: str, force_refresh: bool = False
    ) -> ClusterResult:
        """Resolve one cluster, refreshing it when needed.

        Raises:
            UnknownClusterError: if ``cluster_key`` is not in the registry.
        """
        group = self._group(cluster_key)
        ttl = self.ttl_for(group)

        if force_refresh:
            record_cache_event(CACHE_NAME, "force_refresh")
            return await self._blocking_refresh(group, ttl)

        record = await self._manager.get_record(cluster_key)
        items = self._manager.items_from_record(record)

        if items is None:
            if cluster_key not in self._in_flight:
                if self._manager.is_refreshing(record):
                    # Another worker holds the refresh; do not wait on it.
                    record_cache_event(CACHE_NAME, "miss_refreshing")
                    return self._result(
                        group, [], cached=False, is_stale=True, status="refreshing"
                    )
                if self._manager.in_error_backoff(record):
                    record_cache_event(CACHE_NAME, "miss_backoff")
                    return self._result(
                        group,
                        [],
                        cached=False,
                        is_stale=False,
                        status="error",
                        error=record.last_error if record else None,
                    )
            record_cache_event(CACHE_NAME, "miss")
            return await self._blocking_refresh(group, ttl)

        if not self._manager.record_is_stale(record, ttl):
            # Fresh, or expired but already refreshing / backing off.
            expired = self._manager.is_expired(record, ttl)
            record_cache_event(CACHE_NAME, "stale_hold" if expired else "hit")
            return self._result(
                group,
                items,
                cached=True,
                is_stale=expired,
                status="stale" if expired else "hit",
                record=record,
            )

        record_cache_event(CACHE_NAME, "stale_return")
        self._spawn_background(group, ttl)
        return self._result(
            group,
            items,
            cached=True,
            is_stale=True,
            status="stale-refresh",
            record=record,
        )

    async def force_refresh_all(self) -> dict[str, ClusterResult]:
        """Refetch every configured cluster concurrently."""
        keys = self._registry.cluster_keys
        results = await asyncio.gather(
            *(self.get_cluster(key, force_refresh=True) for key in keys)
        )
        return dict(zip(keys, results))

    async def invalidate(self, cluster_key: str | None = None) -> int:
        if cluster_key is not None:
            self._group(cluster_key)
        return await self._manager.invalidate(cluster_key)

    async def history(self, cluster_key: str, limit: int = 10):
        self._group(cluster_key)
        return await self._manager.history(cluster_key, limit)

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait for outstanding refreshes. Returns ``False`` on timeout."""
        pending = set(self._background) | set(self._in_flight.values())
        if not pending:
            return True
        _, still_pending = await asyncio.wait(pending, timeout=timeout)
        if still_pending:
            logger.warning(
                "%d cache refresh(es) still running after drain timeout",
                len(still_pending),
            )
        return not still_pending

    # ------------------------------------------------------------------

    def _start_refresh(
        self, group: ClusterGroup, ttl: float
    ) -> asyncio.Task[RefreshOutcome]:
        task = asyncio.create_task(
            self._manager.refresh(group.id, group.repos, ttl, self._fetcher),
            name=f"refresh:{group.id}",
        )
        self._in_flight[group.id] = task
        task.add_done_callback(lambda done: self._forget(group.id, done))
        return task

    def _forget(self, cluster_key: str, task: asyncio.Task[RefreshOutcome]) -> None:
        if self._in_flight.get(cluster_key) is task:
            del self._in_flight[cluster_key]

    def _spawn_background(self, group: ClusterGroup, ttl: float) -> bool:
        if not self.background_refresh or group.id in self._in_flight:
            return False
        task = self._start_refresh(group, ttl)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return True

    def _on_background_done(self, task: asyncio.Task[RefreshOutcome]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            record_cache_event(CACHE_NAME, "background_unexpected_error")
            logger.error(
                "Unexpected error during background refresh %s",
                task.get_name(),
                exc_info=exc,
            )
            return
        outcome = task.result()
        if not outcome.success:
            record_cache_event(CACHE_NAME, "background_error")
            logger.warning(
                "Background refresh of cluster %s failed: %s",
                outcome.cluster_key,
                outcome.error,
            )

    async def _blocking_refresh(self, group: ClusterGroup, ttl: float) -> ClusterResult:
        task = self._in_flight.get(group.id)
        if task is None:
            task = self._start_refresh(group, ttl)
        outcome = await asyncio.shield(task)

        if outcome.success:
            return self._result(
                group,
                outcome.items,
                cached=False,
                is_stale=False,
                status="miss",
                record=outcome.record,
            )

        fallback = await self._manager.stale_fallback(group.id)
        if fallback is not None:
            record_cache_event(CACHE_NAME, "stale_fallback")
            return self._result(
                group,
                fallback,
                cached=True,
                is_stale=True,
                status="stale",
                record=outcome.record,
            )

        return self._result(
            group,
            [],
            cached=False,
            is_stale=False,
            status="error",
            error=outcome.error,
        )

    def _result(
        self,
        group: ClusterGroup,
        items: Sequence[RepositoryItem],
        *,
        cached: bool,
        is_stale: bool,
        status: CacheStatusLabel,
        record: CacheRecord | None = None,
        error: str | None = None,
    ) -> ClusterResult:
        return ClusterResult(
            cluster_key=group.id,
            items=self._registry.apply_overrides(items),
            cached=cached,
            is_stale=is_stale,
            error=error,
            cache_status=status,
            refreshed_at=record.fetched_at if record else None,
        )


__all__ = ["RefreshOrchestrator", "refresh_failed"]
