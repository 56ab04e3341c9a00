"""Freshness decisions and every mutation of repository cache records.

The manager owns the rules for when a cluster needs refetching and is the
only component that writes to the cache store. Readers never block on a
``refreshing`` record; they are served whatever payload is stored.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Sequence

from pydantic import ValidationError

from shipyard.core.config import Settings
from shipyard.core.metrics import observe_cache_refresh, record_cache_event
from shipyard.models.repository import RateLimitInfo, RefreshLogEntry, RepositoryItem
from shipyard.persistence.models import CacheStatus
from shipyard.persistence.repositories import CacheRecord, RepositoryCacheStore
from shipyard.services.errors import UpstreamError, UpstreamRateLimited
from shipyard.services.github_client import RepositoryFetcher

logger = logging.getLogger(__name__)

CACHE_NAME = "repository_cluster"
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RefreshOutcome:
    """Result of one refresh attempt. Upstream failures are captured, not raised."""

    cluster_key: str
    success: bool
    items: list[RepositoryItem] = field(default_factory=list)
    error: str | None = None
    error_kind: str | None = None
    rate_limit: RateLimitInfo | None = None
    record: CacheRecord | None = None
    duration_ms: int = 0


class RepositoryCacheManager:
    """Apply staleness rules and commit refresh results to the store."""

    def __init__(
        self,
        store: RepositoryCacheStore,
        *,
        error_threshold: int = 3,
        error_backoff_seconds: float = 1800,
        refresh_lease_seconds: float = 300,
        fetch_timeout_seconds: float | None = 15.0,
        clock: Clock = utc_now,
    ) -> None:
        if error_threshold < 1:
            raise ValueError("error_threshold must be at least 1")
        self._store = store
        self.error_threshold = error_threshold
        self.error_backoff_seconds = error_backoff_seconds
        self.refresh_lease_seconds = refresh_lease_seconds
        self.fetch_timeout_seconds = fetch_timeout_seconds
        self._clock = clock

    @classmethod
    def from_settings(
        cls, store: RepositoryCacheStore, settings: Settings, *, clock: Clock = utc_now
    ) -> "RepositoryCacheManager":
        return cls(
            store,
            error_threshold=settings.repo_cache_error_threshold,
            error_backoff_seconds=settings.repo_cache_error_backoff_seconds,
            refresh_lease_seconds=settings.repo_cache_refresh_lease_seconds,
            fetch_timeout_seconds=settings.repo_cache_fetch_timeout_seconds,
            clock=clock,
        )

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Freshness
    # ------------------------------------------------------------------

    async def get_record(self, cluster_key: str) -> CacheRecord | None:
        return await self._store.get(cluster_key)

    def lease_expired(self, record: CacheRecord) -> bool:
        """A ``refreshing`` mark older than the lease no longer blocks retries.

        A lease of zero keeps the mark forever.
        """
        if self.refresh_lease_seconds <= 0:
            return False
        started = record.refreshing_since or record.updated_at
        if started is None:
            return True
        return (self.now() - started).total_seconds() > self.refresh_lease_seconds

    def is_refreshing(self, record: CacheRecord | None) -> bool:
        return (
            record is not None
            and record.status is CacheStatus.REFRESHING
            and not self.lease_expired(record)
        )

    def in_error_backoff(self, record: CacheRecord | None) -> bool:
        if record is None or record.status is not CacheStatus.ERROR:
            return False
        if record.error_count < self.error_threshold:
            return False
        if self.error_backoff_seconds <= 0 or record.updated_at is None:
            return False
        age = (self.now() - record.updated_at).total_seconds()
        return age < self.error_backoff_seconds

    def is_expired(self, record: CacheRecord | None, ttl_seconds: float) -> bool:
        """Pure data age check, ignoring refresh and error state."""
        if record is None or record.fetched_at is None:
            return True
        return (self.now() - record.fetched_at).total_seconds() > ttl_seconds

    def record_is_stale(self, record: CacheRecord | None, ttl_seconds: float) -> bool:
        """Decide whether ``record`` should trigger a refetch."""
        if record is None:
            return True
        if self.is_refreshing(record):
            return False
        if self.in_error_backoff(record):
            return False
        return self.is_expired(record, ttl_seconds)

    async def is_stale(self, cluster_key: str, ttl_seconds: float) -> bool:
        return self.record_is_stale(await self._store.get(cluster_key), ttl_seconds)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def mark_refreshing(
        self, cluster_key: str, member_names: Sequence[str]
    ) -> CacheRecord:
        now = self.now()
        return await self._store.upsert(
            cluster_key,
            {
                "member_names": list(member_names),
                "status": CacheStatus.REFRESHING,
                "refreshing_since": now,
                "updated_at": now,
            },
        )

    async def commit_success(
        self,
        cluster_key: str,
        items: Sequence[RepositoryItem],
        ttl_seconds: float,
        member_names: Sequence[str] | None = None,
    ) -> CacheRecord:
        now = self.now()
        fields: dict[str, object] = {
            "payload": [item.to_payload() for item in items],
            "fetched_at": now,
            "expires_at": now + timedelta(seconds=ttl_seconds),
            "status": CacheStatus.OK,
            "error_count": 0,
            "last_error": None,
            "refreshing_since": None,
            "updated_at": now,
        }
        if member_names is not None:
            fields["member_names"] = list(member_names)
        return await self._store.upsert(cluster_key, fields)

    async def commit_failure(self, cluster_key: str, error: str) -> CacheRecord:
        """Count a failed attempt without touching the stored payload."""
        now = self.now()
        record = await self._store.upsert(
            cluster_key,
            {
                "status": CacheStatus.OK,
                "last_error": error,
                "refreshing_since": None,
                "updated_at": now,
            },
            increments={"error_count": 1},
        )
        if record.error_count >= self.error_threshold:
            logger.warning(
                "Cluster %s reached %d consecutive failures, backing off",
                cluster_key,
                record.error_count,
            )
            record = await self._store.upsert(
                cluster_key, {"status": CacheStatus.ERROR, "updated_at": now}
            )
        return record

    def items_from_record(self, record: CacheRecord | None) -> list[RepositoryItem] | None:
        if record is None or record.payload is None:
            return None
        try:
            return [RepositoryItem.model_validate(entry) for entry in record.payload]
        except ValidationError:
            logger.warning(
                "Discarding unreadable payload for cluster %s",
                record.cluster_key,
                exc_info=True,
            )
            return None

    async def stale_fallback(self, cluster_key: str) -> list[RepositoryItem] | None:
        """Return whatever payload is stored, however old."""
        return self.items_from_record(await self._store.get(cluster_key))

    async def invalidate(self, cluster_key: str | None = None) -> int:
        """Force the next freshness check to refetch by backdating ``fetched_at``."""
        touched = await self._store.bulk_invalidate(
            cluster_key, fetched_at=EPOCH, updated_at=self.now()
        )
        record_cache_event(CACHE_NAME, "invalidate")
        logger.info(
            "Invalidated %d cache record(s) for %s", touched, cluster_key or "all clusters"
        )
        return touched

    async def history(self, cluster_key: str, limit: int = 10) -> list[RefreshLogEntry]:
        return await self._store.refresh_history(cluster_key, limit)

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh(
        self,
        cluster_key: str,
        member_names: Sequence[str],
        ttl_seconds: float,
        fetcher: RepositoryFetcher,
    ) -> RefreshOutcome:
        """Mark, fetch, commit and log one refresh attempt."""
        await self.mark_refreshing(cluster_key, member_names)

        attempted_at = self.now()
        start = time.perf_counter()
        try:
            fetch = fetcher.fetch_repositories(member_names)
            if self.fetch_timeout_seconds:
                result = await asyncio.wait_for(fetch, self.fetch_timeout_seconds)
            else:
                result = await fetch
        except asyncio.TimeoutError:
            error, kind, rate_limit = (
                f"Timed out after {self.fetch_timeout_seconds}s fetching repositories",
                "timeout",
                None,
            )
        except UpstreamError as exc:
            error, kind = str(exc), exc.kind
            rate_limit = (
                RateLimitInfo(remaining=0, reset_at=exc.reset_at)
                if isinstance(exc, UpstreamRateLimited)
                else None
            )
        except Exception as exc:
            record_cache_event(CACHE_NAME, "refresh_unexpected_error")
            logger.exception("Unexpected error while refreshing cluster %s", cluster_key)
            error, kind, rate_limit = (
                f"Unexpected error fetching repositories: {exc.__class__.__name__}",
                "unexpected",
                None,
            )
        else:
            duration = time.perf_counter() - start
            observe_cache_refresh(CACHE_NAME, duration)
            record = await self.commit_success(
                cluster_key, result.items, ttl_seconds, member_names
            )
            record_cache_event(CACHE_NAME, "refresh_success")
            outcome = RefreshOutcome(
                cluster_key=cluster_key,
                success=True,
                items=list(result.items),
                rate_limit=result.rate_limit,
                record=record,
                duration_ms=int(duration * 1000),
            )
            await self._log_attempt(outcome, attempted_at)
            return outcome

        duration = time.perf_counter() - start
        logger.warning("Refresh of cluster %s failed (%s): %s", cluster_key, kind, error)
        record = await self.commit_failure(cluster_key, error)
        record_cache_event(CACHE_NAME, "refresh_error")
        outcome = RefreshOutcome(
            cluster_key=cluster_key,
            success=False,
            error=error,
            error_kind=kind,
            rate_limit=rate_limit,
            record=record,
            duration_ms=int(duration * 1000),
        )
        await self._log_attempt(outcome, attempted_at)
        return outcome

    async def _log_attempt(self, outcome: RefreshOutcome, attempted_at: datetime) -> None:
        entry = RefreshLogEntry(
            cluster_key=outcome.cluster_key,
            outcome="success" if outcome.success else "failure",
            repo_count=len(outcome.items) if outcome.success else None,
            error_message=outcome.error,
            rate_limit_remaining=(
                outcome.rate_limit.remaining if outcome.rate_limit else None
            ),
            rate_limit_reset=outcome.rate_limit.reset_at if outcome.rate_limit else None,
            duration_ms=outcome.duration_ms,
            attempted_at=attempted_at,
        )
        try:
            await self._store.log_refresh(entry)
        except Exception:
            logger.warning(
                "Could not write refresh log for cluster %s",
                outcome.cluster_key,
                exc_info=True,
            )


__all__ = [
    "CACHE_NAME",
    "EPOCH",
    "RefreshOutcome",
    "RepositoryCacheManager",
    "utc_now",
]
