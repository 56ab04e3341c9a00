"""Persistence boundary for repository cache records.

Stores hold no freshness logic: they read records, apply atomic upserts and
rewrite timestamps on invalidation. Every decision about *what* to write is
made by :class:`shipyard.services.cache_manager.RepositoryCacheManager`.
"""

from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass, field, fields as dataclass_fields
from datetime import datetime, timezone
from typing import Any, Mapping, Protocol

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shipyard.models.repository import RefreshLogEntry
from shipyard.persistence import models
from shipyard.persistence.models import CacheStatus


@dataclass(slots=True, kw_only=True)
class CacheRecord:
    cluster_key: str
    member_names: list[str] = field(default_factory=list)
    payload: list[dict[str, Any]] | None = None
    fetched_at: datetime | None = None
    expires_at: datetime | None = None
    status: CacheStatus = CacheStatus.OK
    last_error: str | None = None
    error_count: int = 0
    refreshing_since: datetime | None = None
    updated_at: datetime | None = None


WRITABLE_FIELDS = frozenset(f.name for f in dataclass_fields(CacheRecord)) - {
    "cluster_key"
}
COUNTER_FIELDS = frozenset({"error_count"})


def _validate_write(
    fields: Mapping[str, Any], increments: Mapping[str, int] | None
) -> None:
    unknown = set(fields) - WRITABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown cache record fields: {sorted(unknown)}")
    if increments:
        bad = set(increments) - COUNTER_FIELDS
        if bad:
            raise ValueError(f"Fields cannot be incremented: {sorted(bad)}")
        overlap = set(increments) & set(fields)
        if overlap:
            raise ValueError(f"Fields both set and incremented: {sorted(overlap)}")


class RepositoryCacheStore(Protocol):
    """Durable key-value storage of cache records keyed by cluster."""

    async def get(self, cluster_key: str) -> CacheRecord | None: ...

    async def upsert(
        self,
        cluster_key: str,
        fields: Mapping[str, Any],
        *,
        increments: Mapping[str, int] | None = None,
    ) -> CacheRecord:
        """Insert or update in one atomic operation and return the new row.

        ``increments`` are added to counter columns server-side; on insert they
        are added to the column default (zero).
        """
        ...

    async def bulk_invalidate(
        self,
        cluster_key: str | None,
        *,
        fetched_at: datetime,
        updated_at: datetime,
    ) -> int:
        """Rewrite ``fetched_at`` for one cluster (or all when ``None``)."""
        ...

    async def log_refresh(self, entry: RefreshLogEntry) -> None: ...

    async def refresh_history(
        self, cluster_key: str, limit: int = 10
    ) -> list[RefreshLogEntry]: ...


def _record_from_row(row: models.RepositoryCache) -> CacheRecord:
    return CacheRecord(
        cluster_key=row.cluster_key,
        member_names=list(row.member_names or []),
        payload=row.payload,
        fetched_at=row.fetched_at,
        expires_at=row.expires_at,
        status=CacheStatus(row.status),
        last_error=row.last_error,
        error_count=row.error_count,
        refreshing_since=row.refreshing_since,
        updated_at=row.updated_at,
    )


class SqlRepositoryCacheStore:
    """PostgreSQL-backed cache store using ``INSERT ... ON CONFLICT``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, cluster_key: str) -> CacheRecord | None:
        stmt = select(models.RepositoryCache).where(
            models.RepositoryCache.cluster_key == cluster_key
        )
        async with self._session_factory() as session:
            row = await session.scalar(stmt)
            return _record_from_row(row) if row is not None else None

    async def upsert(
        self,
        cluster_key: str,
        fields: Mapping[str, Any],
        *,
        increments: Mapping[str, int] | None = None,
    ) -> CacheRecord:
        _validate_write(fields, increments)
        table = models.RepositoryCache
        increments = increments or {}

        insert_values: dict[str, Any] = {"cluster_key": cluster_key, **fields}
        insert_values.update(increments)
        insert_values.setdefault("updated_at", func.now())

        update_values: dict[str, Any] = dict(fields)
        for column, amount in increments.items():
            update_values[column] = getattr(table, column) + amount
        update_values.setdefault("updated_at", func.now())

        stmt = insert(table).values(**insert_values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.cluster_key],
            set_=update_values,
        ).returning(table)

        async with self._session_factory() as session:
            row = await session.scalar(
                stmt, execution_options={"populate_existing": True}
            )
            record = _record_from_row(row)
            await session.commit()
        return record

    async def bulk_invalidate(
        self,
        cluster_key: str | None,
        *,
        fetched_at: datetime,
        updated_at: datetime,
    ) -> int:
        table = models.RepositoryCache
        stmt = (
            update(table)
            .where(table.fetched_at.is_not(None))
            .values(fetched_at=fetched_at, updated_at=updated_at)
        )
        if cluster_key is not None:
            stmt = stmt.where(table.cluster_key == cluster_key)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount or 0

    async def log_refresh(self, entry: RefreshLogEntry) -> None:
        async with self._session_factory() as session:
            session.add(
                models.RefreshLog(
                    cluster_key=entry.cluster_key,
                    outcome=models.RefreshOutcome(entry.outcome),
                    repo_count=entry.repo_count,
                    error_message=entry.error_message,
                    rate_limit_remaining=entry.rate_limit_remaining,
                    rate_limit_reset=entry.rate_limit_reset,
                    duration_ms=entry.duration_ms,
                    attempted_at=entry.attempted_at,
                )
            )
            await session.commit()

    async def refresh_history(
        self, cluster_key: str, limit: int = 10
    ) -> list[RefreshLogEntry]:
        stmt = (
            select(models.RefreshLog)
            .where(models.RefreshLog.cluster_key == cluster_key)
            .order_by(models.RefreshLog.attempted_at.desc())
            .limit(limit)
        )
        async with self._session_factory() as session:
            rows = (await session.scalars(stmt)).all()
        return [
            RefreshLogEntry(
                cluster_key=row.cluster_key,
                outcome=models.RefreshOutcome(row.outcome).value,
                repo_count=row.repo_count,
                error_message=row.error_message,
                rate_limit_remaining=row.rate_limit_remaining,
                rate_limit_reset=row.rate_limit_reset,
                duration_ms=row.duration_ms,
                attempted_at=row.attempted_at,
            )
            for row in rows
        ]


class InMemoryRepositoryCacheStore:
    """
    Process-local cache store guarded by an asyncio lock.

    Records are deep-copied on the way in and out so callers can never
    mutate stored state without going through ``upsert``.
    """

    def __init__(self) -> None:
        self._records: dict[str, CacheRecord] = {}
        self._log: list[RefreshLogEntry] = []
        self._lock = asyncio.Lock()

    async def get(self, cluster_key: str) -> CacheRecord | None:
        async with self._lock:
            record = self._records.get(cluster_key)
            return copy.deepcopy(record) if record is not None else None

    async def upsert(
        self,
        cluster_key: str,
        fields: Mapping[str, Any],
        *,
        increments: Mapping[str, int] | None = None,
    ) -> CacheRecord:
        _validate_write(fields, increments)
        async with self._lock:
            current = self._records.get(cluster_key)
            record = (
                copy.deepcopy(current)
                if current is not None
                else CacheRecord(cluster_key=cluster_key)
            )
            for name, value in fields.items():
                setattr(record, name, copy.deepcopy(value))
            for name, amount in (increments or {}).items():
                setattr(record, name, getattr(record, name) + amount)
            if "updated_at" not in fields:
                record.updated_at = datetime.now(timezone.utc)
            self._records[cluster_key] = record
            return copy.deepcopy(record)

    async def bulk_invalidate(
        self,
        cluster_key: str | None,
        *,
        fetched_at: datetime,
        updated_at: datetime,
    ) -> int:
        touched = 0
        async with self._lock:
            for key, record in self._records.items():
                if cluster_key is not None and key != cluster_key:
                    continue
                if record.fetched_at is None:
                    continue
                record.fetched_at = fetched_at
                record.updated_at = updated_at
                touched += 1
        return touched

    async def log_refresh(self, entry: RefreshLogEntry) -> None:
        async with self._lock:
            self._log.append(entry.model_copy())

    async def refresh_history(
        self, cluster_key: str, limit: int = 10
    ) -> list[RefreshLogEntry]:
        async with self._lock:
            matching = [e for e in reversed(self._log) if e.cluster_key == cluster_key]
        matching.sort(key=lambda e: e.attempted_at, reverse=True)
        return matching[:limit]


__all__ = [
    "CacheRecord",
    "InMemoryRepositoryCacheStore",
    "RepositoryCacheStore",
    "SqlRepositoryCacheStore",
]
