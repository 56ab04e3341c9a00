"""Integration tests for SqlRepositoryCacheStore against Postgres.

These tests require a running PostgreSQL database. They will be automatically
skipped if the database is not available (uses shared conftest.py).
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from shipyard.models.repository import RefreshLogEntry
from shipyard.persistence.models import CacheStatus
from shipyard.persistence.repositories import SqlRepositoryCacheStore

pytestmark = pytest.mark.integration

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_upsert_inserts_then_updates(session_factory):
    store = SqlRepositoryCacheStore(session_factory)

    created = await store.upsert(
        "cinder",
        {"member_names": ["cinder"], "status": CacheStatus.REFRESHING},
    )
    updated = await store.upsert(
        "cinder",
        {
            "payload": [{"name": "cinder"}],
            "fetched_at": T0,
            "status": CacheStatus.OK,
        },
    )

    assert created.payload is None
    assert created.status is CacheStatus.REFRESHING
    assert updated.payload == [{"name": "cinder"}]
    assert updated.member_names == ["cinder"]
    assert updated.fetched_at == T0
    assert updated.status is CacheStatus.OK


@pytest.mark.asyncio
async def test_concurrent_increments_are_not_lost(session_factory):
    store = SqlRepositoryCacheStore(session_factory)
    await store.upsert("cinder", {"status": CacheStatus.OK})

    await asyncio.gather(
        *(store.upsert("cinder", {}, increments={"error_count": 1}) for _ in range(5))
    )

    record = await store.get("cinder")
    assert record.error_count == 5


@pytest.mark.asyncio
async def test_bulk_invalidate_and_history(session_factory):
    store = SqlRepositoryCacheStore(session_factory)
    await store.upsert("cinder", {"fetched_at": T0})
    await store.upsert("pending", {"status": CacheStatus.REFRESHING})
    epoch = datetime(1970, 1, 1, tzinfo=timezone.utc)

    touched = await store.bulk_invalidate(None, fetched_at=epoch, updated_at=T0)

    assert touched == 1
    assert (await store.get("cinder")).fetched_at == epoch

    for minutes in range(3):
        await store.log_refresh(
            RefreshLogEntry(
                cluster_key="cinder",
                outcome="failure" if minutes else "success",
                attempted_at=T0 + timedelta(minutes=minutes),
            )
        )
    history = await store.refresh_history("cinder", limit=2)

    assert [entry.outcome for entry in history] == ["failure", "failure"]
    assert history[0].attempted_at > history[1].attempted_at
