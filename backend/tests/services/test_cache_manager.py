"""Tests for RepositoryCacheManager freshness rules and mutations."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from shipyard.persistence.models import CacheStatus
from shipyard.services.cache_manager import EPOCH, RepositoryCacheManager
from shipyard.services.errors import UpstreamRateLimited, UpstreamUnavailable
from tests.fakes import make_item

TTL = 6 * 3600
ITEMS = [make_item("cinder"), make_item("cinder-sv")]


@pytest.mark.asyncio
async def test_absent_record_is_stale(manager):
    assert await manager.is_stale("cinder", TTL) is True


@pytest.mark.asyncio
async def test_commit_success_sets_fresh_record(manager, clock):
    record = await manager.commit_success("cinder", ITEMS, TTL, ["cinder", "cinder-sv"])

    assert record.status is CacheStatus.OK
    assert record.fetched_at == clock()
    assert record.expires_at == clock() + timedelta(seconds=TTL)
    assert record.error_count == 0
    assert record.member_names == ["cinder", "cinder-sv"]
    assert await manager.is_stale("cinder", TTL) is False


@pytest.mark.asyncio
async def test_commit_success_is_idempotent(manager, clock):
    first = await manager.commit_success("cinder", ITEMS, TTL)
    clock.advance(minutes=5)
    second = await manager.commit_success("cinder", ITEMS, TTL)

    assert second.payload == first.payload
    assert second.fetched_at == first.fetched_at + timedelta(minutes=5)


@pytest.mark.asyncio
async def test_staleness_is_monotonic(manager, clock):
    await manager.commit_success("cinder", ITEMS, TTL)
    observed = []
    for _ in range(16):
        observed.append(await manager.is_stale("cinder", TTL))
        clock.advance(minutes=30)

    flip = observed.index(True)
    assert not any(observed[:flip])
    assert all(observed[flip:])
    # Exactly at the boundary the record is still fresh.
    assert flip == 13


@pytest.mark.asyncio
async def test_mark_refreshing_keeps_payload_and_suppresses_staleness(manager, clock):
    await manager.commit_success("cinder", ITEMS, TTL)
    clock.advance(hours=7)

    record = await manager.mark_refreshing("cinder", ["cinder"])

    assert record.status is CacheStatus.REFRESHING
    assert record.refreshing_since == clock()
    assert record.payload is not None
    assert await manager.is_stale("cinder", TTL) is False


@pytest.mark.asyncio
async def test_mark_refreshing_creates_record_on_first_miss(manager):
    record = await manager.mark_refreshing("cinder", ["cinder"])

    assert record.payload is None
    assert record.fetched_at is None
    assert manager.is_refreshing(record)


@pytest.mark.asyncio
async def test_expired_lease_makes_refreshing_record_eligible(manager, clock):
    await manager.commit_success("cinder", ITEMS, TTL)
    clock.advance(hours=7)
    await manager.mark_refreshing("cinder", ["cinder"])

    clock.advance(seconds=301)

    assert await manager.is_stale("cinder", TTL) is True


@pytest.mark.asyncio
async def test_zero_lease_never_expires(store, clock):
    manager = RepositoryCacheManager(store, refresh_lease_seconds=0, clock=clock)
    await manager.mark_refreshing("cinder", ["cinder"])

    clock.advance(days=30)

    assert await manager.is_stale("cinder", TTL) is False


@pytest.mark.asyncio
async def test_commit_failure_never_touches_payload(manager):
    before = await manager.commit_success("cinder", ITEMS, TTL)

    after = await manager.commit_failure("cinder", "boom")

    assert after.payload == before.payload
    assert after.fetched_at == before.fetched_at
    assert after.error_count == 1
    assert after.last_error == "boom"
    assert after.status is CacheStatus.OK
    assert after.refreshing_since is None


@pytest.mark.asyncio
async def test_threshold_failures_set_error_status_and_back_off(manager, clock):
    await manager.commit_success("cinder", ITEMS, TTL)
    clock.advance(hours=7)

    for _ in range(3):
        record = await manager.commit_failure("cinder", "boom")

    assert record.status is CacheStatus.ERROR
    assert record.error_count == 3
    assert await manager.is_stale("cinder", TTL) is False

    clock.advance(seconds=1801)
    assert await manager.is_stale("cinder", TTL) is True


@pytest.mark.asyncio
async def test_success_resets_error_state(manager):
    for _ in range(3):
        await manager.commit_failure("cinder", "boom")

    record = await manager.commit_success("cinder", ITEMS, TTL)

    assert record.status is CacheStatus.OK
    assert record.error_count == 0
    assert record.last_error is None


@pytest.mark.asyncio
async def test_invalidate_forces_staleness(manager):
    await manager.commit_success("cinder", ITEMS, TTL)
    assert await manager.is_stale("cinder", TTL) is False

    touched = await manager.invalidate("cinder")

    assert touched == 1
    assert await manager.is_stale("cinder", TTL) is True
    record = await manager.get_record("cinder")
    assert record.fetched_at == EPOCH
    assert record.payload is not None


@pytest.mark.asyncio
async def test_stale_fallback(manager):
    assert await manager.stale_fallback("cinder") is None

    await manager.commit_success("cinder", ITEMS, TTL)

    fallback = await manager.stale_fallback("cinder")
    assert [item.name for item in fallback] == ["cinder", "cinder-sv"]


@pytest.mark.asyncio
async def test_refresh_success_commits_and_logs(manager, fetcher):
    outcome = await manager.refresh("cinder", ["cinder", "cinder-sv"], TTL, fetcher)

    assert outcome.success
    assert [item.name for item in outcome.items] == ["cinder", "cinder-sv"]
    assert outcome.record.status is CacheStatus.OK
    history = await manager.history("cinder")
    assert history[0].outcome == "success"
    assert history[0].repo_count == 2


@pytest.mark.asyncio
async def test_refresh_failure_is_captured(manager, fetcher):
    await manager.commit_success("cinder", ITEMS, TTL)
    fetcher.error = UpstreamUnavailable("GitHub API returned 502.")

    outcome = await manager.refresh("cinder", ["cinder"], TTL, fetcher)

    assert not outcome.success
    assert outcome.error_kind == "unavailable"
    assert outcome.record.error_count == 1
    assert outcome.record.payload is not None
    history = await manager.history("cinder")
    assert history[0].outcome == "failure"
    assert history[0].error_message == "GitHub API returned 502."


@pytest.mark.asyncio
async def test_refresh_rate_limit_logged_with_reset(manager, fetcher, clock):
    fetcher.error = UpstreamRateLimited("quota", reset_at=clock() + timedelta(hours=1))

    outcome = await manager.refresh("cinder", ["cinder"], TTL, fetcher)

    history = await manager.history("cinder")
    assert outcome.error_kind == "rate_limited"
    assert history[0].rate_limit_remaining == 0
    assert history[0].rate_limit_reset == clock() + timedelta(hours=1)


@pytest.mark.asyncio
async def test_refresh_timeout_counts_as_failure(store, clock, fetcher):
    manager = RepositoryCacheManager(store, fetch_timeout_seconds=0.01, clock=clock)
    fetcher.gate = asyncio.Event()

    outcome = await manager.refresh("cinder", ["cinder"], TTL, fetcher)

    assert not outcome.success
    assert outcome.error_kind == "timeout"
    assert (await store.get("cinder")).status is CacheStatus.OK


@pytest.mark.asyncio
async def test_refresh_log_failure_does_not_fail_refresh(manager, store, fetcher):
    store.log_refresh = AsyncMock(side_effect=RuntimeError("log table missing"))

    outcome = await manager.refresh("cinder", ["cinder"], TTL, fetcher)

    assert outcome.success
    assert (await store.get("cinder")).status is CacheStatus.OK


def test_threshold_must_be_positive(store):
    with pytest.raises(ValueError):
        RepositoryCacheManager(store, error_threshold=0)


@pytest.mark.asyncio
async def test_expired_lease_on_fresh_data_is_not_stale(manager, clock):
    await manager.commit_success("cinder", ITEMS, TTL)
    await manager.mark_refreshing("cinder", ["cinder"])

    clock.advance(seconds=301)

    assert await manager.is_stale("cinder", TTL) is False


@pytest.mark.asyncio
async def test_unexpected_fetcher_error_is_committed_as_failure(manager, fetcher):
    fetcher.error = AttributeError("'str' object has no attribute 'get'")

    outcome = await manager.refresh("cinder", ["cinder"], TTL, fetcher)

    assert not outcome.success
    assert outcome.error_kind == "unexpected"
    record = await manager.get_record("cinder")
    assert record.status is CacheStatus.OK
    assert record.error_count == 1
    assert record.last_error == outcome.error
    history = await manager.history("cinder")
    assert history[0].outcome == "failure"
