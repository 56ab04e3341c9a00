"""Test doubles shared across the suite."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Sequence

from shipyard.models.repository import RepositoryItem
from shipyard.services.github_client import FetchResult

START = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = START) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current += timedelta(**kwargs)


def make_item(name: str, **overrides) -> RepositoryItem:
    data = {
        "id": f"R_{name}",
        "name": name,
        "url": f"https://github.com/potent/{name}",
        "description": f"{name} description",
        "stars": 7,
        "updated_at": datetime(2025, 6, 1, tzinfo=timezone.utc),
        "topics": ["rust"],
        "language": "Rust",
        "color": "#dea584",
    }
    data.update(overrides)
    return RepositoryItem(**data)


class FakeFetcher:
    """In-memory stand-in for GitHubClient.

    ``error`` is raised on every call while set. ``gate`` (when set) holds
    every fetch until the event fires, letting tests pile up concurrent
    callers.
    """

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.error: Exception | None = None
        self.missing: set[str] = set()
        self.gate: asyncio.Event | None = None
        self.closed = False

    async def fetch_repositories(self, member_names: Sequence[str]) -> FetchResult:
        self.calls.append(list(member_names))
        if not member_names:
            return FetchResult(items=[])
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return FetchResult(
            items=[make_item(name) for name in member_names if name not in self.missing]
        )

    async def aclose(self) -> None:
        self.closed = True
