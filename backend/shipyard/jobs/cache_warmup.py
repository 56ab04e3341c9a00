"""
Cache warmup job for priming repository clusters.

Force-refreshes every configured cluster so the first visitor is served
from the cache instead of waiting on GitHub.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from shipyard.api.v1.shared.dependencies import (
    get_github_client,
    get_refresh_orchestrator,
)
from shipyard.core.config import Settings, get_settings
from shipyard.core.database import dispose_engine
from shipyard.services.refresh import RefreshOrchestrator, refresh_failed

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WarmupSummary:
    """Aggregate cache warmup statistics."""

    clusters_warmed: int = 0
    repositories_cached: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "clusters_warmed": self.clusters_warmed,
            "repositories_cached": self.repositories_cached,
            "errors": self.errors,
        }


class CacheWarmupJob:
    """Hydrate every cluster so the first user avoids GitHub cold-start latency."""

    def __init__(
        self,
        *,
        orchestrator: RefreshOrchestrator | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.orchestrator = orchestrator or get_refresh_orchestrator()

    async def run(self) -> WarmupSummary:
        summary = WarmupSummary()
        try:
            results = await self.orchestrator.force_refresh_all()
        except Exception as exc:  # pragma: no cover
            logger.exception("Cluster warmup failed: %s", exc)
            summary.errors.append("all")
            return summary

        for cluster_key, result in results.items():
            if refresh_failed(result):
                logger.warning(
                    "Failed to warm cluster %s: %s",
                    cluster_key,
                    result.error or "kept previously cached items",
                )
                summary.errors.append(cluster_key)
                continue
            summary.clusters_warmed += 1
            summary.repositories_cached += len(result.items)

        logger.info(
            "Warmup hydrated %s clusters (%s repositories)",
            summary.clusters_warmed,
            summary.repositories_cached,
        )
        return summary


async def run_cache_warmup() -> WarmupSummary:
    """Convenience helper for scripts/tests."""
    job = CacheWarmupJob()
    try:
        return await job.run()
    finally:
        await job.orchestrator.drain()
        await get_github_client().aclose()
        await dispose_engine()


def _configure_logging() -> None:
    if logging.getLogger().handlers:
        return
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def _main() -> None:
    _configure_logging()
    summary = asyncio.run(run_cache_warmup())
    logger.info("Cache warmup completed: %s", json.dumps(summary.to_dict()))


if __name__ == "__main__":
    _main()
