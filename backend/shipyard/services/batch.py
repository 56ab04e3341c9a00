"""Same-tick batching of cluster lookups.

Every ``load`` issued during one event-loop iteration joins a single batch.
The batch is dispatched on the next iteration and each distinct cluster key
is resolved exactly once; duplicate callers share the same result object.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Sequence

from shipyard.core.metrics import record_cache_event
from shipyard.models.repository import BatchResult, ClusterResult
from shipyard.services.cache_manager import CACHE_NAME
from shipyard.services.errors import UnknownClusterError
from shipyard.services.refresh import RefreshOrchestrator

logger = logging.getLogger(__name__)


class ClusterBatchResolver:
    def __init__(self, orchestrator: RefreshOrchestrator) -> None:
        self._orchestrator = orchestrator
        self._pending: dict[str, asyncio.Future[ClusterResult]] | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    async def load(self, cluster_key: str) -> ClusterResult:
        """Resolve one key as part of the current tick's batch."""
        loop = asyncio.get_running_loop()
        if self._pending is None:
            self._pending = {}
            loop.call_soon(self._dispatch)
        future = self._pending.get(cluster_key)
        if future is None:
            future = loop.create_future()
            self._pending[cluster_key] = future
        return await asyncio.shield(future)

    async def load_many(self, cluster_keys: Sequence[str]) -> BatchResult:
        results = await asyncio.gather(*(self.load(key) for key in cluster_keys))
        per_cluster: dict[str, ClusterResult] = {}
        for key, result in zip(cluster_keys, results):
            per_cluster.setdefault(key, result)
        return BatchResult(
            clusters=list(results),
            per_cluster=per_cluster,
            total_items=sum(len(result.items) for result in per_cluster.values()),
            timestamp=datetime.now(timezone.utc),
        )

    def _dispatch(self) -> None:
        batch, self._pending = self._pending or {}, None
        if not batch:
            return
        record_cache_event(CACHE_NAME, "batch_dispatch")
        logger.debug("Dispatching cluster batch of %d key(s)", len(batch))
        for cluster_key, future in batch.items():
            task = asyncio.ensure_future(self._resolve(cluster_key, future))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _resolve(
        self, cluster_key: str, future: asyncio.Future[ClusterResult]
    ) -> None:
        try:
            result = await self._orchestrator.get_cluster(cluster_key)
        except UnknownClusterError as exc:
            result = ClusterResult(
                cluster_key=cluster_key,
                error=str(exc),
                cache_status="error",
            )
        except Exception as exc:
            if not future.done():
                future.set_exception(exc)
            return
        if not future.done():
            future.set_result(result)


__all__ = ["ClusterBatchResolver"]
