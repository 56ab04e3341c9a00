"""Read-side cluster endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Response, status

from shipyard.api.v1.shared.dependencies import (
    get_batch_resolver,
    get_refresh_orchestrator,
)
from shipyard.core.config import Settings, get_settings
from shipyard.models.repository import (
    BatchRequest,
    BatchResult,
    ClusterResult,
    ClusterSummary,
    RefreshLogEntry,
)
from shipyard.services.batch import ClusterBatchResolver
from shipyard.services.errors import UnknownClusterError
from shipyard.services.refresh import RefreshOrchestrator

router = APIRouter()

ClusterKeyPath = Annotated[
    str,
    Path(min_length=1, max_length=100, description="Cluster id from the registry."),
]


@router.get("", response_model=list[ClusterSummary])
async def list_clusters(
    orchestrator: RefreshOrchestrator = Depends(get_refresh_orchestrator),
) -> list[ClusterSummary]:
    """List the clusters configured in the registry."""
    return [
        ClusterSummary(
            id=group.id,
            name=group.name,
            repo_count=len(group.repos),
            featured=group.featured,
            experimental=group.experimental,
            active=group.active,
        )
        for group in orchestrator.registry.groups
    ]


@router.post(
    "/batch",
    response_model=BatchResult,
    summary="Resolve several clusters at once",
)
async def get_clusters_batch(
    payload: BatchRequest,
    resolver: ClusterBatchResolver = Depends(get_batch_resolver),
    settings: Settings = Depends(get_settings),
) -> BatchResult:
    """Resolve each distinct key once; unknown keys carry a per-key error."""
    if len(payload.cluster_keys) > settings.batch_max_clusters:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"At most {settings.batch_max_clusters} clusters per batch.",
        )
    return await resolver.load_many(payload.cluster_keys)


@router.get(
    "/{cluster_key}",
    response_model=ClusterResult,
    summary="Get a cluster's repositories",
)
async def get_cluster(
    cluster_key: ClusterKeyPath,
    response: Response,
    orchestrator: RefreshOrchestrator = Depends(get_refresh_orchestrator),
) -> ClusterResult:
    try:
        result = await orchestrator.get_cluster(cluster_key)
    except UnknownClusterError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)
        ) from exc
    response.headers["X-Cache-Status"] = result.cache_status
    return result


@router.get(
    "/{cluster_key}/history",
    response_model=list[RefreshLogEntry],
    summary="Recent refresh attempts for a cluster",
)
async def get_cluster_history(
    cluster_key: ClusterKeyPath,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
    orchestrator: RefreshOrchestrator = Depends(get_refresh_orchestrator),
) -> list[RefreshLogEntry]:
    try:
        return await orchestrator.history(cluster_key, limit)
    except UnknownClusterError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)
        ) from exc
