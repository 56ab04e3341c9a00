"""Administrative cache endpoints: invalidation and forced refresh."""

from datetime import datetime, timezone
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from shipyard.api.v1.shared.dependencies import get_refresh_orchestrator
from shipyard.api.v1.shared.rate_limit import admin_limit, limiter
from shipyard.models.repository import AdminActionResponse
from shipyard.services.errors import UnknownClusterError
from shipyard.services.refresh import RefreshOrchestrator, refresh_failed

router = APIRouter()


@router.post("/invalidate", response_model=AdminActionResponse)
@limiter.limit(admin_limit)
async def invalidate_cache(
    request: Request,
    cluster_key: Annotated[
        str | None,
        Query(min_length=1, max_length=100, description="Omit to invalidate all."),
    ] = None,
    orchestrator: RefreshOrchestrator = Depends(get_refresh_orchestrator),
) -> AdminActionResponse:
    """Mark one cluster (or every cluster) stale without dropping its data."""
    try:
        touched = await orchestrator.invalidate(cluster_key)
    except UnknownClusterError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)
        ) from exc
    target = f"cluster {cluster_key}" if cluster_key else "all clusters"
    return AdminActionResponse(
        success=True,
        message=f"Cache invalidated for {target}",
        timestamp=datetime.now(timezone.utc),
        invalidated=touched,
    )


@router.post("/refresh", response_model=AdminActionResponse)
@limiter.limit(admin_limit)
async def refresh_all(
    request: Request,
    orchestrator: RefreshOrchestrator = Depends(get_refresh_orchestrator),
) -> AdminActionResponse:
    """Refetch every configured cluster now."""
    results = await orchestrator.force_refresh_all()
    failed = sorted(key for key, result in results.items() if refresh_failed(result))
    message = (
        f"Refreshed {len(results)} clusters"
        if not failed
        else f"Refreshed {len(results) - len(failed)}/{len(results)} clusters; failed: {', '.join(failed)}"
    )
    return AdminActionResponse(
        success=not failed,
        message=message,
        timestamp=datetime.now(timezone.utc),
        results=results,
    )
