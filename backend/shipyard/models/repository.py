from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal

from pydantic import BaseModel, Field, StringConstraints

ClusterKey = Annotated[str, StringConstraints(min_length=1, max_length=100)]

CacheStatusLabel = Literal["hit", "stale-refresh", "miss", "stale", "refreshing", "error"]


class LanguageShare(BaseModel):
    name: str
    color: str | None = None
    size: int = Field(0, ge=0, description="Bytes of code in this language.")


class RepositoryItem(BaseModel):
    id: str = Field(..., description="GitHub node id.")
    name: str
    url: str
    description: str | None = None
    stars: int = Field(0, ge=0)
    updated_at: datetime
    topics: list[str] = Field(default_factory=list)
    languages: list[LanguageShare] = Field(
        default_factory=list, description="Up to three languages ranked by size."
    )
    language: str | None = Field(None, description="Top language, if any.")
    color: str | None = Field(None, description="Colour of the top language.")
    display_name: str | None = Field(
        None, description="Registry override for the display name."
    )
    featured: bool = False

    def to_payload(self) -> dict:
        """Serialize for the cache store, leaving out registry decoration."""
        return self.model_dump(mode="json", exclude={"display_name", "featured"})


class RateLimitInfo(BaseModel):
    limit: int | None = None
    remaining: int
    reset_at: datetime | None = None


class ClusterResult(BaseModel):
    cluster_key: str
    items: list[RepositoryItem] = Field(default_factory=list)
    cached: bool = False
    is_stale: bool = False
    error: str | None = None
    cache_status: CacheStatusLabel = Field(
        "miss", description="How the result was produced; mirrored in X-Cache-Status."
    )
    refreshed_at: datetime | None = Field(
        None, description="When the items were last fetched from GitHub."
    )


class BatchResult(BaseModel):
    clusters: list[ClusterResult] = Field(
        default_factory=list,
        description="One entry per requested key, in request order.",
    )
    per_cluster: dict[str, ClusterResult] = Field(default_factory=dict)
    total_items: int = Field(0, description="Item count across distinct clusters.")
    timestamp: datetime


class BatchRequest(BaseModel):
    cluster_keys: list[ClusterKey] = Field(..., min_length=1)


class ClusterSummary(BaseModel):
    id: str
    name: str
    repo_count: int
    featured: bool
    experimental: bool
    active: bool


class RefreshLogEntry(BaseModel):
    cluster_key: str
    outcome: Literal["success", "failure"]
    repo_count: int | None = None
    error_message: str | None = None
    rate_limit_remaining: int | None = None
    rate_limit_reset: datetime | None = None
    duration_ms: int | None = None
    attempted_at: datetime


class AdminActionResponse(BaseModel):
    success: bool
    message: str
    timestamp: datetime
    invalidated: int | None = None
    results: dict[str, ClusterResult] | None = None


__all__ = [
    "AdminActionResponse",
    "BatchRequest",
    "BatchResult",
    "CacheStatusLabel",
    "ClusterKey",
    "ClusterResult",
    "ClusterSummary",
    "LanguageShare",
    "RateLimitInfo",
    "RefreshLogEntry",
    "RepositoryItem",
]
