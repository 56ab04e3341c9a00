from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    DateTime,
    Enum as SqlEnum,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from shipyard.core.database import Base


class CacheStatus(str, enum.Enum):
    OK = "ok"
    REFRESHING = "refreshing"
    ERROR = "error"


class RefreshOutcome(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"


cache_status_enum = SqlEnum(
    CacheStatus,
    name="cache_status",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
    native_enum=False,
    length=20,
)
refresh_outcome_enum = SqlEnum(
    RefreshOutcome,
    name="refresh_outcome",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
    native_enum=False,
    length=20,
)


class RepositoryCache(Base):
    __tablename__ = "repository_cache"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    cluster_key: Mapped[str] = mapped_column(String(255), nullable=False)
    member_names: Mapped[list[str]] = mapped_column(
        JSONB, nullable=False, server_default=text("'[]'::jsonb")
    )
    payload: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONB, nullable=True)
    fetched_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    status: Mapped[CacheStatus] = mapped_column(
        cache_status_enum,
        nullable=False,
        default=CacheStatus.OK,
        server_default=CacheStatus.OK.value,
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    refreshing_since: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        Index("idx_repository_cache_cluster_key", "cluster_key", unique=True),
        Index("idx_repository_cache_fetched_at", "fetched_at"),
        Index("idx_repository_cache_status", "status"),
    )


class RefreshLog(Base):
    __tablename__ = "refresh_log"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    cluster_key: Mapped[str] = mapped_column(String(255), nullable=False)
    outcome: Mapped[RefreshOutcome] = mapped_column(refresh_outcome_enum, nullable=False)
    repo_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    rate_limit_remaining: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rate_limit_reset: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    attempted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        Index("idx_refresh_log_cluster_key", "cluster_key"),
        Index("idx_refresh_log_attempted_at", "attempted_at"),
        Index("idx_refresh_log_outcome", "outcome"),
    )
