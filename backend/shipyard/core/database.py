from __future__ import annotations

from functools import lru_cache

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from shipyard.core.config import get_settings


class Base(DeclarativeBase):
    """Declarative base class for SQLAlchemy models."""


@lru_cache
def get_engine() -> AsyncEngine:
    """Create the shared async SQLAlchemy engine on first use.

    Built lazily so deployments running the in-memory cache store never
    need a database driver connection.
    """
    settings = get_settings()
    return create_async_engine(
        settings.database_url,
        echo=settings.database_echo,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_pre_ping=True,
    )


@lru_cache
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the shared session factory bound to the engine."""
    return async_sessionmaker(get_engine(), expire_on_commit=False)


async def dispose_engine() -> None:
    """Dispose the engine if it was ever created."""
    if get_engine.cache_info().currsize:
        await get_engine().dispose()
