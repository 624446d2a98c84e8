"""Async database helpers for the cache index."""

from __future__ import annotations

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.database.models import Base


def create_engine(database_url: str) -> AsyncEngine:
    url = make_url(database_url)
    driver = url.drivername.lower()
    if not driver.startswith("sqlite+aiosqlite"):
        raise ValueError(f"Unsupported database driver for async engine: {driver}")
    return create_async_engine(database_url, future=True)


def create_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        autoflush=False,
        expire_on_commit=False,
    )


async def init_models(engine: AsyncEngine) -> None:
    """Create missing tables on a fresh database. Not a migration tool."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


__all__ = ["create_engine", "create_sessionmaker", "init_models"]
