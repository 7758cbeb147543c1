"""
Database connection and session management.

Uses async SQLAlchemy (asyncpg for PostgreSQL, aiosqlite for local/tests).
The engine and session factory are built lazily so callers can inject their
own factory (tests, CLI) without touching the configured database.
"""

from functools import lru_cache
from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ..core.config import get_settings
from .models import Base


def build_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """
    Create an async engine for the given (or configured) URL.

    Pool options are only passed to server databases; SQLite uses its own
    pool implementation that rejects them.
    """
    settings = get_settings()
    url = database_url or settings.database_url

    if url.startswith("sqlite"):
        return create_async_engine(url, echo=settings.db_echo)

    return create_async_engine(
        url,
        echo=settings.db_echo,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_pool_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=settings.db_pool_recycle,
        pool_pre_ping=True,  # Verify connections before use
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory used by every service (one short unit of work per session)."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@lru_cache
def get_engine() -> AsyncEngine:
    """Get the cached engine for the configured database"""
    return build_engine()


@lru_cache
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get the cached session factory for the configured database"""
    return build_session_factory(get_engine())


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """
    Initialize database tables.

    Note: schema migrations are not managed here; this creates missing tables.
    """
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_db(engine: Optional[AsyncEngine] = None) -> None:
    """
    Drop all database tables.

    WARNING: This will delete all data. Only for development/testing.
    """
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def close_db() -> None:
    """Close database connection pool"""
    await get_engine().dispose()
