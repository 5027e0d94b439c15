"""
Async Database Session Management.

This module configures SQLAlchemy 2.0 with async support using asyncpg.
The engine and session factory are built by the composition root
(``switchboard.container``) from settings; nothing here is global.

Key Design Decisions:
    - Uses async sessions for non-blocking I/O
    - Connection pooling tuned for high concurrency
    - One short-lived session per store call or governance transaction
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from switchboard.core.config import Settings


def create_engine(settings: Settings) -> AsyncEngine:
    """
    Create and configure the async SQLAlchemy engine.

    Pool Configuration:
        - pool_size: Number of persistent connections
        - max_overflow: Additional connections allowed under load
        - pool_timeout: Seconds to wait for a connection
        - pool_pre_ping: Validate connections before use (handles DB restarts)

    Returns:
        AsyncEngine: Configured async SQLAlchemy engine.

    Note:
        Development and test use NullPool to avoid event loop issues.
    """
    connect_args: dict = {
        # Statement cache size (asyncpg specific)
        "statement_cache_size": 0,  # Disable for pgbouncer compatibility
    }

    if settings.APP_ENV in ("development", "test"):
        return create_async_engine(
            str(settings.DATABASE_URL),
            echo=settings.DEBUG,
            pool_pre_ping=True,
            connect_args=connect_args,
            poolclass=NullPool,
        )

    return create_async_engine(
        str(settings.DATABASE_URL),
        echo=settings.DEBUG,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Create the async session factory.

    expire_on_commit=False allows reading attributes after commit.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,  # Explicit flush for better control
    )


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Transactional session scope.

    Commits on clean exit and rolls back on any exception.

    Example:
        async with session_scope(factory) as db:
            db.add(FeatureFlag(key="checkout.v2", name="Checkout v2"))
    """
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: AsyncEngine) -> None:
    """
    Verify database connectivity.

    Called during application startup to fail fast if the database
    is not reachable.
    """
    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))


async def close_db(engine: AsyncEngine) -> None:
    """Close all database connections (call during shutdown)."""
    await engine.dispose()
