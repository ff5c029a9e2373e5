"""Database connection and session management.

Uses lazy initialization so the engine is created inside the event loop that
runs the scheduler, avoiding asyncpg event loop issues.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from opsguard.config import settings

# Engine and session maker - lazily initialized
_engine: Optional[AsyncEngine] = None
_async_session_maker: Optional[async_sessionmaker[AsyncSession]] = None

# PostgreSQL SQLSTATEs for serialization failure and deadlock
RETRYABLE_SQLSTATES = frozenset({"40001", "40P01"})

_RETRYABLE_MESSAGE_FRAGMENTS = (
    "could not serialize",
    "serialization",
    "deadlock",
    "concurrent update",
)


def get_engine() -> AsyncEngine:
    """Get or create the database engine.

    When testing=True, uses NullPool to avoid event loop issues
    with connection pooling across different test event loops.
    """
    global _engine
    if _engine is None:
        if settings.testing:
            _engine = create_async_engine(
                settings.database_url,
                poolclass=NullPool,
            )
        else:
            _engine = create_async_engine(
                settings.database_url,
                pool_size=5,
                max_overflow=10,
                pool_pre_ping=True,
            )
    return _engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Get or create the session maker."""
    global _async_session_maker
    if _async_session_maker is None:
        _async_session_maker = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _async_session_maker


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for getting database sessions."""
    session_maker = get_session_maker()
    async with session_maker() as session:
        try:
            yield session
        finally:
            await session.close()


@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Context manager for database sessions outside of request handling."""
    session_maker = get_session_maker()
    async with session_maker() as session:
        try:
            yield session
        finally:
            await session.close()


def is_retryable_db_error(error: BaseException) -> bool:
    """Classify an error as a transient database failure worth retrying.

    Serialization failures, deadlocks and dropped connections are retryable;
    constraint violations and programming errors are not.
    """
    if isinstance(error, DBAPIError):
        if error.connection_invalidated:
            return True
        sqlstate = getattr(error.orig, "sqlstate", None) or getattr(
            error.orig, "pgcode", None
        )
        if sqlstate in RETRYABLE_SQLSTATES:
            return True
        if isinstance(error, OperationalError):
            return True

    message = str(error).lower()
    return any(fragment in message for fragment in _RETRYABLE_MESSAGE_FRAGMENTS)


async def check_database_connection() -> bool:
    """
    Check if the database is reachable.

    Returns:
        True if database is connected, False otherwise.
    """
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
            return True
    except Exception:
        return False


async def close_database() -> None:
    """Close the database engine and all connections."""
    global _engine, _async_session_maker
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_maker = None


async def reset_database() -> None:
    """Reset the database engine for testing.

    This disposes the current engine and clears the references,
    allowing a new engine to be created in a different event loop.
    """
    await close_database()
