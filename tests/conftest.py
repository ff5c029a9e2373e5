"""Pytest configuration and shared fixtures.

Every test runs against mocked sessions; no database is required.
"""

import os
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Set testing mode BEFORE importing app to use NullPool
os.environ["TESTING"] = "true"

from opsguard.config import settings

# Override settings for testing
settings.testing = True

from opsguard.main import app


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    """Provide an async HTTP client for testing the API."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def mock_db() -> AsyncMock:
    """An AsyncSession stand-in with the synchronous methods made sync."""
    db = AsyncMock()
    db.add = MagicMock()
    db.expunge = MagicMock()
    return db


@pytest.fixture
def session_maker_for() -> Callable[[AsyncMock], Callable]:
    """Build a session factory whose sessions all yield the given mock."""

    def _build(db: AsyncMock):
        @asynccontextmanager
        async def _session():
            yield db

        return _session

    return _build


@pytest.fixture
def failing_session_maker() -> Callable[[Exception], Callable]:
    """Build a session factory whose sessions fail to open."""

    def _build(error: Exception):
        @asynccontextmanager
        async def _session():
            raise error
            yield  # pragma: no cover

        return _session

    return _build
