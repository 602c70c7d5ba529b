"""Pytest configuration and fixtures."""

from datetime import UTC, datetime

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from oracle_monitor.scheduler import ManualClock
from oracle_monitor.storage.database import DatabaseManager
from oracle_monitor.storage.models import Base


@pytest.fixture
def clock() -> ManualClock:
    """Deterministic clock starting at 2026-01-01 00:00 UTC."""
    return ManualClock(datetime(2026, 1, 1, tzinfo=UTC))


@pytest.fixture
async def async_engine():
    """Create an async SQLite engine with the full schema."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def db(async_engine) -> DatabaseManager:
    """Database manager bound to the in-memory engine."""
    return DatabaseManager.from_engine(async_engine)
