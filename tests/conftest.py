"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from supermolt_arena.storage.database import DatabaseManager
from supermolt_arena.storage.models import Base


@pytest.fixture
async def async_engine(tmp_path: Path) -> AsyncIterator[AsyncEngine]:
    """File-backed SQLite engine so concurrent sessions see the same data."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'arena.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def db(async_engine: AsyncEngine) -> DatabaseManager:
    """DatabaseManager bound to the test engine."""
    return DatabaseManager.from_engine(async_engine)


@pytest.fixture
def epoch_window() -> tuple[datetime, datetime]:
    """A one-week epoch window."""
    start = datetime(2026, 3, 2, tzinfo=UTC)
    return start, start + timedelta(days=7)
