"""Shared pytest fixtures for dnadb tests."""

from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path

import pytest
import pytest_asyncio

from dnadb.cache import CacheModule
from dnadb.nosql import NoSQLModule
from dnadb.sql import SQLModule


class FakeClock:
    """Monotonic clock the test advances by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sqlite_path(tmp_path: Path) -> Path:
    return tmp_path / "app.db"


@pytest_asyncio.fixture
async def sql(sqlite_path: Path) -> AsyncIterator[SQLModule]:
    module = SQLModule(
        {
            "type": "sqlite",
            "database": "app",
            "filename": str(sqlite_path),
            "pool_min": 1,
            "pool_max": 3,
            "acquire_timeout": 0.2,
        }
    )
    assert await module.connect()
    yield module
    await module.disconnect()


@pytest_asyncio.fixture
async def cache(clock: FakeClock) -> AsyncIterator[CacheModule]:
    module = CacheModule(
        {"type": "memory", "key_prefix": "test", "default_ttl": 60, "max_ttl": 3600},
        clock=clock,
    )
    await module.connect()
    yield module
    await module.disconnect()


@pytest_asyncio.fixture
async def nosql() -> AsyncIterator[NoSQLModule]:
    module = NoSQLModule({"type": "memory", "database": "app"})
    assert await module.connect()
    yield module
    await module.disconnect()
