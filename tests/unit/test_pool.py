"""Tests for ConnectionPool."""

from __future__ import annotations

import asyncio
import itertools

import pytest

from dnadb.errors import BackendConnectionError, PoolExhaustedError
from dnadb.pool import ConnectionPool


def _pool(**kwargs) -> tuple[ConnectionPool[int], list[int]]:
    counter = itertools.count(1)
    closed: list[int] = []

    async def factory() -> int:
        return next(counter)

    async def closer(handle: int) -> None:
        closed.append(handle)

    return ConnectionPool(factory, closer, name="test", **kwargs), closed


class TestConnectionPool:
    @pytest.mark.asyncio
    async def test_open_creates_min_size(self) -> None:
        pool, _ = _pool(min_size=2, max_size=4)
        await pool.open()
        assert pool.size == 2
        assert pool.idle == 2

    @pytest.mark.asyncio
    async def test_grows_to_max_then_rejects_without_timeout(self) -> None:
        pool, _ = _pool(min_size=0, max_size=2, acquire_timeout=0)
        await pool.open()
        await pool.acquire()
        await pool.acquire()
        assert pool.utilization == 1.0
        with pytest.raises(PoolExhaustedError):
            await pool.acquire()

    @pytest.mark.asyncio
    async def test_waiter_receives_released_handle(self) -> None:
        pool, _ = _pool(min_size=1, max_size=1, acquire_timeout=1.0)
        await pool.open()
        handle = await pool.acquire()

        waiter = asyncio.create_task(pool.acquire())
        await asyncio.sleep(0)
        assert pool.waiting == 1
        await pool.release(handle)
        assert await waiter == handle

    @pytest.mark.asyncio
    async def test_discard_opens_new_handle_for_waiter(self) -> None:
        pool, closed = _pool(min_size=0, max_size=1, acquire_timeout=0.5)
        await pool.open()
        held = await pool.acquire()

        waiter = asyncio.create_task(pool.acquire())
        await asyncio.sleep(0)
        await pool.discard(held)

        replacement = await waiter
        assert replacement != held
        assert closed == [held]
        assert pool.size == 1

    @pytest.mark.asyncio
    async def test_discard_reports_factory_failure_to_waiter(self) -> None:
        attempts = itertools.count()

        async def factory() -> int:
            if next(attempts) > 0:
                raise OSError("connection refused")
            return 1

        async def closer(handle: int) -> None:
            pass

        pool = ConnectionPool(factory, closer, name="test", min_size=0, max_size=1, acquire_timeout=0.5)
        await pool.open()
        held = await pool.acquire()

        waiter = asyncio.create_task(pool.acquire())
        await asyncio.sleep(0)
        await pool.discard(held)

        with pytest.raises(BackendConnectionError):
            await waiter
        assert pool.size == 0

    @pytest.mark.asyncio
    async def test_discard_without_waiters_leaves_slot_free(self) -> None:
        pool, _ = _pool(min_size=0, max_size=1)
        await pool.open()
        await pool.discard(await pool.acquire())
        assert pool.size == 0
        assert pool.idle == 0

    @pytest.mark.asyncio
    async def test_wait_times_out(self) -> None:
        pool, _ = _pool(min_size=1, max_size=1, acquire_timeout=0.05)
        await pool.open()
        await pool.acquire()
        with pytest.raises(PoolExhaustedError):
            await pool.acquire()
        assert pool.waiting == 0

    @pytest.mark.asyncio
    async def test_close_releases_idle_and_rejects_acquire(self) -> None:
        pool, closed = _pool(min_size=2, max_size=2)
        await pool.open()
        await pool.close()
        assert sorted(closed) == [1, 2]
        with pytest.raises(BackendConnectionError):
            await pool.acquire()

    def test_invalid_bounds(self) -> None:
        with pytest.raises(ValueError):
            _pool(min_size=3, max_size=1)
