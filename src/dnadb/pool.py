"""
Bounded asyncio connection pool shared by the SQL drivers.

Handles are created lazily up to ``max_size``. When every handle is in use,
``acquire()`` waits up to ``acquire_timeout`` seconds for one to be released
and then raises :class:`PoolExhaustedError`. A timeout of 0 rejects
immediately instead of queuing.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Generic, TypeVar

from dnadb.errors import BackendConnectionError, PoolExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConnectionStatus(StrEnum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


@dataclass
class ConnectionInfo:
    """Identity and health of a module's backend connection."""

    backend: str
    id: str = field(default_factory=lambda: f"conn_{uuid.uuid4().hex[:12]}")
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_query_at: datetime | None = None
    active_queries: int = 0
    pool_size: int = 0


class ConnectionPool(Generic[T]):
    """
    Pool of backend handles.

    Args:
        factory: Coroutine function creating a new handle
        closer: Coroutine function closing a handle
        min_size: Handles opened eagerly by :meth:`open`
        max_size: Upper bound on live handles
        acquire_timeout: Seconds to wait for a free handle
        name: Pool name used in logs and errors
    """

    def __init__(
        self,
        factory: Callable[[], Awaitable[T]],
        closer: Callable[[T], Awaitable[Any]],
        *,
        min_size: int = 1,
        max_size: int = 10,
        acquire_timeout: float = 30.0,
        name: str = "pool",
    ) -> None:
        if min_size < 0 or max_size < 1 or min_size > max_size:
            raise ValueError(f"Invalid pool bounds: min={min_size}, max={max_size}")
        self._factory = factory
        self._closer = closer
        self.min_size = min_size
        self.max_size = max_size
        self.acquire_timeout = acquire_timeout
        self.name = name
        self._idle: deque[T] = deque()
        self._in_use: set[int] = set()
        self._size = 0
        self._waiters: deque[asyncio.Future[T]] = deque()
        self._closed = True

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def open(self) -> None:
        self._closed = False
        try:
            while self._size < self.min_size:
                handle = await self._factory()
                self._size += 1
                self._idle.append(handle)
        except Exception as e:
            await self.close()
            raise BackendConnectionError(f"Failed to open pool '{self.name}': {e}") from e
        logger.debug("Pool %s opened with %d connection(s)", self.name, self._size)

    async def close(self) -> None:
        self._closed = True
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(BackendConnectionError(f"Pool '{self.name}' closed"))
        while self._idle:
            handle = self._idle.popleft()
            self._size -= 1
            try:
                await self._closer(handle)
            except Exception as e:
                logger.warning("Error closing connection in pool %s: %s", self.name, e)
        self._in_use.clear()
        self._size = 0

    @property
    def closed(self) -> bool:
        return self._closed

    # =========================================================================
    # Acquire / Release
    # =========================================================================

    async def acquire(self) -> T:
        if self._closed:
            raise BackendConnectionError(f"Pool '{self.name}' is not open")

        if self._idle:
            return self._checkout(self._idle.popleft())

        if self._size < self.max_size:
            self._size += 1
            try:
                handle = await self._factory()
            except Exception as e:
                self._size -= 1
                raise BackendConnectionError(f"Failed to open connection in pool '{self.name}': {e}") from e
            return self._checkout(handle)

        if self.acquire_timeout <= 0:
            raise PoolExhaustedError(self.name, self.acquire_timeout)

        waiter: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            handle = await asyncio.wait_for(waiter, timeout=self.acquire_timeout)
        except TimeoutError:
            raise PoolExhaustedError(self.name, self.acquire_timeout) from None
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)
        return self._checkout(handle)

    async def release(self, handle: T) -> None:
        self._in_use.discard(id(handle))
        if self._closed:
            self._size = max(0, self._size - 1)
            await self._closer(handle)
            return

        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(handle)
                return
        self._idle.append(handle)

    async def discard(self, handle: T) -> None:
        """Drop a broken handle instead of returning it to the pool.

        The freed slot goes to the next waiter as a newly opened handle.
        """
        self._in_use.discard(id(handle))
        self._size = max(0, self._size - 1)
        try:
            await self._closer(handle)
        except Exception as e:
            logger.debug("Error closing discarded connection: %s", e)
        await self._refill_waiter()

    async def _refill_waiter(self) -> None:
        if self._closed or self._size >= self.max_size or not any(not w.done() for w in self._waiters):
            return
        self._size += 1
        try:
            handle = await self._factory()
        except Exception as e:
            self._size -= 1
            error = BackendConnectionError(f"Failed to open connection in pool '{self.name}': {e}")
            while self._waiters:
                waiter = self._waiters.popleft()
                if not waiter.done():
                    waiter.set_exception(error)
                    return
            return
        await self.release(handle)

    def _checkout(self, handle: T) -> T:
        self._in_use.add(id(handle))
        return handle

    # =========================================================================
    # Introspection
    # =========================================================================

    @property
    def size(self) -> int:
        return self._size

    @property
    def in_use(self) -> int:
        return len(self._in_use)

    @property
    def idle(self) -> int:
        return len(self._idle)

    @property
    def waiting(self) -> int:
        return len(self._waiters)

    @property
    def utilization(self) -> float:
        return self.in_use / self.max_size if self.max_size else 0.0
