"""
Cache backend drivers.

Drivers store already-encoded text values under fully namespaced keys.
:class:`CacheModule` owns encoding, namespacing, stats and events.

- ``MemoryCacheDriver``: in-process dict with lazy expiry and FIFO batch eviction
- ``RedisCacheDriver``: ``redis.asyncio`` client with native TTLs, pipelines
  and list/set/hash/sorted-set commands
"""

from __future__ import annotations

import fnmatch
import json
import logging
import math
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from dnadb.cache.config import CacheConfig, CacheType
from dnadb.errors import BackendConnectionError, OperationError, UnsupportedOperationError

logger = logging.getLogger(__name__)

EvictionCallback = Callable[[list[str], str], Awaitable[None]]

# TTL results for keys without expiry and for missing keys.
NO_EXPIRY = -1
MISSING = -2


@dataclass(frozen=True)
class Command:
    """One pipelined cache command."""

    name: str
    args: tuple[Any, ...] = ()
    kwargs: dict[str, Any] = field(default_factory=dict)


class CacheDriver(ABC):
    """Backend adapter for key/value caching."""

    backend: CacheType
    supports_structures: bool = False
    supports_pipeline: bool = False

    @property
    @abstractmethod
    def connected(self) -> bool: ...

    @abstractmethod
    async def connect(self) -> None: ...

    @abstractmethod
    async def disconnect(self) -> None: ...

    @abstractmethod
    async def get(self, key: str) -> str | None: ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl: int) -> bool:
        """Store ``value``; ``ttl`` of 0 means no expiry."""

    @abstractmethod
    async def delete(self, key: str) -> bool: ...

    @abstractmethod
    async def exists(self, key: str) -> bool: ...

    @abstractmethod
    async def mget(self, keys: Sequence[str]) -> list[str | None]: ...

    @abstractmethod
    async def mset(self, items: Mapping[str, str], ttl: int) -> bool: ...

    @abstractmethod
    async def mdel(self, keys: Sequence[str]) -> int: ...

    @abstractmethod
    async def incr(self, key: str, by: int | float) -> int | float: ...

    @abstractmethod
    async def ttl(self, key: str) -> int: ...

    @abstractmethod
    async def expire(self, key: str, ttl: int) -> bool: ...

    @abstractmethod
    async def flush(self, pattern: str) -> int:
        """Delete keys matching a glob pattern. Returns the number removed."""

    @abstractmethod
    async def keys(self, pattern: str) -> list[str]: ...

    def key_count(self) -> int | None:
        """Current number of stored keys when cheaply known."""
        return None

    async def pipeline(self, commands: Sequence[Command]) -> list[Any]:
        raise UnsupportedOperationError("pipeline", self.backend.value)

    async def command(self, name: str, *args: Any, **kwargs: Any) -> Any:
        """Run a native structure command (``rpush``, ``zadd``...)."""
        raise UnsupportedOperationError(name, self.backend.value)


# =============================================================================
# Memory
# =============================================================================


@dataclass
class _Entry:
    value: str
    expires_at: float | None
    created_at: float


class MemoryCacheDriver(CacheDriver):
    """
    Dict-backed cache.

    Expired entries are removed lazily when read. Before a new key is
    inserted into a full store, the oldest ``eviction_batch_size`` keys by
    insertion order are removed in one sweep. This is FIFO by insertion, not
    LRU: reading a key does not protect it from eviction.
    """

    backend = CacheType.MEMORY

    def __init__(
        self,
        max_entries: int = 10000,
        eviction_batch_size: int = 100,
        clock: Callable[[], float] = time.monotonic,
        on_evict: EvictionCallback | None = None,
    ):
        self.max_entries = max_entries
        self.eviction_batch_size = eviction_batch_size
        self.clock = clock
        self.on_evict = on_evict
        self._entries: dict[str, _Entry] = {}
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True

    async def disconnect(self) -> None:
        self._connected = False

    def __len__(self) -> int:
        return len(self._entries)

    def key_count(self) -> int:
        return len(self._entries)

    async def _live(self, key: str) -> _Entry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and self.clock() >= entry.expires_at:
            del self._entries[key]
            await self._evicted([key], "expired")
            return None
        return entry

    async def _evicted(self, keys: list[str], reason: str) -> None:
        if keys and self.on_evict is not None:
            await self.on_evict(keys, reason)

    async def _make_room(self) -> None:
        if len(self._entries) < self.max_entries:
            return
        oldest = list(self._entries)[: self.eviction_batch_size]
        for key in oldest:
            del self._entries[key]
        logger.debug("Evicted %d oldest cache entries", len(oldest))
        await self._evicted(oldest, "capacity")

    def _expiry(self, ttl: int) -> float | None:
        return self.clock() + ttl if ttl > 0 else None

    async def get(self, key: str) -> str | None:
        entry = await self._live(key)
        return entry.value if entry else None

    async def set(self, key: str, value: str, ttl: int) -> bool:
        if await self._live(key) is None:
            await self._make_room()
        now = self.clock()
        self._entries[key] = _Entry(value, self._expiry(ttl), now)
        return True

    async def delete(self, key: str) -> bool:
        if await self._live(key) is None:
            return False
        del self._entries[key]
        return True

    async def exists(self, key: str) -> bool:
        return await self._live(key) is not None

    async def mget(self, keys: Sequence[str]) -> list[str | None]:
        return [await self.get(key) for key in keys]

    async def mset(self, items: Mapping[str, str], ttl: int) -> bool:
        for key, value in items.items():
            await self.set(key, value, ttl)
        return True

    async def mdel(self, keys: Sequence[str]) -> int:
        removed = 0
        for key in keys:
            removed += await self.delete(key)
        return removed

    async def incr(self, key: str, by: int | float) -> int | float:
        entry = await self._live(key)
        current: Any = 0
        if entry is not None:
            try:
                current = json.loads(entry.value)
            except json.JSONDecodeError:
                current = None
            if isinstance(current, bool) or not isinstance(current, int | float):
                raise OperationError(f"Value at {key} is not a number")
        updated = current + by
        if entry is None:
            await self._make_room()
            self._entries[key] = _Entry(json.dumps(updated), None, self.clock())
        else:
            entry.value = json.dumps(updated)
        return updated

    async def ttl(self, key: str) -> int:
        entry = await self._live(key)
        if entry is None:
            return MISSING
        if entry.expires_at is None:
            return NO_EXPIRY
        return max(math.ceil(entry.expires_at - self.clock()), 0)

    async def expire(self, key: str, ttl: int) -> bool:
        entry = await self._live(key)
        if entry is None:
            return False
        entry.expires_at = self._expiry(ttl)
        return True

    async def flush(self, pattern: str) -> int:
        matched = [key for key in self._entries if fnmatch.fnmatchcase(key, pattern)]
        for key in matched:
            del self._entries[key]
        return len(matched)

    async def keys(self, pattern: str) -> list[str]:
        return [key for key in list(self._entries) if fnmatch.fnmatchcase(key, pattern) and await self._live(key)]


# =============================================================================
# Redis
# =============================================================================


class RedisCacheDriver(CacheDriver):
    """Redis via ``redis.asyncio``. Pass ``client`` to reuse an existing connection."""

    backend = CacheType.REDIS
    supports_structures = True
    supports_pipeline = True

    def __init__(self, config: CacheConfig, client: Any = None):
        self.config = config
        self._client = client
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def client(self) -> Any:
        if self._client is None or not self._connected:
            raise BackendConnectionError("Redis cache is not connected")
        return self._client

    async def connect(self) -> None:
        if self._client is None:
            import redis.asyncio as aioredis

            self._client = aioredis.from_url(
                self.config.redis_url(),
                decode_responses=True,
                max_connections=self.config.max_connections,
                socket_connect_timeout=self.config.connection_timeout,
            )
        try:
            await self._client.ping()
        except Exception as e:
            raise BackendConnectionError(f"Cannot reach Redis at {self.config.host}:{self.config.port}: {e}") from e
        self._connected = True
        logger.info("Connected to Redis database %s", self.config.database)

    async def disconnect(self) -> None:
        if self._client is not None:
            await self._client.aclose()
        self._client = None
        self._connected = False

    async def get(self, key: str) -> str | None:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl: int) -> bool:
        return bool(await self.client.set(key, value, ex=ttl if ttl > 0 else None))

    async def delete(self, key: str) -> bool:
        return await self.client.delete(key) > 0

    async def exists(self, key: str) -> bool:
        return await self.client.exists(key) > 0

    async def mget(self, keys: Sequence[str]) -> list[str | None]:
        if not keys:
            return []
        return list(await self.client.mget(list(keys)))

    async def mset(self, items: Mapping[str, str], ttl: int) -> bool:
        if not items:
            return True
        if ttl <= 0:
            return bool(await self.client.mset(dict(items)))
        pipe = self.client.pipeline(transaction=False)
        for key, value in items.items():
            pipe.set(key, value, ex=ttl)
        results = await pipe.execute()
        return all(results)

    async def mdel(self, keys: Sequence[str]) -> int:
        if not keys:
            return 0
        return await self.client.delete(*keys)

    async def incr(self, key: str, by: int | float) -> int | float:
        if isinstance(by, int):
            return await self.client.incrby(key, by)
        return float(await self.client.incrbyfloat(key, by))

    async def ttl(self, key: str) -> int:
        return await self.client.ttl(key)

    async def expire(self, key: str, ttl: int) -> bool:
        if ttl <= 0:
            return bool(await self.client.persist(key))
        return bool(await self.client.expire(key, ttl))

    async def flush(self, pattern: str) -> int:
        removed = 0
        batch: list[str] = []
        async for key in self.client.scan_iter(match=pattern, count=self.config.pipeline_max_size):
            batch.append(key)
            if len(batch) >= self.config.pipeline_max_size:
                removed += await self.client.delete(*batch)
                batch = []
        if batch:
            removed += await self.client.delete(*batch)
        return removed

    async def keys(self, pattern: str) -> list[str]:
        return [key async for key in self.client.scan_iter(match=pattern)]

    async def pipeline(self, commands: Sequence[Command]) -> list[Any]:
        pipe = self.client.pipeline(transaction=False)
        for command in commands:
            getattr(pipe, command.name)(*command.args, **command.kwargs)
        return list(await pipe.execute(raise_on_error=False))

    async def command(self, name: str, *args: Any, **kwargs: Any) -> Any:
        return await getattr(self.client, name)(*args, **kwargs)


def create_cache_driver(
    config: CacheConfig,
    clock: Callable[[], float] = time.monotonic,
) -> CacheDriver:
    if config.type == CacheType.REDIS:
        return RedisCacheDriver(config)
    return MemoryCacheDriver(config.max_entries, config.eviction_batch_size, clock=clock)
