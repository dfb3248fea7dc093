"""
Cache module: namespaced key/value caching with TTLs and structured types.

Usage:
    cache = CacheModule({"type": "redis", "key_prefix": "shop"})
    await cache.connect()
    await cache.set("user:1", {"name": "Ada"}, ttl=300)
    profile = await cache.get_or_set("profile:1", load_profile)
    await cache.sorted_sets.add("leaderboard", 42, "ada")
"""

from __future__ import annotations

import inspect
import logging
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, TypeVar

from dnadb.cache.codec import ValueCodec
from dnadb.cache.config import CacheConfig
from dnadb.cache.drivers import CacheDriver, Command, MemoryCacheDriver, create_cache_driver
from dnadb.cache.structures import HashOps, ListOps, SetOps, SortedSetOps
from dnadb.config import coerce_config
from dnadb.errors import BackendConnectionError, ConfigurationError, DnaDbError, OperationError, UnsupportedOperationError
from dnadb.events import EventChannel
from dnadb.generated import GeneratedFile, ModuleContext, render_template
from dnadb.logging import apply_log_level, log_with_context
from dnadb.pool import ConnectionInfo, ConnectionStatus
from dnadb.stats import CacheStats

logger = logging.getLogger(__name__)

T = TypeVar("T")

BATCH_OPERATIONS = ("get", "set", "delete")


@dataclass(frozen=True)
class BatchOperation:
    type: str
    key: str
    value: Any = None
    ttl: int | None = None


class CacheModule:
    """Backend-agnostic cache over a :class:`CacheDriver`."""

    def __init__(
        self,
        config: CacheConfig | Mapping[str, Any],
        driver: CacheDriver | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = coerce_config(CacheConfig, config)
        self._driver = driver if driver is not None else create_cache_driver(self.config, clock=clock)
        if isinstance(self._driver, MemoryCacheDriver) and self._driver.on_evict is None:
            self._driver.on_evict = self._on_evict
        self.codec = ValueCodec(
            compress=self.config.enable_compression,
            threshold=self.config.compression_threshold,
        )
        self.events = EventChannel("cache")
        self.connection_info = ConnectionInfo(backend=self.config.type.value)
        self._stats = CacheStats()

        self.lists = ListOps(self)
        self.sets = SetOps(self)
        self.hashes = HashOps(self)
        self.sorted_sets = SortedSetOps(self)
        apply_log_level(logger, self.config.log_level)

    def __repr__(self) -> str:
        return f"CacheModule(type={self.config.type.value!r}, prefix={self.config.key_prefix!r})"

    @property
    def driver(self) -> CacheDriver:
        return self._driver

    @property
    def is_connected(self) -> bool:
        return self._driver.connected

    def full_key(self, key: str) -> str:
        if not self.config.key_prefix:
            return key
        return f"{self.config.key_prefix}{self.config.key_separator}{key}"

    def _resolve_ttl(self, ttl: int | None) -> int:
        effective = self.config.default_ttl if ttl is None else ttl
        if effective < 0:
            raise ConfigurationError(f"TTL must be non-negative, got {effective}")
        if effective > self.config.max_ttl:
            raise ConfigurationError(f"TTL {effective} exceeds maximum allowed {self.config.max_ttl}")
        return effective

    # =========================================================================
    # Connection
    # =========================================================================

    async def connect(self) -> bool:
        if self._driver.connected:
            return True
        try:
            await self._driver.connect()
        except BackendConnectionError as e:
            self.connection_info.status = ConnectionStatus.ERROR
            self._stats.record_error(e)
            logger.error("Failed to connect to cache: %s", e)
            return False
        self.connection_info.status = ConnectionStatus.CONNECTED
        self.connection_info.created_at = datetime.now(UTC)
        self.connection_info.pool_size = self.config.max_connections
        await self.events.publish("connected", {"backend": self.config.type.value})
        logger.info("Cache connected (%s)", self.config.type)
        return True

    async def disconnect(self) -> bool:
        try:
            await self._driver.disconnect()
        except Exception as e:
            self.connection_info.status = ConnectionStatus.ERROR
            logger.error("Error during cache disconnect: %s", e)
            return False
        self.connection_info.status = ConnectionStatus.DISCONNECTED
        await self.events.publish("disconnected", {"backend": self.config.type.value})
        logger.info("Cache disconnected")
        return True

    # =========================================================================
    # Key/value operations
    # =========================================================================

    async def get(self, key: str) -> Any:
        """Return the cached value or ``None`` when missing or expired."""
        start = time.perf_counter()
        raw = await self._call("get", key, self._driver.get(self.full_key(key)))
        duration_ms = (time.perf_counter() - start) * 1000
        hit = raw is not None
        self._stats.record_get(hit, duration_ms)
        if hit:
            await self.events.publish("cache:hit", {"key": key, "duration_ms": duration_ms})
            return self.codec.decode(raw)
        await self.events.publish("cache:miss", {"key": key, "duration_ms": duration_ms})
        return None

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        """Store ``value``. ``ttl=None`` uses ``default_ttl``; 0 stores without expiry."""
        start = time.perf_counter()
        try:
            effective_ttl = self._resolve_ttl(ttl)
        except ConfigurationError as e:
            self._stats.record_error(e)
            raise
        encoded = self.codec.encode(value)
        success = await self._call("set", key, self._driver.set(self.full_key(key), encoded, effective_ttl))
        duration_ms = (time.perf_counter() - start) * 1000
        self._stats.record_set(success, duration_ms)
        self._sync_key_count()
        if success:
            await self.events.publish("cache:set", {"key": key, "ttl": effective_ttl, "duration_ms": duration_ms})
        return success

    async def delete(self, key: str) -> bool:
        deleted = await self._call("delete", key, self._driver.delete(self.full_key(key)))
        if deleted:
            self._stats.deletes += 1
            self._sync_key_count()
            await self.events.publish("cache:delete", {"key": key})
        return deleted

    async def exists(self, key: str) -> bool:
        return await self._call("exists", key, self._driver.exists(self.full_key(key)))

    async def mget(self, keys: Sequence[str]) -> list[Any]:
        """Values in the order of ``keys``, ``None`` for misses."""
        if not keys:
            return []
        start = time.perf_counter()
        raws = await self._call("mget", None, self._driver.mget([self.full_key(k) for k in keys]))
        per_key_ms = (time.perf_counter() - start) * 1000 / len(keys)
        values = []
        for raw in raws:
            self._stats.record_get(raw is not None, per_key_ms)
            values.append(None if raw is None else self.codec.decode(raw))
        return values

    async def mset(self, items: Mapping[str, Any], ttl: int | None = None) -> bool:
        start = time.perf_counter()
        try:
            effective_ttl = self._resolve_ttl(ttl)
        except ConfigurationError as e:
            self._stats.record_error(e)
            raise
        encoded = {self.full_key(k): self.codec.encode(v) for k, v in items.items()}
        success = await self._call("mset", None, self._driver.mset(encoded, effective_ttl))
        per_key_ms = (time.perf_counter() - start) * 1000 / max(len(items), 1)
        for _ in items:
            self._stats.record_set(success, per_key_ms)
        self._sync_key_count()
        if success:
            await self.events.publish("cache:set", {"keys": list(items), "ttl": effective_ttl})
        return success

    async def mdel(self, keys: Sequence[str]) -> int:
        removed = await self._call("mdel", None, self._driver.mdel([self.full_key(k) for k in keys]))
        if removed:
            self._stats.deletes += removed
            self._sync_key_count()
            await self.events.publish("cache:delete", {"keys": list(keys), "count": removed})
        return removed

    async def increment(self, key: str, by: int | float = 1) -> int | float:
        return await self._call("increment", key, self._driver.incr(self.full_key(key), by))

    async def decrement(self, key: str, by: int | float = 1) -> int | float:
        return await self.increment(key, -by)

    async def ttl(self, key: str) -> int:
        """Remaining seconds; -1 when the key has no expiry, -2 when it is missing."""
        return await self._call("ttl", key, self._driver.ttl(self.full_key(key)))

    async def expire(self, key: str, ttl: int) -> bool:
        effective_ttl = self._resolve_ttl(ttl)
        return await self._call("expire", key, self._driver.expire(self.full_key(key), effective_ttl))

    async def keys(self, pattern: str = "*") -> list[str]:
        """Keys matching a glob pattern, without the namespace prefix."""
        full = await self._call("keys", None, self._driver.keys(self.full_key(pattern)))
        strip = len(self.full_key(""))
        return [k[strip:] for k in full]

    async def flush(self, pattern: str | None = None) -> int:
        """Delete every key in the namespace, or those matching ``pattern``."""
        removed = await self._call("flush", None, self._driver.flush(self.full_key(pattern or "*")))
        if pattern is None:
            self._stats.key_count = 0
        self._sync_key_count()
        await self.events.publish("cache:flushed", {"pattern": pattern, "count": removed})
        logger.info("Cache flushed (%d keys)", removed)
        return removed

    async def get_or_set(
        self,
        key: str,
        factory: Callable[[], T | Awaitable[T]],
        ttl: int | None = None,
    ) -> T:
        cached = await self.get(key)
        if cached is not None:
            return cached
        value = factory()
        if inspect.isawaitable(value):
            value = await value
        await self.set(key, value, ttl)
        return value

    # =========================================================================
    # Batches
    # =========================================================================

    async def batch(self, operations: Sequence[BatchOperation | Mapping[str, Any]]) -> list[Any]:
        """
        Run get/set/delete operations in order.

        Pipelined in chunks of ``pipeline_max_size`` when the backend supports
        it. A failing step yields its exception in the result list instead of
        aborting the rest of the batch.
        """
        ops = [op if isinstance(op, BatchOperation) else BatchOperation(**op) for op in operations]
        for op in ops:
            if op.type not in BATCH_OPERATIONS:
                raise OperationError(f"Unsupported batch operation: {op.type}")

        if self.config.enable_pipelining and self._driver.supports_pipeline:
            results: list[Any] = []
            size = self.config.pipeline_max_size
            for i in range(0, len(ops), size):
                results.extend(await self._pipelined(ops[i : i + size]))
            return results

        results = []
        for op in ops:
            try:
                if op.type == "get":
                    results.append(await self.get(op.key))
                elif op.type == "set":
                    results.append(await self.set(op.key, op.value, op.ttl))
                else:
                    results.append(await self.delete(op.key))
            except DnaDbError as e:
                results.append(e)
        return results

    async def _pipelined(self, ops: Sequence[BatchOperation]) -> list[Any]:
        commands: list[Command] = []
        rejected: dict[int, DnaDbError] = {}
        for i, op in enumerate(ops):
            key = self.full_key(op.key)
            if op.type == "get":
                commands.append(Command("get", (key,)))
            elif op.type == "set":
                try:
                    ttl = self._resolve_ttl(op.ttl)
                except DnaDbError as e:
                    rejected[i] = e
                    continue
                commands.append(Command("set", (key, self.codec.encode(op.value)), {"ex": ttl or None}))
            else:
                commands.append(Command("delete", (key,)))

        raw_results: list[Any] = []
        start = time.perf_counter()
        if commands:
            raw_results = await self._call("batch", None, self._driver.pipeline(commands))
        per_op_ms = (time.perf_counter() - start) * 1000 / max(len(commands), 1)

        results: list[Any] = []
        pending = iter(raw_results)
        for i, op in enumerate(ops):
            if i in rejected:
                results.append(rejected[i])
                continue
            raw = next(pending)
            if isinstance(raw, Exception):
                self._stats.record_error(raw)
                results.append(OperationError(f"{op.type} {op.key} failed: {raw}"))
            elif op.type == "get":
                self._stats.record_get(raw is not None, per_op_ms)
                results.append(None if raw is None else self.codec.decode(raw))
            elif op.type == "set":
                self._stats.record_set(bool(raw), per_op_ms)
                results.append(bool(raw))
            else:
                self._stats.deletes += int(raw or 0)
                results.append(bool(raw))
        return results

    # =========================================================================
    # Structures
    # =========================================================================

    async def structure_command(self, kind: str, command: str, *args: Any, **kwargs: Any) -> Any:
        """Run a native list/set/hash/sorted-set command against the driver."""
        if not self._driver.supports_structures:
            raise UnsupportedOperationError(f"{kind} operations", self.config.type.value)
        return await self._call(command, None, self._driver.command(command, *args, **kwargs))

    # =========================================================================
    # Internals
    # =========================================================================

    async def _call(self, operation: str, key: str | None, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except DnaDbError as e:
            self._record_failure(operation, key, e)
            raise
        except Exception as e:
            self._record_failure(operation, key, e)
            raise OperationError(f"Cache {operation} failed: {e}") from e

    def _record_failure(self, operation: str, key: str | None, error: Exception) -> None:
        self._stats.record_error(error)
        log_with_context(
            logger,
            logging.ERROR,
            f"Cache {operation} failed: {error}",
            key=key,
            backend=self.config.type.value,
        )

    def _sync_key_count(self) -> None:
        count = self._driver.key_count()
        if count is not None:
            self._stats.key_count = count

    async def _on_evict(self, keys: list[str], reason: str) -> None:
        self._stats.evictions += len(keys)
        self._sync_key_count()
        await self.events.publish("cache:evicted", {"keys": keys, "count": len(keys), "reason": reason})

    # =========================================================================
    # Stats and generated files
    # =========================================================================

    def get_stats(self) -> dict[str, Any]:
        self._sync_key_count()
        return self._stats.snapshot()

    def clear_stats(self) -> None:
        key_count = self._stats.key_count
        self._stats = CacheStats(key_count=key_count)

    def get_files(self, context: ModuleContext) -> list[GeneratedFile]:
        config = self.config.model_dump(mode="json", exclude={"password"})
        return [
            GeneratedFile(
                path=f"{context.package_name}/cache/service.py",
                content=render_template("cache_service.py.j2", context=context, config=config),
                type="python",
            ),
            GeneratedFile(
                path="config/cache.yaml",
                content=render_template("module_config.yaml.j2", module="cache", config=config),
                type="yaml",
            ),
        ]
