"""Tests for CacheModule over the in-memory driver."""

from __future__ import annotations

from typing import Any

import pytest

from dnadb.cache import BatchOperation, CacheConfig, CacheModule, MemoryCacheDriver
from dnadb.errors import ConfigurationError, OperationError, UnsupportedOperationError
from dnadb.events import Event
from dnadb.generated import ModuleContext


class TestConfig:
    def test_default_ttl_above_max_ttl(self) -> None:
        with pytest.raises(ConfigurationError):
            CacheConfig(default_ttl=100, max_ttl=10)

    def test_min_connections_above_max(self) -> None:
        with pytest.raises(ConfigurationError):
            CacheConfig(min_connections=5, max_connections=2)

    @pytest.mark.asyncio
    async def test_empty_injected_driver_is_used(self, clock: Any) -> None:
        driver = MemoryCacheDriver(max_entries=5, clock=clock)
        assert len(driver) == 0

        cache = CacheModule({"type": "memory", "key_prefix": ""}, driver=driver)
        assert cache.driver is driver

        await cache.connect()
        await cache.set("k", 1)
        assert len(driver) == 1

    def test_redis_url(self) -> None:
        assert CacheConfig(host="cache", port=6380, database=2).redis_url() == "redis://cache:6380/2"
        assert CacheConfig(password="pw").redis_url() == "redis://:pw@localhost:6379/0"
        assert CacheConfig(url="redis://other:1/0").redis_url() == "redis://other:1/0"


class TestKeyValue:
    @pytest.mark.asyncio
    async def test_set_then_get(self, cache: CacheModule) -> None:
        assert await cache.set("user:1", {"name": "Ada"}, ttl=30)
        assert await cache.get("user:1") == {"name": "Ada"}
        assert await cache.exists("user:1")

    @pytest.mark.asyncio
    async def test_ttl_expiry(self, cache: CacheModule, clock: Any) -> None:
        await cache.set("session", "abc", ttl=30)
        clock.advance(29)
        assert await cache.get("session") == "abc"
        assert await cache.ttl("session") == 1
        clock.advance(1)
        assert await cache.get("session") is None
        assert await cache.ttl("session") == -2

    @pytest.mark.asyncio
    async def test_default_ttl_and_no_expiry(self, cache: CacheModule, clock: Any) -> None:
        await cache.set("default", 1)
        await cache.set("forever", 2, ttl=0)
        assert await cache.ttl("default") == 60
        assert await cache.ttl("forever") == -1
        clock.advance(3600)
        assert await cache.get("default") is None
        assert await cache.get("forever") == 2

    @pytest.mark.asyncio
    async def test_ttl_above_max_is_rejected_without_writing(self, cache: CacheModule) -> None:
        with pytest.raises(ConfigurationError):
            await cache.set("big", "value", ttl=3601)
        assert not await cache.exists("big")
        assert cache.get_stats()["sets"] == 0
        with pytest.raises(ConfigurationError):
            await cache.mset({"a": 1}, ttl=99999)
        assert await cache.get("a") is None

    @pytest.mark.asyncio
    async def test_negative_ttl_rejected(self, cache: CacheModule) -> None:
        with pytest.raises(ConfigurationError):
            await cache.set("k", "v", ttl=-1)

    @pytest.mark.asyncio
    async def test_mset_mget_preserves_order(self, cache: CacheModule) -> None:
        await cache.mset({"b": 2, "a": 1, "c": [3]})
        assert await cache.mget(["c", "missing", "a", "b"]) == [[3], None, 1, 2]
        assert await cache.mget([]) == []

    @pytest.mark.asyncio
    async def test_delete_and_mdel(self, cache: CacheModule) -> None:
        await cache.mset({"a": 1, "b": 2, "c": 3})
        assert await cache.delete("a")
        assert not await cache.delete("a")
        assert await cache.mdel(["b", "c", "d"]) == 2
        assert cache.get_stats()["deletes"] == 3

    @pytest.mark.asyncio
    async def test_increment_and_decrement(self, cache: CacheModule) -> None:
        assert await cache.increment("counter") == 1
        assert await cache.increment("counter", 5) == 6
        assert await cache.decrement("counter", 2) == 4
        assert await cache.get("counter") == 4

    @pytest.mark.asyncio
    async def test_increment_non_number(self, cache: CacheModule) -> None:
        await cache.set("name", "ada")
        with pytest.raises(OperationError):
            await cache.increment("name")
        assert cache.get_stats()["errors"] == 1

    @pytest.mark.asyncio
    async def test_expire_resets_ttl(self, cache: CacheModule, clock: Any) -> None:
        await cache.set("k", "v", ttl=10)
        assert await cache.expire("k", 100)
        clock.advance(50)
        assert await cache.get("k") == "v"
        assert not await cache.expire("missing", 10)

    @pytest.mark.asyncio
    async def test_keys_are_namespaced(self, cache: CacheModule) -> None:
        await cache.mset({"user:1": 1, "user:2": 2, "order:1": 3})
        assert sorted(await cache.keys("user:*")) == ["user:1", "user:2"]
        assert "test:user:1" in await cache.driver.keys("*")

    @pytest.mark.asyncio
    async def test_flush_pattern_and_all(self, cache: CacheModule) -> None:
        await cache.mset({"user:1": 1, "user:2": 2, "order:1": 3})
        assert await cache.flush("user:*") == 2
        assert await cache.keys() == ["order:1"]
        assert await cache.flush() == 1
        assert cache.get_stats()["key_count"] == 0

    @pytest.mark.asyncio
    async def test_get_or_set(self, cache: CacheModule) -> None:
        calls = 0

        async def load() -> dict[str, int]:
            nonlocal calls
            calls += 1
            return {"value": 42}

        assert await cache.get_or_set("answer", load) == {"value": 42}
        assert await cache.get_or_set("answer", load) == {"value": 42}
        assert await cache.get_or_set("sync", lambda: "plain") == "plain"
        assert calls == 1


class TestStatsAndEvents:
    @pytest.mark.asyncio
    async def test_hit_rate(self, cache: CacheModule) -> None:
        await cache.set("a", 1)
        await cache.get("a")
        await cache.get("a")
        await cache.get("b")
        await cache.get("c")
        stats = cache.get_stats()
        assert stats["hits"] == 2
        assert stats["misses"] == 2
        assert stats["hit_rate"] == 50.0
        assert stats["sets"] == 1
        assert stats["key_count"] == 1

    @pytest.mark.asyncio
    async def test_clear_stats_keeps_key_count(self, cache: CacheModule) -> None:
        await cache.set("a", 1)
        await cache.get("a")
        cache.clear_stats()
        stats = cache.get_stats()
        assert stats["hits"] == 0
        assert stats["key_count"] == 1

    @pytest.mark.asyncio
    async def test_events(self, cache: CacheModule) -> None:
        topics: list[str] = []
        cache.events.subscribe("*", lambda e: topics.append(e.topic))
        await cache.set("a", 1)
        await cache.get("a")
        await cache.get("missing")
        await cache.delete("a")
        await cache.flush()
        assert topics == ["cache:set", "cache:hit", "cache:miss", "cache:delete", "cache:flushed"]

    @pytest.mark.asyncio
    async def test_expiry_is_reported_as_eviction(self, cache: CacheModule, clock: Any) -> None:
        evicted: list[Event] = []
        cache.events.subscribe("cache:evicted", evicted.append)
        await cache.set("a", 1, ttl=5)
        clock.advance(5)
        assert await cache.get("a") is None
        assert cache.get_stats()["evictions"] == 1
        assert evicted[0].payload["reason"] == "expired"


class TestEviction:
    @pytest.mark.asyncio
    async def test_oldest_batch_evicted_when_full(self, clock: Any) -> None:
        cache = CacheModule(
            {"type": "memory", "max_entries": 200, "eviction_batch_size": 100, "key_prefix": ""},
            clock=clock,
        )
        await cache.connect()
        for i in range(201):
            await cache.set(f"key_{i}", i)

        assert all(v is None for v in await cache.mget([f"key_{i}" for i in range(100)]))
        assert await cache.get("key_100") == 100
        assert await cache.get("key_200") == 200
        assert cache.get_stats()["evictions"] == 100

    @pytest.mark.asyncio
    async def test_sweeps_remove_whole_batches(self, clock: Any) -> None:
        n = 200
        cache = CacheModule({"type": "memory", "max_entries": n, "eviction_batch_size": 100}, clock=clock)
        await cache.connect()
        for i in range(n + 1000):
            await cache.set(f"key_{i}", i)

        driver = cache.driver
        assert isinstance(driver, MemoryCacheDriver)
        evictions = cache.get_stats()["evictions"]
        assert evictions > 0
        assert evictions % 100 == 0
        assert len(driver) <= n
        assert len(driver) <= n + 900

    @pytest.mark.asyncio
    async def test_overwrite_does_not_evict(self, clock: Any) -> None:
        cache = CacheModule({"type": "memory", "max_entries": 2, "eviction_batch_size": 1}, clock=clock)
        await cache.connect()
        await cache.set("a", 1)
        await cache.set("b", 2)
        await cache.set("b", 3)
        assert await cache.mget(["a", "b"]) == [1, 3]


class TestBatch:
    @pytest.mark.asyncio
    async def test_sequential_batch_on_memory(self, cache: CacheModule) -> None:
        results = await cache.batch(
            [
                BatchOperation("set", "a", 1),
                {"type": "get", "key": "a"},
                BatchOperation("set", "b", 2, ttl=10**6),
                BatchOperation("delete", "a"),
                BatchOperation("get", "a"),
            ]
        )
        assert results[0] is True
        assert results[1] == 1
        assert isinstance(results[2], ConfigurationError)
        assert results[3:] == [True, None]

    @pytest.mark.asyncio
    async def test_unknown_operation_rejected_up_front(self, cache: CacheModule) -> None:
        with pytest.raises(OperationError):
            await cache.batch([BatchOperation("set", "a", 1), BatchOperation("incr", "a")])
        assert await cache.get("a") is None


class TestStructures:
    @pytest.mark.asyncio
    async def test_structures_unsupported_on_memory(self, cache: CacheModule) -> None:
        with pytest.raises(UnsupportedOperationError):
            await cache.lists.push("queue", 1)
        with pytest.raises(UnsupportedOperationError):
            await cache.sets.add("tags", "a")
        with pytest.raises(UnsupportedOperationError):
            await cache.hashes.set("user:1", "name", "Ada")
        with pytest.raises(UnsupportedOperationError):
            await cache.sorted_sets.add("board", 1.0, "ada")


class TestGeneratedFiles:
    def test_get_files(self) -> None:
        cache = CacheModule({"type": "redis", "password": "hunter2", "key_prefix": "shop"})
        files = cache.get_files(ModuleContext(project_name="shop"))
        assert [f.path for f in files] == ["shop/cache/service.py", "config/cache.yaml"]
        assert all("hunter2" not in f.content for f in files)
        assert "key_prefix: shop" in files[1].content
