"""
List, set, hash and sorted-set operations.

Each receiver translates its methods into native driver commands through
:meth:`CacheModule.structure_command`, which namespaces keys and raises
``UnsupportedOperationError`` for drivers without native structures.
Members and hash values are stored as JSON text.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from dnadb.cache.module import CacheModule


def encode_member(value: Any) -> str:
    return json.dumps(value, default=str, sort_keys=True, separators=(",", ":"))


def decode_member(raw: str | None) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


class _StructureOps:
    kind = ""

    def __init__(self, cache: CacheModule):
        self._cache = cache

    async def _run(self, command: str, *args: Any, **kwargs: Any) -> Any:
        return await self._cache.structure_command(self.kind, command, *args, **kwargs)

    def _key(self, key: str) -> str:
        return self._cache.full_key(key)


class ListOps(_StructureOps):
    kind = "list"

    async def push(self, key: str, *values: Any) -> int:
        """Append to the tail. Returns the new length."""
        return await self._run("rpush", self._key(key), *(encode_member(v) for v in values))

    async def pop(self, key: str) -> Any:
        return decode_member(await self._run("rpop", self._key(key)))

    async def shift(self, key: str) -> Any:
        return decode_member(await self._run("lpop", self._key(key)))

    async def unshift(self, key: str, *values: Any) -> int:
        """Prepend to the head, keeping ``values`` in the given order."""
        return await self._run("lpush", self._key(key), *(encode_member(v) for v in reversed(values)))

    async def length(self, key: str) -> int:
        return await self._run("llen", self._key(key))

    async def range(self, key: str, start: int, stop: int) -> list[Any]:
        return [decode_member(v) for v in await self._run("lrange", self._key(key), start, stop)]

    async def trim(self, key: str, start: int, stop: int) -> bool:
        return bool(await self._run("ltrim", self._key(key), start, stop))

    async def remove_at(self, key: str, index: int) -> bool:
        full_key = self._key(key)
        size = await self._run("llen", full_key)
        if index < 0:
            index += size
        if not 0 <= index < size:
            return False
        marker = f"__removed__:{uuid.uuid4().hex}"
        await self._run("lset", full_key, index, marker)
        return await self._run("lrem", full_key, 1, marker) > 0


class SetOps(_StructureOps):
    kind = "set"

    async def add(self, key: str, *members: Any) -> int:
        return await self._run("sadd", self._key(key), *(encode_member(m) for m in members))

    async def remove(self, key: str, *members: Any) -> int:
        return await self._run("srem", self._key(key), *(encode_member(m) for m in members))

    async def has(self, key: str, member: Any) -> bool:
        return bool(await self._run("sismember", self._key(key), encode_member(member)))

    async def members(self, key: str) -> list[Any]:
        return [decode_member(m) for m in await self._run("smembers", self._key(key))]

    async def size(self, key: str) -> int:
        return await self._run("scard", self._key(key))

    async def union(self, *keys: str) -> list[Any]:
        return [decode_member(m) for m in await self._run("sunion", [self._key(k) for k in keys])]

    async def intersection(self, *keys: str) -> list[Any]:
        return [decode_member(m) for m in await self._run("sinter", [self._key(k) for k in keys])]

    async def difference(self, key: str, other: str) -> list[Any]:
        return [decode_member(m) for m in await self._run("sdiff", [self._key(key), self._key(other)])]


class HashOps(_StructureOps):
    kind = "hash"

    async def set(self, key: str, field: str, value: Any) -> bool:
        await self._run("hset", self._key(key), field, encode_member(value))
        return True

    async def get(self, key: str, field: str) -> Any:
        return decode_member(await self._run("hget", self._key(key), field))

    async def mset(self, key: str, fields: Mapping[str, Any]) -> bool:
        if not fields:
            return True
        await self._run("hset", self._key(key), mapping={f: encode_member(v) for f, v in fields.items()})
        return True

    async def mget(self, key: str, *fields: str) -> list[Any]:
        return [decode_member(v) for v in await self._run("hmget", self._key(key), list(fields))]

    async def get_all(self, key: str) -> dict[str, Any]:
        raw = await self._run("hgetall", self._key(key))
        return {f: decode_member(v) for f, v in raw.items()}

    async def delete(self, key: str, *fields: str) -> int:
        return await self._run("hdel", self._key(key), *fields)

    async def exists(self, key: str, field: str) -> bool:
        return bool(await self._run("hexists", self._key(key), field))

    async def keys(self, key: str) -> list[str]:
        return list(await self._run("hkeys", self._key(key)))

    async def values(self, key: str) -> list[Any]:
        return [decode_member(v) for v in await self._run("hvals", self._key(key))]

    async def length(self, key: str) -> int:
        return await self._run("hlen", self._key(key))

    async def increment(self, key: str, field: str, by: int | float = 1) -> int | float:
        if isinstance(by, int):
            return await self._run("hincrby", self._key(key), field, by)
        return float(await self._run("hincrbyfloat", self._key(key), field, by))


class SortedSetOps(_StructureOps):
    kind = "sorted_set"

    async def add(self, key: str, score: float, member: Any) -> int:
        return await self._run("zadd", self._key(key), {encode_member(member): score})

    async def add_multiple(self, key: str, members: Sequence[tuple[float, Any]]) -> int:
        """Add ``(score, member)`` pairs."""
        if not members:
            return 0
        return await self._run("zadd", self._key(key), {encode_member(m): s for s, m in members})

    async def remove(self, key: str, *members: Any) -> int:
        return await self._run("zrem", self._key(key), *(encode_member(m) for m in members))

    async def score(self, key: str, member: Any) -> float | None:
        return await self._run("zscore", self._key(key), encode_member(member))

    async def rank(self, key: str, member: Any) -> int | None:
        return await self._run("zrank", self._key(key), encode_member(member))

    async def range(
        self, key: str, start: int, stop: int, with_scores: bool = False
    ) -> list[Any] | list[tuple[Any, float]]:
        raw = await self._run("zrange", self._key(key), start, stop, withscores=with_scores)
        if with_scores:
            return [(decode_member(m), float(s)) for m, s in raw]
        return [decode_member(m) for m in raw]

    async def range_by_score(
        self,
        key: str,
        min: float | str,
        max: float | str,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Any]:
        kwargs: dict[str, Any] = {}
        if limit is not None:
            kwargs = {"start": offset, "num": limit}
        raw = await self._run("zrangebyscore", self._key(key), min, max, **kwargs)
        return [decode_member(m) for m in raw]

    async def count(self, key: str, min: float | str = "-inf", max: float | str = "+inf") -> int:
        return await self._run("zcount", self._key(key), min, max)

    async def increment_score(self, key: str, member: Any, by: float) -> float:
        return float(await self._run("zincrby", self._key(key), by, encode_member(member)))
