"""
TTL result cache used by the SQL and NoSQL modules.

Entries live in insertion order. Once the cache grows past ``capacity`` the
oldest ``prune_count`` entries are dropped in one sweep. Invalidation is
coarse: a whole table or collection at a time, identified by key prefix.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

DEFAULT_CAPACITY = 1000
DEFAULT_PRUNE_COUNT = 100


@dataclass
class _Entry:
    value: Any
    stored_at: float


class QueryCache:
    def __init__(
        self,
        ttl: float,
        *,
        capacity: int = DEFAULT_CAPACITY,
        prune_count: int = DEFAULT_PRUNE_COUNT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self.capacity = capacity
        self.prune_count = prune_count
        self._clock = clock
        self._entries: dict[str, _Entry] = {}

    def get(self, key: str) -> tuple[bool, Any]:
        """Return ``(found, value)``. Expired entries are dropped on read."""
        entry = self._entries.get(key)
        if entry is None:
            return False, None
        if self._clock() - entry.stored_at >= self.ttl:
            del self._entries[key]
            return False, None
        return True, entry.value

    def set(self, key: str, value: Any) -> None:
        self._entries.pop(key, None)
        self._entries[key] = _Entry(value=value, stored_at=self._clock())
        if len(self._entries) > self.capacity:
            for old_key in list(self._entries)[: self.prune_count]:
                del self._entries[old_key]

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every entry whose key starts with ``prefix``."""
        doomed = [k for k in self._entries if k.startswith(prefix)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key)[0]
