"""
Structured caching.

This package provides:
- CacheModule (namespaced keys, TTLs, batches, stats, events)
- ListOps, SetOps, HashOps, SortedSetOps (native structures on Redis)
- Memory and Redis drivers

Example usage:
    >>> from dnadb.cache import CacheModule
    >>> cache = CacheModule({"type": "memory", "default_ttl": 60})
    >>> await cache.connect()
    >>> await cache.mset({"a": 1, "b": 2})
    >>> await cache.mget(["a", "b", "c"])
    [1, 2, None]
"""

from dnadb.cache.codec import ValueCodec
from dnadb.cache.config import CacheConfig, CacheType, EvictionPolicy
from dnadb.cache.drivers import (
    CacheDriver,
    Command,
    MemoryCacheDriver,
    RedisCacheDriver,
    create_cache_driver,
)
from dnadb.cache.module import BatchOperation, CacheModule
from dnadb.cache.structures import HashOps, ListOps, SetOps, SortedSetOps

__all__ = [
    # Config
    "CacheConfig",
    "CacheType",
    "EvictionPolicy",
    # Drivers
    "CacheDriver",
    "Command",
    "MemoryCacheDriver",
    "RedisCacheDriver",
    "ValueCodec",
    "create_cache_driver",
    # Module
    "BatchOperation",
    "CacheModule",
    # Structures
    "HashOps",
    "ListOps",
    "SetOps",
    "SortedSetOps",
]
