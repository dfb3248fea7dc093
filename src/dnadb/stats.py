"""
Operation statistics surfaced by every module.

Example:
    stats = SQLStats()
    stats.record_success(12.5)
    stats.slow_queries += 1
    snapshot = stats.snapshot()
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, fields
from typing import Any


@dataclass
class RunningAverage:
    """Incremental mean without keeping samples."""

    count: int = 0
    mean: float = 0.0

    def add(self, value: float) -> float:
        self.count += 1
        self.mean += (value - self.mean) / self.count
        return self.mean

    def reset(self) -> None:
        self.count = 0
        self.mean = 0.0


@dataclass
class OperationStats:
    """Counters shared by the SQL and NoSQL modules. Times are milliseconds."""

    total_operations: int = 0
    successful_operations: int = 0
    failed_operations: int = 0
    average_operation_time: float = 0.0
    last_error: str | None = None
    _timing: RunningAverage = field(default_factory=RunningAverage, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record_success(self, duration_ms: float) -> None:
        with self._lock:
            self.total_operations += 1
            self.successful_operations += 1
            self.average_operation_time = self._timing.add(duration_ms)

    def record_failure(self, error: BaseException, duration_ms: float) -> None:
        with self._lock:
            self.total_operations += 1
            self.failed_operations += 1
            self.average_operation_time = self._timing.add(duration_ms)
            self.last_error = f"{type(error).__name__}: {error}"

    def snapshot(self) -> dict[str, Any]:
        """Public counters as a plain dict."""
        with self._lock:
            return {f.name: getattr(self, f.name) for f in fields(self) if not f.name.startswith("_")}


@dataclass
class SQLStats(OperationStats):
    slow_queries: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    active_connections: int = 0
    pool_utilization: float = 0.0


@dataclass
class NoSQLStats(OperationStats):
    cache_hits: int = 0
    cache_misses: int = 0
    documents_processed: int = 0


@dataclass
class CacheStats:
    """Cache counters. ``hit_rate`` is a percentage, average times are milliseconds."""

    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    evictions: int = 0
    errors: int = 0
    hit_rate: float = 0.0
    avg_get_time: float = 0.0
    avg_set_time: float = 0.0
    key_count: int = 0
    last_error: str | None = None
    _get_timing: RunningAverage = field(default_factory=RunningAverage, repr=False)
    _set_timing: RunningAverage = field(default_factory=RunningAverage, repr=False)

    def record_get(self, hit: bool, duration_ms: float) -> None:
        if hit:
            self.hits += 1
        else:
            self.misses += 1
        total = self.hits + self.misses
        self.hit_rate = (self.hits / total) * 100 if total else 0.0
        self.avg_get_time = self._get_timing.add(duration_ms)

    def record_set(self, success: bool, duration_ms: float) -> None:
        if success:
            self.sets += 1
        self.avg_set_time = self._set_timing.add(duration_ms)

    def record_error(self, error: BaseException) -> None:
        self.errors += 1
        self.last_error = f"{type(error).__name__}: {error}"

    def snapshot(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self) if not f.name.startswith("_")}
