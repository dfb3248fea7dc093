"""Cache module configuration."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from dnadb.errors import ConfigurationError


class CacheType(StrEnum):
    MEMORY = "memory"
    REDIS = "redis"


class EvictionPolicy(StrEnum):
    LRU = "lru"
    LFU = "lfu"
    FIFO = "fifo"
    RANDOM = "random"
    TTL = "ttl"
    NO_EVICTION = "no-eviction"


class CacheConfig(BaseModel):
    """Settings for :class:`CacheModule`. TTLs are seconds, 0 meaning no expiry.

    ``eviction_policy`` is informational: Redis applies its server-side
    ``maxmemory-policy``, and the memory store always evicts in insertion order.
    """

    model_config = ConfigDict(frozen=True)

    type: CacheType = CacheType.MEMORY
    host: str = "localhost"
    port: int = 6379
    url: str | None = None
    password: str | None = None
    database: int = Field(default=0, ge=0)

    max_connections: int = Field(default=10, ge=1)
    min_connections: int = Field(default=2, ge=0)
    connection_timeout: float = Field(default=5.0, gt=0)

    default_ttl: int = 3600
    max_ttl: int = 86400
    eviction_policy: EvictionPolicy = EvictionPolicy.LRU
    max_entries: int = Field(default=10000, ge=1)
    eviction_batch_size: int = 100

    key_prefix: str = "app"
    key_separator: str = ":"

    enable_compression: bool = True
    compression_threshold: int = Field(default=1024, ge=0)
    enable_pipelining: bool = True
    pipeline_max_size: int = Field(default=100, ge=1)

    log_level: str = "info"

    @model_validator(mode="after")
    def _check_consistency(self) -> CacheConfig:
        if self.default_ttl < 0:
            raise ConfigurationError(f"default_ttl must be non-negative, got {self.default_ttl}")
        if self.max_ttl < self.default_ttl:
            raise ConfigurationError(
                f"default_ttl ({self.default_ttl}) cannot exceed max_ttl ({self.max_ttl})"
            )
        if self.min_connections > self.max_connections:
            raise ConfigurationError(
                f"min_connections ({self.min_connections}) cannot be greater than "
                f"max_connections ({self.max_connections})"
            )
        if self.eviction_batch_size < 1:
            raise ConfigurationError(
                f"eviction_batch_size must be at least 1, got {self.eviction_batch_size}"
            )
        return self

    def redis_url(self) -> str:
        if self.url:
            return self.url
        auth = f":{self.password}@" if self.password else ""
        return f"redis://{auth}{self.host}:{self.port}/{self.database}"
