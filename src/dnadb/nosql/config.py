"""NoSQL module configuration."""

from __future__ import annotations

from enum import StrEnum
from urllib.parse import quote_plus

from pydantic import BaseModel, ConfigDict, Field, model_validator

from dnadb.errors import ConfigurationError


class NoSQLDatabaseType(StrEnum):
    MONGODB = "mongodb"
    DYNAMODB = "dynamodb"
    MEMORY = "memory"


class NoSQLConfig(BaseModel):
    """Connection, pool and query settings for :class:`NoSQLModule`. Timeouts are seconds."""

    model_config = ConfigDict(frozen=True)

    type: NoSQLDatabaseType = NoSQLDatabaseType.MONGODB
    connection_string: str | None = None
    host: str = "localhost"
    port: int | None = None
    database: str = ""
    username: str | None = None
    password: str | None = None

    # DynamoDB
    region: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None
    endpoint: str | None = None
    table_prefix: str = ""
    partition_key: str = "_id"

    # Connection
    max_pool_size: int = Field(default=10, ge=1)
    min_pool_size: int = Field(default=2, ge=0)
    connection_timeout: float = Field(default=10.0, gt=0)
    socket_timeout: float = Field(default=30.0, gt=0)
    server_selection_timeout: float = Field(default=30.0, gt=0)

    # Queries
    default_limit: int = Field(default=100, ge=1)
    max_limit: int = Field(default=1000, ge=1)
    auto_index: bool = True
    enable_query_cache: bool = True
    query_cache_ttl: float = Field(default=60.0, ge=0)

    log_level: str = "info"

    @model_validator(mode="after")
    def _check_consistency(self) -> NoSQLConfig:
        if not self.database:
            raise ConfigurationError("Database name is required")
        if self.min_pool_size > self.max_pool_size:
            raise ConfigurationError(
                f"min_pool_size ({self.min_pool_size}) cannot be greater than max_pool_size ({self.max_pool_size})"
            )
        if self.default_limit > self.max_limit:
            raise ConfigurationError(
                f"default_limit ({self.default_limit}) cannot exceed max_limit ({self.max_limit})"
            )
        return self

    @property
    def effective_port(self) -> int:
        return self.port or 27017

    def mongo_uri(self) -> str:
        if self.connection_string:
            return self.connection_string
        credentials = ""
        if self.username:
            credentials = quote_plus(self.username)
            if self.password:
                credentials += f":{quote_plus(self.password)}"
            credentials += "@"
        return f"mongodb://{credentials}{self.host}:{self.effective_port}"
