"""SQL module configuration."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from dnadb.errors import ConfigurationError
from dnadb.sql.identifiers import is_valid_identifier


class SQLDatabaseType(StrEnum):
    """Supported relational backends."""

    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    SQLITE = "sqlite"


class IsolationLevel(StrEnum):
    """Transaction isolation levels, rendered verbatim into SQL."""

    READ_UNCOMMITTED = "READ UNCOMMITTED"
    READ_COMMITTED = "READ COMMITTED"
    REPEATABLE_READ = "REPEATABLE READ"
    SERIALIZABLE = "SERIALIZABLE"


class TimestampFields(BaseModel):
    """Column names used for automatic timestamps.

    ``deleted`` switches model deletes to soft deletes when set.
    """

    model_config = ConfigDict(frozen=True)

    created: str = "created_at"
    updated: str = "updated_at"
    deleted: str | None = None


class SQLConfig(BaseModel):
    """Connection, pool, query and ORM settings for :class:`SQLModule`."""

    model_config = ConfigDict(frozen=True, use_enum_values=False)

    type: SQLDatabaseType = SQLDatabaseType.POSTGRESQL
    host: str = "localhost"
    port: int | None = None
    database: str = ""
    username: str | None = None
    password: str | None = None
    filename: str | None = Field(default=None, description="SQLite database file or ':memory:'")

    # Connection pool
    pool_min: int = Field(default=2, ge=0)
    pool_max: int = Field(default=10, ge=1)
    acquire_timeout: float = Field(default=30.0, ge=0, description="Seconds to wait for a pooled connection")
    connection_timeout: float = Field(default=5.0, gt=0)

    # Queries
    enable_query_logging: bool = True
    slow_query_threshold: float = Field(default=1.0, ge=0, description="Seconds")
    default_limit: int = Field(default=100, ge=1)
    max_limit: int = Field(default=1000, ge=1)
    default_isolation_level: IsolationLevel = IsolationLevel.READ_COMMITTED

    # ORM
    enable_orm: bool = True
    enable_timestamps: bool = True
    timestamp_fields: TimestampFields = Field(default_factory=TimestampFields)

    # Migrations
    enable_migrations: bool = True
    migrations_table: str = "migrations"

    # Query cache
    enable_query_cache: bool = True
    query_cache_ttl: float = Field(default=60.0, ge=0, description="Seconds")

    log_level: str = "info"

    @model_validator(mode="after")
    def _check_consistency(self) -> SQLConfig:
        if not self.database:
            raise ConfigurationError("Database name is required")
        if self.type == SQLDatabaseType.SQLITE and not self.filename:
            raise ConfigurationError("Filename is required for SQLite")
        if self.pool_min > self.pool_max:
            raise ConfigurationError(
                f"pool_min ({self.pool_min}) cannot be greater than pool_max ({self.pool_max})"
            )
        if self.default_limit > self.max_limit:
            raise ConfigurationError(
                f"default_limit ({self.default_limit}) cannot exceed max_limit ({self.max_limit})"
            )
        names = [self.migrations_table, self.timestamp_fields.created, self.timestamp_fields.updated]
        if self.timestamp_fields.deleted:
            names.append(self.timestamp_fields.deleted)
        for name in names:
            if not is_valid_identifier(name):
                raise ConfigurationError(f"Invalid SQL identifier in config: '{name}'")
        return self

    @property
    def effective_port(self) -> int | None:
        if self.port is not None:
            return self.port
        return {SQLDatabaseType.POSTGRESQL: 5432, SQLDatabaseType.MYSQL: 3306}.get(self.type)
