"""
Migration and backup records.

Migrations are immutable once created. Results are produced once per
execution and never mutated after the run that produced them.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class MigrationType(StrEnum):
    CREATE_TABLE = "create_table"
    ALTER_TABLE = "alter_table"
    DROP_TABLE = "drop_table"
    ADD_COLUMN = "add_column"
    DROP_COLUMN = "drop_column"
    ADD_INDEX = "add_index"
    DROP_INDEX = "drop_index"
    SEED_DATA = "seed_data"
    CUSTOM_SQL = "custom_sql"
    CUSTOM_NOSQL = "custom_nosql"


class DatabaseType(StrEnum):
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    SQLITE = "sqlite"
    MONGODB = "mongodb"
    DYNAMODB = "dynamodb"
    REDIS = "redis"
    MEMORY = "memory"


class MigrationStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class BackupType(StrEnum):
    FULL = "full"
    INCREMENTAL = "incremental"
    DIFFERENTIAL = "differential"
    TRANSACTION_LOG = "transaction_log"
    SCHEMA_ONLY = "schema_only"
    DATA_ONLY = "data_only"


class ConditionOperator(StrEnum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"
    EXISTS = "exists"


ScriptCallable = Callable[[Any], Awaitable[Any]]


@dataclass(frozen=True)
class MigrationScript:
    """
    One direction of a migration.

    The first non-empty part runs: ``sql`` (a statement script), ``nosql``
    (a list of structured collection operations) or ``script`` (an async
    callable receiving the target's module).
    """

    sql: str = ""
    nosql: tuple[dict[str, Any], ...] = ()
    script: ScriptCallable | None = None

    @property
    def is_empty(self) -> bool:
        return not (self.sql.strip() or self.nosql or self.script)

    def to_dict(self) -> dict[str, Any]:
        return {"sql": self.sql, "nosql": [dict(op) for op in self.nosql]}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> MigrationScript:
        data = data or {}
        nosql = data.get("nosql") or ()
        if isinstance(nosql, dict):
            nosql = [nosql]
        return cls(sql=data.get("sql") or "", nosql=tuple(dict(op) for op in nosql))


@dataclass(frozen=True)
class ValidationRule:
    """A pre/post-condition: ``query`` result compared to ``expected_result``."""

    name: str
    query: Any
    operator: ConditionOperator = ConditionOperator.EXISTS
    expected_result: Any = None
    description: str = ""

    def evaluate(self, actual: Any) -> bool:
        expected = self.expected_result
        match self.operator:
            case ConditionOperator.EQUALS:
                return actual == expected
            case ConditionOperator.NOT_EQUALS:
                return actual != expected
            case ConditionOperator.GREATER_THAN:
                return actual is not None and actual > expected
            case ConditionOperator.LESS_THAN:
                return actual is not None and actual < expected
            case ConditionOperator.CONTAINS:
                if actual is None:
                    return False
                if isinstance(actual, list | tuple | set):
                    return expected in actual
                return str(expected) in str(actual)
            case ConditionOperator.EXISTS:
                return actual is not None
        return False

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "query": self.query,
            "operator": self.operator.value,
            "expected_result": self.expected_result,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ValidationRule:
        return cls(
            name=data["name"],
            query=data["query"],
            operator=ConditionOperator(data.get("operator", ConditionOperator.EXISTS)),
            expected_result=data.get("expected_result"),
            description=data.get("description", ""),
        )


@dataclass(frozen=True)
class Migration:
    id: str
    version: str
    name: str
    type: MigrationType
    database_type: DatabaseType
    up: MigrationScript = field(default_factory=MigrationScript)
    down: MigrationScript = field(default_factory=MigrationScript)
    description: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    author: str = "system"
    dependencies: tuple[str, ...] = ()
    data_loss: bool = False
    breaking_changes: bool = False
    tags: tuple[str, ...] = ()
    pre_conditions: tuple[ValidationRule, ...] = ()
    post_conditions: tuple[ValidationRule, ...] = ()

    @property
    def label(self) -> str:
        return f"{self.version}_{self.name}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "version": self.version,
            "name": self.name,
            "description": self.description,
            "type": self.type.value,
            "database_type": self.database_type.value,
            "timestamp": self.timestamp.isoformat(),
            "author": self.author,
            "dependencies": list(self.dependencies),
            "data_loss": self.data_loss,
            "breaking_changes": self.breaking_changes,
            "tags": list(self.tags),
            "up": self.up.to_dict(),
            "down": self.down.to_dict(),
            "pre_conditions": [r.to_dict() for r in self.pre_conditions],
            "post_conditions": [r.to_dict() for r in self.post_conditions],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Migration:
        timestamp = data.get("timestamp")
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
        return cls(
            id=data["id"],
            version=str(data["version"]),
            name=data["name"],
            description=data.get("description") or "",
            type=MigrationType(data.get("type", MigrationType.CUSTOM_SQL)),
            database_type=DatabaseType(data["database_type"]),
            timestamp=timestamp or datetime.now(UTC),
            author=data.get("author") or "system",
            dependencies=tuple(data.get("dependencies") or ()),
            data_loss=bool(data.get("data_loss", False)),
            breaking_changes=bool(data.get("breaking_changes", False)),
            tags=tuple(data.get("tags") or ()),
            up=MigrationScript.from_dict(data.get("up")),
            down=MigrationScript.from_dict(data.get("down")),
            pre_conditions=tuple(ValidationRule.from_dict(r) for r in data.get("pre_conditions") or ()),
            post_conditions=tuple(ValidationRule.from_dict(r) for r in data.get("post_conditions") or ()),
        )


@dataclass(frozen=True)
class MigrationResult:
    migration_id: str
    status: MigrationStatus
    start_time: datetime
    end_time: datetime
    affected_rows: int = 0
    error_message: str | None = None
    rollback_required: bool = False
    dry_run: bool = False

    @property
    def duration_ms(self) -> float:
        return (self.end_time - self.start_time).total_seconds() * 1000

    def to_dict(self) -> dict[str, Any]:
        return {
            "migration_id": self.migration_id,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "duration_ms": self.duration_ms,
            "affected_rows": self.affected_rows,
            "error_message": self.error_message,
            "rollback_required": self.rollback_required,
            "dry_run": self.dry_run,
        }


@dataclass(frozen=True)
class BackupResult:
    id: str
    type: BackupType
    database_type: DatabaseType
    start_time: datetime
    end_time: datetime
    size: int
    location: str
    checksum: str
    compressed: bool
    encrypted: bool
    status: str = "success"
    error_message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def duration_ms(self) -> float:
        return (self.end_time - self.start_time).total_seconds() * 1000

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "database_type": self.database_type.value,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "size": self.size,
            "location": self.location,
            "checksum": self.checksum,
            "compressed": self.compressed,
            "encrypted": self.encrypted,
            "status": self.status,
            "error_message": self.error_message,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackupResult:
        return cls(
            id=data["id"],
            type=BackupType(data["type"]),
            database_type=DatabaseType(data["database_type"]),
            start_time=datetime.fromisoformat(data["start_time"]),
            end_time=datetime.fromisoformat(data["end_time"]),
            size=int(data["size"]),
            location=data["location"],
            checksum=data["checksum"],
            compressed=bool(data["compressed"]),
            encrypted=bool(data["encrypted"]),
            status=data.get("status", "success"),
            error_message=data.get("error_message"),
            metadata=data.get("metadata") or {},
        )


@dataclass(frozen=True)
class MigrationStatusReport:
    total: int
    applied: int
    pending: int
    failed: int
    last_migration: Migration | None = None


@dataclass
class ValidationReport:
    valid: bool = True
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
