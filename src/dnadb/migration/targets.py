"""
Backends a migration engine runs against.

A target executes one direction of a migration and records the outcome in
a single unit of work: a transaction for SQL, a plain sequence of
operations for document stores (which have no multi-document transactions
here). Script callables receive the unit's session: the open
:class:`Transaction` for SQL, the :class:`NoSQLModule` for documents.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Mapping
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from dnadb.errors import OperationError
from dnadb.migration.models import DatabaseType, Migration, MigrationScript
from dnadb.sql.config import SQLDatabaseType
from dnadb.sql.identifiers import validate_sql_identifier

if TYPE_CHECKING:
    from dnadb.nosql.module import NoSQLModule
    from dnadb.sql.module import SQLModule
    from dnadb.sql.transaction import Transaction

logger = logging.getLogger(__name__)


def _affected(value: Any) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) else 0


class MigrationTarget(ABC):
    """Executes migration scripts and persists the applied set."""

    def __init__(self, module: Any, table: str = "migrations", timeout: float | None = None):
        self.module = module
        self.table = table
        self.timeout = timeout

    @property
    @abstractmethod
    def database_type(self) -> DatabaseType: ...

    @abstractmethod
    async def initialize(self) -> None:
        """Create the applied-migrations store when missing."""

    @abstractmethod
    async def load_applied(self) -> list[str]:
        """Applied migration ids in version order."""

    @abstractmethod
    def unit(self) -> AbstractAsyncContextManager[Any]:
        """One unit of work; yields the session passed to the methods below."""

    @abstractmethod
    async def execute(self, script: MigrationScript, migration: Migration, session: Any) -> int: ...

    @abstractmethod
    async def record_applied(self, migration: Migration, session: Any) -> None: ...

    @abstractmethod
    async def record_rolled_back(self, migration: Migration, session: Any) -> None: ...

    @abstractmethod
    async def evaluate(self, query: Any) -> Any:
        """Run a validation query and return its scalar result."""

    async def apply(self, migration: Migration) -> int:
        async with self.unit() as session:
            affected = await self.execute(migration.up, migration, session)
            await self.record_applied(migration, session)
        return affected

    async def revert(self, migration: Migration) -> int:
        async with self.unit() as session:
            affected = await self.execute(migration.down, migration, session)
            await self.record_rolled_back(migration, session)
        return affected


# =============================================================================
# SQL
# =============================================================================

_SQL_DATABASE_TYPES = {
    SQLDatabaseType.POSTGRESQL: DatabaseType.POSTGRESQL,
    SQLDatabaseType.MYSQL: DatabaseType.MYSQL,
    SQLDatabaseType.SQLITE: DatabaseType.SQLITE,
}


class SQLMigrationTarget(MigrationTarget):
    """Runs each script and its applied-row change in one transaction."""

    module: SQLModule

    def __init__(self, module: SQLModule, table: str = "migrations", timeout: float | None = None):
        super().__init__(module, validate_sql_identifier(table, "migrations table"), timeout)
        self._ready = False

    @property
    def database_type(self) -> DatabaseType:
        return _SQL_DATABASE_TYPES[self.module.config.type]

    async def initialize(self) -> None:
        if self._ready:
            return
        date_type = self.module.dialect.column_type("date")
        await self.module.query(
            f"CREATE TABLE IF NOT EXISTS {self.table} ("
            "id VARCHAR(255) PRIMARY KEY, "
            "version VARCHAR(32) NOT NULL, "
            "name VARCHAR(255) NOT NULL, "
            f"applied_at {date_type} NOT NULL)"
        )
        self._ready = True

    async def load_applied(self) -> list[str]:
        await self.initialize()
        result = await self.module.query(f"SELECT id FROM {self.table} ORDER BY version")
        return [row["id"] for row in result.rows]

    @asynccontextmanager
    async def unit(self) -> AsyncIterator[Transaction]:
        await self.initialize()
        async with self.module.transaction() as tx:
            if self.timeout and self.module.config.type == SQLDatabaseType.POSTGRESQL:
                await tx.query(f"SET LOCAL statement_timeout = {int(self.timeout * 1000)}")
            yield tx

    async def execute(self, script: MigrationScript, migration: Migration, session: Transaction) -> int:
        if script.sql.strip():
            return await session.execute_script(script.sql)
        if script.script is not None:
            return _affected(await script.script(session))
        if script.nosql:
            raise OperationError(f"Migration {migration.label} has document operations but targets SQL")
        return 0

    async def record_applied(self, migration: Migration, session: Transaction) -> None:
        await session.query(
            f"INSERT INTO {self.table} (id, version, name, applied_at) VALUES (?, ?, ?, ?)",
            [migration.id, migration.version, migration.name, datetime.now(UTC)],
        )

    async def record_rolled_back(self, migration: Migration, session: Transaction) -> None:
        await session.query(f"DELETE FROM {self.table} WHERE id = ?", [migration.id])

    async def evaluate(self, query: Any) -> Any:
        if not isinstance(query, str):
            raise OperationError(f"SQL validation queries must be strings, got {type(query).__name__}")
        return (await self.module.query(query)).scalar()


# =============================================================================
# Documents
# =============================================================================


class DocumentMigrationTarget(MigrationTarget):
    """
    Runs structured collection operations.

    Each operation is a mapping such as
    ``{"collection": "users", "op": "update_many", "filter": {...}, "update": {...}}``.
    Supported ops: insert_one, insert_many, update_one, update_many,
    replace_one, delete_one, delete_many, create_index, drop_index, drop.
    """

    module: NoSQLModule

    @property
    def database_type(self) -> DatabaseType:
        return DatabaseType(self.module.config.type.value)

    async def initialize(self) -> None:
        if not self.module.is_connected:
            raise OperationError("NoSQL module must be connected before running migrations")

    async def load_applied(self) -> list[str]:
        await self.initialize()
        collection = self.module.collection(self.table)
        id_field = self.module.id_field
        page = self.module.config.max_limit
        records: list[dict[str, Any]] = []
        while True:
            batch = await collection.find({}, {"sort": {"version": 1}, "skip": len(records), "limit": page})
            records.extend(batch)
            if len(batch) < page:
                break
        return [record[id_field] for record in records]

    @asynccontextmanager
    async def unit(self) -> AsyncIterator[NoSQLModule]:
        await self.initialize()
        yield self.module

    async def execute(self, script: MigrationScript, migration: Migration, session: NoSQLModule) -> int:
        if script.nosql:
            affected = 0
            for operation in script.nosql:
                affected += await self._run_operation(session, operation)
            return affected
        if script.script is not None:
            return _affected(await script.script(session))
        if script.sql.strip():
            raise OperationError(f"Migration {migration.label} has SQL but targets a document store")
        return 0

    async def _run_operation(self, module: NoSQLModule, operation: Mapping[str, Any]) -> int:
        try:
            collection = module.collection(operation["collection"])
            op = operation["op"]
        except KeyError as e:
            raise OperationError(f"Document migration operation is missing {e}") from e

        filter_ = operation.get("filter") or {}
        match op:
            case "insert_one":
                await collection.insert_one(operation["document"])
                return 1
            case "insert_many":
                return len(await collection.insert_many(operation["documents"]))
            case "update_one":
                return await collection.update_one(filter_, operation["update"], operation.get("upsert", False))
            case "update_many":
                return await collection.update_many(filter_, operation["update"], operation.get("upsert", False))
            case "replace_one":
                return await collection.replace_one(filter_, operation["document"], operation.get("upsert", False))
            case "delete_one":
                return await collection.delete_one(filter_)
            case "delete_many":
                return await collection.delete_many(filter_)
            case "create_index":
                await collection.create_index(operation["fields"], operation.get("options"))
                return 0
            case "drop_index":
                await collection.drop_index(operation["name"])
                return 0
            case "drop":
                await collection.drop()
                return 0
        raise OperationError(f"Unknown document migration operation: {op}")

    async def record_applied(self, migration: Migration, session: NoSQLModule) -> None:
        await session.collection(self.table).insert_one(
            {
                session.id_field: migration.id,
                "version": migration.version,
                "name": migration.name,
                "applied_at": datetime.now(UTC).isoformat(),
            }
        )

    async def record_rolled_back(self, migration: Migration, session: NoSQLModule) -> None:
        await session.collection(self.table).delete_one({session.id_field: migration.id})

    async def evaluate(self, query: Any) -> Any:
        """``{"collection": c, "op": "count" | "find_one" | "distinct", "filter": ..., "field": ...}``."""
        if not isinstance(query, Mapping):
            raise OperationError("Document validation queries must be mappings")
        collection = self.module.collection(query["collection"])
        filter_ = query.get("filter") or {}
        match query.get("op", "count"):
            case "count":
                return await collection.count(filter_)
            case "find_one":
                return await collection.find_one(filter_)
            case "distinct":
                return await collection.distinct(query["field"], filter_)
        raise OperationError(f"Unknown validation query op: {query.get('op')}")
