"""
SQL module: pooled connections, cached queries, transactions, models and
lightweight versioned migrations over one relational backend.

Usage:
    sql = SQLModule({"type": "sqlite", "database": "app", "filename": "app.db"})
    if await sql.connect():
        users = sql.define_model("user", ModelDefinition(...))
        async with sql.transaction() as tx:
            await users.create({"email": "a@example.com"}, transaction=tx)
"""

from __future__ import annotations

import dataclasses
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from dnadb.config import coerce_config
from dnadb.errors import BackendConnectionError, OperationError
from dnadb.events import EventChannel
from dnadb.generated import GeneratedFile, ModuleContext, render_template
from dnadb.logging import apply_log_level, log_with_context
from dnadb.pool import ConnectionInfo, ConnectionStatus
from dnadb.query_cache import QueryCache
from dnadb.sql.config import IsolationLevel, SQLConfig
from dnadb.sql.drivers import QueryResult, SQLDriver, create_driver, split_statements, statement_command
from dnadb.sql.orm import Model, ModelDefinition, create_table_statements, timestamp_columns
from dnadb.sql.query_builder import QueryBuilder
from dnadb.sql.transaction import Transaction, TransactionStatus
from dnadb.stats import SQLStats

logger = logging.getLogger(__name__)

_CACHEABLE_COMMANDS = frozenset({"SELECT", "WITH"})


@dataclasses.dataclass(frozen=True)
class SQLMigration:
    """A versioned schema change applied through :meth:`SQLModule.migrate`."""

    version: int
    name: str
    up: Callable[[SQLModule], Awaitable[Any]]
    down: Callable[[SQLModule], Awaitable[Any]] | None = None


class SQLModule:
    """Relational data access over one configured backend."""

    def __init__(self, config: SQLConfig | Mapping[str, Any], driver: SQLDriver | None = None):
        self.config = coerce_config(SQLConfig, config)
        self._driver = driver if driver is not None else create_driver(self.config)
        self.dialect = self._driver.dialect
        self.events = EventChannel("sql")
        self.connection_info = ConnectionInfo(backend=self.config.type.value)
        self._stats = SQLStats()
        self._query_cache = QueryCache(self.config.query_cache_ttl)
        self._models: dict[str, Model] = {}
        self._migrations: dict[int, SQLMigration] = {}
        self._transactions: dict[str, Transaction] = {}
        self._migrations_table_ready = False
        apply_log_level(logger, self.config.log_level)

    def __repr__(self) -> str:
        return (
            f"SQLModule(type={self.config.type.value!r}, database={self.config.database!r}, "
            f"status={self.connection_info.status.value!r})"
        )

    # =========================================================================
    # Connection
    # =========================================================================

    @property
    def is_connected(self) -> bool:
        return self._driver.connected

    async def connect(self) -> bool:
        """Open the connection pool. Returns False (and logs) when the backend is unreachable."""
        if self._driver.connected:
            return True
        try:
            await self._driver.connect()
        except BackendConnectionError as e:
            self.connection_info.status = ConnectionStatus.ERROR
            logger.error("Failed to connect to %s database %s: %s", self.config.type, self.config.database, e)
            return False

        self.connection_info.status = ConnectionStatus.CONNECTED
        self.connection_info.created_at = datetime.now(UTC)
        self._refresh_pool_stats()
        logger.info("Connected to %s database %s", self.config.type, self.config.database)
        await self.events.publish(
            "connected", {"connection_id": self.connection_info.id, "backend": self.config.type.value}
        )
        return True

    async def disconnect(self) -> bool:
        """Roll back open transactions and close the pool."""
        for tx in list(self._transactions.values()):
            if tx.is_pending:
                logger.warning("Rolling back open transaction %s on disconnect", tx.id)
                try:
                    await tx.rollback()
                except OperationError as e:
                    logger.warning("Rollback of %s failed during disconnect: %s", tx.id, e)
        try:
            await self._driver.disconnect()
        except Exception as e:
            self.connection_info.status = ConnectionStatus.ERROR
            logger.error("Failed to disconnect from %s: %s", self.config.database, e)
            return False

        self.connection_info.status = ConnectionStatus.DISCONNECTED
        self.connection_info.pool_size = 0
        self._query_cache.clear()
        await self.events.publish("disconnected", {"connection_id": self.connection_info.id})
        return True

    # =========================================================================
    # Queries
    # =========================================================================

    async def query(self, sql: str, params: list[Any] | tuple[Any, ...] | None = None) -> QueryResult:
        """
        Run one statement on a pooled connection.

        SELECT results are served from the query cache when enabled. Any other
        statement clears the whole cache.
        """
        args = list(params or [])
        command = statement_command(sql)
        cacheable = (
            self.config.enable_query_cache and command in _CACHEABLE_COMMANDS and " RETURNING " not in sql.upper()
        )

        cache_key = ""
        if cacheable:
            cache_key = self._cache_key(sql, args)
            found, cached = self._query_cache.get(cache_key)
            if found:
                self._stats.cache_hits += 1
                return dataclasses.replace(cached, rows=[dict(r) for r in cached.rows], cached=True)
            self._stats.cache_misses += 1

        handle = await self._acquire()
        try:
            result = await self._execute(handle, sql, args, in_transaction=False)
        finally:
            await self._release(handle)

        if cacheable:
            self._query_cache.set(cache_key, result)
        elif command not in _CACHEABLE_COMMANDS:
            self._query_cache.clear()
        return result

    def create_query_builder(self, transaction: Transaction | None = None) -> QueryBuilder:
        """New builder bound to this module, or to ``transaction`` when given."""
        return QueryBuilder(
            dialect=self.dialect,
            default_limit=self.config.default_limit,
            max_limit=self.config.max_limit,
            executor=transaction.query if transaction is not None else self.query,
        )

    async def _execute(
        self,
        handle: Any,
        sql: str,
        params: list[Any],
        *,
        in_transaction: bool,
    ) -> QueryResult:
        start = time.perf_counter()
        self.connection_info.active_queries += 1
        try:
            result = await self._driver.execute(handle, sql, params)
        except Exception as e:
            duration_ms = (time.perf_counter() - start) * 1000
            self._stats.record_failure(e, duration_ms)
            log_with_context(
                logger,
                logging.ERROR,
                f"Query failed: {e}",
                sql=sql,
                duration_ms=round(duration_ms, 2),
                in_transaction=in_transaction,
            )
            await self.events.publish("query:failed", {"sql": sql, "params": params, "error": str(e)})
            raise OperationError(f"Query failed: {e}") from e
        finally:
            self.connection_info.active_queries -= 1

        duration_ms = result.duration_ms
        self._stats.record_success(duration_ms)
        self.connection_info.last_query_at = datetime.now(UTC)

        if duration_ms > self.config.slow_query_threshold * 1000:
            self._stats.slow_queries += 1
            log_with_context(
                logger,
                logging.WARNING,
                f"Slow query ({duration_ms:.1f}ms)",
                sql=sql,
                duration_ms=round(duration_ms, 2),
                threshold_ms=self.config.slow_query_threshold * 1000,
            )
        elif self.config.enable_query_logging:
            logger.debug("Query executed in %.1fms: %s", duration_ms, sql)

        await self.events.publish(
            "query:executed",
            {"sql": sql, "duration_ms": duration_ms, "row_count": result.row_count, "in_transaction": in_transaction},
        )
        return result

    async def _execute_script(self, handle: Any, script: str) -> int:
        affected = 0
        for statement in split_statements(script):
            result = await self._execute(handle, statement, [], in_transaction=True)
            affected += max(result.row_count, 0)
        return affected

    # =========================================================================
    # Transactions
    # =========================================================================

    async def begin_transaction(self, isolation_level: IsolationLevel | str | None = None) -> Transaction:
        """Open a transaction on a dedicated pooled connection."""
        level = IsolationLevel(isolation_level) if isolation_level else self.config.default_isolation_level
        handle = await self._acquire()
        try:
            for statement in self.dialect.begin_statements(level):
                await self._execute(handle, statement, [], in_transaction=True)
        except Exception:
            await self._discard(handle)
            raise

        tx = Transaction(self, handle, level)
        self._transactions[tx.id] = tx
        logger.debug("Transaction %s started (%s)", tx.id, level)
        await self.events.publish("transaction:started", {"id": tx.id, "isolation_level": level.value})
        return tx

    @asynccontextmanager
    async def transaction(self, isolation_level: IsolationLevel | str | None = None) -> AsyncIterator[Transaction]:
        """Commit on normal exit, roll back when the block raises."""
        tx = await self.begin_transaction(isolation_level)
        try:
            yield tx
        except BaseException:
            if tx.is_pending:
                await tx.rollback()
            raise
        if tx.is_pending:
            await tx.commit()

    async def _transaction_finished(self, tx: Transaction, *, discard_connection: bool) -> None:
        self._transactions.pop(tx.id, None)
        if discard_connection:
            await self._discard(tx.handle)
        else:
            await self._release(tx.handle)

        if tx.status == TransactionStatus.COMMITTED:
            self._query_cache.clear()
            topic = "transaction:committed"
        else:
            topic = "transaction:rolled_back"
        logger.debug("Transaction %s %s after %.1fms", tx.id, tx.status, tx.duration_ms)
        await self.events.publish(topic, {"id": tx.id, "duration_ms": tx.duration_ms})

    # =========================================================================
    # Models
    # =========================================================================

    async def define_model(self, name: str, definition: ModelDefinition) -> Model:
        """Register a model. Creates its table and indexes when ORM mode is on."""
        if self.config.enable_orm:
            statements = create_table_statements(
                definition,
                self.dialect,
                timestamp_columns(self.config),
                resolve_table=self._resolve_table,
            )
            for statement in statements:
                await self.query(statement)

        model = Model(self, name, definition)
        self._models[name] = model
        logger.info("Defined model %s (table %s)", name, definition.table_name)
        await self.events.publish("model:defined", {"model": name, "table": definition.table_name})
        return model

    def model(self, name: str) -> Model:
        try:
            return self._models[name]
        except KeyError:
            raise OperationError(f"Model '{name}' is not defined") from None

    def _resolve_table(self, model_name: str) -> tuple[str, str]:
        model = self._models.get(model_name)
        if model is None:
            return model_name, "id"
        return model.definition.table_name, model.definition.primary_key

    # =========================================================================
    # Migrations
    # =========================================================================

    def register_migration(self, migration: SQLMigration) -> None:
        if migration.version in self._migrations:
            raise OperationError(f"Migration version {migration.version} is already registered")
        self._migrations[migration.version] = migration

    async def applied_versions(self) -> set[int]:
        await self._ensure_migrations_table()
        result = await self.query(f"SELECT version FROM {self.config.migrations_table}")
        return {int(row["version"]) for row in result.rows}

    async def migrate(self, direction: str = "up", target: int | None = None) -> list[SQLMigration]:
        """
        Apply or revert registered migrations.

        ``up`` applies pending migrations in version order up to and
        including ``target``. ``down`` reverts newest first down to and
        including ``target``, or one step when ``target`` is None.
        """
        if not self.config.enable_migrations:
            raise OperationError("Migrations are disabled for this module")
        if direction not in ("up", "down"):
            raise OperationError(f"Unknown migration direction '{direction}'")

        applied = await self.applied_versions()
        table = self.config.migrations_table
        done: list[SQLMigration] = []

        if direction == "up":
            pending = sorted(
                (m for v, m in self._migrations.items() if v not in applied and (target is None or v <= target)),
                key=lambda m: m.version,
            )
            for migration in pending:
                logger.info("Applying migration %s_%s", migration.version, migration.name)
                await migration.up(self)
                await self.query(
                    f"INSERT INTO {table} (version, name, applied_at) VALUES (?, ?, ?)",
                    [migration.version, migration.name, datetime.now(UTC)],
                )
                done.append(migration)
        else:
            candidates = sorted((v for v in applied if target is None or v >= target), reverse=True)
            if target is None:
                candidates = candidates[:1]
            for version in candidates:
                migration = self._migrations.get(version)
                if migration is None or migration.down is None:
                    raise OperationError(f"Migration {version} cannot be reverted: no down step registered")
                logger.info("Reverting migration %s_%s", migration.version, migration.name)
                await migration.down(self)
                await self.query(f"DELETE FROM {table} WHERE version = ?", [version])
                done.append(migration)
        return done

    async def _ensure_migrations_table(self) -> None:
        if self._migrations_table_ready:
            return
        await self.query(
            f"CREATE TABLE IF NOT EXISTS {self.config.migrations_table} ("
            "version BIGINT PRIMARY KEY, "
            "name VARCHAR(255) NOT NULL, "
            f"applied_at {self.dialect.column_type('date')} NOT NULL)"
        )
        self._migrations_table_ready = True

    # =========================================================================
    # Stats, cache and generated files
    # =========================================================================

    def get_stats(self) -> dict[str, Any]:
        self._refresh_pool_stats()
        return self._stats.snapshot()

    def clear_cache(self) -> None:
        self._query_cache.clear()
        logger.debug("SQL query cache cleared")

    def get_files(self, context: ModuleContext) -> list[GeneratedFile]:
        config = self.config.model_dump(mode="json", exclude={"password"})
        return [
            GeneratedFile(
                path=f"{context.package_name}/database/sql.py",
                content=render_template("sql_service.py.j2", context=context, config=config),
                type="python",
            ),
            GeneratedFile(
                path="config/database/sql.yaml",
                content=render_template("module_config.yaml.j2", module="sql", config=config),
                type="yaml",
            ),
        ]

    # =========================================================================
    # Pool helpers
    # =========================================================================

    async def _acquire(self) -> Any:
        handle = await self._driver.acquire()
        self._refresh_pool_stats()
        return handle

    async def _release(self, handle: Any) -> None:
        await self._driver.release(handle)
        self._refresh_pool_stats()

    async def _discard(self, handle: Any) -> None:
        if self._driver.pool is not None:
            await self._driver.pool.discard(handle)
        self._refresh_pool_stats()

    def _refresh_pool_stats(self) -> None:
        pool = self._driver.pool
        if pool is None:
            self._stats.active_connections = 0
            self._stats.pool_utilization = 0.0
            return
        self._stats.active_connections = pool.in_use
        self._stats.pool_utilization = pool.utilization
        self.connection_info.pool_size = pool.size

    @staticmethod
    def _cache_key(sql: str, params: list[Any]) -> str:
        return f"{sql}|{json.dumps(params, default=str, sort_keys=True)}"
