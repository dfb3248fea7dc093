"""
SQL drivers.

One :class:`SQLDriver` per backend, each owning a :class:`ConnectionPool`
of native handles:

- SQLite via aiosqlite (autocommit mode, explicit BEGIN/COMMIT)
- PostgreSQL via asyncpg
- MySQL via aiomysql

Driver libraries are imported when a connection is first opened, so only
the backend in use has to be installed at runtime.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from dnadb.errors import BackendConnectionError
from dnadb.pool import ConnectionPool
from dnadb.sql.config import SQLConfig, SQLDatabaseType
from dnadb.sql.dialects import Dialect, get_dialect

logger = logging.getLogger(__name__)

_ROW_RETURNING_COMMANDS = frozenset({"SELECT", "WITH", "SHOW", "VALUES", "EXPLAIN", "PRAGMA"})


@dataclass
class QueryResult:
    """Rows and metadata from one statement."""

    rows: list[dict[str, Any]]
    row_count: int
    command: str
    duration_ms: float = 0.0
    cached: bool = False
    last_row_id: Any = None
    fields: list[str] = field(default_factory=list)

    def first(self) -> dict[str, Any] | None:
        return self.rows[0] if self.rows else None

    def scalar(self) -> Any:
        """First column of the first row, or None."""
        row = self.first()
        if not row:
            return None
        return next(iter(row.values()))


def statement_command(sql: str) -> str:
    """Leading SQL keyword, upper-cased (``"select * from t"`` -> ``"SELECT"``)."""
    stripped = sql.lstrip(" \t\r\n(")
    return stripped.split(None, 1)[0].upper() if stripped else ""


def returns_rows(sql: str) -> bool:
    return statement_command(sql) in _ROW_RETURNING_COMMANDS or " RETURNING " in f" {sql.upper()} "


def split_statements(script: str) -> list[str]:
    """Split a SQL script on semicolons outside quotes and ``--`` comments."""
    statements: list[str] = []
    current: list[str] = []
    in_single = in_double = in_comment = False
    i = 0
    while i < len(script):
        ch = script[i]
        if in_comment:
            if ch == "\n":
                in_comment = False
                current.append(ch)
        elif ch == "-" and not in_single and not in_double and script[i : i + 2] == "--":
            in_comment = True
            i += 1
        elif ch == "'" and not in_double:
            in_single = not in_single
            current.append(ch)
        elif ch == '"' and not in_single:
            in_double = not in_double
            current.append(ch)
        elif ch == ";" and not in_single and not in_double:
            statement = "".join(current).strip()
            if statement:
                statements.append(statement)
            current = []
        else:
            current.append(ch)
        i += 1
    tail = "".join(current).strip()
    if tail:
        statements.append(tail)
    return statements


class SQLDriver(ABC):
    """Backend adapter: pooled handles plus statement execution."""

    backend: SQLDatabaseType

    def __init__(self, config: SQLConfig):
        self.config = config
        self.dialect: Dialect = get_dialect(config.type)
        self.pool: ConnectionPool[Any] | None = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def _pool_bounds(self) -> tuple[int, int]:
        return self.config.pool_min, self.config.pool_max

    async def connect(self) -> None:
        min_size, max_size = self._pool_bounds()
        self.pool = ConnectionPool(
            self._open_connection,
            self._close_connection,
            min_size=min_size,
            max_size=max_size,
            acquire_timeout=self.config.acquire_timeout,
            name=f"{self.backend.value}:{self.config.database}",
        )
        await self.pool.open()

    async def disconnect(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None

    @property
    def connected(self) -> bool:
        return self.pool is not None and not self.pool.closed

    async def acquire(self) -> Any:
        if self.pool is None:
            raise BackendConnectionError("SQL driver is not connected")
        return await self.pool.acquire()

    async def release(self, handle: Any) -> None:
        if self.pool is not None:
            await self.pool.release(handle)

    # =========================================================================
    # Execution
    # =========================================================================

    async def execute(self, handle: Any, sql: str, params: list[Any] | tuple[Any, ...] = ()) -> QueryResult:
        """Run one statement written with ``?`` placeholders."""
        args = [self.dialect.adapt_param(p) for p in params]
        native_sql = self.dialect.convert_placeholders(sql) if args else sql
        start = time.perf_counter()
        rows, row_count, last_row_id = await self._execute(handle, native_sql, args)
        duration_ms = (time.perf_counter() - start) * 1000
        return QueryResult(
            rows=rows,
            row_count=row_count,
            command=statement_command(sql),
            duration_ms=duration_ms,
            last_row_id=last_row_id,
            fields=list(rows[0].keys()) if rows else [],
        )

    @abstractmethod
    async def _open_connection(self) -> Any: ...

    @abstractmethod
    async def _close_connection(self, handle: Any) -> None: ...

    @abstractmethod
    async def _execute(self, handle: Any, sql: str, args: list[Any]) -> tuple[list[dict[str, Any]], int, Any]: ...


class SQLiteDriver(SQLDriver):
    backend = SQLDatabaseType.SQLITE

    @property
    def in_memory(self) -> bool:
        return self.config.filename in (":memory:", "")

    def _pool_bounds(self) -> tuple[int, int]:
        # Every ":memory:" connection is a separate database
        if self.in_memory:
            return 1, 1
        return super()._pool_bounds()

    async def _open_connection(self) -> Any:
        import aiosqlite

        conn = await aiosqlite.connect(
            self.config.filename or ":memory:",
            isolation_level=None,
            timeout=self.config.connection_timeout,
        )
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA foreign_keys = ON")
        return conn

    async def _close_connection(self, handle: Any) -> None:
        await handle.close()

    async def _execute(self, handle: Any, sql: str, args: list[Any]) -> tuple[list[dict[str, Any]], int, Any]:
        cursor = await handle.execute(sql, args)
        try:
            rows = [dict(row) for row in await cursor.fetchall()] if cursor.description else []
            row_count = cursor.rowcount if cursor.rowcount >= 0 else len(rows)
            return rows, row_count, cursor.lastrowid
        finally:
            await cursor.close()


class PostgresDriver(SQLDriver):
    backend = SQLDatabaseType.POSTGRESQL

    async def _open_connection(self) -> Any:
        import asyncpg

        return await asyncpg.connect(
            host=self.config.host,
            port=self.config.effective_port,
            user=self.config.username,
            password=self.config.password,
            database=self.config.database,
            timeout=self.config.connection_timeout,
        )

    async def _close_connection(self, handle: Any) -> None:
        await handle.close()

    async def _execute(self, handle: Any, sql: str, args: list[Any]) -> tuple[list[dict[str, Any]], int, Any]:
        if returns_rows(sql):
            records = await handle.fetch(sql, *args)
            rows = [dict(record) for record in records]
            return rows, len(rows), None
        status = await handle.execute(sql, *args)
        return [], _parse_command_status(status), None


class MySQLDriver(SQLDriver):
    backend = SQLDatabaseType.MYSQL

    async def _open_connection(self) -> Any:
        import aiomysql

        return await aiomysql.connect(
            host=self.config.host,
            port=self.config.effective_port or 3306,
            user=self.config.username or "root",
            password=self.config.password or "",
            db=self.config.database,
            autocommit=True,
            connect_timeout=self.config.connection_timeout,
        )

    async def _close_connection(self, handle: Any) -> None:
        handle.close()

    async def _execute(self, handle: Any, sql: str, args: list[Any]) -> tuple[list[dict[str, Any]], int, Any]:
        import aiomysql

        async with handle.cursor(aiomysql.DictCursor) as cursor:
            await cursor.execute(sql, args or None)
            rows = list(await cursor.fetchall()) if cursor.description else []
            return rows, cursor.rowcount, cursor.lastrowid


def _parse_command_status(status: str) -> int:
    """asyncpg status strings: ``"INSERT 0 3"``, ``"UPDATE 2"``, ``"CREATE TABLE"``."""
    parts = (status or "").split()
    if parts and parts[-1].isdigit():
        return int(parts[-1])
    return 0


_DRIVERS: dict[SQLDatabaseType, type[SQLDriver]] = {
    SQLDatabaseType.SQLITE: SQLiteDriver,
    SQLDatabaseType.POSTGRESQL: PostgresDriver,
    SQLDatabaseType.MYSQL: MySQLDriver,
}


def create_driver(config: SQLConfig) -> SQLDriver:
    return _DRIVERS[config.type](config)
