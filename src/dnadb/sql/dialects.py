"""
Per-backend SQL dialects.

SQL inside dnadb is written with ``?`` placeholders. Each dialect converts
them to what its driver expects (``$1`` for asyncpg, ``%s`` for aiomysql)
and knows how to open a transaction and map model field types.
"""

from __future__ import annotations

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from dnadb.sql.config import IsolationLevel, SQLDatabaseType

# Model field type -> SQL column type
BASE_TYPE_MAP: dict[str, str] = {
    "string": "VARCHAR",
    "text": "TEXT",
    "number": "INTEGER",
    "float": "REAL",
    "boolean": "BOOLEAN",
    "date": "TIMESTAMP",
    "json": "JSON",
    "binary": "BLOB",
}


def _replace_placeholders(sql: str, make: Any) -> str:
    """Replace ``?`` outside single-quoted literals using ``make(index)``."""
    out: list[str] = []
    in_quote = False
    index = 0
    for ch in sql:
        if ch == "'":
            in_quote = not in_quote
            out.append(ch)
        elif ch == "?" and not in_quote:
            index += 1
            out.append(make(index))
        else:
            out.append(ch)
    return "".join(out)


class Dialect:
    """Base dialect (qmark placeholders, standard SQL)."""

    name = "generic"
    supports_returning = True
    type_overrides: dict[str, str] = {}

    def convert_placeholders(self, sql: str) -> str:
        return sql

    def begin_statements(self, isolation_level: IsolationLevel) -> list[str]:
        return [f"SET TRANSACTION ISOLATION LEVEL {isolation_level.value}", "BEGIN"]

    def commit_statement(self) -> str:
        return "COMMIT"

    def rollback_statement(self) -> str:
        return "ROLLBACK"

    def column_type(self, field_type: str, length: int | None = None) -> str:
        sql_type = self.type_overrides.get(field_type) or BASE_TYPE_MAP.get(field_type, "TEXT")
        if length and sql_type == "VARCHAR":
            return f"VARCHAR({length})"
        if sql_type == "VARCHAR":
            return "VARCHAR(255)"
        return sql_type

    def adapt_param(self, value: Any) -> Any:
        """Convert Python values the driver cannot bind directly."""
        if isinstance(value, (dict, list)):
            return json.dumps(value, default=str)
        return value

    def render_literal(self, value: Any) -> str:
        """Render a value as a SQL literal (used by ``QueryBuilder.build``)."""
        if value is None:
            return "NULL"
        if isinstance(value, bool):
            return "TRUE" if value else "FALSE"
        if isinstance(value, (int, float, Decimal)):
            return str(value)
        if isinstance(value, (datetime, date)):
            value = value.isoformat()
        elif isinstance(value, UUID):
            value = str(value)
        elif isinstance(value, (dict, list)):
            value = json.dumps(value, default=str)
        text = str(value).replace("'", "''")
        return f"'{text}'"


class SQLiteDialect(Dialect):
    name = SQLDatabaseType.SQLITE.value
    supports_returning = True

    def begin_statements(self, isolation_level: IsolationLevel) -> list[str]:
        # SQLite transactions are always serializable; no SET TRANSACTION
        if isolation_level == IsolationLevel.SERIALIZABLE:
            return ["BEGIN IMMEDIATE"]
        return ["BEGIN"]

    def adapt_param(self, value: Any) -> Any:
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        if isinstance(value, UUID):
            return str(value)
        if isinstance(value, Decimal):
            return str(value)
        return super().adapt_param(value)


class PostgresDialect(Dialect):
    name = SQLDatabaseType.POSTGRESQL.value
    supports_returning = True
    type_overrides = {"binary": "BYTEA", "json": "JSONB", "float": "DOUBLE PRECISION"}

    def convert_placeholders(self, sql: str) -> str:
        return _replace_placeholders(sql, lambda i: f"${i}")

    def begin_statements(self, isolation_level: IsolationLevel) -> list[str]:
        # SET TRANSACTION only affects an already open block in PostgreSQL
        return [f"BEGIN ISOLATION LEVEL {isolation_level.value}"]


class MySQLDialect(Dialect):
    name = SQLDatabaseType.MYSQL.value
    supports_returning = False
    type_overrides = {"boolean": "TINYINT(1)", "date": "DATETIME", "float": "DOUBLE"}

    def convert_placeholders(self, sql: str) -> str:
        # pyformat: literal percent signs must be doubled
        return _replace_placeholders(sql.replace("%", "%%"), lambda i: "%s")

    def begin_statements(self, isolation_level: IsolationLevel) -> list[str]:
        return [f"SET TRANSACTION ISOLATION LEVEL {isolation_level.value}", "START TRANSACTION"]

    def adapt_param(self, value: Any) -> Any:
        if isinstance(value, UUID):
            return str(value)
        return super().adapt_param(value)


_DIALECTS: dict[SQLDatabaseType, type[Dialect]] = {
    SQLDatabaseType.SQLITE: SQLiteDialect,
    SQLDatabaseType.POSTGRESQL: PostgresDialect,
    SQLDatabaseType.MYSQL: MySQLDialect,
}


def get_dialect(db_type: SQLDatabaseType | str) -> Dialect:
    return _DIALECTS[SQLDatabaseType(db_type)]()
