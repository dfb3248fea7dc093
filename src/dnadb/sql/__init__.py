"""
Relational data access.

This package provides:
- SQLModule (pooled connections, query cache, stats, events)
- QueryBuilder (fluent SELECT construction)
- Transaction (isolation levels and savepoints)
- Model layer (ModelDefinition, Model CRUD with hooks)

Example usage:
    >>> from dnadb.sql import SQLModule
    >>> sql = SQLModule({"type": "sqlite", "database": "app", "filename": "app.db"})
    >>> await sql.connect()
    >>> rows = await sql.create_query_builder().from_("users").limit(10).execute()
"""

from dnadb.sql.config import IsolationLevel, SQLConfig, SQLDatabaseType, TimestampFields
from dnadb.sql.drivers import (
    MySQLDriver,
    PostgresDriver,
    QueryResult,
    SQLDriver,
    SQLiteDriver,
    create_driver,
)
from dnadb.sql.module import SQLMigration, SQLModule
from dnadb.sql.orm import (
    FieldDefinition,
    IndexDefinition,
    Model,
    ModelDefinition,
    ModelHooks,
    RelationDefinition,
    RelationType,
)
from dnadb.sql.query_builder import QueryBuilder
from dnadb.sql.transaction import Transaction, TransactionStatus

__all__ = [
    # Config
    "IsolationLevel",
    "SQLConfig",
    "SQLDatabaseType",
    "TimestampFields",
    # Drivers
    "MySQLDriver",
    "PostgresDriver",
    "QueryResult",
    "SQLDriver",
    "SQLiteDriver",
    "create_driver",
    # Module
    "SQLMigration",
    "SQLModule",
    # ORM
    "FieldDefinition",
    "IndexDefinition",
    "Model",
    "ModelDefinition",
    "ModelHooks",
    "RelationDefinition",
    "RelationType",
    # Queries
    "QueryBuilder",
    "Transaction",
    "TransactionStatus",
]
