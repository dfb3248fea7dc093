"""
Document data access.

This package provides:
- NoSQLModule (connection lifecycle, query cache, stats, events)
- Collection (CRUD, bulk writes, aggregation, indexes)
- NoSQLTransaction and ChangeStream (MongoDB sessions and change streams)
- Drivers for MongoDB, DynamoDB and an in-memory store

Example usage:
    >>> from dnadb.nosql import NoSQLModule
    >>> nosql = NoSQLModule({"type": "memory", "database": "app"})
    >>> await nosql.connect()
    >>> await nosql.collection("users").insert_one({"name": "Ada"})
"""

from dnadb.nosql.config import NoSQLConfig, NoSQLDatabaseType
from dnadb.nosql.drivers import (
    DocumentDriver,
    DynamoDBDriver,
    FindSpec,
    IndexInfo,
    KeyValueDocumentDriver,
    MemoryDocumentDriver,
    MongoDriver,
    UpdateOutcome,
    create_document_driver,
)
from dnadb.nosql.module import (
    BulkOperation,
    BulkWriteResult,
    ChangeStream,
    Collection,
    IndexOptions,
    NoSQLModule,
    NoSQLTransaction,
    NoSQLTransactionStatus,
    QueryOptions,
    index_name,
)

__all__ = [
    # Config
    "NoSQLConfig",
    "NoSQLDatabaseType",
    # Drivers
    "DocumentDriver",
    "DynamoDBDriver",
    "FindSpec",
    "IndexInfo",
    "KeyValueDocumentDriver",
    "MemoryDocumentDriver",
    "MongoDriver",
    "UpdateOutcome",
    "create_document_driver",
    # Module
    "BulkOperation",
    "BulkWriteResult",
    "ChangeStream",
    "Collection",
    "IndexOptions",
    "NoSQLModule",
    "NoSQLTransaction",
    "NoSQLTransactionStatus",
    "QueryOptions",
    "index_name",
]
