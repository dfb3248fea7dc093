"""
NoSQL module: one collection API over MongoDB, DynamoDB or the memory store.

Usage:
    nosql = NoSQLModule({"type": "memory", "database": "app"})
    await nosql.connect()
    users = nosql.collection("users")
    user_id = await users.insert_one({"email": "a@example.com"})
    recent = await users.find({}, QueryOptions(sort={"createdAt": -1}, limit=20))

    # MongoDB only: session transactions and change streams
    async with await nosql.begin_transaction() as tx:
        await tx.collection("users").update_one({"_id": user_id}, {"$set": {"plan": "pro"}})
    async with await nosql.watch("users") as changes:
        async for change in changes:
            ...
"""

from __future__ import annotations

import copy
import json
import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, TypeVar

from dnadb.config import coerce_config
from dnadb.errors import (
    BackendConnectionError,
    DnaDbError,
    OperationError,
    TransactionStateError,
    UnsupportedOperationError,
)
from dnadb.events import EventChannel
from dnadb.generated import GeneratedFile, ModuleContext, render_template
from dnadb.logging import apply_log_level, log_with_context
from dnadb.nosql.config import NoSQLConfig, NoSQLDatabaseType
from dnadb.nosql.documents import Document, generate_id, is_update_document
from dnadb.nosql.drivers import DocumentDriver, FindSpec, IndexInfo, UpdateOutcome, create_document_driver
from dnadb.pool import ConnectionInfo, ConnectionStatus
from dnadb.query_cache import QueryCache
from dnadb.stats import NoSQLStats

logger = logging.getLogger(__name__)

T = TypeVar("T")

CREATED_FIELD = "createdAt"
UPDATED_FIELD = "updatedAt"

_CACHED_OPERATIONS = ("find", "count", "distinct")


@dataclass(frozen=True)
class QueryOptions:
    limit: int | None = None
    skip: int = 0
    sort: dict[str, int] = field(default_factory=dict)
    projection: dict[str, Any] | None = None


@dataclass(frozen=True)
class IndexOptions:
    name: str | None = None
    unique: bool = False
    sparse: bool = False
    expire_after_seconds: int | None = None


@dataclass(frozen=True)
class BulkOperation:
    """One ``bulk_write`` step: ``insert``, ``update``, ``delete`` or ``replace``."""

    type: str
    filter: dict[str, Any] | None = None
    document: dict[str, Any] | None = None
    update: dict[str, Any] | None = None
    upsert: bool = False


@dataclass
class BulkWriteResult:
    inserted_count: int = 0
    matched_count: int = 0
    modified_count: int = 0
    deleted_count: int = 0
    upserted_count: int = 0
    inserted_ids: list[Any] = field(default_factory=list)
    upserted_ids: list[Any] = field(default_factory=list)


def index_name(fields: Mapping[str, int]) -> str:
    """Default index name: ``{"email": 1, "age": -1}`` -> ``idx_email_1_age_-1``."""
    return "idx_" + "_".join(f"{name}_{direction}" for name, direction in fields.items())


def _coerce(cls: type[T], value: T | Mapping[str, Any] | None) -> T:
    if value is None:
        return cls()
    if isinstance(value, cls):
        return value
    return cls(**value)


class Collection:
    """Operations on one named collection. Obtain through :meth:`NoSQLModule.collection`."""

    def __init__(self, module: NoSQLModule, name: str, transaction: NoSQLTransaction | None = None):
        self.module = module
        self.name = name
        self.transaction = transaction

    def __repr__(self) -> str:
        return f"Collection({self.name!r})"

    async def _run(self, verb: str, call: Callable[[DocumentDriver], Awaitable[T]]) -> T:
        if self.transaction is None:
            return await self.module._run(verb, self.name, call)
        self.transaction._check_pending(verb)
        return await self.module._run(verb, self.name, call, driver=self.transaction.driver)

    def _cache_get(self, operation: str, args: list[Any]) -> Any:
        # uncommitted reads bypass the shared cache
        if self.transaction is not None:
            return None
        return self.module._cache_get(operation, self.name, args)

    def _cache_put(self, operation: str, args: list[Any], value: Any) -> None:
        if self.transaction is None:
            self.module._cache_put(operation, self.name, args, value)

    async def watch(self, pipeline: Sequence[Mapping[str, Any]] | None = None) -> ChangeStream:
        return await self.module.watch(self.name, pipeline)

    # =========================================================================
    # Reads
    # =========================================================================

    async def find(
        self,
        filter: Mapping[str, Any] | None = None,
        options: QueryOptions | Mapping[str, Any] | None = None,
    ) -> list[Document]:
        opts = _coerce(QueryOptions, options)
        spec = FindSpec(
            filter=dict(filter or {}),
            sort=dict(opts.sort),
            skip=max(opts.skip, 0),
            limit=self.module.effective_limit(opts.limit),
            projection=dict(opts.projection) if opts.projection else None,
        )
        args = [spec.filter, spec.sort, spec.skip, spec.limit, spec.projection]

        cached = self._cache_get("find", args)
        if cached is not None:
            return cached

        docs = await self._run("find", lambda d: d.find(self.name, spec))
        self.module._stats.documents_processed += len(docs)
        self._cache_put("find", args, docs)
        await self.module._publish("find", self.name, filter=spec.filter, count=len(docs))
        return copy.deepcopy(docs)

    async def find_one(
        self,
        filter: Mapping[str, Any] | None = None,
        options: QueryOptions | Mapping[str, Any] | None = None,
    ) -> Document | None:
        opts = _coerce(QueryOptions, options)
        docs = await self.find(filter, QueryOptions(limit=1, skip=opts.skip, sort=opts.sort, projection=opts.projection))
        return docs[0] if docs else None

    async def find_by_id(self, id: Any) -> Document | None:
        return await self.find_one({self.module.id_field: id})

    async def count(self, filter: Mapping[str, Any] | None = None) -> int:
        query = dict(filter or {})
        cached = self._cache_get("count", [query])
        if cached is not None:
            return cached
        total = await self._run("count", lambda d: d.count(self.name, query))
        self._cache_put("count", [query], total)
        await self.module._publish("count", self.name, filter=query, count=total)
        return total

    async def distinct(self, field_name: str, filter: Mapping[str, Any] | None = None) -> list[Any]:
        query = dict(filter or {})
        cached = self._cache_get("distinct", [field_name, query])
        if cached is not None:
            return cached
        values = await self._run("distinct", lambda d: d.distinct(self.name, field_name, query))
        self._cache_put("distinct", [field_name, query], values)
        await self.module._publish("distinct", self.name, field=field_name, count=len(values))
        return list(values)

    async def aggregate(self, pipeline: Sequence[Mapping[str, Any]]) -> list[Document]:
        """Run an aggregation pipeline. Key-value backends raise ``UnsupportedOperationError``."""
        docs = await self._run("aggregate", lambda d: d.aggregate(self.name, pipeline))
        self.module._stats.documents_processed += len(docs)
        await self.module._publish("aggregate", self.name, stages=len(pipeline), count=len(docs))
        return docs

    # =========================================================================
    # Writes
    # =========================================================================

    async def insert_one(self, document: Mapping[str, Any]) -> Any:
        ids = await self._insert([document], "insert")
        return ids[0]

    async def insert_many(self, documents: Sequence[Mapping[str, Any]]) -> list[Any]:
        if not documents:
            return []
        return await self._insert(documents, "insert_many")

    async def update_one(
        self, filter: Mapping[str, Any], update: Mapping[str, Any], upsert: bool = False
    ) -> int:
        outcome = await self._update(filter, update, many=False, upsert=upsert, verb="update")
        return outcome.modified_count

    async def update_many(
        self, filter: Mapping[str, Any], update: Mapping[str, Any], upsert: bool = False
    ) -> int:
        outcome = await self._update(filter, update, many=True, upsert=upsert, verb="update_many")
        return outcome.modified_count

    async def replace_one(
        self, filter: Mapping[str, Any], document: Mapping[str, Any], upsert: bool = False
    ) -> int:
        outcome = await self._replace(filter, document, upsert=upsert)
        return outcome.modified_count

    async def delete_one(self, filter: Mapping[str, Any]) -> int:
        return await self._delete(filter, many=False, verb="delete")

    async def delete_many(self, filter: Mapping[str, Any]) -> int:
        return await self._delete(filter, many=True, verb="delete_many")

    async def bulk_write(self, operations: Sequence[BulkOperation | Mapping[str, Any]]) -> BulkWriteResult:
        """Apply operations in order. ``update`` and ``delete`` affect every match."""
        result = BulkWriteResult()
        start = time.perf_counter()
        for raw in operations:
            op = _coerce(BulkOperation, raw)
            if op.type == "insert" and op.document is not None:
                ids = await self._insert([op.document], "insert")
                result.inserted_count += 1
                result.inserted_ids.extend(ids)
            elif op.type == "update" and op.filter is not None and op.update is not None:
                outcome = await self._update(op.filter, op.update, many=True, upsert=op.upsert, verb="update_many")
                self._tally(result, outcome)
            elif op.type == "delete" and op.filter is not None:
                result.deleted_count += await self._delete(op.filter, many=True, verb="delete_many")
            elif op.type == "replace" and op.filter is not None and op.document is not None:
                outcome = await self._replace(op.filter, op.document, upsert=op.upsert)
                self._tally(result, outcome)
            else:
                raise OperationError(f"Invalid bulk operation: {op}")
        await self.module._publish(
            "bulk_write",
            self.name,
            operations=len(operations),
            duration_ms=(time.perf_counter() - start) * 1000,
        )
        return result

    @staticmethod
    def _tally(result: BulkWriteResult, outcome: UpdateOutcome) -> None:
        result.matched_count += outcome.matched_count
        result.modified_count += outcome.modified_count
        if outcome.upserted_id is not None:
            result.upserted_count += 1
            result.upserted_ids.append(outcome.upserted_id)

    async def _insert(self, documents: Sequence[Mapping[str, Any]], verb: str) -> list[Any]:
        id_field = self.module.id_field
        now = datetime.now(UTC)
        prepared = []
        for document in documents:
            doc = copy.deepcopy(dict(document))
            if doc.get(id_field) is None:
                doc[id_field] = generate_id()
            doc[CREATED_FIELD] = now
            doc[UPDATED_FIELD] = now
            prepared.append(doc)

        await self.module._ensure_default_indexes(self.name)
        ids = await self._run(verb, lambda d: d.insert_many(self.name, prepared))
        self.module._stats.documents_processed += len(prepared)
        self.module._invalidate(self.name)
        await self.module._publish(verb, self.name, ids=list(ids))
        return list(ids)

    async def _update(
        self,
        filter: Mapping[str, Any],
        update: Mapping[str, Any],
        *,
        many: bool,
        upsert: bool,
        verb: str,
    ) -> UpdateOutcome:
        if not is_update_document(update) or not all(isinstance(v, Mapping) for v in update.values()):
            raise OperationError("Update document must only contain update operators")
        stamped = {op: dict(fields) for op, fields in update.items()}
        stamped.setdefault("$set", {})[UPDATED_FIELD] = datetime.now(UTC)
        query = dict(filter)
        outcome = await self._run(
            verb, lambda d: d.update(self.name, query, stamped, many=many, upsert=upsert)
        )
        self.module._invalidate(self.name)
        await self.module._publish(
            verb,
            self.name,
            filter=query,
            matched_count=outcome.matched_count,
            modified_count=outcome.modified_count,
        )
        return outcome

    async def _replace(self, filter: Mapping[str, Any], document: Mapping[str, Any], *, upsert: bool) -> UpdateOutcome:
        id_field = self.module.id_field
        query = dict(filter)
        replacement = copy.deepcopy(dict(document))

        existing = await self._run(
            "replace", lambda d: d.find(self.name, FindSpec(filter=query, limit=1))
        )
        now = datetime.now(UTC)
        if existing:
            replacement[id_field] = existing[0][id_field]
            replacement[CREATED_FIELD] = existing[0].get(CREATED_FIELD, now)
        else:
            replacement.setdefault(CREATED_FIELD, now)
        replacement[UPDATED_FIELD] = now

        outcome = await self._run(
            "replace", lambda d: d.replace(self.name, query, replacement, upsert=upsert)
        )
        self.module._invalidate(self.name)
        await self.module._publish("replace", self.name, filter=query, modified_count=outcome.modified_count)
        return outcome

    async def _delete(self, filter: Mapping[str, Any], *, many: bool, verb: str) -> int:
        query = dict(filter)
        deleted = await self._run(verb, lambda d: d.delete(self.name, query, many=many))
        self.module._invalidate(self.name)
        await self.module._publish(verb, self.name, filter=query, deleted_count=deleted)
        return deleted

    # =========================================================================
    # Indexes and lifecycle
    # =========================================================================

    async def create_index(
        self,
        fields: Mapping[str, int],
        options: IndexOptions | Mapping[str, Any] | None = None,
    ) -> str:
        opts = _coerce(IndexOptions, options)
        name = opts.name or index_name(fields)
        await self.module._run(
            "create_index",
            self.name,
            lambda d: d.create_index(
                self.name,
                dict(fields),
                name=name,
                unique=opts.unique,
                sparse=opts.sparse,
                expire_after_seconds=opts.expire_after_seconds,
            ),
        )
        await self.module.events.publish("index:created", {"collection": self.name, "index": name, "fields": dict(fields)})
        return name

    async def drop_index(self, name: str) -> bool:
        dropped = await self.module._run("drop_index", self.name, lambda d: d.drop_index(self.name, name))
        if dropped:
            await self.module.events.publish("index:dropped", {"collection": self.name, "index": name})
        return dropped

    async def list_indexes(self) -> list[IndexInfo]:
        return await self.module._run("list_indexes", self.name, lambda d: d.list_indexes(self.name))

    async def drop(self) -> bool:
        dropped = await self.module._run("drop", self.name, lambda d: d.drop_collection(self.name))
        self.module._invalidate(self.name)
        self.module._forget(self.name)
        await self.module.events.publish("collection:dropped", {"collection": self.name})
        return dropped


class NoSQLTransactionStatus(StrEnum):
    PENDING = "pending"
    COMMITTED = "committed"
    ABORTED = "aborted"


class NoSQLTransaction:
    """
    Multi-document transaction on one backend session (MongoDB replica sets).

    Collections from :meth:`collection` run their operations inside the
    session and skip the query cache. ``pending -> committed`` or
    ``pending -> aborted``; any use after the terminal call raises
    :class:`TransactionStateError`. As a context manager it commits on a
    clean exit and aborts on an exception.
    """

    def __init__(self, module: NoSQLModule, session: Any):
        self.id = f"ntx_{uuid.uuid4().hex[:16]}"
        self.status = NoSQLTransactionStatus.PENDING
        self.started_at = datetime.now(UTC)
        self.driver = module.driver.bind(session)
        self._module = module
        self._session = session
        self._collections: dict[str, Collection] = {}

    def __repr__(self) -> str:
        return f"NoSQLTransaction(id={self.id!r}, status={self.status.value!r})"

    async def __aenter__(self) -> NoSQLTransaction:
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if self.status != NoSQLTransactionStatus.PENDING:
            return
        if exc_type is None:
            await self.commit()
        else:
            await self.abort()

    def collection(self, name: str) -> Collection:
        self._check_pending("collection")
        if not name:
            raise OperationError("Collection name is required")
        if name not in self._collections:
            self._collections[name] = Collection(self._module, name, transaction=self)
        return self._collections[name]

    async def commit(self) -> None:
        self._check_pending("commit")
        try:
            await self._module._run("commit", "*", lambda d: d.commit_transaction(self._session))
        except DnaDbError:
            self._finish(NoSQLTransactionStatus.ABORTED)
            await self._module.events.publish("transaction:aborted", {"id": self.id})
            raise
        self._finish(NoSQLTransactionStatus.COMMITTED)
        await self._module.events.publish("transaction:committed", {"id": self.id})

    async def abort(self) -> None:
        self._check_pending("abort")
        try:
            await self._module._run("abort", "*", lambda d: d.abort_transaction(self._session))
        finally:
            self._finish(NoSQLTransactionStatus.ABORTED)
        await self._module.events.publish("transaction:aborted", {"id": self.id})

    def _finish(self, status: NoSQLTransactionStatus) -> None:
        self.status = status
        # reads outside the session may have cached pre-commit state
        for name in self._collections:
            self._module._invalidate(name)

    def _check_pending(self, action: str) -> None:
        if self.status != NoSQLTransactionStatus.PENDING:
            raise TransactionStateError(f"Cannot {action}: transaction {self.id} is already {self.status.value}")


class ChangeStream:
    """Change events for one collection. Iterate with ``async for``; close when done."""

    def __init__(self, module: NoSQLModule, collection: str, stream: Any):
        self.module = module
        self.collection = collection
        self._stream = stream
        self.closed = False

    def __aiter__(self) -> ChangeStream:
        return self

    async def __anext__(self) -> Document:
        if self.closed:
            raise StopAsyncIteration
        try:
            return await anext(self._stream)
        except StopAsyncIteration:
            raise
        except Exception as e:
            raise OperationError(f"Change stream on {self.collection} failed: {e}") from e

    async def __aenter__(self) -> ChangeStream:
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self._stream.close()
        await self.module.events.publish("changestream:closed", {"collection": self.collection})


class NoSQLModule:
    """Document data access over one configured backend."""

    def __init__(self, config: NoSQLConfig | Mapping[str, Any], driver: DocumentDriver | None = None):
        self.config = coerce_config(NoSQLConfig, config)
        self._driver = driver if driver is not None else create_document_driver(self.config)
        self.events = EventChannel("nosql")
        self.connection_info = ConnectionInfo(backend=self.config.type.value)
        self._stats = NoSQLStats()
        self._query_cache = QueryCache(self.config.query_cache_ttl)
        self._collections: dict[str, Collection] = {}
        self._indexed: set[str] = set()
        apply_log_level(logger, self.config.log_level)

    def __repr__(self) -> str:
        return f"NoSQLModule(type={self.config.type.value!r}, database={self.config.database!r})"

    @property
    def driver(self) -> DocumentDriver:
        return self._driver

    @property
    def id_field(self) -> str:
        if self.config.type == NoSQLDatabaseType.DYNAMODB:
            return self.config.partition_key
        return "_id"

    @property
    def is_connected(self) -> bool:
        return self._driver.connected

    # =========================================================================
    # Connection
    # =========================================================================

    async def connect(self) -> bool:
        if self._driver.connected:
            return True
        logger.info("Connecting to %s database %s", self.config.type, self.config.database)
        try:
            await self._driver.connect()
        except BackendConnectionError as e:
            self.connection_info.status = ConnectionStatus.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to connect to %s: %s", self.config.type, e)
            return False

        self.connection_info.status = ConnectionStatus.CONNECTED
        self.connection_info.created_at = datetime.now(UTC)
        self.connection_info.pool_size = self.config.max_pool_size
        for name in list(self._collections):
            await self._ensure_default_indexes(name)
        await self.events.publish("connected", {"backend": self.config.type.value, "database": self.config.database})
        logger.info("NoSQL database connected")
        return True

    async def disconnect(self) -> bool:
        try:
            await self._driver.disconnect()
        except Exception as e:
            logger.error("Error during disconnect: %s", e)
            self.connection_info.status = ConnectionStatus.ERROR
            return False
        self.connection_info.status = ConnectionStatus.DISCONNECTED
        self._query_cache.clear()
        self._indexed.clear()
        await self.events.publish("disconnected", {"backend": self.config.type.value})
        logger.info("NoSQL database disconnected")
        return True

    # =========================================================================
    # Collections
    # =========================================================================

    def collection(self, name: str) -> Collection:
        if not name:
            raise OperationError("Collection name is required")
        if name not in self._collections:
            self._collections[name] = Collection(self, name)
        return self._collections[name]

    async def list_collections(self) -> list[str]:
        return await self._run("list_collections", "*", lambda d: d.list_collections())

    def effective_limit(self, requested: int | None) -> int:
        """Requested limit capped at ``max_limit``; ``default_limit`` when unset."""
        if requested is None or requested <= 0:
            return self.config.default_limit
        return min(requested, self.config.max_limit)

    def _forget(self, name: str) -> None:
        self._collections.pop(name, None)
        self._indexed.discard(name)

    async def _ensure_default_indexes(self, name: str) -> None:
        """Index createdAt/updatedAt once per collection on document stores."""
        if not self.config.auto_index or name in self._indexed or not self._driver.supports_aggregation:
            return
        self._indexed.add(name)
        for field_name in (CREATED_FIELD, UPDATED_FIELD):
            fields = {field_name: -1}
            try:
                await self._driver.create_index(name, fields, name=index_name(fields))
            except Exception as e:
                logger.warning("Failed to create default index on %s.%s: %s", name, field_name, e)

    # =========================================================================
    # Transactions and change streams
    # =========================================================================

    async def begin_transaction(self) -> NoSQLTransaction:
        """Start a session transaction. Backends without sessions raise ``UnsupportedOperationError``."""
        if not self._driver.supports_transactions:
            raise UnsupportedOperationError("transactions", self.config.type.value)
        session = await self._run("begin_transaction", "*", lambda d: d.start_transaction())
        transaction = NoSQLTransaction(self, session)
        await self.events.publish("transaction:started", {"id": transaction.id})
        logger.debug("Started transaction %s", transaction.id)
        return transaction

    async def watch(self, collection: str, pipeline: Sequence[Mapping[str, Any]] | None = None) -> ChangeStream:
        """Open a change stream on ``collection``, optionally filtered by an aggregation pipeline."""
        if not self._driver.supports_change_streams:
            raise UnsupportedOperationError("watch", self.config.type.value)
        stages = [dict(stage) for stage in pipeline or ()]
        stream = await self._run("watch", collection, lambda d: d.watch(collection, stages))
        await self.events.publish("changestream:created", {"collection": collection})
        return ChangeStream(self, collection, stream)

    # =========================================================================
    # Execution, cache and events
    # =========================================================================

    async def _run(
        self,
        verb: str,
        collection: str,
        call: Callable[[DocumentDriver], Awaitable[T]],
        driver: DocumentDriver | None = None,
    ) -> T:
        start = time.perf_counter()
        self.connection_info.active_queries += 1
        try:
            result = await call(driver if driver is not None else self._driver)
        except DnaDbError as e:
            self._record_failure(verb, collection, e, start)
            raise
        except Exception as e:
            self._record_failure(verb, collection, e, start)
            raise OperationError(f"{verb} on {collection} failed: {e}") from e
        finally:
            self.connection_info.active_queries -= 1
        self._stats.record_success((time.perf_counter() - start) * 1000)
        self.connection_info.last_query_at = datetime.now(UTC)
        return result

    def _record_failure(self, verb: str, collection: str, error: Exception, start: float) -> None:
        duration_ms = (time.perf_counter() - start) * 1000
        self._stats.record_failure(error, duration_ms)
        log_with_context(
            logger,
            logging.ERROR,
            f"{verb} failed: {error}",
            collection=collection,
            backend=self.config.type.value,
            duration_ms=round(duration_ms, 2),
        )

    async def _publish(self, verb: str, collection: str, **payload: Any) -> None:
        await self.events.publish(f"operation:{verb}", {"collection": collection, **payload})

    @staticmethod
    def _cache_key(operation: str, collection: str, args: list[Any]) -> str:
        return f"{operation}:{collection}:{json.dumps(args, default=str, sort_keys=True)}"

    def _cache_get(self, operation: str, collection: str, args: list[Any]) -> Any:
        if not self.config.enable_query_cache:
            return None
        found, value = self._query_cache.get(self._cache_key(operation, collection, args))
        if found:
            self._stats.cache_hits += 1
            return copy.deepcopy(value)
        self._stats.cache_misses += 1
        return None

    def _cache_put(self, operation: str, collection: str, args: list[Any], value: Any) -> None:
        if self.config.enable_query_cache:
            self._query_cache.set(self._cache_key(operation, collection, args), copy.deepcopy(value))

    def _invalidate(self, collection: str) -> None:
        for operation in _CACHED_OPERATIONS:
            self._query_cache.invalidate_prefix(f"{operation}:{collection}:")

    # =========================================================================
    # Stats and generated files
    # =========================================================================

    def get_stats(self) -> dict[str, Any]:
        return self._stats.snapshot()

    def clear_cache(self) -> None:
        self._query_cache.clear()
        logger.debug("NoSQL query cache cleared")

    def get_files(self, context: ModuleContext) -> list[GeneratedFile]:
        config = self.config.model_dump(mode="json", exclude={"password", "secret_access_key"})
        return [
            GeneratedFile(
                path=f"{context.package_name}/database/nosql.py",
                content=render_template("nosql_service.py.j2", context=context, config=config),
                type="python",
            ),
            GeneratedFile(
                path="config/database/nosql.yaml",
                content=render_template("module_config.yaml.j2", module="nosql", config=config),
                type="yaml",
            ),
        ]
