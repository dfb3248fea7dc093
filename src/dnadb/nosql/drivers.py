"""
Document store drivers.

Each backend implements :class:`DocumentDriver` once; :class:`NoSQLModule`
orchestrates caching, timestamps, stats and events on top of it.

- ``MongoDriver``: pymongo ``AsyncMongoClient``, operations pushed down natively;
  the only driver with session transactions and change streams
- ``DynamoDBDriver``: aioboto3 table resources, emulated on a key-value model
- ``MemoryDocumentDriver``: in-process store for tests and local development

Key-value stores only address items by partition key. Everything beyond a
primary-key lookup (filtered finds, update/delete many, count, distinct) is
emulated by :class:`KeyValueDocumentDriver` with a full table scan followed by
one request per matching item. That is O(n) per call in items *and* round
trips: a performance cliff on large tables, not an index-backed query.
"""

from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from dnadb.errors import BackendConnectionError, OperationError, UnsupportedOperationError
from dnadb.nosql.config import NoSQLConfig, NoSQLDatabaseType
from dnadb.nosql.documents import (
    Document,
    apply_projection,
    apply_update,
    generate_id,
    get_path,
    is_update_document,
    match_filter,
    run_pipeline,
    sort_documents,
)

logger = logging.getLogger(__name__)


@dataclass
class IndexInfo:
    name: str
    fields: dict[str, int]
    unique: bool = False
    sparse: bool = False
    expire_after_seconds: int | None = None


@dataclass
class UpdateOutcome:
    matched_count: int = 0
    modified_count: int = 0
    upserted_id: Any = None


@dataclass
class FindSpec:
    """Normalized find arguments passed to drivers."""

    filter: dict[str, Any] = field(default_factory=dict)
    sort: dict[str, int] = field(default_factory=dict)
    skip: int = 0
    limit: int | None = None
    projection: dict[str, Any] | None = None


def distinct_values(items: Sequence[Document], field_name: str) -> list[Any]:
    """Unique non-null values of a field, flattening arrays, in first-seen order."""
    values: list[Any] = []
    for item in items:
        value = get_path(item, field_name, None)
        for candidate in value if isinstance(value, list) else [value]:
            if candidate is not None and candidate not in values:
                values.append(candidate)
    return values


def _seed_upsert(query: Mapping[str, Any]) -> Document:
    """Equality fields of a filter become the base of an upserted document."""
    seed: Document = {}
    for key, value in query.items():
        if key.startswith("$"):
            continue
        if isinstance(value, Mapping) and any(str(k).startswith("$") for k in value):
            if "$eq" in value:
                seed[key] = value["$eq"]
            continue
        seed[key] = value
    return seed


class DocumentDriver(ABC):
    """Backend adapter for document collections."""

    backend: NoSQLDatabaseType
    supports_aggregation: bool = True
    supports_transactions: bool = False
    supports_change_streams: bool = False

    def __init__(self, config: NoSQLConfig):
        self.config = config

    @property
    @abstractmethod
    def connected(self) -> bool: ...

    @abstractmethod
    async def connect(self) -> None: ...

    @abstractmethod
    async def disconnect(self) -> None: ...

    @abstractmethod
    async def find(self, collection: str, spec: FindSpec) -> list[Document]: ...

    @abstractmethod
    async def insert_many(self, collection: str, documents: Sequence[Document]) -> list[Any]: ...

    @abstractmethod
    async def update(
        self,
        collection: str,
        query: Mapping[str, Any],
        update: Mapping[str, Any],
        *,
        many: bool,
        upsert: bool = False,
    ) -> UpdateOutcome: ...

    @abstractmethod
    async def replace(
        self,
        collection: str,
        query: Mapping[str, Any],
        document: Document,
        *,
        upsert: bool = False,
    ) -> UpdateOutcome: ...

    @abstractmethod
    async def delete(self, collection: str, query: Mapping[str, Any], *, many: bool) -> int: ...

    @abstractmethod
    async def aggregate(self, collection: str, pipeline: Sequence[Mapping[str, Any]]) -> list[Document]: ...

    @abstractmethod
    async def create_index(
        self,
        collection: str,
        fields: Mapping[str, int],
        *,
        name: str,
        unique: bool = False,
        sparse: bool = False,
        expire_after_seconds: int | None = None,
    ) -> None: ...

    @abstractmethod
    async def drop_index(self, collection: str, name: str) -> bool: ...

    @abstractmethod
    async def list_indexes(self, collection: str) -> list[IndexInfo]: ...

    @abstractmethod
    async def count(self, collection: str, query: Mapping[str, Any]) -> int: ...

    @abstractmethod
    async def distinct(self, collection: str, field_name: str, query: Mapping[str, Any]) -> list[Any]: ...

    @abstractmethod
    async def drop_collection(self, collection: str) -> bool: ...

    @abstractmethod
    async def list_collections(self) -> list[str]: ...

    # Sessions and change streams. Only document stores with replica-set
    # semantics provide them; the defaults reject.

    def bind(self, session: Any) -> DocumentDriver:
        """A view of this driver whose operations run inside ``session``."""
        raise UnsupportedOperationError("transactions", self.backend.value)

    async def start_transaction(self) -> Any:
        raise UnsupportedOperationError("transactions", self.backend.value)

    async def commit_transaction(self, session: Any) -> None:
        raise UnsupportedOperationError("transactions", self.backend.value)

    async def abort_transaction(self, session: Any) -> None:
        raise UnsupportedOperationError("transactions", self.backend.value)

    async def watch(self, collection: str, pipeline: Sequence[Mapping[str, Any]]) -> Any:
        """Open a change stream: an async iterator of change events with ``close()``."""
        raise UnsupportedOperationError("watch", self.backend.value)


# =============================================================================
# MongoDB
# =============================================================================


class MongoDriver(DocumentDriver):
    backend = NoSQLDatabaseType.MONGODB
    supports_transactions = True
    supports_change_streams = True

    def __init__(self, config: NoSQLConfig):
        super().__init__(config)
        self._client: Any = None
        self._db: Any = None
        self._session: Any = None

    @property
    def connected(self) -> bool:
        return self._db is not None

    async def connect(self) -> None:
        from pymongo import AsyncMongoClient
        from pymongo.errors import PyMongoError

        client = AsyncMongoClient(
            self.config.mongo_uri(),
            maxPoolSize=self.config.max_pool_size,
            minPoolSize=self.config.min_pool_size,
            connectTimeoutMS=int(self.config.connection_timeout * 1000),
            socketTimeoutMS=int(self.config.socket_timeout * 1000),
            serverSelectionTimeoutMS=int(self.config.server_selection_timeout * 1000),
        )
        try:
            await client.admin.command("ping")
        except PyMongoError as e:
            await client.close()
            raise BackendConnectionError(f"Cannot reach MongoDB at {self.config.host}: {e}") from e
        self._client = client
        self._db = client[self.config.database]

    async def disconnect(self) -> None:
        if self._client is not None:
            await self._client.close()
        self._client = None
        self._db = None

    def _collection(self, name: str) -> Any:
        if self._db is None:
            raise BackendConnectionError("MongoDB driver is not connected")
        return self._db[name]

    async def find(self, collection: str, spec: FindSpec) -> list[Document]:
        cursor = self._collection(collection).find(
            spec.filter,
            spec.projection or None,
            sort=list(spec.sort.items()) or None,
            skip=spec.skip,
            limit=spec.limit or 0,
            session=self._session,
        )
        return await cursor.to_list(None)

    async def insert_many(self, collection: str, documents: Sequence[Document]) -> list[Any]:
        result = await self._collection(collection).insert_many(list(documents), session=self._session)
        return list(result.inserted_ids)

    async def update(self, collection, query, update, *, many, upsert=False) -> UpdateOutcome:
        coll = self._collection(collection)
        method = coll.update_many if many else coll.update_one
        result = await method(dict(query), dict(update), upsert=upsert, session=self._session)
        return UpdateOutcome(result.matched_count, result.modified_count, result.upserted_id)

    async def replace(self, collection, query, document, *, upsert=False) -> UpdateOutcome:
        result = await self._collection(collection).replace_one(
            dict(query), document, upsert=upsert, session=self._session
        )
        return UpdateOutcome(result.matched_count, result.modified_count, result.upserted_id)

    async def delete(self, collection, query, *, many) -> int:
        coll = self._collection(collection)
        method = coll.delete_many if many else coll.delete_one
        result = await method(dict(query), session=self._session)
        return result.deleted_count

    async def aggregate(self, collection, pipeline) -> list[Document]:
        cursor = await self._collection(collection).aggregate(
            [dict(stage) for stage in pipeline], session=self._session
        )
        return await cursor.to_list(None)

    async def create_index(
        self, collection, fields, *, name, unique=False, sparse=False, expire_after_seconds=None
    ) -> None:
        options: dict[str, Any] = {"name": name, "unique": unique, "sparse": sparse}
        if expire_after_seconds is not None:
            options["expireAfterSeconds"] = expire_after_seconds
        await self._collection(collection).create_index(list(fields.items()), **options)

    async def drop_index(self, collection, name) -> bool:
        from pymongo.errors import OperationFailure

        try:
            await self._collection(collection).drop_index(name)
        except OperationFailure as e:
            logger.debug("drop_index %s.%s failed: %s", collection, name, e)
            return False
        return True

    async def list_indexes(self, collection) -> list[IndexInfo]:
        cursor = await self._collection(collection).list_indexes()
        indexes = []
        async for info in cursor:
            indexes.append(
                IndexInfo(
                    name=info["name"],
                    fields=dict(info["key"]),
                    unique=bool(info.get("unique", False)),
                    sparse=bool(info.get("sparse", False)),
                    expire_after_seconds=info.get("expireAfterSeconds"),
                )
            )
        return indexes

    async def count(self, collection, query) -> int:
        return await self._collection(collection).count_documents(dict(query), session=self._session)

    async def distinct(self, collection, field_name, query) -> list[Any]:
        return await self._collection(collection).distinct(field_name, dict(query), session=self._session)

    async def drop_collection(self, collection) -> bool:
        if self._db is None:
            raise BackendConnectionError("MongoDB driver is not connected")
        await self._db.drop_collection(collection)
        return True

    async def list_collections(self) -> list[str]:
        if self._db is None:
            raise BackendConnectionError("MongoDB driver is not connected")
        return sorted(await self._db.list_collection_names())

    def bind(self, session: Any) -> MongoDriver:
        bound = copy.copy(self)
        bound._session = session
        return bound

    async def start_transaction(self) -> Any:
        """Start a client session with an open transaction. Needs a replica set or mongos."""
        if self._client is None:
            raise BackendConnectionError("MongoDB driver is not connected")
        session = self._client.start_session()
        try:
            await session.start_transaction()
        except Exception:
            await session.end_session()
            raise
        return session

    async def commit_transaction(self, session: Any) -> None:
        try:
            await session.commit_transaction()
        finally:
            await session.end_session()

    async def abort_transaction(self, session: Any) -> None:
        try:
            await session.abort_transaction()
        finally:
            await session.end_session()

    async def watch(self, collection, pipeline) -> Any:
        return await self._collection(collection).watch([dict(stage) for stage in pipeline])


# =============================================================================
# Key-value emulation
# =============================================================================


class KeyValueDocumentDriver(DocumentDriver):
    """
    Document contract over a store that only addresses items by key.

    Subclasses supply item primitives; everything else is emulated by
    scanning. See the module docstring for the cost model.
    """

    supports_aggregation = False

    @property
    def key(self) -> str:
        return self.config.partition_key

    @abstractmethod
    async def get_item(self, collection: str, key: Any) -> Document | None: ...

    @abstractmethod
    async def put_item(self, collection: str, item: Document) -> None: ...

    @abstractmethod
    async def delete_item(self, collection: str, key: Any) -> None: ...

    @abstractmethod
    def scan(self, collection: str) -> AsyncIterator[Document]: ...

    def _key_lookup(self, query: Mapping[str, Any]) -> Any:
        """The key value when ``query`` is exactly ``{partition_key: scalar}``."""
        if len(query) == 1 and self.key in query:
            value = query[self.key]
            if not isinstance(value, (Mapping, list)):
                return value
        return None

    async def _matching(self, collection: str, query: Mapping[str, Any]) -> list[Document]:
        key_value = self._key_lookup(query)
        if key_value is not None:
            item = await self.get_item(collection, key_value)
            return [item] if item is not None else []
        logger.debug("Full scan of %s to evaluate filter %s", collection, dict(query))
        return [item async for item in self.scan(collection) if match_filter(item, query)]

    async def find(self, collection: str, spec: FindSpec) -> list[Document]:
        items = sort_documents(await self._matching(collection, spec.filter), spec.sort)
        end = spec.skip + spec.limit if spec.limit else None
        return [apply_projection(item, spec.projection) for item in items[spec.skip : end]]

    async def insert_many(self, collection, documents) -> list[Any]:
        ids = []
        for document in documents:
            await self.put_item(collection, document)
            ids.append(document[self.key])
        return ids

    async def update(self, collection, query, update, *, many, upsert=False) -> UpdateOutcome:
        if not is_update_document(update):
            raise OperationError("Update document must only contain update operators")
        items = await self._matching(collection, query)
        if not many:
            items = items[:1]

        outcome = UpdateOutcome(matched_count=len(items))
        for item in items:
            updated = apply_update(item, update)
            if updated != item:
                await self.put_item(collection, updated)
                outcome.modified_count += 1

        if not items and upsert:
            document = apply_update(_seed_upsert(query), update)
            document.setdefault(self.key, generate_id())
            await self.put_item(collection, document)
            outcome.upserted_id = document[self.key]
        return outcome

    async def replace(self, collection, query, document, *, upsert=False) -> UpdateOutcome:
        items = (await self._matching(collection, query))[:1]
        if not items:
            if not upsert:
                return UpdateOutcome()
            document = dict(document)
            document.setdefault(self.key, generate_id())
            await self.put_item(collection, document)
            return UpdateOutcome(upserted_id=document[self.key])

        replacement = {**document, self.key: items[0][self.key]}
        await self.put_item(collection, replacement)
        return UpdateOutcome(matched_count=1, modified_count=int(replacement != items[0]))

    async def delete(self, collection, query, *, many) -> int:
        items = await self._matching(collection, query)
        if not many:
            items = items[:1]
        for item in items:
            await self.delete_item(collection, item[self.key])
        return len(items)

    async def aggregate(self, collection, pipeline) -> list[Document]:
        raise UnsupportedOperationError("aggregate", self.backend.value)

    async def create_index(
        self, collection, fields, *, name, unique=False, sparse=False, expire_after_seconds=None
    ) -> None:
        logger.warning(
            "%s secondary indexes must be declared when the table is created; index %s on %s was not created",
            self.backend.value,
            name,
            collection,
        )

    async def drop_index(self, collection, name) -> bool:
        return False

    async def list_indexes(self, collection) -> list[IndexInfo]:
        return [IndexInfo(name="primary", fields={self.key: 1}, unique=True)]

    async def count(self, collection, query) -> int:
        return len(await self._matching(collection, query))

    async def distinct(self, collection, field_name, query) -> list[Any]:
        return distinct_values(await self._matching(collection, query), field_name)


def _to_dynamo(value: Any) -> Any:
    """DynamoDB rejects floats and datetimes; store Decimals and ISO strings."""
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {k: _to_dynamo(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_dynamo(v) for v in value]
    return value


def _from_dynamo(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, Mapping):
        return {k: _from_dynamo(v) for k, v in value.items()}
    if isinstance(value, (list, set)):
        return [_from_dynamo(v) for v in value]
    return value


class DynamoDBDriver(KeyValueDocumentDriver):
    """
    DynamoDB through aioboto3 table resources.

    Tables are named ``table_prefix + collection`` and must already exist with
    ``partition_key`` as their hash key.
    """

    backend = NoSQLDatabaseType.DYNAMODB

    def __init__(self, config: NoSQLConfig):
        super().__init__(config)
        self._stack: AsyncExitStack | None = None
        self._resource: Any = None

    @property
    def connected(self) -> bool:
        return self._resource is not None

    def _resource_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"region_name": self.config.region or "us-east-1"}
        if self.config.access_key_id:
            kwargs["aws_access_key_id"] = self.config.access_key_id
        if self.config.secret_access_key:
            kwargs["aws_secret_access_key"] = self.config.secret_access_key
        if self.config.endpoint:
            kwargs["endpoint_url"] = self.config.endpoint
        return kwargs

    async def connect(self) -> None:
        import aioboto3

        stack = AsyncExitStack()
        try:
            session = aioboto3.Session()
            self._resource = await stack.enter_async_context(
                session.resource("dynamodb", **self._resource_kwargs())
            )
        except Exception as e:
            await stack.aclose()
            raise BackendConnectionError(f"Cannot open DynamoDB resource: {e}") from e
        self._stack = stack

    async def disconnect(self) -> None:
        if self._stack is not None:
            await self._stack.aclose()
        self._stack = None
        self._resource = None

    def table_name(self, collection: str) -> str:
        return f"{self.config.table_prefix}{collection}"

    async def _table(self, collection: str) -> Any:
        if self._resource is None:
            raise BackendConnectionError("DynamoDB driver is not connected")
        return await self._resource.Table(self.table_name(collection))

    async def get_item(self, collection, key) -> Document | None:
        table = await self._table(collection)
        response = await table.get_item(Key={self.key: key})
        item = response.get("Item")
        return _from_dynamo(item) if item is not None else None

    async def put_item(self, collection, item) -> None:
        table = await self._table(collection)
        await table.put_item(Item=_to_dynamo(item))

    async def delete_item(self, collection, key) -> None:
        table = await self._table(collection)
        await table.delete_item(Key={self.key: key})

    async def scan(self, collection: str) -> AsyncIterator[Document]:
        table = await self._table(collection)
        kwargs: dict[str, Any] = {}
        while True:
            response = await table.scan(**kwargs)
            for item in response.get("Items", []):
                yield _from_dynamo(item)
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                break
            kwargs["ExclusiveStartKey"] = last_key

    async def drop_collection(self, collection) -> bool:
        table = await self._table(collection)
        await table.delete()
        return True

    async def list_collections(self) -> list[str]:
        if self._resource is None:
            raise BackendConnectionError("DynamoDB driver is not connected")
        prefix = self.config.table_prefix
        names = []
        async for table in self._resource.tables.all():
            if table.name.startswith(prefix):
                names.append(table.name[len(prefix) :])
        return sorted(names)


# =============================================================================
# In-process store
# =============================================================================


class MemoryDocumentDriver(DocumentDriver):
    """Dict-backed document store supporting the full contract, aggregation included."""

    backend = NoSQLDatabaseType.MEMORY

    def __init__(self, config: NoSQLConfig):
        super().__init__(config)
        self._collections: dict[str, dict[Any, Document]] = {}
        self._indexes: dict[str, dict[str, IndexInfo]] = {}
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True

    async def disconnect(self) -> None:
        self._connected = False

    def _store(self, collection: str) -> dict[Any, Document]:
        if not self._connected:
            raise BackendConnectionError("Memory document store is not connected")
        return self._collections.setdefault(collection, {})

    def _check_unique(self, collection: str, document: Document) -> None:
        for index in self._indexes.get(collection, {}).values():
            if not index.unique:
                continue
            key = tuple(get_path(document, f, None) for f in index.fields)
            if index.sparse and all(v is None for v in key):
                continue
            for other_id, other in self._store(collection).items():
                if other_id == document["_id"]:
                    continue
                if tuple(get_path(other, f, None) for f in index.fields) == key:
                    raise OperationError(f"Duplicate key for unique index {index.name} in {collection}")

    def _write(self, collection: str, document: Document) -> None:
        self._check_unique(collection, document)
        self._store(collection)[document["_id"]] = document

    def _matching(self, collection: str, query: Mapping[str, Any]) -> list[Document]:
        return [doc for doc in self._store(collection).values() if match_filter(doc, query)]

    async def find(self, collection: str, spec: FindSpec) -> list[Document]:
        items = sort_documents(self._matching(collection, spec.filter), spec.sort)
        end = spec.skip + spec.limit if spec.limit else None
        return [apply_projection(item, spec.projection) for item in items[spec.skip : end]]

    async def insert_many(self, collection, documents) -> list[Any]:
        store = self._store(collection)
        for document in documents:
            if document["_id"] in store:
                raise OperationError(f"Duplicate _id {document['_id']!r} in {collection}")
        ids = []
        for document in documents:
            self._write(collection, copy.deepcopy(document))
            ids.append(document["_id"])
        return ids

    async def update(self, collection, query, update, *, many, upsert=False) -> UpdateOutcome:
        if not is_update_document(update):
            raise OperationError("Update document must only contain update operators")
        items = self._matching(collection, query)
        if not many:
            items = items[:1]

        outcome = UpdateOutcome(matched_count=len(items))
        for item in items:
            updated = apply_update(item, update)
            if updated != item:
                self._write(collection, updated)
                outcome.modified_count += 1

        if not items and upsert:
            document = apply_update(_seed_upsert(query), update)
            document.setdefault("_id", generate_id())
            self._write(collection, document)
            outcome.upserted_id = document["_id"]
        return outcome

    async def replace(self, collection, query, document, *, upsert=False) -> UpdateOutcome:
        items = self._matching(collection, query)[:1]
        if not items:
            if not upsert:
                return UpdateOutcome()
            document = dict(document)
            document.setdefault("_id", generate_id())
            self._write(collection, document)
            return UpdateOutcome(upserted_id=document["_id"])
        replacement = {**document, "_id": items[0]["_id"]}
        self._write(collection, replacement)
        return UpdateOutcome(matched_count=1, modified_count=int(replacement != items[0]))

    async def delete(self, collection, query, *, many) -> int:
        items = self._matching(collection, query)
        if not many:
            items = items[:1]
        store = self._store(collection)
        for item in items:
            del store[item["_id"]]
        return len(items)

    async def aggregate(self, collection, pipeline) -> list[Document]:
        return run_pipeline(self._store(collection).values(), pipeline)

    async def create_index(
        self, collection, fields, *, name, unique=False, sparse=False, expire_after_seconds=None
    ) -> None:
        index = IndexInfo(name, dict(fields), unique, sparse, expire_after_seconds)
        indexes = self._indexes.setdefault(collection, {})
        previous = indexes.get(name)
        indexes[name] = index
        if unique:
            try:
                for document in self._store(collection).values():
                    self._check_unique(collection, document)
            except OperationError:
                if previous is None:
                    del indexes[name]
                else:
                    indexes[name] = previous
                raise

    async def drop_index(self, collection, name) -> bool:
        return self._indexes.get(collection, {}).pop(name, None) is not None

    async def list_indexes(self, collection) -> list[IndexInfo]:
        self._store(collection)
        return [IndexInfo("_id_", {"_id": 1}, unique=True), *self._indexes.get(collection, {}).values()]

    async def count(self, collection, query) -> int:
        return len(self._matching(collection, query))

    async def distinct(self, collection, field_name, query) -> list[Any]:
        return distinct_values(self._matching(collection, query), field_name)

    async def drop_collection(self, collection) -> bool:
        self._store(collection)
        self._indexes.pop(collection, None)
        return self._collections.pop(collection, None) is not None

    async def list_collections(self) -> list[str]:
        if not self._connected:
            raise BackendConnectionError("Memory document store is not connected")
        return sorted(self._collections)


_DRIVERS: dict[NoSQLDatabaseType, type[DocumentDriver]] = {
    NoSQLDatabaseType.MONGODB: MongoDriver,
    NoSQLDatabaseType.DYNAMODB: DynamoDBDriver,
    NoSQLDatabaseType.MEMORY: MemoryDocumentDriver,
}


def create_document_driver(config: NoSQLConfig) -> DocumentDriver:
    return _DRIVERS[config.type](config)
