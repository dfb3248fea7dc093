"""Tests for NoSQL session transactions and change streams."""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from dnadb.errors import OperationError, TransactionStateError, UnsupportedOperationError
from dnadb.nosql import (
    ChangeStream,
    MongoDriver,
    NoSQLConfig,
    NoSQLModule,
    NoSQLTransaction,
    NoSQLTransactionStatus,
)


class FakeChangeStream:
    """Async iterator over canned change events with an awaitable close."""

    def __init__(self, events: list[dict[str, Any]], error: Exception | None = None) -> None:
        self._events = list(events)
        self._error = error
        self.close = AsyncMock()

    def __aiter__(self) -> FakeChangeStream:
        return self

    async def __anext__(self) -> dict[str, Any]:
        if self._events:
            return self._events.pop(0)
        if self._error is not None:
            raise self._error
        raise StopAsyncIteration


def make_session() -> MagicMock:
    session = MagicMock()
    session.start_transaction = AsyncMock()
    session.commit_transaction = AsyncMock()
    session.abort_transaction = AsyncMock()
    session.end_session = AsyncMock()
    return session


def make_collection() -> MagicMock:
    coll = MagicMock()
    coll.insert_many = AsyncMock(return_value=MagicMock(inserted_ids=["a1"]))
    coll.update_one = AsyncMock(return_value=MagicMock(matched_count=1, modified_count=1, upserted_id=None))
    coll.delete_one = AsyncMock(return_value=MagicMock(deleted_count=1))
    coll.watch = AsyncMock()
    return coll


@pytest.fixture
def session() -> MagicMock:
    return make_session()


@pytest.fixture
def coll() -> MagicMock:
    return make_collection()


@pytest.fixture
def mongo(session: MagicMock, coll: MagicMock) -> NoSQLModule:
    config = NoSQLConfig(type="mongodb", database="app", auto_index=False)
    driver = MongoDriver(config)
    driver._client = MagicMock()
    driver._client.start_session.return_value = session
    driver._db = MagicMock()
    driver._db.__getitem__.return_value = coll
    return NoSQLModule(config, driver=driver)


class TestUnsupportedBackends:
    @pytest.mark.asyncio
    async def test_memory_store_rejects_transactions(self, nosql: NoSQLModule) -> None:
        with pytest.raises(UnsupportedOperationError) as exc_info:
            await nosql.begin_transaction()
        assert exc_info.value.backend == "memory"

    @pytest.mark.asyncio
    async def test_memory_store_rejects_watch(self, nosql: NoSQLModule) -> None:
        with pytest.raises(UnsupportedOperationError):
            await nosql.watch("items")
        with pytest.raises(UnsupportedOperationError):
            await nosql.collection("items").watch()


class TestMongoTransactions:
    @pytest.mark.asyncio
    async def test_writes_run_inside_the_session(
        self, mongo: NoSQLModule, session: MagicMock, coll: MagicMock
    ) -> None:
        tx = await mongo.begin_transaction()
        assert isinstance(tx, NoSQLTransaction)
        session.start_transaction.assert_awaited_once()

        await tx.collection("orders").insert_one({"total": 5})
        await tx.collection("orders").update_one({"total": 5}, {"$set": {"paid": True}})

        assert coll.insert_many.await_args.kwargs["session"] is session
        assert coll.update_one.await_args.kwargs["session"] is session

    @pytest.mark.asyncio
    async def test_outside_writes_have_no_session(self, mongo: NoSQLModule, coll: MagicMock) -> None:
        await mongo.begin_transaction()
        await mongo.collection("orders").insert_one({"total": 5})
        assert coll.insert_many.await_args.kwargs["session"] is None

    @pytest.mark.asyncio
    async def test_commit_ends_session(self, mongo: NoSQLModule, session: MagicMock) -> None:
        topics: list[str] = []
        mongo.events.subscribe("*", lambda event: topics.append(event.topic))

        tx = await mongo.begin_transaction()
        await tx.commit()

        session.commit_transaction.assert_awaited_once()
        session.end_session.assert_awaited_once()
        session.abort_transaction.assert_not_awaited()
        assert tx.status == NoSQLTransactionStatus.COMMITTED
        assert topics == ["transaction:started", "transaction:committed"]

    @pytest.mark.asyncio
    async def test_context_manager_aborts_on_error(self, mongo: NoSQLModule, session: MagicMock) -> None:
        with pytest.raises(RuntimeError):
            async with await mongo.begin_transaction() as tx:
                await tx.collection("orders").insert_one({"total": 5})
                raise RuntimeError("boom")

        session.abort_transaction.assert_awaited_once()
        session.commit_transaction.assert_not_awaited()
        session.end_session.assert_awaited_once()
        assert tx.status == NoSQLTransactionStatus.ABORTED

    @pytest.mark.asyncio
    async def test_context_manager_commits_on_clean_exit(self, mongo: NoSQLModule, session: MagicMock) -> None:
        async with await mongo.begin_transaction() as tx:
            await tx.collection("orders").delete_one({"total": 5})

        session.commit_transaction.assert_awaited_once()
        assert tx.status == NoSQLTransactionStatus.COMMITTED

    @pytest.mark.asyncio
    async def test_use_after_commit_raises(self, mongo: NoSQLModule) -> None:
        tx = await mongo.begin_transaction()
        orders = tx.collection("orders")
        await tx.commit()

        with pytest.raises(TransactionStateError):
            await orders.insert_one({"total": 1})
        with pytest.raises(TransactionStateError):
            await tx.commit()
        with pytest.raises(TransactionStateError):
            tx.collection("other")

    @pytest.mark.asyncio
    async def test_failed_commit_marks_aborted(self, mongo: NoSQLModule, session: MagicMock) -> None:
        session.commit_transaction.side_effect = RuntimeError("write conflict")
        tx = await mongo.begin_transaction()

        with pytest.raises(OperationError):
            await tx.commit()

        assert tx.status == NoSQLTransactionStatus.ABORTED
        session.end_session.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_start_ends_session(self, mongo: NoSQLModule, session: MagicMock) -> None:
        session.start_transaction.side_effect = RuntimeError("standalone server")

        with pytest.raises(OperationError):
            await mongo.begin_transaction()

        session.end_session.assert_awaited_once()


class TestChangeStreams:
    @pytest.mark.asyncio
    async def test_watch_yields_events_and_closes(self, mongo: NoSQLModule, coll: MagicMock) -> None:
        stream = FakeChangeStream([{"operationType": "insert"}, {"operationType": "delete"}])
        coll.watch.return_value = stream
        topics: list[str] = []
        mongo.events.subscribe("*", lambda event: topics.append(event.topic))

        received = []
        async with await mongo.collection("orders").watch([{"$match": {"operationType": "insert"}}]) as changes:
            assert isinstance(changes, ChangeStream)
            async for change in changes:
                received.append(change["operationType"])

        assert received == ["insert", "delete"]
        assert coll.watch.await_args.args[0] == [{"$match": {"operationType": "insert"}}]
        stream.close.assert_awaited_once()
        assert topics == ["changestream:created", "changestream:closed"]

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, mongo: NoSQLModule, coll: MagicMock) -> None:
        stream = FakeChangeStream([{"operationType": "insert"}])
        coll.watch.return_value = stream

        changes = await mongo.watch("orders")
        await changes.close()
        await changes.close()

        stream.close.assert_awaited_once()
        with pytest.raises(StopAsyncIteration):
            await changes.__anext__()

    @pytest.mark.asyncio
    async def test_stream_errors_are_wrapped(self, mongo: NoSQLModule, coll: MagicMock) -> None:
        coll.watch.return_value = FakeChangeStream([], error=RuntimeError("cursor killed"))

        changes = await mongo.watch("orders")
        with pytest.raises(OperationError, match="cursor killed"):
            await changes.__anext__()
