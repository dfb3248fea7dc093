"""End-to-end tests for SQLModule against SQLite."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from dnadb.errors import (
    ConfigurationError,
    InvalidQueryError,
    OperationError,
    PoolExhaustedError,
    TransactionStateError,
)
from dnadb.generated import ModuleContext
from dnadb.sql import (
    FieldDefinition,
    IndexDefinition,
    ModelDefinition,
    ModelHooks,
    RelationDefinition,
    RelationType,
    SQLConfig,
    SQLMigration,
    SQLModule,
)
from dnadb.sql.transaction import TransactionStatus


def _user_definition(**kwargs: Any) -> ModelDefinition:
    return ModelDefinition(
        table_name="users",
        fields={
            "id": FieldDefinition(type="number", auto_increment=True),
            "email": FieldDefinition(type="string", unique=True, length=100),
            "name": FieldDefinition(type="string"),
            "role": FieldDefinition(type="string", enum=("admin", "member"), default="member"),
        },
        indexes=(IndexDefinition(name="idx_users_name", fields=("name",)),),
        **kwargs,
    )


class TestConfig:
    def test_pool_min_above_pool_max(self) -> None:
        with pytest.raises(ConfigurationError):
            SQLModule({"type": "postgresql", "database": "app", "pool_min": 5, "pool_max": 2})

    def test_sqlite_requires_filename(self) -> None:
        with pytest.raises(ConfigurationError):
            SQLConfig(type="sqlite", database="app")

    def test_invalid_migrations_table(self) -> None:
        with pytest.raises(ConfigurationError):
            SQLConfig(type="sqlite", database="app", filename="x.db", migrations_table="bad-name")

    def test_default_ports(self) -> None:
        assert SQLConfig(type="postgresql", database="app").effective_port == 5432
        assert SQLConfig(type="mysql", database="app").effective_port == 3306


class TestQueries:
    @pytest.mark.asyncio
    async def test_query_and_builder(self, sql: SQLModule) -> None:
        await sql.query("CREATE TABLE items (id INTEGER PRIMARY KEY, label TEXT)")
        await sql.query("INSERT INTO items (label) VALUES (?), (?), (?)", ["a", "b", "c"])

        rows = (await sql.create_query_builder().select("label").from_("items").where("id", ">", 1).execute()).rows
        assert [r["label"] for r in rows] == ["b", "c"]

    @pytest.mark.asyncio
    async def test_select_results_are_cached_until_a_write(self, sql: SQLModule) -> None:
        await sql.query("CREATE TABLE items (id INTEGER PRIMARY KEY)")
        first = await sql.query("SELECT COUNT(*) AS n FROM items")
        second = await sql.query("SELECT COUNT(*) AS n FROM items")
        assert second.cached and not first.cached

        await sql.query("INSERT INTO items (id) VALUES (1)")
        third = await sql.query("SELECT COUNT(*) AS n FROM items")
        assert not third.cached
        assert third.scalar() == 1
        assert sql.get_stats()["cache_hits"] == 1

    @pytest.mark.asyncio
    async def test_failed_query_is_wrapped_and_counted(self, sql: SQLModule) -> None:
        with pytest.raises(OperationError):
            await sql.query("SELECT * FROM missing_table")
        stats = sql.get_stats()
        assert stats["failed_operations"] == 1
        assert "missing_table" in stats["last_error"]

    @pytest.mark.asyncio
    async def test_query_events(self, sql: SQLModule) -> None:
        seen: list[str] = []
        sql.events.subscribe("*", lambda event: seen.append(event.topic))
        await sql.query("CREATE TABLE t (id INTEGER)")
        assert "query:executed" in seen


class TestTransactions:
    @pytest.mark.asyncio
    async def test_commit_on_success(self, sql: SQLModule) -> None:
        await sql.query("CREATE TABLE t (id INTEGER)")
        async with sql.transaction() as tx:
            await tx.query("INSERT INTO t (id) VALUES (?)", [1])
        assert tx.status == TransactionStatus.COMMITTED
        assert (await sql.query("SELECT COUNT(*) FROM t")).scalar() == 1

    @pytest.mark.asyncio
    async def test_rollback_on_error(self, sql: SQLModule) -> None:
        await sql.query("CREATE TABLE t (id INTEGER)")
        with pytest.raises(RuntimeError):
            async with sql.transaction() as tx:
                await tx.query("INSERT INTO t (id) VALUES (?)", [1])
                raise RuntimeError("boom")
        assert tx.status == TransactionStatus.ROLLED_BACK
        assert (await sql.query("SELECT COUNT(*) FROM t")).scalar() == 0

    @pytest.mark.asyncio
    async def test_terminal_transaction_rejects_calls(self, sql: SQLModule) -> None:
        tx = await sql.begin_transaction()
        await tx.commit()
        with pytest.raises(TransactionStateError):
            await tx.query("SELECT 1")
        with pytest.raises(TransactionStateError):
            await tx.rollback()

    @pytest.mark.asyncio
    async def test_savepoints(self, sql: SQLModule) -> None:
        await sql.query("CREATE TABLE t (id INTEGER)")
        async with sql.transaction() as tx:
            await tx.query("INSERT INTO t (id) VALUES (1)")
            await tx.savepoint("sp1")
            await tx.query("INSERT INTO t (id) VALUES (2)")
            await tx.savepoint("sp2")
            await tx.rollback_to_savepoint("sp1")
            assert tx.savepoints == ["sp1"]
            await tx.query("INSERT INTO t (id) VALUES (3)")
            await tx.release_savepoint("sp1")
            assert tx.savepoints == []

        rows = (await sql.query("SELECT id FROM t ORDER BY id")).rows
        assert [r["id"] for r in rows] == [1, 3]

    @pytest.mark.asyncio
    async def test_duplicate_and_unknown_savepoints(self, sql: SQLModule) -> None:
        async with sql.transaction() as tx:
            await tx.savepoint("sp")
            with pytest.raises(TransactionStateError):
                await tx.savepoint("sp")
            with pytest.raises(TransactionStateError):
                await tx.release_savepoint("other")

    @pytest.mark.asyncio
    async def test_savepoint_name_is_validated(self, sql: SQLModule) -> None:
        async with sql.transaction() as tx:
            with pytest.raises(InvalidQueryError):
                await tx.savepoint("sp; DROP TABLE t")

    @pytest.mark.asyncio
    async def test_transaction_events(self, sql: SQLModule) -> None:
        topics: list[str] = []
        sql.events.subscribe("transaction:started", lambda e: topics.append(e.topic))
        sql.events.subscribe("transaction:committed", lambda e: topics.append(e.topic))
        async with sql.transaction():
            pass
        assert topics == ["transaction:started", "transaction:committed"]


class TestPool:
    @pytest.mark.asyncio
    async def test_pool_exhaustion(self, sql: SQLModule) -> None:
        open_transactions = [await sql.begin_transaction() for _ in range(3)]
        with pytest.raises(PoolExhaustedError):
            await sql.query("SELECT 1")
        for tx in open_transactions:
            await tx.rollback()
        assert (await sql.query("SELECT 1 AS one")).scalar() == 1

    @pytest.mark.asyncio
    async def test_disconnect_rolls_back_open_transactions(self, sqlite_path: Path) -> None:
        module = SQLModule({"type": "sqlite", "database": "app", "filename": str(sqlite_path)})
        assert await module.connect()
        tx = await module.begin_transaction()
        assert await module.disconnect()
        assert tx.status == TransactionStatus.ROLLED_BACK
        assert not module.is_connected


class TestModels:
    @pytest.mark.asyncio
    async def test_crud(self, sql: SQLModule) -> None:
        users = await sql.define_model("user", _user_definition())

        created = await users.create({"email": "ada@example.com", "name": "Ada"})
        assert created["id"] is not None
        assert created["role"] == "member"
        assert created["created_at"] is not None

        updated = await users.update(created["id"], {"role": "admin"})
        assert updated is not None and updated["role"] == "admin"

        assert await users.count() == 1
        assert await users.find_one({"email": "ada@example.com"}) is not None
        assert await users.delete(created["id"])
        assert await users.find_by_id(created["id"]) is None
        assert not await users.delete(created["id"])

    @pytest.mark.asyncio
    async def test_validation(self, sql: SQLModule) -> None:
        users = await sql.define_model("user", _user_definition())
        with pytest.raises(OperationError, match="email is required"):
            await users.create({"name": "Ada"})
        with pytest.raises(OperationError, match="role must be one of"):
            await users.create({"email": "a@b.c", "name": "Ada", "role": "owner"})
        with pytest.raises(InvalidQueryError):
            await users.create({"email": "a@b.c", "name": "Ada", "nickname": "x"})

    @pytest.mark.asyncio
    async def test_hooks_run_around_create(self, sql: SQLModule) -> None:
        calls: list[str] = []

        def before_create(instance: dict[str, Any]) -> None:
            calls.append("before")
            instance["email"] = instance["email"].lower()

        async def after_create(instance: dict[str, Any]) -> None:
            calls.append("after")

        users = await sql.define_model(
            "user", _user_definition(hooks=ModelHooks(before_create=before_create, after_create=after_create))
        )
        created = await users.create({"email": "ADA@EXAMPLE.COM", "name": "Ada"})
        assert created["email"] == "ada@example.com"
        assert calls == ["before", "after"]

    @pytest.mark.asyncio
    async def test_model_writes_inside_transaction(self, sql: SQLModule) -> None:
        users = await sql.define_model("user", _user_definition())
        with pytest.raises(RuntimeError):
            async with sql.transaction() as tx:
                await users.create({"email": "ada@example.com", "name": "Ada"}, transaction=tx)
                raise RuntimeError("abort")
        assert await users.count() == 0

    @pytest.mark.asyncio
    async def test_unknown_model(self, sql: SQLModule) -> None:
        with pytest.raises(OperationError):
            sql.model("missing")


class TestSoftDeleteAndRelations:
    @pytest.mark.asyncio
    async def test_soft_delete_hides_rows(self, sqlite_path: Path) -> None:
        module = SQLModule(
            {
                "type": "sqlite",
                "database": "app",
                "filename": str(sqlite_path),
                "timestamp_fields": {"deleted": "deleted_at"},
            }
        )
        assert await module.connect()
        try:
            users = await module.define_model("user", _user_definition())
            created = await users.create({"email": "ada@example.com", "name": "Ada"})

            assert await users.delete(created["id"])
            assert await users.find_by_id(created["id"]) is None
            assert await users.count() == 0

            kept = await users.find_by_id(created["id"], include_deleted=True)
            assert kept is not None and kept["deleted_at"] is not None
            assert await users.count(include_deleted=True) == 1
        finally:
            await module.disconnect()

    @pytest.mark.asyncio
    async def test_belongs_to_and_has_many(self, sql: SQLModule) -> None:
        await sql.define_model(
            "user",
            _user_definition(
                relations=(RelationDefinition(name="posts", type=RelationType.HAS_MANY, model="post", foreign_key="user_id"),)
            ),
        )
        posts = await sql.define_model(
            "post",
            ModelDefinition(
                table_name="posts",
                fields={
                    "id": FieldDefinition(type="number", auto_increment=True),
                    "user_id": FieldDefinition(type="number"),
                    "title": FieldDefinition(type="string"),
                },
                relations=(
                    RelationDefinition(
                        name="author", type=RelationType.BELONGS_TO, model="user", foreign_key="user_id", on_delete="cascade"
                    ),
                ),
            ),
        )
        ddl = await sql.query("SELECT sql FROM sqlite_master WHERE name = ?", ["posts"])
        assert "FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE" in ddl.rows[0]["sql"]

        users = sql.model("user")
        author = await users.create({"email": "ada@example.com", "name": "Ada"})
        post = await posts.create({"user_id": author["id"], "title": "Notes"})

        loaded_author = await posts.load_related(post, "author")
        assert loaded_author is not None and loaded_author["id"] == author["id"]
        loaded_posts = await users.load_related(author, "posts")
        assert [p["title"] for p in loaded_posts] == ["Notes"]

    @pytest.mark.asyncio
    async def test_invalid_referential_action(self, sql: SQLModule) -> None:
        await sql.define_model("user", _user_definition())
        definition = ModelDefinition(
            table_name="posts",
            fields={"id": FieldDefinition(type="number"), "user_id": FieldDefinition(type="number")},
            relations=(
                RelationDefinition(name="author", type=RelationType.BELONGS_TO, model="user", foreign_key="user_id", on_delete="explode"),
            ),
        )
        with pytest.raises(InvalidQueryError):
            await sql.define_model("post", definition)


class TestSlowQueries:
    @pytest.mark.asyncio
    async def test_queries_over_threshold_are_counted(self, sqlite_path: Path) -> None:
        module = SQLModule(
            {"type": "sqlite", "database": "app", "filename": str(sqlite_path), "slow_query_threshold": 0}
        )
        assert await module.connect()
        try:
            await module.query("SELECT 1")
            stats = module.get_stats()
            assert stats["slow_queries"] >= 1
            assert stats["slow_queries"] <= stats["total_operations"]
        finally:
            await module.disconnect()


class TestLightweightMigrations:
    @pytest.mark.asyncio
    async def test_up_and_down(self, sql: SQLModule) -> None:
        async def create(module: SQLModule) -> None:
            await module.query("CREATE TABLE notes (id INTEGER PRIMARY KEY)")

        async def drop(module: SQLModule) -> None:
            await module.query("DROP TABLE notes")

        sql.register_migration(SQLMigration(version=1, name="notes", up=create, down=drop))
        applied = await sql.migrate("up")
        assert [m.version for m in applied] == [1]
        assert await sql.applied_versions() == {1}

        reverted = await sql.migrate("down")
        assert [m.version for m in reverted] == [1]
        assert await sql.applied_versions() == set()

    def test_duplicate_version(self, sqlite_path: Path) -> None:
        module = SQLModule({"type": "sqlite", "database": "app", "filename": str(sqlite_path)})

        async def noop(_: SQLModule) -> None:
            return None

        module.register_migration(SQLMigration(version=1, name="a", up=noop))
        with pytest.raises(OperationError):
            module.register_migration(SQLMigration(version=1, name="b", up=noop))


class TestGeneratedFiles:
    def test_files_omit_password(self, sqlite_path: Path) -> None:
        module = SQLModule(
            {"type": "sqlite", "database": "app", "filename": str(sqlite_path), "password": "secret"}
        )
        files = module.get_files(ModuleContext(project_name="My Shop"))
        assert [f.path for f in files] == ["my_shop/database/sql.py", "config/database/sql.yaml"]
        assert all("secret" not in f.content for f in files)
        assert "SQLModule" in files[0].content
