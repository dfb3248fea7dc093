"""Tests for migration dependency ordering, versions and migration files."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest

from dnadb.errors import ConfigurationError, CyclicDependencyError, DependencyError
from dnadb.migration import (
    ConditionOperator,
    DatabaseType,
    DependencyGraph,
    Migration,
    MigrationFileStore,
    MigrationScript,
    MigrationType,
    ValidationRule,
    VersionGenerator,
    sanitize_name,
)


def migration(migration_id: str, version: str, *dependencies: str) -> Migration:
    return Migration(
        id=migration_id,
        version=version,
        name=migration_id,
        type=MigrationType.CUSTOM_SQL,
        database_type=DatabaseType.SQLITE,
        dependencies=dependencies,
    )


class TestDependencyGraph:
    def test_dependencies_are_edges(self) -> None:
        graph = DependencyGraph([migration("a", "1"), migration("b", "2", "a"), migration("c", "3", "a", "b")])
        assert graph.dependencies("c") == ["a", "b"]
        assert graph.find_cycle() is None

    def test_unknown_dependencies_are_not_edges(self) -> None:
        graph = DependencyGraph([migration("a", "1", "ghost")])
        assert graph.dependencies("a") == []
        assert graph.find_cycle() is None

    def test_find_cycle(self) -> None:
        graph = DependencyGraph([migration("a", "1", "c"), migration("b", "2", "a"), migration("c", "3", "b")])
        cycle = graph.find_cycle()
        assert cycle is not None
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b", "c"}

    def test_validate_batch_raises_on_cycle(self) -> None:
        a, b = migration("a", "1", "b"), migration("b", "2", "a")
        with pytest.raises(CyclicDependencyError):
            DependencyGraph([a, b]).validate_batch([a, b], applied=[])

    def test_validate_batch_names_missing_dependency(self) -> None:
        a = migration("a", "1")
        b = migration("b", "2", "a")
        graph = DependencyGraph([a, b])

        with pytest.raises(DependencyError) as exc_info:
            graph.validate_batch([b], applied=[])
        assert exc_info.value.migration_id == "b"
        assert exc_info.value.missing == "a"

    def test_validate_batch_accepts_applied_or_earlier(self) -> None:
        a = migration("a", "1")
        b = migration("b", "2", "a")
        c = migration("c", "3", "b")
        graph = DependencyGraph([a, b, c])

        graph.validate_batch([b, c], applied=["a"])
        graph.validate_batch([a, b, c], applied=[])


class TestVersionGenerator:
    def test_uses_utc_timestamp(self) -> None:
        versions = VersionGenerator(clock=lambda: datetime(2026, 3, 4, 5, 6, 7, tzinfo=UTC))
        assert versions.next() == "20260304050607"

    def test_collision_bumps_by_one_second(self) -> None:
        versions = VersionGenerator(clock=lambda: datetime(2026, 3, 4, 5, 6, 7, tzinfo=UTC))
        assert [versions.next() for _ in range(3)] == ["20260304050607", "20260304050608", "20260304050609"]

    def test_observed_version_is_respected(self) -> None:
        versions = VersionGenerator(clock=lambda: datetime(2026, 1, 1, tzinfo=UTC))
        versions.observe("20270101000000")
        assert versions.next() == "20270101000001"


class TestMigrationFiles:
    @pytest.mark.parametrize(
        ("name", "expected"),
        [("Add Users", "add_users"), ("add-index:email", "add_index_email"), ("  v2  ", "v2")],
    )
    def test_sanitize_name(self, name: str, expected: str) -> None:
        assert sanitize_name(name) == expected

    def test_sanitize_rejects_empty(self) -> None:
        with pytest.raises(ConfigurationError):
            sanitize_name("!!!")

    def test_write_and_load(self, tmp_path: Path) -> None:
        store = MigrationFileStore(tmp_path / "migrations")
        original = Migration(
            id="migration_abc",
            version="20260101000000",
            name="add_users",
            type=MigrationType.CREATE_TABLE,
            database_type=DatabaseType.SQLITE,
            up=MigrationScript(sql="CREATE TABLE users (id INTEGER)"),
            down=MigrationScript(sql="DROP TABLE users"),
            dependencies=("migration_000",),
            tags=("schema",),
            pre_conditions=(
                ValidationRule(name="fresh", query="SELECT 1", operator=ConditionOperator.EQUALS, expected_result=1),
            ),
        )

        path = store.write(original)
        assert path.name == "20260101000000_add_users.yaml"
        assert path.with_suffix(".sql").exists()

        loaded = store.load_all()
        assert loaded == [original]

    def test_load_sorted_by_version(self, tmp_path: Path) -> None:
        store = MigrationFileStore(tmp_path)
        store.write(migration("late", "20260102000000"))
        store.write(migration("early", "20260101000000"))
        assert [m.id for m in store.load_all()] == ["early", "late"]

    def test_document_migration_has_no_sql_preview(self, tmp_path: Path) -> None:
        store = MigrationFileStore(tmp_path)
        docs = Migration(
            id="docs",
            version="1",
            name="docs",
            type=MigrationType.CUSTOM_NOSQL,
            database_type=DatabaseType.MONGODB,
            up=MigrationScript(nosql=({"collection": "users", "op": "delete_many", "filter": {}},)),
        )
        path = store.write(docs)
        assert not path.with_suffix(".sql").exists()
        assert store.read(path).up.nosql == ({"collection": "users", "op": "delete_many", "filter": {}},)

    def test_invalid_file_rejected(self, tmp_path: Path) -> None:
        (tmp_path / "broken.yaml").write_text("- just\n- a list\n")
        with pytest.raises(ConfigurationError):
            MigrationFileStore(tmp_path).load_all()

    def test_missing_directory_is_empty(self, tmp_path: Path) -> None:
        assert MigrationFileStore(tmp_path / "nope").load_all() == []


class TestValidationRule:
    @pytest.mark.parametrize(
        ("operator", "expected", "actual", "outcome"),
        [
            (ConditionOperator.EQUALS, 3, 3, True),
            (ConditionOperator.NOT_EQUALS, 3, 3, False),
            (ConditionOperator.GREATER_THAN, 0, 5, True),
            (ConditionOperator.LESS_THAN, 0, None, False),
            (ConditionOperator.CONTAINS, "a", ["a", "b"], True),
            (ConditionOperator.CONTAINS, "lo", "hello", True),
            (ConditionOperator.EXISTS, None, 0, True),
            (ConditionOperator.EXISTS, None, None, False),
        ],
    )
    def test_evaluate(self, operator: ConditionOperator, expected: object, actual: object, outcome: bool) -> None:
        rule = ValidationRule(name="r", query="q", operator=operator, expected_result=expected)
        assert rule.evaluate(actual) is outcome
