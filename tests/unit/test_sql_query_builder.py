"""Tests for the fluent SELECT builder."""

from __future__ import annotations

import pytest

from dnadb.errors import InvalidQueryError, OperationError
from dnadb.sql.dialects import get_dialect
from dnadb.sql.query_builder import QueryBuilder


def _builder(**kwargs) -> QueryBuilder:
    return QueryBuilder(dialect=get_dialect("sqlite"), **kwargs)


class TestRendering:
    def test_limit_is_capped_at_max_limit(self) -> None:
        qb = _builder(default_limit=10, max_limit=100)
        sql = qb.select("a").from_("t").where("x", "=", 1).limit(9999).build()
        assert "LIMIT 100" in sql
        assert "9999" not in sql

    def test_default_limit_applies_when_unset(self) -> None:
        sql = _builder(default_limit=25, max_limit=100).from_("t").build()
        assert sql == "SELECT * FROM t LIMIT 25 OFFSET 0"

    def test_build_inlines_literals(self) -> None:
        sql = (
            _builder()
            .select("id", "name")
            .from_("users")
            .where("name", "=", "O'Brien")
            .where("active", "=", True)
            .build()
        )
        assert "name = 'O''Brien'" in sql
        assert "active = TRUE" in sql

    def test_to_sql_uses_placeholders(self) -> None:
        sql, params = (
            _builder()
            .from_("users")
            .where("age", ">=", 18)
            .where_in("role", ["admin", "owner"])
            .where_between("score", 1, 5)
            .to_sql()
        )
        assert "age >= ?" in sql
        assert "role IN (?, ?)" in sql
        assert "score BETWEEN ? AND ?" in sql
        assert params == [18, "admin", "owner", 1, 5]

    def test_where_none_becomes_is_null(self) -> None:
        sql = _builder().from_("t").where("deleted_at", "=", None).where("x", "!=", None).build()
        assert "deleted_at IS NULL" in sql
        assert "x IS NOT NULL" in sql

    def test_having_none_becomes_is_null(self) -> None:
        sql, params = (
            _builder()
            .select("team")
            .from_("tickets")
            .group_by("team")
            .having("MAX(closed_at)", "=", None)
            .having("MIN(opened_at)", "<>", None)
            .to_sql()
        )
        assert "HAVING MAX(closed_at) IS NULL AND MIN(opened_at) IS NOT NULL" in sql
        assert params == []

    def test_having_none_with_ordering_operator_rejected(self) -> None:
        with pytest.raises(InvalidQueryError):
            _builder().from_("t").group_by("a").having("COUNT(*)", ">", None)

    def test_empty_in_matches_nothing(self) -> None:
        sql, params = _builder().from_("t").where_in("id", []).to_sql()
        assert "1 = 0" in sql
        assert params == []

    def test_clause_order(self) -> None:
        sql = (
            _builder()
            .select("role", "COUNT(*) AS n")
            .from_("users", "u")
            .left_join("teams", "u.team_id = teams.id")
            .where("u.active", "=", 1)
            .group_by("role")
            .having("COUNT(*)", ">", 2)
            .order_by("role", "desc")
            .limit(10)
            .offset(20)
            .build()
        )
        assert sql.index("FROM users u") < sql.index("LEFT JOIN teams")
        assert sql.index("WHERE") < sql.index("GROUP BY role") < sql.index("HAVING COUNT(*) > 2")
        assert sql.endswith("ORDER BY role DESC LIMIT 10 OFFSET 20")

    def test_build_is_idempotent(self) -> None:
        qb = _builder().from_("t").where("x", "=", 1)
        assert qb.build() == qb.build()


class TestValidation:
    def test_rejects_injected_table_name(self) -> None:
        with pytest.raises(InvalidQueryError):
            _builder().from_("users; DROP TABLE users")

    def test_rejects_unknown_operator(self) -> None:
        with pytest.raises(InvalidQueryError):
            _builder().from_("t").where("x", "OR 1=1 --", 1)

    def test_rejects_bad_join_condition(self) -> None:
        with pytest.raises(InvalidQueryError):
            _builder().from_("t").join("u", "t.id = u.id OR 1=1")

    def test_negative_limit_rejected(self) -> None:
        with pytest.raises(InvalidQueryError):
            _builder().from_("t").limit(-1)

    def test_missing_table(self) -> None:
        with pytest.raises(InvalidQueryError):
            _builder().select("a").build()

    def test_frozen_after_render(self) -> None:
        qb = _builder().from_("t")
        qb.build()
        with pytest.raises(InvalidQueryError):
            qb.where("x", "=", 1)

    def test_copy_is_mutable(self) -> None:
        qb = _builder().from_("t")
        qb.build()
        derived = qb.copy().where("x", "=", 1)
        assert "WHERE x = 1" in derived.build()
        assert "WHERE" not in qb.build()


class TestExecute:
    @pytest.mark.asyncio
    async def test_execute_without_executor(self) -> None:
        with pytest.raises(OperationError):
            await _builder().from_("t").execute()
