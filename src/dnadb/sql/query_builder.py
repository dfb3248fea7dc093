"""
Fluent SELECT builder.

Conditions are ANDed in the order they were added; there is no OR
composition (use ``SQLModule.query`` for that). ``build()`` renders a plain
SQL string with inline literals and is idempotent. ``to_sql()`` renders the
parameterized form that ``execute()`` sends to the backend.

Example:
    qb = sql.create_query_builder()
    rows = await (
        qb.select("id", "name")
        .from_("users")
        .where("active", "=", True)
        .where_in("role", ["admin", "owner"])
        .order_by("name")
        .limit(50)
        .execute()
    )
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from dnadb.errors import InvalidQueryError, OperationError
from dnadb.sql.dialects import Dialect
from dnadb.sql.identifiers import (
    validate_column_reference,
    validate_having_expression,
    validate_join_condition,
    validate_operator,
    validate_select_expression,
    validate_sql_identifier,
)

if TYPE_CHECKING:
    from dnadb.sql.drivers import QueryResult

QueryExecutor = Callable[[str, list[Any]], Awaitable["QueryResult"]]


class ConditionKind(str, Enum):
    COMPARE = "compare"
    IN = "in"
    NULL = "null"
    NOT_NULL = "not_null"
    BETWEEN = "between"


class JoinType(str, Enum):
    INNER = "INNER"
    LEFT = "LEFT"
    RIGHT = "RIGHT"


@dataclass(frozen=True)
class Condition:
    """A single WHERE/HAVING condition."""

    column: str
    kind: ConditionKind
    operator: str = "="
    value: Any = None
    conjunction: str = "AND"

    def render(self, dialect: Dialect, parameterized: bool) -> tuple[str, list[Any]]:
        """Render to a SQL fragment, either with ``?`` params or inline literals."""

        def lit(v: Any) -> tuple[str, list[Any]]:
            return ("?", [v]) if parameterized else (dialect.render_literal(v), [])

        if self.kind == ConditionKind.NULL:
            return f"{self.column} IS NULL", []
        if self.kind == ConditionKind.NOT_NULL:
            return f"{self.column} IS NOT NULL", []
        if self.kind == ConditionKind.IN:
            values = list(self.value)
            if not values:
                # IN () is invalid SQL; an empty set matches nothing
                return "1 = 0", []
            parts: list[str] = []
            params: list[Any] = []
            for v in values:
                frag, p = lit(v)
                parts.append(frag)
                params.extend(p)
            return f"{self.column} IN ({', '.join(parts)})", params
        if self.kind == ConditionKind.BETWEEN:
            low, low_p = lit(self.value[0])
            high, high_p = lit(self.value[1])
            return f"{self.column} BETWEEN {low} AND {high}", low_p + high_p
        frag, params = lit(self.value)
        return f"{self.column} {self.operator} {frag}", params


@dataclass(frozen=True)
class Join:
    type: JoinType
    table: str
    condition: str
    alias: str | None = None

    def render(self) -> str:
        target = f"{self.table} {self.alias}" if self.alias else self.table
        return f"{self.type.value} JOIN {target} ON {self.condition}"


def _comparison(column: str, operator: str, value: Any) -> Condition:
    """Comparison condition; None becomes IS NULL / IS NOT NULL."""
    op = validate_operator(operator)
    if value is None:
        if op in ("=", "IS"):
            return Condition(column, ConditionKind.NULL, "IS")
        if op in ("!=", "<>", "IS NOT"):
            return Condition(column, ConditionKind.NOT_NULL, "IS NOT")
        raise InvalidQueryError(f"Operator '{op}' cannot compare against NULL")
    return Condition(column, ConditionKind.COMPARE, op, value)


@dataclass
class QueryBuilder:
    """
    Builder state for one SELECT statement.

    Mutated by chained calls until it is rendered; after the first render
    further mutation raises. Use :meth:`copy` to derive a new query.
    """

    dialect: Dialect = field(default_factory=Dialect)
    default_limit: int = 100
    max_limit: int = 1000
    executor: QueryExecutor | None = None

    table: str | None = None
    alias: str | None = None
    columns: list[str] = field(default_factory=list)
    joins: list[Join] = field(default_factory=list)
    conditions: list[Condition] = field(default_factory=list)
    group_by_columns: list[str] = field(default_factory=list)
    having_conditions: list[Condition] = field(default_factory=list)
    order_by_columns: list[tuple[str, str]] = field(default_factory=list)
    limit_value: int | None = None
    offset_value: int = 0
    _frozen: bool = field(default=False, repr=False)

    # =========================================================================
    # Chainable clauses
    # =========================================================================

    def select(self, *columns: str) -> QueryBuilder:
        self._check_mutable()
        self.columns.extend(validate_select_expression(c) for c in columns)
        return self

    def from_(self, table: str, alias: str | None = None) -> QueryBuilder:
        self._check_mutable()
        self.table = validate_sql_identifier(table, "table name")
        self.alias = validate_sql_identifier(alias, "table alias") if alias else None
        return self

    def join(self, table: str, condition: str, alias: str | None = None) -> QueryBuilder:
        return self._add_join(JoinType.INNER, table, condition, alias)

    def left_join(self, table: str, condition: str, alias: str | None = None) -> QueryBuilder:
        return self._add_join(JoinType.LEFT, table, condition, alias)

    def right_join(self, table: str, condition: str, alias: str | None = None) -> QueryBuilder:
        return self._add_join(JoinType.RIGHT, table, condition, alias)

    def where(self, column: str, operator: str, value: Any) -> QueryBuilder:
        self._check_mutable()
        column = validate_column_reference(column)
        return self._add(_comparison(column, operator, value))

    def where_in(self, column: str, values: Sequence[Any]) -> QueryBuilder:
        self._check_mutable()
        if isinstance(values, (str, bytes)):
            raise InvalidQueryError("where_in expects a sequence of values, not a string")
        return self._add(Condition(validate_column_reference(column), ConditionKind.IN, "IN", tuple(values)))

    def where_null(self, column: str) -> QueryBuilder:
        self._check_mutable()
        return self._add(Condition(validate_column_reference(column), ConditionKind.NULL, "IS"))

    def where_not_null(self, column: str) -> QueryBuilder:
        self._check_mutable()
        return self._add(Condition(validate_column_reference(column), ConditionKind.NOT_NULL, "IS NOT"))

    def where_between(self, column: str, low: Any, high: Any) -> QueryBuilder:
        self._check_mutable()
        return self._add(
            Condition(validate_column_reference(column), ConditionKind.BETWEEN, "BETWEEN", (low, high))
        )

    def order_by(self, column: str, direction: str = "ASC") -> QueryBuilder:
        self._check_mutable()
        direction = direction.upper()
        if direction not in ("ASC", "DESC"):
            raise InvalidQueryError(f"Invalid sort direction '{direction}'")
        self.order_by_columns.append((validate_column_reference(column), direction))
        return self

    def group_by(self, *columns: str) -> QueryBuilder:
        self._check_mutable()
        self.group_by_columns.extend(validate_column_reference(c) for c in columns)
        return self

    def having(self, column: str, operator: str, value: Any) -> QueryBuilder:
        self._check_mutable()
        expr = validate_having_expression(column)
        self.having_conditions.append(_comparison(expr, operator, value))
        return self

    def limit(self, limit: int) -> QueryBuilder:
        """Set LIMIT. Values above the configured maximum are capped, not rejected."""
        self._check_mutable()
        if limit < 0:
            raise InvalidQueryError("LIMIT cannot be negative")
        self.limit_value = min(limit, self.max_limit)
        return self

    def offset(self, offset: int) -> QueryBuilder:
        self._check_mutable()
        if offset < 0:
            raise InvalidQueryError("OFFSET cannot be negative")
        self.offset_value = offset
        return self

    # =========================================================================
    # Rendering
    # =========================================================================

    def build(self) -> str:
        """Render the statement with inline literals."""
        sql, _ = self._render(parameterized=False)
        return sql

    def to_sql(self) -> tuple[str, list[Any]]:
        """Render the statement with ``?`` placeholders and its parameter list."""
        return self._render(parameterized=True)

    async def execute(self) -> QueryResult:
        if self.executor is None:
            raise OperationError("Query builder has no executor; create it through SQLModule")
        sql, params = self.to_sql()
        return await self.executor(sql, params)

    def copy(self) -> QueryBuilder:
        """Mutable copy of this builder's state."""
        return QueryBuilder(
            dialect=self.dialect,
            default_limit=self.default_limit,
            max_limit=self.max_limit,
            executor=self.executor,
            table=self.table,
            alias=self.alias,
            columns=list(self.columns),
            joins=list(self.joins),
            conditions=list(self.conditions),
            group_by_columns=list(self.group_by_columns),
            having_conditions=list(self.having_conditions),
            order_by_columns=list(self.order_by_columns),
            limit_value=self.limit_value,
            offset_value=self.offset_value,
        )

    @property
    def effective_limit(self) -> int:
        return self.limit_value if self.limit_value is not None else min(self.default_limit, self.max_limit)

    def _render(self, parameterized: bool) -> tuple[str, list[Any]]:
        if not self.table:
            raise InvalidQueryError("Query has no table; call from_() first")
        self._frozen = True

        params: list[Any] = []
        columns = ", ".join(self.columns) if self.columns else "*"
        source = f"{self.table} {self.alias}" if self.alias else self.table
        sql = f"SELECT {columns} FROM {source}"

        for join in self.joins:
            sql += f" {join.render()}"

        if self.conditions:
            fragments = []
            for condition in self.conditions:
                frag, p = condition.render(self.dialect, parameterized)
                fragments.append(frag)
                params.extend(p)
            sql += " WHERE " + " AND ".join(fragments)

        if self.group_by_columns:
            sql += " GROUP BY " + ", ".join(self.group_by_columns)

        if self.having_conditions:
            fragments = []
            for condition in self.having_conditions:
                frag, p = condition.render(self.dialect, parameterized)
                fragments.append(frag)
                params.extend(p)
            sql += " HAVING " + " AND ".join(fragments)

        if self.order_by_columns:
            sql += " ORDER BY " + ", ".join(f"{col} {direction}" for col, direction in self.order_by_columns)

        sql += f" LIMIT {self.effective_limit} OFFSET {self.offset_value}"
        return sql, params

    def _add_join(self, join_type: JoinType, table: str, condition: str, alias: str | None) -> QueryBuilder:
        self._check_mutable()
        self.joins.append(
            Join(
                type=join_type,
                table=validate_sql_identifier(table, "table name"),
                condition=validate_join_condition(condition),
                alias=validate_sql_identifier(alias, "table alias") if alias else None,
            )
        )
        return self

    def _add(self, condition: Condition) -> QueryBuilder:
        self.conditions.append(condition)
        return self

    def _check_mutable(self) -> None:
        if self._frozen:
            raise InvalidQueryError("Query builder is frozen after rendering; use copy() to derive a new query")
