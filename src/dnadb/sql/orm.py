"""
Model layer over the query builder and raw ``query()``.

A :class:`ModelDefinition` describes one table. ``SQLModule.define_model``
registers it (creating the table and indexes when ORM mode is on) and
``SQLModule.model(name)`` returns a :class:`Model` with CRUD helpers.

Lifecycle hooks run around each write. A failing ``before_*`` hook aborts
the call before any SQL is sent. A failing ``after_*`` hook propagates after
the write has happened; the write is not undone.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from dnadb.errors import InvalidQueryError, OperationError
from dnadb.sql.dialects import Dialect
from dnadb.sql.identifiers import validate_sql_identifier

if TYPE_CHECKING:
    from dnadb.sql.config import SQLConfig, TimestampFields
    from dnadb.sql.module import SQLModule
    from dnadb.sql.query_builder import QueryBuilder
    from dnadb.sql.transaction import Transaction

Hook = Callable[[dict[str, Any]], Awaitable[None] | None]

FIELD_TYPES = frozenset({"string", "text", "number", "float", "boolean", "date", "json", "binary"})


class RelationType(StrEnum):
    HAS_ONE = "hasOne"
    HAS_MANY = "hasMany"
    BELONGS_TO = "belongsTo"
    BELONGS_TO_MANY = "belongsToMany"


# =============================================================================
# Definitions
# =============================================================================


@dataclass(frozen=True)
class FieldDefinition:
    """
    One column.

    ``nullable`` defaults to False, so columns are NOT NULL unless stated.
    ``validate`` returns True when the value is acceptable, or False / an
    error message otherwise.
    """

    type: str
    nullable: bool = False
    unique: bool = False
    default: Any = None
    length: int | None = None
    precision: int | None = None
    scale: int | None = None
    enum: tuple[str, ...] | None = None
    auto_increment: bool = False
    validate: Callable[[Any], bool | str] | None = None

    def __post_init__(self) -> None:
        if self.type not in FIELD_TYPES:
            raise InvalidQueryError(f"Unknown field type '{self.type}'")


@dataclass(frozen=True)
class IndexDefinition:
    name: str
    fields: tuple[str, ...]
    unique: bool = False
    type: str | None = None  # btree, hash, gin, gist (PostgreSQL only)


@dataclass(frozen=True)
class RelationDefinition:
    """
    A relation to another registered model.

    ``foreign_key`` lives on this table for ``belongsTo`` and on the other
    table for ``hasOne``/``hasMany``. ``belongsToMany`` goes through the
    ``through`` table, matching ``foreign_key`` to this model and
    ``other_key`` to the related one.
    """

    name: str
    type: RelationType
    model: str
    foreign_key: str | None = None
    through: str | None = None
    other_key: str | None = None
    on_delete: str | None = None
    on_update: str | None = None


@dataclass(frozen=True)
class ModelHooks:
    before_create: Hook | None = None
    after_create: Hook | None = None
    before_update: Hook | None = None
    after_update: Hook | None = None
    before_delete: Hook | None = None
    after_delete: Hook | None = None
    before_validate: Hook | None = None
    after_validate: Hook | None = None


@dataclass(frozen=True)
class ModelDefinition:
    table_name: str
    fields: Mapping[str, FieldDefinition]
    primary_key: str = "id"
    indexes: tuple[IndexDefinition, ...] = ()
    relations: tuple[RelationDefinition, ...] = ()
    hooks: ModelHooks = field(default_factory=ModelHooks)

    def __post_init__(self) -> None:
        validate_sql_identifier(self.table_name, "table name")
        for name in self.fields:
            validate_sql_identifier(name, "column name")
        if self.primary_key not in self.fields:
            raise InvalidQueryError(
                f"Primary key '{self.primary_key}' is not a field of {self.table_name}"
            )
        for index in self.indexes:
            validate_sql_identifier(index.name, "index name")
            for column in index.fields:
                validate_sql_identifier(column, "index column")

    def relation(self, name: str) -> RelationDefinition:
        for relation in self.relations:
            if relation.name == name:
                return relation
        raise InvalidQueryError(f"Model {self.table_name} has no relation '{name}'")


# =============================================================================
# DDL
# =============================================================================

_REFERENTIAL_ACTIONS = frozenset({"CASCADE", "SET NULL", "RESTRICT", "NO ACTION"})


def _column_sql(
    name: str,
    spec: FieldDefinition,
    definition: ModelDefinition,
    dialect: Dialect,
) -> str:
    is_pk = name == definition.primary_key
    if is_pk and spec.auto_increment:
        return f"{name} {dialect_auto_increment(dialect)}"

    column = f"{name} {dialect.column_type(spec.type, spec.length)}"
    if spec.type == "number" and spec.precision is not None:
        column = f"{name} NUMERIC({spec.precision}, {spec.scale or 0})"
    if is_pk:
        column += " PRIMARY KEY"
    if spec.unique and not is_pk:
        column += " UNIQUE"
    if not spec.nullable and not is_pk:
        column += " NOT NULL"
    if spec.default is not None:
        column += f" DEFAULT {dialect.render_literal(spec.default)}"
    if spec.enum:
        allowed = ", ".join(dialect.render_literal(v) for v in spec.enum)
        column += f" CHECK ({name} IN ({allowed}))"
    return column


def timestamp_columns(config: SQLConfig) -> list[str]:
    """Columns managed by the model layer rather than declared as fields."""
    ts = config.timestamp_fields
    columns = [ts.created, ts.updated] if config.enable_timestamps else []
    if ts.deleted:
        columns.append(ts.deleted)
    return columns


def dialect_auto_increment(dialect: Dialect) -> str:
    return {
        "sqlite": "INTEGER PRIMARY KEY AUTOINCREMENT",
        "postgresql": "SERIAL PRIMARY KEY",
        "mysql": "INTEGER PRIMARY KEY AUTO_INCREMENT",
    }.get(dialect.name, "INTEGER PRIMARY KEY")


def create_table_statements(
    definition: ModelDefinition,
    dialect: Dialect,
    managed_columns: Sequence[str] = (),
    resolve_table: Callable[[str], tuple[str, str]] | None = None,
) -> list[str]:
    """``CREATE TABLE IF NOT EXISTS`` plus one ``CREATE INDEX`` per index."""
    columns = [_column_sql(name, spec, definition, dialect) for name, spec in definition.fields.items()]

    ts_type = dialect.column_type("date")
    for ts_column in managed_columns:
        if ts_column not in definition.fields:
            columns.append(f"{ts_column} {ts_type}")

    for relation in definition.relations:
        if relation.type != RelationType.BELONGS_TO or not relation.foreign_key:
            continue
        target_table, target_pk = (
            resolve_table(relation.model) if resolve_table else (relation.model, "id")
        )
        clause = f"FOREIGN KEY ({relation.foreign_key}) REFERENCES {target_table} ({target_pk})"
        for keyword, action in (("ON DELETE", relation.on_delete), ("ON UPDATE", relation.on_update)):
            if action:
                action = action.upper()
                if action not in _REFERENTIAL_ACTIONS:
                    raise InvalidQueryError(f"Invalid referential action '{action}'")
                clause += f" {keyword} {action}"
        columns.append(clause)

    statements = [f"CREATE TABLE IF NOT EXISTS {definition.table_name} ({', '.join(columns)})"]
    for index in definition.indexes:
        unique = "UNIQUE " if index.unique else ""
        using = f" USING {index.type}" if index.type and dialect.name == "postgresql" else ""
        statements.append(
            f"CREATE {unique}INDEX IF NOT EXISTS {index.name} ON {definition.table_name}{using} "
            f"({', '.join(index.fields)})"
        )
    return statements


# =============================================================================
# Model
# =============================================================================


async def _run_hook(hook: Hook | None, instance: dict[str, Any]) -> None:
    if hook is None:
        return
    result = hook(instance)
    if inspect.isawaitable(result):
        await result


class Model:
    """CRUD helpers for one registered model."""

    def __init__(self, module: SQLModule, name: str, definition: ModelDefinition) -> None:
        self.module = module
        self.name = name
        self.definition = definition

    def __repr__(self) -> str:
        return f"Model({self.name!r}, table={self.definition.table_name!r})"

    @property
    def _timestamps(self) -> TimestampFields | None:
        config = self.module.config
        return config.timestamp_fields if config.enable_timestamps else None

    @property
    def _deleted_column(self) -> str | None:
        return self.module.config.timestamp_fields.deleted

    @property
    def _known_columns(self) -> set[str]:
        return set(self.definition.fields) | set(timestamp_columns(self.module.config))

    # =========================================================================
    # Reads
    # =========================================================================

    def query(self, *, include_deleted: bool = False, transaction: Transaction | None = None) -> QueryBuilder:
        """Query builder on this model's table with soft-deleted rows filtered out."""
        qb = self.module.create_query_builder(transaction=transaction).from_(self.definition.table_name)
        if self._deleted_column and not include_deleted:
            qb.where_null(self._deleted_column)
        return qb

    async def find_all(
        self,
        where: Mapping[str, Any] | None = None,
        order_by: Mapping[str, str] | Sequence[str] | None = None,
        limit: int | None = None,
        offset: int | None = None,
        *,
        include_deleted: bool = False,
        transaction: Transaction | None = None,
    ) -> list[dict[str, Any]]:
        qb = self.query(include_deleted=include_deleted, transaction=transaction)
        self._apply_where(qb, where)
        if order_by:
            items = order_by.items() if isinstance(order_by, Mapping) else ((c, "ASC") for c in order_by)
            for column, direction in items:
                qb.order_by(column, direction)
        if limit is not None:
            qb.limit(limit)
        if offset:
            qb.offset(offset)
        result = await qb.execute()
        return result.rows

    async def find_one(
        self,
        where: Mapping[str, Any] | None = None,
        *,
        include_deleted: bool = False,
        transaction: Transaction | None = None,
    ) -> dict[str, Any] | None:
        rows = await self.find_all(where, limit=1, include_deleted=include_deleted, transaction=transaction)
        return rows[0] if rows else None

    async def find_by_id(
        self,
        id: Any,
        *,
        include_deleted: bool = False,
        transaction: Transaction | None = None,
    ) -> dict[str, Any] | None:
        return await self.find_one(
            {self.definition.primary_key: id}, include_deleted=include_deleted, transaction=transaction
        )

    async def count(
        self,
        where: Mapping[str, Any] | None = None,
        *,
        include_deleted: bool = False,
        transaction: Transaction | None = None,
    ) -> int:
        qb = self.query(include_deleted=include_deleted, transaction=transaction).select("COUNT(*) AS count")
        self._apply_where(qb, where)
        result = await qb.execute()
        return int(result.scalar() or 0)

    # =========================================================================
    # Writes
    # =========================================================================

    async def create(self, data: Mapping[str, Any], *, transaction: Transaction | None = None) -> dict[str, Any]:
        hooks = self.definition.hooks
        instance = dict(data)
        await _run_hook(hooks.before_create, instance)
        await self._validate(instance, partial=False)

        if self._timestamps is not None:
            now = datetime.now(UTC)
            instance.setdefault(self._timestamps.created, now)
            instance[self._timestamps.updated] = now

        columns = self._check_columns(instance)
        placeholders = ", ".join("?" for _ in columns)
        sql = f"INSERT INTO {self.definition.table_name} ({', '.join(columns)}) VALUES ({placeholders})"
        values = [instance[c] for c in columns]

        if self.module.dialect.supports_returning:
            result = await self._execute(f"{sql} RETURNING *", values, transaction)
            created = result.first()
        else:
            result = await self._execute(sql, values, transaction)
            pk_value = instance.get(self.definition.primary_key, result.last_row_id)
            created = await self.find_by_id(pk_value, include_deleted=True, transaction=transaction)

        if created is None:
            raise OperationError(f"Insert into {self.definition.table_name} returned no row")

        await _run_hook(hooks.after_create, created)
        await self.module.events.publish("model:created", {"model": self.name, "instance": created})
        return created

    async def update(
        self,
        id: Any,
        data: Mapping[str, Any],
        *,
        transaction: Transaction | None = None,
    ) -> dict[str, Any] | None:
        """Update one row. Returns the updated row, or None when no row matched."""
        hooks = self.definition.hooks
        changes = dict(data)
        await _run_hook(hooks.before_update, changes)
        await self._validate(changes, partial=True)
        changes.pop(self.definition.primary_key, None)

        if self._timestamps is not None:
            changes[self._timestamps.updated] = datetime.now(UTC)
        if not changes:
            return await self.find_by_id(id, transaction=transaction)

        columns = self._check_columns(changes)
        assignments = ", ".join(f"{c} = ?" for c in columns)
        sql = f"UPDATE {self.definition.table_name} SET {assignments} WHERE {self.definition.primary_key} = ?"
        values = [changes[c] for c in columns] + [id]

        if self.module.dialect.supports_returning:
            result = await self._execute(f"{sql} RETURNING *", values, transaction)
            updated = result.first()
        else:
            result = await self._execute(sql, values, transaction)
            updated = await self.find_by_id(id, include_deleted=True, transaction=transaction) if result.row_count else None

        if updated is None:
            return None

        await _run_hook(hooks.after_update, updated)
        await self.module.events.publish("model:updated", {"model": self.name, "instance": updated})
        return updated

    async def delete(self, id: Any, *, transaction: Transaction | None = None) -> bool:
        """Delete one row: soft when a deleted-at column is configured, hard otherwise."""
        hooks = self.definition.hooks
        instance = await self.find_by_id(id, transaction=transaction)
        if instance is None:
            return False

        await _run_hook(hooks.before_delete, instance)

        table, pk = self.definition.table_name, self.definition.primary_key
        if self._deleted_column:
            await self._execute(
                f"UPDATE {table} SET {self._deleted_column} = ? WHERE {pk} = ?",
                [datetime.now(UTC), id],
                transaction,
            )
        else:
            await self._execute(f"DELETE FROM {table} WHERE {pk} = ?", [id], transaction)

        await _run_hook(hooks.after_delete, instance)
        await self.module.events.publish(
            "model:deleted", {"model": self.name, "id": id, "soft": bool(self._deleted_column)}
        )
        return True

    # =========================================================================
    # Relations
    # =========================================================================

    async def load_related(
        self,
        instance: Mapping[str, Any],
        relation_name: str,
        *,
        transaction: Transaction | None = None,
    ) -> dict[str, Any] | list[dict[str, Any]] | None:
        relation = self.definition.relation(relation_name)
        target = self.module.model(relation.model)
        pk_value = instance.get(self.definition.primary_key)

        if relation.type == RelationType.BELONGS_TO:
            fk = relation.foreign_key or f"{relation.model}_id"
            if instance.get(fk) is None:
                return None
            return await target.find_by_id(instance[fk], transaction=transaction)

        fk = relation.foreign_key or f"{self.name}_id"
        if relation.type == RelationType.HAS_ONE:
            return await target.find_one({fk: pk_value}, transaction=transaction)
        if relation.type == RelationType.HAS_MANY:
            return await target.find_all({fk: pk_value}, transaction=transaction)

        if not relation.through or not relation.other_key:
            raise InvalidQueryError(f"Relation '{relation_name}' needs 'through' and 'other_key'")
        through = validate_sql_identifier(relation.through, "table name")
        link_qb = (
            self.module.create_query_builder(transaction=transaction)
            .select(validate_sql_identifier(relation.other_key, "column name"))
            .from_(through)
            .where(fk, "=", pk_value)
            .limit(self.module.config.max_limit)
        )
        links = await link_qb.execute()
        ids = [row[relation.other_key] for row in links.rows]
        if not ids:
            return []
        return await target.find_all({target.definition.primary_key: ids}, transaction=transaction)

    # =========================================================================
    # Internals
    # =========================================================================

    async def _execute(self, sql: str, params: list[Any], transaction: Transaction | None) -> Any:
        if transaction is not None:
            return await transaction.query(sql, params)
        return await self.module.query(sql, params)

    def _apply_where(self, qb: QueryBuilder, where: Mapping[str, Any] | None) -> None:
        for column, value in (where or {}).items():
            if value is None:
                qb.where_null(column)
            elif isinstance(value, (list, tuple, set, frozenset)):
                qb.where_in(column, list(value))
            else:
                qb.where(column, "=", value)

    def _check_columns(self, data: Mapping[str, Any]) -> list[str]:
        known = self._known_columns
        unknown = [c for c in data if c not in known]
        if unknown:
            raise InvalidQueryError(f"Unknown column(s) for {self.definition.table_name}: {', '.join(unknown)}")
        return list(data)

    async def _validate(self, data: dict[str, Any], *, partial: bool) -> None:
        hooks = self.definition.hooks
        await _run_hook(hooks.before_validate, data)

        errors: list[str] = []
        for name, spec in self.definition.fields.items():
            if name not in data:
                is_generated = name == self.definition.primary_key and (
                    spec.auto_increment or spec.type == "number"
                )
                if not partial and not spec.nullable and spec.default is None and not is_generated:
                    errors.append(f"{name} is required")
                continue
            value = data[name]
            if value is None:
                if not spec.nullable:
                    errors.append(f"{name} cannot be null")
                continue
            if spec.enum and value not in spec.enum:
                errors.append(f"{name} must be one of {', '.join(spec.enum)}")
            if spec.length and spec.type == "string" and isinstance(value, str) and len(value) > spec.length:
                errors.append(f"{name} exceeds maximum length {spec.length}")
            if spec.validate is not None:
                outcome = spec.validate(value)
                if outcome is False:
                    errors.append(f"{name} failed validation")
                elif isinstance(outcome, str):
                    errors.append(outcome)

        if errors:
            raise OperationError(f"Validation failed for {self.name}: {'; '.join(errors)}")

        await _run_hook(hooks.after_validate, data)
