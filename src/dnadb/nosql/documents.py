"""
Document helpers shared by the NoSQL drivers.

Filters, update operators, projections and sorts use the MongoDB dialect on
plain dicts. Drivers that cannot push these down to the backend (the memory
store, key-value stores) evaluate them here.

Example:
    >>> match_filter({"age": 31, "tags": ["a"]}, {"age": {"$gte": 30}, "tags": "a"})
    True
    >>> apply_update({"n": 1}, {"$inc": {"n": 2}})
    {'n': 3}
"""

from __future__ import annotations

import copy
import re
import time
import uuid
from collections.abc import Iterable, Mapping, Sequence
from datetime import UTC, date, datetime
from typing import Any

from dnadb.errors import OperationError

_MISSING = object()

Document = dict[str, Any]


def generate_id() -> str:
    """Millisecond-prefixed id, so ids sort roughly by creation time."""
    return f"{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


# =============================================================================
# Paths
# =============================================================================


def get_path(doc: Mapping[str, Any], path: str, default: Any = _MISSING) -> Any:
    """Resolve a dotted path (``"address.city"``, ``"items.0.sku"``)."""
    current: Any = doc
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return default
    return current


def set_path(doc: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            current[part] = nxt
        current = nxt
    current[parts[-1]] = value


def unset_path(doc: dict[str, Any], path: str) -> bool:
    parts = path.split(".")
    current: Any = doc
    for part in parts[:-1]:
        current = current.get(part) if isinstance(current, dict) else None
        if current is None:
            return False
    if isinstance(current, dict) and parts[-1] in current:
        del current[parts[-1]]
        return True
    return False


# =============================================================================
# Filters
# =============================================================================


def match_filter(doc: Mapping[str, Any], query: Mapping[str, Any] | None) -> bool:
    """True when ``doc`` satisfies every clause of ``query``."""
    for key, condition in (query or {}).items():
        if key == "$and":
            if not all(match_filter(doc, sub) for sub in condition):
                return False
        elif key == "$or":
            if not any(match_filter(doc, sub) for sub in condition):
                return False
        elif key == "$nor":
            if any(match_filter(doc, sub) for sub in condition):
                return False
        elif key.startswith("$"):
            raise OperationError(f"Unsupported top-level query operator '{key}'")
        elif not _match_field(get_path(doc, key), condition):
            return False
    return True


def _is_operator_dict(value: Any) -> bool:
    return isinstance(value, Mapping) and bool(value) and all(str(k).startswith("$") for k in value)


def _match_field(value: Any, condition: Any) -> bool:
    if not _is_operator_dict(condition):
        return _equals(value, condition)
    flags = re.IGNORECASE if "i" in str(condition.get("$options", "")) else 0
    for op, arg in condition.items():
        if op == "$options":
            continue
        if not _apply_operator(value, op, arg, flags):
            return False
    return True


def _equals(value: Any, expected: Any) -> bool:
    if value is _MISSING:
        return expected is None
    if isinstance(value, list) and not isinstance(expected, list):
        return expected in value
    return value == expected


def _compare(value: Any, op: str, arg: Any) -> bool:
    if value is _MISSING or value is None:
        return False
    try:
        if op == "$gt":
            return value > arg
        if op == "$gte":
            return value >= arg
        if op == "$lt":
            return value < arg
        return value <= arg
    except TypeError:
        return False


def _apply_operator(value: Any, op: str, arg: Any, flags: int = 0) -> bool:
    if op == "$eq":
        return _equals(value, arg)
    if op == "$ne":
        return not _equals(value, arg)
    if op in ("$gt", "$gte", "$lt", "$lte"):
        return _compare(value, op, arg)
    if op == "$in":
        return any(_equals(value, candidate) for candidate in arg)
    if op == "$nin":
        return not any(_equals(value, candidate) for candidate in arg)
    if op == "$exists":
        return (value is not _MISSING) == bool(arg)
    if op == "$regex":
        pattern = arg if isinstance(arg, re.Pattern) else re.compile(arg, flags)
        return isinstance(value, str) and pattern.search(value) is not None
    if op == "$contains":
        return isinstance(value, (str, list, tuple)) and arg in value
    if op == "$startsWith":
        return isinstance(value, str) and value.startswith(arg)
    if op == "$endsWith":
        return isinstance(value, str) and value.endswith(arg)
    if op == "$not":
        return not _match_field(value, arg)
    raise OperationError(f"Unsupported query operator '{op}'")


# =============================================================================
# Updates
# =============================================================================

UPDATE_OPERATORS = frozenset(
    {"$set", "$unset", "$inc", "$push", "$pull", "$addToSet", "$rename", "$min", "$max", "$currentDate"}
)


def apply_update(doc: Mapping[str, Any], update: Mapping[str, Any]) -> Document:
    """Return a copy of ``doc`` with the update operators applied."""
    unknown = [op for op in update if op not in UPDATE_OPERATORS]
    if unknown:
        raise OperationError(f"Unsupported update operator(s): {', '.join(unknown)}")

    result: Document = copy.deepcopy(dict(doc))
    for op, fields in update.items():
        for path, arg in fields.items():
            current = get_path(result, path)
            if op == "$set":
                set_path(result, path, arg)
            elif op == "$unset":
                unset_path(result, path)
            elif op == "$inc":
                base = 0 if current is _MISSING or current is None else current
                if not isinstance(base, (int, float)) or isinstance(base, bool):
                    raise OperationError(f"Cannot $inc non-numeric field '{path}'")
                set_path(result, path, base + arg)
            elif op in ("$push", "$addToSet"):
                items = _as_list(current, path, op)
                values = arg["$each"] if isinstance(arg, Mapping) and "$each" in arg else [arg]
                for value in values:
                    if op == "$push" or value not in items:
                        items.append(value)
                set_path(result, path, items)
            elif op == "$pull":
                if current is _MISSING:
                    continue
                items = _as_list(current, path, op)
                if isinstance(arg, Mapping):
                    kept = [v for v in items if not _pull_matches(v, arg)]
                else:
                    kept = [v for v in items if v != arg]
                set_path(result, path, kept)
            elif op == "$rename":
                if current is not _MISSING:
                    unset_path(result, path)
                    set_path(result, arg, current)
            elif op == "$min":
                if current is _MISSING or _compare(arg, "$lt", current):
                    set_path(result, path, arg)
            elif op == "$max":
                if current is _MISSING or _compare(arg, "$gt", current):
                    set_path(result, path, arg)
            elif op == "$currentDate":
                set_path(result, path, datetime.now(UTC))
    return result


def _as_list(current: Any, path: str, op: str) -> list[Any]:
    if current is _MISSING or current is None:
        return []
    if not isinstance(current, list):
        raise OperationError(f"Cannot apply {op} to non-array field '{path}'")
    return list(current)


def _pull_matches(value: Any, condition: Mapping[str, Any]) -> bool:
    if _is_operator_dict(condition):
        return _match_field(value, condition)
    return isinstance(value, Mapping) and match_filter(value, condition)


def is_update_document(update: Mapping[str, Any]) -> bool:
    return bool(update) and all(str(k).startswith("$") for k in update)


# =============================================================================
# Projection and sorting
# =============================================================================


def apply_projection(doc: Mapping[str, Any], projection: Mapping[str, Any] | None) -> Document:
    """Inclusion (``{"name": 1}``) or exclusion (``{"secret": 0}``) projection."""
    if not projection:
        return copy.deepcopy(dict(doc))
    including = any(v for k, v in projection.items() if k != "_id")
    if including:
        result: Document = {}
        if projection.get("_id", 1) and "_id" in doc:
            result["_id"] = doc["_id"]
        for path, flag in projection.items():
            if path == "_id" or not flag:
                continue
            value = get_path(doc, path)
            if value is not _MISSING:
                set_path(result, path, copy.deepcopy(value))
        return result

    result = copy.deepcopy(dict(doc))
    for path, flag in projection.items():
        if not flag:
            unset_path(result, path)
    return result


def _sort_key(value: Any) -> tuple[int, Any]:
    if value is _MISSING or value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (3, int(value))
    if isinstance(value, (int, float)):
        return (1, value)
    if isinstance(value, str):
        return (2, value)
    if isinstance(value, datetime):
        return (4, value.timestamp() if value.tzinfo else value.replace(tzinfo=UTC).timestamp())
    if isinstance(value, date):
        return (4, datetime(value.year, value.month, value.day, tzinfo=UTC).timestamp())
    return (5, str(value))


def sort_documents(docs: Iterable[Document], sort: Mapping[str, int] | None) -> list[Document]:
    """Stable multi-key sort. Missing and null values sort first ascending."""
    result = list(docs)
    for field, direction in reversed(list((sort or {}).items())):
        result.sort(key=lambda d, f=field: _sort_key(get_path(d, f)), reverse=direction < 0)
    return result


# =============================================================================
# Aggregation
# =============================================================================

_ACCUMULATORS = frozenset({"$sum", "$avg", "$min", "$max", "$count", "$push", "$first", "$last"})


def _resolve(doc: Mapping[str, Any], expr: Any) -> Any:
    """``"$field"`` resolves to the field value; anything else is a literal."""
    if isinstance(expr, str) and expr.startswith("$"):
        value = get_path(doc, expr[1:])
        return None if value is _MISSING else value
    if isinstance(expr, Mapping) and not _is_operator_dict(expr):
        return {k: _resolve(doc, v) for k, v in expr.items()}
    return expr


def _group_key(value: Any) -> Any:
    if isinstance(value, dict):
        return tuple(sorted((k, _group_key(v)) for k, v in value.items()))
    if isinstance(value, list):
        return tuple(_group_key(v) for v in value)
    return value


def _accumulate(op: str, expr: Any, docs: Sequence[Document]) -> Any:
    if op == "$count":
        return len(docs)
    values = [_resolve(d, expr) for d in docs]
    if op == "$push":
        return values
    if op == "$first":
        return values[0] if values else None
    if op == "$last":
        return values[-1] if values else None
    numbers = [v for v in values if isinstance(v, (int, float)) and not isinstance(v, bool)]
    if op == "$sum":
        return sum(numbers)
    if op == "$avg":
        return sum(numbers) / len(numbers) if numbers else None
    present = [v for v in values if v is not None]
    if not present:
        return None
    return min(present, key=_sort_key) if op == "$min" else max(present, key=_sort_key)


def _group(docs: Sequence[Document], spec: Mapping[str, Any]) -> list[Document]:
    if "_id" not in spec:
        raise OperationError("$group requires an _id expression")
    groups: dict[Any, tuple[Any, list[Document]]] = {}
    for doc in docs:
        group_id = _resolve(doc, spec["_id"])
        groups.setdefault(_group_key(group_id), (group_id, []))[1].append(doc)

    results = []
    for group_id, members in groups.values():
        out: Document = {"_id": group_id}
        for name, accumulator in spec.items():
            if name == "_id":
                continue
            if not _is_operator_dict(accumulator) or len(accumulator) != 1:
                raise OperationError(f"$group field '{name}' needs exactly one accumulator")
            op, expr = next(iter(accumulator.items()))
            if op not in _ACCUMULATORS:
                raise OperationError(f"Unsupported $group accumulator '{op}'")
            out[name] = _accumulate(op, expr, members)
        results.append(out)
    return results


def _project(doc: Document, spec: Mapping[str, Any]) -> Document:
    flags = {k: v for k, v in spec.items() if isinstance(v, (bool, int))}
    computed = {k: v for k, v in spec.items() if k not in flags}
    if not computed:
        return apply_projection(doc, flags)

    # Computed fields switch the stage to inclusion mode
    result: Document = {"_id": doc["_id"]} if "_id" in doc and flags.get("_id", 1) else {}
    for path, flag in flags.items():
        if path != "_id" and flag:
            value = get_path(doc, path)
            if value is not _MISSING:
                set_path(result, path, value)
    for name, expr in computed.items():
        result[name] = _resolve(doc, expr)
    return result


def run_pipeline(docs: Iterable[Document], pipeline: Sequence[Mapping[str, Any]]) -> list[Document]:
    """Evaluate ``$match $project $sort $skip $limit $group $count`` stages in order."""
    current = [copy.deepcopy(d) for d in docs]
    for stage in pipeline:
        if len(stage) != 1:
            raise OperationError(f"Pipeline stage must have exactly one operator: {dict(stage)}")
        op, arg = next(iter(stage.items()))
        if op == "$match":
            current = [d for d in current if match_filter(d, arg)]
        elif op == "$project":
            current = [_project(d, arg) for d in current]
        elif op == "$sort":
            current = sort_documents(current, arg)
        elif op == "$skip":
            current = current[int(arg) :]
        elif op == "$limit":
            current = current[: int(arg)]
        elif op == "$group":
            current = _group(current, arg)
        elif op == "$count":
            current = [{arg: len(current)}]
        else:
            raise OperationError(f"Unsupported aggregation stage '{op}'")
    return current
