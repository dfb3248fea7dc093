"""
SQL identifier and expression validation.

Values always travel as bound parameters; identifiers cannot, so everything
interpolated into SQL text goes through one of these checks first.
"""

from __future__ import annotations

import re

from dnadb.errors import InvalidQueryError

# Valid SQL identifier pattern (alphanumeric and underscore, not starting with digit)
_IDENT = r"[A-Za-z_][A-Za-z0-9_]*"
_QUALIFIED = rf"{_IDENT}(?:\.{_IDENT})?"

_VALID_IDENTIFIER_PATTERN = re.compile(rf"^{_IDENT}$")
_QUALIFIED_PATTERN = re.compile(rf"^{_QUALIFIED}$")
_SELECT_PATTERN = re.compile(
    rf"""^(?:
        \*
        | {_IDENT}\.\*
        | (?:{_QUALIFIED}
          | (?:COUNT|SUM|AVG|MIN|MAX)\(\s*(?:DISTINCT\s+)?(?:\*|{_QUALIFIED})\s*\)
          )(?:\s+AS\s+{_IDENT})?
    )$""",
    re.IGNORECASE | re.VERBOSE,
)
_AGGREGATE_PATTERN = re.compile(
    rf"^(?:{_QUALIFIED}|(?:COUNT|SUM|AVG|MIN|MAX)\(\s*(?:DISTINCT\s+)?(?:\*|{_QUALIFIED})\s*\))$",
    re.IGNORECASE,
)
_JOIN_TERM = rf"{_QUALIFIED}\s*(?:=|<>|!=|<=|>=|<|>)\s*{_QUALIFIED}"
_JOIN_CONDITION_PATTERN = re.compile(
    rf"^{_JOIN_TERM}(?:\s+AND\s+{_JOIN_TERM})*$",
    re.IGNORECASE,
)

COMPARISON_OPERATORS = frozenset(
    {"=", "!=", "<>", "<", "<=", ">", ">=", "LIKE", "NOT LIKE", "ILIKE", "IS", "IS NOT"}
)


def is_valid_identifier(name: str) -> bool:
    return bool(name) and bool(_VALID_IDENTIFIER_PATTERN.match(name))


def validate_sql_identifier(name: str, context: str = "identifier") -> str:
    """
    Validate that a string is a safe SQL identifier.

    Args:
        name: The identifier to validate
        context: Description of what's being validated (for error messages)

    Returns:
        The validated name

    Raises:
        InvalidQueryError: If the name contains invalid characters
    """
    if not name:
        raise InvalidQueryError(f"SQL {context} cannot be empty")
    if not _VALID_IDENTIFIER_PATTERN.match(name):
        raise InvalidQueryError(
            f"Invalid SQL {context} '{name}': must contain only letters, digits, "
            "and underscores, and cannot start with a digit"
        )
    return name


def validate_column_reference(name: str, context: str = "column") -> str:
    """Validate ``column`` or ``table.column``."""
    if not name or not _QUALIFIED_PATTERN.match(name):
        raise InvalidQueryError(f"Invalid SQL {context} '{name}'")
    return name


def validate_select_expression(expr: str) -> str:
    """Validate a select-list entry: column, ``t.*``, aggregate, optional ``AS`` alias."""
    expr = expr.strip()
    if not _SELECT_PATTERN.match(expr):
        raise InvalidQueryError(f"Invalid select expression '{expr}'")
    return expr


def validate_having_expression(expr: str) -> str:
    expr = expr.strip()
    if not _AGGREGATE_PATTERN.match(expr):
        raise InvalidQueryError(f"Invalid HAVING expression '{expr}'")
    return expr


def validate_join_condition(condition: str) -> str:
    """Validate ``a.x = b.y [AND ...]`` join conditions."""
    condition = condition.strip()
    if not _JOIN_CONDITION_PATTERN.match(condition):
        raise InvalidQueryError(f"Invalid join condition '{condition}'")
    return condition


def validate_operator(operator: str) -> str:
    op = " ".join(operator.upper().split())
    if op not in COMPARISON_OPERATORS:
        raise InvalidQueryError(f"Unsupported comparison operator '{operator}'")
    return op
