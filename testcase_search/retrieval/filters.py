"""
Shape validation and translation of metadata filters.

Callers filter on test case metadata (module, priority, risk, category and
any other indexed field). Filters are checked for shape only, then handed
to Pinecone in its own syntax:

    {"module": "auth"}                      → {"module": "auth"}
    {"priority": ["P1", "P2"]}              → {"priority": {"$in": ["P1", "P2"]}}
    {"risk": {"$ne": "low"}}                → unchanged
    {"estimate": {"$gte": 2, "$lt": 8}}     → unchanged

None values are dropped. Anything else (nested objects, unknown operators,
non-numeric range bounds, empty lists) is a ValidationError.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from testcase_search.errors import ValidationError

SCALAR_TYPES = (str, int, float, bool)

EQUALITY_OPERATORS = frozenset({"$eq", "$ne"})
RANGE_OPERATORS = frozenset({"$gt", "$gte", "$lt", "$lte"})
LIST_OPERATORS = frozenset({"$in", "$nin"})
OPERATORS = EQUALITY_OPERATORS | RANGE_OPERATORS | LIST_OPERATORS


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_scalar_list(key: str, values: Any) -> list[Any]:
    if not isinstance(values, (list, tuple)) or not values:
        raise ValidationError(f"Filter '{key}' needs a non-empty list of values")
    for item in values:
        if not isinstance(item, SCALAR_TYPES):
            raise ValidationError(
                f"Filter '{key}' list items must be strings, numbers or booleans"
            )
    return list(values)


def _translate_operators(key: str, clause: Mapping[str, Any]) -> dict[str, Any]:
    if not clause:
        raise ValidationError(f"Filter '{key}' has an empty operator object")

    translated: dict[str, Any] = {}
    for operator, operand in clause.items():
        if operator not in OPERATORS:
            raise ValidationError(
                f"Filter '{key}' uses unsupported operator {operator!r}; "
                f"expected one of {sorted(OPERATORS)}"
            )
        if operator in RANGE_OPERATORS:
            if not _is_number(operand):
                raise ValidationError(
                    f"Filter '{key}' operator {operator} needs a number"
                )
            translated[operator] = operand
        elif operator in LIST_OPERATORS:
            translated[operator] = _check_scalar_list(key, operand)
        else:
            if not isinstance(operand, SCALAR_TYPES):
                raise ValidationError(
                    f"Filter '{key}' operator {operator} needs a scalar value"
                )
            translated[operator] = operand
    return translated


def translate_filters(filters: Mapping[str, Any] | None) -> dict[str, Any] | None:
    """
    Validate a caller filter and return it in Pinecone filter syntax.

    Returns:
        The translated filter, or None when there is nothing to filter on.

    Raises:
        ValidationError: If the filter is malformed.
    """
    if filters is None:
        return None
    if not isinstance(filters, Mapping):
        raise ValidationError("Filters must be an object of field → condition")

    translated: dict[str, Any] = {}
    for key, value in filters.items():
        if not isinstance(key, str) or not key.strip():
            raise ValidationError("Filter keys must be non-empty strings")
        if key.startswith("$"):
            raise ValidationError(f"Top-level operator {key!r} is not supported")

        if value is None:
            continue
        if isinstance(value, SCALAR_TYPES):
            translated[key] = value
        elif isinstance(value, (list, tuple)):
            translated[key] = {"$in": _check_scalar_list(key, value)}
        elif isinstance(value, Mapping):
            translated[key] = _translate_operators(key, value)
        else:
            raise ValidationError(
                f"Filter '{key}' must be a scalar, a list or an operator object"
            )

    return translated or None


__all__ = ["translate_filters", "OPERATORS"]
