"""Rule conditions: callables or ``$and``/``$or``/``$not`` objects with field comparisons."""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from typing import Any


class _Missing:
    """Marker for a path that does not resolve to any value."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def get_nested_value(data: Any, path: str) -> Any:
    """Resolve a dotted path (``a.b.0.c``); returns :data:`MISSING` when absent."""

    current = data
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.lstrip("-").isdigit():
            index = int(part)
            if not -len(current) <= index < len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


def _ordered(value: Any, expected: Any, op: Callable[[Any, Any], bool]) -> bool:
    if value is MISSING or value is None:
        return False
    try:
        return bool(op(value, expected))
    except TypeError:
        return False


def _present(value: Any) -> bool:
    return value is not MISSING and value is not None


_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "$eq": lambda value, expected: (None if value is MISSING else value) == expected,
    "$ne": lambda value, expected: (None if value is MISSING else value) != expected,
    "$gt": lambda value, expected: _ordered(value, expected, lambda a, b: a > b),
    "$gte": lambda value, expected: _ordered(value, expected, lambda a, b: a >= b),
    "$lt": lambda value, expected: _ordered(value, expected, lambda a, b: a < b),
    "$lte": lambda value, expected: _ordered(value, expected, lambda a, b: a <= b),
    "$in": lambda value, expected: value is not MISSING and value in expected,
    "$nin": lambda value, expected: value is MISSING or value not in expected,
    "$regex": lambda value, expected: isinstance(value, str) and re.search(expected, value) is not None,
    "$exists": lambda value, expected: _present(value) == bool(expected),
}


def evaluate_comparison(value: Any, comparison: Any) -> bool:
    """Apply a ``{"$op": expected}`` mapping (or a literal for equality) to ``value``."""

    if isinstance(comparison, Mapping) and comparison and all(
        isinstance(key, str) and key.startswith("$") for key in comparison
    ):
        for operator, expected in comparison.items():
            handler = _OPERATORS.get(operator)
            if handler is None:
                raise ValueError(f"Unknown condition operator: {operator}")
            if not handler(value, expected):
                return False
        return True
    return (None if value is MISSING else value) == comparison


def evaluate_condition(data: Any, condition: Any, context: Mapping[str, Any] | None = None) -> bool:
    """Evaluate a rule condition against a record."""

    if callable(condition):
        return bool(condition(data, context or {}))
    if isinstance(condition, Mapping):
        if "$and" in condition:
            return all(evaluate_condition(data, item, context) for item in condition["$and"])
        if "$or" in condition:
            return any(evaluate_condition(data, item, context) for item in condition["$or"])
        if "$not" in condition:
            return not evaluate_condition(data, condition["$not"], context)
        return all(
            evaluate_comparison(get_nested_value(data, field), comparison)
            for field, comparison in condition.items()
        )
    return bool(condition)
