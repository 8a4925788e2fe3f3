"""Operator comparisons used by condition evaluators."""

from __future__ import annotations

from typing import Any

from sharewatch.policy.models import Operator


def _norm(value: Any) -> Any:
    return value.lower() if isinstance(value, str) else value


def compare(actual: Any, operator: Operator, expected: Any) -> bool:
    """Compare an observed value against a condition threshold.

    String equality and membership are case-insensitive. Ordering operators
    return False when either side is None or the types do not order.
    """
    if operator in (Operator.IN, Operator.NOT_IN):
        if isinstance(expected, (list, tuple, set, frozenset)):
            members = {_norm(v) for v in expected}
        else:
            members = {_norm(expected)}
        inside = _norm(actual) in members
        return inside if operator == Operator.IN else not inside

    if operator == Operator.EQ:
        return _norm(actual) == _norm(expected)
    if operator == Operator.NEQ:
        return _norm(actual) != _norm(expected)

    if actual is None or expected is None:
        return False
    try:
        if operator == Operator.GT:
            return actual > expected
        if operator == Operator.GTE:
            return actual >= expected
        if operator == Operator.LT:
            return actual < expected
        if operator == Operator.LTE:
            return actual <= expected
    except TypeError:
        return False
    return False
