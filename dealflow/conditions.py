"""Evaluation of per-action guard conditions."""

from __future__ import annotations

from typing import Any, Mapping

from .contracts import ActionCondition, ConditionOperator


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _resolve_field(condition: ActionCondition, data: Mapping[str, Any]) -> Any:
    for key in (condition.field, "dealValue", "deal_value"):
        value = data.get(key)
        if value is not None:
            return value
    return None


def evaluate_condition(condition: ActionCondition, data: Mapping[str, Any]) -> bool:
    """Return ``True`` when ``data`` satisfies ``condition``.

    The field falls back to ``dealValue``/``deal_value`` when it is absent from
    the payload. String operators compare case-insensitively; numeric operators
    are false when either side is not a number.
    """
    field_value = _resolve_field(condition, data)
    expected = condition.value
    op = condition.operator

    if op in (ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN):
        left, right = _as_number(field_value), _as_number(expected)
        if left is None or right is None:
            return False
        return left > right if op == ConditionOperator.GREATER_THAN else left < right

    actual = str(field_value).lower() if field_value is not None else ""
    wanted = str(expected).lower()
    if op == ConditionOperator.EQUALS:
        return actual == wanted
    if op == ConditionOperator.NOT_EQUALS:
        return actual != wanted
    if op == ConditionOperator.CONTAINS:
        return wanted in actual
    if op == ConditionOperator.NOT_CONTAINS:
        return wanted not in actual
    return True
