"""Tests for per-action guard conditions."""

import pytest
import yaml

from dealflow.conditions import evaluate_condition
from dealflow.contracts import ActionCondition, parse_action


def _cond(field, operator, value):
    return ActionCondition(field=field, operator=operator, value=value)


@pytest.mark.parametrize(
    "operator,value,expected",
    [
        ("equals", "QUALIFIED", True),
        ("not_equals", "qualified", False),
        ("contains", "quali", True),
        ("not_contains", "lost", True),
    ],
)
def test_string_operators_are_case_insensitive(operator, value, expected):
    data = {"stage": "Qualified"}
    assert evaluate_condition(_cond("stage", operator, value), data) is expected


def test_numeric_operators():
    data = {"amount": "1500000"}
    assert evaluate_condition(_cond("amount", "greater_than", "1000000"), data)
    assert not evaluate_condition(_cond("amount", "less_than", "1000000"), data)


def test_numeric_operator_on_non_number_is_false():
    data = {"amount": "a lot"}
    assert not evaluate_condition(_cond("amount", "greater_than", "10"), data)


def test_missing_field_falls_back_to_deal_value():
    assert evaluate_condition(_cond("size", "greater_than", "100"), {"dealValue": 500})
    assert evaluate_condition(_cond("size", "less_than", "100"), {"deal_value": 5})


def test_missing_field_without_fallback():
    assert not evaluate_condition(_cond("stage", "equals", "won"), {})
    assert evaluate_condition(_cond("stage", "not_equals", "won"), {})


def test_numeric_threshold_from_yaml():
    action = parse_action(
        yaml.safe_load(
            """
id: big-deal
type: send_notification
condition:
  field: dealValue
  operator: greater_than
  value: 1000000
"""
        )
    )
    assert action.condition.value == "1000000"
    assert evaluate_condition(action.condition, {"dealValue": 1500000})
    assert not evaluate_condition(action.condition, {"dealValue": 250000.5})
