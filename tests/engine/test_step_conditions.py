import pytest

from agentflow.domain.models import WorkflowCondition
from agentflow.engine.conditions import evaluate_condition, first_failing_condition, resolve_field

SCOPE = {
    "input": {"order": {"total": 120, "items": [{"sku": "A-1"}]}, "flag": True, "tier": "gold"},
    "variables": {"count": 0},
}


def test_resolve_field_walks_dicts_and_lists():
    assert resolve_field("input.order.total", SCOPE) == 120
    assert resolve_field("input.order.items.0.sku", SCOPE) == "A-1"
    assert resolve_field("input.order.items.5.sku", SCOPE) is None
    assert resolve_field("input.missing.deeper", SCOPE) is None


@pytest.mark.parametrize("operator, actual, expected, outcome", [
    ("equals", "gold", "gold", True),
    ("equals", True, 1, False),
    ("not_equals", 1, 2, True),
    ("greater_than", 120, 100, True),
    ("less_than", 120, 100, False),
    ("contains", "golden", "gold", True),
    ("contains", None, "x", False),
    ("exists", 0, None, True),
    ("not_exists", None, None, True),
    ("greater_than", "abc", 1, False),
    ("made_up", 1, 2, True),
])
def test_evaluate_condition(operator, actual, expected, outcome):
    assert evaluate_condition(actual, operator, expected) is outcome


def test_first_failing_condition_is_conjunctive():
    conditions = [
        WorkflowCondition(field="input.flag", operator="equals", value=True),
        WorkflowCondition(field="input.order.total", operator="greater_than", value=500),
        WorkflowCondition(field="input.tier", operator="equals", value="silver"),
    ]
    failing = first_failing_condition(conditions, SCOPE)
    assert failing is conditions[1]


def test_all_conditions_hold():
    conditions = [WorkflowCondition(field="variables.count", operator="exists")]
    assert first_failing_condition(conditions, SCOPE) is None
    assert first_failing_condition([], SCOPE) is None
