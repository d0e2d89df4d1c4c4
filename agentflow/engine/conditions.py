# agentflow/engine/conditions.py

from typing import Any, Callable, Dict, Iterable, Optional

from agentflow.domain.models import WorkflowCondition


def resolve_field(path: str, scope: Dict[str, Any]) -> Any:
    """
    e.g. path = "input.order.total"
    逐级下钻，任一级不存在即返回 None
    """
    current: Any = scope
    for key in path.split("."):
        if isinstance(current, dict):
            current = current.get(key)
        elif isinstance(current, list) and key.isdigit() and int(key) < len(current):
            current = current[int(key)]
        else:
            return None
    return current


def _strict_eq(actual: Any, expected: Any) -> bool:
    # True == 1 在 Python 中成立，这里按 JSON 类型区分
    if isinstance(actual, bool) != isinstance(expected, bool):
        return False
    return actual == expected


def _contains(actual: Any, expected: Any) -> bool:
    if actual is None:
        return False
    return str(expected) in str(actual)


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "eq": _strict_eq,
    "ne": lambda a, e: not _strict_eq(a, e),
    "gt": lambda a, e: a > e,
    "lt": lambda a, e: a < e,
    "gte": lambda a, e: a >= e,
    "lte": lambda a, e: a <= e,
    "contains": _contains,
    "exists": lambda a, e: a is not None,
    "not_exists": lambda a, e: a is None,
}

# authoring vocabulary accepted by the validator
OPERATOR_ALIASES = {
    "equals": "eq",
    "not_equals": "ne",
    "greater_than": "gt",
    "less_than": "lt",
}


def evaluate_condition(actual: Any, operator: str, expected: Any) -> bool:
    """Unknown operators evaluate to True; incomparable types evaluate to False."""
    fn = OPERATORS.get(OPERATOR_ALIASES.get(operator, operator))
    if fn is None:
        return True
    try:
        return bool(fn(actual, expected))
    except TypeError:
        return False


def first_failing_condition(
    conditions: Iterable[WorkflowCondition], scope: Dict[str, Any]
) -> Optional[WorkflowCondition]:
    """All conditions must hold (AND); returns the first one that does not."""
    for condition in conditions:
        actual = resolve_field(condition.field, scope)
        if not evaluate_condition(actual, condition.operator, condition.value):
            return condition
    return None
