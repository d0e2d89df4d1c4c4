from agentflow.domain.models import RetryPolicy, WorkflowStep, WorkflowTemplate
from agentflow.domain.validator import (
    build_validation_report,
    detect_circular_dependencies,
    validate_input,
    validate_json_schema,
    validate_step_for_execution,
    validate_template,
    validate_variables,
)


def _step(step_id, order=1, **extra):
    return WorkflowStep(step_id=step_id, name=f"Step {step_id}", handler="noop", order=order, **extra)


def test_valid_template_passes():
    template = WorkflowTemplate(name="ok", steps=[_step("a"), _step("b", 2, dependencies=["a"])])
    result = validate_template(template)
    assert result.success
    assert result.errors == []


def test_template_without_steps_is_rejected():
    result = validate_template(WorkflowTemplate(name="empty"))
    assert not result.success
    assert "Template must have at least one step" in result.errors


def test_missing_name_and_bad_timeout():
    template = WorkflowTemplate(name=" ", steps=[_step("a")], timeout=0)
    result = validate_template(template)
    assert "Template name is required" in result.errors
    assert "Template timeout must be positive" in result.errors


def test_duplicate_step_ids_and_unknown_dependency():
    template = WorkflowTemplate(name="dup", steps=[
        _step("a"),
        _step("a", 2),
        _step("c", 3, dependencies=["missing"]),
    ])
    errors = validate_template(template).errors
    assert any("Duplicate stepId 'a'" in e for e in errors)
    assert any("dependency 'missing' not found" in e for e in errors)


def test_self_dependency_is_an_error_but_not_a_cycle():
    template = WorkflowTemplate(name="self", steps=[_step("a", dependencies=["a"])])
    errors = validate_template(template).errors
    assert any("cannot depend on itself" in e for e in errors)
    assert not any("Circular" in e for e in errors)


def test_circular_dependencies_are_reported():
    steps = [
        _step("a", 1, dependencies=["c"]),
        _step("b", 2, dependencies=["a"]),
        _step("c", 3, dependencies=["b"]),
    ]
    cycles = detect_circular_dependencies(steps)
    assert len(cycles) == 1
    assert cycles[0].startswith("a -> c -> b -> a")

    result = validate_template(WorkflowTemplate(name="cycle", steps=steps))
    assert not result.success
    assert any(e.startswith("Circular dependencies detected") for e in result.errors)


def test_duplicate_order_is_only_a_warning():
    template = WorkflowTemplate(name="orders", steps=[_step("a", 1), _step("b", 1)])
    result = validate_template(template)
    assert result.success
    assert any("duplicate order 1" in w for w in result.warnings)


def test_step_field_rules():
    bad = _step("a", type="teleport", on_error="explode", retries=-1, timeout=0, retry_delay=0)
    errors = validate_template(WorkflowTemplate(name="bad", steps=[bad])).errors
    assert any("invalid step type 'teleport'" in e for e in errors)
    assert any("invalid onError policy 'explode'" in e for e in errors)
    assert any("retries must be non-negative" in e for e in errors)
    assert any("timeout must be positive" in e for e in errors)
    assert any("retryDelay must be positive" in e for e in errors)


def test_condition_rules():
    step = _step("a", conditions=[
        {"field": "", "operator": "equals", "value": 1},
        {"field": "input.x", "operator": "matches", "value": 1},
        {"field": "input.y", "operator": "equals"},
        {"field": "input.z", "operator": "exists", "logicalOperator": "XOR"},
    ])
    result = validate_template(WorkflowTemplate(name="cond", steps=[step]))
    assert any("field is required" in e for e in result.errors)
    assert any("invalid operator 'matches'" in e for e in result.errors)
    assert any("invalid logical operator 'XOR'" in e for e in result.errors)
    assert any("value is undefined" in w for w in result.warnings)


def test_variables_and_schemas():
    template = WorkflowTemplate(
        name="vars",
        steps=[_step("a")],
        variables={"my-var": 1, "ok": 2},
        input_schema={"type": "blob"},
        output_schema={"description": "no type"},
    )
    result = validate_template(template)
    assert any("Variable 'my-var' contains special characters" in w for w in result.warnings)
    assert "Input schema has invalid type: blob" in result.errors
    assert "Output schema lacks type or properties definition" in result.warnings


def test_retry_policy_rules():
    template = WorkflowTemplate(
        name="retry",
        steps=[_step("a")],
        retry_policy=RetryPolicy(max_attempts=0, delay=100, max_delay=50),
    )
    errors = validate_template(template).errors
    assert "Retry policy maxAttempts must be at least 1" in errors
    assert "Retry policy maxDelay must be greater than or equal to delay" in errors

    noisy = WorkflowTemplate(name="retry", steps=[_step("a")], retry_policy=RetryPolicy(max_attempts=11))
    assert any("very high" in w for w in validate_template(noisy).warnings)


def test_validate_input_checks_types_and_required_fields():
    schema = {
        "type": "object",
        "required": ["orderId"],
        "properties": {"orderId": {"type": "string"}, "count": {"type": "integer"}},
    }
    assert validate_input({"orderId": "o-1", "count": 2}, schema).success

    result = validate_input({"count": 1.5}, schema)
    assert "orderId is required" in result.errors
    assert "count: expected integer, got number" in result.errors

    # bool 不算 number
    assert not validate_input(True, {"type": "number"}).success


def test_build_validation_report_on_raw_data():
    report = build_validation_report("not an object")
    assert report.to_dict() == {
        "isValid": False,
        "errors": ["Template data must be an object"],
        "warnings": [],
        "suggestions": [],
    }

    raw = {
        "name": "raw",
        "steps": [{"stepId": "a", "name": "A", "handler": "ghost", "order": 1, "timeout": 10}],
    }
    report = build_validation_report(raw, available_handlers={"noop"})
    assert report.is_valid
    assert "Handler 'ghost' is not registered" in report.warnings
    assert any("timeout should be between" in w for w in report.warnings)
    assert any("Add a description" in s for s in report.suggestions)


def test_build_validation_report_reports_type_errors():
    report = build_validation_report({"name": "x", "steps": "nope"})
    assert not report.is_valid
    assert report.errors and report.errors[0].startswith("steps")


def test_variable_names():
    result = validate_variables({"": 1, "order.id": 2, "batch": 3})
    assert result.errors == ["Variable name cannot be empty"]
    assert result.warnings == ["Variable 'order.id' contains special characters that may cause issues"]


def test_json_schema_shape():
    assert validate_json_schema({"type": "tuple"}, "Input").errors == ["Input schema has invalid type: tuple"]

    loose = validate_json_schema({"properties": {"id": {}}}, "Output")
    assert loose.success
    assert loose.warnings == ["Output schema property 'id' lacks type definition"]


def test_step_for_execution_needs_a_registered_handler():
    result = validate_step_for_execution(_step("a", timeout=200), {"delay"})
    assert result.errors == ["Handler 'noop' is not available for step 'a'"]
    assert result.warnings == ["Step 'a' has very short timeout (200ms)"]
    assert validate_step_for_execution(_step("a"), {"noop"}).success
