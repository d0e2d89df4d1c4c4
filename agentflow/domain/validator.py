from typing import Any, Dict, Iterable, List, Optional, Set

from pydantic import BaseModel, Field, ValidationError

from agentflow.domain.models import (
    CONDITION_OPERATORS,
    LOGICAL_OPERATORS,
    ON_ERROR_POLICIES,
    STEP_TYPES,
    RetryPolicy,
    WorkflowCondition,
    WorkflowStep,
    WorkflowTemplate,
)

JSON_SCHEMA_TYPES = ("object", "array", "string", "number", "integer", "boolean", "null")
MAX_STEPS_BEFORE_SPLIT = 20
SHORT_TIMEOUT_MS = 1000


class ValidationResult(BaseModel):
    success: bool = True
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    def merge(self, other: "ValidationResult") -> "ValidationResult":
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)
        self.success = not self.errors
        return self


def _result(errors: List[str], warnings: List[str]) -> ValidationResult:
    return ValidationResult(success=not errors, errors=errors, warnings=warnings)


# -----------------------------
# Template
# -----------------------------

def validate_template(template: WorkflowTemplate) -> ValidationResult:
    errors: List[str] = []
    warnings: List[str] = []

    if not template.name or not template.name.strip():
        errors.append("Template name is required")
    if not template.version or not template.version.strip():
        errors.append("Template version is required")
    if not template.type or not template.type.strip():
        errors.append("Template type is required")

    result = _result(errors, warnings)

    if not template.steps:
        result.errors.append("Template must have at least one step")
    else:
        result.merge(validate_steps(template.steps))

    if template.variables:
        result.merge(validate_variables(template.variables))
    if template.input_schema:
        result.merge(validate_json_schema(template.input_schema, "Input"))
    if template.output_schema:
        result.merge(validate_json_schema(template.output_schema, "Output"))

    if template.timeout is not None and template.timeout <= 0:
        result.errors.append("Template timeout must be positive")

    if template.retry_policy is not None:
        result.merge(validate_retry_policy(template.retry_policy))

    result.success = not result.errors
    return result


def validate_steps(steps: List[WorkflowStep]) -> ValidationResult:
    result = ValidationResult()
    seen_ids: Set[str] = set()
    seen_orders: Set[int] = set()
    all_ids = {s.step_id for s in steps if s.step_id}

    for index, step in enumerate(steps):
        result.merge(_validate_step(step, index, seen_ids, seen_orders, all_ids))

    cycles = detect_circular_dependencies(steps)
    if cycles:
        result.errors.append(f"Circular dependencies detected: {', '.join(cycles)}")

    result.success = not result.errors
    return result


def _validate_step(
    step: WorkflowStep,
    index: int,
    seen_ids: Set[str],
    seen_orders: Set[int],
    all_ids: Set[str],
) -> ValidationResult:
    errors: List[str] = []
    warnings: List[str] = []

    if not step.step_id or not step.step_id.strip():
        errors.append(f"Step {index + 1}: stepId is required")
    elif step.step_id in seen_ids:
        errors.append(f"Step {index + 1}: Duplicate stepId '{step.step_id}'")
    else:
        seen_ids.add(step.step_id)

    label = step.step_id or f"#{index + 1}"

    if not step.name or not step.name.strip():
        errors.append(f"Step {label}: name is required")
    if not step.handler or not step.handler.strip():
        errors.append(f"Step {label}: handler is required")
    if step.type not in STEP_TYPES:
        errors.append(f"Step {label}: invalid step type '{step.type}'")

    if step.order < 0:
        errors.append(f"Step {label}: order must be non-negative")
    elif step.order in seen_orders:
        warnings.append(f"Step {label}: duplicate order {step.order}")
    else:
        seen_orders.add(step.order)

    if step.timeout is not None and step.timeout <= 0:
        errors.append(f"Step {label}: timeout must be positive")
    if step.retries < 0:
        errors.append(f"Step {label}: retries must be non-negative")
    if step.retry_delay is not None and step.retry_delay <= 0:
        errors.append(f"Step {label}: retryDelay must be positive")
    if step.on_error not in ON_ERROR_POLICIES:
        errors.append(f"Step {label}: invalid onError policy '{step.on_error}'")

    for dep_id in step.dependencies:
        if dep_id == step.step_id:
            errors.append(f"Step {label}: cannot depend on itself")
        elif dep_id not in all_ids:
            errors.append(f"Step {label}: dependency '{dep_id}' not found")

    result = _result(errors, warnings)
    if step.conditions:
        result.merge(validate_conditions(step.conditions, f"Step {label}"))
    return result


def detect_circular_dependencies(steps: Iterable[WorkflowStep]) -> List[str]:
    """DFS over step -> dependencies; each cycle is reported as 'a -> b -> a'."""
    step_map: Dict[str, WorkflowStep] = {s.step_id: s for s in steps}
    visited: Set[str] = set()
    on_stack: Set[str] = set()
    cycles: List[str] = []

    def dfs(step_id: str, path: List[str]) -> None:
        if step_id in on_stack:
            start = path.index(step_id)
            cycles.append(" -> ".join(path[start:] + [step_id]))
            return
        if step_id in visited:
            return

        visited.add(step_id)
        on_stack.add(step_id)
        path.append(step_id)

        step = step_map.get(step_id)
        if step is not None:
            for dep_id in step.dependencies:
                # 自依赖单独报错，这里不算环
                if dep_id != step_id:
                    dfs(dep_id, path)

        on_stack.discard(step_id)
        path.pop()

    for step_id in step_map:
        if step_id not in visited:
            dfs(step_id, [])

    return cycles


def validate_conditions(conditions: List[WorkflowCondition], context: str) -> ValidationResult:
    errors: List[str] = []
    warnings: List[str] = []

    for index, condition in enumerate(conditions, start=1):
        if not condition.field or not condition.field.strip():
            errors.append(f"{context} condition {index}: field is required")
        if condition.operator not in CONDITION_OPERATORS:
            errors.append(f"{context} condition {index}: invalid operator '{condition.operator}'")
        if condition.value is None and condition.operator not in ("exists", "not_exists"):
            warnings.append(f"{context} condition {index}: value is undefined")
        if condition.logical_operator and condition.logical_operator not in LOGICAL_OPERATORS:
            errors.append(
                f"{context} condition {index}: invalid logical operator '{condition.logical_operator}'"
            )

    return _result(errors, warnings)


def validate_variables(variables: Dict[str, Any]) -> ValidationResult:
    errors: List[str] = []
    warnings: List[str] = []

    for key, value in variables.items():
        if not key or not key.strip():
            errors.append("Variable name cannot be empty")
            continue
        if any(ch in key for ch in (" ", ".", "-")):
            warnings.append(
                f"Variable '{key}' contains special characters that may cause issues"
            )
        if callable(value):
            errors.append(f"Variable '{key}' cannot be a function")

    return _result(errors, warnings)


def validate_json_schema(schema: Dict[str, Any], kind: str) -> ValidationResult:
    errors: List[str] = []
    warnings: List[str] = []

    if not isinstance(schema, dict):
        return _result([f"{kind} schema must be an object"], [])

    if "type" not in schema and "properties" not in schema and "$ref" not in schema:
        warnings.append(f"{kind} schema lacks type or properties definition")

    if "type" in schema and schema["type"] not in JSON_SCHEMA_TYPES:
        errors.append(f"{kind} schema has invalid type: {schema['type']}")

    for prop, prop_schema in (schema.get("properties") or {}).items():
        if not isinstance(prop_schema, dict) or ("type" not in prop_schema and "$ref" not in prop_schema):
            warnings.append(f"{kind} schema property '{prop}' lacks type definition")

    return _result(errors, warnings)


def validate_retry_policy(policy: RetryPolicy) -> ValidationResult:
    errors: List[str] = []
    warnings: List[str] = []

    if policy.max_attempts < 1:
        errors.append("Retry policy maxAttempts must be at least 1")
    if policy.delay < 0:
        errors.append("Retry policy delay must be non-negative")
    if policy.backoff_multiplier is not None and policy.backoff_multiplier <= 0:
        errors.append("Retry policy backoffMultiplier must be positive")
    if policy.max_delay is not None and policy.max_delay < policy.delay:
        errors.append("Retry policy maxDelay must be greater than or equal to delay")
    if policy.max_attempts > 10:
        warnings.append(
            "Retry policy maxAttempts is very high (>10), this may cause performance issues"
        )

    return _result(errors, warnings)


# -----------------------------
# Input
# -----------------------------

def json_type_of(value: Any) -> str:
    # bool 是 int 的子类，必须先判断
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def _type_matches(value: Any, expected: str) -> bool:
    actual = json_type_of(value)
    if expected == "integer":
        return actual == "number" and isinstance(value, int)
    return actual == expected


def validate_input(value: Any, schema: Dict[str, Any]) -> ValidationResult:
    """Structural check only: type, required, properties. No oneOf / $ref."""
    errors: List[str] = []
    _check_value(value, schema or {}, "", errors)
    return _result(errors, [])


def _check_value(value: Any, schema: Dict[str, Any], path: str, errors: List[str]) -> None:
    expected = schema.get("type")
    if isinstance(expected, str) and not _type_matches(value, expected):
        errors.append(f"{path or 'root'}: expected {expected}, got {json_type_of(value)}")

    required = schema.get("required")
    if isinstance(required, list):
        for field_name in required:
            if not isinstance(value, dict) or field_name not in value:
                errors.append(f"{path + '.' if path else ''}{field_name} is required")

    properties = schema.get("properties")
    if isinstance(properties, dict) and isinstance(value, dict):
        for prop, prop_schema in properties.items():
            if prop in value and isinstance(prop_schema, dict):
                _check_value(value[prop], prop_schema, f"{path}.{prop}" if path else prop, errors)


def validate_step_for_execution(step: WorkflowStep, available_handlers: Set[str]) -> ValidationResult:
    errors: List[str] = []
    warnings: List[str] = []

    if step.handler not in available_handlers:
        errors.append(f"Handler '{step.handler}' is not available for step '{step.step_id}'")
    if step.timeout is not None and step.timeout < SHORT_TIMEOUT_MS:
        warnings.append(f"Step '{step.step_id}' has very short timeout ({step.timeout}ms)")

    return _result(errors, warnings)


# -----------------------------
# Raw report (service boundary)
# -----------------------------

class TemplateValidationReport(BaseModel):
    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isValid": self.is_valid,
            "errors": self.errors,
            "warnings": self.warnings,
            "suggestions": self.suggestions,
        }


def _format_pydantic_error(exc: ValidationError) -> List[str]:
    out = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        out.append(f"{loc or 'template'}: {err.get('msg')}")
    return out


def build_validation_report(raw: Any, available_handlers: Optional[Set[str]] = None) -> TemplateValidationReport:
    """Validate raw (untrusted) template data and add authoring suggestions."""
    if not isinstance(raw, dict):
        return TemplateValidationReport(is_valid=False, errors=["Template data must be an object"])

    try:
        template = WorkflowTemplate.model_validate(raw)
    except ValidationError as exc:
        return TemplateValidationReport(is_valid=False, errors=_format_pydantic_error(exc))

    result = validate_template(template)
    suggestions: List[str] = []

    if len(template.steps) > MAX_STEPS_BEFORE_SPLIT:
        suggestions.append("Consider splitting large workflows into smaller, reusable templates")

    for step in template.steps:
        if step.timeout is None:
            suggestions.append(f"Consider setting a timeout for step '{step.step_id}'")
        elif step.timeout < SHORT_TIMEOUT_MS or step.timeout > 3_600_000:
            result.warnings.append(
                f"Step '{step.step_id}' timeout should be between 1 second and 1 hour"
            )
        if step.retries > 10:
            result.warnings.append(f"Step '{step.step_id}' retries should be between 0 and 10")
        if available_handlers is not None and step.handler and step.handler not in available_handlers:
            result.warnings.append(f"Handler '{step.handler}' is not registered")

    if not template.description:
        suggestions.append("Add a description to help others understand this workflow")

    return TemplateValidationReport(
        is_valid=not result.errors,
        errors=result.errors,
        warnings=result.warnings,
        suggestions=suggestions,
    )
