import pytest

from agentflow.domain.errors import (
    CircularDependencyError,
    ErrorCode,
    HandlerNotFoundError,
    InvalidInputError,
    ResourceLimitError,
    StepExecutionError,
    StepTimeoutError,
    WorkflowDatabaseError,
    WorkflowEngineError,
    WorkflowStateError,
    WorkflowValidationError,
    get_error_severity,
    is_retryable_error,
)
from agentflow.domain.results import ServiceResult


def test_error_to_dict_carries_code_and_details():
    err = WorkflowStateError("run-1", "completed", "paused", "resume")
    data = err.to_dict()
    assert data["name"] == "WorkflowStateError"
    assert data["code"] == "WORKFLOW_STATE_ERROR"
    assert data["details"]["currentState"] == "completed"
    assert "Cannot resume workflow" in data["message"]


def test_circular_dependency_is_a_validation_error():
    err = CircularDependencyError(["a", "b", "a"])
    assert isinstance(err, WorkflowValidationError)
    assert err.code == ErrorCode.VALIDATION_ERROR.value
    assert err.message == "Circular dependency detected in steps: a -> b -> a"


def test_invalid_input_is_a_validation_error_with_its_own_code():
    err = InvalidInputError(["orderId is required"])
    assert isinstance(err, WorkflowValidationError)
    assert err.code == ErrorCode.INPUT_VALIDATION_FAILED.value
    assert err.details == {"errors": ["orderId is required"], "inputPath": "input"}

    result = ServiceResult.from_error(err)
    assert result.error.code == "INPUT_VALIDATION_FAILED"
    assert result.error.message == "Input validation failed"


def test_step_execution_error_carries_step_and_workflow():
    err = StepExecutionError("boom", "s1", workflow_id="wf")
    assert err.to_dict()["code"] == "STEP_EXECUTION_ERROR"
    assert (err.step_id, err.workflow_id) == ("s1", "wf")
    assert get_error_severity(err) == "medium"


def test_from_exception_wraps_foreign_errors():
    wrapped = WorkflowEngineError.from_exception(KeyError("x"), step_id="s1")
    assert wrapped.code == "UNKNOWN_ERROR"
    assert wrapped.step_id == "s1"
    assert wrapped.details["name"] == "KeyError"
    assert "stack" in wrapped.details


def test_from_exception_keeps_engine_errors():
    original = HandlerNotFoundError("ghost")
    assert WorkflowEngineError.from_exception(original) is original


@pytest.mark.parametrize("exc, retryable", [
    (HandlerNotFoundError("ghost"), False),
    (WorkflowValidationError("bad"), False),
    (InvalidInputError(["x is required"]), False),
    (StepTimeoutError("s", 10), True),
    (RuntimeError("anything"), True),
])
def test_retry_classification(exc, retryable):
    assert is_retryable_error(exc) is retryable


def test_severity_levels():
    assert get_error_severity(WorkflowDatabaseError("read", RuntimeError("down"))) == "critical"
    assert get_error_severity(ResourceLimitError("runs", 1, 2)) == "critical"
    assert get_error_severity(StepTimeoutError("s", 10)) == "high"
    assert get_error_severity(WorkflowEngineError("x", ErrorCode.STEP_EXECUTION_ERROR)) == "medium"
    assert get_error_severity(ValueError("plain")) == "low"


def test_service_result_shapes():
    ok = ServiceResult.ok({"a": 1})
    assert ok.to_dict() == {"success": True, "data": {"a": 1}}

    failed = ServiceResult.fail(ErrorCode.TEMPLATE_NOT_FOUND, "missing", {"id": "t"})
    assert failed.to_dict() == {
        "success": False,
        "error": {"code": "TEMPLATE_NOT_FOUND", "message": "missing", "details": {"id": "t"}},
    }

    from_error = ServiceResult.from_error(RuntimeError("kaput"))
    assert from_error.error.code == "UNKNOWN_ERROR"
    assert from_error.error.message == "kaput"
