"""Workflow engine error taxonomy.

Every error raised inside the engine derives from ``WorkflowEngineError`` and
carries a stable ``code``.  Two classifiers sit on top of the codes:

* ``is_retryable_error`` tells the step executor whether another attempt makes
  sense.
* ``get_error_severity`` only selects the log level; it never drives control
  flow.
"""

import logging
import traceback
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    STEP_EXECUTION_ERROR = "STEP_EXECUTION_ERROR"
    HANDLER_NOT_FOUND = "HANDLER_NOT_FOUND"
    HANDLER_CONFIG_ERROR = "HANDLER_CONFIG_ERROR"
    HANDLER_REGISTRATION_ERROR = "HANDLER_REGISTRATION_ERROR"
    WORKFLOW_TIMEOUT = "WORKFLOW_TIMEOUT"
    STEP_TIMEOUT = "STEP_TIMEOUT"
    WORKFLOW_NOT_FOUND = "WORKFLOW_NOT_FOUND"
    WORKFLOW_RUN_NOT_FOUND = "WORKFLOW_RUN_NOT_FOUND"
    DATABASE_ERROR = "DATABASE_ERROR"
    WORKFLOW_STATE_ERROR = "WORKFLOW_STATE_ERROR"
    PERMISSION_ERROR = "PERMISSION_ERROR"
    RESOURCE_LIMIT_ERROR = "RESOURCE_LIMIT_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"

    # service-level result codes
    TEMPLATE_NOT_FOUND = "TEMPLATE_NOT_FOUND"
    TEMPLATE_IN_USE = "TEMPLATE_IN_USE"
    INPUT_VALIDATION_FAILED = "INPUT_VALIDATION_FAILED"
    DEPENDENCY_NOT_MET = "DEPENDENCY_NOT_MET"
    STEP_SKIPPED = "STEP_SKIPPED"
    STEP_EXECUTION_NOT_FOUND = "STEP_EXECUTION_NOT_FOUND"
    PARALLEL_EXECUTION_FAILED = "PARALLEL_EXECUTION_FAILED"
    IMPORT_FAILED = "IMPORT_FAILED"


NON_RETRYABLE_CODES = frozenset({
    ErrorCode.VALIDATION_ERROR.value,
    ErrorCode.INPUT_VALIDATION_FAILED.value,
    ErrorCode.HANDLER_NOT_FOUND.value,
    ErrorCode.WORKFLOW_NOT_FOUND.value,
    ErrorCode.WORKFLOW_RUN_NOT_FOUND.value,
    ErrorCode.PERMISSION_ERROR.value,
})


class WorkflowEngineError(Exception):
    """Base workflow engine error"""

    def __init__(
        self,
        message: str,
        code: str,
        step_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code.value if isinstance(code, ErrorCode) else code
        self.step_id = step_id
        self.workflow_id = workflow_id
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": type(self).__name__,
            "message": self.message,
            "code": self.code,
            "stepId": self.step_id,
            "workflowId": self.workflow_id,
            "details": self.details,
        }

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        step_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
    ) -> "WorkflowEngineError":
        """把任意异常包装成 UNKNOWN_ERROR；已是引擎错误则原样返回"""
        if isinstance(exc, WorkflowEngineError):
            return exc
        return cls(
            str(exc) or type(exc).__name__,
            ErrorCode.UNKNOWN_ERROR,
            step_id,
            workflow_id,
            {
                "originalError": str(exc),
                "name": type(exc).__name__,
                "stack": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
            },
        )


class WorkflowValidationError(WorkflowEngineError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCode.VALIDATION_ERROR, details=details)


class CircularDependencyError(WorkflowValidationError):
    def __init__(self, step_ids: List[str]):
        super().__init__(
            f"Circular dependency detected in steps: {' -> '.join(step_ids)}",
            {"stepIds": step_ids, "cycle": step_ids},
        )


class InvalidInputError(WorkflowValidationError):
    """调用方输入不符合模板的 input_schema"""

    def __init__(self, errors: List[str], input_path: str = "input"):
        super().__init__("Input validation failed", {"errors": errors, "inputPath": input_path})
        self.code = ErrorCode.INPUT_VALIDATION_FAILED.value


class StepExecutionError(WorkflowEngineError):
    def __init__(
        self,
        message: str,
        step_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        workflow_id: Optional[str] = None,
    ):
        super().__init__(message, ErrorCode.STEP_EXECUTION_ERROR, step_id=step_id, workflow_id=workflow_id, details=details)


class HandlerNotFoundError(WorkflowEngineError):
    def __init__(self, handler_name: str, step_id: Optional[str] = None):
        super().__init__(
            f"Handler not found: {handler_name}",
            ErrorCode.HANDLER_NOT_FOUND,
            step_id=step_id,
            details={"handlerName": handler_name},
        )


class HandlerConfigurationError(WorkflowEngineError):
    def __init__(self, handler_name: str, message: str, step_id: Optional[str] = None):
        super().__init__(
            f"Handler configuration error for '{handler_name}': {message}",
            ErrorCode.HANDLER_CONFIG_ERROR,
            step_id=step_id,
            details={"handlerName": handler_name},
        )


class HandlerRegistrationError(WorkflowEngineError):
    def __init__(self, message: str, handler_name: Optional[str] = None):
        super().__init__(
            message,
            ErrorCode.HANDLER_REGISTRATION_ERROR,
            details={"handlerName": handler_name},
        )


class WorkflowTimeoutError(WorkflowEngineError):
    def __init__(self, workflow_id: str, timeout_ms: int):
        super().__init__(
            f"Workflow timed out after {timeout_ms}ms",
            ErrorCode.WORKFLOW_TIMEOUT,
            workflow_id=workflow_id,
            details={"timeoutMs": timeout_ms},
        )


class StepTimeoutError(WorkflowEngineError):
    def __init__(self, step_id: str, timeout_ms: int):
        super().__init__(
            f"Step timed out after {timeout_ms}ms",
            ErrorCode.STEP_TIMEOUT,
            step_id=step_id,
            details={"timeoutMs": timeout_ms},
        )


class WorkflowNotFoundError(WorkflowEngineError):
    def __init__(self, workflow_id: str):
        super().__init__(
            f"Workflow not found: {workflow_id}",
            ErrorCode.WORKFLOW_NOT_FOUND,
            workflow_id=workflow_id,
        )


class WorkflowRunNotFoundError(WorkflowEngineError):
    def __init__(self, run_id: str):
        super().__init__(
            f"Workflow run not found: {run_id}",
            ErrorCode.WORKFLOW_RUN_NOT_FOUND,
            details={"runId": run_id},
        )


class WorkflowDatabaseError(WorkflowEngineError):
    def __init__(self, operation: str, original: BaseException):
        super().__init__(
            f"Database error during {operation}: {original}",
            ErrorCode.DATABASE_ERROR,
            details={"operation": operation, "originalError": str(original)},
        )


class WorkflowStateError(WorkflowEngineError):
    def __init__(self, run_id: str, current_state: str, expected_state: str, action: str):
        super().__init__(
            f"Cannot {action} workflow in state '{current_state}', expected '{expected_state}'",
            ErrorCode.WORKFLOW_STATE_ERROR,
            details={
                "runId": run_id,
                "currentState": current_state,
                "expectedState": expected_state,
                "action": action,
            },
        )


class TemplateInUseError(WorkflowEngineError):
    def __init__(self, template_id: str, active_runs: int):
        super().__init__(
            f"Template {template_id} has {active_runs} active execution(s) and cannot be deleted",
            ErrorCode.TEMPLATE_IN_USE,
            workflow_id=template_id,
            details={"activeRuns": active_runs},
        )


class WorkflowPermissionError(WorkflowEngineError):
    def __init__(self, action: str, resource: str, user_id: Optional[str] = None):
        super().__init__(
            f"Permission denied: cannot {action} {resource}",
            ErrorCode.PERMISSION_ERROR,
            details={"action": action, "resource": resource, "userId": user_id},
        )


class ResourceLimitError(WorkflowEngineError):
    def __init__(self, resource: str, limit: int, current: int):
        super().__init__(
            f"Resource limit exceeded: {resource} limit is {limit}, current usage is {current}",
            ErrorCode.RESOURCE_LIMIT_ERROR,
            details={"resource": resource, "limit": limit, "current": current},
        )

# ----------- classifiers -----------

def is_retryable_error(exc: BaseException) -> bool:
    if isinstance(exc, WorkflowEngineError):
        return exc.code not in NON_RETRYABLE_CODES
    # 非引擎错误默认可重试
    return True


def get_error_severity(exc: BaseException) -> str:
    if not isinstance(exc, WorkflowEngineError):
        return "low"
    if exc.code in (ErrorCode.DATABASE_ERROR.value, ErrorCode.RESOURCE_LIMIT_ERROR.value):
        return "critical"
    if exc.code in (
        ErrorCode.WORKFLOW_TIMEOUT.value,
        ErrorCode.STEP_TIMEOUT.value,
        ErrorCode.PERMISSION_ERROR.value,
    ):
        return "high"
    if exc.code in (ErrorCode.STEP_EXECUTION_ERROR.value, ErrorCode.HANDLER_CONFIG_ERROR.value):
        return "medium"
    return "low"


_SEVERITY_LEVELS = {
    "critical": logging.CRITICAL,
    "high": logging.ERROR,
    "medium": logging.WARNING,
    "low": logging.INFO,
}


def log_engine_error(exc: BaseException, context: str = "", log: Optional[logging.Logger] = None) -> None:
    """按严重级别选择日志级别输出错误"""
    level = _SEVERITY_LEVELS[get_error_severity(exc)]
    code = exc.code if isinstance(exc, WorkflowEngineError) else ErrorCode.UNKNOWN_ERROR.value
    prefix = f"[{context}] " if context else ""
    (log or logger).log(level, "%s%s: %s", prefix, code, exc)
