# agentflow/domain/results.py

from typing import Any, Dict, Generic, Optional, TypeVar

from pydantic import BaseModel, Field

from agentflow.domain.errors import ErrorCode, WorkflowEngineError

T = TypeVar("T")


class ServiceError(BaseModel):
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class ServiceResult(BaseModel, Generic[T]):
    """对外统一返回：{success, data} 或 {success, error}"""
    success: bool
    data: Optional[T] = None
    error: Optional[ServiceError] = None

    @classmethod
    def ok(cls, data: Any = None) -> "ServiceResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, code, message: str, details: Optional[Dict[str, Any]] = None) -> "ServiceResult":
        if isinstance(code, ErrorCode):
            code = code.value
        return cls(success=False, error=ServiceError(code=code, message=message, details=details or {}))

    @classmethod
    def from_error(cls, exc: BaseException) -> "ServiceResult":
        err = WorkflowEngineError.from_exception(exc)
        return cls.fail(err.code, err.message, err.details)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"success": self.success}
        if self.success:
            out["data"] = _jsonable(self.data)
        else:
            out["error"] = self.error.model_dump() if self.error else None
        return out


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    return value
