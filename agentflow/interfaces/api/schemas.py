import json
from typing import Any, Dict, Optional, Union

from fastapi import Request
from fastapi.responses import JSONResponse

from agentflow.domain.errors import ErrorCode
from agentflow.domain.models import DomainBase
from agentflow.domain.results import ServiceResult
from agentflow.service.base import WorkflowService

# 请求体模式（camelCase / snake_case 均可）

class StartExecutionRequest(DomainBase):
    template_id: str
    input: Dict[str, Any] = {}


class CancelExecutionRequest(DomainBase):
    reason: Optional[str] = None


class CloneTemplateRequest(DomainBase):
    new_name: Optional[str] = None


class ImportTemplateRequest(DomainBase):
    data: Union[str, Dict[str, Any]]

    def get_payload(self) -> str:
        """导入接口统一接收 JSON 字符串"""
        if isinstance(self.data, str):
            return self.data
        return json.dumps(self.data)

# ----------- 结果 → HTTP -----------

_STATUS_BY_CODE = {
    ErrorCode.VALIDATION_ERROR.value: 400,
    ErrorCode.INPUT_VALIDATION_FAILED.value: 400,
    ErrorCode.IMPORT_FAILED.value: 400,
    ErrorCode.TEMPLATE_IN_USE.value: 409,
    ErrorCode.WORKFLOW_STATE_ERROR.value: 409,
    ErrorCode.RESOURCE_LIMIT_ERROR.value: 429,
}


def http_status_for(result: ServiceResult, success_status: int = 200) -> int:
    if result.success:
        return success_status
    code = result.error.code if result.error else ErrorCode.UNKNOWN_ERROR.value
    if code.endswith("_NOT_FOUND"):
        return 404
    return _STATUS_BY_CODE.get(code, 500)


def service_response(result: ServiceResult, success_status: int = 200) -> JSONResponse:
    return JSONResponse(status_code=http_status_for(result, success_status), content=result.to_dict())


def get_workflow_service(request: Request) -> WorkflowService:
    return request.app.state.workflow_service
