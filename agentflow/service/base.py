"""
WorkflowService —— 真实引擎与 Mock 引擎共同实现的服务契约

所有操作都返回 ServiceResult：成功时 {success: True, data}，失败时
{success: False, error: {code, message, details}}，不向调用方抛出异常。
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Union

from agentflow.domain.models import CreateTemplateRequest, UpdateTemplateRequest
from agentflow.domain.results import ServiceResult

CreatePayload = Union[CreateTemplateRequest, Dict[str, Any]]
UpdatePayload = Union[UpdateTemplateRequest, Dict[str, Any]]


class WorkflowService(ABC):

    # ----------- templates -----------

    @abstractmethod
    async def create_template(self, request: CreatePayload) -> ServiceResult: ...

    @abstractmethod
    async def update_template(self, template_id: str, request: UpdatePayload) -> ServiceResult: ...

    @abstractmethod
    async def delete_template(self, template_id: str) -> ServiceResult: ...

    @abstractmethod
    async def get_template(self, template_id: str) -> ServiceResult: ...

    @abstractmethod
    async def list_templates(
        self, active: Optional[bool] = None, limit: Optional[int] = None, offset: int = 0
    ) -> ServiceResult: ...

    @abstractmethod
    async def clone_template(self, template_id: str, new_name: Optional[str] = None) -> ServiceResult: ...

    @abstractmethod
    async def search_templates(self, query: str) -> ServiceResult: ...

    @abstractmethod
    async def export_template(self, template_id: str) -> ServiceResult:
        """data 为 JSON 字符串：{"version", "exportedAt", "template"}"""

    @abstractmethod
    async def import_template(self, payload: str) -> ServiceResult:
        """新 id，名称追加 " (Imported)" """

    @abstractmethod
    async def validate_template(self, raw: Any) -> ServiceResult:
        """data 为 {isValid, errors, warnings, suggestions}"""

    # ----------- executions -----------

    @abstractmethod
    async def start_execution(self, template_id: str, input_data: Optional[Dict[str, Any]] = None) -> ServiceResult: ...

    @abstractmethod
    async def get_execution_status(self, run_id: str) -> ServiceResult: ...

    @abstractmethod
    async def pause_execution(self, run_id: str) -> ServiceResult: ...

    @abstractmethod
    async def resume_execution(self, run_id: str) -> ServiceResult: ...

    @abstractmethod
    async def cancel_execution(self, run_id: str, reason: Optional[str] = None) -> ServiceResult: ...

    @abstractmethod
    async def get_execution_history(
        self, template_id: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> ServiceResult: ...

    @abstractmethod
    async def get_active_executions(self) -> ServiceResult: ...

    @abstractmethod
    async def get_execution_logs(self, run_id: str) -> ServiceResult: ...

    @abstractmethod
    async def get_workflow_metrics(self, template_id: Optional[str] = None) -> ServiceResult: ...

    async def shutdown(self) -> None:
        """释放后台资源；默认无操作"""
