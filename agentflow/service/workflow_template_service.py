import json
import logging
from typing import Any, Dict, List, Optional, Set, Union

from pydantic import ValidationError

from agentflow.domain.errors import (
    ErrorCode,
    TemplateInUseError,
    WorkflowEngineError,
    log_engine_error,
)
from agentflow.domain.models import (
    CreateTemplateRequest,
    UpdateTemplateRequest,
    WorkflowStatus,
    WorkflowTemplate,
    new_id,
    utc_now,
)
from agentflow.domain.results import ServiceResult
from agentflow.domain.validator import build_validation_report, validate_template
from agentflow.persistence.store import WorkflowStore
from agentflow.utils.timefmt import naive_utcnow

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

EXPORT_FORMAT_VERSION = "1.0"
IN_USE_STATUSES = (WorkflowStatus.PENDING, WorkflowStatus.RUNNING, WorkflowStatus.PAUSED)


def template_matches(template: WorkflowTemplate, query: str) -> bool:
    """大小写不敏感：名称 / 描述 / 分类 / 标签 / 步骤名称、类型、handler"""
    q = query.strip().lower()
    if not q:
        return True
    fields = [template.name, template.description or "", template.category or "", *template.tags]
    for step in template.steps:
        fields.extend([step.name, step.type, step.handler])
    return any(q in f.lower() for f in fields)


def export_payload(template: WorkflowTemplate) -> str:
    return json.dumps(
        {
            "version": EXPORT_FORMAT_VERSION,
            "exportedAt": naive_utcnow().isoformat(),
            "template": template.to_json_dict(),
        },
        indent=2,
        ensure_ascii=False,
    )


def parse_import_payload(payload: str) -> WorkflowTemplate:
    """解析导出格式（或裸模板 JSON），返回带新 id 的模板"""
    data = json.loads(payload)
    if not isinstance(data, dict):
        raise ValueError("Import payload must be a JSON object")
    raw = data.get("template", data)
    if not isinstance(raw, dict):
        raise ValueError("Invalid import format - missing template")

    raw = {k: v for k, v in raw.items() if k not in ("id", "createdAt", "updatedAt", "created_at", "updated_at")}
    template = WorkflowTemplate.model_validate(raw)
    now = utc_now()
    return template.model_copy(update={
        "id": new_id(),
        "name": f"{template.name} (Imported)",
        "created_at": now,
        "updated_at": now,
    })


class WorkflowTemplateService:
    """模板管理：创建前校验、整模板更新、使用中禁止删除、克隆 / 搜索 / 导入导出"""

    def __init__(self, store: WorkflowStore, available_handlers: Optional[Set[str]] = None):
        self.store = store
        self.available_handlers = available_handlers

    async def create_template(self, request: Union[CreateTemplateRequest, Dict[str, Any]]) -> ServiceResult:
        try:
            if isinstance(request, dict):
                request = CreateTemplateRequest.model_validate(request)
        except ValidationError as e:
            return ServiceResult.fail(ErrorCode.VALIDATION_ERROR, "Invalid template payload", {"errors": _errors(e)})
        return await self._save_new(request.to_template())

    async def update_template(
        self, template_id: str, request: Union[UpdateTemplateRequest, Dict[str, Any]]
    ) -> ServiceResult:
        try:
            if isinstance(request, dict):
                request = UpdateTemplateRequest.model_validate(request)
        except ValidationError as e:
            return ServiceResult.fail(ErrorCode.VALIDATION_ERROR, "Invalid template payload", {"errors": _errors(e)})

        try:
            existing = await self.store.get_template(template_id)
            if existing is None:
                return _not_found(template_id)

            updated = request.apply_to(existing)
            validation = validate_template(updated)
            if not validation.success:
                return _invalid(validation.errors, validation.warnings)

            saved = await self.store.update_template(updated)
            logger.info(f"[TemplateService] updated template={template_id}")
            return ServiceResult.ok(saved)
        except WorkflowEngineError as e:
            log_engine_error(e, "update_template", logger)
            return ServiceResult.from_error(e)

    async def delete_template(self, template_id: str) -> ServiceResult:
        try:
            existing = await self.store.get_template(template_id)
            if existing is None:
                return _not_found(template_id)

            active_runs = await self.store.count_executions(workflow_id=template_id, statuses=IN_USE_STATUSES)
            if active_runs > 0:
                raise TemplateInUseError(template_id, active_runs)

            await self.store.delete_template(template_id)
            logger.info(f"[TemplateService] deleted template={template_id}")
            return ServiceResult.ok({"id": template_id, "deleted": True})
        except WorkflowEngineError as e:
            return ServiceResult.from_error(e)

    async def get_template(self, template_id: str) -> ServiceResult:
        try:
            template = await self.store.get_template(template_id)
        except WorkflowEngineError as e:
            return ServiceResult.from_error(e)
        if template is None:
            return _not_found(template_id)
        return ServiceResult.ok(template)

    async def list_templates(self, active=None, limit=None, offset=0) -> ServiceResult:
        try:
            return ServiceResult.ok(await self.store.list_templates(active=active, limit=limit, offset=offset))
        except WorkflowEngineError as e:
            return ServiceResult.from_error(e)

    async def clone_template(self, template_id: str, new_name: Optional[str] = None) -> ServiceResult:
        try:
            source = await self.store.get_template(template_id)
        except WorkflowEngineError as e:
            return ServiceResult.from_error(e)
        if source is None:
            return _not_found(template_id)

        now = utc_now()
        clone = source.model_copy(deep=True, update={
            "id": new_id(),
            "name": new_name or f"{source.name} (Copy)",
            "created_at": now,
            "updated_at": now,
        })
        return await self._save_new(clone)

    async def search_templates(self, query: str) -> ServiceResult:
        try:
            templates = await self.store.list_templates()
        except WorkflowEngineError as e:
            return ServiceResult.from_error(e)
        return ServiceResult.ok([t for t in templates if template_matches(t, query)])

    async def export_template(self, template_id: str) -> ServiceResult:
        result = await self.get_template(template_id)
        if not result.success:
            return result
        return ServiceResult.ok(export_payload(result.data))

    async def import_template(self, payload: str) -> ServiceResult:
        try:
            template = parse_import_payload(payload)
        except (ValueError, ValidationError) as e:
            # json.JSONDecodeError 是 ValueError 的子类
            return ServiceResult.fail(ErrorCode.IMPORT_FAILED, f"Failed to import template: {e}")
        return await self._save_new(template)

    async def validate_template(self, raw: Any) -> ServiceResult:
        report = build_validation_report(raw, self.available_handlers)
        return ServiceResult.ok(report.to_dict())

    async def get_template_stats(self, template_id: str) -> ServiceResult:
        try:
            executions = await self.store.list_executions(workflow_id=template_id)
        except WorkflowEngineError as e:
            return ServiceResult.from_error(e)

        total = len(executions)
        completed = [e for e in executions if e.status == WorkflowStatus.COMPLETED]
        failed = sum(1 for e in executions if e.status == WorkflowStatus.FAILED)
        running = sum(1 for e in executions if e.status in IN_USE_STATUSES)
        durations = [
            (e.end_time - e.start_time).total_seconds() * 1000
            for e in completed if e.start_time and e.end_time
        ]
        return ServiceResult.ok({
            "totalExecutions": total,
            "successfulExecutions": len(completed),
            "failedExecutions": failed,
            "runningExecutions": running,
            "successRate": len(completed) / total * 100 if total else 0,
            "failureRate": failed / total * 100 if total else 0,
            "avgDuration": sum(durations) / len(durations) if durations else 0,
        })

    # ----------- internals -----------

    async def _save_new(self, template: WorkflowTemplate) -> ServiceResult:
        validation = validate_template(template)
        if not validation.success:
            return _invalid(validation.errors, validation.warnings)
        try:
            saved = await self.store.create_template(template)
        except WorkflowEngineError as e:
            log_engine_error(e, "create_template", logger)
            return ServiceResult.from_error(e)
        logger.info(f"[TemplateService] created template={saved.id} name={saved.name!r}")
        return ServiceResult.ok(saved)


def _errors(exc: ValidationError) -> List[str]:
    return [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()]


def _invalid(errors: List[str], warnings: List[str]) -> ServiceResult:
    return ServiceResult.fail(
        ErrorCode.VALIDATION_ERROR,
        f"Template validation failed: {'; '.join(errors)}",
        {"errors": errors, "warnings": warnings},
    )


def _not_found(template_id: str) -> ServiceResult:
    return ServiceResult.fail(ErrorCode.TEMPLATE_NOT_FOUND, f"Template not found: {template_id}")
