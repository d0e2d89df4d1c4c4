"""
MockWorkflowEngineService —— 与真实引擎同一契约的内存实现

没有持久化存储，也不调用 handler：步骤由 MockExecutionSimulator 按随机延迟 /
随机失败模拟执行。用于在没有后端依赖时开发、测试路由与前端。
"""

import asyncio
import logging
import random
import time
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from pydantic import ValidationError

from agentflow.domain.errors import (
    ErrorCode,
    InvalidInputError,
    ResourceLimitError,
    TemplateInUseError,
    WorkflowEngineError,
    WorkflowRunNotFoundError,
    WorkflowStateError,
)
from agentflow.domain.models import (
    CreateTemplateRequest,
    ExecutionStatusView,
    StartExecutionResponse,
    StepExecution,
    StepStatus,
    UpdateTemplateRequest,
    WorkflowExecution,
    WorkflowStatus,
    WorkflowTemplate,
    utc_now,
)
from agentflow.domain.results import ServiceResult
from agentflow.domain.validator import build_validation_report, validate_input, validate_template
from agentflow.service.base import CreatePayload, UpdatePayload, WorkflowService
from agentflow.service.mock.mock_health_monitor import MockHealthMonitor
from agentflow.service.mock.mock_simulator import MockExecutionConfig, MockExecutionSimulator
from agentflow.service.mock.mock_template_factory import MockTemplateFactory
from agentflow.service.reporting import compute_workflow_metrics, logs_from_records
from agentflow.service.workflow_template_service import (
    IN_USE_STATUSES,
    export_payload,
    parse_import_payload,
    template_matches,
)

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


class MockWorkflowEngineService(WorkflowService):
    def __init__(
        self,
        config: Optional[MockExecutionConfig] = None,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        seed_templates: bool = True,
    ):
        self.templates: Dict[str, WorkflowTemplate] = {}
        self.executions: Dict[str, WorkflowExecution] = {}
        self.steps: Dict[str, List[StepExecution]] = {}

        self.template_factory = MockTemplateFactory()
        self.simulator = MockExecutionSimulator(config, rng, sleep)
        self.health_monitor = MockHealthMonitor(self.templates, self.executions, self.steps)

        self._template_counter = 0
        self._execution_counter = 0
        self._tasks: set = set()
        self._driving: Set[str] = set()

        if seed_templates:
            self._seed()

    def _seed(self) -> None:
        for template in self.template_factory.create_sample_templates():
            self.templates[template.id] = template

    # ------------------------------------------------------------------ #
    #                             templates
    # ------------------------------------------------------------------ #
    async def create_template(self, request: CreatePayload) -> ServiceResult:
        try:
            if isinstance(request, dict):
                request = CreateTemplateRequest.model_validate(request)
        except ValidationError as e:
            return ServiceResult.fail(ErrorCode.VALIDATION_ERROR, "Invalid template payload", {"errors": [str(e)]})
        return self._save_new(request.to_template(self._next_template_id()))

    async def update_template(self, template_id: str, request: UpdatePayload) -> ServiceResult:
        existing = self.templates.get(template_id)
        if existing is None:
            return _template_not_found(template_id)
        try:
            if isinstance(request, dict):
                request = UpdateTemplateRequest.model_validate(request)
        except ValidationError as e:
            return ServiceResult.fail(ErrorCode.VALIDATION_ERROR, "Invalid template payload", {"errors": [str(e)]})

        updated = request.apply_to(existing)
        validation = validate_template(updated)
        if not validation.success:
            return _invalid(validation.errors, validation.warnings)
        self.templates[template_id] = updated
        return ServiceResult.ok(updated.model_copy(deep=True))

    async def delete_template(self, template_id: str) -> ServiceResult:
        if template_id not in self.templates:
            return _template_not_found(template_id)
        active = sum(
            1 for e in self.executions.values()
            if e.workflow_id == template_id and e.status in IN_USE_STATUSES
        )
        if active:
            return ServiceResult.from_error(TemplateInUseError(template_id, active))
        del self.templates[template_id]
        return ServiceResult.ok({"id": template_id, "deleted": True})

    async def get_template(self, template_id: str) -> ServiceResult:
        template = self.templates.get(template_id)
        if template is None:
            return _template_not_found(template_id)
        return ServiceResult.ok(template.model_copy(deep=True))

    async def list_templates(self, active=None, limit=None, offset=0) -> ServiceResult:
        items = [t for t in self.templates.values() if active is None or t.active == active]
        items = items[offset:offset + limit] if limit is not None else items[offset:]
        return ServiceResult.ok([t.model_copy(deep=True) for t in items])

    async def clone_template(self, template_id: str, new_name: Optional[str] = None) -> ServiceResult:
        source = self.templates.get(template_id)
        if source is None:
            return _template_not_found(template_id)
        now = utc_now()
        clone = source.model_copy(deep=True, update={
            "id": self._next_template_id(),
            "name": new_name or f"{source.name} (Copy)",
            "created_at": now,
            "updated_at": now,
        })
        return self._save_new(clone)

    async def search_templates(self, query: str) -> ServiceResult:
        return ServiceResult.ok([
            t.model_copy(deep=True) for t in self.templates.values() if template_matches(t, query)
        ])

    async def export_template(self, template_id: str) -> ServiceResult:
        template = self.templates.get(template_id)
        if template is None:
            return _template_not_found(template_id)
        return ServiceResult.ok(export_payload(template))

    async def import_template(self, payload: str) -> ServiceResult:
        try:
            template = parse_import_payload(payload)
        except (ValueError, ValidationError) as e:
            return ServiceResult.fail(ErrorCode.IMPORT_FAILED, f"Failed to import template: {e}")
        return self._save_new(template.model_copy(update={"id": self._next_template_id()}))

    async def validate_template(self, raw: Any) -> ServiceResult:
        return ServiceResult.ok(build_validation_report(raw).to_dict())

    # ------------------------------------------------------------------ #
    #                             executions
    # ------------------------------------------------------------------ #
    async def start_execution(self, template_id: str, input_data: Optional[Dict[str, Any]] = None) -> ServiceResult:
        input_data = input_data or {}
        template = self.templates.get(template_id)
        if template is None:
            return _template_not_found(template_id)

        if template.input_schema:
            checked = validate_input(input_data, template.input_schema)
            if not checked.success:
                return ServiceResult.from_error(InvalidInputError(checked.errors))

        running = sum(
            1 for e in self.executions.values()
            if e.status in (WorkflowStatus.PENDING, WorkflowStatus.RUNNING)
        )
        limit = self.simulator.config.max_concurrent_executions
        if running >= limit:
            return ServiceResult.from_error(ResourceLimitError("concurrent executions", limit, running))

        self._execution_counter += 1
        run_id = f"mock_execution_{self._execution_counter}_{int(time.time() * 1000)}"
        steps = template.ordered_steps()
        execution = WorkflowExecution(
            id=run_id,
            workflow_id=template.id,
            input=input_data,
            variables={**template.variables, **input_data},
            total_steps=len(steps),
        )
        self.executions[run_id] = execution
        self.steps[run_id] = [
            StepExecution(
                id=f"{run_id}_{step.step_id}",
                workflow_run_id=run_id,
                step_id=step.step_id,
                seq=seq,
                max_attempts=step.retries + 1,
                input=input_data,
            )
            for seq, step in enumerate(steps)
        ]

        self._spawn(run_id)
        logger.info(f"[MockEngine] started {run_id} template={template.id}")
        return ServiceResult.ok(StartExecutionResponse(execution_id=run_id, total_steps=len(steps)))

    async def get_execution_status(self, run_id: str) -> ServiceResult:
        execution = self.executions.get(run_id)
        if execution is None:
            return ServiceResult.from_error(WorkflowRunNotFoundError(run_id))
        return ServiceResult.ok(ExecutionStatusView.build(execution, self.steps.get(run_id, [])))

    async def pause_execution(self, run_id: str) -> ServiceResult:
        try:
            execution = self._require(run_id)
            if execution.status not in (WorkflowStatus.PENDING, WorkflowStatus.RUNNING):
                raise WorkflowStateError(run_id, execution.status.value, "running", "pause")
        except WorkflowEngineError as e:
            return ServiceResult.from_error(e)
        execution.status = WorkflowStatus.PAUSED
        execution.updated_at = utc_now()
        return ServiceResult.ok({"executionId": run_id, "status": execution.status.value})

    async def resume_execution(self, run_id: str) -> ServiceResult:
        try:
            execution = self._require(run_id)
            if execution.status != WorkflowStatus.PAUSED:
                raise WorkflowStateError(run_id, execution.status.value, "paused", "resume")
        except WorkflowEngineError as e:
            return ServiceResult.from_error(e)
        execution.status = WorkflowStatus.RUNNING
        execution.updated_at = utc_now()
        self._spawn(run_id)
        return ServiceResult.ok({"executionId": run_id, "status": execution.status.value})

    async def cancel_execution(self, run_id: str, reason: Optional[str] = None) -> ServiceResult:
        try:
            execution = self._require(run_id)
            if execution.is_terminal:
                raise WorkflowStateError(run_id, execution.status.value, "pending|running|paused", "cancel")
        except WorkflowEngineError as e:
            return ServiceResult.from_error(e)

        now = utc_now()
        execution.status = WorkflowStatus.CANCELLED
        execution.error = reason or "Execution cancelled"
        execution.end_time = now
        execution.updated_at = now
        for row in self.steps.get(run_id, []):
            if row.status == StepStatus.PENDING:
                row.status = StepStatus.CANCELLED
                row.end_time = now
        return ServiceResult.ok({"executionId": run_id, "status": execution.status.value})

    async def get_execution_history(self, template_id=None, limit=50, offset=0) -> ServiceResult:
        items = [e for e in self.executions.values() if template_id is None or e.workflow_id == template_id]
        # 插入顺序即创建顺序，倒序即最新在前
        items.reverse()
        page = items[offset:offset + limit] if limit is not None else items[offset:]
        return ServiceResult.ok({
            "executions": [e.model_copy(deep=True) for e in page],
            "total": len(items),
            "limit": limit,
            "offset": offset,
        })

    async def get_active_executions(self) -> ServiceResult:
        return ServiceResult.ok([
            e.model_copy(deep=True) for e in self.executions.values() if not e.is_terminal
        ])

    async def get_execution_logs(self, run_id: str) -> ServiceResult:
        execution = self.executions.get(run_id)
        if execution is None:
            return ServiceResult.from_error(WorkflowRunNotFoundError(run_id))
        return ServiceResult.ok(logs_from_records(execution, self.steps.get(run_id, [])))

    async def get_workflow_metrics(self, template_id: Optional[str] = None) -> ServiceResult:
        executions = [e for e in self.executions.values() if template_id is None or e.workflow_id == template_id]
        return ServiceResult.ok(compute_workflow_metrics(executions, self.steps))

    # ------------------------------------------------------------------ #
    #                           mock-only extras
    # ------------------------------------------------------------------ #
    async def get_health_check(self) -> ServiceResult:
        return ServiceResult.ok(self.health_monitor.check_health())

    async def get_statistics(self) -> ServiceResult:
        return ServiceResult.ok(self.health_monitor.get_statistics())

    async def cleanup_old_executions(self, days_to_keep: int = 30) -> ServiceResult:
        cutoff = utc_now() - timedelta(days=days_to_keep)
        stale = [
            run_id for run_id, e in self.executions.items()
            if (e.start_time or e.created_at) < cutoff
        ]
        for run_id in stale:
            del self.executions[run_id]
            self.steps.pop(run_id, None)
        return ServiceResult.ok(len(stale))

    async def reset_all_data(self) -> ServiceResult:
        # 清空而不是重新绑定：health monitor 持有同一组字典
        self.templates.clear()
        self.executions.clear()
        self.steps.clear()
        self._template_counter = 0
        self._execution_counter = 0
        self._seed()
        self.health_monitor.record_restart()
        return ServiceResult.ok({"templates": len(self.templates)})

    def is_healthy(self) -> bool:
        return self.health_monitor.check_health()["status"] != "unhealthy"

    async def wait_for_background_tasks(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        await self.wait_for_background_tasks()

    # ----------- internals -----------

    def _spawn(self, run_id: str) -> None:
        execution = self.executions[run_id]
        template = self.templates.get(execution.workflow_id)
        if template is None:
            execution.status = WorkflowStatus.FAILED
            execution.error = f"Template {execution.workflow_id} not found"
            execution.error_code = ErrorCode.TEMPLATE_NOT_FOUND.value
            execution.end_time = utc_now()
            return
        # 仍在执行中的任务会在下一步前看到 running 并继续，不再起第二个
        if run_id in self._driving:
            return
        self._driving.add(run_id)
        task = asyncio.ensure_future(self._drive(run_id, execution, template))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _drive(self, run_id: str, execution: WorkflowExecution, template: WorkflowTemplate) -> None:
        try:
            await self.simulator.simulate_execution(execution, template, self.steps[run_id])
        finally:
            self._driving.discard(run_id)

    def _require(self, run_id: str) -> WorkflowExecution:
        execution = self.executions.get(run_id)
        if execution is None:
            raise WorkflowRunNotFoundError(run_id)
        return execution

    def _next_template_id(self) -> str:
        self._template_counter += 1
        return f"mock_template_{self._template_counter}_{int(time.time() * 1000)}"

    def _save_new(self, template: WorkflowTemplate) -> ServiceResult:
        validation = validate_template(template)
        if not validation.success:
            return _invalid(validation.errors, validation.warnings)
        self.templates[template.id] = template
        return ServiceResult.ok(template.model_copy(deep=True))


def _template_not_found(template_id: str) -> ServiceResult:
    return ServiceResult.fail(ErrorCode.TEMPLATE_NOT_FOUND, f"Template {template_id} not found")


def _invalid(errors: List[str], warnings: List[str]) -> ServiceResult:
    return ServiceResult.fail(
        ErrorCode.VALIDATION_ERROR,
        f"Template validation failed: {'; '.join(errors)}",
        {"errors": errors, "warnings": warnings},
    )
