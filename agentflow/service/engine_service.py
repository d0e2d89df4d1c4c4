"""
WorkflowEngineService —— 基于持久化存储的真实引擎

组装：store + HandlerRegistry + WorkflowMonitor → StepExecutor → ExecutionManager，
模板操作委托给 WorkflowTemplateService。
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from agentflow.config import STEP_RETRY_DELAY_MS, STEP_TIMEOUT_MS
from agentflow.domain.errors import ErrorCode, WorkflowEngineError
from agentflow.domain.results import ServiceResult
from agentflow.engine.execution_manager import ExecutionManager
from agentflow.engine.handlers.handler_registry import build_default_registry
from agentflow.engine.registry import HandlerRegistry
from agentflow.engine.step_executor import StepExecutor
from agentflow.events.monitor import WorkflowMonitor
from agentflow.events.realtime import RealTimeMonitor
from agentflow.persistence.store import WorkflowStore
from agentflow.service.base import CreatePayload, UpdatePayload, WorkflowService
from agentflow.service.reporting import compute_workflow_metrics, logs_from_events, logs_from_records
from agentflow.service.workflow_template_service import WorkflowTemplateService

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


class WorkflowEngineService(WorkflowService):
    def __init__(
        self,
        store: WorkflowStore,
        registry: Optional[HandlerRegistry] = None,
        monitor: Optional[WorkflowMonitor] = None,
        step_timeout_ms: int = STEP_TIMEOUT_MS,
        retry_delay_ms: int = STEP_RETRY_DELAY_MS,
        sleep=None,
    ):
        self.store = store
        self.registry = registry or build_default_registry()
        self.monitor = monitor or WorkflowMonitor()
        self.realtime = RealTimeMonitor(self.monitor)

        self.step_executor = StepExecutor(
            store,
            self.registry,
            self.monitor,
            default_timeout_ms=step_timeout_ms,
            default_retry_delay_ms=retry_delay_ms,
            sleep=sleep or asyncio.sleep,
        )
        self.executions = ExecutionManager(store, self.step_executor, self.monitor)
        self.templates = WorkflowTemplateService(store, available_handlers=self.registry.available_names())

    # ----------- templates -----------

    async def create_template(self, request: CreatePayload) -> ServiceResult:
        return await self.templates.create_template(request)

    async def update_template(self, template_id: str, request: UpdatePayload) -> ServiceResult:
        return await self.templates.update_template(template_id, request)

    async def delete_template(self, template_id: str) -> ServiceResult:
        return await self.templates.delete_template(template_id)

    async def get_template(self, template_id: str) -> ServiceResult:
        return await self.templates.get_template(template_id)

    async def list_templates(self, active=None, limit=None, offset=0) -> ServiceResult:
        return await self.templates.list_templates(active=active, limit=limit, offset=offset)

    async def clone_template(self, template_id: str, new_name: Optional[str] = None) -> ServiceResult:
        return await self.templates.clone_template(template_id, new_name)

    async def search_templates(self, query: str) -> ServiceResult:
        return await self.templates.search_templates(query)

    async def export_template(self, template_id: str) -> ServiceResult:
        return await self.templates.export_template(template_id)

    async def import_template(self, payload: str) -> ServiceResult:
        return await self.templates.import_template(payload)

    async def validate_template(self, raw: Any) -> ServiceResult:
        # 注册表可能在构造后新增 handler，按调用时刻取可用名单
        self.templates.available_handlers = self.registry.available_names()
        return await self.templates.validate_template(raw)

    # ----------- executions -----------

    async def start_execution(self, template_id: str, input_data: Optional[Dict[str, Any]] = None) -> ServiceResult:
        return await self.executions.start_execution(template_id, input_data)

    async def get_execution_status(self, run_id: str) -> ServiceResult:
        return await self.executions.get_execution_status(run_id)

    async def pause_execution(self, run_id: str) -> ServiceResult:
        return await self.executions.pause_execution(run_id)

    async def resume_execution(self, run_id: str) -> ServiceResult:
        return await self.executions.resume_execution(run_id)

    async def cancel_execution(self, run_id: str, reason: Optional[str] = None) -> ServiceResult:
        return await self.executions.cancel_execution(run_id, reason)

    async def get_execution_history(self, template_id=None, limit=50, offset=0) -> ServiceResult:
        return await self.executions.get_execution_history(template_id, limit, offset)

    async def get_active_executions(self) -> ServiceResult:
        return await self.executions.get_active_executions()

    async def get_execution_logs(self, run_id: str) -> ServiceResult:
        try:
            execution = await self.store.get_execution(run_id)
            if execution is None:
                return ServiceResult.fail(ErrorCode.WORKFLOW_RUN_NOT_FOUND, f"Workflow run not found: {run_id}")
            events = self.monitor.get_execution_events(run_id)
            if events:
                return ServiceResult.ok(logs_from_events(events))
            # 本进程没有该运行的事件（例如重启后），退化为按持久化记录重建
            steps = await self.store.list_step_executions(run_id)
            return ServiceResult.ok(logs_from_records(execution, steps))
        except WorkflowEngineError as e:
            return ServiceResult.from_error(e)

    async def get_workflow_metrics(self, template_id: Optional[str] = None) -> ServiceResult:
        try:
            executions = await self.store.list_executions(workflow_id=template_id)
            steps_by_run = {e.id: await self.store.list_step_executions(e.id) for e in executions}
        except WorkflowEngineError as e:
            return ServiceResult.from_error(e)
        metrics = compute_workflow_metrics(executions, steps_by_run)
        metrics["monitor"] = self.monitor.get_workflow_stats()
        return ServiceResult.ok(metrics)

    async def shutdown(self) -> None:
        await self.executions.wait_for_background_tasks()
