"""
execution_manager.py —— 运行生命周期：start / run loop / pause / resume / cancel / status
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, List, Optional, Set

from agentflow.domain.errors import (
    ErrorCode,
    InvalidInputError,
    WorkflowEngineError,
    WorkflowNotFoundError,
    WorkflowRunNotFoundError,
    WorkflowStateError,
    WorkflowTimeoutError,
    log_engine_error,
)
from agentflow.domain.models import (
    ExecutionStatusView,
    StartExecutionResponse,
    StepExecution,
    StepStatus,
    StepType,
    WorkflowExecution,
    WorkflowStatus,
    WorkflowStep,
    WorkflowTemplate,
    utc_now,
)
from agentflow.domain.results import ServiceResult
from agentflow.domain.validator import validate_input
from agentflow.engine.step_executor import StepExecutionContext, StepExecutor, StepRunResult
from agentflow.events.monitor import WorkflowMonitor
from agentflow.observability.prometheus_metrics import workflow_finished, workflow_started, workflows_running
from agentflow.persistence.store import WorkflowStore

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

ACTIVE_STATUSES = (WorkflowStatus.PENDING, WorkflowStatus.RUNNING, WorkflowStatus.PAUSED)


@dataclass
class ActiveExecution:
    run_id: str
    template_id: str
    status: WorkflowStatus
    started_monotonic: float = field(default_factory=time.monotonic)


def step_batches(steps: List[WorkflowStep]) -> List[List[WorkflowStep]]:
    """相邻的 parallel 类型步骤合并为一批，其余每步单独成批"""
    batches: List[List[WorkflowStep]] = []
    for step in steps:
        if (
            step.type == StepType.PARALLEL.value
            and batches
            and batches[-1][-1].type == StepType.PARALLEL.value
        ):
            batches[-1].append(step)
        else:
            batches.append([step])
    return batches


class ExecutionManager:
    """
    单进程运行管理：
      - start_execution 只负责建档并调度后台任务，立即返回
      - 后台任务按模板顺序推进步骤，每步之前重读持久化状态（暂停/取消为协作式标志）
      - 进度落库失败只记录日志，不中断运行
    """

    def __init__(self, store: WorkflowStore, step_executor: StepExecutor, monitor: WorkflowMonitor):
        self.store = store
        self.step_executor = step_executor
        self.monitor = monitor
        self._active: Dict[str, ActiveExecution] = {}
        self._driving: Set[str] = set()
        # 仅持有引用，防止事件循环回收未完成的任务
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------ #
    #                             start
    # ------------------------------------------------------------------ #
    async def start_execution(self, template_id: str, input_data: Optional[Dict[str, Any]] = None) -> ServiceResult:
        input_data = input_data or {}
        try:
            template = await self.store.get_template(template_id)
        except WorkflowEngineError as e:
            return ServiceResult.from_error(e)
        if template is None:
            return ServiceResult.fail(ErrorCode.TEMPLATE_NOT_FOUND, f"Template not found: {template_id}")

        if template.input_schema:
            checked = validate_input(input_data, template.input_schema)
            if not checked.success:
                return ServiceResult.from_error(InvalidInputError(checked.errors))

        steps = template.ordered_steps()
        execution = WorkflowExecution(
            workflow_id=template.id,
            status=WorkflowStatus.PENDING,
            input=input_data,
            variables={**template.variables, **input_data},
            total_steps=len(steps),
        )
        step_rows = [
            StepExecution(
                workflow_run_id=execution.id,
                step_id=step.step_id,
                seq=seq,
                max_attempts=self._max_attempts(template, step),
                input=input_data,
            )
            for seq, step in enumerate(steps)
        ]

        try:
            await self.store.create_execution(execution, step_rows)
        except WorkflowEngineError as e:
            log_engine_error(e, "start_execution", logger)
            return ServiceResult.from_error(e)

        self._active[execution.id] = ActiveExecution(execution.id, template.id, WorkflowStatus.PENDING)
        self.monitor.start_monitoring(execution.id, template.id, len(steps))
        workflow_started.inc()
        logger.info(f"[{execution.id}] ▶️ scheduled template={template.id} steps={len(steps)}")

        self._spawn(self._run(execution.id))
        return ServiceResult.ok(StartExecutionResponse(execution_id=execution.id, total_steps=len(steps)))

    # ------------------------------------------------------------------ #
    #                         pause / resume / cancel
    # ------------------------------------------------------------------ #
    async def pause_execution(self, run_id: str) -> ServiceResult:
        try:
            execution = await self._require(run_id)
            if execution.status not in (WorkflowStatus.PENDING, WorkflowStatus.RUNNING):
                raise WorkflowStateError(run_id, execution.status.value, "running", "pause")
            await self.store.update_execution(run_id, status=WorkflowStatus.PAUSED)
        except WorkflowEngineError as e:
            return ServiceResult.from_error(e)

        self._cache(run_id, execution.workflow_id, WorkflowStatus.PAUSED)
        self.monitor.update_execution(run_id, WorkflowStatus.PAUSED)
        logger.info(f"[{run_id}] ⏸ paused")
        return ServiceResult.ok({"executionId": run_id, "status": WorkflowStatus.PAUSED.value})

    async def resume_execution(self, run_id: str) -> ServiceResult:
        try:
            execution = await self._require(run_id)
            if execution.status != WorkflowStatus.PAUSED:
                raise WorkflowStateError(run_id, execution.status.value, "paused", "resume")
            await self.store.update_execution(run_id, status=WorkflowStatus.RUNNING)
        except WorkflowEngineError as e:
            return ServiceResult.from_error(e)

        self._cache(run_id, execution.workflow_id, WorkflowStatus.RUNNING)
        self.monitor.update_execution(run_id, WorkflowStatus.RUNNING, {"resumed": True})
        logger.info(f"[{run_id}] ▶️ resumed")

        # 原循环仍在等待当前步骤时，它会在下一步前看到 running 并继续
        if run_id not in self._driving:
            self._spawn(self._run(run_id))
        return ServiceResult.ok({"executionId": run_id, "status": WorkflowStatus.RUNNING.value})

    async def cancel_execution(self, run_id: str, reason: Optional[str] = None) -> ServiceResult:
        reason = reason or "Execution cancelled"
        try:
            execution = await self._require(run_id)
            if execution.is_terminal:
                raise WorkflowStateError(run_id, execution.status.value, "pending|running|paused", "cancel")
            await self.store.update_execution(
                run_id,
                status=WorkflowStatus.CANCELLED,
                end_time=utc_now(),
                error=reason,
            )
        except WorkflowEngineError as e:
            return ServiceResult.from_error(e)

        await self._cancel_pending_steps(run_id)
        self._cache(run_id, execution.workflow_id, WorkflowStatus.CANCELLED)
        self.monitor.update_execution(run_id, WorkflowStatus.CANCELLED, {"reason": reason})
        workflow_finished.labels(status=WorkflowStatus.CANCELLED.value).inc()
        logger.info(f"[{run_id}] ⛔ cancelled: {reason}")
        return ServiceResult.ok({"executionId": run_id, "status": WorkflowStatus.CANCELLED.value})

    # ------------------------------------------------------------------ #
    #                              queries
    # ------------------------------------------------------------------ #
    async def get_execution_status(self, run_id: str) -> ServiceResult:
        try:
            execution = await self.store.get_execution(run_id)
            if execution is None:
                self._active.pop(run_id, None)
                raise WorkflowRunNotFoundError(run_id)
            steps = await self.store.list_step_executions(run_id)
        except WorkflowEngineError as e:
            return ServiceResult.from_error(e)

        if execution.is_terminal:
            self._active.pop(run_id, None)
        else:
            self._cache(run_id, execution.workflow_id, execution.status)
        return ServiceResult.ok(ExecutionStatusView.build(execution, steps))

    async def get_execution_history(
        self,
        template_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> ServiceResult:
        try:
            executions = await self.store.list_executions(workflow_id=template_id, limit=limit, offset=offset)
            total = await self.store.count_executions(workflow_id=template_id)
        except WorkflowEngineError as e:
            return ServiceResult.from_error(e)
        return ServiceResult.ok({"executions": executions, "total": total, "limit": limit, "offset": offset})

    async def get_active_executions(self) -> ServiceResult:
        """以存储为准重建缓存：丢弃已结束的条目，补齐缺失的条目"""
        try:
            executions = await self.store.list_executions(statuses=ACTIVE_STATUSES)
        except WorkflowEngineError as e:
            return ServiceResult.from_error(e)

        live = {e.id for e in executions}
        for run_id in [r for r in self._active if r not in live]:
            self._active.pop(run_id, None)
        for execution in executions:
            self._cache(execution.id, execution.workflow_id, execution.status)
        return ServiceResult.ok(executions)

    def cached_execution(self, run_id: str) -> Optional[ActiveExecution]:
        return self._active.get(run_id)

    async def wait_for_background_tasks(self) -> None:
        """等待当前所有后台运行结束（关闭应用或测试时使用）"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------ #
    #                             run loop
    # ------------------------------------------------------------------ #
    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, run_id: str) -> None:
        self._driving.add(run_id)
        workflows_running.inc()
        try:
            await self._drive(run_id)
        except Exception as e:
            err = WorkflowEngineError.from_exception(e, workflow_id=run_id)
            log_engine_error(err, f"run {run_id}", logger)
            await self._finalize(run_id, WorkflowStatus.FAILED, error=err)
        finally:
            workflows_running.dec()
            self._driving.discard(run_id)

    async def _drive(self, run_id: str) -> None:
        execution = await self.store.get_execution(run_id)
        if execution is None or execution.status not in (WorkflowStatus.PENDING, WorkflowStatus.RUNNING):
            return

        template = await self.store.get_template(execution.workflow_id)
        if template is None:
            await self._finalize(run_id, WorkflowStatus.FAILED, error=WorkflowNotFoundError(execution.workflow_id))
            return

        if execution.status == WorkflowStatus.PENDING or execution.start_time is None:
            await self._bookkeep(
                self.store.update_execution(
                    run_id, status=WorkflowStatus.RUNNING, start_time=execution.start_time or utc_now()
                ),
                "mark running",
            )
            self._cache(run_id, template.id, WorkflowStatus.RUNNING)
            self.monitor.update_execution(run_id, WorkflowStatus.RUNNING)

        entry = self._active.get(run_id) or self._cache(run_id, template.id, WorkflowStatus.RUNNING)
        variables: Dict[str, Any] = dict(execution.variables)
        output: Dict[str, Any] = dict(execution.output)

        for batch in step_batches(template.ordered_steps()):
            current = await self.store.get_execution(run_id)
            if current is None:
                return
            if current.status != WorkflowStatus.RUNNING:
                logger.info(f"[{run_id}] 🛑 loop stopped, status={current.status.value}")
                return

            if template.timeout and (time.monotonic() - entry.started_monotonic) * 1000 > template.timeout:
                await self._finalize(
                    run_id, WorkflowStatus.TIMEOUT,
                    error=WorkflowTimeoutError(run_id, template.timeout),
                    output=output, variables=variables,
                )
                return

            rows = {r.step_id: r for r in await self.store.list_step_executions(run_id)}
            pending = [s for s in batch if s.step_id not in rows or not rows[s.step_id].is_terminal]
            if not pending:
                continue

            await self._bookkeep(
                self.store.update_execution(run_id, current_step_id=pending[0].step_id),
                "current step",
            )

            failure = await self._execute_batch(template, current, pending, variables, output)
            await self._sync_progress(run_id, variables, output)
            if failure is not None:
                await self._finalize(run_id, WorkflowStatus.FAILED, error=failure, output=output, variables=variables)
                return

        await self._finalize(run_id, WorkflowStatus.COMPLETED, output=output, variables=variables)

    async def _execute_batch(
        self,
        template: WorkflowTemplate,
        execution: WorkflowExecution,
        steps: List[WorkflowStep],
        variables: Dict[str, Any],
        output: Dict[str, Any],
    ) -> Optional[WorkflowEngineError]:
        """执行一批步骤，合并变量与输出；返回导致运行失败的错误（若有）"""
        items = [(step, self._context(template, execution, step, variables)) for step in steps]

        if len(items) == 1:
            step, ctx = items[0]
            result = await self.step_executor.execute_step(step, ctx)
            if result.success:
                self._merge(result.data, variables, output)
                return None
            return await self._handle_step_failure(execution.id, step, result)

        result = await self.step_executor.execute_steps_in_parallel(items)
        if result.success:
            for run_result in result.data:
                self._merge(run_result, variables, output)
            return None

        for run_result in result.error.details.get("results", []):
            if run_result.success:
                self._merge(run_result, variables, output)
        return WorkflowEngineError(
            result.error.message,
            result.error.code,
            workflow_id=template.id,
            details={"failedSteps": result.error.details.get("failedSteps", [])},
        )

    async def _handle_step_failure(
        self, run_id: str, step: WorkflowStep, result: ServiceResult
    ) -> Optional[WorkflowEngineError]:
        error = result.error
        if error.code == ErrorCode.DEPENDENCY_NOT_MET.value and step.on_error in ("continue", "skip"):
            # 依赖未满足且允许继续：该步骤记为跳过
            await self._bookkeep(
                self.store.update_step_execution(
                    run_id, step.step_id,
                    status=StepStatus.SKIPPED,
                    end_time=utc_now(),
                    error=error.message,
                    error_code=error.code,
                ),
                "skip blocked step",
            )
            self.monitor.record_step_skipped(run_id, step.step_id, error.message)
            return None

        return WorkflowEngineError(error.message, error.code, step_id=step.step_id, details=error.details)

    @staticmethod
    def _merge(run_result: StepRunResult, variables: Dict[str, Any], output: Dict[str, Any]) -> None:
        if run_result.status != StepStatus.COMPLETED:
            return
        variables.update(run_result.updated_variables)
        output[run_result.step_id] = run_result.output

    def _context(
        self,
        template: WorkflowTemplate,
        execution: WorkflowExecution,
        step: WorkflowStep,
        variables: Dict[str, Any],
    ) -> StepExecutionContext:
        return StepExecutionContext(
            workflow_id=template.id,
            run_id=execution.id,
            step_id=step.step_id,
            input=dict(execution.input),
            variables=dict(variables),
            metadata={**template.metadata, "templateId": template.id, "runId": execution.id},
            max_attempts=self._max_attempts(template, step),
        )

    @staticmethod
    def _max_attempts(template: WorkflowTemplate, step: WorkflowStep) -> int:
        # retries 表示失败后的重试次数，总尝试次数 = 1 + retries
        attempts = step.retries + 1
        if template.retry_policy is not None and step.retries == 0:
            attempts = max(attempts, template.retry_policy.max_attempts)
        return attempts

    # ------------------------------------------------------------------ #
    #                            bookkeeping
    # ------------------------------------------------------------------ #
    async def _sync_progress(self, run_id: str, variables: Dict[str, Any], output: Dict[str, Any]) -> None:
        try:
            rows = await self.store.list_step_executions(run_id)
            await self.store.update_execution(
                run_id,
                variables=dict(variables),
                output=dict(output),
                **_counters(rows),
            )
        except Exception as e:
            log_engine_error(WorkflowEngineError.from_exception(e, workflow_id=run_id), "sync progress", logger)

    async def _finalize(
        self,
        run_id: str,
        status: WorkflowStatus,
        error: Optional[WorkflowEngineError] = None,
        output: Optional[Dict[str, Any]] = None,
        variables: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            current = await self.store.get_execution(run_id)
            if current is None:
                return
            # 期间被暂停或取消：保持外部设置的状态
            if current.status in (WorkflowStatus.PAUSED, WorkflowStatus.CANCELLED) or current.is_terminal:
                return

            rows = await self.store.list_step_executions(run_id)
            changes: Dict[str, Any] = {"status": status, "end_time": utc_now(), **_counters(rows)}
            if error is not None:
                changes["error"] = error.message
                changes["error_code"] = error.code
            if output is not None:
                changes["output"] = dict(output)
            if variables is not None:
                changes["variables"] = dict(variables)
            await self.store.update_execution(run_id, **changes)
        except Exception as e:
            log_engine_error(WorkflowEngineError.from_exception(e, workflow_id=run_id), "finalize", logger)
            return

        entry = self._active.get(run_id)
        if entry is not None:
            entry.status = status
        details = {"error": error.message, "errorCode": error.code} if error else None
        self.monitor.update_execution(run_id, status, details)
        workflow_finished.labels(status=status.value).inc()
        logger.info(f"[{run_id}] 🏁 finished status={status.value}")

    async def _cancel_pending_steps(self, run_id: str) -> None:
        try:
            for row in await self.store.list_step_executions(run_id):
                if row.status == StepStatus.PENDING:
                    await self.store.update_step_execution(
                        run_id, row.step_id, status=StepStatus.CANCELLED, end_time=utc_now()
                    )
        except Exception as e:
            log_engine_error(WorkflowEngineError.from_exception(e, workflow_id=run_id), "cancel steps", logger)

    async def _bookkeep(self, op: Awaitable[Any], what: str) -> Any:
        try:
            return await op
        except Exception as e:
            log_engine_error(WorkflowEngineError.from_exception(e), what, logger)
            return None

    async def _require(self, run_id: str) -> WorkflowExecution:
        execution = await self.store.get_execution(run_id)
        if execution is None:
            raise WorkflowRunNotFoundError(run_id)
        return execution

    def _cache(self, run_id: str, template_id: str, status: WorkflowStatus) -> ActiveExecution:
        entry = self._active.get(run_id)
        if entry is None:
            entry = ActiveExecution(run_id, template_id, status)
            self._active[run_id] = entry
        entry.status = status
        return entry


def _counters(rows: List[StepExecution]) -> Dict[str, int]:
    return {
        "completed_steps": sum(1 for r in rows if r.status == StepStatus.COMPLETED),
        "failed_steps": sum(1 for r in rows if r.status == StepStatus.FAILED),
        "skipped_steps": sum(1 for r in rows if r.status == StepStatus.SKIPPED),
    }
