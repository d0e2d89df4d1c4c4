"""
Step executor
-------------
Runs one template step for one run:

    dependencies → conditions → (running → completed | failed) × attempts

Each attempt is raced against the step timeout with ``asyncio.wait_for``;
retries use a fixed delay.  Persisting progress is best-effort: store errors
are logged and never abort the step.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from agentflow.config import STEP_RETRY_DELAY_MS, STEP_TIMEOUT_MS
from agentflow.domain.errors import (
    ErrorCode,
    StepExecutionError,
    StepTimeoutError,
    WorkflowEngineError,
    is_retryable_error,
    log_engine_error,
)
from agentflow.domain.models import StepStatus, WorkflowStep, utc_now
from agentflow.domain.results import ServiceResult
from agentflow.engine.conditions import first_failing_condition
from agentflow.engine.registry import HandlerContext, HandlerRegistry, StepExecutionResult
from agentflow.events.monitor import WorkflowMonitor
from agentflow.observability.prometheus_metrics import step_fail, step_retry, step_success
from agentflow.observability.trace_utils import traced_span
from agentflow.persistence.store import WorkflowStore

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


@dataclass
class StepExecutionContext:
    workflow_id: str
    run_id: str
    step_id: Optional[str] = None
    input: Dict[str, Any] = field(default_factory=dict)
    variables: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    max_attempts: int = 1

    def scope(self) -> Dict[str, Any]:
        return {"input": self.input, "variables": self.variables, "metadata": self.metadata}


@dataclass
class StepExecutorOptions:
    timeout: Optional[int] = None          # ms, overrides step.timeout
    retry_delay: Optional[int] = None      # ms, overrides step.retry_delay
    continue_on_error: bool = False
    skip_dependency_check: bool = False


@dataclass
class StepRunResult:
    step_id: str
    success: bool
    status: StepStatus
    output: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    duration: int = 0
    attempts: int = 0
    should_continue: bool = True
    updated_variables: Dict[str, Any] = field(default_factory=dict)


class StepExecutor:
    def __init__(
        self,
        store: WorkflowStore,
        registry: HandlerRegistry,
        monitor: WorkflowMonitor,
        default_timeout_ms: int = STEP_TIMEOUT_MS,
        default_retry_delay_ms: int = STEP_RETRY_DELAY_MS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.registry = registry
        self.monitor = monitor
        self.default_timeout_ms = default_timeout_ms
        self.default_retry_delay_ms = default_retry_delay_ms
        self._sleep = sleep

    async def execute_step(
        self,
        step: WorkflowStep,
        context: StepExecutionContext,
        options: Optional[StepExecutorOptions] = None,
    ) -> ServiceResult:
        options = options or StepExecutorOptions()
        context = replace(context, step_id=step.step_id)
        run_id = context.run_id

        # 1) 前置依赖：全部 completed 才允许进入 running
        if not options.skip_dependency_check:
            unmet = await self._unmet_dependencies(step, run_id)
            if unmet:
                logger.info(f"[StepExecutor] step={step.step_id} blocked by {unmet}")
                return ServiceResult.fail(
                    ErrorCode.DEPENDENCY_NOT_MET,
                    f"Step {step.step_id} dependencies not completed: {', '.join(unmet)}",
                    {"stepId": step.step_id, "dependencies": unmet},
                )

        # 2) 条件：首个不成立的条件直接跳过
        failing = first_failing_condition(step.conditions, context.scope())
        if failing is not None:
            reason = f"Condition not met for field {failing.field}"
            now = utc_now()
            await self._persist(run_id, step.step_id, status=StepStatus.SKIPPED, end_time=now, error=reason,
                                error_code=ErrorCode.STEP_SKIPPED.value)
            self.monitor.record_step_skipped(run_id, step.step_id, reason)
            return ServiceResult.ok(StepRunResult(
                step_id=step.step_id,
                success=True,
                status=StepStatus.SKIPPED,
                error=reason,
                error_code=ErrorCode.STEP_SKIPPED.value,
                should_continue=True,
            ))

        # 3) 重试循环
        max_attempts = max(context.max_attempts, step.retries, 1)
        timeout_ms = options.timeout or step.timeout or self.default_timeout_ms
        retry_delay_ms = next(
            d for d in (options.retry_delay, step.retry_delay, self.default_retry_delay_ms) if d is not None
        )
        handler_input = {
            "step_config": dict(step.handler_config),
            "input": context.input,
            "variables": context.variables,
            "metadata": context.metadata,
        }

        last_error: Optional[WorkflowEngineError] = None
        started = time.perf_counter()
        first_start = utc_now()
        attempts = 0

        for attempt in range(1, max_attempts + 1):
            attempts = attempt
            await self._persist(
                run_id, step.step_id,
                status=StepStatus.RUNNING,
                attempt=attempt,
                max_attempts=max_attempts,
                retry_count=attempt - 1,
                start_time=first_start,
                input=handler_input["input"],
            )
            self.monitor.record_step_start(run_id, step.step_id, attempt)

            try:
                result = await self._dispatch(step, context, handler_input, timeout_ms, attempt)
            except Exception as e:
                last_error = WorkflowEngineError.from_exception(e, step_id=step.step_id, workflow_id=context.workflow_id)
            else:
                if result.success:
                    return await self._complete(step, context, result, attempts, started)
                message = result.error or f"Step {step.step_id} failed"
                if result.error_code in (None, ErrorCode.STEP_EXECUTION_ERROR.value):
                    last_error = StepExecutionError(message, step.step_id, workflow_id=context.workflow_id)
                else:
                    last_error = WorkflowEngineError(
                        message, result.error_code, step_id=step.step_id, workflow_id=context.workflow_id
                    )

            log_engine_error(last_error, f"step {step.step_id} attempt {attempt}/{max_attempts}", logger)

            if not is_retryable_error(last_error):
                break
            if attempt < max_attempts:
                self.monitor.record_step_retry(run_id, step.step_id, attempt, last_error.message)
                step_retry.labels(handler=step.handler).inc()
                await self._sleep(retry_delay_ms / 1000)

        return await self._fail(step, context, options, last_error, attempts, started)

    async def execute_steps_in_parallel(
        self,
        items: List[Tuple[WorkflowStep, StepExecutionContext]],
        options: Optional[StepExecutorOptions] = None,
    ) -> ServiceResult:
        """Settle-all fan-out: a failing sibling never cancels the others."""
        options = options or StepExecutorOptions()
        outcomes = await asyncio.gather(
            *(self.execute_step(step, ctx, options) for step, ctx in items),
            return_exceptions=True,
        )

        results: List[StepRunResult] = []
        hard_failures: List[str] = []
        for (step, _), outcome in zip(items, outcomes):
            if isinstance(outcome, BaseException):
                err = WorkflowEngineError.from_exception(outcome, step_id=step.step_id)
                results.append(StepRunResult(step_id=step.step_id, success=False, status=StepStatus.FAILED,
                                             error=err.message, error_code=err.code, should_continue=False))
                hard_failures.append(step.step_id)
            elif not outcome.success:
                results.append(StepRunResult(step_id=step.step_id, success=False, status=StepStatus.FAILED,
                                             error=outcome.error.message, error_code=outcome.error.code,
                                             should_continue=False))
                hard_failures.append(step.step_id)
            else:
                results.append(outcome.data)

        if hard_failures and not options.continue_on_error:
            return ServiceResult.fail(
                ErrorCode.PARALLEL_EXECUTION_FAILED,
                f"Parallel execution failed for steps: {', '.join(hard_failures)}",
                {"failedSteps": hard_failures, "results": results},
            )
        return ServiceResult.ok(results)

    async def get_step_status(self, step_id: str, run_id: str) -> ServiceResult:
        step = await self.store.get_step_execution(run_id, step_id)
        if step is None:
            return ServiceResult.fail(
                ErrorCode.STEP_EXECUTION_NOT_FOUND,
                f"Step execution not found: {step_id} in run {run_id}",
            )
        return ServiceResult.ok(step)

    # ----------- internals -----------

    async def _unmet_dependencies(self, step: WorkflowStep, run_id: str) -> List[str]:
        unmet = []
        for dep_id in step.dependencies:
            dep = await self.store.get_step_execution(run_id, dep_id)
            if dep is None or dep.status != StepStatus.COMPLETED:
                unmet.append(dep_id)
        return unmet

    async def _dispatch(
        self,
        step: WorkflowStep,
        context: StepExecutionContext,
        handler_input: Dict[str, Any],
        timeout_ms: int,
        attempt: int,
    ) -> StepExecutionResult:
        handler_context = HandlerContext(
            workflow_id=context.workflow_id,
            run_id=context.run_id,
            step_id=step.step_id,
            attempt=attempt,
            input=context.input,
            variables=context.variables,
            metadata=context.metadata,
        )
        async with traced_span("step.execute", step_id=step.step_id, handler=step.handler, attempt=attempt):
            try:
                return await asyncio.wait_for(
                    self.registry.execute_handler(step.handler, handler_input, handler_context),
                    timeout=timeout_ms / 1000,
                )
            except asyncio.TimeoutError:
                raise StepTimeoutError(step.step_id, timeout_ms)

    async def _complete(
        self,
        step: WorkflowStep,
        context: StepExecutionContext,
        result: StepExecutionResult,
        attempts: int,
        started: float,
    ) -> ServiceResult:
        duration = int((time.perf_counter() - started) * 1000)
        await self._persist(
            context.run_id, step.step_id,
            status=StepStatus.COMPLETED,
            end_time=utc_now(),
            duration=duration,
            output=result.output,
            error=None,
            error_code=None,
        )
        self.monitor.record_step_completion(context.run_id, step.step_id, True, duration)
        step_success.labels(handler=step.handler).inc()
        return ServiceResult.ok(StepRunResult(
            step_id=step.step_id,
            success=True,
            status=StepStatus.COMPLETED,
            output=result.output,
            duration=duration,
            attempts=attempts,
            should_continue=True,
            updated_variables=dict(result.variables),
        ))

    async def _fail(
        self,
        step: WorkflowStep,
        context: StepExecutionContext,
        options: StepExecutorOptions,
        error: WorkflowEngineError,
        attempts: int,
        started: float,
    ) -> ServiceResult:
        duration = int((time.perf_counter() - started) * 1000)
        await self._persist(
            context.run_id, step.step_id,
            status=StepStatus.FAILED,
            end_time=utc_now(),
            duration=duration,
            error=error.message,
            error_code=error.code,
        )
        self.monitor.record_step_completion(context.run_id, step.step_id, False, duration)
        step_fail.labels(handler=step.handler).inc()

        if step.on_error == "continue" or options.continue_on_error:
            return ServiceResult.ok(StepRunResult(
                step_id=step.step_id,
                success=False,
                status=StepStatus.FAILED,
                error=error.message,
                error_code=error.code,
                duration=duration,
                attempts=attempts,
                should_continue=True,
            ))

        return ServiceResult.fail(
            error.code,
            error.message,
            {"stepId": step.step_id, "attempts": attempts},
        )

    async def _persist(self, run_id: str, step_id: str, **changes: Any) -> None:
        try:
            await self.store.update_step_execution(run_id, step_id, **changes)
        except Exception as e:
            log_engine_error(WorkflowEngineError.from_exception(e, step_id=step_id), "persist step state", logger)
