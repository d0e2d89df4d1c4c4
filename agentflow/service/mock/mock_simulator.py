"""
Mock execution simulator
------------------------
Drives a run's steps one after another with a random delay and a random
failure probability, retrying a failed step up to its ``retries``.  Runs and
step rows are plain domain models mutated in place; pause and cancel are
observed between steps, like the real engine.
"""

import asyncio
import logging
import random
from dataclasses import asdict, dataclass, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from agentflow.config import (
    MOCK_DELAY_MAX_MS,
    MOCK_DELAY_MIN_MS,
    MOCK_FAILURE_RATE,
    MOCK_MAX_CONCURRENT_EXECUTIONS,
)
from agentflow.domain.errors import ErrorCode
from agentflow.domain.models import (
    StepExecution,
    StepStatus,
    WorkflowExecution,
    WorkflowStatus,
    WorkflowStep,
    WorkflowTemplate,
    utc_now,
)

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


@dataclass
class MockExecutionConfig:
    simulate_delay: bool = True
    delay_range: Tuple[int, int] = (MOCK_DELAY_MIN_MS, MOCK_DELAY_MAX_MS)
    failure_rate: float = MOCK_FAILURE_RATE
    retry_delay_ms: int = 1000
    enable_progress_tracking: bool = True
    max_concurrent_executions: int = MOCK_MAX_CONCURRENT_EXECUTIONS


class MockExecutionSimulator:
    def __init__(
        self,
        config: Optional[MockExecutionConfig] = None,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config or MockExecutionConfig()
        self.rng = rng or random.Random()
        self._sleep = sleep

    async def simulate_execution(
        self,
        execution: WorkflowExecution,
        template: WorkflowTemplate,
        steps: List[StepExecution],
    ) -> None:
        # 调度后、开始前可能已被暂停或取消
        if execution.status not in (WorkflowStatus.PENDING, WorkflowStatus.RUNNING):
            return
        execution.status = WorkflowStatus.RUNNING
        execution.start_time = execution.start_time or utc_now()
        step_templates = {s.step_id: s for s in template.steps}

        try:
            for row in sorted(steps, key=lambda s: s.seq):
                # 暂停 / 取消只在步骤之间生效
                if execution.status != WorkflowStatus.RUNNING:
                    logger.info(f"[MockSimulator] {execution.id} stopped at status={execution.status.value}")
                    return
                if row.is_terminal:
                    continue

                step_template = step_templates.get(row.step_id)
                if step_template is None:
                    raise RuntimeError(f"Step template {row.step_id} not found")

                execution.current_step_id = row.step_id
                await self.simulate_step_execution(row, step_template)
                self._update_counters(execution, steps)

                if row.status == StepStatus.FAILED:
                    if execution.status == WorkflowStatus.CANCELLED:
                        return
                    execution.status = WorkflowStatus.FAILED
                    execution.error = row.error
                    execution.error_code = row.error_code
                    execution.end_time = utc_now()
                    return

            if execution.status != WorkflowStatus.RUNNING:
                return
            execution.status = WorkflowStatus.COMPLETED
            execution.end_time = utc_now()
            execution.output = self.generate_output(execution, steps)
        except Exception as e:
            logger.exception(f"[MockSimulator] {execution.id} simulation failed: {e}")
            execution.status = WorkflowStatus.FAILED
            execution.error = str(e) or "Unknown error"
            execution.error_code = ErrorCode.UNKNOWN_ERROR.value
            execution.end_time = utc_now()
        finally:
            execution.updated_at = utc_now()

    async def simulate_step_execution(self, row: StepExecution, step: WorkflowStep) -> None:
        max_attempts = step.retries + 1
        row.max_attempts = max_attempts
        row.start_time = utc_now()

        for attempt in range(1, max_attempts + 1):
            row.status = StepStatus.RUNNING
            row.attempt = attempt
            row.retry_count = attempt - 1

            if self.config.simulate_delay:
                await self._sleep(self._random_delay() / 1000)

            if not self._should_fail():
                row.output = self.generate_step_output(step)
                row.status = StepStatus.COMPLETED
                row.error = None
                row.error_code = None
                break

            row.status = StepStatus.FAILED
            row.error = f"Simulated failure in step {step.name}"
            row.error_code = ErrorCode.STEP_EXECUTION_ERROR.value
            if attempt < max_attempts:
                await self._sleep(self.config.retry_delay_ms / 1000)

        row.end_time = utc_now()
        row.duration = int((row.end_time - row.start_time).total_seconds() * 1000)

    def _random_delay(self) -> float:
        low, high = self.config.delay_range
        return self.rng.uniform(low, high)

    def _should_fail(self) -> bool:
        return self.rng.random() < self.config.failure_rate

    @staticmethod
    def _update_counters(execution: WorkflowExecution, steps: List[StepExecution]) -> None:
        execution.completed_steps = sum(1 for s in steps if s.status == StepStatus.COMPLETED)
        execution.failed_steps = sum(1 for s in steps if s.status == StepStatus.FAILED)
        execution.skipped_steps = sum(1 for s in steps if s.status == StepStatus.SKIPPED)
        execution.updated_at = utc_now()

    def generate_step_output(self, step: WorkflowStep) -> Dict[str, Any]:
        output: Dict[str, Any] = {
            "stepId": step.step_id,
            "stepName": step.name,
            "executedAt": utc_now().isoformat(),
            "success": True,
        }
        kind = step.handler_config.get("kind", step.type)
        if kind == "validation":
            output["validationResult"] = {"isValid": True, "errors": [], "warnings": []}
            output["processedRecords"] = self.rng.randint(100, 1099)
        elif kind == "transformation":
            output["transformationResult"] = {
                "inputRecords": self.rng.randint(100, 1099),
                "outputRecords": self.rng.randint(100, 1099),
                "transformationRules": ["rule1", "rule2", "rule3"],
            }
        elif kind == "storage":
            output["storageResult"] = {
                "recordsSaved": self.rng.randint(100, 1099),
                "tableName": "workflow_data",
                "transactionId": f"txn_{self.rng.getrandbits(32):08x}",
            }
        elif kind == "notification":
            output["notificationResult"] = {
                "messagesSent": self.rng.randint(1, 10),
                "deliveryStatus": "delivered",
                "messageId": f"msg_{self.rng.getrandbits(32):08x}",
            }
        return output

    @staticmethod
    def generate_output(execution: WorkflowExecution, steps: List[StepExecution]) -> Dict[str, Any]:
        total_duration = 0
        if execution.start_time and execution.end_time:
            total_duration = int((execution.end_time - execution.start_time).total_seconds() * 1000)
        return {
            "executionId": execution.id,
            "templateId": execution.workflow_id,
            "completedAt": utc_now().isoformat(),
            "totalDuration": total_duration,
            "stepsCompleted": sum(1 for s in steps if s.status == StepStatus.COMPLETED),
            "totalSteps": len(steps),
            "steps": {s.step_id: s.output for s in steps if s.status == StepStatus.COMPLETED},
            "summary": {"success": True, "message": "Workflow completed successfully"},
        }

    def update_config(self, **changes: Any) -> None:
        self.config = replace(self.config, **changes)

    def get_config(self) -> Dict[str, Any]:
        return asdict(self.config)
