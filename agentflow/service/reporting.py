"""
Execution logs and workflow metrics.

Both engines expose the same shapes; this module computes them from plain
domain records so the real engine (store-backed) and the mock engine
(in-memory) stay in step.
"""

from statistics import median
from typing import Dict, Iterable, List, Optional

from agentflow.domain.models import (
    ExecutionLogEntry,
    StepExecution,
    StepStatus,
    WorkflowExecution,
    WorkflowStatus,
)
from agentflow.events.eventbus_model import WorkflowExecutionEvent

_ERROR_STATUSES = (WorkflowStatus.FAILED, WorkflowStatus.TIMEOUT)


def logs_from_events(events: Iterable[WorkflowExecutionEvent]) -> List[ExecutionLogEntry]:
    return [
        ExecutionLogEntry(
            timestamp=e.timestamp,
            level=e.level.value,
            message=e.message,
            step_id=e.details.get("stepId"),
            data=e.details,
        )
        for e in sorted(events, key=lambda e: e.timestamp)
    ]


def logs_from_records(execution: WorkflowExecution, steps: List[StepExecution]) -> List[ExecutionLogEntry]:
    """Reconstruct a coarse log from persisted rows (monitor history unavailable)."""
    logs = [
        ExecutionLogEntry(
            timestamp=execution.start_time or execution.created_at,
            level="info",
            message=f"Workflow execution {execution.id} started",
            data={"executionId": execution.id, "templateId": execution.workflow_id},
        )
    ]
    for step in sorted(steps, key=lambda s: s.seq):
        if step.start_time is None and step.end_time is None:
            continue
        logs.append(ExecutionLogEntry(
            timestamp=step.start_time or step.end_time,
            level="error" if step.status == StepStatus.FAILED else "info",
            message=f"Step {step.step_id} {step.status.value}",
            step_id=step.step_id,
            data={"executionId": execution.id, "status": step.status.value, "error": step.error},
        ))
    if execution.end_time:
        logs.append(ExecutionLogEntry(
            timestamp=execution.end_time,
            level="error" if execution.status in _ERROR_STATUSES else "info",
            message=f"Workflow execution {execution.id} {execution.status.value}",
            data={"executionId": execution.id, "status": execution.status.value, "error": execution.error},
        ))
    logs.sort(key=lambda entry: entry.timestamp)
    return logs


def _duration_ms(execution: WorkflowExecution) -> Optional[float]:
    if execution.start_time is None or execution.end_time is None:
        return None
    return (execution.end_time - execution.start_time).total_seconds() * 1000


def compute_workflow_metrics(
    executions: List[WorkflowExecution],
    steps_by_run: Dict[str, List[StepExecution]],
) -> Dict:
    total = len(executions)
    completed = [e for e in executions if e.status == WorkflowStatus.COMPLETED]
    times = [d for d in (_duration_ms(e) for e in completed) if d is not None]

    by_day: Dict[str, int] = {}
    for e in executions:
        day = (e.start_time or e.created_at).date().isoformat()
        by_day[day] = by_day.get(day, 0) + 1

    step_metrics: Dict[str, Dict] = {}
    for e in executions:
        for step in steps_by_run.get(e.id, []):
            stats = step_metrics.setdefault(step.step_id, {
                "totalExecutions": 0,
                "successfulExecutions": 0,
                "failedExecutions": 0,
                "totalDuration": 0,
                "averageDuration": 0,
            })
            stats["totalExecutions"] += 1
            if step.status == StepStatus.COMPLETED:
                stats["successfulExecutions"] += 1
            elif step.status == StepStatus.FAILED:
                stats["failedExecutions"] += 1
            if step.duration:
                stats["totalDuration"] += step.duration
            stats["averageDuration"] = stats["totalDuration"] / stats["totalExecutions"]

    return {
        "totalExecutions": total,
        "completedExecutions": len(completed),
        "failedExecutions": sum(1 for e in executions if e.status == WorkflowStatus.FAILED),
        "runningExecutions": sum(1 for e in executions if e.status == WorkflowStatus.RUNNING),
        "averageExecutionTime": sum(times) / len(times) if times else 0,
        "successRate": len(completed) / total * 100 if total else 0,
        "executionsByDay": by_day,
        "stepMetrics": step_metrics,
        "performanceStats": {
            "minExecutionTime": min(times) if times else 0,
            "maxExecutionTime": max(times) if times else 0,
            "medianExecutionTime": median(times) if times else 0,
        },
    }
