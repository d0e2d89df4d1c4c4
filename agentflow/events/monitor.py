"""
In-process execution monitor
----------------------------
• 事件日志：有界环形缓冲区（默认 10000 条，超出后丢弃最旧事件）
• 每个 run 一份 ExecutionMetrics（步骤计数 / 重试次数 / 内存快照 / 耗时）
• 监听器：record_event 后同步回调，回调异常只记录日志
The monitor never drives control flow; it only observes.
"""

import logging
import os
import resource
import sys
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, List, Optional

from agentflow.config import MAX_EVENT_HISTORY
from agentflow.domain.models import TERMINAL_WORKFLOW_STATUSES, WorkflowStatus
from agentflow.events.eventbus_model import (
    EventFilter,
    EventType,
    WorkflowExecutionEvent,
    level_for,
)
from agentflow.utils.timefmt import naive_utcnow

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

EventListener = Callable[[WorkflowExecutionEvent], None]

_STATUS_EVENTS = {
    WorkflowStatus.RUNNING: EventType.STATUS_CHANGED,
    WorkflowStatus.PAUSED: EventType.PAUSED,
    WorkflowStatus.COMPLETED: EventType.COMPLETED,
    WorkflowStatus.FAILED: EventType.FAILED,
    WorkflowStatus.CANCELLED: EventType.CANCELLED,
    WorkflowStatus.TIMEOUT: EventType.TIMEOUT,
}


def current_memory_usage() -> Dict[str, int]:
    usage = resource.getrusage(resource.RUSAGE_SELF)
    # ru_maxrss: Linux 为 KB，macOS 为字节
    max_rss = usage.ru_maxrss if sys.platform == "darwin" else usage.ru_maxrss * 1024
    rss = max_rss
    try:
        with open("/proc/self/statm") as f:
            rss = int(f.read().split()[1]) * os.sysconf("SC_PAGE_SIZE")
    except OSError:
        pass
    return {"rss": rss, "maxRss": max_rss}


@dataclass
class ExecutionMetrics:
    run_id: str
    template_id: str
    start_time: datetime = field(default_factory=naive_utcnow)
    end_time: Optional[datetime] = None
    duration: int = 0
    step_count: int = 0
    completed_steps: int = 0
    failed_steps: int = 0
    skipped_steps: int = 0
    retry_count: int = 0
    status: WorkflowStatus = WorkflowStatus.RUNNING
    memory_usage: Dict[str, int] = field(default_factory=current_memory_usage)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runId": self.run_id,
            "templateId": self.template_id,
            "startTime": self.start_time.isoformat(),
            "endTime": self.end_time.isoformat() if self.end_time else None,
            "duration": self.duration,
            "stepCount": self.step_count,
            "completedSteps": self.completed_steps,
            "failedSteps": self.failed_steps,
            "skippedSteps": self.skipped_steps,
            "retryCount": self.retry_count,
            "status": self.status.value,
            "memoryUsage": dict(self.memory_usage),
        }


class WorkflowMonitor:
    def __init__(self, max_event_history: int = MAX_EVENT_HISTORY):
        self.max_event_history = max_event_history
        self._events: Deque[WorkflowExecutionEvent] = deque(maxlen=max_event_history)
        self._metrics: Dict[str, ExecutionMetrics] = {}
        self._active: Dict[str, ExecutionMetrics] = {}
        self._listeners: List[EventListener] = []

    # ----------- lifecycle -----------

    def start_monitoring(self, run_id: str, template_id: str, step_count: int) -> ExecutionMetrics:
        metrics = ExecutionMetrics(run_id=run_id, template_id=template_id, step_count=step_count)
        self._metrics[run_id] = metrics
        self._active[run_id] = metrics
        self.record_event(
            run_id,
            EventType.STARTED,
            "Workflow execution started",
            {"templateId": template_id, "stepCount": step_count},
        )
        return metrics

    def update_execution(self, run_id: str, status: WorkflowStatus, details: Optional[Dict[str, Any]] = None) -> None:
        metrics = self._metrics.get(run_id)
        if metrics is None:
            return

        metrics.status = status
        if status in TERMINAL_WORKFLOW_STATUSES:
            metrics.end_time = naive_utcnow()
            metrics.duration = int((metrics.end_time - metrics.start_time).total_seconds() * 1000)
            self._active.pop(run_id, None)
        else:
            self._active[run_id] = metrics

        event_type = _STATUS_EVENTS.get(status, EventType.STATUS_CHANGED)
        if status == WorkflowStatus.RUNNING and details and details.get("resumed"):
            event_type = EventType.RESUMED
        self.record_event(run_id, event_type, f"Status changed to {status.value}", details)

    def record_step_start(self, run_id: str, step_id: str, attempt: int) -> None:
        self.record_event(
            run_id, EventType.STEP_STARTED, f"Step {step_id} started",
            {"stepId": step_id, "attempt": attempt},
        )

    def record_step_completion(self, run_id: str, step_id: str, success: bool, duration: int) -> None:
        metrics = self._metrics.get(run_id)
        if metrics is None:
            return

        if success:
            metrics.completed_steps += 1
            self.record_event(
                run_id, EventType.STEP_COMPLETED, f"Step {step_id} completed",
                {"stepId": step_id, "duration": duration},
            )
        else:
            metrics.failed_steps += 1
            self.record_event(
                run_id, EventType.STEP_FAILED, f"Step {step_id} failed",
                {"stepId": step_id, "duration": duration},
            )
        metrics.memory_usage = current_memory_usage()

    def record_step_skipped(self, run_id: str, step_id: str, reason: str) -> None:
        metrics = self._metrics.get(run_id)
        if metrics is not None:
            metrics.skipped_steps += 1
        self.record_event(
            run_id, EventType.STEP_SKIPPED, f"Step {step_id} skipped",
            {"stepId": step_id, "reason": reason},
        )

    def record_step_retry(self, run_id: str, step_id: str, retry_count: int, error: str) -> None:
        metrics = self._metrics.get(run_id)
        if metrics is None:
            return
        metrics.retry_count += 1
        self.record_event(
            run_id, EventType.STEP_RETRY, f"Step {step_id} retry {retry_count}",
            {"stepId": step_id, "retryCount": retry_count, "error": error},
        )

    def record_event(
        self,
        run_id: str,
        event_type: EventType,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> WorkflowExecutionEvent:
        event = WorkflowExecutionEvent(
            run_id=run_id,
            type=event_type,
            message=message,
            level=level_for(event_type),
            details=details or {},
        )
        # deque(maxlen) 自动淘汰最旧事件
        self._events.append(event)

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.exception(f"[Monitor] listener error for {event.type}: {e}")
        return event

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # ----------- queries -----------

    def get_execution_metrics(self, run_id: str) -> Optional[ExecutionMetrics]:
        return self._metrics.get(run_id)

    def get_all_execution_metrics(self) -> List[ExecutionMetrics]:
        return list(self._metrics.values())

    def get_active_executions(self) -> List[ExecutionMetrics]:
        return list(self._active.values())

    def get_execution_events(self, run_id: str, limit: Optional[int] = None) -> List[WorkflowExecutionEvent]:
        return self.get_events(EventFilter(run_id=run_id, limit=limit))

    def get_events(self, event_filter: Optional[EventFilter] = None) -> List[WorkflowExecutionEvent]:
        if event_filter is None:
            return list(self._events)
        events = [e for e in self._events if event_filter.matches(e)]
        if event_filter.limit:
            events = events[-event_filter.limit:]
        return events

    def get_workflow_stats(self) -> Dict[str, Any]:
        all_metrics = self.get_all_execution_metrics()
        finished = [m for m in all_metrics if m.end_time is not None]
        avg_time = sum(m.duration for m in finished) / len(finished) if finished else 0

        status_distribution: Dict[str, int] = {}
        for m in all_metrics:
            status_distribution[m.status.value] = status_distribution.get(m.status.value, 0) + 1

        recent = list(self._events)[-10:]
        return {
            "totalRuns": len(all_metrics),
            "runningWorkflows": len(self._active),
            "completedRuns": sum(1 for m in all_metrics if m.status == WorkflowStatus.COMPLETED),
            "failedRuns": sum(1 for m in all_metrics if m.status == WorkflowStatus.FAILED),
            "avgExecutionTime": avg_time,
            "statusDistribution": status_distribution,
            "recentActivity": [
                {
                    "id": e.id,
                    "type": e.type.value,
                    "runId": e.run_id,
                    "level": e.level.value,
                    "message": e.message,
                    "timestamp": e.timestamp.isoformat(),
                }
                for e in recent
            ],
        }

    def cleanup(self, older_than: timedelta = timedelta(hours=24)) -> int:
        """清理已结束且早于截止时间的 metrics 及旧事件；返回移除的 metrics 数"""
        cutoff = naive_utcnow() - older_than
        stale = [
            run_id for run_id, m in self._metrics.items()
            if m.end_time is not None and m.start_time < cutoff
        ]
        for run_id in stale:
            del self._metrics[run_id]

        kept = [e for e in self._events if e.timestamp >= cutoff]
        self._events.clear()
        self._events.extend(kept)
        return len(stale)

    def export_metrics(self) -> Dict[str, Any]:
        return {
            "timestamp": naive_utcnow().isoformat(),
            "executionMetrics": [m.to_dict() for m in self.get_all_execution_metrics()],
            "workflowStats": self.get_workflow_stats(),
            "recentEvents": [
                e.model_dump(mode="json") for e in self.get_events(EventFilter(limit=1000))
            ],
        }
