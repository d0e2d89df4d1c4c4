# agentflow/service/mock/mock_health_monitor.py

from datetime import datetime
from typing import Any, Dict, List, Optional

from agentflow.domain.models import (
    StepExecution,
    StepStatus,
    WorkflowExecution,
    WorkflowStatus,
    WorkflowTemplate,
)
from agentflow.utils.timefmt import naive_utcnow

# 估算值：模板约 1KB，运行约 2KB，基础 10MB，总量 100MB
_TEMPLATE_BYTES = 1024
_EXECUTION_BYTES = 2048
_BASE_BYTES = 10 * 1024 * 1024
_TOTAL_BYTES = 100 * 1024 * 1024


class MockHealthMonitor:
    def __init__(
        self,
        templates: Dict[str, WorkflowTemplate],
        executions: Dict[str, WorkflowExecution],
        steps: Dict[str, List[StepExecution]],
    ):
        # 与 Mock 引擎共享同一组字典
        self.templates = templates
        self.executions = executions
        self.steps = steps
        self.start_time = naive_utcnow()
        self.last_restart: Optional[datetime] = None

    def check_health(self) -> Dict[str, Any]:
        active = self._active_count()
        memory = self.memory_usage()

        status = "healthy"
        if memory["percentage"] > 90:
            status = "unhealthy"
        elif memory["percentage"] > 75 or active > 100:
            status = "degraded"

        return {
            "status": status,
            "timestamp": naive_utcnow().isoformat(),
            "details": {
                "templatesCount": len(self.templates),
                "executionsCount": len(self.executions),
                "activeExecutions": active,
                "lastExecutionTime": self._last_execution_time(),
                "memoryUsage": memory,
            },
        }

    def get_statistics(self) -> Dict[str, Any]:
        executions = list(self.executions.values())
        templates = list(self.templates.values())
        total = len(executions)

        def count(status: WorkflowStatus) -> int:
            return sum(1 for e in executions if e.status == status)

        times = [
            (e.end_time - e.start_time).total_seconds() * 1000
            for e in executions
            if e.status == WorkflowStatus.COMPLETED and e.start_time and e.end_time
        ]
        steps_executed = sum(
            1 for rows in self.steps.values() for s in rows if s.status == StepStatus.COMPLETED
        )

        return {
            "templates": {
                "total": len(templates),
                "active": sum(1 for t in templates if t.active),
                "inactive": sum(1 for t in templates if not t.active),
            },
            "executions": {
                "total": total,
                "running": count(WorkflowStatus.RUNNING),
                "completed": count(WorkflowStatus.COMPLETED),
                "failed": count(WorkflowStatus.FAILED),
                "cancelled": count(WorkflowStatus.CANCELLED),
            },
            "performance": {
                "averageExecutionTime": sum(times) / len(times) if times else 0,
                "successRate": count(WorkflowStatus.COMPLETED) / total * 100 if total else 0,
                "totalStepsExecuted": steps_executed,
            },
            "system": {
                "uptime": self.get_uptime(),
                "memoryUsage": self.memory_usage()["percentage"],
                "lastRestart": self.last_restart.isoformat() if self.last_restart else None,
            },
        }

    def get_health_summary(self) -> Dict[str, Any]:
        health = self.check_health()
        stats = self.get_statistics()
        issues: List[str] = []
        recommendations: List[str] = []

        if health["status"] == "unhealthy":
            issues.append("System is in unhealthy state")
            recommendations.append("Investigate system resources and performance")

        memory_pct = health["details"]["memoryUsage"]["percentage"]
        if memory_pct > 75:
            issues.append(f"High memory usage: {memory_pct}%")
            recommendations.append("Consider cleaning up old executions or optimizing memory usage")

        active = health["details"]["activeExecutions"]
        if active > 50:
            issues.append(f"High number of active executions: {active}")
            recommendations.append("Monitor execution queue and consider scaling resources")

        success_rate = stats["performance"]["successRate"]
        if stats["executions"]["total"] and success_rate < 90:
            issues.append(f"Low success rate: {success_rate:.1f}%")
            recommendations.append("Review failed executions and improve error handling")

        return {
            "isHealthy": health["status"] == "healthy",
            "issues": issues,
            "recommendations": recommendations,
        }

    def memory_usage(self) -> Dict[str, int]:
        used = _BASE_BYTES + len(self.templates) * _TEMPLATE_BYTES + len(self.executions) * _EXECUTION_BYTES
        return {"used": used, "total": _TOTAL_BYTES, "percentage": round(used / _TOTAL_BYTES * 100)}

    def record_restart(self) -> None:
        self.last_restart = naive_utcnow()
        self.start_time = self.last_restart

    def get_uptime(self) -> int:
        return int((naive_utcnow() - self.start_time).total_seconds() * 1000)

    def _active_count(self) -> int:
        return sum(
            1 for e in self.executions.values()
            if e.status in (WorkflowStatus.PENDING, WorkflowStatus.RUNNING)
        )

    def _last_execution_time(self) -> Optional[str]:
        starts = [e.start_time or e.created_at for e in self.executions.values()]
        return max(starts).isoformat() if starts else None
