"""In-memory implementation of the workflow store."""

from typing import Any, Dict, Iterable, List, Optional

from agentflow.domain.models import (
    StepExecution,
    WorkflowExecution,
    WorkflowStatus,
    WorkflowTemplate,
    utc_now,
)
from agentflow.persistence.store import WorkflowStore


class InMemoryWorkflowStore(WorkflowStore):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Every read returns a copy so callers
    cannot mutate stored state behind the store's back.
    """

    def __init__(self) -> None:
        self._templates: Dict[str, WorkflowTemplate] = {}
        self._executions: Dict[str, WorkflowExecution] = {}
        self._steps: Dict[str, Dict[str, StepExecution]] = {}
        self._seq = 0
        self._created_order: Dict[str, int] = {}

    # ------------------------------------------------------------------
    async def create_template(self, template: WorkflowTemplate) -> WorkflowTemplate:
        self._templates[template.id] = template.model_copy(deep=True)
        return template.model_copy(deep=True)

    async def get_template(self, template_id: str) -> Optional[WorkflowTemplate]:
        t = self._templates.get(template_id)
        return t.model_copy(deep=True) if t else None

    async def update_template(self, template: WorkflowTemplate) -> WorkflowTemplate:
        self._templates[template.id] = template.model_copy(deep=True)
        return template.model_copy(deep=True)

    async def delete_template(self, template_id: str) -> bool:
        return self._templates.pop(template_id, None) is not None

    async def list_templates(self, active=None, limit=None, offset=0) -> List[WorkflowTemplate]:
        items = [t for t in self._templates.values() if active is None or t.active == active]
        items.sort(key=lambda t: t.created_at, reverse=True)
        items = items[offset:offset + limit] if limit is not None else items[offset:]
        return [t.model_copy(deep=True) for t in items]

    # ------------------------------------------------------------------
    async def create_execution(self, execution: WorkflowExecution, steps: List[StepExecution]) -> WorkflowExecution:
        self._seq += 1
        self._created_order[execution.id] = self._seq
        self._executions[execution.id] = execution.model_copy(deep=True)
        self._steps[execution.id] = {s.step_id: s.model_copy(deep=True) for s in steps}
        return execution.model_copy(deep=True)

    async def get_execution(self, run_id: str) -> Optional[WorkflowExecution]:
        e = self._executions.get(run_id)
        return e.model_copy(deep=True) if e else None

    async def update_execution(self, run_id: str, **changes: Any) -> Optional[WorkflowExecution]:
        e = self._executions.get(run_id)
        if e is None:
            return None
        changes.setdefault("updated_at", utc_now())
        updated = e.model_copy(update=changes, deep=True)
        self._executions[run_id] = updated
        return updated.model_copy(deep=True)

    def _filtered(self, workflow_id, statuses) -> List[WorkflowExecution]:
        wanted = {WorkflowStatus(s) for s in statuses} if statuses is not None else None
        items = [
            e for e in self._executions.values()
            if (workflow_id is None or e.workflow_id == workflow_id)
            and (wanted is None or e.status in wanted)
        ]
        # created_at 只精确到秒，用插入序号保证稳定的倒序
        items.sort(key=lambda e: (e.created_at, self._created_order.get(e.id, 0)), reverse=True)
        return items

    async def list_executions(self, workflow_id=None, statuses=None, limit=None, offset=0) -> List[WorkflowExecution]:
        items = self._filtered(workflow_id, statuses)
        items = items[offset:offset + limit] if limit is not None else items[offset:]
        return [e.model_copy(deep=True) for e in items]

    async def count_executions(self, workflow_id=None, statuses=None) -> int:
        return len(self._filtered(workflow_id, statuses))

    async def delete_execution(self, run_id: str) -> bool:
        self._steps.pop(run_id, None)
        self._created_order.pop(run_id, None)
        return self._executions.pop(run_id, None) is not None

    # ------------------------------------------------------------------
    async def list_step_executions(self, run_id: str) -> List[StepExecution]:
        steps = sorted(self._steps.get(run_id, {}).values(), key=lambda s: s.seq)
        return [s.model_copy(deep=True) for s in steps]

    async def get_step_execution(self, run_id: str, step_id: str) -> Optional[StepExecution]:
        s = self._steps.get(run_id, {}).get(step_id)
        return s.model_copy(deep=True) if s else None

    async def update_step_execution(self, run_id: str, step_id: str, **changes: Any) -> Optional[StepExecution]:
        rows = self._steps.get(run_id)
        if not rows or step_id not in rows:
            return None
        updated = rows[step_id].model_copy(update=changes, deep=True)
        rows[step_id] = updated
        return updated.model_copy(deep=True)
