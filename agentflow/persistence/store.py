"""Persistence contract consumed by the engine.

The engine only ever talks to this interface; ``SqlWorkflowStore`` and
``InMemoryWorkflowStore`` are the two implementations shipped here.
"""

from abc import ABC, abstractmethod
from typing import Any, Iterable, List, Optional

from agentflow.domain.models import (
    StepExecution,
    WorkflowExecution,
    WorkflowStatus,
    WorkflowTemplate,
)


class WorkflowStore(ABC):

    # ----------- templates -----------

    @abstractmethod
    async def create_template(self, template: WorkflowTemplate) -> WorkflowTemplate: ...

    @abstractmethod
    async def get_template(self, template_id: str) -> Optional[WorkflowTemplate]: ...

    @abstractmethod
    async def update_template(self, template: WorkflowTemplate) -> WorkflowTemplate:
        """Full replace; step rows are replaced wholesale."""

    @abstractmethod
    async def delete_template(self, template_id: str) -> bool: ...

    @abstractmethod
    async def list_templates(
        self,
        active: Optional[bool] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[WorkflowTemplate]: ...

    # ----------- executions -----------

    @abstractmethod
    async def create_execution(
        self, execution: WorkflowExecution, steps: List[StepExecution]
    ) -> WorkflowExecution:
        """Persist a run together with its per-step rows."""

    @abstractmethod
    async def get_execution(self, run_id: str) -> Optional[WorkflowExecution]: ...

    @abstractmethod
    async def update_execution(self, run_id: str, **changes: Any) -> Optional[WorkflowExecution]: ...

    @abstractmethod
    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        statuses: Optional[Iterable[WorkflowStatus]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[WorkflowExecution]:
        """Newest first (created_at desc)."""

    @abstractmethod
    async def count_executions(
        self,
        workflow_id: Optional[str] = None,
        statuses: Optional[Iterable[WorkflowStatus]] = None,
    ) -> int: ...

    @abstractmethod
    async def delete_execution(self, run_id: str) -> bool: ...

    # ----------- step executions -----------

    @abstractmethod
    async def list_step_executions(self, run_id: str) -> List[StepExecution]:
        """Ordered by template position."""

    @abstractmethod
    async def get_step_execution(self, run_id: str, step_id: str) -> Optional[StepExecution]: ...

    @abstractmethod
    async def update_step_execution(self, run_id: str, step_id: str, **changes: Any) -> Optional[StepExecution]: ...
