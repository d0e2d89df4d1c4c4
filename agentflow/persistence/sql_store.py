# agentflow/persistence/sql_store.py

import logging
from typing import Any, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from agentflow.domain.errors import WorkflowDatabaseError
from agentflow.domain.models import (
    StepExecution,
    WorkflowExecution,
    WorkflowStatus,
    WorkflowTemplate,
    utc_now,
)
from agentflow.persistence import mappers
from agentflow.persistence.repositories.step_execution_repository import StepExecutionRepository
from agentflow.persistence.repositories.workflow_run_repository import WorkflowRunRepository
from agentflow.persistence.repositories.workflow_template_repository import WorkflowTemplateRepository
from agentflow.persistence.store import WorkflowStore

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def _status_values(statuses: Optional[Iterable[WorkflowStatus]]) -> Optional[List[str]]:
    if statuses is None:
        return None
    return [WorkflowStatus(s).value for s in statuses]


class SqlWorkflowStore(WorkflowStore):
    """SQLAlchemy async 实现；每个操作使用独立会话，异常统一包装为 WorkflowDatabaseError"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    # ----------- templates -----------

    async def create_template(self, template: WorkflowTemplate) -> WorkflowTemplate:
        try:
            async with self.session_factory() as session:
                repo = WorkflowTemplateRepository(session)
                await repo.create_with_steps(
                    mappers.template_to_record(template), mappers.steps_to_records(template)
                )
            return template
        except SQLAlchemyError as e:
            raise WorkflowDatabaseError("create_template", e) from e

    async def get_template(self, template_id: str) -> Optional[WorkflowTemplate]:
        try:
            async with self.session_factory() as session:
                repo = WorkflowTemplateRepository(session)
                record = await repo.get_by_id(template_id)
                if record is None:
                    return None
                steps = await repo.list_steps(template_id)
                return mappers.template_from_record(record, steps)
        except SQLAlchemyError as e:
            raise WorkflowDatabaseError("get_template", e) from e

    async def update_template(self, template: WorkflowTemplate) -> WorkflowTemplate:
        try:
            async with self.session_factory() as session:
                repo = WorkflowTemplateRepository(session)
                record = await repo.get_by_id(template.id)
                if record is None:
                    record = mappers.template_to_record(template)
                else:
                    mappers.apply_template(record, template)
                await repo.replace_steps(record, mappers.steps_to_records(template))
            return template
        except SQLAlchemyError as e:
            raise WorkflowDatabaseError("update_template", e) from e

    async def delete_template(self, template_id: str) -> bool:
        try:
            async with self.session_factory() as session:
                return await WorkflowTemplateRepository(session).delete_with_steps(template_id)
        except SQLAlchemyError as e:
            raise WorkflowDatabaseError("delete_template", e) from e

    async def list_templates(self, active=None, limit=None, offset=0) -> List[WorkflowTemplate]:
        try:
            async with self.session_factory() as session:
                repo = WorkflowTemplateRepository(session)
                records = await repo.list_filtered(active=active, limit=limit, offset=offset)
                out = []
                for record in records:
                    out.append(mappers.template_from_record(record, await repo.list_steps(record.id)))
                return out
        except SQLAlchemyError as e:
            raise WorkflowDatabaseError("list_templates", e) from e

    # ----------- executions -----------

    async def create_execution(self, execution: WorkflowExecution, steps: List[StepExecution]) -> WorkflowExecution:
        try:
            async with self.session_factory() as session:
                repo = WorkflowRunRepository(session)
                seq = await repo.next_seq()
                await repo.create_with_steps(
                    mappers.execution_to_record(execution, seq),
                    [mappers.step_execution_to_record(s) for s in steps],
                )
            return execution
        except SQLAlchemyError as e:
            raise WorkflowDatabaseError("create_execution", e) from e

    async def get_execution(self, run_id: str) -> Optional[WorkflowExecution]:
        try:
            async with self.session_factory() as session:
                record = await WorkflowRunRepository(session).get_by_id(run_id)
                return mappers.execution_from_record(record) if record else None
        except SQLAlchemyError as e:
            raise WorkflowDatabaseError("get_execution", e) from e

    async def update_execution(self, run_id: str, **changes: Any) -> Optional[WorkflowExecution]:
        try:
            async with self.session_factory() as session:
                repo = WorkflowRunRepository(session)
                record = await repo.get_by_id(run_id)
                if record is None:
                    return None
                changes.setdefault("updated_at", utc_now())
                updated = mappers.execution_from_record(record).model_copy(update=changes)
                mappers.apply_execution(record, updated)
                await repo.update(record)
                return updated
        except SQLAlchemyError as e:
            raise WorkflowDatabaseError("update_execution", e) from e

    async def list_executions(self, workflow_id=None, statuses=None, limit=None, offset=0) -> List[WorkflowExecution]:
        try:
            async with self.session_factory() as session:
                records = await WorkflowRunRepository(session).list_filtered(
                    workflow_id=workflow_id, statuses=_status_values(statuses), limit=limit, offset=offset
                )
                return [mappers.execution_from_record(r) for r in records]
        except SQLAlchemyError as e:
            raise WorkflowDatabaseError("list_executions", e) from e

    async def count_executions(self, workflow_id=None, statuses=None) -> int:
        try:
            async with self.session_factory() as session:
                return await WorkflowRunRepository(session).count_filtered(
                    workflow_id=workflow_id, statuses=_status_values(statuses)
                )
        except SQLAlchemyError as e:
            raise WorkflowDatabaseError("count_executions", e) from e

    async def delete_execution(self, run_id: str) -> bool:
        try:
            async with self.session_factory() as session:
                return await WorkflowRunRepository(session).delete_with_steps(run_id)
        except SQLAlchemyError as e:
            raise WorkflowDatabaseError("delete_execution", e) from e

    # ----------- step executions -----------

    async def list_step_executions(self, run_id: str) -> List[StepExecution]:
        try:
            async with self.session_factory() as session:
                records = await StepExecutionRepository(session).list_by_run(run_id)
                return [mappers.step_execution_from_record(r) for r in records]
        except SQLAlchemyError as e:
            raise WorkflowDatabaseError("list_step_executions", e) from e

    async def get_step_execution(self, run_id: str, step_id: str) -> Optional[StepExecution]:
        try:
            async with self.session_factory() as session:
                record = await StepExecutionRepository(session).get_by_run_and_step(run_id, step_id)
                return mappers.step_execution_from_record(record) if record else None
        except SQLAlchemyError as e:
            raise WorkflowDatabaseError("get_step_execution", e) from e

    async def update_step_execution(self, run_id: str, step_id: str, **changes: Any) -> Optional[StepExecution]:
        try:
            async with self.session_factory() as session:
                repo = StepExecutionRepository(session)
                record = await repo.get_by_run_and_step(run_id, step_id)
                if record is None:
                    return None
                updated = mappers.step_execution_from_record(record).model_copy(update=changes)
                mappers.apply_step_execution(record, updated)
                await repo.update(record)
                return updated
        except SQLAlchemyError as e:
            raise WorkflowDatabaseError("update_step_execution", e) from e
