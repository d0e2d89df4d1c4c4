from typing import Iterable, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from agentflow.persistence.models import StepExecutionRecord, WorkflowRunRecord
from agentflow.persistence.repositories.base_repository import BaseRepository


class WorkflowRunRepository(BaseRepository[WorkflowRunRecord]):
    def __init__(self, db: AsyncSession):
        super().__init__(db, WorkflowRunRecord)

    async def next_seq(self) -> int:
        result = await self.session.execute(select(func.max(WorkflowRunRecord.seq)))
        return (result.scalar() or 0) + 1

    async def create_with_steps(
        self, record: WorkflowRunRecord, steps: List[StepExecutionRecord]
    ) -> WorkflowRunRecord:
        # run 与 step 行在同一事务内写入
        return await self.add_with_children(record, steps)

    def _filtered(self, stmt, workflow_id: Optional[str], statuses: Optional[Iterable[str]]):
        if workflow_id is not None:
            stmt = stmt.where(WorkflowRunRecord.workflow_id == workflow_id)
        if statuses is not None:
            stmt = stmt.where(WorkflowRunRecord.status.in_(list(statuses)))
        return stmt

    async def list_filtered(
        self,
        workflow_id: Optional[str] = None,
        statuses: Optional[Iterable[str]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[WorkflowRunRecord]:
        stmt = self._filtered(select(WorkflowRunRecord), workflow_id, statuses)
        stmt = stmt.order_by(WorkflowRunRecord.created_at.desc(), WorkflowRunRecord.seq.desc()).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count_filtered(
        self, workflow_id: Optional[str] = None, statuses: Optional[Iterable[str]] = None
    ) -> int:
        stmt = self._filtered(select(func.count()).select_from(WorkflowRunRecord), workflow_id, statuses)
        result = await self.session.execute(stmt)
        return int(result.scalar() or 0)

    async def delete_with_steps(self, run_id: str) -> bool:
        await self.session.execute(
            delete(StepExecutionRecord).where(StepExecutionRecord.workflow_run_id == run_id)
        )
        return await self.delete(run_id)
