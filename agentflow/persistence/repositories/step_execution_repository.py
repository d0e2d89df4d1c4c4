from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from agentflow.persistence.models import StepExecutionRecord
from agentflow.persistence.repositories.base_repository import BaseRepository


class StepExecutionRepository(BaseRepository[StepExecutionRecord]):
    def __init__(self, db: AsyncSession):
        super().__init__(db, StepExecutionRecord)

    async def list_by_run(self, run_id: str) -> List[StepExecutionRecord]:
        stmt = (
            select(StepExecutionRecord)
            .where(StepExecutionRecord.workflow_run_id == run_id)
            .order_by(StepExecutionRecord.seq)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_by_run_and_step(self, run_id: str, step_id: str) -> Optional[StepExecutionRecord]:
        stmt = select(StepExecutionRecord).where(
            StepExecutionRecord.workflow_run_id == run_id,
            StepExecutionRecord.step_id == step_id,
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()
