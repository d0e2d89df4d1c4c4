from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from agentflow.persistence.models import WorkflowStepTemplateRecord, WorkflowTemplateRecord
from agentflow.persistence.repositories.base_repository import BaseRepository
from agentflow.utils.lock_manager import lock_manager


class WorkflowTemplateRepository(BaseRepository[WorkflowTemplateRecord]):
    def __init__(self, db: AsyncSession):
        super().__init__(db, WorkflowTemplateRecord)

    async def create_with_steps(
        self, record: WorkflowTemplateRecord, steps: List[WorkflowStepTemplateRecord]
    ) -> WorkflowTemplateRecord:
        return await self.add_with_children(record, steps)

    async def replace_steps(
        self, record: WorkflowTemplateRecord, steps: List[WorkflowStepTemplateRecord]
    ) -> WorkflowTemplateRecord:
        """全量更新：删除旧的步骤行后写入新步骤"""
        async with lock_manager.lock(self._lock_key(record.id)):
            await self.session.execute(
                delete(WorkflowStepTemplateRecord).where(WorkflowStepTemplateRecord.template_id == record.id)
            )
            self.session.add(record)
            self.session.add_all(steps)
            await self.session.commit()
            return record

    async def delete_with_steps(self, template_id: str) -> bool:
        await self.session.execute(
            delete(WorkflowStepTemplateRecord).where(WorkflowStepTemplateRecord.template_id == template_id)
        )
        return await self.delete(template_id)

    async def list_steps(self, template_id: str) -> List[WorkflowStepTemplateRecord]:
        stmt = (
            select(WorkflowStepTemplateRecord)
            .where(WorkflowStepTemplateRecord.template_id == template_id)
            .order_by(WorkflowStepTemplateRecord.position)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_filtered(
        self, active: Optional[bool] = None, limit: Optional[int] = None, offset: int = 0
    ) -> List[WorkflowTemplateRecord]:
        stmt = select(WorkflowTemplateRecord)
        if active is not None:
            stmt = stmt.where(WorkflowTemplateRecord.active == active)
        stmt = stmt.order_by(WorkflowTemplateRecord.created_at.desc()).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
