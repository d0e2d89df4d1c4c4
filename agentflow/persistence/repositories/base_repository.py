# agentflow/persistence/repositories/base_repository.py

from typing import Any, Generic, List, Optional, Type, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from agentflow.utils.lock_manager import lock_manager

T = TypeVar('T')


class BaseRepository(Generic[T]):
    """按主键读写单表记录；update / delete 以 "<Record>:<id>" 为键加锁"""

    def __init__(self, session: AsyncSession, model_class: Type[T]):
        self.session = session
        self.model_class = model_class

    def _lock_key(self, id_value: Any) -> str:
        return f"{self.model_class.__name__}:{id_value}"

    async def get_by_id(self, id_value: Any) -> Optional[T]:
        return await self.session.get(self.model_class, id_value)

    async def add_with_children(self, record: T, children: List[Any]) -> T:
        """父记录与子行在同一次提交中写入，主键冲突时回滚"""
        self.session.add(record)
        self.session.add_all(children)
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            raise
        return record

    async def update(self, record: T) -> T:
        async with lock_manager.lock(self._lock_key(record.id)):
            self.session.add(record)
            await self.session.commit()
            await self.session.refresh(record)
            return record

    async def delete(self, id_value: Any) -> bool:
        async with lock_manager.lock(self._lock_key(id_value)):
            record = await self.get_by_id(id_value)
            if not record:
                # 子行可能已在同一会话中删除
                await self.session.commit()
                return False
            await self.session.delete(record)
            await self.session.commit()
        lock_manager.forget(self._lock_key(id_value))
        return True
