import asyncio
from typing import Dict
from contextlib import asynccontextmanager


class LockManager:
    """按资源 key 分配 asyncio.Lock，支持 async with 自动释放"""

    def __init__(self):
        self.locks: Dict[str, asyncio.Lock] = {}

    @asynccontextmanager
    async def lock(self, resource_id: str):
        lock = self.locks.setdefault(resource_id, asyncio.Lock())
        await lock.acquire()
        try:
            yield
        finally:
            lock.release()

    def forget(self, resource_id: str) -> None:
        """删除资源后释放对应的锁对象（锁未被持有时）"""
        lock = self.locks.get(resource_id)
        if lock is not None and not lock.locked():
            del self.locks[resource_id]


# 创建全局实例
lock_manager = LockManager()
