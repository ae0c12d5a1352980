import asyncio
from typing import Dict
from contextlib import asynccontextmanager


class LockManager:
    """异步锁管理器，支持 async with 自动释放

    Locks are dropped once nobody holds or waits on them, so a key never
    outlives the event loop that used it.
    """

    def __init__(self):
        self.locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def lock(self, resource_id: str):
        """异步上下文方式加锁"""
        if resource_id not in self.locks:
            self.locks[resource_id] = asyncio.Lock()
            self._users[resource_id] = 0

        lock = self.locks[resource_id]
        self._users[resource_id] += 1
        try:
            await lock.acquire()
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[resource_id] -= 1
            if self._users[resource_id] == 0:
                del self._users[resource_id]
                del self.locks[resource_id]


# 创建全局实例
lock_manager = LockManager()
