# flowrun/persistence/repositories/base_repository.py

from typing import Any, Type, TypeVar, Optional, Generic
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError

from flowrun.domain.errors import NotFoundError
from flowrun.utils.lock_manager import lock_manager

T = TypeVar('T')


class BaseRepository(Generic[T]):
    """通用异步仓储：按主键读取、写入，写入带行级锁

    ``create`` / ``update`` commit on their own; ``add`` only flushes so a
    service can group several writes into one transaction. Bulk state
    transitions bypass the identity map, hence ``reload``.
    """

    kind = "entity"

    def __init__(self, session: AsyncSession, model_class: Type[T]):
        self.session = session
        self.model_class = model_class

    def _key(self, id_value: Any) -> str:
        return f"{self.model_class.__tablename__}:{id_value}"

    async def get_by_id(self, id_value: Any) -> Optional[T]:
        return await self.session.get(self.model_class, id_value)

    async def reload(self, id_value: Any) -> Optional[T]:
        """Re-read a row, overwriting whatever the identity map holds."""
        return await self.session.get(self.model_class, id_value, populate_existing=True)

    async def require(self, id_value: Any, *, fresh: bool = False) -> T:
        entity = await (self.reload(id_value) if fresh else self.get_by_id(id_value))
        if entity is None:
            raise NotFoundError(self.kind, id_value)
        return entity

    async def add(self, entity: T) -> T:
        self.session.add(entity)
        await self.session.flush()
        return entity

    async def create(self, entity: T) -> T:
        self.session.add(entity)
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            raise
        await self.session.refresh(entity)
        return entity

    async def update(self, entity: T) -> T:
        async with lock_manager.lock(self._key(entity.id)):
            self.session.add(entity)
            await self.session.commit()
            await self.session.refresh(entity)
            return entity
