from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from flowrun.persistence.models import GraphSnapshot
from flowrun.persistence.repositories.base_repository import BaseRepository


class SnapshotRepository(BaseRepository[GraphSnapshot]):
    def __init__(self, db: AsyncSession):
        super().__init__(db, GraphSnapshot)

    async def get_by_version(self, workflow_id: str, lock_version: int) -> Optional[GraphSnapshot]:
        stmt = (
            select(GraphSnapshot)
            .where(
                GraphSnapshot.workflow_id == workflow_id,
                GraphSnapshot.lock_version == lock_version,
            )
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_by_workflow(self, workflow_id: str) -> List[GraphSnapshot]:
        stmt = (
            select(GraphSnapshot)
            .where(GraphSnapshot.workflow_id == workflow_id)
            .order_by(GraphSnapshot.lock_version)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()
