from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from flowrun.persistence.models import Project
from flowrun.persistence.repositories.base_repository import BaseRepository


class ProjectRepository(BaseRepository[Project]):
    def __init__(self, db: AsyncSession):
        super().__init__(db, Project)

    async def list_with_retention_period(self) -> List[Project]:
        stmt = select(Project).where(Project.dataclip_retention_period.is_not(None))
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def get_by_name(self, name: str) -> Optional[Project]:
        stmt = select(Project).where(Project.name == name).limit(1)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
