from typing import List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from flowrun.persistence.models import Workflow
from flowrun.persistence.repositories.base_repository import BaseRepository


class WorkflowRepository(BaseRepository[Workflow]):
    kind = "workflow"

    def __init__(self, db: AsyncSession):
        super().__init__(db, Workflow)

    async def list_by_project(self, project_id: str) -> List[Workflow]:
        stmt = (
            select(Workflow)
            .where(Workflow.project_id == project_id)
            .order_by(Workflow.inserted_at)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def list_sharing_project_limit(self, project_id: str) -> List[str]:
        """Workflow ids without their own cap; they share the project's."""
        stmt = select(Workflow.id).where(
            Workflow.project_id == project_id,
            Workflow.concurrency.is_(None),
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
