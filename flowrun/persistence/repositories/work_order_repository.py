from datetime import datetime
from typing import List

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from flowrun.persistence.models import WorkOrder
from flowrun.persistence.repositories.base_repository import BaseRepository
from flowrun.utils.timefmt import to_utc_naive


class WorkOrderRepository(BaseRepository[WorkOrder]):
    def __init__(self, db: AsyncSession):
        super().__init__(db, WorkOrder)

    async def list_by_workflow(self, workflow_id: str, state: str | None = None) -> List[WorkOrder]:
        conditions = [WorkOrder.workflow_id == workflow_id]
        if state is not None:
            conditions.append(WorkOrder.state == state)
        stmt = select(WorkOrder).where(*conditions).order_by(WorkOrder.inserted_at)
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def list_by_ids(self, work_order_ids: List[str]) -> List[WorkOrder]:
        if not work_order_ids:
            return []
        stmt = select(WorkOrder).where(WorkOrder.id.in_(work_order_ids))
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def set_state(self, work_order_id: str, state: str, now: datetime) -> bool:
        stmt = (
            update(WorkOrder)
            .where(WorkOrder.id == work_order_id)
            .values(state=state, last_activity=to_utc_naive(now))
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1
