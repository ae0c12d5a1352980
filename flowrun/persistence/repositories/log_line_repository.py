from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from flowrun.persistence.models import LogLine
from flowrun.persistence.repositories.base_repository import BaseRepository


class LogLineRepository(BaseRepository[LogLine]):
    """Log lines are append-only; there is no update path."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, LogLine)

    async def append(self, line: LogLine) -> LogLine:
        return await self.add(line)

    async def list_for_run(
        self,
        run_id: str,
        step_id: Optional[str] = None,
        after_id: Optional[int] = None,
    ) -> List[LogLine]:
        conditions = [LogLine.run_id == run_id]
        if step_id is not None:
            conditions.append(LogLine.step_id == step_id)
        if after_id is not None:
            conditions.append(LogLine.id > after_id)
        # append order, never the worker-supplied timestamp
        stmt = select(LogLine).where(*conditions).order_by(LogLine.id)
        result = await self.session.execute(stmt)
        return result.scalars().all()
