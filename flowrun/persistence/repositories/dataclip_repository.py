from datetime import datetime
from typing import Iterable, List, Optional
import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from flowrun.persistence.models import Dataclip
from flowrun.persistence.repositories.base_repository import BaseRepository
from flowrun.utils.timefmt import to_utc_naive

logger = logging.getLogger(__name__)


class DataclipRepository(BaseRepository[Dataclip]):
    def __init__(self, db: AsyncSession):
        super().__init__(db, Dataclip)

    async def find_by_sha256(self, project_id: str, sha256: str) -> Optional[Dataclip]:
        stmt = (
            select(Dataclip)
            .where(
                Dataclip.project_id == project_id,
                Dataclip.sha256 == sha256,
                Dataclip.wiped_at.is_(None),
            )
            .order_by(Dataclip.inserted_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_by_project(self, project_id: str) -> List[Dataclip]:
        stmt = (
            select(Dataclip)
            .where(Dataclip.project_id == project_id)
            .order_by(Dataclip.inserted_at)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def mark_wiped(self, dataclip_id: str, now: datetime) -> bool:
        """Null the payload once; a clip that is already wiped keeps its wiped_at."""
        stmt = (
            update(Dataclip)
            .where(Dataclip.id == dataclip_id, Dataclip.wiped_at.is_(None))
            .values(body=None, request=None, wiped_at=to_utc_naive(now), updated_at=to_utc_naive(now))
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def wipe_older_than(
        self,
        project_id: str,
        cutoff: datetime,
        types: Iterable[str],
        now: datetime,
    ) -> int:
        stmt = (
            update(Dataclip)
            .where(
                Dataclip.project_id == project_id,
                Dataclip.type.in_(list(types)),
                Dataclip.name.is_(None),
                Dataclip.wiped_at.is_(None),
                Dataclip.inserted_at < to_utc_naive(cutoff),
            )
            .values(body=None, request=None, wiped_at=to_utc_naive(now), updated_at=to_utc_naive(now))
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        logger.debug("[DataclipRepo] wiped %s expired dataclips in project %s", result.rowcount, project_id)
        return result.rowcount
