from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, List, Optional
import logging

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from flowrun.domain.states import ACTIVE_RUN_STATES, RunState
from flowrun.persistence.models import Run
from flowrun.persistence.repositories.base_repository import BaseRepository
from flowrun.utils.timefmt import to_utc_naive

logger = logging.getLogger(__name__)


def _values(states: Iterable[RunState | str]) -> List[str]:
    return [RunState(s).value for s in states]


class RunRepository(BaseRepository[Run]):
    kind = "run"

    def __init__(self, session: AsyncSession):
        super().__init__(session, Run)

    # ─────────────────────────── queries ────────────────────────────

    async def list_by_work_order(self, work_order_id: str) -> List[Run]:
        stmt = (
            select(Run)
            .where(Run.work_order_id == work_order_id)
            .order_by(Run.inserted_at, Run.id)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def first_for_work_order(self, work_order_id: str) -> Optional[Run]:
        runs = await self.list_by_work_order(work_order_id)
        return runs[0] if runs else None

    async def latest_for_work_order(self, work_order_id: str) -> Optional[Run]:
        runs = await self.list_by_work_order(work_order_id)
        return runs[-1] if runs else None

    async def list_pending(self, workflow_ids: Optional[List[str]] = None) -> List[Run]:
        """Pending runs in enqueue order."""
        conditions = [Run.state == RunState.PENDING.value]
        if workflow_ids is not None:
            conditions.append(Run.workflow_id.in_(workflow_ids))
        stmt = select(Run).where(*conditions).order_by(Run.inserted_at, Run.id)
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def count_active(self, workflow_ids: List[str]) -> int:
        if not workflow_ids:
            return 0
        stmt = select(func.count(Run.id)).where(
            Run.workflow_id.in_(workflow_ids),
            Run.state.in_(_values(ACTIVE_RUN_STATES)),
        )
        result = await self.session.execute(stmt)
        return result.scalar_one()

    async def list_active_for_sweep(self, limit: int = 500) -> List[Run]:
        """Claimed / running runs, skipping rows another sweeper holds."""
        stmt = (
            select(Run)
            .where(Run.state.in_(_values(ACTIVE_RUN_STATES)), Run.finished_at.is_(None))
            .order_by(Run.claimed_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    # ───────────────────────── transitions ──────────────────────────

    async def transition(
        self,
        run_id: str,
        allowed: Iterable[RunState | str],
        **values: Any,
    ) -> bool:
        """Compare-and-swap: write ``values`` only while the run is in ``allowed``."""
        allowed_values = _values(allowed)
        stmt = (
            update(Run)
            .where(Run.id == run_id, Run.state.in_(allowed_values))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)

        if result.rowcount == 1:
            logger.debug("[RunRepo] %s -> %s", run_id, values.get("state"))
        else:
            logger.debug("[RunRepo] %s not in %s, transition skipped", run_id, allowed_values)

        return result.rowcount == 1

    async def touch(self, run_id: str, now: datetime) -> bool:
        """Refresh last activity of a run that still occupies a slot."""
        return await self.transition(
            run_id,
            ACTIVE_RUN_STATES,
            last_activity_at=to_utc_naive(now),
        )
