from datetime import datetime
from typing import Any, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from flowrun.domain.states import FINAL_RUN_STATES
from flowrun.persistence.models import Run, RunStep, Step
from flowrun.persistence.repositories.base_repository import BaseRepository
from flowrun.utils.timefmt import to_utc_naive


class StepRepository(BaseRepository[Step]):
    kind = "step"

    def __init__(self, db: AsyncSession):
        super().__init__(db, Step)

    async def associate(self, run_id: str, step_ids: Iterable[str]) -> None:
        """Display existing steps under ``run_id`` without copying them."""
        for step_id in step_ids:
            self.session.add(RunStep(run_id=run_id, step_id=step_id))
        await self.session.flush()

    async def is_associated(self, run_id: str, step_id: str) -> bool:
        stmt = select(RunStep.step_id).where(
            RunStep.run_id == run_id,
            RunStep.step_id == step_id,
        )
        result = await self.session.execute(stmt)
        return result.first() is not None

    async def list_for_run(self, run_id: str) -> List[Step]:
        """Steps displayed under a run, cloned ones included, oldest first."""
        stmt = (
            select(Step)
            .join(RunStep, RunStep.step_id == Step.id)
            .where(RunStep.run_id == run_id)
            .order_by(Step.inserted_at, Step.id)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def latest_for_job(self, run_id: str, job_id: str) -> Optional[Step]:
        steps = [s for s in await self.list_for_run(run_id) if s.job_id == job_id]
        return steps[-1] if steps else None

    async def list_orphaned(self, finished_before: datetime) -> List[Step]:
        """Open steps whose executing run finished before the cutoff."""
        stmt = (
            select(Step)
            .join(Run, Run.id == Step.run_id)
            .where(
                Step.exit_reason.is_(None),
                Step.finished_at.is_(None),
                Run.state.in_([s.value for s in FINAL_RUN_STATES]),
                Run.finished_at < to_utc_naive(finished_before),
            )
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def finish_if_open(self, step_id: str, **values: Any) -> bool:
        stmt = (
            update(Step)
            .where(Step.id == step_id, Step.exit_reason.is_(None))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1
