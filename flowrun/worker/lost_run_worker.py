from __future__ import annotations

"""Lost-run sweeper: marks runs whose worker went silent and closes orphaned steps."""

from asyncio import sleep
from datetime import datetime
import logging
from typing import AsyncGenerator, Callable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from flowrun import config
from flowrun.persistence.database import get_db_session
from flowrun.service.run_service import RunService

# -----------------------------------------------------------------------------
# Logger setup
# -----------------------------------------------------------------------------

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

# -----------------------------------------------------------------------------
# One sweep
# -----------------------------------------------------------------------------


async def sweep_once(session: AsyncSession, *, now: Optional[datetime] = None) -> List[str]:
    """Run both sweeps once; returns the ids of runs marked lost."""
    svc = RunService(session)

    try:
        lost = await svc.sweep_lost_runs(now=now)
    except Exception as e:
        logger.exception("[LostRunSweeper] ❗ Exception during sweep_lost_runs: %s", e)
        await session.rollback()
        return []

    if lost:
        logger.warning("[LostRunSweeper] ⚠️ marked %s run(s) lost: %s", len(lost), ", ".join(lost))
    else:
        logger.debug("[LostRunSweeper] no lost runs")

    try:
        await svc.sweep_orphaned_steps(now=now)
    except Exception as e:
        logger.exception("[LostRunSweeper] ❗ Exception during sweep_orphaned_steps: %s", e)
        await session.rollback()

    return lost


# -----------------------------------------------------------------------------
# Poll loop
# -----------------------------------------------------------------------------


async def run_lost_run_loop(
    *,
    session_factory: Callable[[], AsyncGenerator[AsyncSession, None]] = get_db_session,
    interval_seconds: float = config.LOST_SWEEP_INTERVAL,
) -> None:
    logger.info(
        "[LostRunSweeper] ▶️ loop start interval=%s timeout=%s grace=%s",
        interval_seconds,
        config.RUN_TIMEOUT_SECONDS,
        config.LOST_RUN_GRACE_PERIOD_SECONDS,
    )

    while True:
        async for session in session_factory():
            try:
                await sweep_once(session)
            except Exception as err:
                logger.exception("[LostRunSweeper] 💥 Unhandled error in polling loop: %s", err)
            finally:
                await session.close()
            break  # 只取一次 session

        await sleep(interval_seconds)
