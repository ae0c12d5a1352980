from __future__ import annotations

"""Dataclip retention sweeper: wipes payloads older than each project's retention period."""

from asyncio import sleep
import logging
from typing import AsyncGenerator, Callable, Dict

from sqlalchemy.ext.asyncio import AsyncSession

from flowrun import config
from flowrun.persistence.database import get_db_session
from flowrun.persistence.repositories.dataclip_repository import DataclipRepository
from flowrun.persistence.repositories.project_repository import ProjectRepository
from flowrun.service.dataclip_service import DataclipService

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


async def sweep_once(session: AsyncSession) -> Dict[str, int]:
    """Wipe expired dataclips project by project; returns wiped counts per project."""
    svc = DataclipService(DataclipRepository(session))
    wiped: Dict[str, int] = {}

    for project in await ProjectRepository(session).list_with_retention_period():
        try:
            count = await svc.wipe_expired(project)
        except Exception as e:
            logger.exception("[RetentionSweeper] ❗ wipe_expired failed for project %s: %s", project.id, e)
            await session.rollback()
            # rolled-back rows are expired, pick up the rest next interval
            break
        if count:
            wiped[project.id] = count

    return wiped


async def run_retention_loop(
    *,
    session_factory: Callable[[], AsyncGenerator[AsyncSession, None]] = get_db_session,
    interval_seconds: float = config.RETENTION_SWEEP_INTERVAL,
) -> None:
    logger.info("[RetentionSweeper] ▶️ loop start interval=%s", interval_seconds)

    while True:
        async for session in session_factory():
            try:
                wiped = await sweep_once(session)
                if wiped:
                    logger.info("[RetentionSweeper] 🧹 wiped %s", wiped)
            except Exception as err:
                logger.exception("[RetentionSweeper] 💥 Unhandled error in polling loop: %s", err)
            finally:
                await session.close()
            break  # 只取一次 session

        await sleep(interval_seconds)
