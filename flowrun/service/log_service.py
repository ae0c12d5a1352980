"""Run log stream: append-only lines, observed in append order."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from flowrun.domain.errors import NotFoundError, ValidationFailed
from flowrun.events.base import EventBus
from flowrun.events.eventbus_model import EventEnvelope, EventType, run_topic
from flowrun.events.in_memory_eventbus import event_bus
from flowrun.observability.prometheus_metrics import log_lines_appended
from flowrun.persistence.models import LogLine, Run
from flowrun.persistence.repositories.log_line_repository import LogLineRepository
from flowrun.persistence.repositories.run_repository import RunRepository
from flowrun.persistence.repositories.step_repository import StepRepository
from flowrun.persistence.repositories.workflow_repository import WorkflowRepository
from flowrun.utils.lock_manager import lock_manager
from flowrun.utils.timefmt import to_utc_naive, utcnow

logger = logging.getLogger(__name__)

LOG_LEVELS = ("debug", "info", "warn", "error", "success", "always")


@dataclass
class LogEntry:
    message: Any
    timestamp: Optional[datetime] = None
    step_id: Optional[str] = None
    level: str = "info"
    source: Optional[str] = None


def _serialise(message: Any) -> str:
    if isinstance(message, str):
        return message
    return json.dumps(message, ensure_ascii=False, default=str)


def log_event(line: LogLine) -> EventEnvelope:
    return EventEnvelope(
        topic=run_topic(line.run_id),
        event_type=EventType.LogAppended,
        run_id=line.run_id,
        step_id=line.step_id,
        attributes={
            "id": line.id,
            "message": line.message,
            "level": line.level,
            "source": line.source,
            "timestamp": line.timestamp.isoformat() if line.timestamp else None,
        },
    )


class LogService:
    def __init__(self, session: AsyncSession, bus: EventBus = event_bus):
        self.session = session
        self.bus = bus
        self.repo = LogLineRepository(session)
        self.runs = RunRepository(session)
        self.steps = StepRepository(session)
        self.workflows = WorkflowRepository(session)

    async def _run(self, run_id: str) -> Run:
        run = await self.runs.get_by_id(run_id)
        if run is None:
            raise NotFoundError("run", run_id)
        return run

    async def _build(self, run: Run, entry: LogEntry, job_logs_enabled: bool) -> Optional[LogLine]:
        if entry.level not in LOG_LEVELS:
            raise ValidationFailed(f"unknown log level: {entry.level}", field="level")
        if entry.step_id is not None:
            if not await self.steps.is_associated(run.id, entry.step_id):
                raise ValidationFailed(f"step {entry.step_id} does not belong to run {run.id}", field="step_id")
            if not job_logs_enabled:
                return None
        return LogLine(
            run_id=run.id,
            step_id=entry.step_id,
            message=_serialise(entry.message),
            level=entry.level,
            source=entry.source,
            timestamp=to_utc_naive(entry.timestamp) if entry.timestamp else utcnow(),
        )

    async def append_logs(self, run_id: str, entries: Sequence[LogEntry]) -> List[LogLine]:
        """Validate every entry first, then store and publish them in order.

        Job-level lines are dropped when the workflow disabled job logs.
        """
        run = await self._run(run_id)
        workflow = await self.workflows.get_by_id(run.workflow_id)
        job_logs_enabled = workflow.enable_job_logs if workflow is not None else True

        # one appender per run at a time so publish order equals id order
        async with lock_manager.lock(f"log:{run_id}"):
            built = [await self._build(run, entry, job_logs_enabled) for entry in entries]
            lines = [line for line in built if line is not None]
            for line in lines:
                await self.repo.append(line)
            if lines:
                await self.runs.touch(run_id, utcnow())
            await self.session.commit()

            log_lines_appended.inc(len(lines))
            await self.bus.publish_batch([log_event(line) for line in lines])

        if len(lines) < len(built):
            logger.debug("[LogService] dropped %s job log line(s) for run %s", len(built) - len(lines), run_id)
        return lines

    async def append_log(
        self,
        run_id: str,
        message: Any,
        *,
        timestamp: Optional[datetime] = None,
        step_id: Optional[str] = None,
        level: str = "info",
        source: Optional[str] = None,
    ) -> Optional[LogLine]:
        lines = await self.append_logs(
            run_id,
            [LogEntry(message=message, timestamp=timestamp, step_id=step_id, level=level, source=source)],
        )
        return lines[0] if lines else None

    async def list_logs(
        self,
        run_id: str,
        step_id: Optional[str] = None,
        after_id: Optional[int] = None,
    ) -> List[LogLine]:
        await self._run(run_id)
        return await self.repo.list_for_run(run_id, step_id=step_id, after_id=after_id)
