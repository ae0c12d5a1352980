"""Rerun planner: new runs that resume a work order from a chosen job.

A rerun from job J is pinned to the source run's snapshot, starts at J with
J's original input, and shows the steps upstream of J by association instead
of executing them again. Cloned steps keep pointing at the run that
produced them.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from flowrun.domain.admission import Permit
from flowrun.domain.errors import NotFoundError, RerunIneligible, ValidationFailed
from flowrun.domain.states import RunPriority, RunState
from flowrun.events.base import EventBus
from flowrun.events.eventbus_model import run_state_event
from flowrun.events.in_memory_eventbus import event_bus
from flowrun.observability.prometheus_metrics import reruns_enqueued
from flowrun.observability.trace_utils import traced_span
from flowrun.persistence.models import Run, Step, Workflow
from flowrun.persistence.repositories.dataclip_repository import DataclipRepository
from flowrun.persistence.repositories.run_repository import RunRepository
from flowrun.persistence.repositories.snapshot_repository import SnapshotRepository
from flowrun.persistence.repositories.step_repository import StepRepository
from flowrun.persistence.repositories.workflow_repository import WorkflowRepository
from flowrun.service.admission_service import AdmissionService
from flowrun.service.snapshot_service import graph_of
from flowrun.service.work_order_service import WorkOrderService

logger = logging.getLogger(__name__)

__all__ = ["RerunService", "RerunEligibility", "BulkRerunResult", "SkippedWorkOrder"]

NO_STEP = "no_step"
INPUT_WIPED = "input_wiped"
NO_RUN = "no_run"
JOB_NOT_IN_SNAPSHOT = "job_not_in_snapshot"

WIPED_TOOLTIP = "This work order cannot be rerun since no input data has been stored"


def settings_path(project_id: str) -> str:
    return f"/projects/{project_id}/settings#data-storage"


def wiped_message(project_id: str, can_edit_data_retention: bool) -> str:
    if can_edit_data_retention:
        return (
            f"{WIPED_TOOLTIP}. You can't rerun this work order, but you can change "
            f"this policy for future runs in the data storage settings ({settings_path(project_id)})."
        )
    return f"{WIPED_TOOLTIP}. Please contact one of your project admins for more information."


def enqueued_message(count: int) -> str:
    if count == 1:
        return "New run enqueued for 1 workorder"
    return f"New runs enqueued for {count} workorders"


@dataclass
class RerunEligibility:
    eligible: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    settings_path: Optional[str] = None


@dataclass
class SkippedWorkOrder:
    work_order_id: str
    reason: str


@dataclass
class BulkRerunResult:
    enqueued: List[Run] = field(default_factory=list)
    skipped: List[SkippedWorkOrder] = field(default_factory=list)

    @property
    def message(self) -> str:
        return enqueued_message(len(self.enqueued))


class RerunService:
    def __init__(self, session: AsyncSession, bus: EventBus = event_bus):
        self.session = session
        self.bus = bus
        self.runs = RunRepository(session)
        self.steps = StepRepository(session)
        self.dataclips = DataclipRepository(session)
        self.snapshots = SnapshotRepository(session)
        self.workflows = WorkflowRepository(session)
        self.work_orders = WorkOrderService(session, bus)
        self.admission = AdmissionService(session, bus)

    # ─────────────────────────── planning ───────────────────────────

    async def _source_run(self, run_id: str) -> Run:
        run = await self.runs.get_by_id(run_id)
        if run is None:
            raise NotFoundError("run", run_id)
        return run

    async def _workflow(self, run: Run) -> Workflow:
        workflow = await self.workflows.get_by_id(run.workflow_id)
        if workflow is None:
            raise NotFoundError("workflow", run.workflow_id)
        return workflow

    async def _rerun_step(self, source: Run, job_id: str) -> Step:
        """J's step in the source run whose input the rerun starts from.

        Raises RerunIneligible when there is none or its input was wiped.
        """
        step = await self.steps.latest_for_job(source.id, job_id)
        if step is None:
            raise RerunIneligible(NO_STEP, f"job {job_id} did not run in run {source.id}")

        dataclip = (
            await self.dataclips.get_by_id(step.input_dataclip_id)
            if step.input_dataclip_id else None
        )
        if dataclip is None or dataclip.wiped_at is not None:
            raise RerunIneligible(INPUT_WIPED, WIPED_TOOLTIP)
        return step

    async def _plan(self, source: Run, job_id: str, created_by: Optional[str]) -> Run:
        """Build the rerun inside the current transaction (flush only)."""
        snapshot = await self.snapshots.get_by_id(source.snapshot_id)
        graph = graph_of(snapshot)
        if not graph.has_job(job_id):
            raise ValidationFailed(f"job {job_id} is not part of snapshot {source.snapshot_id}", field="job_id")

        start_step = await self._rerun_step(source, job_id)

        upstream = graph.upstream_of(job_id)
        cloned = [s for s in await self.steps.list_for_run(source.id) if s.job_id in upstream]

        run = Run(
            id=str(uuid.uuid4()),
            work_order_id=source.work_order_id,
            workflow_id=source.workflow_id,
            snapshot_id=source.snapshot_id,
            starting_job_id=job_id,
            dataclip_id=start_step.input_dataclip_id,
            parent_run_id=source.id,
            state=RunState.PENDING.value,
            priority=int(RunPriority.IMMEDIATE),
            run_timeout_seconds=source.run_timeout_seconds,
            created_by=created_by,
        )
        await self.runs.add(run)
        await self.steps.associate(run.id, [s.id for s in cloned])
        await self.work_orders.recompute_state(run.work_order_id)

        logger.info(
            "[RerunService] rerun %s of run %s from job %s, %s upstream step(s) reused",
            run.id, source.id, job_id, len(cloned),
        )
        return run

    async def _enqueued(self, runs: List[Run], mode: str) -> None:
        for run in runs:
            reruns_enqueued.labels(mode=mode).inc()
            await self.bus.publish(run_state_event(run))
        for workflow_id in dict.fromkeys(r.workflow_id for r in runs):
            if isinstance(await self.admission.admit(workflow_id), Permit):
                pending = await self.runs.list_pending([workflow_id])
                if pending:
                    await self.admission.announce(pending[0])

    # ─────────────────────────── public API ─────────────────────────

    async def rerun(self, run_id: str, job_id: str, created_by: Optional[str] = None) -> Run:
        async with traced_span("run.rerun", run_id=run_id, job_id=job_id):
            source = await self._source_run(run_id)
            run = await self._plan(source, job_id, created_by)
            await self.session.commit()
            await self._enqueued([run], "single")
            return run

    async def check_eligibility(
        self,
        run_id: str,
        job_id: str,
        can_edit_data_retention: bool = False,
    ) -> RerunEligibility:
        source = await self._source_run(run_id)
        workflow = await self._workflow(source)
        try:
            await self._rerun_step(source, job_id)
        except RerunIneligible as exc:
            if exc.reason == INPUT_WIPED:
                return RerunEligibility(
                    eligible=False,
                    reason=exc.reason,
                    message=wiped_message(workflow.project_id, can_edit_data_retention),
                    settings_path=settings_path(workflow.project_id) if can_edit_data_retention else None,
                )
            return RerunEligibility(eligible=False, reason=exc.reason, message=exc.message)
        return RerunEligibility(eligible=True)

    async def bulk_rerun(
        self,
        work_order_ids: List[str],
        job_id: str,
        created_by: Optional[str] = None,
    ) -> BulkRerunResult:
        """Rerun each work order's most recent run from ``job_id``.

        Work orders that cannot be rerun are skipped, never failed.
        """
        result = BulkRerunResult()
        async with traced_span("run.bulk_rerun", job_id=job_id, count=len(work_order_ids)):
            for work_order_id in dict.fromkeys(work_order_ids):
                source = await self.runs.latest_for_work_order(work_order_id)
                if source is None:
                    result.skipped.append(SkippedWorkOrder(work_order_id, NO_RUN))
                    continue
                try:
                    result.enqueued.append(await self._plan(source, job_id, created_by))
                except RerunIneligible as exc:
                    result.skipped.append(SkippedWorkOrder(work_order_id, exc.reason))
                except ValidationFailed:
                    result.skipped.append(SkippedWorkOrder(work_order_id, JOB_NOT_IN_SNAPSHOT))

            await self.session.commit()
            await self._enqueued(result.enqueued, "bulk")

        logger.info(
            "[RerunService] bulk rerun from %s: %s enqueued, %s skipped",
            job_id, len(result.enqueued), len(result.skipped),
        )
        return result

    async def bulk_rerun_from_start(
        self,
        work_order_ids: List[str],
        created_by: Optional[str] = None,
    ) -> BulkRerunResult:
        """New run per work order from its first run's starting point and input."""
        result = BulkRerunResult()
        for work_order_id in dict.fromkeys(work_order_ids):
            first = await self.runs.first_for_work_order(work_order_id)
            if first is None:
                result.skipped.append(SkippedWorkOrder(work_order_id, NO_RUN))
                continue

            dataclip = await self.dataclips.get_by_id(first.dataclip_id)
            if dataclip is None or dataclip.wiped_at is not None:
                result.skipped.append(SkippedWorkOrder(work_order_id, INPUT_WIPED))
                continue

            run = Run(
                id=str(uuid.uuid4()),
                work_order_id=work_order_id,
                workflow_id=first.workflow_id,
                snapshot_id=first.snapshot_id,
                starting_job_id=first.starting_job_id,
                starting_trigger_id=first.starting_trigger_id,
                dataclip_id=first.dataclip_id,
                state=RunState.PENDING.value,
                priority=int(RunPriority.IMMEDIATE),
                run_timeout_seconds=first.run_timeout_seconds,
                created_by=created_by,
            )
            await self.runs.add(run)
            await self.work_orders.recompute_state(work_order_id)
            result.enqueued.append(run)

        await self.session.commit()
        await self._enqueued(result.enqueued, "from_start")
        logger.info(
            "[RerunService] bulk rerun from start: %s enqueued, %s skipped",
            len(result.enqueued), len(result.skipped),
        )
        return result
