"""Work orders: one per triggering event, holding every run made for it."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, List, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from flowrun.domain.admission import Permit, Queued
from flowrun.domain.errors import NotFoundError, ValidationFailed
from flowrun.domain.states import RunPriority, RunState, derive_work_order_state
from flowrun.events.base import EventBus
from flowrun.events.eventbus_model import run_state_event
from flowrun.events.in_memory_eventbus import event_bus
from flowrun.observability.prometheus_metrics import runs_queued
from flowrun.observability.trace_utils import traced_span
from flowrun.persistence.models import Run, WorkOrder
from flowrun.persistence.repositories.dataclip_repository import DataclipRepository
from flowrun.persistence.repositories.run_repository import RunRepository
from flowrun.persistence.repositories.snapshot_repository import SnapshotRepository
from flowrun.persistence.repositories.work_order_repository import WorkOrderRepository
from flowrun.persistence.repositories.workflow_repository import WorkflowRepository
from flowrun.service.admission_service import AdmissionService
from flowrun.service.dataclip_service import build_dataclip
from flowrun.service.snapshot_service import SnapshotService, definition_of
from flowrun.utils.timefmt import utcnow

logger = logging.getLogger(__name__)

__all__ = ["WorkOrderService", "WorkOrderCreated"]


@dataclass
class WorkOrderCreated:
    work_order: WorkOrder
    run: Run
    admission: Union[Permit, Queued]


class WorkOrderService:
    def __init__(self, session: AsyncSession, bus: EventBus = event_bus):
        self.session = session
        self.bus = bus
        self.repo = WorkOrderRepository(session)
        self.runs = RunRepository(session)
        self.workflows = WorkflowRepository(session)
        self.dataclips = DataclipRepository(session)
        self.snapshots = SnapshotService(SnapshotRepository(session))
        self.admission = AdmissionService(session, bus)

    async def get_work_order(self, work_order_id: str) -> WorkOrder:
        work_order = await self.repo.reload(work_order_id)
        if work_order is None:
            raise NotFoundError("work_order", work_order_id)
        return work_order

    async def recompute_state(self, work_order_id: str) -> str:
        """Derive the work order state from its runs; call after every run transition.

        Flushes only, the caller commits.
        """
        runs = await self.runs.list_by_work_order(work_order_id)
        state = derive_work_order_state([r.state for r in runs]).value
        await self.repo.set_state(work_order_id, state, utcnow())
        return state

    async def create_work_order(
        self,
        workflow_id: str,
        *,
        trigger_id: Optional[str] = None,
        job_id: Optional[str] = None,
        dataclip: Any = None,
        dataclip_id: Optional[str] = None,
        request: Optional[dict] = None,
        created_by: Optional[str] = None,
        run_timeout_seconds: Optional[int] = None,
    ) -> WorkOrderCreated:
        """Pin the current snapshot and enqueue the first run.

        Triggered work orders start at the trigger with normal priority;
        manual ones (no trigger) start at ``job_id`` and jump the queue.
        """
        async with traced_span("work_order.create", workflow_id=workflow_id, trigger_id=trigger_id):
            workflow = await self.workflows.get_by_id(workflow_id)
            if workflow is None:
                raise NotFoundError("workflow", workflow_id)
            project_id = workflow.project_id

            snapshot = await self.snapshots.get_or_create_snapshot(workflow_id)
            definition = definition_of(snapshot)

            if trigger_id is not None:
                trigger = definition.trigger(trigger_id)
                if trigger is None:
                    raise ValidationFailed(f"trigger {trigger_id} is not part of snapshot {snapshot.id}", field="trigger_id")
                if not trigger.enabled:
                    raise ValidationFailed(f"trigger {trigger_id} is disabled", field="trigger_id")
                priority = RunPriority.NORMAL
                dataclip_type = "http_request"
            elif job_id is not None:
                if definition.job(job_id) is None:
                    raise ValidationFailed(f"job {job_id} is not part of snapshot {snapshot.id}", field="job_id")
                priority = RunPriority.IMMEDIATE
                dataclip_type = "saved_input"
            else:
                raise ValidationFailed("either trigger_id or job_id is required", field="trigger_id")

            if dataclip_id is not None:
                clip = await self.dataclips.get_by_id(dataclip_id)
                if clip is None or clip.project_id != project_id:
                    raise NotFoundError("dataclip", dataclip_id)
            else:
                clip = build_dataclip(
                    project_id,
                    dataclip if dataclip is not None else {},
                    dataclip_type,
                    request=request,
                )
                await self.dataclips.add(clip)

            work_order = WorkOrder(
                id=str(uuid.uuid4()),
                workflow_id=workflow_id,
                snapshot_id=snapshot.id,
                trigger_id=trigger_id,
                dataclip_id=clip.id,
                state=RunState.PENDING.value,
            )
            await self.repo.add(work_order)

            run = Run(
                id=str(uuid.uuid4()),
                work_order_id=work_order.id,
                workflow_id=workflow_id,
                snapshot_id=snapshot.id,
                starting_trigger_id=trigger_id,
                starting_job_id=None if trigger_id is not None else job_id,
                dataclip_id=clip.id,
                state=RunState.PENDING.value,
                priority=int(priority),
                run_timeout_seconds=run_timeout_seconds,
                created_by=created_by,
            )
            await self.runs.add(run)

            work_order.state = await self.recompute_state(work_order.id)
            await self.session.commit()

            logger.info(
                "[WorkOrderService] work order %s created for workflow %s@%s, run %s",
                work_order.id, workflow_id, snapshot.lock_version, run.id,
            )

            decision = await self.admission.admit(workflow_id)
            if isinstance(decision, Queued):
                runs_queued.inc()
                logger.info("[WorkOrderService] run %s queued: %s", run.id, decision.reason)
            else:
                await self.admission.announce(run)
            await self.bus.publish(run_state_event(run))

            return WorkOrderCreated(work_order=work_order, run=run, admission=decision)

    async def list_runs(self, work_order_id: str) -> List[Run]:
        await self.get_work_order(work_order_id)
        return await self.runs.list_by_work_order(work_order_id)
