"""Run / Step state machine: the worker protocol and the lost-run sweeps.

Every run transition is a compare-and-swap on the current state; the row
count of the conditional UPDATE decides who won. After each transition the
owning work order's state is recomputed in the same transaction.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from flowrun import config
from flowrun.domain.errors import (
    AlreadyTerminal,
    ClaimConflict,
    InvalidStateTransition,
    NotFoundError,
    ValidationFailed,
)
from flowrun.domain.admission import Queued
from flowrun.domain.states import (
    LOST_AFTER_CLAIM,
    LOST_AFTER_START,
    RunState,
    StepExitReason,
    can_transition,
    is_final,
    parse_step_exit_reason,
    run_state_for_exit_reason,
    sources_for,
)
from flowrun.events.base import EventBus
from flowrun.events.eventbus_model import EventEnvelope, EventType, run_state_event, run_topic
from flowrun.events.in_memory_eventbus import event_bus
from flowrun.observability.prometheus_metrics import (
    run_duration,
    runs_claimed,
    runs_finished,
    runs_lost,
)
from flowrun.observability.trace_utils import traced_span
from flowrun.persistence.models import Run, Step, Workflow
from flowrun.persistence.repositories.dataclip_repository import DataclipRepository
from flowrun.persistence.repositories.project_repository import ProjectRepository
from flowrun.persistence.repositories.run_repository import RunRepository
from flowrun.persistence.repositories.snapshot_repository import SnapshotRepository
from flowrun.persistence.repositories.step_repository import StepRepository
from flowrun.persistence.repositories.workflow_repository import WorkflowRepository
from flowrun.service.admission_service import AdmissionService
from flowrun.service.dataclip_service import build_dataclip, format_input
from flowrun.service.snapshot_service import definition_of
from flowrun.service.work_order_service import WorkOrderService
from flowrun.utils.lock_manager import lock_manager
from flowrun.utils.timefmt import utcnow

logger = logging.getLogger(__name__)

__all__ = ["RunService", "CLAIM_LOCK"]

# claims are serialized so admission counts and the CAS see the same picture
CLAIM_LOCK = "claim"

# a run keeps error_type only when it failed
_ERROR_STATES = {RunState.FAILED}


class RunService:
    def __init__(self, session: AsyncSession, bus: EventBus = event_bus):
        self.session = session
        self.bus = bus
        self.repo = RunRepository(session)
        self.steps = StepRepository(session)
        self.dataclips = DataclipRepository(session)
        self.snapshots = SnapshotRepository(session)
        self.workflows = WorkflowRepository(session)
        self.projects = ProjectRepository(session)
        self.work_orders = WorkOrderService(session, bus)
        self.admission = AdmissionService(session, bus)

    # ─────────────────────────── reads ──────────────────────────────

    async def get_run(self, run_id: str) -> Run:
        return await self.repo.require(run_id, fresh=True)

    async def list_runs(self, work_order_id: str) -> List[Run]:
        return await self.work_orders.list_runs(work_order_id)

    async def list_steps(self, run_id: str) -> List[Step]:
        """Steps shown under a run; ``step.run_id`` is the run that executed it."""
        await self.get_run(run_id)
        return await self.steps.list_for_run(run_id)

    async def get_step(self, step_id: str) -> Step:
        return await self.steps.require(step_id, fresh=True)

    async def _workflow_of(self, run: Run) -> Workflow:
        return await self.workflows.require(run.workflow_id)

    # ─────────────────────────── helpers ────────────────────────────

    async def _after_transition(self, run_id: str) -> Run:
        """Recompute the work order, commit, publish the new run state."""
        run = await self.repo.reload(run_id)
        await self.work_orders.recompute_state(run.work_order_id)
        await self.session.commit()
        await self.bus.publish(run_state_event(run))
        return run

    async def _finished(self, run: Run) -> None:
        runs_finished.labels(state=run.state).inc()
        started = run.claimed_at or run.inserted_at
        if run.finished_at and started:
            run_duration.observe(max((run.finished_at - started).total_seconds(), 0.0))
        await self.admission.release(run)

    # ─────────────────────────── claiming ───────────────────────────

    async def claim(self, worker_id: str, demand: int = 1) -> List[Run]:
        """Claim up to ``demand`` runs in admission order."""
        async with traced_span("run.claim", worker_id=worker_id, demand=demand):
            async with lock_manager.lock(CLAIM_LOCK):
                candidates = await self.admission.claimable(demand)
                now = utcnow()
                claimed_ids = []
                for candidate in candidates:
                    ok = await self.repo.transition(
                        candidate.id,
                        [RunState.PENDING],
                        state=RunState.CLAIMED.value,
                        worker_name=worker_id,
                        claimed_at=now,
                        last_activity_at=now,
                    )
                    if ok:
                        claimed_ids.append(candidate.id)

                claimed = []
                for run_id in claimed_ids:
                    run = await self.repo.reload(run_id)
                    await self.work_orders.recompute_state(run.work_order_id)
                    claimed.append(run)
                await self.session.commit()

            runs_claimed.inc(len(claimed))
            await self.bus.publish_batch([run_state_event(run) for run in claimed])

            if claimed:
                logger.info("[RunService] worker %s claimed %s run(s)", worker_id, len(claimed))
            return claimed

    async def claim_run(self, run_id: str, worker_id: str) -> Optional[Run]:
        """Claim one specific run.

        Raises :class:`ClaimConflict` when the run is no longer pending and
        returns ``None`` when its partition is full or older runs of the
        partition are queued ahead of it (the run stays queued).
        """
        async with lock_manager.lock(CLAIM_LOCK):
            run = await self.get_run(run_id)
            if run.state != RunState.PENDING.value:
                logger.warning("[RunService] claim of %s by %s rejected: state=%s", run_id, worker_id, run.state)
                raise ClaimConflict(run_id, run.state)

            decision = await self.admission.admit_run(run)
            if isinstance(decision, Queued):
                logger.info("[RunService] claim of %s deferred: %s", run_id, decision.reason)
                return None

            now = utcnow()
            ok = await self.repo.transition(
                run_id,
                [RunState.PENDING],
                state=RunState.CLAIMED.value,
                worker_name=worker_id,
                claimed_at=now,
                last_activity_at=now,
            )
            if not ok:
                current = await self.get_run(run_id)
                raise ClaimConflict(run_id, current.state)

            run = await self._after_transition(run_id)

        runs_claimed.inc()
        logger.info("[RunService] run %s claimed by %s", run_id, worker_id)
        return run

    # ─────────────────────────── lifecycle ──────────────────────────

    async def start_run(self, run_id: str) -> Run:
        run = await self.get_run(run_id)
        if run.state != RunState.CLAIMED.value:
            logger.warning("[RunService] start of %s rejected: state=%s", run_id, run.state)
            raise InvalidStateTransition(run_id, run.state, "start")

        now = utcnow()
        ok = await self.repo.transition(
            run_id,
            [RunState.CLAIMED],
            state=RunState.RUNNING.value,
            started_at=now,
            last_activity_at=now,
        )
        if not ok:
            current = await self.get_run(run_id)
            raise InvalidStateTransition(run_id, current.state, "start")

        logger.info("[RunService] run %s started", run_id)
        return await self._after_transition(run_id)

    async def heartbeat(self, run_id: str) -> Run:
        """Refresh activity; a terminal run is returned unchanged so the worker can stop."""
        run = await self.get_run(run_id)
        if await self.repo.touch(run_id, utcnow()):
            await self.session.commit()
            run = await self.repo.reload(run_id)
        return run

    async def complete_run(
        self,
        run_id: str,
        exit_reason: str,
        error_type: Optional[str] = None,
    ) -> Run:
        """Accepted once. Later completions raise AlreadyTerminal, except after
        ``lost`` where the late report is logged and ignored."""
        target = run_state_for_exit_reason(exit_reason)

        async with traced_span("run.complete", run_id=run_id, exit_reason=exit_reason):
            run = await self.get_run(run_id)
            for _ in range(2):
                if is_final(run.state):
                    if run.state == RunState.LOST.value:
                        logger.warning(
                            "[RunService] late completion of lost run %s (%s) ignored",
                            run_id, exit_reason,
                        )
                        return run
                    raise AlreadyTerminal(run_id, run.state)

                if not can_transition(run.state, target):
                    logger.warning(
                        "[RunService] complete of %s rejected: %s -> %s",
                        run_id, run.state, target.value,
                    )
                    raise InvalidStateTransition(run_id, run.state, f"complete as {target.value}")

                now = utcnow()
                ok = await self.repo.transition(
                    run_id,
                    [run.state],
                    state=target.value,
                    exit_reason=exit_reason,
                    error_type=error_type if target in _ERROR_STATES else None,
                    finished_at=now,
                    last_activity_at=now,
                )
                if ok:
                    break
                # raced with another transition; re-evaluate against the winner
                run = await self.get_run(run_id)
            else:
                raise InvalidStateTransition(run_id, run.state, f"complete as {target.value}")

            run = await self._after_transition(run_id)
            logger.info("[RunService] run %s finished: %s", run_id, run.state)
            await self._finished(run)
            return run

    async def kill(self, run_id: str) -> Run:
        """Advisory: the worker learns about it on its next call."""
        run = await self.get_run(run_id)
        if is_final(run.state):
            raise AlreadyTerminal(run_id, run.state)

        now = utcnow()
        ok = await self.repo.transition(
            run_id,
            sources_for(RunState.KILLED),
            state=RunState.KILLED.value,
            exit_reason="killed",
            finished_at=now,
            last_activity_at=now,
        )
        if not ok:
            current = await self.get_run(run_id)
            raise AlreadyTerminal(run_id, current.state)

        logger.info("[RunService] run %s killed (was %s)", run_id, run.state)
        run = await self._after_transition(run_id)
        await self._finished(run)
        return run

    # ─────────────────────────── steps ──────────────────────────────

    async def start_step(self, run_id: str, job_id: str, input_dataclip_id: str) -> Step:
        run = await self.get_run(run_id)
        if run.state != RunState.RUNNING.value:
            logger.warning("[RunService] start_step on %s rejected: state=%s", run_id, run.state)
            raise InvalidStateTransition(run_id, run.state, "start step")

        snapshot = await self.snapshots.get_by_id(run.snapshot_id)
        if definition_of(snapshot).job(job_id) is None:
            raise ValidationFailed(f"job {job_id} is not part of snapshot {run.snapshot_id}", field="job_id")

        if await self.dataclips.get_by_id(input_dataclip_id) is None:
            raise NotFoundError("dataclip", input_dataclip_id)

        now = utcnow()
        step = Step(
            id=str(uuid.uuid4()),
            run_id=run_id,
            job_id=job_id,
            snapshot_id=run.snapshot_id,
            input_dataclip_id=input_dataclip_id,
            started_at=now,
        )
        await self.steps.add(step)
        await self.steps.associate(run_id, [step.id])
        await self.repo.touch(run_id, now)
        await self.session.commit()

        logger.info("[RunService] step %s started: run=%s job=%s", step.id, run_id, job_id)
        await self.bus.publish(EventEnvelope(
            topic=run_topic(run_id),
            event_type=EventType.StepStarted,
            run_id=run_id,
            step_id=step.id,
            attributes={"job_id": job_id, "input_dataclip_id": input_dataclip_id},
        ))
        return step

    async def complete_step(
        self,
        step_id: str,
        exit_reason: str,
        *,
        output_dataclip: Any = None,
        output_dataclip_id: Optional[str] = None,
        error_type: Optional[str] = None,
    ) -> Step:
        reason = parse_step_exit_reason(exit_reason)
        step = await self.get_step(step_id)

        if step.exit_reason is not None:
            logger.warning(
                "[RunService] step %s already finished (%s); completion %s ignored",
                step_id, step.exit_reason, reason.value,
            )
            return step

        run = await self.get_run(step.run_id)
        workflow = await self._workflow_of(run)

        if output_dataclip_id is not None:
            if await self.dataclips.get_by_id(output_dataclip_id) is None:
                raise NotFoundError("dataclip", output_dataclip_id)
        elif output_dataclip is not None:
            clip = build_dataclip(workflow.project_id, output_dataclip, "step_result")
            await self.dataclips.add(clip)
            output_dataclip_id = clip.id

        now = utcnow()
        ok = await self.steps.finish_if_open(
            step_id,
            exit_reason=reason.value,
            error_type=error_type if reason in (StepExitReason.FAIL, StepExitReason.CRASH) else None,
            output_dataclip_id=output_dataclip_id,
            finished_at=now,
        )
        if not ok:
            await self.session.rollback()
            logger.warning("[RunService] step %s finished concurrently; completion ignored", step_id)
            return await self.get_step(step_id)

        if is_final(run.state):
            logger.warning(
                "[RunService] orphaned step %s completed after run %s ended (%s)",
                step_id, run.id, run.state,
            )
        else:
            await self.repo.touch(run.id, now)
        await self.session.commit()

        step = await self.get_step(step_id)
        await self.bus.publish(EventEnvelope(
            topic=run_topic(run.id),
            event_type=EventType.StepCompleted,
            run_id=run.id,
            step_id=step_id,
            state=reason.value,
            attributes={
                "job_id": step.job_id,
                "output_dataclip_id": step.output_dataclip_id,
                "error_type": step.error_type,
            },
        ))
        return step

    # ─────────────────────────── input ──────────────────────────────

    async def fetch_input(self, run_id: str) -> Any:
        """The run's input as the worker receives it.

        Under an ``erase_all`` retention policy the input is wiped once served.
        """
        run = await self.get_run(run_id)
        dataclip = await self.dataclips.get_by_id(run.dataclip_id)
        if dataclip is None:
            raise NotFoundError("dataclip", run.dataclip_id)
        payload = format_input(dataclip)

        workflow = await self._workflow_of(run)
        project = await self.projects.get_by_id(workflow.project_id)
        if project is not None and project.retention_policy == "erase_all" and dataclip.wiped_at is None:
            await self.dataclips.mark_wiped(dataclip.id, utcnow())
            await self.session.commit()
            logger.info("[RunService] input %s of run %s wiped after fetch (erase_all)", dataclip.id, run_id)

        return payload

    # ─────────────────────────── sweeps ─────────────────────────────

    async def mark_lost(self, run: Run, now: Optional[datetime] = None) -> bool:
        """claimed/running -> lost, finished at ``now`` (the sweep's clock).

        A lost run carries no error_type. Its open steps stay open so a late
        ``complete_step`` is still recorded (as orphaned); the orphaned-step
        sweep closes whatever is left after the grace period.
        """
        reason = LOST_AFTER_START if run.started_at else LOST_AFTER_CLAIM
        ok = await self.repo.transition(
            run.id,
            sources_for(RunState.LOST),
            state=RunState.LOST.value,
            exit_reason=RunState.LOST.value,
            finished_at=now or utcnow(),
        )
        if not ok:
            return False

        logger.warning("[RunService] run %s marked lost (%s)", run.id, reason)
        runs_lost.labels(reason=reason).inc()
        run = await self._after_transition(run.id)
        await self._finished(run)
        return True

    def _is_overdue(self, run: Run, now: datetime) -> bool:
        last_seen = run.last_activity_at or run.started_at or run.claimed_at
        if last_seen is None:
            return False
        timeout = run.run_timeout_seconds or config.RUN_TIMEOUT_SECONDS
        deadline = last_seen + timedelta(seconds=timeout + config.LOST_RUN_GRACE_PERIOD_SECONDS)
        return deadline < now

    async def sweep_lost_runs(self, now: Optional[datetime] = None) -> List[str]:
        """Mark every overdue claimed/running run lost. Never schedules a retry."""
        now = now or utcnow()
        candidates = [r for r in await self.repo.list_active_for_sweep() if self._is_overdue(r, now)]
        # release row locks taken by the candidate query
        await self.session.commit()

        lost = []
        for run in candidates:
            if await self.mark_lost(run, now):
                lost.append(run.id)
        return lost

    async def sweep_orphaned_steps(self, now: Optional[datetime] = None) -> int:
        """Close steps left open by runs that finished more than a grace period ago."""
        now = now or utcnow()
        cutoff = now - timedelta(seconds=config.LOST_RUN_GRACE_PERIOD_SECONDS)
        closed = 0
        for step in await self.steps.list_orphaned(cutoff):
            if await self.steps.finish_if_open(
                step.id,
                exit_reason=StepExitReason.LOST.value,
                finished_at=now,
            ):
                closed += 1
        await self.session.commit()
        if closed:
            logger.warning("[RunService] closed %s orphaned step(s)", closed)
        return closed
