"""Concurrency admission: which pending runs may be claimed right now.

A partition is either one workflow (when it sets its own cap) or every
workflow of a project that leaves its cap unset. Only the oldest pending
runs of a partition, up to its free slots, are admissible; those are then
claimed by priority, then enqueue time.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, List, Optional, Tuple, Union

from sqlalchemy.ext.asyncio import AsyncSession

from flowrun import config
from flowrun.domain.admission import ConcurrencySetting, Partition, Permit, Queued
from flowrun.events.base import EventBus
from flowrun.events.eventbus_model import EventEnvelope, EventType, RUNS_AVAILABLE_TOPIC
from flowrun.events.in_memory_eventbus import event_bus
from flowrun.persistence.models import Run, Workflow
from flowrun.persistence.repositories.project_repository import ProjectRepository
from flowrun.persistence.repositories.run_repository import RunRepository
from flowrun.persistence.repositories.workflow_repository import WorkflowRepository

logger = logging.getLogger(__name__)

PartitionKey = Tuple[str, str]


class AdmissionService:
    def __init__(self, session: AsyncSession, bus: EventBus = event_bus):
        self.session = session
        self.bus = bus
        self.runs = RunRepository(session)
        self.workflows = WorkflowRepository(session)
        self.projects = ProjectRepository(session)
        self._partitions: Dict[str, Partition] = {}

    # ─────────────────────────── partitions ─────────────────────────

    async def _workflow(self, workflow_id: str) -> Workflow:
        return await self.workflows.require(workflow_id)

    async def partition_for(self, workflow_id: str) -> Partition:
        if workflow_id in self._partitions:
            return self._partitions[workflow_id]

        workflow = await self._workflow(workflow_id)
        if workflow.concurrency is not None:
            partition = Partition("workflow", workflow.id, workflow.concurrency, "workflow")
        else:
            project = await self.projects.get_by_id(workflow.project_id)
            if project is not None and project.concurrency is not None:
                partition = Partition("project", workflow.project_id, project.concurrency, "project")
            elif config.DEFAULT_PROJECT_CONCURRENCY is not None:
                partition = Partition("project", workflow.project_id, config.DEFAULT_PROJECT_CONCURRENCY, "default")
            else:
                partition = Partition("project", workflow.project_id, None, "none")

        self._partitions[workflow_id] = partition
        return partition

    async def _members(self, partition: Partition) -> List[str]:
        if partition.kind == "workflow":
            return [partition.key]
        return await self.workflows.list_sharing_project_limit(partition.key)

    async def active_count(self, partition: Partition) -> int:
        return await self.runs.count_active(await self._members(partition))

    # ─────────────────────────── admission ──────────────────────────

    async def admit(self, workflow_id: str) -> Union[Permit, Queued]:
        partition = await self.partition_for(workflow_id)
        active = await self.active_count(partition)
        if partition.has_room(active):
            return Permit(workflow_id, partition, active)
        return Queued(workflow_id, partition, active)

    async def admit_run(self, run: Run) -> Union[Permit, Queued]:
        """Admission for one pending run: room under the cap and within the
        partition's oldest ``free`` pending runs."""
        partition = await self.partition_for(run.workflow_id)
        active = await self.active_count(partition)
        if not partition.has_room(active):
            return Queued(run.workflow_id, partition, active)
        if partition.cap is None:
            return Permit(run.workflow_id, partition, active)

        pending = [r.id for r in await self.runs.list_pending(await self._members(partition))]
        position = pending.index(run.id) if run.id in pending else 0
        if position >= partition.cap - active:
            return Queued(run.workflow_id, partition, active, behind=position)
        return Permit(run.workflow_id, partition, active)

    async def claimable(self, demand: int = 1) -> List[Run]:
        """Pending runs that may be claimed now, in claim order."""
        if demand < 1:
            return []

        per_workflow: Dict[str, int] = defaultdict(int)
        queues: Dict[PartitionKey, List[Run]] = {}
        partitions: Dict[PartitionKey, Partition] = {}

        for run in await self.runs.list_pending():
            if per_workflow[run.workflow_id] >= config.PER_WORKFLOW_CLAIM_LIMIT:
                continue
            per_workflow[run.workflow_id] += 1
            partition = await self.partition_for(run.workflow_id)
            key = (partition.kind, partition.key)
            partitions[key] = partition
            queues.setdefault(key, []).append(run)

        eligible: List[Run] = []
        for key, queue in queues.items():
            partition = partitions[key]
            if partition.cap is None:
                eligible.extend(queue)
                continue
            free = max(partition.cap - await self.active_count(partition), 0)
            # only the oldest `free` runs of a partition are admissible
            eligible.extend(queue[:free])

        eligible.sort(key=lambda r: (r.priority, r.inserted_at, r.id))
        return eligible[:demand]

    async def release(self, run: Run) -> Optional[Run]:
        """After ``run`` finished: the pending run that now heads its partition, if admissible."""
        partition = await self.partition_for(run.workflow_id)
        if not partition.has_room(await self.active_count(partition)):
            return None

        pending = await self.runs.list_pending(await self._members(partition))
        if not pending:
            return None

        head = pending[0]
        logger.debug("[Admission] slot freed by %s, next in %s %s is %s", run.id, partition.kind, partition.key, head.id)
        await self.announce(head)
        return head

    async def announce(self, run: Run) -> None:
        """Tell polling workers a run can be claimed."""
        await self.bus.publish(EventEnvelope(
            topic=RUNS_AVAILABLE_TOPIC,
            event_type=EventType.RunAvailable,
            run_id=run.id,
            work_order_id=run.work_order_id,
            state=run.state,
        ))

    # ─────────────────────────── settings ───────────────────────────

    async def describe_limit(self, workflow_id: str) -> ConcurrencySetting:
        partition = await self.partition_for(workflow_id)
        cap = partition.cap

        if cap is None:
            notice = None
        elif partition.source == "workflow":
            notice = (
                "Runs of this workflow are processed one at a time."
                if cap == 1
                else f"At most {cap} runs of this workflow are processed at once."
            )
        elif partition.source == "project":
            notice = (
                f"This workflow shares the project limit of {cap} concurrent "
                f"run{'s' if cap != 1 else ''}; it can only be changed in the project settings."
            )
        else:
            notice = f"The instance default allows {cap} concurrent run{'s' if cap != 1 else ''} per project."

        return ConcurrencySetting(
            workflow_id=workflow_id,
            cap=cap,
            source=partition.source,
            parallelism_disabled=cap == 1,
            notice=notice,
        )
