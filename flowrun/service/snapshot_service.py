"""Graph snapshots: immutable copies of a workflow's graph, one per lock_version."""

from __future__ import annotations

import logging
import uuid
from typing import List

from sqlalchemy.exc import IntegrityError

from flowrun.domain.errors import NotFoundError
from flowrun.domain.graph import WorkflowGraph
from flowrun.domain.graph_model import GraphDefinition
from flowrun.persistence.models import GraphSnapshot
from flowrun.persistence.repositories.snapshot_repository import SnapshotRepository
from flowrun.persistence.repositories.workflow_repository import WorkflowRepository
from flowrun.utils.lock_manager import lock_manager

logger = logging.getLogger(__name__)

__all__ = ["SnapshotService", "definition_of", "graph_of"]


def definition_of(snapshot: GraphSnapshot) -> GraphDefinition:
    return GraphDefinition(
        jobs=snapshot.jobs or [],
        triggers=snapshot.triggers or [],
        edges=snapshot.edges or [],
        positions=snapshot.positions,
    )


def graph_of(snapshot: GraphSnapshot) -> WorkflowGraph:
    return WorkflowGraph(definition_of(snapshot))


class SnapshotService:
    def __init__(self, repo: SnapshotRepository):
        self.repo = repo
        self.workflows = WorkflowRepository(repo.session)

    async def get_or_create_snapshot(self, workflow_id: str) -> GraphSnapshot:
        """Snapshot for the workflow's current lock_version, created on first need; commits."""
        workflow = await self.workflows.get_by_id(workflow_id)
        if workflow is None:
            raise NotFoundError("workflow", workflow_id)
        version = workflow.lock_version

        async with lock_manager.lock(f"snapshot:{workflow_id}"):
            existing = await self.repo.get_by_version(workflow_id, version)
            if existing:
                return existing

            definition = GraphDefinition.model_validate(workflow.definition or {})
            data = definition.model_dump(mode="json")
            snapshot = GraphSnapshot(
                id=str(uuid.uuid4()),
                workflow_id=workflow_id,
                lock_version=version,
                name=workflow.name,
                jobs=data["jobs"],
                triggers=data["triggers"],
                edges=data["edges"],
                positions=data["positions"],
            )
            try:
                await self.repo.create(snapshot)
            except IntegrityError:
                # another process won the insert for this version
                logger.info(
                    "[SnapshotService] snapshot %s@%s created concurrently, re-reading",
                    workflow_id, version,
                )
                existing = await self.repo.get_by_version(workflow_id, version)
                if existing is None:
                    raise
                return existing

            logger.info(
                "[SnapshotService] created snapshot %s for workflow %s@%s",
                snapshot.id, workflow_id, version,
            )
            return snapshot

    async def get_snapshot(self, snapshot_id: str) -> GraphSnapshot:
        snapshot = await self.repo.get_by_id(snapshot_id)
        if snapshot is None:
            raise NotFoundError("snapshot", snapshot_id)
        return snapshot

    async def list_snapshots(self, workflow_id: str) -> List[GraphSnapshot]:
        return await self.repo.list_by_workflow(workflow_id)

    async def graph_for(self, snapshot_id: str) -> WorkflowGraph:
        return graph_of(await self.get_snapshot(snapshot_id))
