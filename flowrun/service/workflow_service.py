"""Projects and live workflow definitions.

Stands in for the collaborative editor: it owns the live graph and bumps
``lock_version`` whenever the structure changes, which is what makes the next
work order pin a fresh snapshot.
"""

import logging
import uuid
from typing import List, Optional

from flowrun.domain.errors import NotFoundError, ValidationFailed
from flowrun.domain.graph_model import GraphDefinition
from flowrun.persistence.models import Project, Workflow
from flowrun.persistence.repositories.project_repository import ProjectRepository
from flowrun.persistence.repositories.workflow_repository import WorkflowRepository

logger = logging.getLogger(__name__)

RETENTION_POLICIES = ("retain_all", "erase_all")

_UNSET = object()


def _check_cap(value: Optional[int], field: str) -> None:
    if value is not None and value < 1:
        raise ValidationFailed(f"{field} must be at least 1", field=field)


class WorkflowService:
    def __init__(self, repo: WorkflowRepository):
        self.repo = repo
        self.projects = ProjectRepository(repo.session)

    # ─────────────────────────── projects ───────────────────────────

    async def create_project(
        self,
        name: str,
        *,
        concurrency: Optional[int] = None,
        retention_policy: str = "retain_all",
        dataclip_retention_period: Optional[int] = None,
        project_id: Optional[str] = None,
    ) -> Project:
        _check_cap(concurrency, "concurrency")
        if retention_policy not in RETENTION_POLICIES:
            raise ValidationFailed(f"unknown retention policy: {retention_policy}", field="retention_policy")

        project = Project(
            id=project_id or str(uuid.uuid4()),
            name=name,
            concurrency=concurrency,
            retention_policy=retention_policy,
            dataclip_retention_period=dataclip_retention_period,
        )
        logger.info("[WorkflowService] creating project %s (%s)", project.id, name)
        return await self.projects.create(project)

    async def get_project(self, project_id: str) -> Project:
        project = await self.projects.get_by_id(project_id)
        if project is None:
            raise NotFoundError("project", project_id)
        return project

    async def update_project(
        self,
        project_id: str,
        *,
        concurrency=_UNSET,
        retention_policy: Optional[str] = None,
        dataclip_retention_period=_UNSET,
    ) -> Project:
        """Settings changes apply to new admissions only."""
        project = await self.get_project(project_id)
        if concurrency is not _UNSET:
            _check_cap(concurrency, "concurrency")
            project.concurrency = concurrency
        if retention_policy is not None:
            if retention_policy not in RETENTION_POLICIES:
                raise ValidationFailed(f"unknown retention policy: {retention_policy}", field="retention_policy")
            project.retention_policy = retention_policy
        if dataclip_retention_period is not _UNSET:
            project.dataclip_retention_period = dataclip_retention_period
        return await self.projects.update(project)

    # ─────────────────────────── workflows ──────────────────────────

    async def get_workflow(self, workflow_id: str) -> Workflow:
        return await self.repo.require(workflow_id)

    async def save_workflow(
        self,
        *,
        project_id: str,
        name: str,
        definition: GraphDefinition,
        workflow_id: Optional[str] = None,
        concurrency: Optional[int] = None,
        enable_job_logs: bool = True,
    ) -> Workflow:
        """Create or update the live definition.

        A changed name or graph bumps ``lock_version``; concurrency and log
        settings are not structural and leave it alone.
        """
        _check_cap(concurrency, "concurrency")
        await self.get_project(project_id)
        data = definition.model_dump(mode="json")

        workflow = await self.repo.get_by_id(workflow_id) if workflow_id else None
        if workflow is None:
            workflow = Workflow(
                id=workflow_id or str(uuid.uuid4()),
                project_id=project_id,
                name=name,
                lock_version=1,
                concurrency=concurrency,
                enable_job_logs=enable_job_logs,
                definition=data,
            )
            logger.info("[WorkflowService] creating workflow %s (%s)", workflow.id, name)
            return await self.repo.create(workflow)

        if workflow.project_id != project_id:
            raise ValidationFailed("workflow belongs to another project", field="project_id")

        if workflow.definition != data or workflow.name != name:
            workflow.lock_version += 1
            logger.info(
                "[WorkflowService] workflow %s structure changed, lock_version -> %s",
                workflow.id, workflow.lock_version,
            )
        workflow.name = name
        workflow.definition = data
        workflow.concurrency = concurrency
        workflow.enable_job_logs = enable_job_logs
        return await self.repo.update(workflow)

    async def list_workflows(self, project_id: str) -> List[Workflow]:
        return await self.repo.list_by_project(project_id)
