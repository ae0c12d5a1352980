"""Projects, live workflows and their snapshots."""

from typing import List

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from flowrun.interfaces.api.schemas import (
    ConcurrencyResponse,
    ProjectCreate,
    ProjectResponse,
    ProjectUpdate,
    SnapshotResponse,
    WorkflowResponse,
    WorkflowSave,
)
from flowrun.persistence.database import get_db_session
from flowrun.persistence.repositories.snapshot_repository import SnapshotRepository
from flowrun.persistence.repositories.workflow_repository import WorkflowRepository
from flowrun.service.admission_service import AdmissionService
from flowrun.service.snapshot_service import SnapshotService
from flowrun.service.workflow_service import WorkflowService

router = APIRouter(tags=["Workflows"])


async def get_workflow_service(db: AsyncSession = Depends(get_db_session)) -> WorkflowService:
    return WorkflowService(WorkflowRepository(db))


async def get_snapshot_service(db: AsyncSession = Depends(get_db_session)) -> SnapshotService:
    return SnapshotService(SnapshotRepository(db))


# ─────────────────────────── projects ───────────────────────────

@router.post("/projects", response_model=ProjectResponse, status_code=status.HTTP_201_CREATED)
async def create_project(
    req: ProjectCreate,
    svc: WorkflowService = Depends(get_workflow_service),
):
    return await svc.create_project(
        req.name,
        concurrency=req.concurrency,
        retention_policy=req.retention_policy,
        dataclip_retention_period=req.dataclip_retention_period,
    )


@router.get("/projects/{project_id}", response_model=ProjectResponse)
async def get_project(project_id: str, svc: WorkflowService = Depends(get_workflow_service)):
    return await svc.get_project(project_id)


@router.put("/projects/{project_id}", response_model=ProjectResponse)
async def update_project(
    project_id: str,
    req: ProjectUpdate,
    svc: WorkflowService = Depends(get_workflow_service),
):
    # only fields present in the body are changed; an explicit null clears a cap
    changes = req.model_dump(include=req.model_fields_set)
    return await svc.update_project(project_id, **changes)


# ─────────────────────────── workflows ──────────────────────────

@router.post("/workflows", response_model=WorkflowResponse, status_code=status.HTTP_201_CREATED)
async def create_workflow(req: WorkflowSave, svc: WorkflowService = Depends(get_workflow_service)):
    return await svc.save_workflow(
        project_id=req.project_id,
        name=req.name,
        definition=req.definition,
        concurrency=req.concurrency,
        enable_job_logs=req.enable_job_logs,
    )


@router.put("/workflows/{workflow_id}", response_model=WorkflowResponse)
async def update_workflow(
    workflow_id: str,
    req: WorkflowSave,
    svc: WorkflowService = Depends(get_workflow_service),
):
    await svc.get_workflow(workflow_id)
    return await svc.save_workflow(
        workflow_id=workflow_id,
        project_id=req.project_id,
        name=req.name,
        definition=req.definition,
        concurrency=req.concurrency,
        enable_job_logs=req.enable_job_logs,
    )


@router.get("/workflows/{workflow_id}", response_model=WorkflowResponse)
async def get_workflow(workflow_id: str, svc: WorkflowService = Depends(get_workflow_service)):
    return await svc.get_workflow(workflow_id)


@router.get("/workflows/{workflow_id}/snapshots", response_model=List[SnapshotResponse])
async def list_snapshots(
    workflow_id: str,
    workflows: WorkflowService = Depends(get_workflow_service),
    svc: SnapshotService = Depends(get_snapshot_service),
):
    await workflows.get_workflow(workflow_id)
    return await svc.list_snapshots(workflow_id)


@router.get("/workflows/{workflow_id}/concurrency", response_model=ConcurrencyResponse)
async def describe_concurrency(workflow_id: str, db: AsyncSession = Depends(get_db_session)):
    return await AdmissionService(db).describe_limit(workflow_id)
