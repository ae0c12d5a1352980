"""Worker protocol and run-level UI actions."""

from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from flowrun.interfaces.api.schemas import (
    AppendLogsRequest,
    ClaimRequest,
    ClaimResponse,
    CompleteRunRequest,
    CompleteStepRequest,
    LogLineIn,
    LogLineResponse,
    RerunEligibilityResponse,
    RerunRequest,
    RunResponse,
    StartStepRequest,
    StepResponse,
)
from flowrun.persistence.database import get_db_session
from flowrun.service.log_service import LogEntry, LogService
from flowrun.service.rerun_service import RerunService
from flowrun.service.run_service import RunService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Runs"], responses={404: {"description": "Run not found"}})


async def get_run_service(db: AsyncSession = Depends(get_db_session)) -> RunService:
    return RunService(db)


async def get_log_service(db: AsyncSession = Depends(get_db_session)) -> LogService:
    return LogService(db)


async def get_rerun_service(db: AsyncSession = Depends(get_db_session)) -> RerunService:
    return RerunService(db)


def _entry(line: LogLineIn) -> LogEntry:
    return LogEntry(
        message=line.message,
        timestamp=line.timestamp,
        step_id=line.step_id,
        level=line.level,
        source=line.source,
    )


# ---------------------------------------------------------------------------
# Worker protocol
# ---------------------------------------------------------------------------


@router.post("/runs/claim", response_model=ClaimResponse, summary="Claim pending runs")
async def claim(req: ClaimRequest, svc: RunService = Depends(get_run_service)):
    if req.run_id is not None:
        run = await svc.claim_run(req.run_id, req.worker_id)
        if run is None:
            return ClaimResponse(runs=[], queued=True)
        return ClaimResponse(runs=[RunResponse.model_validate(run)])
    runs = await svc.claim(req.worker_id, req.demand)
    return ClaimResponse(runs=[RunResponse.model_validate(r) for r in runs])


@router.post("/runs/{run_id}/start", response_model=RunResponse)
async def start_run(run_id: str, svc: RunService = Depends(get_run_service)):
    return await svc.start_run(run_id)


@router.post("/runs/{run_id}/heartbeat", response_model=RunResponse)
async def heartbeat(run_id: str, svc: RunService = Depends(get_run_service)):
    return await svc.heartbeat(run_id)


@router.get("/runs/{run_id}/input", summary="Formatted input dataclip for the worker")
async def fetch_input(run_id: str, svc: RunService = Depends(get_run_service)):
    return {"run_id": run_id, "input": await svc.fetch_input(run_id)}


@router.post("/runs/{run_id}/steps", response_model=StepResponse, status_code=status.HTTP_201_CREATED)
async def start_step(
    run_id: str,
    req: StartStepRequest,
    svc: RunService = Depends(get_run_service),
):
    return await svc.start_step(run_id, req.job_id, req.input_dataclip_id)


@router.post("/steps/{step_id}/complete", response_model=StepResponse)
async def complete_step(
    step_id: str,
    req: CompleteStepRequest,
    svc: RunService = Depends(get_run_service),
):
    return await svc.complete_step(
        step_id,
        req.exit_reason,
        output_dataclip=req.output_dataclip,
        output_dataclip_id=req.output_dataclip_id,
        error_type=req.error_type,
    )


@router.post("/runs/{run_id}/logs", response_model=List[LogLineResponse], status_code=status.HTTP_201_CREATED)
async def append_logs(
    run_id: str,
    req: AppendLogsRequest,
    svc: LogService = Depends(get_log_service),
):
    return await svc.append_logs(run_id, [_entry(line) for line in req.lines])


@router.post("/runs/{run_id}/complete", response_model=RunResponse)
async def complete_run(
    run_id: str,
    req: CompleteRunRequest,
    svc: RunService = Depends(get_run_service),
):
    return await svc.complete_run(run_id, req.exit_reason, req.error_type)


# ---------------------------------------------------------------------------
# UI
# ---------------------------------------------------------------------------


@router.get("/runs/{run_id}", response_model=RunResponse)
async def get_run(run_id: str, svc: RunService = Depends(get_run_service)):
    return await svc.get_run(run_id)


@router.get("/runs/{run_id}/steps", response_model=List[StepResponse])
async def list_steps(run_id: str, svc: RunService = Depends(get_run_service)):
    return await svc.list_steps(run_id)


@router.get("/runs/{run_id}/logs", response_model=List[LogLineResponse])
async def list_logs(
    run_id: str,
    step_id: Optional[str] = Query(None),
    after_id: Optional[int] = Query(None, ge=0),
    svc: LogService = Depends(get_log_service),
):
    return await svc.list_logs(run_id, step_id=step_id, after_id=after_id)


@router.get("/runs/{run_id}/rerun_eligibility", response_model=RerunEligibilityResponse)
async def rerun_eligibility(
    run_id: str,
    job_id: str = Query(...),
    can_edit_data_retention: bool = Query(False),
    svc: RerunService = Depends(get_rerun_service),
):
    return await svc.check_eligibility(run_id, job_id, can_edit_data_retention)


@router.post("/runs/{run_id}/rerun", response_model=RunResponse, status_code=status.HTTP_201_CREATED)
async def rerun(
    run_id: str,
    req: RerunRequest,
    svc: RerunService = Depends(get_rerun_service),
):
    return await svc.rerun(run_id, req.job_id, created_by=req.created_by)


@router.post("/runs/{run_id}/kill", response_model=RunResponse)
async def kill(run_id: str, svc: RunService = Depends(get_run_service)):
    return await svc.kill(run_id)
