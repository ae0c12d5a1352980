"""Trigger ingress and work-order level UI actions."""

import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from flowrun.domain.admission import Queued
from flowrun.interfaces.api.schemas import (
    BulkRerunFromStartRequest,
    BulkRerunRequest,
    BulkRerunResponse,
    RunResponse,
    WorkOrderCreate,
    WorkOrderCreatedResponse,
    WorkOrderResponse,
)
from flowrun.persistence.database import get_db_session
from flowrun.service.rerun_service import BulkRerunResult, RerunService
from flowrun.service.work_order_service import WorkOrderService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/work_orders",
    tags=["WorkOrders"],
    responses={404: {"description": "Work order not found"}},
)


async def get_work_order_service(db: AsyncSession = Depends(get_db_session)) -> WorkOrderService:
    return WorkOrderService(db)


async def get_rerun_service(db: AsyncSession = Depends(get_db_session)) -> RerunService:
    return RerunService(db)


def bulk_response(result: BulkRerunResult) -> BulkRerunResponse:
    return BulkRerunResponse(
        message=result.message,
        enqueued=[RunResponse.model_validate(r) for r in result.enqueued],
        skipped=[{"work_order_id": s.work_order_id, "reason": s.reason} for s in result.skipped],
    )


@router.post(
    "",
    response_model=WorkOrderCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a work order and enqueue its first run",
)
async def create_work_order(
    req: WorkOrderCreate,
    svc: WorkOrderService = Depends(get_work_order_service),
):
    created = await svc.create_work_order(
        req.workflow_id,
        trigger_id=req.trigger_id,
        job_id=req.job_id,
        dataclip=req.dataclip,
        dataclip_id=req.dataclip_id,
        request=req.request,
        created_by=req.created_by,
        run_timeout_seconds=req.run_timeout_seconds,
    )
    queued = isinstance(created.admission, Queued)
    return WorkOrderCreatedResponse(
        work_order=WorkOrderResponse.model_validate(created.work_order).model_copy(
            update={"runs": [RunResponse.model_validate(created.run)]}
        ),
        run=RunResponse.model_validate(created.run),
        admitted=not queued,
        queued_reason=created.admission.reason if queued else None,
    )


@router.get("/{work_order_id}", response_model=WorkOrderResponse)
async def get_work_order(
    work_order_id: str,
    svc: WorkOrderService = Depends(get_work_order_service),
):
    work_order = await svc.get_work_order(work_order_id)
    runs = await svc.list_runs(work_order_id)
    return WorkOrderResponse.model_validate(work_order).model_copy(
        update={"runs": [RunResponse.model_validate(r) for r in runs]}
    )


@router.post("/rerun", response_model=BulkRerunResponse, summary="Rerun many work orders from one job")
async def bulk_rerun(req: BulkRerunRequest, svc: RerunService = Depends(get_rerun_service)):
    result = await svc.bulk_rerun(req.work_order_ids, req.job_id, created_by=req.created_by)
    return bulk_response(result)


@router.post("/rerun_from_start", response_model=BulkRerunResponse, summary="Rerun many work orders from the start")
async def bulk_rerun_from_start(
    req: BulkRerunFromStartRequest,
    svc: RerunService = Depends(get_rerun_service),
):
    result = await svc.bulk_rerun_from_start(req.work_order_ids, created_by=req.created_by)
    return bulk_response(result)
