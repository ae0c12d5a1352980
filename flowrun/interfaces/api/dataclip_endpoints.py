from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from flowrun.interfaces.api.schemas import DataclipResponse
from flowrun.persistence.database import get_db_session
from flowrun.persistence.repositories.dataclip_repository import DataclipRepository
from flowrun.service.dataclip_service import DataclipService

router = APIRouter(
    prefix="/dataclips",
    tags=["Dataclips"],
    responses={404: {"description": "Dataclip not found"}},
)


async def get_dataclip_service(db: AsyncSession = Depends(get_db_session)) -> DataclipService:
    return DataclipService(DataclipRepository(db))


@router.get("/{dataclip_id}", response_model=DataclipResponse)
async def get_dataclip(dataclip_id: str, svc: DataclipService = Depends(get_dataclip_service)):
    return await svc.get_dataclip(dataclip_id)


@router.post("/{dataclip_id}/wipe", response_model=DataclipResponse, summary="Erase a dataclip's payload (idempotent)")
async def wipe_dataclip(dataclip_id: str, svc: DataclipService = Depends(get_dataclip_service)):
    return await svc.wipe(dataclip_id)
