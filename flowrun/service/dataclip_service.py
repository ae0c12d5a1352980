"""Dataclip store: payloads passed into and out of steps.

A wiped dataclip keeps its row (runs and steps still reference it) but its
body is gone for good.
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from datetime import timedelta
from typing import Any, Optional

from flowrun.domain.errors import NotFoundError, ValidationFailed
from flowrun.persistence.models import Dataclip, Project
from flowrun.persistence.repositories.dataclip_repository import DataclipRepository
from flowrun.utils.timefmt import utcnow

logger = logging.getLogger(__name__)

__all__ = ["DataclipService", "DATACLIP_TYPES", "build_dataclip", "content_address", "format_input"]

DATACLIP_TYPES = ("http_request", "step_result", "saved_input", "global", "kafka")

# only these are subject to the retention sweep; named clips are kept
EXPIRABLE_TYPES = ("http_request", "step_result", "saved_input")


def content_address(body: Any) -> str:
    canonical = json.dumps(body, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def build_dataclip(
    project_id: str,
    body: Any,
    dataclip_type: str = "http_request",
    *,
    request: Optional[dict] = None,
    name: Optional[str] = None,
) -> Dataclip:
    if dataclip_type not in DATACLIP_TYPES:
        raise ValidationFailed(f"unknown dataclip type: {dataclip_type}", field="type")
    return Dataclip(
        id=str(uuid.uuid4()),
        project_id=project_id,
        type=dataclip_type,
        body=body,
        request=request,
        name=name,
        sha256=content_address(body),
    )


def format_input(dataclip: Dataclip) -> Any:
    """Shape a dataclip the way a worker receives it as run input."""
    if dataclip.wiped_at is not None:
        return None
    if dataclip.type in ("http_request", "kafka"):
        return {"data": dataclip.body, "request": dataclip.request}
    return dataclip.body


class DataclipService:
    def __init__(self, repo: DataclipRepository):
        self.repo = repo

    async def create_dataclip(
        self,
        project_id: str,
        body: Any,
        dataclip_type: str = "http_request",
        *,
        request: Optional[dict] = None,
        name: Optional[str] = None,
    ) -> Dataclip:
        dataclip = build_dataclip(project_id, body, dataclip_type, request=request, name=name)
        await self.repo.create(dataclip)
        logger.debug("[DataclipService] stored %s dataclip %s sha256=%s", dataclip_type, dataclip.id, dataclip.sha256)
        return dataclip

    async def get_dataclip(self, dataclip_id: str) -> Dataclip:
        dataclip = await self.repo.get_by_id(dataclip_id)
        if dataclip is None:
            raise NotFoundError("dataclip", dataclip_id)
        return dataclip

    async def get_body(self, dataclip_id: str) -> Any:
        return (await self.get_dataclip(dataclip_id)).body

    async def find_by_content(self, project_id: str, body: Any) -> Optional[Dataclip]:
        return await self.repo.find_by_sha256(project_id, content_address(body))

    async def update_dataclip(self, dataclip_id: str, body: Any) -> Dataclip:
        dataclip = await self.get_dataclip(dataclip_id)
        if dataclip.wiped_at is not None:
            raise ValidationFailed(f"dataclip {dataclip_id} has been wiped", field="body")
        dataclip.body = body
        dataclip.sha256 = content_address(body)
        return await self.repo.update(dataclip)

    async def wipe(self, dataclip_id: str) -> Dataclip:
        """Null the payload. Wiping twice keeps the first ``wiped_at``."""
        await self.get_dataclip(dataclip_id)
        wiped = await self.repo.mark_wiped(dataclip_id, utcnow())
        await self.repo.session.commit()
        if wiped:
            logger.info("[DataclipService] wiped dataclip %s", dataclip_id)
        return await self.repo.reload(dataclip_id)

    async def wipe_expired(self, project: Project) -> int:
        if not project.dataclip_retention_period:
            return 0
        now = utcnow()
        cutoff = now - timedelta(days=project.dataclip_retention_period)
        count = await self.repo.wipe_older_than(project.id, cutoff, EXPIRABLE_TYPES, now)
        await self.repo.session.commit()
        if count:
            logger.info(
                "[DataclipService] retention wiped %s dataclips in project %s (older than %s days)",
                count, project.id, project.dataclip_retention_period,
            )
        return count
