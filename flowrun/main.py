from __future__ import annotations

"""FastAPI entrypoint with the lost-run and retention sweepers."""

import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from flowrun.config import ENABLE_PROMETHEUS, ENABLE_SWEEPERS
from flowrun.domain.errors import (
    AlreadyTerminal,
    ClaimConflict,
    FlowRunError,
    InvalidStateTransition,
    NotFoundError,
    RerunIneligible,
    ValidationFailed,
)
from flowrun.events.in_memory_eventbus import event_bus
from flowrun.observability.otel_tracing import init_tracer
from flowrun.observability.prometheus_metrics import router as metrics_router

# ──────────────────────── routers ─────────────────────────
from flowrun.interfaces.api.dataclip_endpoints import router as dataclip_router
from flowrun.interfaces.api.run_endpoints import router as run_router
from flowrun.interfaces.api.work_order_endpoints import router as work_order_router
from flowrun.interfaces.api.workflow_endpoints import router as workflow_router
from flowrun.interfaces.websocket.routes import router as websocket_router

# sweepers
from flowrun.worker.lost_run_worker import run_lost_run_loop
from flowrun.worker.retention_worker import run_retention_loop

# ──────────────────────── logging ──────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)

# ─────────────────── lifespan context manager ──────────────


@asynccontextmanager
async def lifespan(app: FastAPI):  # type: ignore[valid-type]
    """Init DB, start sweepers on startup; cancel on shutdown."""

    # 1️⃣ 创建数据库 schema（仅首次）
    from flowrun.persistence.database import create_schema

    await create_schema()
    await event_bus.start()

    # 2️⃣ 启动后台 sweeper
    workers: list[asyncio.Task] = []
    if ENABLE_SWEEPERS:
        workers.append(asyncio.create_task(run_lost_run_loop()))
        workers.append(asyncio.create_task(run_retention_loop()))
        logger.info("Sweepers started: %s", len(workers))

    app.state.workers = workers  # type: ignore[attr-defined]
    try:
        yield
    finally:
        for w in workers:
            w.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        await event_bus.shutdown()
        logger.info("All sweepers shut down.")

# ───────────────────────── FastAPI app ─────────────────────

app = FastAPI(title="FlowRun API", description="Run execution & retry engine", lifespan=lifespan)

# Prometheus / OTEL 初始化
init_tracer("flowrun")

if ENABLE_PROMETHEUS:
    app.include_router(metrics_router)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# routers
app.include_router(workflow_router)
app.include_router(work_order_router)
app.include_router(run_router)
app.include_router(dataclip_router)
app.include_router(websocket_router)

# ───────────────────────── error mapping ───────────────────

_STATUS = {
    NotFoundError: 404,
    InvalidStateTransition: 409,
    AlreadyTerminal: 409,
    ClaimConflict: 409,
    RerunIneligible: 422,
    ValidationFailed: 422,
}


@app.exception_handler(FlowRunError)
async def flowrun_error_handler(request: Request, exc: FlowRunError) -> JSONResponse:
    status_code = _STATUS.get(type(exc), 400)
    body = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, RerunIneligible):
        body["reason"] = exc.reason
        body["message"] = exc.message
    if isinstance(exc, ValidationFailed) and exc.field:
        body["field"] = exc.field
    if status_code >= 409:
        logger.warning("%s %s -> %s %s", request.method, request.url.path, status_code, exc)
    return JSONResponse(status_code=status_code, content=body)


@app.get("/")
async def root():  # pragma: no cover
    return {"message": "FlowRun API is running"}


# ─────────────────────────── run uvicorn ────────────────────
if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000, reload=False)
