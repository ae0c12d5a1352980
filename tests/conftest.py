import os

# 测试环境：内存数据库、关闭后台 sweeper 与 OTEL
os.environ.setdefault("FLOWRUN_ENV", "test")
os.environ.setdefault("ENABLE_SWEEPERS", "false")
os.environ.setdefault("ENABLE_OTEL", "false")

import pytest
import pytest_asyncio
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from flowrun.domain.graph_model import GraphDefinition
from flowrun.events.in_memory_eventbus import event_bus
from flowrun.persistence import models  # noqa: F401
from flowrun.persistence.database import Base
from flowrun.persistence.repositories.workflow_repository import WorkflowRepository
from flowrun.service.run_service import RunService
from flowrun.service.workflow_service import WorkflowService

# trigger-1 -> a -> b -> c, and a -> d
GRAPH = {
    "jobs": [
        {"id": "job-a", "name": "fetch", "adaptor": "@openfn/language-http@latest", "body": "get('/orders')"},
        {"id": "job-b", "name": "transform", "adaptor": "@openfn/language-common@latest", "body": "fn(s => s)"},
        {"id": "job-c", "name": "load", "adaptor": "@openfn/language-postgresql@latest", "body": "insert('orders')"},
        {"id": "job-d", "name": "notify", "adaptor": "@openfn/language-http@latest", "body": "post('/hook')"},
    ],
    "triggers": [{"id": "trigger-1", "type": "webhook"}],
    "edges": [
        {"id": "e1", "source": "trigger-1", "target": "job-a"},
        {"id": "e2", "source": "job-a", "target": "job-b", "condition_type": "on_job_success"},
        {"id": "e3", "source": "job-b", "target": "job-c", "condition_type": "on_job_success"},
        {"id": "e4", "source": "job-a", "target": "job-d", "condition_type": "on_job_failure"},
    ],
}

# whose output each job consumes; None = the run's own input
PARENTS = {"job-a": None, "job-b": "job-a", "job-c": "job-b", "job-d": "job-a"}


@pytest.fixture
def graph_definition() -> GraphDefinition:
    return GraphDefinition.model_validate(GRAPH)


# ─────────────────────────────── database ────────────────────────────────


@pytest.fixture
def db_path(tmp_path):
    """每个测试一个独立的 SQLite 文件"""
    path = tmp_path / "flowrun.db"
    engine = create_engine(f"sqlite:///{path}")
    Base.metadata.create_all(engine)
    engine.dispose()
    return path


@pytest.fixture
def session_factory(db_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", poolclass=NullPool)
    return sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def clean_event_bus():
    event_bus.clear()
    yield
    event_bus.clear()


# ─────────────────────────────── seed data ───────────────────────────────


@pytest_asyncio.fixture
async def workflow_service(db_session):
    return WorkflowService(WorkflowRepository(db_session))


@pytest_asyncio.fixture
async def project(workflow_service):
    return await workflow_service.create_project("acme")


@pytest_asyncio.fixture
async def workflow(workflow_service, project, graph_definition):
    return await workflow_service.save_workflow(
        project_id=project.id,
        name="orders",
        definition=graph_definition,
    )


async def drive_run(session, run_id, jobs=("job-a", "job-b", "job-c", "job-d"), *, worker_id="worker-1", finish="success"):
    """Play a worker: claim, start, execute ``jobs`` in order, then complete.

    Returns the finished steps keyed by job id.
    """
    svc = RunService(session)
    run = await svc.get_run(run_id)
    if run.state == "pending":
        assert await svc.claim_run(run_id, worker_id) is not None
    await svc.start_run(run_id)

    outputs = {}
    steps = {}
    for job_id in jobs:
        parent = PARENTS[job_id]
        input_id = outputs[parent] if parent in outputs else run.dataclip_id
        step = await svc.start_step(run_id, job_id, input_id)
        step = await svc.complete_step(step.id, "success", output_dataclip={"job": job_id, "run": run_id})
        outputs[job_id] = step.output_dataclip_id
        steps[job_id] = step

    if finish:
        await svc.complete_run(run_id, finish)
    return steps


@pytest.fixture
def drive():
    return drive_run
