import asyncio
from datetime import timedelta

import pytest

from flowrun import config
from flowrun.persistence.repositories.dataclip_repository import DataclipRepository
from flowrun.service.dataclip_service import DataclipService
from flowrun.service.run_service import RunService
from flowrun.service.work_order_service import WorkOrderService
from flowrun.utils.timefmt import utcnow
from flowrun.worker import lost_run_worker, retention_worker


@pytest.mark.asyncio
async def test_lost_sweep_marks_silent_runs_and_never_retries(db_session, workflow):
    orders = WorkOrderService(db_session)
    svc = RunService(db_session)
    silent = (await orders.create_work_order(workflow.id, trigger_id="trigger-1")).run
    waiting = (await orders.create_work_order(workflow.id, trigger_id="trigger-1")).run
    await svc.claim_run(silent.id, "worker-1")

    later = utcnow() + timedelta(seconds=config.RUN_TIMEOUT_SECONDS + config.LOST_RUN_GRACE_PERIOD_SECONDS + 1)
    lost = await lost_run_worker.sweep_once(db_session, now=later)

    assert lost == [silent.id]
    assert (await svc.get_run(silent.id)).state == "lost"
    # pending runs are never swept, and no retry run is created
    assert (await svc.get_run(waiting.id)).state == "pending"
    assert len(await svc.list_runs(silent.work_order_id)) == 1

    assert await lost_run_worker.sweep_once(db_session, now=later) == []


@pytest.mark.asyncio
async def test_sweep_leaves_steps_of_a_just_lost_run_open(db_session, workflow):
    svc = RunService(db_session)
    run = (await WorkOrderService(db_session).create_work_order(workflow.id, trigger_id="trigger-1")).run
    await svc.claim_run(run.id, "worker-1")
    await svc.start_run(run.id)
    step = await svc.start_step(run.id, "job-a", run.dataclip_id)

    later = utcnow() + timedelta(seconds=config.RUN_TIMEOUT_SECONDS + config.LOST_RUN_GRACE_PERIOD_SECONDS + 1)
    assert await lost_run_worker.sweep_once(db_session, now=later) == [run.id]

    # 同一次 sweep 不会关闭刚标记为 lost 的 run 的 step
    assert (await svc.get_run(run.id)).finished_at == later
    assert (await svc.get_step(step.id)).exit_reason is None

    after_grace = later + timedelta(seconds=config.LOST_RUN_GRACE_PERIOD_SECONDS + 1)
    await lost_run_worker.sweep_once(db_session, now=after_grace)
    assert (await svc.get_step(step.id)).exit_reason == "lost"


@pytest.mark.asyncio
async def test_lost_loop_runs_until_cancelled(session_factory, workflow):
    async def factory():
        async with session_factory() as session:
            yield session

    task = asyncio.create_task(lost_run_worker.run_lost_run_loop(session_factory=factory, interval_seconds=0.01))
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.asyncio
async def test_retention_sweep_wipes_expired_dataclips(db_session, workflow_service, project):
    repo = DataclipRepository(db_session)
    service = DataclipService(repo)
    old = await service.create_dataclip(project.id, {"pii": "x"}, "http_request")
    old.inserted_at = utcnow() - timedelta(days=40)
    await repo.update(old)

    assert await retention_worker.sweep_once(db_session) == {}

    await workflow_service.update_project(project.id, dataclip_retention_period=30)
    assert await retention_worker.sweep_once(db_session) == {project.id: 1}
    assert (await repo.reload(old.id)).body is None
