import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio

from flowrun import config
from flowrun.domain.errors import (
    AlreadyTerminal,
    ClaimConflict,
    InvalidStateTransition,
    NotFoundError,
    ValidationFailed,
)
from flowrun.events.eventbus_model import EventType
from flowrun.events.in_memory_eventbus import event_bus
from flowrun.persistence.repositories.dataclip_repository import DataclipRepository
from flowrun.service.run_service import RunService
from flowrun.service.work_order_service import WorkOrderService
from flowrun.utils.timefmt import utcnow


@pytest_asyncio.fixture
async def created(db_session, workflow):
    return await WorkOrderService(db_session).create_work_order(
        workflow.id,
        trigger_id="trigger-1",
        dataclip={"order": 42},
        request={"method": "POST", "path": "/i/orders"},
    )


@pytest.mark.asyncio
async def test_happy_path_lifecycle(db_session, created):
    svc = RunService(db_session)
    run_id = created.run.id

    claimed = await svc.claim("worker-1")
    assert [r.id for r in claimed] == [run_id]
    assert claimed[0].worker_name == "worker-1"
    assert (await svc.work_orders.get_work_order(created.work_order.id)).state == "running"

    run = await svc.start_run(run_id)
    assert run.state == "running" and run.started_at is not None

    step = await svc.start_step(run_id, "job-a", run.dataclip_id)
    step = await svc.complete_step(step.id, "success", output_dataclip={"rows": 1})
    assert step.exit_reason == "success"
    assert (await DataclipRepository(db_session).get_by_id(step.output_dataclip_id)).type == "step_result"

    run = await svc.complete_run(run_id, "success")
    assert run.state == "success"
    assert run.finished_at is not None

    work_order = await svc.work_orders.get_work_order(created.work_order.id)
    assert work_order.state == "success"
    assert [s.id for s in await svc.list_steps(run_id)] == [step.id]

    states = [e.state for e in event_bus.get_event_log() if e.event_type == EventType.RunStateChanged]
    assert states == ["pending", "claimed", "running", "success"]


@pytest.mark.asyncio
async def test_concurrent_claims_of_one_run_have_a_single_winner(session_factory, created):
    async def attempt(worker_id):
        async with session_factory() as session:
            return await RunService(session).claim_run(created.run.id, worker_id)

    results = await asyncio.gather(*(attempt(f"worker-{i}") for i in range(6)), return_exceptions=True)

    winners = [r for r in results if not isinstance(r, Exception)]
    conflicts = [r for r in results if isinstance(r, ClaimConflict)]
    assert len(winners) == 1
    assert len(conflicts) == 5
    assert winners[0].state == "claimed"


@pytest.mark.asyncio
async def test_concurrent_polling_claims_hand_out_the_run_once(session_factory, created):
    async def poll(worker_id):
        async with session_factory() as session:
            return await RunService(session).claim(worker_id)

    results = await asyncio.gather(*(poll(f"worker-{i}") for i in range(4)))

    assert sorted(len(r) for r in results) == [0, 0, 0, 1]


@pytest.mark.asyncio
async def test_start_requires_claimed(db_session, created):
    svc = RunService(db_session)
    with pytest.raises(InvalidStateTransition):
        await svc.start_run(created.run.id)
    with pytest.raises(NotFoundError):
        await svc.start_run("missing")


@pytest.mark.asyncio
async def test_terminal_run_rejects_second_completion(db_session, created, drive):
    await drive(db_session, created.run.id, ("job-a",), finish="fail")
    svc = RunService(db_session)

    with pytest.raises(AlreadyTerminal):
        await svc.complete_run(created.run.id, "success")

    run = await svc.get_run(created.run.id)
    assert run.state == "failed"
    assert run.exit_reason == "fail"


@pytest.mark.asyncio
async def test_error_type_is_kept_only_for_failed(db_session, workflow):
    orders = WorkOrderService(db_session)
    svc = RunService(db_session)

    failed = (await orders.create_work_order(workflow.id, trigger_id="trigger-1")).run
    crashed = (await orders.create_work_order(workflow.id, trigger_id="trigger-1")).run
    for run in (failed, crashed):
        await svc.claim_run(run.id, "worker-1")
        await svc.start_run(run.id)

    assert (await svc.complete_run(failed.id, "fail", "RuntimeError")).error_type == "RuntimeError"
    assert (await svc.complete_run(crashed.id, "crash", "OOM")).error_type is None


@pytest.mark.asyncio
async def test_claimed_run_cannot_succeed_without_starting(db_session, created):
    svc = RunService(db_session)
    await svc.claim_run(created.run.id, "worker-1")

    with pytest.raises(InvalidStateTransition):
        await svc.complete_run(created.run.id, "success")

    run = await svc.complete_run(created.run.id, "crash")
    assert run.state == "crashed"


@pytest.mark.asyncio
async def test_pending_run_cannot_complete_but_can_be_killed(db_session, created):
    svc = RunService(db_session)
    with pytest.raises(InvalidStateTransition):
        await svc.complete_run(created.run.id, "fail")

    run = await svc.kill(created.run.id)
    assert run.state == "killed"
    with pytest.raises(AlreadyTerminal):
        await svc.kill(created.run.id)
    with pytest.raises(ClaimConflict):
        await svc.claim_run(created.run.id, "worker-1")


@pytest.mark.asyncio
async def test_lost_run_ignores_late_completion(db_session, created):
    svc = RunService(db_session)
    await svc.claim_run(created.run.id, "worker-1")
    run = await svc.start_run(created.run.id)
    step = await svc.start_step(run.id, "job-a", run.dataclip_id)

    later = utcnow() + timedelta(seconds=config.RUN_TIMEOUT_SECONDS + config.LOST_RUN_GRACE_PERIOD_SECONDS + 5)
    assert await svc.sweep_lost_runs(now=later) == [run.id]

    lost = await svc.get_run(run.id)
    assert lost.state == "lost"
    assert lost.error_type is None
    assert (await svc.work_orders.get_work_order(created.work_order.id)).state == "lost"

    # late reports from the orphaned worker
    late_step = await svc.complete_step(step.id, "success", output_dataclip={"late": True})
    assert late_step.exit_reason == "success"
    assert (await svc.complete_run(run.id, "success")).state == "lost"
    assert (await svc.get_run(run.id)).state == "lost"


@pytest.mark.asyncio
async def test_sweep_spares_runs_with_recent_activity(db_session, workflow):
    svc = RunService(db_session)
    run = (await WorkOrderService(db_session).create_work_order(
        workflow.id, trigger_id="trigger-1", run_timeout_seconds=30,
    )).run
    await svc.claim_run(run.id, "worker-1")

    assert await svc.sweep_lost_runs(now=utcnow() + timedelta(seconds=10)) == []

    heartbeat = await svc.heartbeat(run.id)
    assert heartbeat.state == "claimed"

    overdue = utcnow() + timedelta(seconds=30 + config.LOST_RUN_GRACE_PERIOD_SECONDS + 1)
    assert await svc.sweep_lost_runs(now=overdue) == [run.id]
    # 终态 run 的心跳原样返回
    assert (await svc.heartbeat(run.id)).state == "lost"


@pytest.mark.asyncio
async def test_orphaned_steps_are_closed_after_grace(db_session, created):
    svc = RunService(db_session)
    await svc.claim_run(created.run.id, "worker-1")
    run = await svc.start_run(created.run.id)
    step = await svc.start_step(run.id, "job-a", run.dataclip_id)
    await svc.kill(run.id)

    assert await svc.sweep_orphaned_steps() == 0

    later = utcnow() + timedelta(seconds=config.LOST_RUN_GRACE_PERIOD_SECONDS + 5)
    assert await svc.sweep_orphaned_steps(now=later) == 1
    assert (await svc.get_step(step.id)).exit_reason == "lost"


@pytest.mark.asyncio
async def test_start_step_validations(db_session, created):
    svc = RunService(db_session)
    await svc.claim_run(created.run.id, "worker-1")
    with pytest.raises(InvalidStateTransition):
        await svc.start_step(created.run.id, "job-a", created.run.dataclip_id)

    await svc.start_run(created.run.id)
    with pytest.raises(ValidationFailed):
        await svc.start_step(created.run.id, "job-zzz", created.run.dataclip_id)
    with pytest.raises(NotFoundError):
        await svc.start_step(created.run.id, "job-a", "missing-clip")


@pytest.mark.asyncio
async def test_completing_a_step_twice_keeps_the_first_result(db_session, created):
    svc = RunService(db_session)
    await svc.claim_run(created.run.id, "worker-1")
    run = await svc.start_run(created.run.id)
    step = await svc.start_step(run.id, "job-a", run.dataclip_id)

    await svc.complete_step(step.id, "fail", error_type="HTTPError")
    again = await svc.complete_step(step.id, "success")

    assert again.exit_reason == "fail"
    assert again.error_type == "HTTPError"


@pytest.mark.asyncio
async def test_fetch_input_shapes_the_request(db_session, created):
    svc = RunService(db_session)
    payload = await svc.fetch_input(created.run.id)
    assert payload == {"data": {"order": 42}, "request": {"method": "POST", "path": "/i/orders"}}


@pytest.mark.asyncio
async def test_erase_all_wipes_input_once_served(db_session, workflow_service, project, created):
    await workflow_service.update_project(project.id, retention_policy="erase_all")
    svc = RunService(db_session)

    assert await svc.fetch_input(created.run.id) is not None
    clip = await DataclipRepository(db_session).reload(created.run.dataclip_id)
    assert clip.wiped_at is not None
    assert await svc.fetch_input(created.run.id) is None
