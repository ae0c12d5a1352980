from datetime import datetime, timedelta

import pytest
import pytest_asyncio

from flowrun.domain.errors import NotFoundError, ValidationFailed
from flowrun.events.eventbus_model import EventType, run_topic
from flowrun.events.in_memory_eventbus import event_bus
from flowrun.service.log_service import LogEntry, LogService
from flowrun.service.run_service import RunService
from flowrun.service.work_order_service import WorkOrderService


@pytest_asyncio.fixture
async def running(db_session, workflow):
    svc = RunService(db_session)
    created = await WorkOrderService(db_session).create_work_order(workflow.id, trigger_id="trigger-1")
    await svc.claim_run(created.run.id, "worker-1")
    run = await svc.start_run(created.run.id)
    step = await svc.start_step(run.id, "job-a", run.dataclip_id)
    return run, step


@pytest.mark.asyncio
async def test_logs_are_ordered_by_append_not_timestamp(db_session, running):
    run, step = running
    service = LogService(db_session)
    base = datetime(2024, 1, 1, 12, 0, 0)

    subscription = event_bus.open_subscription(run_topic(run.id))
    try:
        # 时间戳故意倒序
        for i, offset in enumerate([30, 20, 10]):
            await service.append_log(run.id, f"line {i}", timestamp=base + timedelta(seconds=offset), step_id=step.id)

        lines = await service.list_logs(run.id)
        assert [l.message for l in lines] == ["line 0", "line 1", "line 2"]
        assert lines[0].timestamp > lines[2].timestamp

        observed = [e.attributes["message"] for e in subscription.drain() if e.event_type == EventType.LogAppended]
        assert observed == ["line 0", "line 1", "line 2"]
    finally:
        event_bus.close_subscription(subscription)


@pytest.mark.asyncio
async def test_batch_append_is_all_or_nothing(db_session, running):
    run, step = running
    service = LogService(db_session)

    with pytest.raises(ValidationFailed):
        await service.append_logs(run.id, [
            LogEntry(message="ok", step_id=step.id),
            LogEntry(message="bad", level="shout"),
        ])
    assert await service.list_logs(run.id) == []

    lines = await service.append_logs(run.id, [
        LogEntry(message={"rows": 3}, step_id=step.id, source="R/T"),
        LogEntry(message="done", level="success"),
    ])
    assert [l.message for l in lines] == ['{"rows": 3}', "done"]
    assert [l.id for l in await service.list_logs(run.id, step_id=step.id)] == [lines[0].id]
    assert [l.id for l in await service.list_logs(run.id, after_id=lines[0].id)] == [lines[1].id]


@pytest.mark.asyncio
async def test_step_must_belong_to_the_run(db_session, workflow, running):
    _, step = running
    other = (await WorkOrderService(db_session).create_work_order(workflow.id, trigger_id="trigger-1")).run

    with pytest.raises(ValidationFailed):
        await LogService(db_session).append_log(other.id, "stray", step_id=step.id)
    with pytest.raises(NotFoundError):
        await LogService(db_session).append_log("missing", "stray")


@pytest.mark.asyncio
async def test_job_logs_can_be_disabled(db_session, workflow_service, workflow, graph_definition, running):
    run, step = running
    await workflow_service.save_workflow(
        project_id=workflow.project_id,
        workflow_id=workflow.id,
        name=workflow.name,
        definition=graph_definition,
        enable_job_logs=False,
    )
    service = LogService(db_session)

    assert await service.append_log(run.id, "from the job", step_id=step.id) is None
    kept = await service.append_log(run.id, "from the worker", source="RTE")

    assert [l.id for l in await service.list_logs(run.id)] == [kept.id]


@pytest.mark.asyncio
async def test_appending_refreshes_run_activity(db_session, running):
    run, _ = running
    before = (await RunService(db_session).get_run(run.id)).last_activity_at

    await LogService(db_session).append_log(run.id, "still alive")

    after = (await RunService(db_session).get_run(run.id)).last_activity_at
    assert after >= before
