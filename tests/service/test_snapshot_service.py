import asyncio

import pytest

from flowrun.domain.errors import NotFoundError
from flowrun.domain.graph_model import GraphDefinition
from flowrun.persistence.repositories.snapshot_repository import SnapshotRepository
from flowrun.service.snapshot_service import SnapshotService, definition_of
from flowrun.service.work_order_service import WorkOrderService


@pytest.mark.asyncio
async def test_get_or_create_is_idempotent_per_version(db_session, workflow):
    service = SnapshotService(SnapshotRepository(db_session))

    first = await service.get_or_create_snapshot(workflow.id)
    second = await service.get_or_create_snapshot(workflow.id)

    assert first.id == second.id
    assert first.lock_version == workflow.lock_version == 1
    assert definition_of(first).job("job-c").name == "load"


@pytest.mark.asyncio
async def test_concurrent_creation_yields_one_snapshot(session_factory, db_session, workflow):
    async def create():
        async with session_factory() as session:
            snapshot = await SnapshotService(SnapshotRepository(session)).get_or_create_snapshot(workflow.id)
            return snapshot.id

    ids = await asyncio.gather(*(create() for _ in range(5)))

    assert len(set(ids)) == 1
    assert len(await SnapshotService(SnapshotRepository(db_session)).list_snapshots(workflow.id)) == 1


@pytest.mark.asyncio
async def test_editing_the_workflow_pins_new_runs_to_a_new_snapshot(db_session, workflow_service, workflow, graph_definition):
    orders = WorkOrderService(db_session)
    before = await orders.create_work_order(workflow.id, trigger_id="trigger-1", dataclip={"v": 1})

    graph = graph_definition.model_dump(mode="json")
    graph["jobs"] = graph["jobs"] + [{"id": "job-e", "name": "audit", "adaptor": "@openfn/language-common@latest"}]
    graph["edges"] = graph["edges"] + [{"id": "e5", "source": "job-c", "target": "job-e"}]
    updated = await workflow_service.save_workflow(
        project_id=workflow.project_id,
        workflow_id=workflow.id,
        name="orders",
        definition=GraphDefinition.model_validate(graph),
    )
    assert updated.lock_version == 2

    after = await orders.create_work_order(workflow.id, trigger_id="trigger-1", dataclip={"v": 2})

    assert before.run.snapshot_id != after.run.snapshot_id
    service = SnapshotService(SnapshotRepository(db_session))
    old = await service.get_snapshot(before.run.snapshot_id)
    new = await service.get_snapshot(after.run.snapshot_id)
    # 旧 snapshot 不受编辑影响
    assert definition_of(old).job("job-e") is None
    assert definition_of(new).job("job-e") is not None
    assert (await service.graph_for(new.id)).upstream_of("job-e") == {"job-a", "job-b", "job-c", "job-d"}


@pytest.mark.asyncio
async def test_settings_change_does_not_bump_lock_version(workflow_service, workflow, graph_definition):
    updated = await workflow_service.save_workflow(
        project_id=workflow.project_id,
        workflow_id=workflow.id,
        name="orders",
        definition=graph_definition,
        concurrency=2,
    )
    assert updated.lock_version == 1
    assert updated.concurrency == 2


@pytest.mark.asyncio
async def test_unknown_workflow(db_session):
    service = SnapshotService(SnapshotRepository(db_session))
    with pytest.raises(NotFoundError):
        await service.get_or_create_snapshot("missing")
    with pytest.raises(NotFoundError):
        await service.get_snapshot("missing")
