import pytest
from fastapi.testclient import TestClient

from flowrun.main import app
from flowrun.persistence.database import get_db_session


@pytest.fixture
def client(session_factory):
    async def override_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_session
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def seeded(client, graph_definition):
    project = client.post("/projects", json={"name": "acme"})
    assert project.status_code == 201
    workflow = client.post("/workflows", json={
        "project_id": project.json()["id"],
        "name": "orders",
        "definition": graph_definition.model_dump(mode="json"),
    })
    assert workflow.status_code == 201
    return project.json(), workflow.json()


def enqueue(client, workflow_id, **extra):
    body = {"workflow_id": workflow_id, "trigger_id": "trigger-1", "dataclip": {"order": 1}}
    body.update(extra)
    response = client.post("/work_orders", json=body)
    assert response.status_code == 201, response.text
    return response.json()


def test_worker_protocol_happy_path(client, seeded):
    _, workflow = seeded
    created = enqueue(client, workflow["id"], request={"method": "POST"})
    assert created["admitted"] is True
    assert created["run"]["state"] == "pending"
    run_id = created["run"]["id"]

    claimed = client.post("/runs/claim", json={"worker_id": "worker-1", "demand": 5}).json()
    assert [r["id"] for r in claimed["runs"]] == [run_id]

    run = client.post(f"/runs/{run_id}/start").json()
    assert run["state"] == "running"

    payload = client.get(f"/runs/{run_id}/input").json()
    assert payload["input"] == {"data": {"order": 1}, "request": {"method": "POST"}}

    step = client.post(f"/runs/{run_id}/steps", json={"job_id": "job-a", "input_dataclip_id": run["dataclip_id"]})
    assert step.status_code == 201
    assert step.json()["state"] == "running"
    step_id = step.json()["id"]

    logs = client.post(f"/runs/{run_id}/logs", json={"lines": [
        {"message": "fetching orders", "step_id": step_id, "source": "JOB"},
        {"message": {"count": 3}, "level": "success"},
    ]})
    assert logs.status_code == 201
    assert [l["message"] for l in logs.json()] == ["fetching orders", '{"count": 3}']

    finished = client.post(f"/steps/{step_id}/complete", json={"exit_reason": "success", "output_dataclip": {"ok": True}})
    assert finished.json()["exit_reason"] == "success"
    assert finished.json()["state"] == "success"
    output = client.get(f"/dataclips/{finished.json()['output_dataclip_id']}").json()
    assert output["body"] == {"ok": True}
    assert output["type"] == "step_result"

    done = client.post(f"/runs/{run_id}/complete", json={"exit_reason": "success"})
    assert done.json()["state"] == "success"

    work_order = client.get(f"/work_orders/{created['work_order']['id']}").json()
    assert work_order["state"] == "success"
    assert [r["id"] for r in work_order["runs"]] == [run_id]

    assert [l["message"] for l in client.get(f"/runs/{run_id}/logs").json()] == ["fetching orders", '{"count": 3}']
    assert len(client.get(f"/runs/{run_id}/steps").json()) == 1

    again = client.post(f"/runs/{run_id}/complete", json={"exit_reason": "fail"})
    assert again.status_code == 409
    assert again.json()["error"] == "AlreadyTerminal"


def test_rerun_and_wiped_input(client, seeded):
    project, workflow = seeded
    run_id = enqueue(client, workflow["id"])["run"]["id"]
    client.post("/runs/claim", json={"worker_id": "worker-1", "run_id": run_id})
    run = client.post(f"/runs/{run_id}/start").json()
    step = client.post(f"/runs/{run_id}/steps", json={"job_id": "job-a", "input_dataclip_id": run["dataclip_id"]}).json()
    client.post(f"/steps/{step['id']}/complete", json={"exit_reason": "fail", "error_type": "HTTPError"})
    failed = client.post(f"/runs/{run_id}/complete", json={"exit_reason": "fail", "error_type": "HTTPError"}).json()
    assert failed["error_type"] == "HTTPError"

    eligibility = client.get(f"/runs/{run_id}/rerun_eligibility", params={"job_id": "job-a"}).json()
    assert eligibility["eligible"] is True

    rerun = client.post(f"/runs/{run_id}/rerun", json={"job_id": "job-a", "created_by": "alice"})
    assert rerun.status_code == 201
    assert rerun.json()["parent_run_id"] == run_id
    assert rerun.json()["priority"] == 0

    wiped = client.post(f"/dataclips/{run['dataclip_id']}/wipe").json()
    assert wiped["body"] is None and wiped["wiped_at"] is not None

    refused = client.post(f"/runs/{run_id}/rerun", json={"job_id": "job-a"})
    assert refused.status_code == 422
    assert refused.json()["reason"] == "input_wiped"

    eligibility = client.get(
        f"/runs/{run_id}/rerun_eligibility",
        params={"job_id": "job-a", "can_edit_data_retention": True},
    ).json()
    assert eligibility["eligible"] is False
    assert eligibility["settings_path"] == f"/projects/{project['id']}/settings#data-storage"

    bulk = client.post("/work_orders/rerun", json={"work_order_ids": [failed["work_order_id"]], "job_id": "job-a"}).json()
    assert bulk["enqueued"] == []
    # the latest run of the work order is the rerun, which never ran job-a
    assert bulk["skipped"] == [{"work_order_id": failed["work_order_id"], "reason": "no_step"}]


def test_concurrency_is_reported_and_enforced(client, seeded, graph_definition):
    project, workflow = seeded
    updated = client.put(f"/workflows/{workflow['id']}", json={
        "project_id": project["id"],
        "name": "orders",
        "definition": graph_definition.model_dump(mode="json"),
        "concurrency": 1,
    }).json()
    assert updated["lock_version"] == 1

    setting = client.get(f"/workflows/{workflow['id']}/concurrency").json()
    assert setting["parallelism_disabled"] is True
    assert setting["notice"] == "Runs of this workflow are processed one at a time."

    first = enqueue(client, workflow["id"])["run"]["id"]
    client.post("/runs/claim", json={"worker_id": "worker-1"})
    second = enqueue(client, workflow["id"])
    assert second["admitted"] is False
    assert "concurrency limit" in second["queued_reason"]

    queued = client.post("/runs/claim", json={"worker_id": "worker-2", "run_id": second["run"]["id"]}).json()
    assert queued == {"runs": [], "queued": True}

    conflict = client.post("/runs/claim", json={"worker_id": "worker-2", "run_id": first})
    assert conflict.status_code == 409
    assert conflict.json()["error"] == "ClaimConflict"

    killed = client.post(f"/runs/{first}/kill").json()
    assert killed["state"] == "killed"
    claimed = client.post("/runs/claim", json={"worker_id": "worker-2"}).json()
    assert [r["id"] for r in claimed["runs"]] == [second["run"]["id"]]


def test_error_mapping(client, seeded):
    _, workflow = seeded

    missing = client.get("/runs/does-not-exist")
    assert missing.status_code == 404
    assert missing.json()["error"] == "NotFoundError"

    bad_trigger = client.post("/work_orders", json={"workflow_id": workflow["id"], "trigger_id": "nope"})
    assert bad_trigger.status_code == 422
    assert bad_trigger.json()["field"] == "trigger_id"

    run_id = enqueue(client, workflow["id"])["run"]["id"]
    early = client.post(f"/runs/{run_id}/start")
    assert early.status_code == 409
    assert early.json()["error"] == "InvalidStateTransition"

    assert client.get(f"/workflows/{workflow['id']}/snapshots").json()[0]["lock_version"] == 1
    assert client.get("/projects/does-not-exist").status_code == 404


def test_metrics_endpoint(client, seeded):
    _, workflow = seeded
    enqueue(client, workflow["id"])
    client.post("/runs/claim", json={"worker_id": "worker-1"})

    response = client.get("/metrics")
    assert response.status_code == 200
    assert "runs_claimed_total" in response.text
