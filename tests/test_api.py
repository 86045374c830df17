import asyncio
import time

import pytest
from fastapi.testclient import TestClient

from lakehouse_orchestrator.main import app
from lakehouse_orchestrator.services.completion_poller import CompletionPoller
from lakehouse_orchestrator.services.config import LAKEHOUSE_WORKFLOWS, lakehouse_resource_specs
from lakehouse_orchestrator.services.dependencies import get_orchestrator_factory, get_workflows_service
from lakehouse_orchestrator.services.deployment_orchestrator import DeploymentOrchestrator
from lakehouse_orchestrator.services.readiness_gate import ReadinessGate
from lakehouse_orchestrator.services.retry_service import RetryPolicy
from lakehouse_orchestrator.services.setup.resource_provisioner import ResourceProvisioner

from conftest import FakeControlPlane, FakeWorkflows, RecordingSleep, execution


class _LatestExecutions:
    def __init__(self, executions):
        self.executions = executions
        self.contexts = []

    async def list_executions(self, context, workflow_name, *, page_size=20):
        self.contexts.append(context)
        return list(self.executions)


def _factory(scripts, *, poll_sleep=None):
    def build(config):
        sleep = RecordingSleep()
        workflows = FakeWorkflows(scripts)
        policy = RetryPolicy(max_attempts=2, delay_seconds=0.0)
        gate = ReadinessGate(sleep=sleep)
        return DeploymentOrchestrator(
            config=config,
            provisioner=ResourceProvisioner(
                control_plane=FakeControlPlane(), gate=gate, retry_policy=policy, show_progress=False, sleep=sleep
            ),
            gate=gate,
            trigger=workflows,
            poller=CompletionPoller(executions=workflows, retry_policy=policy, sleep=poll_sleep or sleep),
            retry_policy=policy,
            resource_specs=lakehouse_resource_specs,
            workflows=LAKEHOUSE_WORKFLOWS,
            sleep=sleep,
        )

    return build


def _wait_until(client, run_id, predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/deployments/{run_id}").json()
        if predicate(body) or time.monotonic() > deadline:
            return body
        time.sleep(0.02)


def _wait_for(client, run_id, *statuses):
    return _wait_until(client, run_id, lambda body: body["status"] in statuses)


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setenv("GCP_PROJECT_ID", "p1")
    monkeypatch.setenv("GCP_REGION", "r1")
    monkeypatch.setenv("RESOURCE_SUFFIX", "s1")
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_root(client):
    assert client.get("/").status_code == 200


def test_deployment_runs_to_success(client):
    app.dependency_overrides[get_orchestrator_factory] = lambda: _factory({"copy-data": ["ACTIVE", "SUCCEEDED"]})

    resp = client.post("/deployments", json={})
    assert resp.status_code == 202
    started = resp.json()
    assert started["status"] == "running"
    assert started["project_id"] == "p1"

    finished = _wait_for(client, started["run_id"], "succeeded", "failed")
    assert finished["status"] == "succeeded"
    assert finished["completed_stages"][0] == "provision"
    assert finished["completed_stages"][-1] == "settle"
    assert finished["finished_at"] is not None
    assert [run["run_id"] for run in client.get("/deployments").json()] == [started["run_id"]]


def test_failed_workflow_reports_stage(client):
    app.dependency_overrides[get_orchestrator_factory] = lambda: _factory({"copy-data": ["FAILED"]})

    run_id = client.post("/deployments", json={}).json()["run_id"]
    finished = _wait_for(client, run_id, "failed", "succeeded")

    assert finished["status"] == "failed"
    assert "poll:copy-data" in finished["error"]


def test_poll_timeout_is_inconclusive(client, monkeypatch):
    monkeypatch.setenv("POLL_MAX_ATTEMPTS", "2")
    app.dependency_overrides[get_orchestrator_factory] = lambda: _factory({"copy-data": ["QUEUED"]})

    run_id = client.post("/deployments", json={}).json()["run_id"]

    assert _wait_for(client, run_id, "inconclusive", "failed")["status"] == "inconclusive"


def test_abort_stops_a_running_deployment(client):
    # Real sleeps between polls keep the run parked in poll:copy-data.
    app.dependency_overrides[get_orchestrator_factory] = lambda: _factory({"copy-data": ["QUEUED"]}, poll_sleep=asyncio.sleep)

    run_id = client.post("/deployments", json={}).json()["run_id"]
    assert _wait_until(client, run_id, lambda body: body["stage"] == "poll:copy-data")["status"] == "running"
    resp = client.post(f"/deployments/{run_id}/abort")

    assert resp.status_code == 200
    assert _wait_for(client, run_id, "aborted")["status"] == "aborted"


def test_missing_project_is_bad_request(client, monkeypatch):
    monkeypatch.delenv("GCP_PROJECT_ID")
    monkeypatch.delenv("GOOGLE_CLOUD_PROJECT", raising=False)
    app.dependency_overrides[get_orchestrator_factory] = lambda: _factory({})

    resp = client.post("/deployments", json={})

    assert resp.status_code == 400
    assert "GCP_PROJECT_ID" in resp.json()["detail"]


def test_unknown_run_is_404(client):
    assert client.get("/deployments/nope").status_code == 404
    assert client.post("/deployments/nope/abort").status_code == 404


def test_latest_execution_maps_remote_state(client):
    svc = _LatestExecutions([execution("copy-data", "ACTIVE")])
    app.dependency_overrides[get_workflows_service] = lambda: svc

    resp = client.get("/workflows/copy-data/executions/latest", params={"project_id": "other"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["state"] == "RUNNING"
    assert body["remote_state"] == "ACTIVE"
    assert body["execution_name"].endswith("/executions/exec-1")
    assert svc.contexts[0].project_id == "other"


def test_latest_execution_without_runs_is_pending(client):
    app.dependency_overrides[get_workflows_service] = lambda: _LatestExecutions([])

    body = client.get("/workflows/copy-data/executions/latest").json()

    assert body["state"] == "PENDING"
    assert body["execution_name"] is None


def test_shutdown_waits_for_cancelled_runs(monkeypatch):
    monkeypatch.setenv("GCP_PROJECT_ID", "p1")
    monkeypatch.setenv("GCP_REGION", "r1")
    app.dependency_overrides[get_orchestrator_factory] = lambda: _factory({"copy-data": ["QUEUED"]}, poll_sleep=asyncio.sleep)
    try:
        with TestClient(app) as test_client:
            run_id = test_client.post("/deployments", json={}).json()["run_id"]
            _wait_until(test_client, run_id, lambda body: body["stage"] == "poll:copy-data")
    finally:
        app.dependency_overrides.clear()

    run = app.state.run_registry.get(run_id)
    assert run.task.done()
    assert run.status.value == "aborted"
    assert run.finished_at is not None
