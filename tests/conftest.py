"""
Pytest configuration and fixtures for the lakehouse orchestrator tests.

Provides fake cloud collaborators (control plane, workflow executions API),
a recording sleep so no test ever waits for real, and shared retry policies.
"""

import asyncio
from collections.abc import Iterable
from typing import Any, Mapping, Optional

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from lakehouse_orchestrator.models.deployment import DeploymentContext
from lakehouse_orchestrator.models.execution import ExecutionHandle
from lakehouse_orchestrator.models.resources import ResourceKind
from lakehouse_orchestrator.services.auth_service import StaticTokenProvider
from lakehouse_orchestrator.services.config import DEFAULT_RETRY_PATTERNS, RetryPatternTable
from lakehouse_orchestrator.services.control_plane_service import GcpControlPlane
from lakehouse_orchestrator.services.errors import ResourceAlreadyExistsError
from lakehouse_orchestrator.services.gcp_client import GcpRestClient
from lakehouse_orchestrator.services.retry_service import RetryPolicy


ZONE_CAPACITY_ERROR = (
    "Error 503: The zone 'projects/p1/zones/us-central1-a' does not have enough resources available "
    "to fulfill the request.  Try a different zone, or try again later."
)
SUBNET_DRAINING_ERROR = (
    "Error 400: The subnetwork resource 'projects/p1/regions/us-central1/subnetworks/gcp-lakehouse-subnet' "
    "is already being used by 'projects/p1/zones/us-central1-a/instances/notebook'"
)


class RecordingSleep:
    """Async stand-in for asyncio.sleep that records requested durations."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeControlPlane:
    """Scriptable control plane.

    `failures[key]` is a list of exceptions raised by successive create calls
    for that resource; `existing` holds keys that answer "already exists".
    Keys are the `id` attribute when present, otherwise the identity name.
    """

    def __init__(
        self,
        *,
        failures: Optional[dict[str, list[Exception]]] = None,
        existing: Iterable[str] = (),
    ) -> None:
        self.failures = {key: list(errors) for key, errors in (failures or {}).items()}
        self.existing = set(existing)
        self.created: list[str] = []
        self.attempts: dict[str, int] = {}
        self.described: list[str] = []
        self.attributes: dict[str, dict[str, Any]] = {}

    @staticmethod
    def _identity(context: DeploymentContext, kind: ResourceKind, attributes: Mapping[str, Any]) -> dict[str, str]:
        if "id" in attributes:
            return {"name": str(attributes["id"]), "project": context.project_id}
        return GcpControlPlane._identity(context, kind, attributes)

    def _key(self, context: DeploymentContext, kind: ResourceKind, attributes: Mapping[str, Any]) -> str:
        identity = self._identity(context, kind, attributes)
        return identity.get("name") or identity.get("role", "")

    async def create(self, context: DeploymentContext, kind: ResourceKind, attributes: Mapping[str, Any]) -> dict[str, str]:
        key = self._key(context, kind, attributes)
        self.attempts[key] = self.attempts.get(key, 0) + 1
        self.attributes[key] = dict(attributes)
        pending = self.failures.get(key)
        if pending:
            raise pending.pop(0)
        if key in self.existing:
            raise ResourceAlreadyExistsError(f"Error 409: {key} already exists", status=409)
        self.created.append(key)
        return self._identity(context, kind, attributes)

    async def describe_existing(
        self, context: DeploymentContext, kind: ResourceKind, attributes: Mapping[str, Any]
    ) -> dict[str, str]:
        key = self._key(context, kind, attributes)
        self.described.append(key)
        return self._identity(context, kind, attributes)


def execution(workflow: str, state: Optional[str], *, execution_id: str = "exec-1", start: str = "2023-06-01T10:00:00Z") -> dict[str, Any]:
    body: dict[str, Any] = {
        "name": f"projects/p1/locations/r1/workflows/{workflow}/executions/{execution_id}",
        "startTime": start,
    }
    if state is not None:
        body["state"] = state
    return body


class FakeWorkflows:
    """Scripted Workflow Executions API.

    `scripts[workflow]` lists the remote states returned by successive
    list/get calls; the last entry repeats once the script is exhausted.
    A `None` entry means "no executions visible yet".
    """

    def __init__(self, scripts: Optional[dict[str, list[Optional[str]]]] = None) -> None:
        self.scripts = {name: list(states) for name, states in (scripts or {}).items()}
        self.triggered: list[tuple[str, dict[str, Any]]] = []
        self.list_calls: list[str] = []
        self.get_calls: list[str] = []
        self.described: list[str] = []
        self.trigger_failures: list[Exception] = []
        self.list_failures: list[Exception] = []
        self.events: list[str] = []

    def _next_state(self, workflow: str) -> Optional[str]:
        states = self.scripts.get(workflow) or ["SUCCEEDED"]
        return states.pop(0) if len(states) > 1 else states[0]

    async def trigger(
        self, context: DeploymentContext, workflow_name: str, parameters: Optional[Mapping[str, Any]] = None
    ) -> ExecutionHandle:
        if self.trigger_failures:
            raise self.trigger_failures.pop(0)
        self.triggered.append((workflow_name, dict(parameters or {})))
        self.events.append(f"trigger:{workflow_name}")
        return ExecutionHandle.from_execution(workflow_name=workflow_name, execution=execution(workflow_name, "ACTIVE"))

    async def list_executions(self, context: DeploymentContext, workflow_name: str) -> list[dict[str, Any]]:
        if self.list_failures:
            raise self.list_failures.pop(0)
        self.list_calls.append(workflow_name)
        self.events.append(f"poll:{workflow_name}")
        state = self._next_state(workflow_name)
        if state is None:
            return []
        return [execution(workflow_name, state)]

    async def get_execution(self, execution_name: str) -> dict[str, Any]:
        self.get_calls.append(execution_name)
        workflow = execution_name.split("/workflows/")[1].split("/")[0]
        return execution(workflow, self._next_state(workflow))

    async def describe_execution(self, execution_name: str) -> dict[str, Any]:
        self.described.append(execution_name)
        return {"name": execution_name, "state": "FAILED", "error": {"payload": "boom", "context": "step copy_raw"}}


@pytest.fixture
def context() -> DeploymentContext:
    return DeploymentContext(project_id="p1", region="r1", resource_suffix="s1", run_id="run-1")


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def retry_patterns() -> RetryPatternTable:
    """The transient-error table under test; changes to it must keep these tests green."""
    return DEFAULT_RETRY_PATTERNS


@pytest.fixture
def fast_policy(retry_patterns: RetryPatternTable) -> RetryPolicy:
    return RetryPolicy(patterns=retry_patterns, max_attempts=3, delay_seconds=1.0)


class GcpStub:
    """Catch-all aiohttp app standing in for the Google Cloud REST endpoints.

    `respond(method, path, *responses)` queues (status, body) pairs for a
    route; the last one repeats. `delay(method, path, seconds)` holds a
    route's responses back. Unrouted requests get a 404. Every request
    is recorded as a dict with method, path, query, headers and body.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], list[tuple[int, Any]]] = {}
        self.requests: list[dict[str, Any]] = []
        self.delays: dict[tuple[str, str], float] = {}
        self.base_url = ""
        self.app = web.Application()
        self.app.router.add_route("*", "/{tail:.*}", self._handle)

    def respond(self, method: str, path: str, *responses: tuple[int, Any]) -> None:
        self.routes[(method.upper(), path)] = list(responses)

    def delay(self, method: str, path: str, seconds: float) -> None:
        self.delays[(method.upper(), path)] = seconds

    def calls(self, method: str, path: str) -> list[dict[str, Any]]:
        return [r for r in self.requests if r["method"] == method.upper() and r["path"] == path]

    async def _handle(self, request: web.Request) -> web.Response:
        body = await request.read()
        self.requests.append(
            {
                "method": request.method,
                "path": request.path,
                "query": dict(request.query),
                "headers": dict(request.headers),
                "body": body,
            }
        )
        delay = self.delays.get((request.method, request.path))
        if delay:
            await asyncio.sleep(delay)
        queued = self.routes.get((request.method, request.path))
        if not queued:
            return web.json_response({"error": {"code": 404, "message": f"No route {request.path}"}}, status=404)
        status, payload = queued.pop(0) if len(queued) > 1 else queued[0]
        return web.json_response(payload, status=status)


@pytest.fixture
async def gcp_stub():
    stub = GcpStub()
    server = TestServer(stub.app)
    await server.start_server()
    stub.base_url = f"http://{server.host}:{server.port}"
    try:
        yield stub
    finally:
        await server.close()


@pytest.fixture
async def gcp_client(gcp_stub):
    async with aiohttp.ClientSession() as session:
        yield GcpRestClient(session=session, token_provider=StaticTokenProvider("test-token"), timeout_seconds=5.0)
