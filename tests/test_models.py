"""Tests for execution state, resource specs and parameter templating."""

from datetime import datetime, timezone

import pytest

from lakehouse_orchestrator.models.deployment import DeploymentContext
from lakehouse_orchestrator.models.execution import ExecutionHandle, ExecutionState, parse_timestamp
from lakehouse_orchestrator.models.resources import RealizedResource, ResourceKind, ResourceRegistry, ResourceSpec
from lakehouse_orchestrator.services import templating
from lakehouse_orchestrator.services.errors import ResourceDependencyError


@pytest.mark.parametrize(
    "remote, expected",
    [
        ("ACTIVE", ExecutionState.RUNNING),
        ("SUCCEEDED", ExecutionState.SUCCEEDED),
        ("FAILED", ExecutionState.FAILED),
        ("CANCELLED", ExecutionState.FAILED),
        ("QUEUED", ExecutionState.PENDING),
        ("STATE_UNSPECIFIED", ExecutionState.PENDING),
        (None, ExecutionState.PENDING),
        ("active", ExecutionState.RUNNING),
    ],
)
def test_remote_state_mapping(remote, expected):
    assert ExecutionState.from_remote(remote) is expected


def test_state_is_monotonic():
    assert ExecutionState.PENDING.advance(ExecutionState.RUNNING) is ExecutionState.RUNNING
    assert ExecutionState.RUNNING.advance(ExecutionState.PENDING) is ExecutionState.RUNNING
    assert ExecutionState.RUNNING.advance(ExecutionState.SUCCEEDED) is ExecutionState.SUCCEEDED
    assert ExecutionState.PENDING.advance(ExecutionState.FAILED) is ExecutionState.FAILED


@pytest.mark.parametrize("terminal", [ExecutionState.SUCCEEDED, ExecutionState.FAILED])
def test_terminal_states_are_immutable(terminal):
    for other in ExecutionState:
        assert terminal.advance(other) is terminal
    assert terminal.is_terminal


def test_handle_from_execution():
    handle = ExecutionHandle.from_execution(
        workflow_name="copy-data",
        execution={
            "name": "projects/p1/locations/r1/workflows/copy-data/executions/3f1c",
            "startTime": "2023-06-01T10:00:00.123456789Z",
        },
    )
    assert handle.execution_id == "3f1c"
    assert handle.start_time == datetime(2023, 6, 1, 10, 0, 0, 123456, tzinfo=timezone.utc)


@pytest.mark.parametrize("raw", [None, "", "not a date", 42])
def test_parse_timestamp_tolerates_garbage(raw):
    assert parse_timestamp(raw) is None


def test_parse_timestamp_short_fraction():
    assert parse_timestamp("2023-06-01T10:00:00.5Z") == datetime(2023, 6, 1, 10, 0, 0, 500000, tzinfo=timezone.utc)


def test_resource_spec_is_immutable():
    attributes = {"bucket": "b1"}
    spec = ResourceSpec(kind=ResourceKind.STORAGE_BUCKET, name="bucket", attributes=attributes)
    attributes["bucket"] = "changed"

    assert spec.attributes["bucket"] == "b1"
    with pytest.raises(TypeError):
        spec.attributes["bucket"] = "b2"  # type: ignore[index]


def test_resource_spec_requires_name():
    with pytest.raises(ValueError):
        ResourceSpec(kind=ResourceKind.NETWORK, name=" ")


def test_context_requires_project_and_region():
    with pytest.raises(ValueError):
        DeploymentContext(project_id="", region="r1")
    with pytest.raises(ValueError):
        DeploymentContext(project_id="p1", region="")
    assert DeploymentContext(project_id="p1", region="r1").run_id != DeploymentContext(project_id="p1", region="r1").run_id


def _registry() -> ResourceRegistry:
    registry = ResourceRegistry()
    registry.record(
        RealizedResource(
            spec=ResourceSpec(kind=ResourceKind.STORAGE_BUCKET, name="raw-bucket"),
            identity={"name": "gcp-lakehouse-raw", "url": "gs://gcp-lakehouse-raw"},
        )
    )
    return registry


def test_render_substitutes_nested_references():
    rendered = templating.render(
        {"bucket": "${raw-bucket.name}", "paths": ["${raw-bucket.url}/a", "plain"], "count": 3},
        _registry(),
    )
    assert rendered == {"bucket": "gcp-lakehouse-raw", "paths": ["gs://gcp-lakehouse-raw/a", "plain"], "count": 3}


def test_references_collects_names():
    assert templating.references({"a": "${x.name}", "b": ["${y.url}-${x.email}"], "c": 1}) == {"x", "y"}


def test_render_unknown_resource_is_a_dependency_error():
    with pytest.raises(ResourceDependencyError):
        templating.render({"bucket": "${missing.name}"}, _registry())


def test_render_unknown_attribute_is_a_dependency_error():
    with pytest.raises(ResourceDependencyError):
        templating.render("${raw-bucket.email}", _registry())
