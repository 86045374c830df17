"""Tests for polling workflow executions to a terminal state."""

import pytest

from lakehouse_orchestrator.models.deployment import DeploymentContext
from lakehouse_orchestrator.models.execution import ExecutionHandle, ExecutionState, PollOutcome
from lakehouse_orchestrator.services.completion_poller import CompletionPoller, ExecutionLookup
from lakehouse_orchestrator.services.errors import GcpApiError

from conftest import SUBNET_DRAINING_ERROR, FakeWorkflows, RecordingSleep, execution


def _handle(workflow="copy-data"):
    return ExecutionHandle.from_execution(workflow_name=workflow, execution=execution(workflow, "ACTIVE"))


def _poller(workflows, policy, sleep, lookup=ExecutionLookup.MOST_RECENT):
    return CompletionPoller(executions=workflows, retry_policy=policy, lookup=lookup, sleep=sleep)


@pytest.mark.asyncio
async def test_pending_pending_succeeded(context, fast_policy):
    sleep = RecordingSleep()
    workflows = FakeWorkflows({"copy-data": ["QUEUED", "QUEUED", "SUCCEEDED"]})

    result = await _poller(workflows, fast_policy, sleep).await_completion(
        context, _handle(), interval_seconds=5.0, max_attempts=150
    )

    assert result.outcome is PollOutcome.SUCCEEDED
    assert result.succeeded
    assert result.attempts == 3
    assert len(workflows.list_calls) == 3
    assert sleep.calls == [5.0, 5.0]


@pytest.mark.asyncio
async def test_running_failed_stops_without_retry(context, fast_policy):
    sleep = RecordingSleep()
    workflows = FakeWorkflows({"copy-data": ["ACTIVE", "FAILED", "SUCCEEDED"]})

    result = await _poller(workflows, fast_policy, sleep).await_completion(
        context, _handle(), interval_seconds=5.0, max_attempts=150
    )

    assert result.outcome is PollOutcome.FAILED
    assert result.state is ExecutionState.FAILED
    assert result.attempts == 2
    assert len(workflows.list_calls) == 2
    assert workflows.described == ["projects/p1/locations/r1/workflows/copy-data/executions/exec-1"]
    assert result.diagnostic["error"]["payload"] == "boom"
    assert sleep.calls == [5.0]


@pytest.mark.asyncio
async def test_never_leaves_pending_times_out(context, fast_policy):
    sleep = RecordingSleep()
    workflows = FakeWorkflows({"copy-data": ["QUEUED"]})

    result = await _poller(workflows, fast_policy, sleep).await_completion(
        context, _handle(), interval_seconds=5.0, max_attempts=4
    )

    assert result.outcome is PollOutcome.TIMEOUT
    assert result.inconclusive
    assert not result.succeeded
    assert result.state is ExecutionState.PENDING
    assert result.attempts == 4
    assert len(workflows.list_calls) == 4
    assert sleep.calls == [5.0, 5.0, 5.0]
    assert workflows.described == []


@pytest.mark.asyncio
async def test_copy_data_active_then_succeeded(fast_policy):
    context = DeploymentContext(project_id="p1", region="r1")
    sleep = RecordingSleep()
    workflows = FakeWorkflows({"copy-data": ["ACTIVE", "SUCCEEDED"]})
    handle = await workflows.trigger(context, "copy-data", {})

    result = await _poller(workflows, fast_policy, sleep).await_completion(
        context, handle, interval_seconds=5.0, max_attempts=150
    )

    assert result.outcome is PollOutcome.SUCCEEDED
    assert result.attempts == 2
    assert workflows.list_calls == ["copy-data", "copy-data"]


@pytest.mark.asyncio
async def test_no_executions_yet_counts_as_pending(context, fast_policy):
    workflows = FakeWorkflows({"copy-data": [None, None, "SUCCEEDED"]})

    result = await _poller(workflows, fast_policy, RecordingSleep()).await_completion(
        context, _handle(), interval_seconds=1.0, max_attempts=5
    )

    assert result.outcome is PollOutcome.SUCCEEDED
    assert result.attempts == 3


@pytest.mark.asyncio
async def test_state_never_regresses(context, fast_policy):
    workflows = FakeWorkflows({"copy-data": ["ACTIVE", "QUEUED", "QUEUED"]})

    result = await _poller(workflows, fast_policy, RecordingSleep()).await_completion(
        context, _handle(), interval_seconds=1.0, max_attempts=3
    )

    assert result.outcome is PollOutcome.TIMEOUT
    assert result.state is ExecutionState.RUNNING


@pytest.mark.asyncio
async def test_lookup_by_handle_uses_execution_name(context, fast_policy):
    workflows = FakeWorkflows({"project-setup": ["ACTIVE", "SUCCEEDED"]})
    handle = _handle("project-setup")

    result = await _poller(workflows, fast_policy, RecordingSleep(), ExecutionLookup.BY_HANDLE).await_completion(
        context, handle, interval_seconds=1.0, max_attempts=5
    )

    assert result.succeeded
    assert workflows.get_calls == [handle.execution_name, handle.execution_name]
    assert workflows.list_calls == []


@pytest.mark.asyncio
async def test_transient_query_errors_do_not_consume_poll_attempts(context, fast_policy):
    sleep = RecordingSleep()
    workflows = FakeWorkflows({"copy-data": ["SUCCEEDED"]})
    workflows.list_failures = [GcpApiError(SUBNET_DRAINING_ERROR)]

    result = await _poller(workflows, fast_policy, sleep).await_completion(
        context, _handle(), interval_seconds=5.0, max_attempts=1
    )

    assert result.succeeded
    assert result.attempts == 1
    assert sleep.calls == [fast_policy.delay_seconds]


@pytest.mark.asyncio
async def test_fatal_query_error_propagates(context, fast_policy):
    workflows = FakeWorkflows({"copy-data": ["SUCCEEDED"]})
    workflows.list_failures = [GcpApiError("Error 403: Permission denied")]

    with pytest.raises(GcpApiError, match="403"):
        await _poller(workflows, fast_policy, RecordingSleep()).await_completion(
            context, _handle(), interval_seconds=5.0, max_attempts=3
        )


@pytest.mark.asyncio
async def test_max_attempts_must_be_positive(context, fast_policy):
    with pytest.raises(ValueError):
        await _poller(FakeWorkflows(), fast_policy, RecordingSleep()).await_completion(
            context, _handle(), interval_seconds=1.0, max_attempts=0
        )
