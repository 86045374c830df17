from __future__ import annotations

import asyncio
import json
import logging
from enum import Enum
from typing import Any, Optional, Protocol

from lakehouse_orchestrator.models.deployment import DeploymentContext
from lakehouse_orchestrator.models.execution import ExecutionHandle, ExecutionState, PollOutcome, PollResult
from lakehouse_orchestrator.services.errors import GcpApiError
from lakehouse_orchestrator.services.retry_service import RetryPolicy, Sleep, run_with_retry


logger = logging.getLogger(__name__)


class ExecutionSource(Protocol):
    async def list_executions(self, context: DeploymentContext, workflow_name: str) -> list[dict[str, Any]]: ...

    async def get_execution(self, execution_name: str) -> dict[str, Any]: ...

    async def describe_execution(self, execution_name: str) -> dict[str, Any]: ...


class ExecutionLookup(str, Enum):
    # Index 0 of the executions list sorted by start time, descending.
    MOST_RECENT = "most_recent"
    # The exact execution named in the handle returned at trigger time.
    BY_HANDLE = "by_handle"


class CompletionPoller:
    """Polls a workflow execution until it is terminal or the budget runs out.

    SUCCEEDED and FAILED end the loop at once. FAILED is never retried: the
    workflow owns its own retries. Running out of attempts yields TIMEOUT,
    which says nothing about the remote outcome.
    """

    def __init__(
        self,
        *,
        executions: ExecutionSource,
        retry_policy: RetryPolicy,
        lookup: ExecutionLookup = ExecutionLookup.MOST_RECENT,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._executions = executions
        self._retry_policy = retry_policy
        self._lookup = lookup
        self._sleep = sleep

    async def await_completion(
        self,
        context: DeploymentContext,
        handle: ExecutionHandle,
        *,
        interval_seconds: float,
        max_attempts: int,
    ) -> PollResult:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        state = ExecutionState.PENDING
        for attempt in range(1, max_attempts + 1):
            execution = await self._observe(context, handle)
            observed = ExecutionState.from_remote(execution.get("state") if execution else None)
            state = state.advance(observed)

            if state is ExecutionState.SUCCEEDED:
                logger.info("Workflow %s succeeded after %d poll(s)", handle.workflow_name, attempt)
                return PollResult(outcome=PollOutcome.SUCCEEDED, state=state, attempts=attempt)

            if state is ExecutionState.FAILED:
                diagnostic = await self._diagnose(handle, execution)
                logger.error(
                    "Workflow %s FAILED (execution=%s):\n%s",
                    handle.workflow_name,
                    (execution or {}).get("name") or handle.execution_name,
                    json.dumps(diagnostic, indent=2, default=str),
                )
                return PollResult(outcome=PollOutcome.FAILED, state=state, attempts=attempt, diagnostic=diagnostic)

            logger.info(
                "Workflow %s still %s (poll %d/%d)", handle.workflow_name, state.value, attempt, max_attempts
            )
            if attempt < max_attempts:
                await self._sleep(interval_seconds)

        logger.warning(
            "Workflow %s not terminal after %d polls (last state %s); result inconclusive",
            handle.workflow_name,
            max_attempts,
            state.value,
        )
        return PollResult(outcome=PollOutcome.TIMEOUT, state=state, attempts=max_attempts)

    async def _observe(self, context: DeploymentContext, handle: ExecutionHandle) -> Optional[dict[str, Any]]:
        if self._lookup is ExecutionLookup.BY_HANDLE:
            return await run_with_retry(
                lambda: self._executions.get_execution(handle.execution_name),
                policy=self._retry_policy,
                description=f"get execution {handle.execution_id}",
                sleep=self._sleep,
            )

        executions = await run_with_retry(
            lambda: self._executions.list_executions(context, handle.workflow_name),
            policy=self._retry_policy,
            description=f"list executions of {handle.workflow_name}",
            sleep=self._sleep,
        )
        return executions[0] if executions else None

    async def _diagnose(self, handle: ExecutionHandle, execution: Optional[dict[str, Any]]) -> Any:
        name = (execution or {}).get("name") or handle.execution_name
        try:
            return await run_with_retry(
                lambda: self._executions.describe_execution(name),
                policy=self._retry_policy,
                description=f"describe execution {name}",
                sleep=self._sleep,
            )
        except GcpApiError:
            logger.warning("Could not describe failed execution %s; using last observed state", name, exc_info=True)
            return execution
