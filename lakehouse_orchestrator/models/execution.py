from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class ExecutionState(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionState.SUCCEEDED, ExecutionState.FAILED)

    def can_transition_to(self, other: "ExecutionState") -> bool:
        """PENDING -> RUNNING -> {SUCCEEDED | FAILED}; terminal states never move."""

        if self.is_terminal:
            return other is self
        if self is ExecutionState.RUNNING:
            return other is not ExecutionState.PENDING
        return True

    def advance(self, observed: "ExecutionState") -> "ExecutionState":
        return observed if self.can_transition_to(observed) else self

    @staticmethod
    def from_remote(state: Optional[str]) -> "ExecutionState":
        # Workflow Executions API: STATE_UNSPECIFIED, QUEUED, ACTIVE, SUCCEEDED, FAILED, CANCELLED
        normalized = (state or "").strip().upper()
        if normalized == "ACTIVE":
            return ExecutionState.RUNNING
        if normalized == "SUCCEEDED":
            return ExecutionState.SUCCEEDED
        if normalized in {"FAILED", "CANCELLED"}:
            return ExecutionState.FAILED
        return ExecutionState.PENDING


@dataclass(frozen=True)
class ExecutionHandle:
    """One in-flight invocation of a named remote workflow.

    `execution_name` is the full resource name returned by the API:
    projects/{project}/locations/{region}/workflows/{workflow}/executions/{id}
    """

    workflow_name: str
    execution_id: str
    execution_name: str
    start_time: Optional[datetime] = None

    @staticmethod
    def from_execution(*, workflow_name: str, execution: dict[str, Any]) -> "ExecutionHandle":
        name = str(execution["name"])
        return ExecutionHandle(
            workflow_name=workflow_name,
            execution_id=name.rsplit("/", 1)[-1],
            execution_name=name,
            start_time=parse_timestamp(execution.get("startTime")),
        )


class PollOutcome(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"


@dataclass(frozen=True)
class PollResult:
    outcome: PollOutcome
    state: ExecutionState
    attempts: int
    diagnostic: Any = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is PollOutcome.SUCCEEDED

    @property
    def inconclusive(self) -> bool:
        return self.outcome is PollOutcome.TIMEOUT


def parse_timestamp(raw: Any) -> Optional[datetime]:
    if not raw or not isinstance(raw, str):
        return None
    # API returns RFC 3339 with nanoseconds and a trailing Z, e.g. 2023-05-01T10:00:00.123456789Z
    value = raw.strip().replace("Z", "+00:00")
    if "." in value:
        head, _, tail = value.partition(".")
        offset_at = next((i for i, ch in enumerate(tail) if not ch.isdigit()), len(tail))
        digits, offset = tail[:offset_at], tail[offset_at:]
        value = f"{head}.{digits[:6].ljust(6, '0')}{offset}"
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=timezone.utc)
