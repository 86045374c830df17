from __future__ import annotations

from typing import Any, Optional


class OrchestratorError(RuntimeError):
    pass


class GcpApiError(OrchestratorError):
    """Non-2xx response (or transport failure) from a Google Cloud REST API.

    The message carries the API's own error text so the retry classifier can
    match it, e.g. "Error 400: The subnetwork resource ... is already being used".
    """

    def __init__(self, message: str, *, status: Optional[int] = None, payload: Any = None) -> None:
        super().__init__(message)
        self.status = status
        self.payload = payload


class WorkflowsApiError(GcpApiError):
    pass


class ResourceAlreadyExistsError(GcpApiError):
    pass


class ConcurrentUpdateError(GcpApiError):
    """HTTP 409 ABORTED: the resource changed between read and write (stale etag)."""


class ProvisioningError(OrchestratorError):
    pass


class ResourceDependencyError(OrchestratorError):
    """A resource or workflow referenced something that was never realized.

    This is a programming defect in the resource/workflow declarations and is
    never retried.
    """


class WorkflowTriggerError(OrchestratorError):
    pass


class WorkflowExecutionFailedError(OrchestratorError):
    def __init__(self, message: str, *, workflow_name: str, diagnostic: Any = None) -> None:
        super().__init__(message)
        self.workflow_name = workflow_name
        self.diagnostic = diagnostic


class WorkflowPollTimeoutError(OrchestratorError):
    """Polling budget ran out while the execution was still non-terminal.

    Inconclusive: the remote execution may still be running.
    """

    def __init__(self, message: str, *, workflow_name: str, attempts: int) -> None:
        super().__init__(message)
        self.workflow_name = workflow_name
        self.attempts = attempts


class VerificationError(OrchestratorError):
    def __init__(self, failures: list[str]) -> None:
        super().__init__("Deployment verification failed: " + "; ".join(failures))
        self.failures = failures


class DeploymentStageError(OrchestratorError):
    def __init__(self, stage: str, cause: BaseException) -> None:
        super().__init__(f"Deployment failed at stage {stage!r}: {cause}")
        self.stage = stage
        self.cause = cause
