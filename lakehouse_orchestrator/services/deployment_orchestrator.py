from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Iterable, Mapping, Optional, Protocol

from lakehouse_orchestrator.models.deployment import DeploymentContext, DeploymentReport
from lakehouse_orchestrator.models.execution import ExecutionHandle, PollOutcome, PollResult
from lakehouse_orchestrator.models.resources import ResourceRegistry, ResourceSpec
from lakehouse_orchestrator.services import templating
from lakehouse_orchestrator.services.completion_poller import CompletionPoller
from lakehouse_orchestrator.services.config import DeploymentConfig, WorkflowSpec
from lakehouse_orchestrator.services.errors import (
    DeploymentStageError,
    OrchestratorError,
    WorkflowExecutionFailedError,
    WorkflowPollTimeoutError,
)
from lakehouse_orchestrator.services.readiness_gate import ReadinessGate
from lakehouse_orchestrator.services.retry_service import RetryPolicy, Sleep, run_with_retry
from lakehouse_orchestrator.services.setup.resource_provisioner import ResourceProvisioner
from lakehouse_orchestrator.services.verification_service import DeploymentVerifier


logger = logging.getLogger(__name__)

StageListener = Callable[[str], None]


class WorkflowTrigger(Protocol):
    async def trigger(
        self, context: DeploymentContext, workflow_name: str, parameters: Optional[Mapping[str, Any]] = None
    ) -> ExecutionHandle: ...


class DeploymentOrchestrator:
    """Provision -> trigger/poll each workflow in order -> settle [-> verify].

    Workflows run strictly one after another: project-setup reads assets that
    copy-data (or its prerequisite resources) create. Any failure stops the
    run and is raised as DeploymentStageError naming the stage.
    """

    def __init__(
        self,
        *,
        config: DeploymentConfig,
        provisioner: ResourceProvisioner,
        gate: ReadinessGate,
        trigger: WorkflowTrigger,
        poller: CompletionPoller,
        retry_policy: RetryPolicy,
        resource_specs: Callable[[DeploymentContext], Iterable[ResourceSpec]],
        workflows: Iterable[WorkflowSpec],
        verifier: Optional[DeploymentVerifier] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._config = config
        self._provisioner = provisioner
        self._gate = gate
        self._trigger = trigger
        self._poller = poller
        self._retry_policy = retry_policy
        self._resource_specs = resource_specs
        self._workflows = tuple(workflows)
        self._verifier = verifier
        self._sleep = sleep

        names = [wf.name for wf in self._workflows]
        if len(names) != len(set(names)):
            raise ValueError(f"Each workflow may be triggered only once per run: {names}")

    async def run(
        self,
        context: DeploymentContext,
        *,
        verify: bool = False,
        on_stage: Optional[StageListener] = None,
    ) -> DeploymentReport:
        if verify and self._verifier is None:
            raise ValueError("verify=True requires a DeploymentVerifier")
        report = DeploymentReport(context=context)

        async with _Stage("provision", report, on_stage):
            report.resources = await self._provisioner.provision(context, self._resource_specs(context))

        for workflow in self._workflows:
            handle = await self._trigger_workflow(context, workflow, report, on_stage)
            async with _Stage(f"poll:{workflow.name}", report, on_stage):
                result = await self._poller.await_completion(
                    context,
                    handle,
                    interval_seconds=self._config.poll_interval_seconds,
                    max_attempts=self._config.poll_max_attempts,
                )
                report.workflows[workflow.name] = result
                self._raise_for_result(workflow.name, result)

        async with _Stage("settle", report, on_stage):
            await self._gate.wait(self._config.settle_wait_seconds, reason="post-workflow settling")

        if verify:
            async with _Stage("verify", report, on_stage):
                await self._verifier.verify(context)

        logger.info("Deployment complete (run=%s stages=%s)", context.run_id, report.completed_stages)
        return report

    async def _trigger_workflow(
        self,
        context: DeploymentContext,
        workflow: WorkflowSpec,
        report: DeploymentReport,
        on_stage: Optional[StageListener],
    ) -> ExecutionHandle:
        async with _Stage(f"trigger:{workflow.name}", report, on_stage):
            parameters = self.workflow_parameters(workflow, report.resources)
            return await run_with_retry(
                lambda: self._trigger.trigger(context, workflow.name, parameters),
                policy=self._retry_policy,
                description=f"trigger workflow {workflow.name}",
                sleep=self._sleep,
            )

    @staticmethod
    def workflow_parameters(workflow: WorkflowSpec, resources: ResourceRegistry) -> dict[str, Any]:
        """Rendered parameters; every required or referenced resource must be realized."""

        resources.require(list(workflow.required_resources) + sorted(templating.references(dict(workflow.parameters))))
        return templating.render(dict(workflow.parameters), resources)

    @staticmethod
    def _raise_for_result(workflow_name: str, result: PollResult) -> None:
        if result.outcome is PollOutcome.SUCCEEDED:
            return
        if result.outcome is PollOutcome.FAILED:
            raise WorkflowExecutionFailedError(
                f"Workflow {workflow_name!r} execution FAILED",
                workflow_name=workflow_name,
                diagnostic=result.diagnostic,
            )
        raise WorkflowPollTimeoutError(
            f"Workflow {workflow_name!r} still {result.state.value} after {result.attempts} polls; "
            "outcome inconclusive, re-check the execution before re-running",
            workflow_name=workflow_name,
            attempts=result.attempts,
        )


class _Stage:
    """Records a stage on the report and wraps escaping errors with its name."""

    def __init__(self, name: str, report: DeploymentReport, on_stage: Optional[StageListener]) -> None:
        self._name = name
        self._report = report
        self._on_stage = on_stage

    async def __aenter__(self) -> "_Stage":
        logger.info("Stage %s started (run=%s)", self._name, self._report.context.run_id)
        if self._on_stage is not None:
            self._on_stage(self._name)
        return self

    async def __aexit__(self, exc_type: Any, exc: Optional[BaseException], tb: Any) -> bool:
        if exc is None:
            self._report.completed_stages.append(self._name)
            return False
        if isinstance(exc, DeploymentStageError) or not isinstance(exc, (OrchestratorError, ValueError)):
            return False
        logger.error("Stage %s failed (run=%s): %s", self._name, self._report.context.run_id, exc)
        raise DeploymentStageError(self._name, exc) from exc
