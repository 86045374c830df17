from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from lakehouse_orchestrator.models.deployment import DeploymentContext, DeploymentStatus, DeploymentStatusResponse
from lakehouse_orchestrator.services.deployment_orchestrator import DeploymentOrchestrator
from lakehouse_orchestrator.services.errors import DeploymentStageError, WorkflowPollTimeoutError


logger = logging.getLogger(__name__)


class DeploymentRunNotFoundError(KeyError):
    pass


@dataclass
class DeploymentRun:
    context: DeploymentContext
    status: DeploymentStatus = DeploymentStatus.RUNNING
    stage: Optional[str] = None
    completed_stages: list[str] = field(default_factory=list)
    error: Optional[str] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    task: Optional[asyncio.Task[None]] = None

    def to_response(self) -> DeploymentStatusResponse:
        return DeploymentStatusResponse(
            run_id=self.context.run_id,
            project_id=self.context.project_id,
            region=self.context.region,
            status=self.status,
            stage=self.stage,
            completed_stages=list(self.completed_stages),
            error=self.error,
            started_at=self.started_at,
            finished_at=self.finished_at,
        )


class DeploymentRunRegistry:
    """In-process record of deployment runs started through the API.

    Aborting cancels only this process's polling; remote workflow executions
    already triggered keep running.
    """

    def __init__(self) -> None:
        self._runs: dict[str, DeploymentRun] = {}

    def get(self, run_id: str) -> DeploymentRun:
        try:
            return self._runs[run_id]
        except KeyError:
            raise DeploymentRunNotFoundError(run_id) from None

    def list(self) -> list[DeploymentRun]:
        return list(self._runs.values())

    def start(self, *, context: DeploymentContext, orchestrator: DeploymentOrchestrator, verify: bool = False) -> DeploymentRun:
        run = DeploymentRun(context=context)
        self._runs[context.run_id] = run
        run.task = asyncio.create_task(self._execute(run, orchestrator, verify), name=f"deployment-{context.run_id}")
        return run

    def abort(self, run_id: str) -> DeploymentRun:
        run = self.get(run_id)
        if run.task is not None and not run.task.done():
            logger.warning("Aborting deployment run %s at stage %s (remote executions keep running)", run_id, run.stage)
            run.task.cancel()
        return run

    async def _execute(self, run: DeploymentRun, orchestrator: DeploymentOrchestrator, verify: bool) -> None:
        def _on_stage(stage: str) -> None:
            if run.stage is not None:
                run.completed_stages.append(run.stage)
            run.stage = stage

        try:
            report = await orchestrator.run(run.context, verify=verify, on_stage=_on_stage)
        except asyncio.CancelledError:
            run.status = DeploymentStatus.ABORTED
            run.error = "Aborted by operator"
            raise
        except DeploymentStageError as exc:
            run.status = (
                DeploymentStatus.INCONCLUSIVE if isinstance(exc.cause, WorkflowPollTimeoutError) else DeploymentStatus.FAILED
            )
            run.error = str(exc)
            logger.error("Deployment run %s ended %s: %s", run.context.run_id, run.status.value, exc)
        except Exception as exc:
            run.status = DeploymentStatus.FAILED
            run.error = str(exc)
            logger.exception("Deployment run %s crashed", run.context.run_id)
        else:
            run.status = DeploymentStatus.SUCCEEDED
            run.completed_stages = list(report.completed_stages)
            run.stage = None
        finally:
            run.finished_at = datetime.now(timezone.utc)
