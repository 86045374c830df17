from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Mapping, Optional
from urllib.parse import quote

from lakehouse_orchestrator.models.deployment import DeploymentContext
from lakehouse_orchestrator.models.execution import ExecutionHandle, parse_timestamp
from lakehouse_orchestrator.services.errors import WorkflowsApiError, WorkflowTriggerError
from lakehouse_orchestrator.services.gcp_client import GcpRestClient


logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class WorkflowsService:
    """Workflow Executions API (v1): start, list, get and describe executions."""

    def __init__(self, *, client: GcpRestClient, endpoint: str = "https://workflowexecutions.googleapis.com") -> None:
        self._client = client
        self._endpoint = endpoint.rstrip("/")

    def executions_url(self, context: DeploymentContext, workflow_name: str) -> str:
        if not workflow_name or not workflow_name.strip():
            raise ValueError("workflow_name must be provided")
        return (
            f"{self._endpoint}/v1/projects/{context.project_id}/locations/{context.region}"
            f"/workflows/{quote(workflow_name, safe='')}/executions"
        )

    @staticmethod
    def render_argument(parameters: Mapping[str, Any]) -> dict[str, Any]:
        """Execution request body; the API takes the workflow input as a JSON string."""

        return {"argument": json.dumps(dict(parameters), sort_keys=True)}

    async def trigger(
        self,
        context: DeploymentContext,
        workflow_name: str,
        parameters: Optional[Mapping[str, Any]] = None,
    ) -> ExecutionHandle:
        """Start one execution of `workflow_name` and return its handle.

        Raises:
            WorkflowsApiError: transport failure or non-2xx response (retry-classifiable).
            WorkflowTriggerError: the response carried no execution name.
        """

        url = self.executions_url(context, workflow_name)
        execution = await self._client.request_json(
            "POST",
            url,
            json_body=self.render_argument(parameters or {}),
            error_cls=WorkflowsApiError,
        )

        name = execution.get("name")
        if not isinstance(name, str) or not name.strip():
            raise WorkflowTriggerError(
                f"Execution start response for {workflow_name!r} has no execution name: {execution!r}"
            )

        handle = ExecutionHandle.from_execution(workflow_name=workflow_name, execution=execution)
        logger.info(
            "Triggered workflow %s (run=%s execution=%s)", workflow_name, context.run_id, handle.execution_id
        )
        return handle

    async def list_executions(
        self, context: DeploymentContext, workflow_name: str, *, page_size: int = 20
    ) -> list[dict[str, Any]]:
        """Executions of `workflow_name`, most recent start time first."""

        resp = await self._client.request_json(
            "GET",
            self.executions_url(context, workflow_name),
            params={"pageSize": str(page_size), "orderBy": "startTime desc"},
            error_cls=WorkflowsApiError,
        )
        executions = [e for e in (resp.get("executions") or []) if isinstance(e, dict)]
        # Sort locally too; older API versions ignore orderBy.
        executions.sort(key=lambda e: parse_timestamp(e.get("startTime")) or _EPOCH, reverse=True)
        return executions

    async def get_execution(self, execution_name: str) -> dict[str, Any]:
        if not execution_name or not execution_name.strip():
            raise ValueError("execution_name must be provided")
        return await self._client.request_json(
            "GET",
            f"{self._endpoint}/v1/{execution_name.lstrip('/')}",
            error_cls=WorkflowsApiError,
        )

    async def describe_execution(self, execution_name: str) -> dict[str, Any]:
        """Full execution detail (error payload included) for diagnostics."""

        return await self._client.request_json(
            "GET",
            f"{self._endpoint}/v1/{execution_name.lstrip('/')}",
            params={"view": "FULL"},
            error_cls=WorkflowsApiError,
        )
