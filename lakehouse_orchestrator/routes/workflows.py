from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from starlette import status

from lakehouse_orchestrator.models.deployment import DeploymentContext, ExecutionStatusResponse
from lakehouse_orchestrator.models.execution import ExecutionState, parse_timestamp
from lakehouse_orchestrator.services.config import DeploymentConfig
from lakehouse_orchestrator.services.dependencies import get_workflows_service
from lakehouse_orchestrator.services.workflows_service import WorkflowsService

router = APIRouter(prefix="/workflows", tags=["workflows"])


@router.get("/{workflow}/executions/latest", response_model=ExecutionStatusResponse)
async def latest_execution(
    workflow: str = Path(..., description="Workflow name, e.g. copy-data"),
    project_id: Optional[str] = Query(default=None),
    region: Optional[str] = Query(default=None),
    svc: WorkflowsService = Depends(get_workflows_service),
) -> ExecutionStatusResponse:
    try:
        config = DeploymentConfig.from_env(project_id=project_id, region=region)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    context = DeploymentContext(project_id=config.project_id, region=config.region)
    executions = await svc.list_executions(context, workflow, page_size=1)
    if not executions:
        return ExecutionStatusResponse(workflow=workflow, state=ExecutionState.PENDING.value)

    latest = executions[0]
    return ExecutionStatusResponse(
        workflow=workflow,
        execution_name=latest.get("name"),
        state=ExecutionState.from_remote(latest.get("state")).value,
        remote_state=latest.get("state"),
        start_time=parse_timestamp(latest.get("startTime")),
        raw=latest,
    )
