from __future__ import annotations

from typing import Callable

from fastapi import APIRouter, Depends, HTTPException, Path
from starlette import status

from lakehouse_orchestrator.models.deployment import (
    DeploymentContext,
    DeploymentStartRequest,
    DeploymentStatusResponse,
)
from lakehouse_orchestrator.services.config import DeploymentConfig
from lakehouse_orchestrator.services.dependencies import get_orchestrator_factory, get_run_registry
from lakehouse_orchestrator.services.deployment_orchestrator import DeploymentOrchestrator
from lakehouse_orchestrator.services.run_registry import DeploymentRunNotFoundError, DeploymentRunRegistry

router = APIRouter(prefix="/deployments", tags=["deployments"])


@router.post("", response_model=DeploymentStatusResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_deployment(
    payload: DeploymentStartRequest,
    registry: DeploymentRunRegistry = Depends(get_run_registry),
    orchestrator_factory: Callable[[DeploymentConfig], DeploymentOrchestrator] = Depends(get_orchestrator_factory),
) -> DeploymentStatusResponse:
    try:
        config = DeploymentConfig.from_env(project_id=payload.project_id, region=payload.region)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    context = DeploymentContext(project_id=config.project_id, region=config.region, resource_suffix=config.resource_suffix)
    run = registry.start(context=context, orchestrator=orchestrator_factory(config), verify=payload.verify)
    return run.to_response()


@router.get("", response_model=list[DeploymentStatusResponse])
async def list_deployments(
    registry: DeploymentRunRegistry = Depends(get_run_registry),
) -> list[DeploymentStatusResponse]:
    return [run.to_response() for run in registry.list()]


@router.get("/{run_id}", response_model=DeploymentStatusResponse)
async def get_deployment(
    run_id: str = Path(..., description="Deployment run id"),
    registry: DeploymentRunRegistry = Depends(get_run_registry),
) -> DeploymentStatusResponse:
    try:
        return registry.get(run_id).to_response()
    except DeploymentRunNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown run: {run_id}") from exc


@router.post("/{run_id}/abort", response_model=DeploymentStatusResponse)
async def abort_deployment(
    run_id: str = Path(..., description="Deployment run id"),
    registry: DeploymentRunRegistry = Depends(get_run_registry),
) -> DeploymentStatusResponse:
    """Stop this orchestrator's work on the run. Triggered remote executions are not cancelled."""

    try:
        return registry.abort(run_id).to_response()
    except DeploymentRunNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown run: {run_id}") from exc
