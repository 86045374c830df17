from __future__ import annotations

import asyncio
from typing import Optional

import aiohttp
from fastapi import FastAPI, Request

from lakehouse_orchestrator.services.auth_service import TokenProvider, token_provider_from_env
from lakehouse_orchestrator.services.completion_poller import CompletionPoller, ExecutionLookup
from lakehouse_orchestrator.services.config import (
    LAKEHOUSE_WORKFLOWS,
    DeploymentConfig,
    GcpEndpoints,
    lakehouse_resource_specs,
)
from lakehouse_orchestrator.services.control_plane_service import GcpControlPlane
from lakehouse_orchestrator.services.deployment_orchestrator import DeploymentOrchestrator
from lakehouse_orchestrator.services.gcp_client import GcpRestClient
from lakehouse_orchestrator.services.readiness_gate import ReadinessGate
from lakehouse_orchestrator.services.retry_service import RetryPolicy, Sleep
from lakehouse_orchestrator.services.run_registry import DeploymentRunRegistry
from lakehouse_orchestrator.services.setup.resource_provisioner import ResourceProvisioner
from lakehouse_orchestrator.services.verification_service import DeploymentVerifier
from lakehouse_orchestrator.services.workflows_service import WorkflowsService


def retry_policy_from_config(config: DeploymentConfig) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=config.retry_max_attempts,
        delay_seconds=config.retry_delay_seconds,
        backoff_multiplier=config.retry_backoff_multiplier,
    )


def build_gcp_client(
    *, session: aiohttp.ClientSession, config: DeploymentConfig, token_provider: Optional[TokenProvider] = None
) -> GcpRestClient:
    return GcpRestClient(
        session=session,
        token_provider=token_provider or token_provider_from_env(),
        timeout_seconds=config.http_timeout_seconds,
    )


def build_workflows_service(*, client: GcpRestClient, endpoints: GcpEndpoints) -> WorkflowsService:
    return WorkflowsService(client=client, endpoint=endpoints.workflow_executions)


def build_orchestrator(
    *,
    session: aiohttp.ClientSession,
    config: DeploymentConfig,
    endpoints: Optional[GcpEndpoints] = None,
    token_provider: Optional[TokenProvider] = None,
    show_progress: bool = True,
    sleep: Sleep = asyncio.sleep,
) -> DeploymentOrchestrator:
    """Wire the full orchestrator from configuration."""

    endpoints = endpoints or GcpEndpoints.from_env()
    client = build_gcp_client(session=session, config=config, token_provider=token_provider)
    policy = retry_policy_from_config(config)
    gate = ReadinessGate(enabled=config.readiness_gate_enabled, sleep=sleep)
    workflows = build_workflows_service(client=client, endpoints=endpoints)

    return DeploymentOrchestrator(
        config=config,
        provisioner=ResourceProvisioner(
            control_plane=GcpControlPlane(
                client=client,
                endpoints=endpoints,
                operation_poll_interval_seconds=config.poll_interval_seconds,
                sleep=sleep,
            ),
            gate=gate,
            retry_policy=policy,
            propagation_wait_seconds=config.api_activation_wait_seconds,
            show_progress=show_progress,
            sleep=sleep,
        ),
        gate=gate,
        trigger=workflows,
        poller=CompletionPoller(
            executions=workflows,
            retry_policy=policy,
            lookup=ExecutionLookup(config.poll_lookup_mode),
            sleep=sleep,
        ),
        retry_policy=policy,
        resource_specs=lakehouse_resource_specs,
        workflows=LAKEHOUSE_WORKFLOWS,
        verifier=DeploymentVerifier(client=client, endpoints=endpoints, retry_policy=policy, sleep=sleep),
        sleep=sleep,
    )


def get_http_session_from_app(app: FastAPI) -> aiohttp.ClientSession:
    session = getattr(app.state, "http_session", None)
    if session is None:
        raise RuntimeError("HTTP session not initialized (app.state.http_session)")
    if not isinstance(session, aiohttp.ClientSession):
        raise RuntimeError("Unexpected http_session type")
    return session


def get_http_session(request: Request) -> aiohttp.ClientSession:
    return get_http_session_from_app(request.app)


def get_run_registry(request: Request) -> DeploymentRunRegistry:
    registry = getattr(request.app.state, "run_registry", None)
    if registry is None:
        raise RuntimeError("Run registry not initialized (app.state.run_registry)")
    return registry


def get_workflows_service(request: Request) -> WorkflowsService:
    client = GcpRestClient(session=get_http_session(request), token_provider=token_provider_from_env())
    return build_workflows_service(client=client, endpoints=GcpEndpoints.from_env())


def get_orchestrator_factory(request: Request):
    """Provider returning a factory so the route can apply per-request overrides."""

    session = get_http_session(request)

    def _factory(config: DeploymentConfig) -> DeploymentOrchestrator:
        return build_orchestrator(session=session, config=config, show_progress=False)

    return _factory
