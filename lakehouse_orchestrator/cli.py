"""Command-line entry point for one-shot lakehouse deployments.

Usage::

    lakehouse-orchestrator deploy --project my-project --region us-central1
    lakehouse-orchestrator deploy --verify --no-readiness-gate
    lakehouse-orchestrator status copy-data
    lakehouse-orchestrator drain
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import sys
from typing import Optional

import aiohttp

from lakehouse_orchestrator.main import _ensure_logging
from lakehouse_orchestrator.models.deployment import DeploymentContext
from lakehouse_orchestrator.models.execution import ExecutionState
from lakehouse_orchestrator.services.config import DeploymentConfig, GcpEndpoints
from lakehouse_orchestrator.services.dependencies import (
    build_gcp_client,
    build_orchestrator,
    build_workflows_service,
    retry_policy_from_config,
)
from lakehouse_orchestrator.services.errors import DeploymentStageError, OrchestratorError, WorkflowPollTimeoutError
from lakehouse_orchestrator.services.verification_service import DeploymentVerifier

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INCONCLUSIVE = 3


def _config(args: argparse.Namespace) -> DeploymentConfig:
    config = DeploymentConfig.from_env(project_id=args.project, region=args.region)
    if getattr(args, "no_readiness_gate", False):
        config = dataclasses.replace(config, readiness_gate_enabled=False)
    return config


async def _deploy(args: argparse.Namespace) -> int:
    config = _config(args)
    context = DeploymentContext(project_id=config.project_id, region=config.region, resource_suffix=config.resource_suffix)
    async with aiohttp.ClientSession() as session:
        orchestrator = build_orchestrator(session=session, config=config, show_progress=not args.quiet)
        try:
            report = await orchestrator.run(context, verify=args.verify)
        except DeploymentStageError as exc:
            logger.error("%s", exc)
            if isinstance(exc.cause, WorkflowPollTimeoutError):
                return EXIT_INCONCLUSIVE
            return EXIT_FAILED

    logger.info(
        "Deployment %s succeeded: %d resources, workflows=%s",
        context.run_id,
        len(report.resources),
        {name: result.outcome.value for name, result in report.workflows.items()},
    )
    return EXIT_OK


async def _status(args: argparse.Namespace) -> int:
    config = _config(args)
    context = DeploymentContext(project_id=config.project_id, region=config.region)
    async with aiohttp.ClientSession() as session:
        client = build_gcp_client(session=session, config=config)
        workflows = build_workflows_service(client=client, endpoints=GcpEndpoints.from_env())
        executions = await workflows.list_executions(context, args.workflow, page_size=1)

    if not executions:
        print(f"{args.workflow}: no executions")
        return EXIT_OK
    latest = executions[0]
    state = ExecutionState.from_remote(latest.get("state"))
    print(f"{args.workflow}: {state.value} ({latest.get('name')})")
    return EXIT_FAILED if state is ExecutionState.FAILED else EXIT_OK


async def _drain(args: argparse.Namespace) -> int:
    config = _config(args)
    context = DeploymentContext(project_id=config.project_id, region=config.region)
    async with aiohttp.ClientSession() as session:
        verifier = DeploymentVerifier(
            client=build_gcp_client(session=session, config=config),
            endpoints=GcpEndpoints.from_env(),
            retry_policy=retry_policy_from_config(config),
        )
        await verifier.await_instances_drained(context, interval_seconds=args.interval, max_attempts=args.max_attempts)
    logger.info("Compute instances drained; safe to tear down")
    return EXIT_OK


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Provision the analytics lakehouse and run its setup workflows.")
    parser.add_argument("--project", default=None, help="GCP project id (default: $GCP_PROJECT_ID)")
    parser.add_argument("--region", default=None, help="GCP region (default: $GCP_REGION)")
    sub = parser.add_subparsers(dest="command", required=True)

    deploy = sub.add_parser("deploy", help="Provision resources, run workflows, wait for completion")
    deploy.add_argument("--verify", action="store_true", help="Check tables and Dataproc state afterwards")
    deploy.add_argument("--no-readiness-gate", action="store_true", help="Skip fixed propagation/settle waits")
    deploy.add_argument("--quiet", action="store_true", help="Hide the provisioning progress bar")

    status = sub.add_parser("status", help="Show the latest execution state of a workflow")
    status.add_argument("workflow", help="Workflow name, e.g. copy-data or project-setup")

    drain = sub.add_parser("drain", help="Wait until only the Dataproc history server VM remains")
    drain.add_argument("--interval", type=float, default=30.0)
    drain.add_argument("--max-attempts", type=int, default=120)

    args = parser.parse_args(argv)
    _ensure_logging()

    handlers = {"deploy": _deploy, "status": _status, "drain": _drain}
    try:
        return asyncio.run(handlers[args.command](args))
    except ValueError as exc:
        parser.error(str(exc))
    except OrchestratorError as exc:
        logger.error("%s", exc)
        return EXIT_FAILED
    return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
