from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Mapping, Protocol

from tqdm import tqdm

from lakehouse_orchestrator.models.deployment import DeploymentContext
from lakehouse_orchestrator.models.resources import RealizedResource, ResourceKind, ResourceRegistry, ResourceSpec
from lakehouse_orchestrator.services import templating
from lakehouse_orchestrator.services.errors import (
    OrchestratorError,
    ProvisioningError,
    ResourceAlreadyExistsError,
    ResourceDependencyError,
)
from lakehouse_orchestrator.services.readiness_gate import ReadinessGate
from lakehouse_orchestrator.services.retry_service import RetryPolicy, Sleep, run_with_retry


logger = logging.getLogger(__name__)


class ControlPlane(Protocol):
    async def create(
        self, context: DeploymentContext, kind: ResourceKind, attributes: Mapping[str, Any]
    ) -> dict[str, str]: ...

    async def describe_existing(
        self, context: DeploymentContext, kind: ResourceKind, attributes: Mapping[str, Any]
    ) -> dict[str, str]: ...


def dependencies_of(spec: ResourceSpec) -> tuple[str, ...]:
    """Declared dependencies plus resources referenced from attributes, declared first."""

    implicit = sorted(templating.references(dict(spec.attributes)) - set(spec.depends_on))
    return tuple(spec.depends_on) + tuple(implicit)


def dependency_order(specs: Iterable[ResourceSpec]) -> list[ResourceSpec]:
    """Topologically sort specs so every dependency precedes its dependents.

    Stable: among specs whose dependencies are satisfied, declaration order
    wins. Unknown names, duplicate names and cycles raise
    ResourceDependencyError.
    """

    declared = list(specs)
    by_name: dict[str, ResourceSpec] = {}
    for spec in declared:
        if spec.name in by_name:
            raise ResourceDependencyError(f"Duplicate resource name: {spec.name!r}")
        by_name[spec.name] = spec

    deps = {spec.name: dependencies_of(spec) for spec in declared}
    for name, names in deps.items():
        unknown = [dep for dep in names if dep not in by_name]
        if unknown:
            raise ResourceDependencyError(f"Resource {name!r} depends on undeclared resources: {unknown}")

    ordered: list[ResourceSpec] = []
    placed: set[str] = set()
    remaining = [spec.name for spec in declared]
    while remaining:
        ready = next((name for name in remaining if all(dep in placed for dep in deps[name])), None)
        if ready is None:
            raise ResourceDependencyError(f"Dependency cycle among resources: {sorted(remaining)}")
        remaining.remove(ready)
        placed.add(ready)
        ordered.append(by_name[ready])
    return ordered


class ResourceProvisioner:
    """Realizes ResourceSpecs against the control plane in dependency order.

    Re-running with the same specs is safe: "already exists" counts as
    realized. After a propagating resource (API enablement, IAM grant), the
    readiness gate waits once before the first dependent is created.
    """

    def __init__(
        self,
        *,
        control_plane: ControlPlane,
        gate: ReadinessGate,
        retry_policy: RetryPolicy,
        propagation_wait_seconds: float = 30.0,
        show_progress: bool = True,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._control_plane = control_plane
        self._gate = gate
        self._retry_policy = retry_policy
        self._propagation_wait_seconds = propagation_wait_seconds
        self._show_progress = show_progress
        self._sleep = sleep

    async def provision(self, context: DeploymentContext, specs: Iterable[ResourceSpec]) -> ResourceRegistry:
        ordered = dependency_order(specs)
        registry = ResourceRegistry()
        unsettled: set[str] = set()

        logger.info("Provisioning %d resources (run=%s project=%s)", len(ordered), context.run_id, context.project_id)

        for spec in tqdm(ordered, desc="Provisioning resources", unit="resource", disable=not self._show_progress):
            if unsettled & set(dependencies_of(spec)):
                await self._gate.wait(
                    self._propagation_wait_seconds,
                    reason=f"propagation of {sorted(unsettled)} before {spec.name}",
                )
                unsettled.clear()

            realized = await self.realize(context, spec, registry)
            registry.record(realized)
            if spec.kind.propagates_asynchronously:
                unsettled.add(spec.name)

        # Workflows triggered next run as identities granted above.
        if unsettled:
            await self._gate.wait(self._propagation_wait_seconds, reason=f"propagation of {sorted(unsettled)}")

        return registry

    async def realize(self, context: DeploymentContext, spec: ResourceSpec, registry: ResourceRegistry) -> RealizedResource:
        registry.require(list(dependencies_of(spec)))
        attributes = templating.render(dict(spec.attributes), registry)

        async def _create() -> RealizedResource:
            try:
                identity = await self._control_plane.create(context, spec.kind, attributes)
                return RealizedResource(spec=spec, identity=identity)
            except ResourceAlreadyExistsError:
                logger.info("Resource already exists, treating as realized: %s (%s)", spec.name, spec.kind.value)
                identity = await self._control_plane.describe_existing(context, spec.kind, attributes)
                return RealizedResource(spec=spec, identity=identity, already_existed=True)

        try:
            realized = await run_with_retry(
                _create,
                policy=self._retry_policy,
                description=f"create {spec.kind.value} {spec.name}",
                sleep=self._sleep,
            )
        except (ProvisioningError, ResourceDependencyError):
            raise
        except OrchestratorError as exc:
            logger.exception("Provisioning failed for %s (%s)", spec.name, spec.kind.value)
            raise ProvisioningError(f"Failed creating {spec.kind.value} {spec.name!r}: {exc}") from exc

        logger.debug("Realized %s: %s", spec.name, dict(realized.identity))
        return realized
