from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterator, Mapping

from lakehouse_orchestrator.services.errors import ResourceDependencyError


class ResourceKind(str, Enum):
    PROJECT_SERVICE = "project_service"
    STORAGE_BUCKET = "storage_bucket"
    STORAGE_OBJECT = "storage_object"
    NETWORK = "network"
    SUBNETWORK = "subnetwork"
    SERVICE_ACCOUNT = "service_account"
    IAM_BINDING = "iam_binding"
    NOTEBOOK_INSTANCE = "notebook_instance"

    @property
    def propagates_asynchronously(self) -> bool:
        # API enablement and IAM grants are accepted before they take effect.
        return self in (ResourceKind.PROJECT_SERVICE, ResourceKind.IAM_BINDING)


@dataclass(frozen=True)
class ResourceSpec:
    kind: ResourceKind
    name: str
    attributes: Mapping[str, Any] = field(default_factory=dict)
    depends_on: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise ValueError("ResourceSpec.name must be provided")
        # Freeze the attribute mapping so a submitted spec cannot be mutated.
        object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))
        object.__setattr__(self, "depends_on", tuple(self.depends_on))


@dataclass(frozen=True)
class RealizedResource:
    spec: ResourceSpec
    identity: Mapping[str, str]
    already_existed: bool = False

    def attribute(self, key: str) -> str:
        if key not in self.identity:
            raise ResourceDependencyError(
                f"Resource {self.spec.name!r} has no identity attribute {key!r} "
                f"(available: {sorted(self.identity)})"
            )
        return self.identity[key]


class ResourceRegistry:
    """Realized resources by spec name, in realization order."""

    def __init__(self) -> None:
        self._resources: dict[str, RealizedResource] = {}

    def record(self, resource: RealizedResource) -> None:
        self._resources[resource.spec.name] = resource

    def __contains__(self, name: object) -> bool:
        return name in self._resources

    def __iter__(self) -> Iterator[RealizedResource]:
        return iter(self._resources.values())

    def __len__(self) -> int:
        return len(self._resources)

    def get(self, name: str) -> RealizedResource:
        try:
            return self._resources[name]
        except KeyError:
            raise ResourceDependencyError(f"Resource not realized: {name!r}") from None

    def require(self, names: tuple[str, ...] | list[str]) -> None:
        missing = [name for name in names if name not in self._resources]
        if missing:
            raise ResourceDependencyError(f"Resources not realized: {missing}")

    def names(self) -> list[str]:
        return list(self._resources)
