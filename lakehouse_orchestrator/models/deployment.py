from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from lakehouse_orchestrator.models.execution import PollResult
from lakehouse_orchestrator.models.resources import ResourceRegistry


@dataclass(frozen=True)
class DeploymentContext:
    """Identity of one orchestration run, passed explicitly to every component."""

    project_id: str
    region: str
    resource_suffix: str = ""
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self) -> None:
        if not self.project_id or not self.project_id.strip():
            raise ValueError("project_id must be provided")
        if not self.region or not self.region.strip():
            raise ValueError("region must be provided")


@dataclass
class DeploymentReport:
    context: DeploymentContext
    resources: ResourceRegistry = field(default_factory=ResourceRegistry)
    workflows: dict[str, PollResult] = field(default_factory=dict)
    completed_stages: list[str] = field(default_factory=list)


class DeploymentStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    INCONCLUSIVE = "inconclusive"
    ABORTED = "aborted"


class DeploymentStartRequest(BaseModel):
    project_id: Optional[str] = Field(default=None, description="Overrides GCP_PROJECT_ID")
    region: Optional[str] = Field(default=None, description="Overrides GCP_REGION")
    verify: bool = False


class DeploymentStatusResponse(BaseModel):
    run_id: str
    project_id: str
    region: str
    status: DeploymentStatus
    stage: Optional[str] = None
    completed_stages: list[str] = Field(default_factory=list)
    error: Optional[str] = None
    started_at: datetime
    finished_at: Optional[datetime] = None


class ExecutionStatusResponse(BaseModel):
    workflow: str
    execution_name: Optional[str] = None
    state: str
    remote_state: Optional[str] = None
    start_time: Optional[datetime] = None
    raw: dict[str, Any] = Field(default_factory=dict)
