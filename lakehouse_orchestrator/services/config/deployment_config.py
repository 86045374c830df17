from __future__ import annotations

import os
from dataclasses import dataclass
from typing import ClassVar, Optional


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid {name}; must be a number") from exc
    if value < 0:
        raise ValueError(f"Invalid {name}; must not be negative")
    return value


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid {name}; must be an integer") from exc
    if value <= 0:
        raise ValueError(f"Invalid {name}; must be positive")
    return value


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class DeploymentConfig:
    """Runtime configuration for one lakehouse deployment.

    Retry defaults mirror the deployment harness the blueprint ships with
    (60 attempts, one minute apart); poll defaults are 150 checks every 5s.
    """

    project_id: str
    region: str
    resource_suffix: str = ""

    retry_max_attempts: int = 60
    retry_delay_seconds: float = 60.0
    retry_backoff_multiplier: float = 1.0

    poll_interval_seconds: float = 5.0
    poll_max_attempts: int = 150
    poll_lookup_mode: str = "most_recent"

    readiness_gate_enabled: bool = True
    api_activation_wait_seconds: float = 30.0
    settle_wait_seconds: float = 300.0

    http_timeout_seconds: float = 30.0

    LOOKUP_MODES: ClassVar[frozenset[str]] = frozenset({"most_recent", "by_handle"})

    def __post_init__(self) -> None:
        if self.poll_lookup_mode not in self.LOOKUP_MODES:
            raise ValueError(
                f"Invalid poll_lookup_mode {self.poll_lookup_mode!r}; expected one of {sorted(self.LOOKUP_MODES)}"
            )

    @staticmethod
    def from_env(*, project_id: Optional[str] = None, region: Optional[str] = None) -> "DeploymentConfig":
        project_id = project_id or os.getenv("GCP_PROJECT_ID") or os.getenv("GOOGLE_CLOUD_PROJECT")
        if not project_id:
            raise ValueError("Missing required environment variable: GCP_PROJECT_ID (or GOOGLE_CLOUD_PROJECT)")

        region = region or os.getenv("GCP_REGION")
        if not region:
            raise ValueError("Missing required environment variable: GCP_REGION")

        return DeploymentConfig(
            project_id=project_id,
            region=region,
            resource_suffix=os.getenv("RESOURCE_SUFFIX", "").strip(),
            retry_max_attempts=_int_env("RETRY_MAX_ATTEMPTS", 60),
            retry_delay_seconds=_float_env("RETRY_DELAY_SECONDS", 60.0),
            retry_backoff_multiplier=_float_env("RETRY_BACKOFF_MULTIPLIER", 1.0),
            poll_interval_seconds=_float_env("POLL_INTERVAL_SECONDS", 5.0),
            poll_max_attempts=_int_env("POLL_MAX_ATTEMPTS", 150),
            poll_lookup_mode=os.getenv("POLL_LOOKUP_MODE", "most_recent").strip() or "most_recent",
            readiness_gate_enabled=_bool_env("READINESS_GATE_ENABLED", True),
            api_activation_wait_seconds=_float_env("API_ACTIVATION_WAIT_SECONDS", 30.0),
            settle_wait_seconds=_float_env("SETTLE_WAIT_SECONDS", 300.0),
            http_timeout_seconds=_float_env("HTTP_TIMEOUT_SECONDS", 30.0),
        )


@dataclass(frozen=True)
class GcpEndpoints:
    """Base URLs of the Google Cloud REST APIs the orchestrator talks to.

    Overridable so tests (or a private service connect setup) can point
    everything at a different host.
    """

    workflow_executions: str = "https://workflowexecutions.googleapis.com"
    storage: str = "https://storage.googleapis.com"
    service_usage: str = "https://serviceusage.googleapis.com"
    compute: str = "https://compute.googleapis.com"
    iam: str = "https://iam.googleapis.com"
    resource_manager: str = "https://cloudresourcemanager.googleapis.com"
    notebooks: str = "https://notebooks.googleapis.com"
    bigquery: str = "https://bigquery.googleapis.com"
    dataproc: str = "https://dataproc.googleapis.com"

    @staticmethod
    def single_host(base_url: str) -> "GcpEndpoints":
        base = base_url.rstrip("/")
        return GcpEndpoints(
            workflow_executions=base,
            storage=base,
            service_usage=base,
            compute=base,
            iam=base,
            resource_manager=base,
            notebooks=base,
            bigquery=base,
            dataproc=base,
        )

    @staticmethod
    def from_env() -> "GcpEndpoints":
        override = os.getenv("GCP_API_ENDPOINT_OVERRIDE")
        if override:
            return GcpEndpoints.single_host(override)
        workflows = os.getenv("WORKFLOW_EXECUTIONS_ENDPOINT")
        if workflows:
            return GcpEndpoints(workflow_executions=workflows.rstrip("/"))
        return GcpEndpoints()
