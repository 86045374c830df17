from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from lakehouse_orchestrator.services.config.lakehouse_resources import DATA_BUCKETS


@dataclass(frozen=True)
class WorkflowSpec:
    """A remote workflow to trigger once per run, in declaration order.

    `parameters` may reference realized resources as `${name.attr}`;
    `required_resources` must all be realized before the trigger is issued.
    """

    name: str
    parameters: Mapping[str, Any] = field(default_factory=dict)
    required_resources: tuple[str, ...] = ()


COPY_DATA_WORKFLOW = WorkflowSpec(
    name="copy-data",
    parameters={
        "project_id": "${provisioning-bucket.project}",
        **{spec_name.replace("-", "_"): f"${{{spec_name}.name}}" for spec_name in DATA_BUCKETS},
    },
    required_resources=("api-workflows", "workflows-sa", "provisioning-bucket", *DATA_BUCKETS),
)

PROJECT_SETUP_WORKFLOW = WorkflowSpec(
    name="project-setup",
    parameters={
        "project_id": "${provisioning-bucket.project}",
        "provisioner_bucket": "${provisioning-bucket.name}",
        "pyspark_script": "${pyspark-script.url}",
        "tables_bucket": "${tables-bucket.name}",
        "spark_logs_bucket": "${spark-logs-bucket.name}",
        "subnet": "${lakehouse-subnet.self_link}",
        "service_account": "${workflows-sa.email}",
    },
    required_resources=("api-workflows", "api-dataproc", "api-bigquery", "pyspark-script", "lakehouse-subnet"),
)

LAKEHOUSE_WORKFLOWS: tuple[WorkflowSpec, ...] = (COPY_DATA_WORKFLOW, PROJECT_SETUP_WORKFLOW)
