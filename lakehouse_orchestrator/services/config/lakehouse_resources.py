"""Static resource declarations for the analytics lakehouse.

Plain data: the provisioner decides ordering from `depends_on` plus any
`${name.attr}` references inside attributes.
"""

from __future__ import annotations

from pathlib import Path

from lakehouse_orchestrator.models.deployment import DeploymentContext
from lakehouse_orchestrator.models.resources import ResourceKind, ResourceSpec


PROJECT_SERVICES: tuple[str, ...] = (
    "bigquery.googleapis.com",
    "bigqueryconnection.googleapis.com",
    "bigquerystorage.googleapis.com",
    "biglake.googleapis.com",
    "cloudresourcemanager.googleapis.com",
    "compute.googleapis.com",
    "dataplex.googleapis.com",
    "dataproc.googleapis.com",
    "iam.googleapis.com",
    "notebooks.googleapis.com",
    "serviceusage.googleapis.com",
    "storage.googleapis.com",
    "workflows.googleapis.com",
)

WORKFLOWS_SERVICE_ACCOUNT_ROLES: tuple[str, ...] = (
    "roles/workflows.admin",
    "roles/run.invoker",
    "roles/iam.serviceAccountTokenCreator",
    "roles/storage.objectAdmin",
    "roles/bigquery.connectionAdmin",
    "roles/bigquery.jobUser",
    "roles/bigquery.dataEditor",
    "roles/bigquery.admin",
    "roles/logging.logWriter",
    "roles/iam.serviceAccountUser",
    "roles/biglake.admin",
    "roles/dataproc.admin",
    "roles/dataproc.worker",
    "roles/dataplex.admin",
)

# Data buckets populated by the copy-data workflow, keyed by spec name.
DATA_BUCKETS: dict[str, str] = {
    "raw-bucket": "gcp-lakehouse-raw",
    "edw-export-bucket": "gcp-lakehouse-edw-export",
    "textocr-images-bucket": "gcp-lakehouse-textocr-images",
    "ga4-images-bucket": "gcp-lakehouse-ga4-images",
    "tables-bucket": "gcp-lakehouse-tables",
    "spark-logs-bucket": "gcp-lakehouse-spark-logs",
}

DEFAULT_ASSETS_DIR = Path(__file__).resolve().parents[2] / "assets"


def _suffixed(name: str, suffix: str) -> str:
    return f"{name}-{suffix}" if suffix else name


def lakehouse_resource_specs(context: DeploymentContext, *, assets_dir: Path = DEFAULT_ASSETS_DIR) -> list[ResourceSpec]:
    suffix = context.resource_suffix
    service_names = [f"api-{service.split('.')[0]}" for service in PROJECT_SERVICES]

    specs: list[ResourceSpec] = [
        ResourceSpec(kind=ResourceKind.PROJECT_SERVICE, name=spec_name, attributes={"service": service})
        for spec_name, service in zip(service_names, PROJECT_SERVICES)
    ]

    storage_api = ("api-storage",)
    specs.append(
        ResourceSpec(
            kind=ResourceKind.STORAGE_BUCKET,
            name="provisioning-bucket",
            attributes={"bucket": _suffixed("gcp-lakehouse-provisioner", suffix), "location": context.region},
            depends_on=storage_api,
        )
    )
    specs.extend(
        ResourceSpec(
            kind=ResourceKind.STORAGE_BUCKET,
            name=spec_name,
            attributes={"bucket": _suffixed(bucket, suffix), "location": context.region},
            depends_on=storage_api,
        )
        for spec_name, bucket in DATA_BUCKETS.items()
    )

    specs.extend(
        [
            ResourceSpec(
                kind=ResourceKind.STORAGE_OBJECT,
                name="pyspark-script",
                attributes={
                    "bucket": "${provisioning-bucket.name}",
                    "object": "bigquery.py",
                    "source": str(assets_dir / "bigquery.py"),
                    "content_type": "text/x-python",
                },
            ),
            ResourceSpec(
                kind=ResourceKind.STORAGE_OBJECT,
                name="notebook-startup-script",
                attributes={
                    "bucket": "${provisioning-bucket.name}",
                    "object": "startup.sh",
                    "source": str(assets_dir / "startup.sh"),
                    "content_type": "text/x-sh",
                },
            ),
            ResourceSpec(
                kind=ResourceKind.NETWORK,
                name="lakehouse-network",
                attributes={"network": "gcp-lakehouse-network", "auto_create_subnetworks": False},
                depends_on=("api-compute",),
            ),
            ResourceSpec(
                kind=ResourceKind.SUBNETWORK,
                name="lakehouse-subnet",
                attributes={
                    "subnetwork": "gcp-lakehouse-subnet",
                    "region": context.region,
                    "network": "${lakehouse-network.self_link}",
                    "ip_cidr_range": "10.3.0.0/16",
                    "private_ip_google_access": True,
                },
            ),
            ResourceSpec(
                kind=ResourceKind.SERVICE_ACCOUNT,
                name="workflows-sa",
                attributes={"account_id": "workflows-sa", "display_name": "Workflows Service Account"},
                depends_on=("api-iam",),
            ),
        ]
    )

    specs.extend(
        ResourceSpec(
            kind=ResourceKind.IAM_BINDING,
            name=f"workflows-sa-{role.split('/')[-1].replace('.', '-')}",
            attributes={"role": role, "member": "serviceAccount:${workflows-sa.email}"},
            depends_on=("api-cloudresourcemanager",),
        )
        for role in WORKFLOWS_SERVICE_ACCOUNT_ROLES
    )

    specs.append(
        ResourceSpec(
            kind=ResourceKind.NOTEBOOK_INSTANCE,
            name="lakehouse-notebook",
            attributes={
                "instance": "gcp-lakehouse-notebook",
                "zone": f"{context.region}-a",
                "machine_type": "e2-standard-2",
                "network": "${lakehouse-network.self_link}",
                "subnet": "${lakehouse-subnet.self_link}",
                "service_account": "${workflows-sa.email}",
                "post_startup_script": "${notebook-startup-script.url}",
            },
            depends_on=("api-notebooks",),
        )
    )
    return specs
