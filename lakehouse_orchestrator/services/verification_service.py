from __future__ import annotations

import asyncio
import logging
from typing import Any

from lakehouse_orchestrator.models.deployment import DeploymentContext
from lakehouse_orchestrator.services.config import GcpEndpoints
from lakehouse_orchestrator.services.errors import GcpApiError, VerificationError
from lakehouse_orchestrator.services.gcp_client import GcpRestClient
from lakehouse_orchestrator.services.retry_service import RetryPolicy, Sleep, run_with_retry


logger = logging.getLogger(__name__)


# Tables the two workflows are expected to have populated.
EXPECTED_TABLES: tuple[str, ...] = (
    "gcp_primary_raw.ga4_obfuscated_sample_ecommerce_images",
    "gcp_primary_raw.textocr_images",
    "gcp_primary_staging.new_york_taxi_trips_tlc_yellow_trips_2022",
    "gcp_primary_staging.thelook_ecommerce_distribution_centers",
    "gcp_primary_staging.thelook_ecommerce_events",
    "gcp_primary_staging.thelook_ecommerce_inventory_items",
    "gcp_primary_staging.thelook_ecommerce_order_items",
    "gcp_primary_staging.thelook_ecommerce_orders",
    "gcp_primary_staging.thelook_ecommerce_products",
    "gcp_primary_staging.thelook_ecommerce_users",
    "gcp_lakehouse_ds.agg_events_iceberg",
)


class DeploymentVerifier:
    """Post-deployment checks against what the workflows should have produced.

    - every expected BigQuery table has at least one row
    - exactly one Dataproc cluster (the persistent history server) exists, stopped
    """

    def __init__(
        self,
        *,
        client: GcpRestClient,
        endpoints: GcpEndpoints,
        retry_policy: RetryPolicy,
        tables: tuple[str, ...] = EXPECTED_TABLES,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._client = client
        self._endpoints = endpoints
        self._retry_policy = retry_policy
        self._tables = tables
        self._sleep = sleep

    async def verify(self, context: DeploymentContext) -> None:
        failures: list[str] = []

        for table in self._tables:
            try:
                count = await self.table_row_count(context, table)
            except GcpApiError as exc:
                failures.append(f"{table}: query failed ({exc})")
                continue
            if count <= 0:
                failures.append(f"{table}: table is empty")

        clusters = await self.dataproc_clusters(context)
        if len(clusters) != 1:
            failures.append(f"expected exactly one Dataproc cluster, found {len(clusters)}")
        else:
            state = str((clusters[0].get("status") or {}).get("state") or "")
            if state != "TERMINATED":
                failures.append(f"Dataproc cluster {clusters[0].get('clusterName')!r} is {state or 'UNKNOWN'}, not TERMINATED")

        if failures:
            for failure in failures:
                logger.error("Verification failed: %s", failure)
            raise VerificationError(failures)
        logger.info("Verification passed (%d tables, 1 Dataproc cluster)", len(self._tables))

    async def table_row_count(self, context: DeploymentContext, table: str) -> int:
        query = f"SELECT count(*) AS count FROM `{context.project_id}.{table}`;"
        resp = await run_with_retry(
            lambda: self._client.request_json(
                "POST",
                f"{self._endpoints.bigquery}/bigquery/v2/projects/{context.project_id}/queries",
                json_body={"query": query, "useLegacySql": False},
            ),
            policy=self._retry_policy,
            description=f"count rows of {table}",
            sleep=self._sleep,
        )
        # {"rows": [{"f": [{"v": "123"}]}], ...}
        try:
            return int(resp["rows"][0]["f"][0]["v"])
        except (KeyError, IndexError, TypeError, ValueError):
            return 0

    async def dataproc_clusters(self, context: DeploymentContext) -> list[dict[str, Any]]:
        resp = await run_with_retry(
            lambda: self._client.request_json(
                "GET",
                f"{self._endpoints.dataproc}/v1/projects/{context.project_id}/regions/{context.region}/clusters",
            ),
            policy=self._retry_policy,
            description="list Dataproc clusters",
            sleep=self._sleep,
        )
        return [c for c in (resp.get("clusters") or []) if isinstance(c, dict)]

    async def compute_instance_count(self, context: DeploymentContext) -> int:
        resp = await run_with_retry(
            lambda: self._client.request_json(
                "GET",
                f"{self._endpoints.compute}/compute/v1/projects/{context.project_id}/aggregated/instances",
            ),
            policy=self._retry_policy,
            description="list compute instances",
            sleep=self._sleep,
        )
        items = resp.get("items") or {}
        return sum(len(scope.get("instances") or []) for scope in items.values() if isinstance(scope, dict))

    async def await_instances_drained(
        self,
        context: DeploymentContext,
        *,
        interval_seconds: float = 30.0,
        max_attempts: int = 120,
        allowed: int = 1,
    ) -> int:
        """Wait until at most `allowed` VMs remain before tearing down.

        The Dataproc history server is the one instance expected to stay.
        Returns the number of polls used.
        """

        for attempt in range(1, max_attempts + 1):
            count = await self.compute_instance_count(context)
            if count <= allowed:
                return attempt
            logger.info("%d compute instances still present (poll %d/%d)", count, attempt, max_attempts)
            if attempt < max_attempts:
                await self._sleep(interval_seconds)
        raise VerificationError([f"compute instances still running after {max_attempts} polls"])
