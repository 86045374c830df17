from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping, Optional
from urllib.parse import quote

from lakehouse_orchestrator.models.deployment import DeploymentContext
from lakehouse_orchestrator.models.resources import ResourceKind
from lakehouse_orchestrator.services.config import GcpEndpoints
from lakehouse_orchestrator.services.errors import ConcurrentUpdateError, GcpApiError, ProvisioningError
from lakehouse_orchestrator.services.gcp_client import GcpRestClient
from lakehouse_orchestrator.services.retry_service import Sleep


logger = logging.getLogger(__name__)

Identity = dict[str, str]
_Handler = Callable[[DeploymentContext, Mapping[str, Any]], Awaitable[Identity]]


class GcpControlPlane:
    """Creates lakehouse resources through the Google Cloud REST APIs.

    `create` raises ResourceAlreadyExistsError on a creation conflict; the
    provisioner then calls `describe_existing` to recover the identity.

    Compute, Service Usage and Notebooks answer with a long-running operation.
    `create` polls it until done and raises GcpApiError carrying the
    operation's own error text, so transient failures reported only through
    the operation (zone capacity) reach the retry classifier.
    """

    def __init__(
        self,
        *,
        client: GcpRestClient,
        endpoints: GcpEndpoints,
        operation_poll_interval_seconds: float = 5.0,
        operation_max_polls: int = 180,
        policy_write_attempts: int = 5,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if operation_max_polls < 1 or policy_write_attempts < 1:
            raise ValueError("operation_max_polls and policy_write_attempts must be >= 1")
        self._client = client
        self._endpoints = endpoints
        self._operation_poll_interval = operation_poll_interval_seconds
        self._operation_max_polls = operation_max_polls
        self._policy_write_attempts = policy_write_attempts
        self._sleep = sleep
        self._creators: dict[ResourceKind, _Handler] = {
            ResourceKind.PROJECT_SERVICE: self._enable_service,
            ResourceKind.STORAGE_BUCKET: self._create_bucket,
            ResourceKind.STORAGE_OBJECT: self._upload_object,
            ResourceKind.NETWORK: self._create_network,
            ResourceKind.SUBNETWORK: self._create_subnetwork,
            ResourceKind.SERVICE_ACCOUNT: self._create_service_account,
            ResourceKind.IAM_BINDING: self._grant_role,
            ResourceKind.NOTEBOOK_INSTANCE: self._create_notebook_instance,
        }

    async def create(self, context: DeploymentContext, kind: ResourceKind, attributes: Mapping[str, Any]) -> Identity:
        creator = self._creators.get(kind)
        if creator is None:
            raise ProvisioningError(f"Unsupported resource kind: {kind}")
        return await creator(context, attributes)

    async def describe_existing(
        self, context: DeploymentContext, kind: ResourceKind, attributes: Mapping[str, Any]
    ) -> Identity:
        if kind is ResourceKind.STORAGE_BUCKET:
            bucket = _required(attributes, "bucket")
            # Bucket names are global: a 409 may mean another project owns it.
            try:
                await self._client.request_json("GET", f"{self._endpoints.storage}/storage/v1/b/{quote(bucket, safe='')}")
            except GcpApiError as exc:
                raise ProvisioningError(f"Bucket {bucket!r} exists but is not accessible from this project") from exc
        return self._identity(context, kind, attributes)

    # -----------------
    # Creators
    # -----------------

    async def _enable_service(self, context: DeploymentContext, attributes: Mapping[str, Any]) -> Identity:
        service = _required(attributes, "service")
        operation = await self._client.request_json(
            "POST",
            f"{self._endpoints.service_usage}/v1/projects/{context.project_id}/services/{service}:enable",
            json_body={},
        )
        await self._await_operation(operation, base_url=self._endpoints.service_usage)
        return self._identity(context, ResourceKind.PROJECT_SERVICE, attributes)

    async def _create_bucket(self, context: DeploymentContext, attributes: Mapping[str, Any]) -> Identity:
        bucket = _required(attributes, "bucket")
        await self._client.request_json(
            "POST",
            f"{self._endpoints.storage}/storage/v1/b",
            params={"project": context.project_id},
            json_body={
                "name": bucket,
                "location": attributes.get("location") or context.region,
                "iamConfiguration": {"uniformBucketLevelAccess": {"enabled": True}},
            },
        )
        return self._identity(context, ResourceKind.STORAGE_BUCKET, attributes)

    async def _upload_object(self, context: DeploymentContext, attributes: Mapping[str, Any]) -> Identity:
        bucket = _required(attributes, "bucket")
        object_name = _required(attributes, "object")
        source = Path(_required(attributes, "source"))
        if not source.exists() or not source.is_file():
            raise ProvisioningError(f"Artifact not found for gs://{bucket}/{object_name}: {source}")

        # Uploads overwrite, so re-running is naturally idempotent.
        await self._client.request_json(
            "POST",
            f"{self._endpoints.storage}/upload/storage/v1/b/{quote(bucket, safe='')}/o",
            params={"uploadType": "media", "name": object_name},
            data=source.read_bytes(),
            headers={"Content-Type": str(attributes.get("content_type") or "application/octet-stream")},
        )
        return self._identity(context, ResourceKind.STORAGE_OBJECT, attributes)

    async def _create_network(self, context: DeploymentContext, attributes: Mapping[str, Any]) -> Identity:
        network = _required(attributes, "network")
        operation = await self._client.request_json(
            "POST",
            f"{self._endpoints.compute}/compute/v1/projects/{context.project_id}/global/networks",
            json_body={
                "name": network,
                "autoCreateSubnetworks": bool(attributes.get("auto_create_subnetworks", False)),
            },
        )
        await self._await_compute_operation(context, operation)
        return self._identity(context, ResourceKind.NETWORK, attributes)

    async def _create_subnetwork(self, context: DeploymentContext, attributes: Mapping[str, Any]) -> Identity:
        subnetwork = _required(attributes, "subnetwork")
        region = attributes.get("region") or context.region
        operation = await self._client.request_json(
            "POST",
            f"{self._endpoints.compute}/compute/v1/projects/{context.project_id}/regions/{region}/subnetworks",
            json_body={
                "name": subnetwork,
                "network": _required(attributes, "network"),
                "ipCidrRange": _required(attributes, "ip_cidr_range"),
                "privateIpGoogleAccess": bool(attributes.get("private_ip_google_access", True)),
            },
        )
        await self._await_compute_operation(context, operation)
        return self._identity(context, ResourceKind.SUBNETWORK, attributes)

    async def _create_service_account(self, context: DeploymentContext, attributes: Mapping[str, Any]) -> Identity:
        account_id = _required(attributes, "account_id")
        await self._client.request_json(
            "POST",
            f"{self._endpoints.iam}/v1/projects/{context.project_id}/serviceAccounts",
            json_body={
                "accountId": account_id,
                "serviceAccount": {"displayName": str(attributes.get("display_name") or account_id)},
            },
        )
        return self._identity(context, ResourceKind.SERVICE_ACCOUNT, attributes)

    async def _grant_role(self, context: DeploymentContext, attributes: Mapping[str, Any]) -> Identity:
        role = _required(attributes, "role")
        member = _required(attributes, "member")
        base = f"{self._endpoints.resource_manager}/v1/projects/{context.project_id}"

        # Read-modify-write guarded by the policy etag; a stale etag means re-read.
        for attempt in range(1, self._policy_write_attempts + 1):
            policy = await self._client.request_json("POST", f"{base}:getIamPolicy", json_body={})
            bindings: list[dict[str, Any]] = list(policy.get("bindings") or [])
            binding = next((b for b in bindings if b.get("role") == role), None)
            if binding is None:
                binding = {"role": role, "members": []}
                bindings.append(binding)
            members = list(binding.get("members") or [])
            if member in members:
                logger.debug("IAM binding already present (role=%s member=%s)", role, member)
                break

            binding["members"] = members + [member]
            policy["bindings"] = bindings
            try:
                await self._client.request_json("POST", f"{base}:setIamPolicy", json_body={"policy": policy})
                break
            except ConcurrentUpdateError:
                if attempt >= self._policy_write_attempts:
                    raise
                logger.info(
                    "IAM policy changed concurrently, re-reading (role=%s attempt=%d/%d)",
                    role,
                    attempt,
                    self._policy_write_attempts,
                )
                await self._sleep(self._operation_poll_interval)
        return self._identity(context, ResourceKind.IAM_BINDING, attributes)

    async def _create_notebook_instance(self, context: DeploymentContext, attributes: Mapping[str, Any]) -> Identity:
        instance = _required(attributes, "instance")
        zone = attributes.get("zone") or f"{context.region}-a"
        body: dict[str, Any] = {
            "machineType": str(attributes.get("machine_type") or "e2-standard-2"),
            "vmImage": {"project": "deeplearning-platform-release", "imageFamily": "common-cpu-notebooks"},
            "network": _required(attributes, "network"),
            "subnet": _required(attributes, "subnet"),
            "serviceAccount": _required(attributes, "service_account"),
            "noPublicIp": True,
        }
        if attributes.get("post_startup_script"):
            body["postStartupScript"] = str(attributes["post_startup_script"])

        operation = await self._client.request_json(
            "POST",
            f"{self._endpoints.notebooks}/v1/projects/{context.project_id}/locations/{zone}/instances",
            params={"instanceId": instance},
            json_body=body,
        )
        await self._await_operation(operation, base_url=self._endpoints.notebooks)
        return self._identity(context, ResourceKind.NOTEBOOK_INSTANCE, attributes)

    # -----------------
    # Long-running operations
    # -----------------

    async def _await_compute_operation(self, context: DeploymentContext, operation: dict[str, Any]) -> dict[str, Any]:
        name = str(operation.get("name") or "")
        scope = "global"
        if operation.get("zone"):
            scope = f"zones/{_last_segment(operation['zone'])}"
        elif operation.get("region"):
            scope = f"regions/{_last_segment(operation['region'])}"
        url = f"{self._endpoints.compute}/compute/v1/projects/{context.project_id}/{scope}/operations/{name}"
        return await self._await_operation(operation, url=url)

    async def _await_operation(
        self, operation: dict[str, Any], *, base_url: str = "", url: str = ""
    ) -> dict[str, Any]:
        """Poll a long-running operation until it is done.

        Compute operations report `status: DONE`; google.longrunning
        operations (Service Usage, Notebooks) report `done: true` and are read
        back at `{base_url}/v1/{name}`. An empty body means the call completed
        synchronously.
        """

        name = str(operation.get("name") or "")
        polls = 0
        while not _operation_done(operation):
            if not name:
                raise ProvisioningError(f"Unfinished operation has no name: {operation}")
            if polls >= self._operation_max_polls:
                raise ProvisioningError(f"Operation {name} still running after {polls} polls")
            await self._sleep(self._operation_poll_interval)
            operation = await self._client.request_json("GET", url or f"{base_url}/v1/{name}")
            polls += 1

        message = _operation_error(operation)
        if message is not None:
            logger.warning("Operation %s failed: %s", name, message)
            raise GcpApiError(message, payload=operation)
        return operation

    # -----------------
    # Identities
    # -----------------

    @staticmethod
    def _identity(context: DeploymentContext, kind: ResourceKind, attributes: Mapping[str, Any]) -> Identity:
        project = context.project_id
        if kind is ResourceKind.PROJECT_SERVICE:
            return {"name": str(attributes["service"]), "project": project}
        if kind is ResourceKind.STORAGE_BUCKET:
            bucket = str(attributes["bucket"])
            return {"name": bucket, "url": f"gs://{bucket}", "project": project}
        if kind is ResourceKind.STORAGE_OBJECT:
            bucket = str(attributes["bucket"])
            name = str(attributes["object"])
            return {"name": name, "bucket": bucket, "url": f"gs://{bucket}/{name}", "project": project}
        if kind is ResourceKind.NETWORK:
            network = str(attributes["network"])
            return {"name": network, "self_link": f"projects/{project}/global/networks/{network}", "project": project}
        if kind is ResourceKind.SUBNETWORK:
            subnetwork = str(attributes["subnetwork"])
            region = attributes.get("region") or context.region
            return {
                "name": subnetwork,
                "self_link": f"projects/{project}/regions/{region}/subnetworks/{subnetwork}",
                "project": project,
            }
        if kind is ResourceKind.SERVICE_ACCOUNT:
            email = f"{attributes['account_id']}@{project}.iam.gserviceaccount.com"
            return {"name": f"projects/{project}/serviceAccounts/{email}", "email": email, "project": project}
        if kind is ResourceKind.IAM_BINDING:
            return {"role": str(attributes["role"]), "member": str(attributes["member"]), "project": project}
        if kind is ResourceKind.NOTEBOOK_INSTANCE:
            zone = attributes.get("zone") or f"{context.region}-a"
            return {"name": f"projects/{project}/locations/{zone}/instances/{attributes['instance']}", "project": project}
        raise ProvisioningError(f"Unsupported resource kind: {kind}")


def _operation_done(operation: Mapping[str, Any]) -> bool:
    return not operation or operation.get("done") is True or operation.get("status") == "DONE"


def _operation_error(operation: Mapping[str, Any]) -> Optional[str]:
    # Compute: {"httpErrorStatusCode": 503, "error": {"errors": [{"code": ..., "message": ...}]}}
    # longrunning: {"error": {"code": 8, "message": ...}}
    error = operation.get("error")
    if not isinstance(error, dict):
        return None
    errors = error.get("errors")
    if isinstance(errors, list) and errors:
        code = operation.get("httpErrorStatusCode") or errors[0].get("code")
        details = "; ".join(str(e.get("message") or e.get("code") or "") for e in errors)
    else:
        code = error.get("code")
        details = str(error.get("message") or "")
    return f"Error {code}: {details}".strip()


def _last_segment(value: Any) -> str:
    return str(value).rstrip("/").rsplit("/", 1)[-1]


def _required(attributes: Mapping[str, Any], key: str) -> str:
    value = attributes.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ProvisioningError(f"Missing required resource attribute: {key!r}")
    return str(value)
