"""Kubernetes cluster client speaking REST+JSON to the API server."""

from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Any, Optional

import httpx

from ..config import ClusterConfig
from ..constants import (
    DEFAULT_CLUSTER_TIMEOUT,
    SERVICE_ACCOUNT_CA,
    SERVICE_ACCOUNT_TOKEN,
    TOKEN_REFRESH_INTERVAL,
)
from ..contracts import PodHealth, WorkloadSnapshot
from ..errors import ClusterError, ClusterUnreachable, Conflict, WorkloadNotFound
from .base import BaseClusterClient

logger = logging.getLogger(__name__)

STRATEGIC_MERGE_PATCH = "application/strategic-merge-patch+json"


class ServiceAccountAuth(httpx.Auth):
    """Bearer authentication from a static token or a rotating token file.

    Projected service-account tokens are replaced on disk while the process
    runs. The file is re-read once ``refresh_interval`` seconds have passed,
    and once more when the API server answers 401.
    """

    def __init__(
        self,
        token: Optional[str] = None,
        token_file: Optional[str] = None,
        refresh_interval: float = TOKEN_REFRESH_INTERVAL,
    ) -> None:
        self.token = token
        self.token_file = token_file
        self.refresh_interval = refresh_interval
        self._cached: Optional[str] = None
        self._read_at: Optional[float] = None

    @property
    def _rotating(self) -> bool:
        return not self.token and bool(self.token_file)

    def _stale(self) -> bool:
        return (
            self._read_at is None
            or time.monotonic() - self._read_at >= self.refresh_interval
        )

    def _read(self) -> str:
        try:
            with open(self.token_file) as f:
                token = f.read().strip()
        except OSError as exc:
            raise ClusterError(f"cannot read token file {self.token_file}: {exc}") from exc
        self._cached, self._read_at = token, time.monotonic()
        return token

    @staticmethod
    def _apply(request: httpx.Request, token: Optional[str]) -> None:
        if token:
            request.headers["Authorization"] = f"Bearer {token}"

    def sync_auth_flow(self, request: httpx.Request):
        if not self._rotating:
            self._apply(request, self.token)
            yield request
            return
        token = self._read() if self._stale() else self._cached
        self._apply(request, token)
        response = yield request
        if response.status_code == 401:
            fresh = self._read()
            if fresh != token:
                self._apply(request, fresh)
                yield request

    async def async_auth_flow(self, request: httpx.Request):
        if not self._rotating:
            self._apply(request, self.token)
            yield request
            return
        token = await asyncio.to_thread(self._read) if self._stale() else self._cached
        self._apply(request, token)
        response = yield request
        if response.status_code == 401:
            fresh = await asyncio.to_thread(self._read)
            if fresh != token:
                logger.info(f"Retrying with rotated token from {self.token_file}")
                self._apply(request, fresh)
                yield request


class KubernetesClusterClient(BaseClusterClient):
    """Manage ``apps/v1`` Deployments through the Kubernetes API.

    The workload revision is the Deployment's ``metadata.resourceVersion``.
    Passing it back on a patch makes the API server reject the write with
    409 when someone else changed the Deployment in between.
    """

    def __init__(
        self,
        api_server: str,
        token: Optional[str] = None,
        token_file: Optional[str] = None,
        ca_cert: Optional[str] = None,
        verify_ssl: bool = True,
        timeout: float = DEFAULT_CLUSTER_TIMEOUT,
        token_refresh_interval: float = TOKEN_REFRESH_INTERVAL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_server = api_server.rstrip("/")
        self.token = token
        self.token_file = token_file
        self.ca_cert = ca_cert
        self.verify_ssl = verify_ssl
        self.timeout = timeout
        self._auth = ServiceAccountAuth(token, token_file, token_refresh_interval)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_config(cls, config: ClusterConfig) -> "KubernetesClusterClient":
        """Build a client from config, falling back to in-cluster settings."""
        api_server = config.api_server
        token_file = config.token_file
        ca_cert = config.ca_cert
        if not api_server:
            host = os.getenv("KUBERNETES_SERVICE_HOST")
            port = os.getenv("KUBERNETES_SERVICE_PORT", "443")
            if not host:
                raise ClusterError(
                    "No Kubernetes API server configured and not running in-cluster"
                )
            api_server = f"https://{host}:{port}"
            if not config.token and not token_file and os.path.exists(SERVICE_ACCOUNT_TOKEN):
                token_file = SERVICE_ACCOUNT_TOKEN
            if not ca_cert and os.path.exists(SERVICE_ACCOUNT_CA):
                ca_cert = SERVICE_ACCOUNT_CA
        return cls(
            api_server,
            token=config.token,
            token_file=token_file,
            ca_cert=ca_cert,
            verify_ssl=config.verify_ssl,
            timeout=config.timeout,
            token_refresh_interval=config.token_refresh_interval,
        )

    # ------------------------------------------------------------------
    # Connection management
    async def connect(self) -> None:
        """Create the underlying HTTP client."""
        verify: Any = self.ca_cert if self.ca_cert and self.verify_ssl else self.verify_ssl
        kwargs: dict[str, Any] = {
            "base_url": self.api_server,
            "headers": {"Accept": "application/json"},
            "auth": self._auth,
            "timeout": httpx.Timeout(self.timeout),
        }
        if self._transport is not None:
            kwargs["transport"] = self._transport
        else:
            kwargs["verify"] = verify
        self._client = httpx.AsyncClient(**kwargs)

    async def disconnect(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self, method: str, path: str, name: str, namespace: str, **kwargs: Any
    ) -> dict[str, Any]:
        if self._client is None:
            await self.connect()
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise ClusterUnreachable(
                f"{method} {path} timed out after {self.timeout}s"
            ) from exc
        except httpx.TransportError as exc:
            raise ClusterUnreachable(f"{method} {path} failed: {exc}") from exc

        if response.status_code == 404:
            raise WorkloadNotFound(name, namespace)
        if response.status_code == 409:
            raise Conflict(_status_message(response))
        if response.status_code >= 500:
            raise ClusterUnreachable(
                f"{method} {path} returned {response.status_code}: {_status_message(response)}"
            )
        if response.status_code >= 400:
            raise ClusterError(
                f"{method} {path} returned {response.status_code}: {_status_message(response)}"
            )
        return response.json()

    async def _get_deployment(self, name: str, namespace: str) -> dict[str, Any]:
        return await self._request(
            "GET", f"/apis/apps/v1/namespaces/{namespace}/deployments/{name}", name, namespace
        )

    # ------------------------------------------------------------------
    # Cluster API
    async def get_workload(
        self, name: str, namespace: str, container: Optional[str] = None
    ) -> WorkloadSnapshot:
        deployment = await self._get_deployment(name, namespace)
        spec_container = _select_container(deployment, container)
        if spec_container is None:
            raise WorkloadNotFound(f"{name}[{container}]", namespace)
        spec = deployment.get("spec", {})
        status = deployment.get("status", {})
        return WorkloadSnapshot(
            name=name,
            namespace=namespace,
            container=spec_container["name"],
            desired_image=spec_container.get("image", ""),
            replica_count=spec.get("replicas", 1),
            ready_replicas=status.get("readyReplicas", 0),
            revision=str(deployment["metadata"]["resourceVersion"]),
        )

    async def patch_image(
        self,
        name: str,
        namespace: str,
        image: str,
        container: Optional[str] = None,
        expected_revision: Optional[str] = None,
    ) -> str:
        if container is None:
            container = (await self.get_workload(name, namespace)).container
        body: dict[str, Any] = {
            "spec": {
                "template": {"spec": {"containers": [{"name": container, "image": image}]}}
            }
        }
        if expected_revision is not None:
            body["metadata"] = {"resourceVersion": expected_revision}
        logger.debug(f"Patching {namespace}/{name} container {container} -> {image}")
        deployment = await self._request(
            "PATCH",
            f"/apis/apps/v1/namespaces/{namespace}/deployments/{name}",
            name,
            namespace,
            json=body,
            headers={"Content-Type": STRATEGIC_MERGE_PATCH},
        )
        return str(deployment["metadata"]["resourceVersion"])

    async def get_pod_health(
        self, name: str, namespace: str, container: Optional[str] = None
    ) -> PodHealth:
        deployment = await self._get_deployment(name, namespace)
        spec_container = _select_container(deployment, container)
        if spec_container is None:
            raise WorkloadNotFound(f"{name}[{container}]", namespace)
        match_labels = deployment.get("spec", {}).get("selector", {}).get("matchLabels")
        if not match_labels:
            raise ClusterError(f"{namespace}/{name} has no matchLabels selector")
        selector = ",".join(f"{k}={v}" for k, v in sorted(match_labels.items()))
        pods = await self._request(
            "GET",
            f"/api/v1/namespaces/{namespace}/pods",
            name,
            namespace,
            params={"labelSelector": selector},
        )

        ready = total = 0
        for pod in pods.get("items", []):
            if pod.get("metadata", {}).get("deletionTimestamp"):
                continue
            total += 1
            if _pod_ready(pod) and _pod_image(pod, spec_container["name"]) == spec_container.get("image"):
                ready += 1
        return PodHealth(ready=ready, total=total)


def _status_message(response: httpx.Response) -> str:
    try:
        return response.json().get("message", response.text)
    except ValueError:
        return response.text


def _select_container(deployment: dict[str, Any], name: Optional[str]) -> Optional[dict[str, Any]]:
    containers = (
        deployment.get("spec", {}).get("template", {}).get("spec", {}).get("containers", [])
    )
    if not containers:
        return None
    if name is None:
        return containers[0]
    return next((c for c in containers if c.get("name") == name), None)


def _pod_ready(pod: dict[str, Any]) -> bool:
    conditions = pod.get("status", {}).get("conditions", [])
    return any(c.get("type") == "Ready" and c.get("status") == "True" for c in conditions)


def _pod_image(pod: dict[str, Any], container: str) -> Optional[str]:
    for c in pod.get("spec", {}).get("containers", []):
        if c.get("name") == container:
            return c.get("image")
    return None
