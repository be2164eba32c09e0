"""KubernetesClusterClient tests against a mocked API server."""

import json

import httpx
import pytest

from rollkeeper.cluster.kubernetes import KubernetesClusterClient
from rollkeeper.config import ClusterConfig
from rollkeeper.errors import ClusterError, ClusterUnreachable, Conflict, WorkloadNotFound

DEPLOYMENT_PATH = "/apis/apps/v1/namespaces/default/deployments/fe"
PODS_PATH = "/api/v1/namespaces/default/pods"


def _deployment(image="devrahul16/fe:41", replicas=3, resource_version="100"):
    return {
        "metadata": {"name": "fe", "namespace": "default", "resourceVersion": resource_version},
        "spec": {
            "replicas": replicas,
            "selector": {"matchLabels": {"app": "fe", "tier": "web"}},
            "template": {
                "spec": {
                    "containers": [
                        {"name": "fe", "image": image},
                        {"name": "proxy", "image": "envoy:1.30"},
                    ]
                }
            },
        },
        "status": {"replicas": replicas, "readyReplicas": 2},
    }


def _pod(image, ready=True, terminating=False):
    pod = {
        "metadata": {"name": "fe-x"},
        "spec": {"containers": [{"name": "fe", "image": image}]},
        "status": {"conditions": [{"type": "Ready", "status": "True" if ready else "False"}]},
    }
    if terminating:
        pod["metadata"]["deletionTimestamp"] = "2026-01-01T00:00:00Z"
    return pod


def _client(handler, **kwargs) -> KubernetesClusterClient:
    return KubernetesClusterClient(
        "https://k8s.test", transport=httpx.MockTransport(handler), **kwargs
    )


@pytest.mark.asyncio
async def test_get_workload_parses_deployment():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == DEPLOYMENT_PATH
        return httpx.Response(200, json=_deployment())

    client = _client(handler)
    snapshot = await client.get_workload("fe", "default")

    assert snapshot.container == "fe"
    assert snapshot.desired_image == "devrahul16/fe:41"
    assert snapshot.replica_count == 3
    assert snapshot.ready_replicas == 2
    assert snapshot.revision == "100"

    proxy = await client.get_workload("fe", "default", container="proxy")
    assert proxy.desired_image == "envoy:1.30"
    await client.disconnect()


@pytest.mark.asyncio
async def test_get_workload_unknown_container():
    client = _client(lambda request: httpx.Response(200, json=_deployment()))
    with pytest.raises(WorkloadNotFound):
        await client.get_workload("fe", "default", container="missing")


@pytest.mark.asyncio
async def test_patch_image_sends_strategic_merge_with_revision():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "PATCH"
        seen["content_type"] = request.headers["content-type"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_deployment("devrahul16/fe:42", resource_version="101"))

    client = _client(handler)
    revision = await client.patch_image(
        "fe", "default", "devrahul16/fe:42", container="fe", expected_revision="100"
    )

    assert revision == "101"
    assert seen["content_type"] == "application/strategic-merge-patch+json"
    assert seen["body"]["metadata"] == {"resourceVersion": "100"}
    assert seen["body"]["spec"]["template"]["spec"]["containers"] == [
        {"name": "fe", "image": "devrahul16/fe:42"}
    ]


@pytest.mark.asyncio
async def test_patch_without_container_targets_first_container():
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "PATCH":
            bodies.append(json.loads(request.content))
        return httpx.Response(200, json=_deployment())

    client = _client(handler)
    await client.patch_image("fe", "default", "devrahul16/fe:42")

    assert "metadata" not in bodies[0]
    assert bodies[0]["spec"]["template"]["spec"]["containers"][0]["name"] == "fe"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, error",
    [
        (404, WorkloadNotFound),
        (409, Conflict),
        (500, ClusterUnreachable),
        (503, ClusterUnreachable),
        (403, ClusterError),
    ],
)
async def test_status_codes_map_to_errors(status, error):
    client = _client(
        lambda request: httpx.Response(status, json={"kind": "Status", "message": "nope"})
    )
    with pytest.raises(error):
        await client.patch_image(
            "fe", "default", "devrahul16/fe:42", container="fe", expected_revision="1"
        )


@pytest.mark.asyncio
async def test_timeout_is_reported_as_unreachable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    client = _client(handler, timeout=0.5)
    with pytest.raises(ClusterUnreachable) as exc_info:
        await client.get_workload("fe", "default")
    assert "timed out after 0.5s" in str(exc_info.value)


@pytest.mark.asyncio
async def test_connection_error_is_reported_as_unreachable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler)
    with pytest.raises(ClusterUnreachable):
        await client.get_pod_health("fe", "default")


@pytest.mark.asyncio
async def test_pod_health_counts_ready_pods_on_desired_image():
    selectors = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == PODS_PATH:
            selectors.append(request.url.params["labelSelector"])
            return httpx.Response(
                200,
                json={
                    "items": [
                        _pod("devrahul16/fe:42"),
                        _pod("devrahul16/fe:42"),
                        _pod("devrahul16/fe:42", ready=False),
                        _pod("devrahul16/fe:41"),
                        _pod("devrahul16/fe:41", terminating=True),
                    ]
                },
            )
        return httpx.Response(200, json=_deployment("devrahul16/fe:42"))

    client = _client(handler)
    health = await client.get_pod_health("fe", "default")

    assert selectors == ["app=fe,tier=web"]
    assert health.total == 4
    assert health.ready == 2
    assert not health.is_ready(3)


@pytest.mark.asyncio
async def test_bearer_token_from_file(tmp_path):
    token_file = tmp_path / "token"
    token_file.write_text("s3cret\n")
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers.get("authorization"))
        return httpx.Response(200, json=_deployment())

    client = _client(handler, token_file=str(token_file))
    await client.get_workload("fe", "default")
    assert seen == ["Bearer s3cret"]


@pytest.mark.asyncio
async def test_rotated_token_file_is_picked_up(tmp_path):
    token_file = tmp_path / "token"
    token_file.write_text("first\n")
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers.get("authorization"))
        return httpx.Response(200, json=_deployment())

    client = _client(handler, token_file=str(token_file), token_refresh_interval=0)
    await client.get_workload("fe", "default")
    token_file.write_text("second\n")
    await client.get_workload("fe", "default")
    assert seen == ["Bearer first", "Bearer second"]


@pytest.mark.asyncio
async def test_unauthorized_rereads_token_and_retries(tmp_path):
    token_file = tmp_path / "token"
    token_file.write_text("stale\n")
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        auth = request.headers.get("authorization")
        seen.append(auth)
        if auth == "Bearer stale" and len(seen) > 1:
            return httpx.Response(401, json={"message": "token expired"})
        return httpx.Response(200, json=_deployment())

    client = _client(handler, token_file=str(token_file))
    await client.get_workload("fe", "default")
    token_file.write_text("rotated\n")
    snapshot = await client.get_workload("fe", "default")

    assert snapshot.desired_image == "devrahul16/fe:41"
    assert seen == ["Bearer stale", "Bearer stale", "Bearer rotated"]


def test_from_config_in_cluster(monkeypatch):
    monkeypatch.setenv("KUBERNETES_SERVICE_HOST", "10.0.0.1")
    monkeypatch.setenv("KUBERNETES_SERVICE_PORT", "6443")

    client = KubernetesClusterClient.from_config(ClusterConfig(backend="kubernetes", token="t"))
    assert client.api_server == "https://10.0.0.1:6443"
    assert client.token == "t"


def test_from_config_without_server(monkeypatch):
    monkeypatch.delenv("KUBERNETES_SERVICE_HOST", raising=False)
    with pytest.raises(ClusterError):
        KubernetesClusterClient.from_config(ClusterConfig(backend="kubernetes"))
