import pytest

from rollkeeper.cluster import InMemoryCluster
from rollkeeper.errors import ClusterUnreachable, Conflict, WorkloadNotFound


@pytest.mark.asyncio
async def test_patch_bumps_revision_and_records_patch():
    cluster = InMemoryCluster()
    cluster.add_workload("fe", "fe:1", replicas=2)

    snapshot = await cluster.get_workload("fe", "default")
    assert snapshot.desired_image == "fe:1"
    assert snapshot.replica_count == 2

    revision = await cluster.patch_image(
        "fe", "default", "fe:2", expected_revision=snapshot.revision
    )
    assert revision != snapshot.revision
    assert (await cluster.get_workload("fe", "default")).desired_image == "fe:2"
    assert cluster.patches == [("default", "fe", "app", "fe:2")]


@pytest.mark.asyncio
async def test_stale_revision_conflicts():
    cluster = InMemoryCluster()
    cluster.add_workload("fe", "fe:1")
    snapshot = await cluster.get_workload("fe", "default")
    cluster.bump_revision("fe")

    with pytest.raises(Conflict):
        await cluster.patch_image("fe", "default", "fe:2", expected_revision=snapshot.revision)
    assert cluster.patches == []


@pytest.mark.asyncio
async def test_scripted_health_repeats_last_reading():
    cluster = InMemoryCluster()
    cluster.add_workload("fe", "fe:1", replicas=3)
    cluster.set_health("fe", [(0, 3), (2, 3)])

    readings = [await cluster.get_pod_health("fe", "default") for _ in range(3)]
    assert [(h.ready, h.total) for h in readings] == [(0, 3), (2, 3), (2, 3)]


@pytest.mark.asyncio
async def test_injected_failures_and_missing_workloads():
    cluster = InMemoryCluster()
    cluster.add_workload("fe", "fe:1")
    cluster.inject_failure("get_workload", ClusterUnreachable("down"), times=2)

    for _ in range(2):
        with pytest.raises(ClusterUnreachable):
            await cluster.get_workload("fe", "default")
    assert (await cluster.get_workload("fe", "default")).desired_image == "fe:1"

    with pytest.raises(WorkloadNotFound):
        await cluster.get_pod_health("fe", "other")
