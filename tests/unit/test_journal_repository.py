import uuid
from datetime import timedelta

import pytest

from rollkeeper.contracts import FailureReason, RolloutRequest, RolloutStatus, utcnow
from rollkeeper.errors import (
    AlreadyInProgress,
    DuplicateRequest,
    InvalidTransition,
    LeaseLost,
    RecordNotFound,
)
from rollkeeper.journal import InMemoryRolloutJournal, SQLiteRolloutJournal


@pytest.fixture(params=["inmemory", "sqlite"])
def journal(request, tmp_path):
    if request.param == "inmemory":
        return InMemoryRolloutJournal()
    return SQLiteRolloutJournal(tmp_path / "journal.db")


def _request(workload: str = "fe", namespace: str = "default", image: str = "fe:2"):
    return RolloutRequest(
        workload_name=workload,
        namespace=namespace,
        target_image=image,
        request_id=str(uuid.uuid4()),
    )


@pytest.mark.asyncio
async def test_journal_lifecycle(journal):
    req = _request()

    record = await journal.begin(req)
    assert record.status is RolloutStatus.PENDING
    assert (await journal.find_active("fe", "default")).request_id == req.request_id

    record = await journal.start(req.request_id, "fe:1")
    assert record.status is RolloutStatus.IN_PROGRESS
    assert record.previous_image == "fe:1"

    record = await journal.complete(req.request_id, RolloutStatus.SUCCEEDED)
    assert record.status is RolloutStatus.SUCCEEDED
    assert record.ended_at is not None

    stored = await journal.find(req.request_id)
    assert stored.status is RolloutStatus.SUCCEEDED
    assert stored.previous_image == "fe:1"
    assert stored.target_image == "fe:2"
    assert await journal.find_active("fe", "default") is None
    assert await journal.list_active() == []


@pytest.mark.asyncio
async def test_begin_rejects_second_active_rollout(journal):
    first = _request()
    await journal.begin(first)

    with pytest.raises(AlreadyInProgress) as exc_info:
        await journal.begin(_request())
    assert exc_info.value.active.request_id == first.request_id

    # Other workloads and namespaces are independent.
    await journal.begin(_request(workload="be"))
    await journal.begin(_request(namespace="staging"))
    assert len(await journal.list_active()) == 3


@pytest.mark.asyncio
async def test_begin_after_completion_is_allowed(journal):
    first = _request()
    await journal.begin(first)
    await journal.complete(
        first.request_id, RolloutStatus.FAILED, FailureReason.CANCELLED, "stopped"
    )

    second = _request()
    await journal.begin(second)
    assert (await journal.find_active("fe", "default")).request_id == second.request_id

    stored = await journal.find(first.request_id)
    assert stored.reason is FailureReason.CANCELLED
    assert stored.error == "stopped"


@pytest.mark.asyncio
async def test_duplicate_request_id(journal):
    req = _request()
    await journal.begin(req)
    await journal.complete(req.request_id, RolloutStatus.SUCCEEDED)

    with pytest.raises(DuplicateRequest) as exc_info:
        await journal.begin(req)
    assert exc_info.value.existing.status is RolloutStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_terminal_records_are_final(journal):
    req = _request()
    await journal.begin(req)
    await journal.start(req.request_id, "fe:1")
    await journal.complete(req.request_id, RolloutStatus.ROLLED_BACK)

    with pytest.raises(InvalidTransition):
        await journal.complete(req.request_id, RolloutStatus.SUCCEEDED)
    with pytest.raises(InvalidTransition):
        await journal.start(req.request_id, "fe:1")


@pytest.mark.asyncio
async def test_invalid_transitions(journal):
    req = _request()
    await journal.begin(req)
    await journal.start(req.request_id, "fe:1")

    with pytest.raises(InvalidTransition):
        await journal.start(req.request_id, "fe:1")
    with pytest.raises(InvalidTransition):
        await journal.complete(req.request_id, RolloutStatus.IN_PROGRESS)
    with pytest.raises(RecordNotFound):
        await journal.complete("missing", RolloutStatus.FAILED)


@pytest.mark.asyncio
async def test_list_records_filters(journal):
    await journal.begin(_request(workload="fe"))
    await journal.begin(_request(workload="be"))
    await journal.begin(_request(workload="fe", namespace="staging"))

    assert len(await journal.list_records()) == 3
    assert len(await journal.list_records(workload_name="fe")) == 2
    assert len(await journal.list_records(namespace="staging")) == 1
    assert len(await journal.list_records("fe", "default")) == 1


@pytest.mark.asyncio
async def test_claim_respects_live_lease(journal):
    req = _request()
    record = await journal.begin(req, owner="worker-a")
    assert record.owner == "worker-a"
    await journal.start(req.request_id, "fe:1", owner="worker-a")

    assert await journal.claim(req.request_id, "worker-b", utcnow() - timedelta(seconds=30)) is None
    assert await journal.heartbeat(req.request_id, "worker-a")

    taken = await journal.claim(req.request_id, "worker-b", utcnow() + timedelta(seconds=1))
    assert taken.owner == "worker-b"
    assert taken.status is RolloutStatus.IN_PROGRESS

    assert not await journal.heartbeat(req.request_id, "worker-a")
    with pytest.raises(LeaseLost):
        await journal.complete(req.request_id, RolloutStatus.SUCCEEDED, owner="worker-a")

    done = await journal.complete(req.request_id, RolloutStatus.SUCCEEDED, owner="worker-b")
    assert done.status is RolloutStatus.SUCCEEDED
    assert await journal.claim(req.request_id, "worker-a", utcnow()) is None


@pytest.mark.asyncio
async def test_unowned_record_is_claimable(journal):
    req = _request()
    await journal.begin(req)

    taken = await journal.claim(req.request_id, "worker-a", utcnow() - timedelta(seconds=30))
    assert taken.owner == "worker-a"
    assert taken.heartbeat_at is not None
    assert await journal.claim("missing", "worker-a", utcnow()) is None


@pytest.mark.asyncio
async def test_sqlite_journal_survives_restart(tmp_path):
    path = tmp_path / "journal.db"
    journal = SQLiteRolloutJournal(path)
    req = _request()
    await journal.begin(req)
    await journal.start(req.request_id, "fe:1")
    journal.close()

    reopened = SQLiteRolloutJournal(path)
    active = await reopened.list_active()
    assert [r.request_id for r in active] == [req.request_id]
    assert active[0].status is RolloutStatus.IN_PROGRESS
    assert active[0].previous_image == "fe:1"

    with pytest.raises(AlreadyInProgress):
        await reopened.begin(_request())
