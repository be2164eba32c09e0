"""Concurrent submissions against one workload."""

import asyncio

import pytest

from rollkeeper import InMemoryCluster, RolloutEngine
from rollkeeper.contracts import RolloutStatus
from rollkeeper.errors import AlreadyInProgress
from rollkeeper.journal import InMemoryRolloutJournal, SQLiteRolloutJournal


async def _submit_all(engine: RolloutEngine, count: int) -> tuple[list[str], int]:
    async def submit(i: int):
        return await engine.submit_rollout(
            "fe", "default", f"devrahul16/fe:{100 + i}", request_id=f"req-{i}"
        )

    results = await asyncio.gather(*(submit(i) for i in range(count)), return_exceptions=True)
    accepted = [r for r in results if isinstance(r, str)]
    rejected = sum(isinstance(r, AlreadyInProgress) for r in results)
    assert accepted or rejected
    assert len(accepted) + rejected == count
    return accepted, rejected


@pytest.mark.asyncio
async def test_one_winner_among_simultaneous_submissions():
    cluster = InMemoryCluster(latency=0.005)
    cluster.add_workload("fe", "devrahul16/fe:41", replicas=2)
    engine = RolloutEngine(cluster, InMemoryRolloutJournal(), poll_interval=0.01, deadline=1)

    accepted, rejected = await _submit_all(engine, 10)

    assert len(accepted) == 1
    assert rejected == 9
    assert len(cluster.patches) == 1
    record = await engine.get_status(accepted[0])
    assert record.status is RolloutStatus.SUCCEEDED
    assert cluster.workload("fe").image() == record.target_image


@pytest.mark.asyncio
async def test_sqlite_journal_never_holds_two_active_rollouts(tmp_path):
    cluster = InMemoryCluster(latency=0.002)
    cluster.add_workload("fe", "devrahul16/fe:41", replicas=2)
    journal = SQLiteRolloutJournal(tmp_path / "journal.db")
    engine = RolloutEngine(cluster, journal, poll_interval=0.01, deadline=1)

    samples: list[int] = []
    done = asyncio.Event()

    async def sample():
        while not done.is_set():
            samples.append(len(await journal.list_active()))
            await asyncio.sleep(0.001)

    sampler = asyncio.create_task(sample())
    try:
        accepted, _ = await _submit_all(engine, 20)
    finally:
        done.set()
        await sampler

    assert samples and max(samples) <= 1
    assert len(cluster.patches) == len(accepted)
    assert await journal.list_active() == []
    for request_id in accepted:
        assert (await engine.get_status(request_id)).status is RolloutStatus.SUCCEEDED
