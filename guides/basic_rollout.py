"""Simple example showing a verified rollout against the in-memory cluster."""

import asyncio

from rollkeeper import InMemoryCluster, RolloutEngine
from rollkeeper.journal import InMemoryRolloutJournal


async def main():
    """Roll out a healthy image, then a broken one that gets rolled back."""
    cluster = InMemoryCluster()
    cluster.add_workload("fe", "devrahul16/fe:41", replicas=3)
    engine = RolloutEngine(cluster, InMemoryRolloutJournal(), poll_interval=0.1, deadline=2)

    rid = await engine.submit_rollout("fe", "default", "devrahul16/fe:42")
    record = await engine.get_status(rid)
    print(f"✅ {rid}: {record.status.value} ({record.previous_image} -> {record.target_image})")

    # Pods of the next image never become ready
    cluster.set_health("fe", [(1, 3)])
    rid = await engine.submit_rollout("fe", "default", "devrahul16/fe:43")
    record = await engine.get_status(rid)
    print(f"↩️  {rid}: {record.status.value} ({record.reason.value})")
    print(f"📋 Workload now runs {cluster.workload('fe').image()}")


if __name__ == "__main__":
    asyncio.run(main())
