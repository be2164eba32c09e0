"""Example showing how to run a RolloutWorker with the configured transport."""

import asyncio
import sys

from rollkeeper import RolloutEngine, RolloutWorker, get_transport


async def main():
    topic = sys.argv[1] if len(sys.argv) > 1 else "rollouts"

    transport = get_transport()
    engine = RolloutEngine.from_config()
    worker = RolloutWorker(transport, engine, topic=topic)

    await transport.connect()
    await engine.cluster.connect()
    try:
        await engine.recover()
        await worker.start()
    finally:
        await engine.cluster.disconnect()
        await transport.disconnect()


if __name__ == "__main__":
    asyncio.run(main())
