"""In-memory transport for testing."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Optional, Tuple

from ..contracts import RolloutMessage
from .base import BaseTransport

RawMessage = Tuple[str, RolloutMessage]


class InMemoryTransport(BaseTransport[RawMessage]):
    """Simple in-process queue for unit tests."""

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[RawMessage]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self.acked: list[str] = []
        self.nacked: list[str] = []

    async def publish(self, topic: str, message: RolloutMessage) -> None:
        """Publish message to in-memory queue."""
        async with self._lock:
            self._queues[topic].append((topic, message))

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessage, RolloutMessage]]:
        """Subscribe to messages from topic.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while lifespan is None or loop.time() - start_time < lifespan:
            async with self._lock:
                raw_message = self._queues[topic].popleft() if self._queues[topic] else None
            if raw_message is not None:
                yield raw_message, raw_message[1]
                continue
            await asyncio.sleep(0.05)

    async def ack(self, raw_message: RawMessage) -> None:
        self.acked.append(raw_message[1].message_id)

    async def nack(self, raw_message: RawMessage) -> None:
        async with self._lock:
            self._queues[raw_message[0]].appendleft(raw_message)
        self.nacked.append(raw_message[1].message_id)
