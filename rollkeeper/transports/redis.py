"""Redis transport for cross-process rollout requests."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..contracts import RolloutMessage
from .base import BaseTransport

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport[Tuple[str, str]]):
    """Redis lists as queues, with a processing list per queue for unsettled requests."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    @staticmethod
    def _queue_name(topic: str) -> str:
        return f"rollkeeper:{topic}"

    @staticmethod
    def _processing_name(queue_name: str) -> str:
        return f"{queue_name}:processing"

    async def publish(self, topic: str, message: RolloutMessage) -> None:
        """Publish message to Redis list (acting as queue)."""
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self._queue_name(topic), message.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[str, str], RolloutMessage]]:
        """Move requests from the queue onto its processing list and yield them.

        Requests left on the processing list by a worker that died are pushed
        back onto the queue first.
        """
        if not self._redis:
            await self.connect()

        queue_name = self._queue_name(topic)
        processing = self._processing_name(queue_name)
        while await self._redis.lmove(processing, queue_name, "LEFT", "RIGHT"):
            logger.warning(f"Redelivering unsettled request left on {processing}")

        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while lifespan is None or loop.time() - start_time < lifespan:
            message_json = await self._redis.blmove(
                queue_name, processing, timeout=1, src="RIGHT", dest="LEFT"
            )
            if not message_json:
                continue
            try:
                message = RolloutMessage.from_json(message_json)
            except ValidationError as e:
                logger.error(f"Dropping malformed message on {queue_name}: {e}")
                await self._redis.lrem(processing, 1, message_json)
                continue
            yield (queue_name, message_json), message

    async def ack(self, raw_message: Tuple[str, str]) -> None:
        queue_name, message_json = raw_message
        await self._redis.lrem(self._processing_name(queue_name), 1, message_json)

    async def nack(self, raw_message: Tuple[str, str]) -> None:
        queue_name, message_json = raw_message
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self._processing_name(queue_name), 1, message_json)
            pipe.rpush(queue_name, message_json)
            await pipe.execute()
