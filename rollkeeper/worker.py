"""Queue consumer that feeds rollout requests into the engine."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .constants import DEFAULT_NAMESPACE, DEFAULT_TOPIC
from .contracts import RolloutMessage, RolloutRequest
from .engine import RolloutEngine
from .errors import AlreadyInProgress, ImageReferenceError
from .images import resolve
from .transports import BaseTransport

logger = logging.getLogger(__name__)


async def enqueue_rollout(
    transport: BaseTransport,
    workload_name: str,
    image_reference: str,
    namespace: str = DEFAULT_NAMESPACE,
    container: Optional[str] = None,
    request_id: Optional[str] = None,
    topic: str = DEFAULT_TOPIC,
) -> str:
    """Validate and publish a rollout request, returning its request id."""
    image = resolve(image_reference)
    fields = dict(
        workload_name=workload_name,
        namespace=namespace,
        target_image=image.reference,
        container=container,
    )
    if request_id:
        fields["request_id"] = request_id
    message = RolloutMessage(request=RolloutRequest(**fields))
    await transport.publish(topic, message)
    logger.info(
        f"Enqueued rollout {message.request.request_id} for {namespace}/{workload_name} on {topic}"
    )
    return message.request.request_id


class RolloutWorker:
    """Consumes rollout requests from a transport topic.

    Each message keeps its request id, so a redelivered message resolves to
    the existing journal record instead of patching the cluster again. A
    message whose handling fails before it is settled in the journal is
    nacked and retried after ``retry_delay`` seconds.
    """

    def __init__(
        self,
        transport: BaseTransport,
        engine: RolloutEngine,
        topic: str = DEFAULT_TOPIC,
        retry_delay: float = 1.0,
    ) -> None:
        self._transport = transport
        self._engine = engine
        self.topic = topic
        self.retry_delay = retry_delay
        self.processed: list[str] = []

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Consume messages until ``lifespan`` seconds have passed (forever if None)."""
        async for raw_message, message in self._transport.subscribe(
            self.topic, lifespan=lifespan
        ):
            try:
                await self._handle(message)
            except Exception as e:
                logger.error(
                    f"Failed to handle rollout {message.request.request_id}, requeueing: {e}"
                )
                await self._transport.nack(raw_message)
                await asyncio.sleep(self.retry_delay)
                continue
            await self._transport.ack(raw_message)

    async def _handle(self, message: RolloutMessage) -> None:
        request = message.request
        logger.info(
            f"Received rollout {request.request_id} for "
            f"{request.namespace}/{request.workload_name} -> {request.target_image}"
        )
        try:
            await self._engine.submit_rollout(
                request.workload_name,
                request.namespace,
                request.target_image,
                request_id=request.request_id,
                container=request.container,
            )
        except ImageReferenceError as e:
            logger.error(f"Discarding rollout {request.request_id}: {e}")
            return
        except AlreadyInProgress as e:
            logger.warning(f"Discarding rollout {request.request_id}: {e}")
            return
        self.processed.append(request.request_id)
        record = await self._engine.get_status(request.request_id)
        if record is not None:
            logger.info(f"Rollout {request.request_id} ended {record.status.value}")
