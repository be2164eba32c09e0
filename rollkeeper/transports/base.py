"""Queue interface carrying rollout requests from producers to workers."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import RolloutMessage

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Delivers rollout requests at least once.

    A request stays owned by the transport until the worker acks it. Anything
    the worker could not settle is nacked back to the head of its queue, and a
    request whose worker died is delivered again. Redelivery is harmless
    because a request keeps its ``request_id`` on the wire and the journal
    resolves a known id to its existing record instead of patching the
    workload a second time.
    """

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    @abc.abstractmethod
    async def publish(self, topic: str, message: RolloutMessage) -> None:
        """Append a rollout request to the ``topic`` queue."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, RolloutMessage]]:
        """Yield ``(handle, message)`` for each request taken off ``topic``.

        The handle is what :meth:`ack` and :meth:`nack` settle. Iteration
        stops once ``lifespan`` seconds have passed; ``None`` runs forever.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Drop a request the worker has settled in the journal."""
        raise NotImplementedError

    @abc.abstractmethod
    async def nack(self, raw_message: RawMessageT) -> None:
        """Return an unsettled request to the head of its queue."""
        raise NotImplementedError
