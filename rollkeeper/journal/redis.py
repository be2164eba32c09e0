"""Redis implementation of the rollout journal."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Optional

import redis.asyncio as redis
from redis.exceptions import WatchError

from ..contracts import FailureReason, RolloutRecord, RolloutRequest, RolloutStatus
from ..errors import AlreadyInProgress, DuplicateRequest, RecordNotFound
from .repository import RolloutJournal, claimed, completed, renewed, started

logger = logging.getLogger(__name__)

PREFIX = "rollkeeper"


class RedisRolloutJournal(RolloutJournal):
    """Persist rollout records in Redis.

    Records are JSON strings under ``rollkeeper:rollout:<request_id>``. The
    active slot of a workload is the key ``rollkeeper:active:<ns>/<name>``
    holding the request id; it is claimed and released inside WATCH/MULTI
    transactions so concurrent writers cannot both take it.
    """

    def __init__(self, url: str) -> None:
        self.url = url
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        self._redis = redis.from_url(self.url, decode_responses=True)
        await self._redis.ping()

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _client(self) -> Any:
        if not self._redis:
            await self.connect()
        return self._redis

    @staticmethod
    def _record_key(request_id: str) -> str:
        return f"{PREFIX}:rollout:{request_id}"

    @staticmethod
    def _active_key(workload_name: str, namespace: str) -> str:
        return f"{PREFIX}:active:{namespace}/{workload_name}"

    _index_key = f"{PREFIX}:rollouts"

    # ------------------------------------------------------------------
    async def begin(self, request: RolloutRequest, owner: Optional[str] = None) -> RolloutRecord:
        client = await self._client()
        record = RolloutRecord.from_request(request, owner=owner)
        record_key = self._record_key(request.request_id)
        active_key = self._active_key(request.workload_name, request.namespace)
        async with client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(record_key, active_key)
                    existing = await pipe.get(record_key)
                    if existing:
                        raise DuplicateRequest(RolloutRecord.model_validate_json(existing))
                    active_id = await pipe.get(active_key)
                    if active_id:
                        await pipe.watch(self._record_key(active_id))
                        active = await pipe.get(self._record_key(active_id))
                        if active:
                            raise AlreadyInProgress(RolloutRecord.model_validate_json(active))
                        # Overwritten by the SET below.
                        logger.warning(
                            f"Clearing stale active slot {active_key} pointing at "
                            f"missing rollout {active_id}"
                        )
                    pipe.multi()
                    pipe.set(record_key, record.model_dump_json())
                    pipe.set(active_key, record.request_id)
                    pipe.rpush(self._index_key, record.request_id)
                    await pipe.execute()
                    return record
                except WatchError:
                    continue

    async def _transition(
        self,
        request_id: str,
        change: Callable[[RolloutRecord], Optional[RolloutRecord]],
    ) -> RolloutRecord | None:
        """Apply ``change`` under WATCH; ``None`` from ``change`` writes nothing."""
        client = await self._client()
        record_key = self._record_key(request_id)
        async with client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(record_key)
                    raw = await pipe.get(record_key)
                    if raw is None:
                        raise RecordNotFound(request_id)
                    after = change(RolloutRecord.model_validate_json(raw))
                    if after is None:
                        await pipe.unwatch()
                        return None
                    active_key = self._active_key(after.workload_name, after.namespace)
                    await pipe.watch(active_key)
                    holder = await pipe.get(active_key)
                    pipe.multi()
                    pipe.set(record_key, after.model_dump_json())
                    if after.status.is_terminal and holder == request_id:
                        pipe.delete(active_key)
                    await pipe.execute()
                    return after
                except WatchError:
                    continue

    async def start(
        self, request_id: str, previous_image: str, owner: Optional[str] = None
    ) -> RolloutRecord:
        return await self._transition(
            request_id, lambda r: started(r, previous_image, owner)
        )

    async def complete(
        self,
        request_id: str,
        status: RolloutStatus,
        reason: Optional[FailureReason] = None,
        error: Optional[str] = None,
        owner: Optional[str] = None,
    ) -> RolloutRecord:
        return await self._transition(
            request_id, lambda r: completed(r, status, reason, error, owner)
        )

    async def heartbeat(self, request_id: str, owner: str) -> bool:
        try:
            after = await self._transition(request_id, lambda r: renewed(r, owner))
        except RecordNotFound:
            return False
        return after is not None

    async def claim(
        self, request_id: str, owner: str, stale_before: datetime
    ) -> RolloutRecord | None:
        try:
            return await self._transition(
                request_id, lambda r: claimed(r, owner, stale_before)
            )
        except RecordNotFound:
            return None

    async def find(self, request_id: str) -> RolloutRecord | None:
        client = await self._client()
        raw = await client.get(self._record_key(request_id))
        return RolloutRecord.model_validate_json(raw) if raw else None

    async def find_active(self, workload_name: str, namespace: str) -> RolloutRecord | None:
        client = await self._client()
        request_id = await client.get(self._active_key(workload_name, namespace))
        return await self.find(request_id) if request_id else None

    async def _collect(self, ids: list[str]) -> list[RolloutRecord]:
        if not ids:
            return []
        client = await self._client()
        raws = await client.mget([self._record_key(i) for i in ids])
        return [RolloutRecord.model_validate_json(r) for r in raws if r]

    async def list_active(self) -> list[RolloutRecord]:
        client = await self._client()
        ids = [await client.get(key) async for key in client.scan_iter(f"{PREFIX}:active:*")]
        return await self._collect([i for i in ids if i])

    async def list_records(
        self, workload_name: Optional[str] = None, namespace: Optional[str] = None
    ) -> list[RolloutRecord]:
        client = await self._client()
        records = await self._collect(await client.lrange(self._index_key, 0, -1))
        return [
            r
            for r in records
            if (workload_name is None or r.workload_name == workload_name)
            and (namespace is None or r.namespace == namespace)
        ]
