"""In-memory implementation of the rollout journal."""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Dict, Optional, Tuple

from ..contracts import FailureReason, RolloutRecord, RolloutRequest, RolloutStatus
from ..errors import AlreadyInProgress, DuplicateRequest, RecordNotFound
from .repository import RolloutJournal, claimed, completed, renewed, started


class InMemoryRolloutJournal(RolloutJournal):
    """Store rollout records in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._records: Dict[str, RolloutRecord] = {}
        self._active: Dict[Tuple[str, str], str] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    def _get(self, request_id: str) -> RolloutRecord:
        record = self._records.get(request_id)
        if record is None:
            raise RecordNotFound(request_id)
        return record

    async def begin(self, request: RolloutRequest, owner: Optional[str] = None) -> RolloutRecord:
        key = (request.namespace, request.workload_name)
        with self._lock:
            if request.request_id in self._records:
                raise DuplicateRequest(self._records[request.request_id])
            if key in self._active:
                raise AlreadyInProgress(self._records[self._active[key]])
            record = RolloutRecord.from_request(request, owner=owner)
            self._records[request.request_id] = record
            self._active[key] = request.request_id
        return record

    async def start(
        self, request_id: str, previous_image: str, owner: Optional[str] = None
    ) -> RolloutRecord:
        with self._lock:
            record = started(self._get(request_id), previous_image, owner)
            self._records[request_id] = record
        return record

    async def complete(
        self,
        request_id: str,
        status: RolloutStatus,
        reason: Optional[FailureReason] = None,
        error: Optional[str] = None,
        owner: Optional[str] = None,
    ) -> RolloutRecord:
        with self._lock:
            record = completed(self._get(request_id), status, reason, error, owner)
            self._records[request_id] = record
            self._active.pop((record.namespace, record.workload_name), None)
        return record

    async def heartbeat(self, request_id: str, owner: str) -> bool:
        with self._lock:
            record = self._records.get(request_id)
            after = renewed(record, owner) if record else None
            if after is not None:
                self._records[request_id] = after
        return after is not None

    async def claim(
        self, request_id: str, owner: str, stale_before: datetime
    ) -> RolloutRecord | None:
        with self._lock:
            record = self._records.get(request_id)
            after = claimed(record, owner, stale_before) if record else None
            if after is not None:
                self._records[request_id] = after
        return after

    async def find(self, request_id: str) -> RolloutRecord | None:
        return self._records.get(request_id)

    async def find_active(self, workload_name: str, namespace: str) -> RolloutRecord | None:
        request_id = self._active.get((namespace, workload_name))
        return self._records.get(request_id) if request_id else None

    async def list_active(self) -> list[RolloutRecord]:
        return [self._records[rid] for rid in list(self._active.values())]

    async def list_records(
        self, workload_name: Optional[str] = None, namespace: Optional[str] = None
    ) -> list[RolloutRecord]:
        return [
            r
            for r in self._records.values()
            if (workload_name is None or r.workload_name == workload_name)
            and (namespace is None or r.namespace == namespace)
        ]
