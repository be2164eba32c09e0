"""SQLite implementation of the rollout journal."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from ..contracts import FailureReason, RolloutRecord, RolloutRequest, RolloutStatus, utcnow
from ..errors import (
    AlreadyInProgress,
    DuplicateRequest,
    InvalidTransition,
    JournalError,
    LeaseLost,
    RecordNotFound,
)
from .repository import RolloutJournal, completed, started

_COLUMNS = (
    "request_id, workload_name, namespace, target_image, container, status, "
    "reason, started_at, ended_at, previous_image, error, owner, heartbeat_at"
)
_ACTIVE = "('pending', 'in_progress')"


def _ts(value: Optional[datetime]) -> Optional[str]:
    # Fixed-width ISO strings so lease comparisons can be done in SQL.
    return value.isoformat(timespec="microseconds") if value else None


class SQLiteRolloutJournal(RolloutJournal):
    """Persist rollout records using SQLite.

    A partial unique index on (namespace, workload_name) over active rows makes
    the database itself refuse a second active rollout for a workload. Lease
    renewal and takeover are single conditional UPDATE statements, so several
    processes can share the database file.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS rollouts (
                request_id TEXT PRIMARY KEY,
                workload_name TEXT NOT NULL,
                namespace TEXT NOT NULL,
                target_image TEXT NOT NULL,
                container TEXT,
                status TEXT NOT NULL,
                reason TEXT,
                started_at TEXT NOT NULL,
                ended_at TEXT,
                previous_image TEXT,
                error TEXT,
                owner TEXT,
                heartbeat_at TEXT
            )
            """
        )
        cur.execute(
            f"""
            CREATE UNIQUE INDEX IF NOT EXISTS rollouts_one_active
            ON rollouts (namespace, workload_name)
            WHERE status IN {_ACTIVE}
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            try:
                cur.execute(query, params)
            except sqlite3.Error:
                self._conn.rollback()
                raise
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    @staticmethod
    def _to_record(row: sqlite3.Row) -> RolloutRecord:
        return RolloutRecord(
            request_id=row["request_id"],
            workload_name=row["workload_name"],
            namespace=row["namespace"],
            target_image=row["target_image"],
            container=row["container"],
            status=RolloutStatus(row["status"]),
            reason=FailureReason(row["reason"]) if row["reason"] else None,
            started_at=datetime.fromisoformat(row["started_at"]),
            ended_at=datetime.fromisoformat(row["ended_at"]) if row["ended_at"] else None,
            previous_image=row["previous_image"],
            error=row["error"],
            owner=row["owner"],
            heartbeat_at=(
                datetime.fromisoformat(row["heartbeat_at"]) if row["heartbeat_at"] else None
            ),
        )

    async def _update(self, before: RolloutRecord, after: RolloutRecord) -> RolloutRecord:
        rowcount = await asyncio.to_thread(
            self._execute,
            """
            UPDATE rollouts
            SET status = ?, reason = ?, ended_at = ?, previous_image = ?, error = ?,
                heartbeat_at = ?
            WHERE request_id = ? AND status = ? AND owner IS ?
            """,
            after.status.value,
            after.reason.value if after.reason else None,
            _ts(after.ended_at),
            after.previous_image,
            after.error,
            _ts(after.heartbeat_at),
            after.request_id,
            before.status.value,
            before.owner,
        )
        if rowcount == 0:
            # Another writer moved or took over the record first.
            current = await self.find(after.request_id)
            if current is not None and current.owner != before.owner:
                raise LeaseLost(after.request_id, before.owner or "nobody", current.owner)
            raise InvalidTransition(
                after.request_id,
                current.status.value if current else "missing",
                after.status.value,
            )
        return after

    async def _get(self, request_id: str) -> RolloutRecord:
        record = await self.find(request_id)
        if record is None:
            raise RecordNotFound(request_id)
        return record

    # ------------------------------------------------------------------
    # Journal API
    async def begin(self, request: RolloutRequest, owner: Optional[str] = None) -> RolloutRecord:
        record = RolloutRecord.from_request(request, owner=owner)
        for _ in range(3):
            try:
                await asyncio.to_thread(
                    self._execute,
                    f"INSERT INTO rollouts ({_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    record.request_id,
                    record.workload_name,
                    record.namespace,
                    record.target_image,
                    record.container,
                    record.status.value,
                    None,
                    _ts(record.started_at),
                    None,
                    None,
                    None,
                    record.owner,
                    _ts(record.heartbeat_at),
                )
                return record
            except sqlite3.IntegrityError:
                existing = await self.find(request.request_id)
                if existing is not None:
                    raise DuplicateRequest(existing) from None
                active = await self.find_active(request.workload_name, request.namespace)
                if active is not None:
                    raise AlreadyInProgress(active) from None
                # The active record finished between the insert and the lookup.
        raise JournalError(f"could not record rollout {request.request_id}")

    async def start(
        self, request_id: str, previous_image: str, owner: Optional[str] = None
    ) -> RolloutRecord:
        before = await self._get(request_id)
        return await self._update(before, started(before, previous_image, owner))

    async def complete(
        self,
        request_id: str,
        status: RolloutStatus,
        reason: Optional[FailureReason] = None,
        error: Optional[str] = None,
        owner: Optional[str] = None,
    ) -> RolloutRecord:
        before = await self._get(request_id)
        return await self._update(before, completed(before, status, reason, error, owner))

    async def heartbeat(self, request_id: str, owner: str) -> bool:
        rowcount = await asyncio.to_thread(
            self._execute,
            f"UPDATE rollouts SET heartbeat_at = ? "
            f"WHERE request_id = ? AND owner = ? AND status IN {_ACTIVE}",
            _ts(utcnow()),
            request_id,
            owner,
        )
        return rowcount > 0

    async def claim(
        self, request_id: str, owner: str, stale_before: datetime
    ) -> RolloutRecord | None:
        rowcount = await asyncio.to_thread(
            self._execute,
            f"""
            UPDATE rollouts SET owner = ?, heartbeat_at = ?
            WHERE request_id = ? AND status IN {_ACTIVE}
              AND (owner IS NULL OR owner = ? OR heartbeat_at IS NULL OR heartbeat_at < ?)
            """,
            owner,
            _ts(utcnow()),
            request_id,
            owner,
            _ts(stale_before),
        )
        return await self.find(request_id) if rowcount else None

    async def find(self, request_id: str) -> RolloutRecord | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_COLUMNS} FROM rollouts WHERE request_id = ?",
            request_id,
        )
        return self._to_record(row) if row else None

    async def find_active(self, workload_name: str, namespace: str) -> RolloutRecord | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_COLUMNS} FROM rollouts "
            f"WHERE namespace = ? AND workload_name = ? AND status IN {_ACTIVE}",
            namespace,
            workload_name,
        )
        return self._to_record(row) if row else None

    async def list_active(self) -> list[RolloutRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_COLUMNS} FROM rollouts WHERE status IN {_ACTIVE} ORDER BY started_at",
        )
        return [self._to_record(r) for r in rows]

    async def list_records(
        self, workload_name: Optional[str] = None, namespace: Optional[str] = None
    ) -> list[RolloutRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_COLUMNS} FROM rollouts "
            "WHERE (? IS NULL OR workload_name = ?) AND (? IS NULL OR namespace = ?) "
            "ORDER BY started_at",
            workload_name,
            workload_name,
            namespace,
            namespace,
        )
        return [self._to_record(r) for r in rows]

    def close(self) -> None:
        self._conn.close()
