"""PostgreSQL implementation of the rollout journal."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import asyncpg

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


class PostgresRolloutJournal(RolloutJournal):
    """Persist rollout records using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS rollouts (
                request_id TEXT PRIMARY KEY,
                workload_name TEXT NOT NULL,
                namespace TEXT NOT NULL,
                target_image TEXT NOT NULL,
                container TEXT,
                status TEXT NOT NULL,
                reason TEXT,
                started_at TIMESTAMPTZ NOT NULL,
                ended_at TIMESTAMPTZ,
                previous_image TEXT,
                error TEXT,
                owner TEXT,
                heartbeat_at TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            """
            ALTER TABLE rollouts
                ADD COLUMN IF NOT EXISTS owner TEXT,
                ADD COLUMN IF NOT EXISTS heartbeat_at TIMESTAMPTZ
            """
        )
        await conn.execute(
            f"""
            CREATE UNIQUE INDEX IF NOT EXISTS rollouts_one_active
            ON rollouts (namespace, workload_name)
            WHERE status IN {_ACTIVE}
            """
        )

    @staticmethod
    def _to_record(row: Any) -> RolloutRecord:
        return RolloutRecord(
            request_id=row["request_id"],
            workload_name=row["workload_name"],
            namespace=row["namespace"],
            target_image=row["target_image"],
            container=row["container"],
            status=RolloutStatus(row["status"]),
            reason=FailureReason(row["reason"]) if row["reason"] else None,
            started_at=row["started_at"],
            ended_at=row["ended_at"],
            previous_image=row["previous_image"],
            error=row["error"],
            owner=row["owner"],
            heartbeat_at=row["heartbeat_at"],
        )

    async def _fetchrow(self, query: str, *params: Any) -> RolloutRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(query, *params)
        finally:
            await conn.close()
        return self._to_record(row) if row else None

    async def _fetch(self, query: str, *params: Any) -> list[RolloutRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        return [self._to_record(r) for r in rows]

    async def _update(self, before: RolloutRecord, after: RolloutRecord) -> RolloutRecord:
        conn = await self._connect()
        try:
            result = await conn.execute(
                """
                UPDATE rollouts
                SET status = $1, reason = $2, ended_at = $3, previous_image = $4, error = $5,
                    heartbeat_at = $6
                WHERE request_id = $7 AND status = $8 AND owner IS NOT DISTINCT FROM $9
                """,
                after.status.value,
                after.reason.value if after.reason else None,
                after.ended_at,
                after.previous_image,
                after.error,
                after.heartbeat_at,
                after.request_id,
                before.status.value,
                before.owner,
            )
        finally:
            await conn.close()
        if result.endswith(" 0"):
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
    async def begin(self, request: RolloutRequest, owner: Optional[str] = None) -> RolloutRecord:
        record = RolloutRecord.from_request(request, owner=owner)
        for _ in range(3):
            conn = await self._connect()
            try:
                await conn.execute(
                    f"INSERT INTO rollouts ({_COLUMNS}) "
                    "VALUES ($1, $2, $3, $4, $5, $6, NULL, $7, NULL, NULL, NULL, $8, $9)",
                    record.request_id,
                    record.workload_name,
                    record.namespace,
                    record.target_image,
                    record.container,
                    record.status.value,
                    record.started_at,
                    record.owner,
                    record.heartbeat_at,
                )
                return record
            except asyncpg.UniqueViolationError:
                pass
            finally:
                await conn.close()
            existing = await self.find(request.request_id)
            if existing is not None:
                raise DuplicateRequest(existing)
            active = await self.find_active(request.workload_name, request.namespace)
            if active is not None:
                raise AlreadyInProgress(active)
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
        conn = await self._connect()
        try:
            result = await conn.execute(
                f"UPDATE rollouts SET heartbeat_at = $1 "
                f"WHERE request_id = $2 AND owner = $3 AND status IN {_ACTIVE}",
                utcnow(),
                request_id,
                owner,
            )
        finally:
            await conn.close()
        return not result.endswith(" 0")

    async def claim(
        self, request_id: str, owner: str, stale_before: datetime
    ) -> RolloutRecord | None:
        return await self._fetchrow(
            f"""
            UPDATE rollouts SET owner = $1, heartbeat_at = $2
            WHERE request_id = $3 AND status IN {_ACTIVE}
              AND (owner IS NULL OR owner = $1 OR heartbeat_at IS NULL OR heartbeat_at < $4)
            RETURNING {_COLUMNS}
            """,
            owner,
            utcnow(),
            request_id,
            stale_before,
        )

    async def find(self, request_id: str) -> RolloutRecord | None:
        return await self._fetchrow(
            f"SELECT {_COLUMNS} FROM rollouts WHERE request_id = $1", request_id
        )

    async def find_active(self, workload_name: str, namespace: str) -> RolloutRecord | None:
        return await self._fetchrow(
            f"SELECT {_COLUMNS} FROM rollouts "
            f"WHERE namespace = $1 AND workload_name = $2 AND status IN {_ACTIVE}",
            namespace,
            workload_name,
        )

    async def list_active(self) -> list[RolloutRecord]:
        return await self._fetch(
            f"SELECT {_COLUMNS} FROM rollouts WHERE status IN {_ACTIVE} ORDER BY started_at"
        )

    async def list_records(
        self, workload_name: Optional[str] = None, namespace: Optional[str] = None
    ) -> list[RolloutRecord]:
        return await self._fetch(
            f"SELECT {_COLUMNS} FROM rollouts "
            "WHERE ($1::text IS NULL OR workload_name = $1) "
            "AND ($2::text IS NULL OR namespace = $2) ORDER BY started_at",
            workload_name,
            namespace,
        )
