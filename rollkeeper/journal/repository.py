"""Journal abstraction for rollout state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from ..contracts import FailureReason, RolloutRecord, RolloutRequest, RolloutStatus, utcnow
from ..errors import InvalidTransition, LeaseLost


class RolloutJournal(Protocol):
    """Protocol for rollout journal backends.

    ``begin`` is the mutual-exclusion point: backends must perform the
    "no active record for this workload" check and the insert atomically.

    Active records carry an ``owner`` and a ``heartbeat_at`` lease. Several
    engines may share one journal; an engine only takes over a record whose
    owner stopped heartbeating, and ``claim`` does so with a conditional
    write.
    """

    async def begin(self, request: RolloutRequest, owner: Optional[str] = None) -> RolloutRecord:
        """Create a pending record for ``request`` held by ``owner``.

        Raises:
            AlreadyInProgress: another record is active for the workload.
            DuplicateRequest: a record already exists for the request id.
        """

    async def start(
        self, request_id: str, previous_image: str, owner: Optional[str] = None
    ) -> RolloutRecord:
        """Move a pending record to in_progress, remembering the previous image."""

    async def complete(
        self,
        request_id: str,
        status: RolloutStatus,
        reason: Optional[FailureReason] = None,
        error: Optional[str] = None,
        owner: Optional[str] = None,
    ) -> RolloutRecord:
        """Move an active record to a terminal status.

        Raises:
            LeaseLost: ``owner`` was given and another engine holds the record.
        """

    async def heartbeat(self, request_id: str, owner: str) -> bool:
        """Renew ``owner``'s lease. ``False`` when the record is no longer theirs."""

    async def claim(
        self, request_id: str, owner: str, stale_before: datetime
    ) -> RolloutRecord | None:
        """Take over an active record whose lease expired before ``stale_before``.

        Unowned records and records already held by ``owner`` are always
        claimable. Returns ``None`` when another engine still holds the lease.
        """

    async def find(self, request_id: str) -> RolloutRecord | None:
        """Retrieve the record for ``request_id``."""

    async def find_active(self, workload_name: str, namespace: str) -> RolloutRecord | None:
        """Return the active record for the workload, if any."""

    async def list_active(self) -> list[RolloutRecord]:
        """Return every active record."""

    async def list_records(
        self, workload_name: Optional[str] = None, namespace: Optional[str] = None
    ) -> list[RolloutRecord]:
        """Return records, optionally filtered by workload and namespace."""


# ----------------------------------------------------------------------
# Transition rules shared by every backend
def check_owner(record: RolloutRecord, owner: Optional[str]) -> None:
    if owner is not None and record.owner != owner:
        raise LeaseLost(record.request_id, owner, record.owner)


def started(
    record: RolloutRecord, previous_image: str, owner: Optional[str] = None
) -> RolloutRecord:
    check_owner(record, owner)
    if record.status is not RolloutStatus.PENDING:
        raise InvalidTransition(
            record.request_id, record.status.value, RolloutStatus.IN_PROGRESS.value
        )
    return record.model_copy(
        update={
            "status": RolloutStatus.IN_PROGRESS,
            "previous_image": previous_image,
            "heartbeat_at": utcnow() if record.owner else record.heartbeat_at,
        }
    )


def completed(
    record: RolloutRecord,
    status: RolloutStatus,
    reason: Optional[FailureReason] = None,
    error: Optional[str] = None,
    owner: Optional[str] = None,
) -> RolloutRecord:
    check_owner(record, owner)
    if not record.status.is_active or not status.is_terminal:
        raise InvalidTransition(record.request_id, record.status.value, status.value)
    return record.model_copy(
        update={"status": status, "reason": reason, "error": error, "ended_at": utcnow()}
    )


def renewed(record: RolloutRecord, owner: str) -> RolloutRecord | None:
    if not record.is_active or record.owner != owner:
        return None
    return record.model_copy(update={"heartbeat_at": utcnow()})


def claimed(
    record: RolloutRecord, owner: str, stale_before: datetime
) -> RolloutRecord | None:
    if not record.is_active:
        return None
    expired = record.heartbeat_at is None or record.heartbeat_at < stale_before
    if record.owner is not None and record.owner != owner and not expired:
        return None
    return record.model_copy(update={"owner": owner, "heartbeat_at": utcnow()})
