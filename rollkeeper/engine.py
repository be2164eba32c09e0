"""Rollout engine: patch a workload, verify health, commit or roll back."""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, Optional

from .cluster import BaseClusterClient, get_cluster_client
from .config import RollkeeperConfig, load_config
from .constants import (
    DEFAULT_DEADLINE,
    DEFAULT_LEASE_TTL,
    DEFAULT_POLL_INTERVAL,
    HEALTHY_OBSERVATIONS_REQUIRED,
)
from .contracts import (
    FailureReason,
    PodHealth,
    RolloutRecord,
    RolloutRequest,
    RolloutStatus,
    utcnow,
)
from .errors import (
    AlreadyInProgress,
    ClusterError,
    ClusterUnreachable,
    Conflict,
    DuplicateRequest,
    LeaseLost,
    WorkloadNotFound,
    describe,
)
from .images import resolve
from .journal import RolloutJournal, get_journal

logger = logging.getLogger(__name__)

HEALTHY = "healthy"
DEADLINE = "deadline"
CANCELLED = "cancelled"
DRIFTED = "drifted"
LOST = "lost"


@dataclass
class _LiveRollout:
    """Handle on a rollout running in this process."""

    cancel: asyncio.Event = field(default_factory=asyncio.Event)
    rollback_on_cancel: bool = False
    task: Optional[asyncio.Task] = None


@dataclass
class _Observation:
    outcome: str
    health: Optional[PodHealth] = None
    detail: Optional[str] = None


class RolloutEngine:
    """Drives rollouts from request to terminal record.

    The engine is the error boundary: once a request has been accepted into
    the journal, every failure ends up on its record and callers learn the
    outcome through :meth:`get_status`.

    Every record the engine drives is leased to its ``owner_id`` and the lease
    is renewed on each health poll. Engines sharing a journal only recover
    records whose lease has gone ``lease_ttl`` seconds without renewal.
    """

    def __init__(
        self,
        cluster: BaseClusterClient,
        journal: RolloutJournal,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        deadline: float = DEFAULT_DEADLINE,
        lease_ttl: float = DEFAULT_LEASE_TTL,
        owner_id: Optional[str] = None,
    ) -> None:
        self._cluster = cluster
        self._journal = journal
        self.poll_interval = poll_interval
        self.deadline = deadline
        self.lease_ttl = lease_ttl
        self.owner_id = owner_id or f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"
        self._live: Dict[str, _LiveRollout] = {}

    @classmethod
    def from_config(cls, config: Optional[RollkeeperConfig] = None) -> "RolloutEngine":
        config = config or load_config()
        return cls(
            get_cluster_client(config=config),
            get_journal(config=config),
            poll_interval=config.rollout.poll_interval,
            deadline=config.rollout.deadline,
            lease_ttl=config.rollout.lease_ttl,
        )

    @property
    def cluster(self) -> BaseClusterClient:
        return self._cluster

    @property
    def journal(self) -> RolloutJournal:
        return self._journal

    # ------------------------------------------------------------------
    # Public API
    async def submit_rollout(
        self,
        workload_name: str,
        namespace: str,
        image_reference: str,
        request_id: Optional[str] = None,
        container: Optional[str] = None,
        wait: bool = True,
    ) -> str:
        """Submit a rollout and return its request id.

        Re-submitting a known ``request_id`` returns it without touching the
        cluster again.

        Raises:
            ImageReferenceError: ``image_reference`` is invalid. Nothing is
                recorded.
            AlreadyInProgress: another request is active for the workload.
                Nothing is recorded for this request.
        """
        image = resolve(image_reference)
        if image.mutable:
            logger.warning(
                f"Image {image.reference} uses mutable tag {image.tag_or_digest!r}; "
                "later rollouts of the same reference may run different content"
            )

        fields = dict(
            workload_name=workload_name,
            namespace=namespace,
            target_image=image.reference,
            container=container,
        )
        if request_id:
            fields["request_id"] = request_id
        request = RolloutRequest(**fields)

        existing = await self._journal.find(request.request_id)
        if existing is not None:
            logger.info(
                f"Rollout {request.request_id} already recorded as {existing.status.value}"
            )
            return existing.request_id

        try:
            await self._journal.begin(request, owner=self.owner_id)
        except DuplicateRequest as exc:
            return exc.existing.request_id
        except AlreadyInProgress as exc:
            if exc.active.request_id == request.request_id:
                return request.request_id
            logger.warning(
                f"Rejected rollout {request.request_id}: {exc.active.request_id} "
                f"is still active for {namespace}/{workload_name}"
            )
            raise

        live = _LiveRollout()
        self._live[request.request_id] = live
        if wait:
            await self._run(request, live)
        else:
            live.task = asyncio.create_task(self._run(request, live))
        return request.request_id

    async def get_status(self, request_id: str) -> RolloutRecord | None:
        """Return the journal record for ``request_id``."""
        return await self._journal.find(request_id)

    async def wait_for(self, request_id: str) -> RolloutRecord | None:
        """Wait for a background rollout started by this engine to finish."""
        live = self._live.get(request_id)
        if live is not None and live.task is not None:
            await live.task
        return await self.get_status(request_id)

    def cancel(self, request_id: str, rollback: bool = False) -> bool:
        """Ask an in-flight rollout to stop.

        Returns ``False`` when this engine is not running ``request_id``.
        """
        live = self._live.get(request_id)
        if live is None:
            return False
        live.rollback_on_cancel = rollback
        live.cancel.set()
        logger.info(f"Cancellation requested for rollout {request_id} (rollback={rollback})")
        return True

    async def recover(self) -> list[RolloutRecord]:
        """Resolve active records left behind by a previous process.

        Pending records never reached the cluster and are marked interrupted.
        In-progress records whose workload still targets the new image resume
        health monitoring; any other image state is marked interrupted.
        Records whose workload cannot be read stay active for a later attempt.
        Records still leased to another live engine are left alone.
        """
        stale_before = utcnow() - timedelta(seconds=self.lease_ttl)
        orphans = []
        for record in await self._journal.list_active():
            if record.request_id in self._live:
                continue
            claimed = await self._journal.claim(record.request_id, self.owner_id, stale_before)
            if claimed is None:
                logger.debug(
                    f"Rollout {record.request_id} is still held by {record.owner}; not recovering"
                )
                continue
            orphans.append(claimed)
        if orphans:
            logger.info(f"Recovering {len(orphans)} interrupted rollout(s)")
        results = await asyncio.gather(*(self._recover_one(r) for r in orphans))
        return [r for r in results if r is not None]

    # ------------------------------------------------------------------
    # Rollout execution
    async def _run(self, request: RolloutRequest, live: _LiveRollout) -> None:
        try:
            await self._execute(request, live)
        except LeaseLost as exc:
            logger.warning(f"Rollout {request.request_id} was taken over: {exc}")
        except Exception as exc:
            logger.exception(f"Rollout {request.request_id} crashed")
            await self._finish_safely(request.request_id, exc)
        finally:
            self._live.pop(request.request_id, None)

    async def _execute(self, request: RolloutRequest, live: _LiveRollout) -> None:
        rid = request.request_id
        try:
            snapshot = await self._cluster.get_workload(
                request.workload_name, request.namespace, request.container
            )
        except ClusterError as exc:
            await self._finish(rid, RolloutStatus.FAILED, _reason_for(exc), describe(exc))
            return

        if live.cancel.is_set():
            await self._finish(
                rid, RolloutStatus.FAILED, FailureReason.CANCELLED, "cancelled before patch"
            )
            return

        record = await self._journal.start(rid, snapshot.desired_image, owner=self.owner_id)
        logger.info(
            f"Rolling {request.namespace}/{request.workload_name} "
            f"[{snapshot.container}] {snapshot.desired_image} -> {request.target_image} "
            f"(request {rid})"
        )

        try:
            await self._cluster.patch_image(
                request.workload_name,
                request.namespace,
                request.target_image,
                container=snapshot.container,
                expected_revision=snapshot.revision,
            )
        except ClusterUnreachable as exc:
            await self._finish(
                rid,
                RolloutStatus.FAILED,
                FailureReason.CLUSTER_UNREACHABLE,
                f"{describe(exc)}; patch outcome unknown",
            )
            return
        except ClusterError as exc:
            await self._finish(rid, RolloutStatus.FAILED, _reason_for(exc), describe(exc))
            return

        await self._monitor(record, snapshot.container, live)

    async def _monitor(self, record: RolloutRecord, container: Optional[str], live: _LiveRollout) -> None:
        rid = record.request_id
        observation = await self._await_health(record, container, live)

        if observation.outcome == LOST:
            logger.warning(f"Lost the lease on rollout {rid}; another engine now drives it")
        elif observation.outcome == HEALTHY:
            await self._finish(rid, RolloutStatus.SUCCEEDED)
        elif observation.outcome == DRIFTED:
            await self._finish(
                rid,
                RolloutStatus.FAILED,
                FailureReason.CONCURRENT_MODIFICATION,
                observation.detail,
            )
        elif observation.outcome == CANCELLED and not live.rollback_on_cancel:
            await self._finish(
                rid, RolloutStatus.FAILED, FailureReason.CANCELLED, "cancelled during health check"
            )
        else:
            if observation.outcome == CANCELLED:
                reason, cause = FailureReason.CANCELLED, "cancelled during health check"
            else:
                reason = FailureReason.HEALTH_DEADLINE_EXCEEDED
                cause = f"health not sustained within {self.deadline}s"
                if observation.health is not None:
                    cause += (
                        f" (last reading {observation.health.ready}/"
                        f"{observation.health.total} ready)"
                    )
                elif observation.detail:
                    cause += f" ({observation.detail})"
            await self._rollback(record, container, reason, cause)

    async def _await_health(
        self, record: RolloutRecord, container: Optional[str], live: _LiveRollout
    ) -> _Observation:
        loop = asyncio.get_running_loop()
        deadline_at = loop.time() + self.deadline
        streak = 0
        last: Optional[PodHealth] = None
        last_error: Optional[str] = None

        while True:
            if live.cancel.is_set():
                return _Observation(CANCELLED, last)
            if not await self._journal.heartbeat(record.request_id, self.owner_id):
                return _Observation(LOST, last)
            try:
                snapshot = await self._cluster.get_workload(
                    record.workload_name, record.namespace, container
                )
                if snapshot.desired_image != record.target_image:
                    return _Observation(
                        DRIFTED,
                        last,
                        f"workload image changed to {snapshot.desired_image} during rollout",
                    )
                last = await self._cluster.get_pod_health(
                    record.workload_name, record.namespace, container
                )
                streak = streak + 1 if last.is_ready(snapshot.replica_count) else 0
                logger.debug(
                    f"Rollout {record.request_id}: {last.ready}/{last.total} ready "
                    f"(desired {snapshot.replica_count}, streak {streak})"
                )
            except ClusterError as exc:
                streak = 0
                last_error = describe(exc)
                logger.warning(f"Rollout {record.request_id}: health check failed: {exc}")

            if streak >= HEALTHY_OBSERVATIONS_REQUIRED:
                return _Observation(HEALTHY, last)

            remaining = deadline_at - loop.time()
            if remaining <= 0:
                return _Observation(DEADLINE, last, last_error)
            try:
                await asyncio.wait_for(
                    live.cancel.wait(), timeout=min(self.poll_interval, remaining)
                )
            except asyncio.TimeoutError:
                continue
            return _Observation(CANCELLED, last)

    async def _rollback(
        self,
        record: RolloutRecord,
        container: Optional[str],
        reason: FailureReason,
        cause: str,
    ) -> None:
        rid = record.request_id
        previous = record.previous_image
        logger.info(f"Rolling back {record.namespace}/{record.workload_name} to {previous}: {cause}")
        try:
            await self._cluster.patch_image(
                record.workload_name, record.namespace, previous, container=container
            )
        except ClusterError as exc:
            logger.error(
                f"Rollback of {record.namespace}/{record.workload_name} to {previous} "
                f"failed: {exc}; image state is indeterminate"
            )
            await self._finish(
                rid,
                RolloutStatus.FAILED,
                FailureReason.ROLLBACK_FAILED,
                f"{cause}; rollback to {previous} failed: {describe(exc)}; "
                "workload image state is indeterminate, manual intervention required",
            )
            return
        await self._finish(
            rid, RolloutStatus.ROLLED_BACK, reason, f"{cause}; reverted to {previous}"
        )

    async def _recover_one(self, record: RolloutRecord) -> RolloutRecord | None:
        try:
            return await self._resolve(record)
        except LeaseLost as exc:
            logger.warning(f"Rollout {record.request_id} was taken over during recovery: {exc}")
            return None

    async def _resolve(self, record: RolloutRecord) -> RolloutRecord | None:
        rid = record.request_id
        if record.status is RolloutStatus.PENDING:
            return await self._finish(
                rid,
                RolloutStatus.FAILED,
                FailureReason.INTERRUPTED,
                "interrupted before the workload was modified",
            )

        try:
            snapshot = await self._cluster.get_workload(
                record.workload_name, record.namespace, record.container
            )
        except WorkloadNotFound as exc:
            return await self._finish(
                rid, RolloutStatus.FAILED, FailureReason.WORKLOAD_NOT_FOUND, describe(exc)
            )
        except ClusterError as exc:
            logger.warning(f"Cannot recover rollout {rid} yet: {exc}")
            return record

        if snapshot.desired_image != record.target_image:
            return await self._finish(
                rid,
                RolloutStatus.FAILED,
                FailureReason.INTERRUPTED,
                f"interrupted; workload now runs {snapshot.desired_image}",
            )

        logger.info(f"Resuming health monitoring for rollout {rid}")
        live = _LiveRollout()
        self._live[rid] = live
        try:
            await self._monitor(record, snapshot.container, live)
        except LeaseLost as exc:
            logger.warning(f"Rollout {rid} was taken over: {exc}")
        except Exception as exc:
            logger.exception(f"Recovery of rollout {rid} crashed")
            await self._finish_safely(rid, exc)
        finally:
            self._live.pop(rid, None)
        return await self._journal.find(rid)

    # ------------------------------------------------------------------
    # Journal helpers
    async def _finish(
        self,
        request_id: str,
        status: RolloutStatus,
        reason: Optional[FailureReason] = None,
        error: Optional[str] = None,
    ) -> RolloutRecord:
        record = await self._journal.complete(
            request_id, status, reason=reason, error=error, owner=self.owner_id
        )
        message = f"Rollout {request_id} finished: {status.value}" + (
            f" ({reason.value}: {error})" if reason else ""
        )
        if status is RolloutStatus.SUCCEEDED:
            logger.info(message)
        elif reason is FailureReason.ROLLBACK_FAILED:
            logger.error(message)
        else:
            logger.warning(message)
        return record

    async def _finish_safely(self, request_id: str, exc: Exception) -> None:
        current = await self._journal.find(request_id)
        if current is None or not current.is_active or current.owner != self.owner_id:
            return
        error = describe(exc)
        if current.status is RolloutStatus.IN_PROGRESS:
            error += "; workload image state is indeterminate, manual intervention required"
        try:
            await self._finish(request_id, RolloutStatus.FAILED, FailureReason.INTERRUPTED, error)
        except LeaseLost as lost:
            logger.warning(f"Rollout {request_id} was taken over: {lost}")


def _reason_for(exc: ClusterError) -> Optional[FailureReason]:
    if isinstance(exc, WorkloadNotFound):
        return FailureReason.WORKLOAD_NOT_FOUND
    if isinstance(exc, Conflict):
        return FailureReason.CONCURRENT_MODIFICATION
    if isinstance(exc, ClusterUnreachable):
        return FailureReason.CLUSTER_UNREACHABLE
    return None
