"""Exception taxonomy for rollkeeper.

Cluster backends and journal backends translate their driver errors into
these classes so the engine never has to know which backend is in use.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .contracts import RolloutRecord


class RollkeeperError(Exception):
    """Base class for all rollkeeper errors."""


class ImageReferenceError(RollkeeperError, ValueError):
    """The image reference could not be parsed or is not allowed."""

    def __init__(self, reference: str, reason: str) -> None:
        super().__init__(f"invalid image reference {reference!r}: {reason}")
        self.reference = reference
        self.reason = reason


# ---------------------------------------------------------------------------
# Cluster
class ClusterError(RollkeeperError):
    """Base class for orchestration API failures."""


class ClusterUnreachable(ClusterError):
    """Transport failure, timeout or server-side error talking to the cluster."""


class WorkloadNotFound(ClusterError):
    def __init__(self, name: str, namespace: str) -> None:
        super().__init__(f"workload {namespace}/{name} not found")
        self.name = name
        self.namespace = namespace


class Conflict(ClusterError):
    """The workload revision changed between read and patch."""


# ---------------------------------------------------------------------------
# Journal
class JournalError(RollkeeperError):
    """Base class for rollout journal failures."""


class AlreadyInProgress(JournalError):
    """Another rollout is active for the same workload."""

    def __init__(self, active: "RolloutRecord") -> None:
        super().__init__(
            f"rollout {active.request_id} is already active for "
            f"{active.namespace}/{active.workload_name}"
        )
        self.active = active


class DuplicateRequest(JournalError):
    """A record already exists for this request id."""

    def __init__(self, existing: "RolloutRecord") -> None:
        super().__init__(f"rollout {existing.request_id} already recorded")
        self.existing = existing


class RecordNotFound(JournalError):
    def __init__(self, request_id: str) -> None:
        super().__init__(f"no rollout recorded for request {request_id}")
        self.request_id = request_id


class LeaseLost(JournalError):
    """The record is now driven by another engine."""

    def __init__(self, request_id: str, owner: str, holder: Optional[str]) -> None:
        super().__init__(
            f"rollout {request_id} is held by {holder or 'nobody'}, not {owner}"
        )
        self.request_id = request_id
        self.owner = owner
        self.holder = holder


class InvalidTransition(JournalError):
    def __init__(self, request_id: str, current: str, target: str) -> None:
        super().__init__(
            f"rollout {request_id} cannot move from {current} to {target}"
        )
        self.request_id = request_id
        self.current = current
        self.target = target


def describe(exc: Optional[BaseException]) -> Optional[str]:
    """Render an exception for storage on a rollout record."""
    if exc is None:
        return None
    return f"{type(exc).__name__}: {exc}"
