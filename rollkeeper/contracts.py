"""Core data contracts for rollkeeper rollouts."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .constants import DEFAULT_NAMESPACE


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RolloutStatus(str, Enum):
    """Lifecycle states of a rollout record."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return not self.is_active


ACTIVE_STATUSES = frozenset({RolloutStatus.PENDING, RolloutStatus.IN_PROGRESS})
TERMINAL_STATUSES = frozenset(
    {RolloutStatus.SUCCEEDED, RolloutStatus.FAILED, RolloutStatus.ROLLED_BACK}
)


class FailureReason(str, Enum):
    """Why a rollout did not end ``succeeded``."""

    CONCURRENT_MODIFICATION = "concurrent_modification"
    ROLLBACK_FAILED = "rollback_failed"
    CANCELLED = "cancelled"
    CLUSTER_UNREACHABLE = "cluster_unreachable"
    WORKLOAD_NOT_FOUND = "workload_not_found"
    HEALTH_DEADLINE_EXCEEDED = "health_deadline_exceeded"
    INTERRUPTED = "interrupted"


class RolloutRequest(BaseModel):
    """A request to move a workload onto a new image. Immutable."""

    model_config = ConfigDict(frozen=True)

    workload_name: str = Field(min_length=1)
    namespace: str = Field(default=DEFAULT_NAMESPACE, min_length=1)
    target_image: str
    container: Optional[str] = Field(
        default=None, description="Container to update; first container if unset"
    )
    requested_at: datetime = Field(default_factory=utcnow)
    request_id: str = Field(default_factory=lambda: str(uuid.uuid4()))


class RolloutRecord(BaseModel):
    """Journal entry tracking one rollout request."""

    request_id: str
    workload_name: str
    namespace: str
    target_image: str
    container: Optional[str] = None
    status: RolloutStatus = RolloutStatus.PENDING
    reason: Optional[FailureReason] = None
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    previous_image: Optional[str] = None
    error: Optional[str] = None
    owner: Optional[str] = Field(
        default=None, description="Engine currently driving the rollout"
    )
    heartbeat_at: Optional[datetime] = None

    @classmethod
    def from_request(
        cls, request: RolloutRequest, owner: Optional[str] = None
    ) -> "RolloutRecord":
        return cls(
            request_id=request.request_id,
            workload_name=request.workload_name,
            namespace=request.namespace,
            target_image=request.target_image,
            container=request.container,
            owner=owner,
            heartbeat_at=utcnow() if owner else None,
        )

    @property
    def is_active(self) -> bool:
        return self.status.is_active


class WorkloadSnapshot(BaseModel):
    """Point-in-time view of a workload. Never cached between decisions."""

    name: str
    namespace: str
    container: str
    desired_image: str
    replica_count: int
    ready_replicas: int = 0
    revision: str


class PodHealth(BaseModel):
    """Readiness summary of the pods backing a workload."""

    ready: int
    total: int

    def is_ready(self, desired_replicas: int) -> bool:
        return self.ready == self.total and self.total >= desired_replicas


class ImageRef(BaseModel):
    """A validated container image reference."""

    model_config = ConfigDict(frozen=True)

    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None
    mutable: bool
    reference: str = Field(description="The reference exactly as supplied")

    @property
    def tag_or_digest(self) -> str:
        return self.digest or self.tag or "latest"

    @property
    def canonical(self) -> str:
        value = f"{self.registry}/{self.repository}"
        if self.tag:
            value += f":{self.tag}"
        if self.digest:
            value += f"@{self.digest}"
        return value

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return self.reference


class RolloutMessage(BaseModel):
    """Envelope carrying a rollout request over a transport."""

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=utcnow)
    request: RolloutRequest

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "RolloutMessage":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)
