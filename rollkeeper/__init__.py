"""rollkeeper: verified, idempotent container image rollouts."""

from .cluster import BaseClusterClient, InMemoryCluster, get_cluster_client
from .contracts import (
    FailureReason,
    ImageRef,
    PodHealth,
    RolloutMessage,
    RolloutRecord,
    RolloutRequest,
    RolloutStatus,
    WorkloadSnapshot,
)
from .engine import RolloutEngine
from .images import resolve
from .journal import RolloutJournal, get_journal
from .transports import get_transport
from .worker import RolloutWorker, enqueue_rollout

__version__ = "0.1.0"
__all__ = [
    "BaseClusterClient",
    "InMemoryCluster",
    "get_cluster_client",
    "FailureReason",
    "ImageRef",
    "PodHealth",
    "RolloutMessage",
    "RolloutRecord",
    "RolloutRequest",
    "RolloutStatus",
    "WorkloadSnapshot",
    "RolloutEngine",
    "resolve",
    "RolloutJournal",
    "get_journal",
    "get_transport",
    "RolloutWorker",
    "enqueue_rollout",
]
