"""Cluster client factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import RollkeeperConfig, load_config
from .base import BaseClusterClient
from .inmemory import InMemoryCluster


def get_cluster_client(
    backend: Optional[str] = None, config: Optional[RollkeeperConfig] = None
) -> BaseClusterClient:
    """Factory function to get the configured cluster client."""

    config = config or load_config()
    backend = (
        backend or os.getenv("ROLLKEEPER_CLUSTER") or config.cluster.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryCluster()
    elif backend == "kubernetes":
        from .kubernetes import KubernetesClusterClient

        return KubernetesClusterClient.from_config(config.cluster)
    else:
        raise ValueError(f"Unsupported cluster backend: {backend}")


__all__ = ["BaseClusterClient", "InMemoryCluster", "get_cluster_client"]
