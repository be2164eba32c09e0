"""Base cluster client interface for rollkeeper."""

from __future__ import annotations

import abc
from typing import Optional

from ..contracts import PodHealth, WorkloadSnapshot


class BaseClusterClient(metaclass=abc.ABCMeta):
    """Abstract client for the orchestration API.

    Implementations bound every call with a timeout and never retry; a
    timeout surfaces as :class:`~rollkeeper.errors.ClusterUnreachable`.
    """

    async def connect(self) -> None:
        """Open connection to the cluster (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to the cluster (no-op by default)."""
        pass

    @abc.abstractmethod
    async def get_workload(
        self, name: str, namespace: str, container: Optional[str] = None
    ) -> WorkloadSnapshot:
        """Fetch a fresh snapshot of the workload.

        Raises:
            WorkloadNotFound: the workload does not exist.
            ClusterUnreachable: transport error or timeout.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def patch_image(
        self,
        name: str,
        namespace: str,
        image: str,
        container: Optional[str] = None,
        expected_revision: Optional[str] = None,
    ) -> str:
        """Point ``container`` of the workload at ``image``.

        Args:
            expected_revision: When given, the patch only applies if the
                workload is still at this revision; otherwise ``Conflict``.

        Returns:
            The workload revision after the patch.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def get_pod_health(
        self, name: str, namespace: str, container: Optional[str] = None
    ) -> PodHealth:
        """Return how many of the workload's pods are ready on its desired image."""
        raise NotImplementedError
