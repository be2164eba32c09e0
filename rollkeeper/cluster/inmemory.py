"""In-memory cluster for testing and local demos."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Iterable, List, Optional, Tuple, Union

from ..contracts import PodHealth, WorkloadSnapshot
from ..errors import ClusterError, Conflict, WorkloadNotFound
from .base import BaseClusterClient

HealthScript = Union[Iterable[Tuple[int, int]], Callable[["FakeWorkload"], PodHealth]]


@dataclass
class FakeWorkload:
    name: str
    namespace: str
    containers: Dict[str, str]
    replicas: int = 1
    revision: int = 1
    readings: Deque[PodHealth] = field(default_factory=deque)
    health_script: Optional[Callable[["FakeWorkload"], PodHealth]] = None
    last_reading: Optional[PodHealth] = None

    def image(self, container: Optional[str] = None) -> str:
        return self.containers[container or next(iter(self.containers))]


class InMemoryCluster(BaseClusterClient):
    """Simple in-process cluster for unit tests.

    Workloads are all healthy by default. Health can be scripted per workload
    with :meth:`set_health` and failures injected with :meth:`inject_failure`.
    Every applied patch is recorded in :attr:`patches`.
    """

    def __init__(self, latency: float = 0.0) -> None:
        self._workloads: Dict[Tuple[str, str], FakeWorkload] = {}
        self._failures: Dict[str, Deque[ClusterError]] = defaultdict(deque)
        self.latency = latency
        self.patches: List[Tuple[str, str, str, str]] = []

    # ------------------------------------------------------------------
    # Test helpers
    def add_workload(
        self,
        name: str,
        image: str,
        namespace: str = "default",
        replicas: int = 1,
        container: str = "app",
    ) -> FakeWorkload:
        workload = FakeWorkload(
            name=name,
            namespace=namespace,
            containers={container: image},
            replicas=replicas,
        )
        self._workloads[(namespace, name)] = workload
        return workload

    def workload(self, name: str, namespace: str = "default") -> FakeWorkload:
        try:
            return self._workloads[(namespace, name)]
        except KeyError:
            raise WorkloadNotFound(name, namespace) from None

    def set_health(
        self, name: str, script: HealthScript, namespace: str = "default"
    ) -> None:
        """Script pod health readings.

        ``script`` is either a sequence of ``(ready, total)`` pairs, returned
        one per poll with the last pair repeated once exhausted, or a callable
        computing the reading from the workload.
        """
        workload = self.workload(name, namespace)
        if callable(script):
            workload.health_script = script
            workload.readings.clear()
        else:
            workload.health_script = None
            workload.readings = deque(PodHealth(ready=r, total=t) for r, t in script)

    def inject_failure(self, operation: str, error: ClusterError, times: int = 1) -> None:
        """Raise ``error`` from the next ``times`` calls of ``operation``."""
        for _ in range(times):
            self._failures[operation].append(error)

    def bump_revision(self, name: str, namespace: str = "default") -> None:
        """Simulate a change made by another actor."""
        self.workload(name, namespace).revision += 1

    async def _enter(self, operation: str) -> None:
        await asyncio.sleep(self.latency)
        if self._failures[operation]:
            raise self._failures[operation].popleft()

    # ------------------------------------------------------------------
    # Cluster API
    async def get_workload(
        self, name: str, namespace: str, container: Optional[str] = None
    ) -> WorkloadSnapshot:
        await self._enter("get_workload")
        workload = self.workload(name, namespace)
        target = container or next(iter(workload.containers))
        if target not in workload.containers:
            raise WorkloadNotFound(f"{name}[{target}]", namespace)
        ready = workload.last_reading.ready if workload.last_reading else workload.replicas
        return WorkloadSnapshot(
            name=name,
            namespace=namespace,
            container=target,
            desired_image=workload.containers[target],
            replica_count=workload.replicas,
            ready_replicas=ready,
            revision=str(workload.revision),
        )

    async def patch_image(
        self,
        name: str,
        namespace: str,
        image: str,
        container: Optional[str] = None,
        expected_revision: Optional[str] = None,
    ) -> str:
        await self._enter("patch_image")
        workload = self.workload(name, namespace)
        if expected_revision is not None and expected_revision != str(workload.revision):
            raise Conflict(
                f"{namespace}/{name} is at revision {workload.revision}, "
                f"expected {expected_revision}"
            )
        target = container or next(iter(workload.containers))
        if target not in workload.containers:
            raise WorkloadNotFound(f"{name}[{target}]", namespace)
        workload.containers[target] = image
        workload.revision += 1
        self.patches.append((namespace, name, target, image))
        return str(workload.revision)

    async def get_pod_health(
        self, name: str, namespace: str, container: Optional[str] = None
    ) -> PodHealth:
        await self._enter("get_pod_health")
        workload = self.workload(name, namespace)
        if workload.health_script is not None:
            reading = workload.health_script(workload)
        elif len(workload.readings) > 1:
            reading = workload.readings.popleft()
        elif workload.readings:
            reading = workload.readings[0]
        else:
            reading = PodHealth(ready=workload.replicas, total=workload.replicas)
        workload.last_reading = reading
        return reading
