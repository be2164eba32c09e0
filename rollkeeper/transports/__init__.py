"""Rollout request queues.

``inmemory`` keeps requests inside the current process and suits tests and
single-process use. ``redis`` lets ``rollkeeper enqueue`` and ``rollkeeper
worker`` run as separate processes against one Redis list per topic.
"""

from __future__ import annotations

import os
from typing import Callable, Dict, Optional

from ..config import RollkeeperConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport


def _redis(config: RollkeeperConfig) -> BaseTransport:
    from .redis import RedisTransport

    return RedisTransport(**config.transport.redis.model_dump())


_BACKENDS: Dict[str, Callable[[RollkeeperConfig], BaseTransport]] = {
    "inmemory": lambda config: InMemoryTransport(),
    "redis": _redis,
}


def get_transport(
    backend: Optional[str] = None, config: Optional[RollkeeperConfig] = None
) -> BaseTransport:
    """Build the request queue named by ``backend``, ROLLKEEPER_TRANSPORT or config."""
    config = config or load_config()
    name = (backend or os.getenv("ROLLKEEPER_TRANSPORT") or config.transport.backend).lower()
    factory = _BACKENDS.get(name)
    if factory is None:
        raise ValueError(f"Unsupported transport backend: {name}")
    return factory(config)


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]
