from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_CLUSTER_TIMEOUT,
    DEFAULT_DEADLINE,
    DEFAULT_LEASE_TTL,
    DEFAULT_POLL_INTERVAL,
    TOKEN_REFRESH_INTERVAL,
)


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class ClusterConfig(BaseModel):
    """Connection settings for the orchestration cluster.

    When ``api_server`` is empty the in-cluster service environment
    (``KUBERNETES_SERVICE_HOST``/``KUBERNETES_SERVICE_PORT``) is used.
    """

    backend: Literal["inmemory", "kubernetes"] = "inmemory"
    api_server: Optional[str] = None
    token: Optional[str] = None
    token_file: Optional[str] = None
    ca_cert: Optional[str] = None
    verify_ssl: bool = True
    timeout: float = DEFAULT_CLUSTER_TIMEOUT
    token_refresh_interval: float = TOKEN_REFRESH_INTERVAL


class RolloutConfig(BaseModel):
    """Health polling and lease settings for the rollout engine."""

    poll_interval: float = DEFAULT_POLL_INTERVAL
    deadline: float = DEFAULT_DEADLINE
    lease_ttl: float = DEFAULT_LEASE_TTL


class RollkeeperConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    cluster: ClusterConfig = ClusterConfig()
    rollout: RolloutConfig = RolloutConfig()
    database_url: Optional[str] = None


def load_config(path: Optional[str] = None) -> RollkeeperConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to ROLLKEEPER_CONFIG env
            variable or 'rollkeeper.yaml' in the current directory.
    """

    config_path = path or os.getenv("ROLLKEEPER_CONFIG", "rollkeeper.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = RollkeeperConfig(**data)
    else:
        config = RollkeeperConfig()

    env_db_url = os.getenv("ROLLKEEPER_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_cluster = os.getenv("ROLLKEEPER_CLUSTER")
    if env_cluster:
        config.cluster.backend = env_cluster.lower()
    return config
