"""Rollout journal: durable record of attempted rollouts."""

from __future__ import annotations

import os
from typing import Optional

from ..config import RollkeeperConfig, load_config
from .inmemory import InMemoryRolloutJournal
from .repository import RolloutJournal
from .sqlite import SQLiteRolloutJournal

_journal_instance: RolloutJournal | None = None


def get_journal(
    database_url: Optional[str] = None, config: Optional[RollkeeperConfig] = None
) -> RolloutJournal:
    """Factory function to obtain a rollout journal.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``ROLLKEEPER_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory journal is returned.
    """

    global _journal_instance
    if _journal_instance is not None and database_url is None and config is None:
        return _journal_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("ROLLKEEPER_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        _journal_instance = InMemoryRolloutJournal()
        return _journal_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _journal_instance = SQLiteRolloutJournal(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        from .postgres import PostgresRolloutJournal

        _journal_instance = PostgresRolloutJournal(database_url)
    elif database_url.startswith("redis://") or database_url.startswith("rediss://"):
        from .redis import RedisRolloutJournal

        _journal_instance = RedisRolloutJournal(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _journal_instance


__all__ = [
    "RolloutJournal",
    "InMemoryRolloutJournal",
    "SQLiteRolloutJournal",
    "get_journal",
]
