"""Configuration helpers for backend runtime."""

from __future__ import annotations

import os
from dataclasses import dataclass

from lfgqueue.backend.catalog import DEFAULT_LAUNCH_DUNGEON, DEFAULT_LAUNCH_RAID

DEFAULT_QUEUE_TTL_SECONDS = 30 * 60


@dataclass(frozen=True)
class QueueSettings:
    database_url: str | None
    host: str
    port: int
    queue_ttl_seconds: int
    launch_dungeon_id: str
    launch_raid_id: str
    verbose: bool


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in {"1", "true", "yes", "on"}


def load_settings() -> QueueSettings:
    port_raw = os.getenv("LFGQUEUE_PORT", "8000")
    ttl_raw = os.getenv("LFGQUEUE_QUEUE_TTL_SECONDS", str(DEFAULT_QUEUE_TTL_SECONDS))
    return QueueSettings(
        database_url=os.getenv("LFGQUEUE_DATABASE_URL"),
        host=os.getenv("LFGQUEUE_HOST", "127.0.0.1"),
        port=int(port_raw),
        queue_ttl_seconds=int(ttl_raw),
        launch_dungeon_id=os.getenv("LFGQUEUE_LAUNCH_DUNGEON", DEFAULT_LAUNCH_DUNGEON),
        launch_raid_id=os.getenv("LFGQUEUE_LAUNCH_RAID", DEFAULT_LAUNCH_RAID),
        verbose=_env_flag("LFGQUEUE_VERBOSE"),
    )
