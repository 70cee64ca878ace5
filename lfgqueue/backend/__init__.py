"""Backend package for the LFG queue service."""

from .catalog import InstanceCatalog, StaticInstanceCatalog, dungeon_catalog, raid_catalog
from .config import QueueSettings, load_settings
from .engine import MatchmakingEngine
from .factory import InstanceFactory
from .roles import normalize_role
from .service import QueueService, build_service
from .store import InMemoryQueueStore, PostgresQueueStore, QueueStore, create_store

__all__ = [
    "build_service",
    "create_store",
    "dungeon_catalog",
    "InMemoryQueueStore",
    "InstanceCatalog",
    "InstanceFactory",
    "load_settings",
    "MatchmakingEngine",
    "normalize_role",
    "PostgresQueueStore",
    "QueueService",
    "QueueSettings",
    "QueueStore",
    "raid_catalog",
    "StaticInstanceCatalog",
]
