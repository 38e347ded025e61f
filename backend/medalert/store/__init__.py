from ..config import Config
from ..constants import Environment, StorageBackend
from .base import UNSET, EntityStore, seed_sample_data
from .memory import MemoryStore
from .sql import SQLStore


def build_store(config: Config) -> EntityStore:
    """Pick the persistence backend named by configuration."""
    if config.STORAGE_BACKEND == StorageBackend.SQL:
        return SQLStore(
            config.DATABASE_URL,
            echo=config.ENVIRONMENT == Environment.DEVELOPMENT,
            session_ttl_hours=config.SESSION_TTL_HOURS,
        )
    return MemoryStore(session_ttl_hours=config.SESSION_TTL_HOURS)


__all__ = [
    "UNSET",
    "EntityStore",
    "MemoryStore",
    "SQLStore",
    "build_store",
    "seed_sample_data",
]
