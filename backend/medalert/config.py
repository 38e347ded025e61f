from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import Environment, StorageBackend


class Config(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="MEDALERT_", env_file=".env", extra="ignore")

    ENVIRONMENT: Environment = Environment.PRODUCTION
    STORAGE_BACKEND: StorageBackend = StorageBackend.MEMORY
    DATABASE_URL: str = "sqlite:///./medalert.sqlite"
    SEED_SAMPLE_DATA: bool = True

    NEARBY_RADIUS_KM: float = 10.0
    RECENT_LIMIT: int = 5
    RELEASE_UNIT_ON_RESOLVE: bool = True

    HEARTBEAT_INTERVAL_SECONDS: float = 30.0
    HEARTBEAT_GRACE_SECONDS: float = 90.0
    SESSION_TTL_HOURS: float = 24

    CORS_ORIGINS: List[str] = ["http://localhost:5173"]
    LOG_LEVEL: str = "INFO"


settings = Config()
