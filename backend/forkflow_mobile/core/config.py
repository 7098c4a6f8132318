from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    APP_NAME: str = "ForkFlow Mobile Field Services"
    VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"

    # Local durable key-value storage (queue, mirror, GPS cache, metrics)
    DATABASE_URL: str = "sqlite:///./forkflow_mobile.db"

    # Remote record store
    RECORD_STORE_URL: Optional[str] = None
    RECORD_STORE_API_KEY: Optional[str] = None
    RECORD_STORE_TIMEOUT: int = 15

    # Attachments
    UPLOAD_ENDPOINT: Optional[str] = None
    UPLOAD_MAX_SIZE_BYTES: int = 10 * 1024 * 1024

    # Offline sync
    SYNC_INTERVAL_SECONDS: float = 30.0
    SYNC_DEBOUNCE_SECONDS: float = 1.0
    SYNC_MAX_RETRIES: int = 3

    # Performance telemetry
    METRICS_MAX_SAMPLES: int = 1000
    METRICS_RETENTION_DAYS: int = 7
    METRICS_CLEANUP_INTERVAL_SECONDS: float = 3600.0
    METRICS_PERSIST_INTERVAL_SECONDS: float = 5.0

    # GPS
    GPS_TIMEOUT_MS: int = 10000
    GPS_MAX_CACHE_AGE_MS: int = 60000
    GPS_FALLBACK_LATITUDE: Optional[float] = None  # Fixed fix for hosts without GPS hardware
    GPS_FALLBACK_LONGITUDE: Optional[float] = None

    # Interaction type settings: [{"id": 1, "key": "in_person", "label": "In Person", "active": true}, ...]
    INTERACTION_TYPES: List[dict] = []

    class Config:
        env_file = ".env"


settings = Settings()
