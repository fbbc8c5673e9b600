from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="FUNGISCAN_", env_file=".env", extra="ignore")

    APP_NAME: str = "FungiScan Sync Service"
    VERSION: str = "1.0.0"

    # Backend API
    API_BASE_URL: str = "https://api.fungiscan.com/v1"
    API_KEY: Optional[str] = None  # Missing key = anonymous requests
    REQUEST_TIMEOUT: float = 30.0
    HEALTH_CHECK_TIMEOUT: float = 5.0

    # Local cache
    DATABASE_URL: str = "sqlite+aiosqlite:///./fungiscan.db"
    CACHE_RETENTION_DAYS: int = 30

    # Sync policy tunables
    CONNECTIVITY_CACHE_SECONDS: float = 30.0
    SEARCH_LOCAL_THRESHOLD: int = 5  # Local search hits above this skip the API
    MAX_SYNC_ATTEMPTS: int = 5
    RETRY_BASE_SECONDS: float = 30.0
    RETRY_MAX_SECONDS: float = 3600.0

    # Background jobs (0 disables)
    RECONCILE_INTERVAL_SECONDS: float = 300.0
    EVICTION_INTERVAL_SECONDS: float = 86400.0

    EXPORT_DIR: str = "./exports"
    LOG_LEVEL: str = "INFO"


settings = Settings()
