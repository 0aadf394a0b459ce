"""Settings management.

WHAT:
    Central configuration for the sync engine, loaded from environment
    variables or a local .env file.

WHY:
    Meta's rate-limit error codes, delays and batch sizes change over time.
    Keeping them in settings means an operator can tune them without a deploy.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment or .env."""

    # Meta Graph API
    META_GRAPH_BASE_URL: str = "https://graph.facebook.com"
    META_API_VERSION: str = "v21.0"
    META_REQUEST_TIMEOUT_SECONDS: float = 30.0

    # Fetcher retry policy
    META_MAX_RETRIES: int = 5
    META_RATE_LIMIT_BACKOFF_SECONDS: float = 3.0  # 3s, 6s, 12s, 24s, 48s
    META_NETWORK_BACKOFF_SECONDS: float = 1.0
    # Error codes: 4 = app-level throttling, 17 = user-level, 80004 = ads account-level
    META_RATE_LIMIT_ERROR_CODES: List[int] = [4, 17, 80004]
    # 102 = session invalid, 190 = access token invalid/expired
    META_AUTH_ERROR_CODES: List[int] = [102, 190]
    # 1 = unknown error, 2 = service temporarily unavailable
    META_TRANSIENT_ERROR_CODES: List[int] = [1, 2]

    # Pagination / batching
    META_PAGE_LIMIT: int = 100
    META_PAGE_DELAY_SECONDS: float = 2.0
    META_BATCH_SIZE: int = 50
    META_BATCH_DELAY_SECONDS: float = 5.0

    # Insights
    META_CONVERSION_ACTION_TYPES: List[str] = ["offsite_conversion.fb_pixel_purchase"]

    # Sync control
    SYNC_DEADLINE_SECONDS: Optional[float] = None
    SYNC_LOCK_TIMEOUT_SECONDS: int = 3600

    # Infrastructure
    REDIS_URL: str = "redis://localhost:6379/0"
    ASSET_STORAGE_DIR: str = "./storage"
    SENTRY_DSN: Optional[str] = None
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def sync_deadline_seconds(self) -> float:
        """Pass deadline, capped at the lock timeout.

        The Redis lock expires after SYNC_LOCK_TIMEOUT_SECONDS; a pass that
        outlived it could overlap with the next one.
        """
        if self.SYNC_DEADLINE_SECONDS is None:
            return float(self.SYNC_LOCK_TIMEOUT_SECONDS)
        return min(self.SYNC_DEADLINE_SECONDS, float(self.SYNC_LOCK_TIMEOUT_SECONDS))


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]
