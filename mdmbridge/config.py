from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    CLI flags override these through model_copy(update=...).
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    LOG_LEVEL: str = "INFO"

    # Migration source and destination
    SOURCE_DB_PATH: str = "/var/db/micromdm.db"
    REMOTE_URL: Optional[str] = None
    REMOTE_API_KEY: Optional[str] = None

    # Selection filter: comma separated UDIDs, last seen cut off in days
    MIGRATE_UDIDS: str = ""
    MIGRATE_DAYS: int = 0

    # Dedup ledger path; unset disables dedup
    TRACK_PATH: Optional[str] = None

    # Command proxy
    LISTEN_HOST: str = "0.0.0.0"
    LISTEN_PORT: int = 9001
    PROXY_API_KEY: Optional[str] = None
    COMMAND_URL: Optional[str] = None
    COMMAND_METHOD: str = "GET"

    @property
    def can_send(self) -> bool:
        """True when both a remote URL and an API key are configured."""
        return bool(self.REMOTE_URL and self.REMOTE_API_KEY)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file more than once.
    """
    return Settings()
