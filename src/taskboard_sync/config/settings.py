"""Client settings."""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    api_base_url: str = "http://localhost:8080"
    poll_interval_s: float = Field(default=1.5, gt=0.0)
    auto_refresh: bool = True
    request_timeout_s: float = Field(default=10.0, gt=0.0)
    request_max_retries: int = Field(default=1, ge=0)
    request_backoff_s: float = Field(default=0.2, ge=0.0)
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="TASKBOARD_SYNC_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_api_base_url(self) -> str:
        return self.api_base_url.rstrip("/")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
