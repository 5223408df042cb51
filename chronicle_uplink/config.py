"""
Uplink configuration using pydantic-settings.
Loads from CHRONICLE_* environment variables (or .env) with sensible defaults.
"""
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# One bound parameter per id in a batch delete; SQLite builds before 3.32 cap these at 999
MAX_BATCH_SIZE = 999


class Settings(BaseSettings):
    """Settings for the sample store, uploader and drain scheduler."""

    model_config = SettingsConfigDict(
        env_prefix="CHRONICLE_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # Remote API
    api_url: str = "https://api.getchronicle.com"
    request_timeout_s: float = 10.0
    upload_timeout_s: float = 30.0  # Upper bound for one batch upload

    # Local storage
    db_path: str = "data/chronicle.db"

    # Drain
    batch_size: int = 200
    drain_interval_s: float = 900.0  # 15 minutes
    retry_base_s: float = 30.0
    retry_max_s: float = 3600.0
    stats_interval_s: float = 60.0

    # Device
    timezone: str = "UTC"  # IANA zone id stamped on produced records
    mock_data: bool = False

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    @field_validator("batch_size")
    @classmethod
    def check_batch_size(cls, value: int) -> int:
        if not 1 <= value <= MAX_BATCH_SIZE:
            raise ValueError(f"batch_size must be between 1 and {MAX_BATCH_SIZE}")
        return value

    @field_validator("timezone")
    @classmethod
    def check_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown IANA timezone: {value}")
        return value

    @field_validator("log_level")
    @classmethod
    def check_log_level(cls, value: str) -> str:
        value = value.upper()
        if value not in LOG_LEVELS:
            raise ValueError(f"Invalid log level: {value}")
        return value


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
