"""Application configuration using pydantic-settings.

Every tunable of the service lives on the settings object; values come from
the environment or a .env file and are validated at startup.
"""

from functools import lru_cache
from typing import List, Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra env vars
    )

    # Database - local SQLite file by default, override via DATABASE_URL
    database_url: str = "sqlite:///./stock_sync.db"
    db_pool_size: int = 20
    db_max_overflow: int = 40
    # Seconds a SQLite connection waits for the write lock
    db_lock_timeout_seconds: float = 15.0

    # CORS - comma-separated origins or "*" for development only
    cors_origins: str = "http://localhost:3000,http://localhost:8000"

    # Server
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # API
    api_v1_prefix: str = "/api/v1"

    # Rate limiting
    rate_limit_enabled: bool = True

    # ==========================================================================
    # Ingredient resolution
    # ==========================================================================
    match_default_threshold: float = 0.6
    mapping_acceptance_threshold: float = 0.7
    match_ambiguity_delta: float = 0.05
    # Build a missing recipe mapping on first sale instead of failing the line
    auto_build_mappings: bool = True

    # ==========================================================================
    # Deduction retry queue
    # ==========================================================================
    retry_enabled: bool = True
    retry_max_attempts: int = 5
    retry_base_delay_seconds: float = 2.0
    retry_max_delay_seconds: float = 300.0  # 5 minutes
    retry_max_concurrent: int = 3
    retry_poll_interval_seconds: float = 5.0
    retry_reload_window_hours: int = 24
    retry_reload_limit: int = 50

    # Movement log writer
    movement_queue_size: int = 1000

    @field_validator(
        "match_default_threshold",
        "mapping_acceptance_threshold",
        "match_ambiguity_delta",
    )
    @classmethod
    def validate_unit_interval(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("Matching thresholds must be between 0 and 1")
        return v

    @model_validator(mode="after")
    def validate_retry_settings(self) -> "Settings":
        """Reject retry settings that would never make progress."""
        if self.retry_max_attempts < 1:
            raise ValueError("RETRY_MAX_ATTEMPTS must be at least 1")
        if self.retry_max_concurrent < 1:
            raise ValueError("RETRY_MAX_CONCURRENT must be at least 1")
        if self.retry_base_delay_seconds <= 0:
            raise ValueError("RETRY_BASE_DELAY_SECONDS must be positive")
        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            raise ValueError(
                "RETRY_MAX_DELAY_SECONDS must not be smaller than RETRY_BASE_DELAY_SECONDS"
            )
        return self

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins into a list."""
        if self.cors_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
