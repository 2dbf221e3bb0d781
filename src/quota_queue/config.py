"""Configuration settings for quota-queue."""

from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SchedulerConfig(BaseModel):
    """Configuration for request dispatch and backoff.

    Controls the fixed inter-dispatch interval imposed by the provider and
    the exponential backoff applied after rate-limit rejections.
    """

    # Pacing
    interval_ms: int = Field(
        default=60000,
        ge=0,
        description="Minimum milliseconds between two dispatches (provider quota)",
    )

    # Backoff
    base_backoff_ms: int = Field(
        default=1000,
        ge=0,
        description="Backoff after a success; doubled per consecutive rate-limit failure",
    )
    max_backoff_ms: int = Field(
        default=60000,
        ge=0,
        description="Upper bound for the backoff delay",
    )
    rate_limit_status_codes: list[int] = Field(
        default_factory=lambda: [429, 430],
        description="Provider status codes classified as rate-limit rejections",
    )

    # Lifecycle
    shutdown_timeout_seconds: float = Field(
        default=30.0,
        ge=0.0,
        description="Seconds to wait for the queue to drain on shutdown",
    )

    @model_validator(mode="after")
    def _check_backoff_bounds(self) -> "SchedulerConfig":
        if self.max_backoff_ms < self.base_backoff_ms:
            raise ValueError("max_backoff_ms must be >= base_backoff_ms")
        return self


class RegistryConfig(BaseModel):
    """Configuration for the request status registry.

    Finished requests are retained for polling, then evicted by age and count.
    """

    retention_seconds: float = Field(
        default=600.0,
        ge=0.0,
        description="Seconds a finished request stays available for status lookups",
    )
    max_records: int = Field(
        default=1000,
        ge=1,
        description="Maximum finished requests retained (oldest evicted first)",
    )


class JobsConfig(BaseModel):
    """Configuration for periodic background jobs."""

    stats_interval_seconds: float = Field(
        default=60.0,
        gt=0.0,
        description="Seconds between periodic stats refreshes",
    )
    transactions_interval_seconds: float = Field(
        default=300.0,
        gt=0.0,
        description="Seconds between periodic transaction refreshes",
    )
    startup_delay_seconds: float = Field(
        default=10.0,
        ge=0.0,
        description="Delay before the first periodic run after startup",
    )


class LoggingConfig(BaseModel):
    """Configuration for logging behavior.

    Controls file logging, rotation, and output format.
    """

    log_file: str | None = Field(
        default=None,
        description="Optional path for file logging (enables rotation)",
    )
    dispatch_log_file: str | None = Field(
        default=None,
        description="Optional JSON-lines file receiving only per-request dispatch records",
    )
    rotation: str = Field(
        default="10 MB",
        description="When to rotate log file (e.g., '10 MB', '1 day')",
    )
    retention: str = Field(
        default="7 days",
        description="How long to keep rotated logs",
    )
    serialize: bool = Field(
        default=False,
        description="If True, output JSON format to file",
    )


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Nested groups use a double underscore delimiter, e.g.
    ``SCHEDULER__INTERVAL_MS=60000``.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # --------------------------------------------------------------------------
    # Application
    # --------------------------------------------------------------------------
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Application environment",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # --------------------------------------------------------------------------
    # Scheduling
    # --------------------------------------------------------------------------
    scheduler: SchedulerConfig = Field(
        default_factory=SchedulerConfig,
        description="Dispatch interval and backoff configuration",
    )
    registry: RegistryConfig = Field(
        default_factory=RegistryConfig,
        description="Request status retention configuration",
    )
    jobs: JobsConfig = Field(
        default_factory=JobsConfig,
        description="Periodic job configuration",
    )

    # --------------------------------------------------------------------------
    # Logging Configuration
    # --------------------------------------------------------------------------
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration (file output, rotation)",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
