"""Service settings, read from the environment and an optional .env file."""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Queue service settings. Field names map to upper-case env vars."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Service Configuration
    service_host: str = Field(default="0.0.0.0", description="Service host")
    service_port: int = Field(default=8000, description="Service port")
    log_level: str = Field(default="INFO", description="Logging level")

    # Database
    database_url: Optional[str] = Field(
        default=None, description="PostgreSQL connection URL for the job store"
    )
    db_pool_min_size: int = Field(default=1, description="Minimum connection pool size")
    db_pool_max_size: int = Field(default=10, description="Maximum connection pool size")
    db_ssl: Optional[str] = Field(
        default=None, description="asyncpg ssl mode (e.g. 'require'); None disables"
    )

    # Job queue
    job_max_attempts: int = Field(
        default=3, ge=1, description="Claims allowed before a job is permanently failed"
    )
    job_poll_interval_s: float = Field(
        default=2.0, gt=0, description="Worker sleep when the queue is empty"
    )
    job_timeout_s: float = Field(
        default=300.0, gt=0, description="Upper bound on a single processor call"
    )
    job_stale_timeout_minutes: int = Field(
        default=30, ge=1, description="Processing claims older than this are reaped"
    )
    job_reap_interval_s: float = Field(
        default=60.0, gt=0, description="How often the polling worker runs the reaper"
    )
    job_batch_size: int = Field(
        default=1, ge=1, le=100, description="Jobs drained per worker trigger"
    )
    stats_window_hours: int = Field(
        default=24, ge=1, description="Window for average queue/processing durations"
    )
    reflect_subject_status: bool = Field(
        default=True,
        description="Mirror job status onto memories.processing_status",
    )

    # Internal API
    admin_token: Optional[str] = Field(
        default=None, description="Shared token for /queue routes (ADMIN_TOKEN)"
    )

    # AI processor
    processor_url: Optional[str] = Field(
        default=None, description="Enrichment service endpoint"
    )
    processor_api_key: Optional[str] = Field(
        default=None, description="Bearer token for the enrichment service"
    )
    processor_timeout_s: float = Field(
        default=120.0, gt=0, description="HTTP timeout for enrichment calls"
    )

    # Error tracking
    sentry_dsn: Optional[str] = Field(
        default=None, description="Sentry DSN; error tracking is off when unset"
    )
    sentry_environment: str = Field(
        default="development", description="Environment tag on Sentry events"
    )
    sentry_traces_sample_rate: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Trace sample rate; the worker trigger uses a tenth of it",
    )

    @property
    def store_configured(self) -> bool:
        """Whether jobs persist in Postgres rather than in process memory."""
        return bool(self.database_url)

    @property
    def processor_configured(self) -> bool:
        """Whether a worker can be built (needs an enrichment endpoint)."""
        return bool(self.processor_url)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
