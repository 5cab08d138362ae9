"""
QueueSync - Configuration Management

Single source of truth for all environment variables and job settings.
Uses pydantic-settings for validation and type safety.
"""

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Required secrets will cause the job runner to crash if missing.
    Budgets and thresholds default to the values the hourly crons are tuned for.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # =========================================================================
    # SECRETS (Required)
    # =========================================================================

    supabase_url: str = Field(
        ...,
        description="Supabase project URL (local scoring/queue store)",
    )

    supabase_service_role_key: str = Field(
        ...,
        alias="SUPABASE_SERVICE_ROLE_KEY",
        description="Supabase service role key (admin access)",
    )

    replica_database_url: str = Field(
        ...,
        description="SQLAlchemy URL of the read-only operational replica",
    )

    local_schema: str = Field(
        default="public",
        description="Postgres schema holding user_call_scores / conversions / call_sessions",
    )

    # =========================================================================
    # LOGGING
    # =========================================================================

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )

    log_dir: str = Field(
        default="/tmp/queuesync",
        description="Directory for log files",
    )

    # =========================================================================
    # BATCH EXECUTION
    # =========================================================================

    # Serverless invocations are capped at 30s; keep a buffer
    discovery_max_execution_seconds: float = Field(
        default=25.0,
        gt=0,
        le=60,
        description="Wall-clock budget for the discovery jobs",
    )

    cleanup_max_execution_seconds: float = Field(
        default=28.0,
        gt=0,
        le=60,
        description="Wall-clock budget for the cleanup and attribution jobs",
    )

    inter_batch_delay_seconds: float = Field(
        default=0.1,
        ge=0,
        le=5,
        description="Pause between batches to bound load on shared databases",
    )

    # =========================================================================
    # CIRCUIT BREAKERS
    # =========================================================================

    local_failure_threshold: int = Field(default=5, ge=1, le=50)
    local_recovery_timeout: float = Field(default=30.0, gt=0)
    local_half_open_max_calls: int = Field(default=3, ge=1, le=20)

    # More lenient for the replica
    replica_failure_threshold: int = Field(default=8, ge=1, le=50)
    replica_recovery_timeout: float = Field(default=20.0, gt=0)
    replica_half_open_max_calls: int = Field(default=5, ge=1, le=20)

    # =========================================================================
    # CONVERSIONS & ATTRIBUTION
    # =========================================================================

    conversion_dedup_window_minutes: int = Field(
        default=60,
        ge=0,
        le=24 * 60,
        description="Skip logging a conversion if one exists for the user inside this window",
    )

    attribution_lookback_days: int = Field(
        default=30,
        ge=1,
        le=365,
        description="How far before convertedAt call sessions count as evidence",
    )

    attribution_min_talk_time_seconds: int = Field(
        default=30,
        ge=0,
        description="Sessions must exceed this talk time to count as a meaningful contact",
    )

    # =========================================================================
    # HEALTH SERVER
    # =========================================================================

    health_port: int = Field(default=8080, ge=1, le=65535)

    # =========================================================================
    # VALIDATORS
    # =========================================================================

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return upper

    @field_validator("supabase_url")
    @classmethod
    def validate_supabase_url(cls, v: str) -> str:
        """Ensure Supabase URL is valid."""
        if not v.startswith("https://"):
            raise ValueError("supabase_url must start with https://")
        return v.rstrip("/")

    @field_validator("replica_database_url")
    @classmethod
    def validate_replica_url(cls, v: str) -> str:
        """Require a driver-qualified SQLAlchemy URL."""
        if "://" not in v:
            raise ValueError("replica_database_url must be a SQLAlchemy URL (e.g. mysql+pymysql://...)")
        return v

    # =========================================================================
    # HELPER METHODS
    # =========================================================================

    @property
    def log_path(self) -> str:
        """Full path to the job log file."""
        return f"{self.log_dir}/queuesync.log"


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    Will raise ValidationError if required env vars are missing.
    """
    return Settings()
