"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Determine which environment to load (default: development)
APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Map environments to their respective .env files (relative to PROJECT_ROOT)
ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Nested BaseSettings don't inherit env_file, so populate os.environ up front
if _env_file:
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


class LogSettings(BaseSettings):
    """Logging output configuration."""

    level: str = Field("INFO", description="Root log level")
    format: str = Field("json", description="Log format: json or plain")
    output: str = Field("stdout", description="Log destination: stdout or file")
    file_path: str | None = Field(None, description="Log file path when output=file")
    max_bytes: int = Field(
        10 * 1024 * 1024,
        description="Rotate the log file after this many bytes (0 disables rotation)",
        ge=0,
    )
    backup_count: int = Field(5, description="Number of rotated log files to keep", ge=0)
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header used to propagate the request correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class RateLimitSettings(BaseSettings):
    """Sliding-window rate limiting per API key."""

    enabled: bool = Field(
        True,
        description="Enable rate limiting on routes that depend on enforce_rate_limit",
    )
    requests: int = Field(
        100,
        description="Maximum number of requests allowed per window (per API key)",
        ge=1,
    )
    window_seconds: float = Field(
        900.0,
        description="Rate limit window size in seconds",
        gt=0,
    )
    cleanup_interval_seconds: float = Field(
        60.0,
        description="How often expired counter windows are swept",
        gt=0,
    )
    include_headers: bool = Field(
        True,
        description="Include X-RateLimit-* and Retry-After headers",
    )

    model_config = SettingsConfigDict(
        env_prefix="RATE_LIMIT_",
        case_sensitive=False,
    )


class DetectorSettings(BaseSettings):
    """Thresholds for the suspicious pattern heuristics."""

    velocity_window_seconds: float = Field(300.0, gt=0)
    velocity_limit: int = Field(5, ge=1)
    identical_amount_count: int = Field(3, ge=1)
    identical_amount_window_seconds: float = Field(600.0, gt=0)
    recipient_diversity_limit: int = Field(10, ge=1)
    recipient_retention_seconds: float = Field(
        86400.0,
        description="Idle time after which a donor's recipient set is swept",
        gt=0,
    )
    sequential_failure_limit: int = Field(5, ge=1)
    failure_gap_seconds: float = Field(
        60.0,
        description="A longer gap between failures breaks the streak",
        gt=0,
    )
    failure_retention_seconds: float = Field(3600.0, gt=0)
    off_hours_start: int = Field(2, description="First off-hours UTC hour (inclusive)", ge=0, le=23)
    off_hours_end: int = Field(6, description="Last off-hours UTC hour (exclusive)", ge=1, le=24)
    off_hours_request_limit: int = Field(20, ge=1)
    off_hours_window_seconds: float = Field(86400.0, gt=0)
    cleanup_interval_seconds: float = Field(900.0, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="DETECTOR_",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def _check_off_hours_range(self) -> DetectorSettings:
        # The window may not wrap past midnight
        if self.off_hours_start >= self.off_hours_end:
            raise ValueError(
                "DETECTOR_OFF_HOURS_START must be lower than DETECTOR_OFF_HOURS_END"
            )
        return self


class AbuseSettings(BaseSettings):
    """Request/response observation feeding the pattern detector."""

    enabled: bool = Field(True, description="Enable the abuse observation middleware")
    window_seconds: float = Field(60.0, description="Window for request/failure counts", gt=0)
    request_threshold: int = Field(
        120,
        description="Requests per window after which an identifier is flagged",
        ge=1,
    )
    failure_threshold: int = Field(
        20,
        description="Failed responses per window after which an identifier is flagged",
        ge=1,
    )
    donation_path_markers: list[str] = Field(
        default_factory=lambda: ["/donations", "/send"],
        description="Path fragments identifying donation submissions",
    )
    cleanup_interval_seconds: float = Field(60.0, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="ABUSE_",
        case_sensitive=False,
    )


class AuditSettings(BaseSettings):
    """Audit trail persistence."""

    database_url: str = Field(
        "sqlite+aiosqlite:///./audit.db",
        description="SQLAlchemy async database URL for the audit_logs table",
    )
    echo: bool = Field(False, description="Echo SQL statements (debugging only)")
    create_schema: bool = Field(
        True,
        description="Create the audit_logs table on startup if it does not exist",
    )

    model_config = SettingsConfigDict(
        env_prefix="AUDIT_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if settings are invalid.
    """

    app_env: str = APP_ENV
    log: LogSettings = Field(default_factory=LogSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    detector: DetectorSettings = Field(default_factory=DetectorSettings)
    abuse: AbuseSettings = Field(default_factory=AbuseSettings)
    audit: AuditSettings = Field(default_factory=AuditSettings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"


# Global settings instance, read by the composition root
settings = Settings()
