"""
Centralized configuration management for couchfeed.

Uses Pydantic Settings for validation and environment variable loading.
Loads from .env file if present, falls back to environment variables, then defaults.
"""
import math
from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class FollowerSettings(BaseSettings):
    """Changes follower loop configuration."""

    model_config = SettingsConfigDict(
        env_prefix="CHANGES_FOLLOWER_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Transient error suppression
    error_tolerance_seconds: float = Field(
        default=300.0,
        description="How long an unbroken run of transient errors is tolerated (inf = forever)"
    )

    # Backoff between retries of the same since
    backoff_initial_seconds: float = Field(default=0.1, description="First retry delay")
    backoff_max_seconds: float = Field(default=30.0, description="Upper bound of a retry delay")
    backoff_jitter_seconds: float = Field(default=0.5, description="Random jitter added to each delay")

    # Paging and long-poll
    batch_size: int = Field(default=10_000, description="Changes requested per page")
    longpoll_timeout_ms: int = Field(
        default=57_000,
        description="Server-side long-poll timeout (minimum client timeout minus 3s)"
    )
    min_client_timeout_seconds: float = Field(
        default=60.0,
        description="Smallest client read timeout accepted by the follower"
    )

    # Output sequence
    buffer_size: int = Field(default=100, description="Items buffered ahead of the consumer")
    poll_interval_seconds: float = Field(
        default=0.1,
        description="How often a blocked producer or consumer re-checks stop/close"
    )

    @field_validator("error_tolerance_seconds", "backoff_initial_seconds", "backoff_jitter_seconds")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        """Durations must not be negative."""
        if math.isnan(v) or v < 0:
            raise ValueError("must not be negative")
        return v

    @field_validator("backoff_max_seconds", "poll_interval_seconds", "min_client_timeout_seconds")
    @classmethod
    def validate_positive_float(cls, v: float) -> float:
        """Bounds and intervals must be positive."""
        if math.isnan(v) or v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("batch_size", "buffer_size", "longpoll_timeout_ms")
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        """Sizes must be positive."""
        if v <= 0:
            raise ValueError("must be positive")
        return v


class CouchSettings(BaseSettings):
    """CouchDB / Cloudant server configuration."""

    model_config = SettingsConfigDict(
        env_prefix="COUCH_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    url: str = Field(default="http://localhost:5984", description="Server base URL")
    username: Optional[str] = Field(default=None, description="Basic auth username")
    password: Optional[str] = Field(default=None, description="Basic auth password")
    timeout_seconds: float = Field(
        default=150.0,
        description="HTTP read timeout; must stay above the long-poll timeout"
    )
    verify_ssl: bool = Field(default=True, description="Verify TLS certificates")


class CheckpointSettings(BaseSettings):
    """Checkpoint store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="CHECKPOINT_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    database_url: str = Field(
        default="sqlite:///couchfeed_checkpoints.db",
        description="SQLAlchemy URL of the checkpoint database"
    )


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    level: str = Field(default="INFO", description="Log level name")
    json_format: bool = Field(default=True, description="Emit JSON log lines")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level name."""
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()


class Settings(BaseSettings):
    """Main application settings combining all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Sub-configurations
    follower: FollowerSettings = Field(default_factory=FollowerSettings)
    couch: CouchSettings = Field(default_factory=CouchSettings)
    checkpoint: CheckpointSettings = Field(default_factory=CheckpointSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance (singleton pattern)."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Reload settings from environment (useful for testing)."""
    global _settings
    _settings = Settings()
    return _settings
