"""
Configuration management for the TechAnal engine.

Uses pydantic-settings for type-safe environment variable handling.
Every tunable is validated when Settings is constructed, so a bad window,
TTL or threshold fails at startup instead of on the first request.
"""

from enum import Enum
from functools import lru_cache

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppEnvironment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All variables use the TECHANAL_ prefix, e.g. TECHANAL_CACHE_TTL_S=120.
    """

    model_config = SettingsConfigDict(
        env_prefix="TECHANAL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    env: AppEnvironment = Field(
        default=AppEnvironment.DEVELOPMENT,
        description="Application environment",
    )

    # Server configuration
    host: str = Field(default="127.0.0.1", description="Server host")
    port: int = Field(default=8787, ge=1024, le=65535, description="Server port")
    cors_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:5173", "http://127.0.0.1:5173"],
        description="Origins allowed by CORS",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_json: bool = Field(default=False, description="Emit JSON log lines")

    # Rate limiting
    rate_limit_enabled: bool = Field(
        default=True,
        description="Master switch for HTTP rate limiting",
    )
    rate_limit_global_window_s: float = Field(
        default=15 * 60,
        gt=0,
        description="Window for the global /api limiter in seconds",
    )
    rate_limit_global_max: int = Field(
        default=1000,
        ge=1,
        description="Requests allowed per window by the global /api limiter",
    )
    rate_limit_ai_per_minute: int = Field(
        default=20,
        ge=1,
        description="AI analysis requests allowed per minute",
    )
    rate_limit_system_per_minute: int = Field(
        default=100,
        ge=1,
        description="System monitoring requests allowed per minute",
    )
    rate_limit_auth_per_minute: int = Field(
        default=5,
        ge=1,
        description="Authentication requests allowed per minute",
    )
    rate_limit_upload_per_minute: int = Field(
        default=10,
        ge=1,
        description="Upload requests allowed per minute",
    )
    rate_limit_cleanup_interval_s: float = Field(
        default=60.0,
        gt=0,
        description="Interval of the expired-window sweep in seconds",
    )
    rate_limit_trust_forwarded: bool = Field(
        default=True,
        description="Derive client identity from X-Forwarded-For / X-Real-IP",
    )

    # Response cache
    cache_enabled: bool = Field(default=True, description="Enable the response cache")
    cache_ttl_s: float = Field(
        default=5 * 60,
        gt=0,
        description="Time-to-live of cached analysis results in seconds",
    )
    cache_max_size: int = Field(
        default=1000,
        ge=1,
        description="Maximum number of cached results",
    )
    cache_cleanup_interval_s: float = Field(
        default=60.0,
        gt=0,
        description="Interval of the expired-entry sweep in seconds",
    )
    cache_eviction_fraction: float = Field(
        default=0.2,
        gt=0,
        le=1,
        description="Share of entries evicted when the cache is full",
    )

    # Health thresholds
    health_memory_warning_mb: float = Field(default=500.0, gt=0)
    health_memory_unhealthy_mb: float = Field(default=1000.0, gt=0)
    health_error_rate_warning: float = Field(default=0.1, ge=0, le=1)
    health_error_rate_unhealthy: float = Field(default=0.2, ge=0, le=1)

    # Live events
    live_events_buffer_size: int = Field(
        default=200,
        ge=1,
        le=100_000,
        description="Number of recent live events kept for replay",
    )
    live_events_keepalive_s: float = Field(
        default=1.0,
        ge=0,
        description="Keep-alive tick interval while subscribers exist (0 disables)",
    )
    sse_heartbeat_s: float = Field(
        default=15.0,
        gt=0,
        description="Heartbeat comment interval on the live events stream",
    )
    sse_max_pending: int = Field(
        default=1000,
        ge=1,
        description="Events queued for a slow stream client before it is dropped",
    )
    live_events_log_level: str = Field(
        default="WARNING",
        description="Minimum level of server log records mirrored onto the live bus",
    )

    @field_validator("log_level", "live_events_log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalise and validate the log level name."""
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

    @model_validator(mode="after")
    def validate_health_bands(self) -> "Settings":
        """Unhealthy thresholds must not sit below warning thresholds."""
        if self.health_memory_unhealthy_mb < self.health_memory_warning_mb:
            raise ValueError("health_memory_unhealthy_mb must be >= health_memory_warning_mb")
        if self.health_error_rate_unhealthy < self.health_error_rate_warning:
            raise ValueError("health_error_rate_unhealthy must be >= health_error_rate_warning")
        return self

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.env == AppEnvironment.DEVELOPMENT

    def get_redacted_config(self) -> dict[str, str | int | float | bool]:
        """
        Get configuration dict safe for logging and API responses.
        """
        return {
            "env": self.env.value,
            "host": self.host,
            "port": self.port,
            "log_level": self.log_level,
            "rate_limit_enabled": self.rate_limit_enabled,
            "cache_enabled": self.cache_enabled,
            "cache_ttl_s": self.cache_ttl_s,
            "cache_max_size": self.cache_max_size,
            "live_events_buffer_size": self.live_events_buffer_size,
        }


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure single instance throughout application.
    """
    return Settings()


def get_settings_dep() -> Settings:
    """
    Dependency for FastAPI routes to get settings.
    Allows for easy dependency override in tests.
    """
    return get_settings()
