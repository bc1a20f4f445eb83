"""
Configuration management for the BFF resilience layer.

Uses Pydantic Settings for type-safe configuration with multiple sources:
- Environment variables (highest priority)
- .env file
- Defaults (lowest priority)
"""

import logging
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _merge_with_defaults(defaults: dict[str, BaseModel], overrides: dict) -> dict:
    """
    Overlay configured profiles on the defaults.

    A profile named in the override only replaces the fields it sets; profiles
    it does not name keep their defaults.
    """
    merged = {name: profile.model_dump() for name, profile in defaults.items()}
    for name, override in overrides.items():
        if isinstance(override, BaseModel):
            override = override.model_dump(exclude_unset=True)
        if isinstance(override, dict):
            override = {**merged.get(name, {}), **override}
        merged[name] = override
    return merged


class BreakerProfile(BaseModel):
    """Thresholds for a single dependency's circuit breaker."""

    failure_threshold: int = Field(default=5, ge=1, description="Failures before opening")
    success_threshold: int = Field(
        default=2, ge=1, description="Consecutive half-open successes needed to close"
    )
    open_duration_seconds: float = Field(
        default=30.0, gt=0.0, description="Time spent OPEN before a half-open probe"
    )
    reset_window_seconds: float = Field(
        default=60.0, gt=0.0, description="Quiet period after which stale failures are forgiven"
    )


def _default_breakers() -> dict[str, BreakerProfile]:
    return {
        "kernel": BreakerProfile(failure_threshold=3, open_duration_seconds=10.0),
        "openai": BreakerProfile(failure_threshold=2, open_duration_seconds=30.0),
        "sendgrid": BreakerProfile(failure_threshold=3, open_duration_seconds=20.0),
        "n8n": BreakerProfile(failure_threshold=3, open_duration_seconds=15.0),
    }


class CircuitBreakerSettings(BaseSettings):
    """
    Circuit breaker configuration, one profile per external dependency.

    Override with a JSON document, e.g.
    CIRCUIT_BREAKERS='{"kernel": {"failure_threshold": 5}}'

    Only the named fields change; other dependencies keep their defaults.
    """

    model_config = SettingsConfigDict(env_prefix="CIRCUIT_")

    breakers: dict[str, BreakerProfile] = Field(default_factory=_default_breakers)

    @field_validator("breakers", mode="before")
    @classmethod
    def merge_default_breakers(cls, v):
        if isinstance(v, dict):
            return _merge_with_defaults(_default_breakers(), v)
        return v


class RetryProfileSettings(BaseModel):
    """Backoff parameters for one retry profile."""

    max_attempts: int = Field(default=3, ge=1, le=10)
    base_delay_seconds: float = Field(default=1.0, ge=0.0)
    max_delay_seconds: float = Field(default=10.0, ge=0.0)
    factor: float = Field(default=2.0, ge=1.0)
    jitter: bool = Field(default=True)
    attempt_timeout_seconds: float | None = Field(
        default=None, gt=0.0, description="Per-attempt deadline (None = transport default)"
    )

    @model_validator(mode="after")
    def validate_delays(self) -> "RetryProfileSettings":
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError(
                f"max_delay_seconds ({self.max_delay_seconds}) must be >= "
                f"base_delay_seconds ({self.base_delay_seconds})"
            )
        return self


def _default_retry_profiles() -> dict[str, RetryProfileSettings]:
    return {
        "kernel": RetryProfileSettings(max_attempts=3, base_delay_seconds=0.5, max_delay_seconds=5.0),
        "openai": RetryProfileSettings(max_attempts=3, base_delay_seconds=2.0, max_delay_seconds=30.0),
        "sendgrid": RetryProfileSettings(
            max_attempts=3, base_delay_seconds=1.0, max_delay_seconds=10.0
        ),
        "n8n": RetryProfileSettings(max_attempts=2, base_delay_seconds=0.5, max_delay_seconds=3.0),
        "database": RetryProfileSettings(
            max_attempts=2, base_delay_seconds=0.1, max_delay_seconds=1.0, jitter=False
        ),
    }


class RetrySettings(BaseSettings):
    """Retry profiles for outbound calls (RETRY_PROFILES as JSON, merged over the defaults)."""

    model_config = SettingsConfigDict(env_prefix="RETRY_")

    profiles: dict[str, RetryProfileSettings] = Field(default_factory=_default_retry_profiles)

    @field_validator("profiles", mode="before")
    @classmethod
    def merge_default_profiles(cls, v):
        if isinstance(v, dict):
            return _merge_with_defaults(_default_retry_profiles(), v)
        return v


class EndpointLimit(BaseModel):
    """Attempts allowed per window for one rate-limited endpoint."""

    max_attempts: int = Field(ge=1)
    window_seconds: float = Field(gt=0.0)


def _default_endpoint_limits() -> dict[str, EndpointLimit]:
    fifteen_minutes = 15 * 60
    one_hour = 60 * 60
    return {
        "auth:login": EndpointLimit(max_attempts=5, window_seconds=fifteen_minutes),
        "auth:signup": EndpointLimit(max_attempts=5, window_seconds=fifteen_minutes),
        "lp-portal:session": EndpointLimit(max_attempts=5, window_seconds=fifteen_minutes),
        "magic-links:create": EndpointLimit(max_attempts=10, window_seconds=one_hour),
        "magic-links:validate": EndpointLimit(max_attempts=5, window_seconds=fifteen_minutes),
        "invitations:bulk": EndpointLimit(max_attempts=20, window_seconds=one_hour),
    }


class RateLimitSettings(BaseSettings):
    """
    Brute-force protection for authentication and sensitive endpoints.

    Redis is the source of truth; the in-process fallback only exists so an
    outage of the shared store does not disable protection altogether.
    """

    model_config = SettingsConfigDict(env_prefix="RATE_LIMIT_")

    redis_url: str = Field(default="redis://localhost:6379/0")
    use_redis: bool = Field(default=True, description="Disable to run on the local fallback only")
    socket_timeout_seconds: float = Field(default=0.5, gt=0.0, le=10.0)
    key_prefix: str = Field(default="ratelimit")

    # Global defaults for endpoints without a profile
    window_seconds: float = Field(default=900.0, gt=0.0)
    max_attempts: int = Field(default=5, ge=1)

    endpoint_limits: dict[str, EndpointLimit] = Field(default_factory=_default_endpoint_limits)

    # Degraded-mode behaviour
    sweep_interval_seconds: float = Field(default=60.0, gt=0.0)
    store_retry_interval_seconds: float = Field(
        default=30.0, ge=0.0, description="Back-off before talking to Redis again after a failure"
    )
    fallback_max_entries: int = Field(default=10_000, ge=100)


class OutboxSettings(BaseSettings):
    """Outbox worker polling and retry configuration."""

    model_config = SettingsConfigDict(env_prefix="OUTBOX_")

    enabled: bool = Field(default=True)
    poll_interval_seconds: float = Field(default=10.0, gt=0.0)
    batch_size: int = Field(default=10, ge=1, le=500)
    max_concurrency: int = Field(default=4, ge=1, le=64)
    default_max_attempts: int = Field(default=3, ge=1, le=25)

    # Same exponential formula as the retry executor: 1min, 2min, 4min...
    backoff_base_seconds: float = Field(default=60.0, ge=0.0)
    backoff_factor: float = Field(default=2.0, ge=1.0)
    backoff_max_seconds: float = Field(default=3600.0, ge=0.0)
    backoff_jitter: bool = Field(default=False)

    lease_seconds: float = Field(
        default=300.0, gt=0.0, description="PROCESSING rows older than this are reclaimed"
    )
    purge_after_days: int = Field(default=30, ge=1)

    @field_validator("backoff_max_seconds")
    @classmethod
    def validate_backoff_max(cls, v: float, info) -> float:
        base = info.data.get("backoff_base_seconds")
        if base is not None and v < base:
            raise ValueError(
                f"backoff_max_seconds ({v}) must be >= backoff_base_seconds ({base})"
            )
        return v


class UpstreamSettings(BaseSettings):
    """Base URLs and credentials for the external dependencies."""

    model_config = SettingsConfigDict(env_prefix="UPSTREAM_")

    kernel_url: str = Field(default="http://localhost:3001")
    openai_url: str = Field(default="https://api.openai.com/v1")
    openai_api_key: str = Field(default="")
    sendgrid_url: str = Field(default="https://api.sendgrid.com")
    sendgrid_api_key: str = Field(default="")
    email_from: str = Field(default="noreply@example.com")
    n8n_url: str = Field(default="http://localhost:5678")
    timeout_seconds: float = Field(default=10.0, gt=0.0, le=120.0)


class DatabaseSettings(BaseSettings):
    """Durable store for the outbox and security audit tables."""

    model_config = SettingsConfigDict(env_prefix="DATABASE_")

    path: str = Field(default="./data/resilience.db")


class ServiceConfig(BaseSettings):
    """FastAPI service configuration."""

    model_config = SettingsConfigDict(env_prefix="SERVICE_")

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1, le=65535)
    reload: bool = Field(default=False)
    workers: int = Field(default=1, ge=1)
    admin_rate_limit: str = Field(
        default="30/minute", description="slowapi limit applied to operator endpoints"
    )


class LoggingConfig(BaseSettings):
    """Structured logging configuration."""

    model_config = SettingsConfigDict(env_prefix="LOGGING_")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Minimum log level"
    )

    json_output: bool = Field(
        default=True, description="Use JSON output (True for production, False for development)"
    )

    colorized: bool = Field(
        default=False, description="Colorize console output (only for development)"
    )

    # Service metadata (injected into all logs)
    service_name: str = Field(default="bff-resilience", description="Service name for log aggregation")
    service_version: str = Field(default="0.1.0", description="Service version")
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Deployment environment"
    )


class Settings(BaseSettings):
    """Root configuration for the resilience layer."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    circuit: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    outbox: OutboxSettings = Field(default_factory=OutboxSettings)
    upstream: UpstreamSettings = Field(default_factory=UpstreamSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # Operator endpoints are closed unless ADMIN_API_KEY is set
    admin_api_key: str | None = Field(
        default=None,
        description="API key for operator endpoints (required for admin access)"
    )

    @field_validator("admin_api_key")
    @classmethod
    def validate_admin_api_key_security(cls, v: str | None) -> str | None:
        """
        Security: Validate admin API key format and prevent common mistakes.

        Never expose API keys in logs or errors.
        """
        if not v:
            return None

        placeholder_patterns = [
            "your-api-key-here",
            "changeme",
            "example",
            "dummy",
        ]

        v_lower = v.lower()
        if any(pattern in v_lower for pattern in placeholder_patterns):
            logging.warning(
                "admin_api_key appears to be a placeholder - admin endpoints will be BLOCKED"
            )
            return None

        if len(v) < 32:
            logging.warning(
                "admin_api_key seems too short to be secure - use at least 32 characters"
            )

        return v

    def validate_configuration(self) -> None:
        """
        Validate cross-field constraints and log warnings.
        Called at application startup.
        """
        if not self.admin_api_key:
            logging.warning("ADMIN_API_KEY not configured - operator endpoints are disabled")

        if not self.rate_limit.use_redis:
            logging.warning(
                "Rate limiter running without Redis - counters are per-instance only"
            )

        if not self.upstream.sendgrid_api_key:
            logging.warning("Email provider API key not configured - email delivery will fail")

        unknown_profiles = set(self.circuit.breakers) - set(self.retry.profiles)
        if unknown_profiles:
            logging.warning(
                f"Circuit breakers without a retry profile: {', '.join(sorted(unknown_profiles))}"
            )


# Global settings instance (lazy-loaded)
_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get global settings instance (singleton pattern).

    Returns:
        Settings: Application configuration
    """
    global _settings
    if _settings is None:
        _settings = Settings()
        _settings.validate_configuration()
    return _settings
