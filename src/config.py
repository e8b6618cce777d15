"""
Application configuration via pydantic-settings.

All settings are loaded from environment variables (or a .env file in dev).
This is the single source of truth for configuration - provider keys,
timeouts, circuit breaker thresholds and budget ceilings are never
hardcoded elsewhere.
"""

from __future__ import annotations

from enum import StrEnum
from functools import lru_cache

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    DEV = "dev"
    PROD = "prod"
    TEST = "test"


class StateBackend(StrEnum):
    MEMORY = "memory"
    REDIS = "redis"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ------------------------------------------------------------------ #
    # Application
    # ------------------------------------------------------------------ #
    environment: Environment = Environment.DEV
    debug: bool = False
    log_level: str = Field(
        default="INFO",
        description="Minimum log level (DEBUG, INFO, WARNING, ERROR)",
    )
    cors_allowed_origins: list[str] = Field(
        default_factory=list,
        description="Allowed CORS origins in production (all origins in dev)",
    )
    admin_api_key: SecretStr | None = Field(
        default=None,
        description="X-Admin-Key for circuit admin endpoints (disabled when unset)",
    )

    # ------------------------------------------------------------------ #
    # Providers
    # ------------------------------------------------------------------ #
    groq_api_key: SecretStr | None = Field(
        default=None,
        description="Groq API key (required in production)",
    )
    gemini_api_key: SecretStr | None = Field(
        default=None,
        description="Google Gemini API key",
    )
    cerebras_api_key: SecretStr | None = Field(
        default=None,
        description="Cerebras API key",
    )
    groq_timeout_ms: int = Field(default=10_000, ge=100, le=120_000)
    gemini_timeout_ms: int = Field(default=20_000, ge=100, le=120_000)
    cerebras_timeout_ms: int = Field(default=30_000, ge=100, le=120_000)
    cerebras_endpoint: str = Field(
        default="https://api.cerebras.ai/v1/chat/completions",
        description="Cerebras chat completions endpoint",
    )

    # ------------------------------------------------------------------ #
    # Circuit breaker
    # ------------------------------------------------------------------ #
    circuit_failure_threshold: int = Field(
        default=5,
        ge=1,
        description="Failures within the window that open a provider circuit",
    )
    circuit_failure_window_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Trailing window in which failures are counted",
    )
    circuit_open_duration_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Time an open circuit waits before allowing a half-open trial",
    )

    # ------------------------------------------------------------------ #
    # Budget
    # ------------------------------------------------------------------ #
    budget_daily_limit_usd: float = Field(
        default=10.0,
        ge=0,
        description="Per-session daily spend ceiling in USD",
    )
    budget_monthly_limit_usd: float = Field(
        default=100.0,
        ge=0,
        description="Per-session monthly spend ceiling in USD",
    )

    # ------------------------------------------------------------------ #
    # Shared state
    # ------------------------------------------------------------------ #
    state_backend: StateBackend = Field(
        default=StateBackend.MEMORY,
        description="Where breaker, health and budget state live (memory or redis)",
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis URL used when state_backend=redis",
    )
    state_key_prefix: str = Field(
        default="llmrouter",
        description="Key namespace for shared state entries",
    )

    # ------------------------------------------------------------------ #
    # Observability
    # ------------------------------------------------------------------ #
    enable_telemetry: bool = False
    otlp_endpoint: str = Field(
        default="http://localhost:4317",
        description="OTLP gRPC collector endpoint",
    )
    trace_buffer_size: int = Field(
        default=1000,
        ge=1,
        description="Number of recent attempt traces kept in memory",
    )

    @model_validator(mode="after")
    def _validate_budget_limits(self) -> Settings:
        if self.budget_monthly_limit_usd < self.budget_daily_limit_usd:
            raise ValueError(
                "budget_monthly_limit_usd must be >= budget_daily_limit_usd"
            )
        return self

    @property
    def is_dev(self) -> bool:
        return self.environment in (Environment.DEV, Environment.TEST)

    @property
    def is_prod(self) -> bool:
        return self.environment == Environment.PROD


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings singleton.

    Use FastAPI dependency injection via Depends(get_settings) in endpoints,
    or call directly in non-request contexts (startup, scripts).
    """
    return Settings()
