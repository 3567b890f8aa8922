"""
experiment_sdk.tier0_core.config
─────────────────────────────────
Typed engine configuration with env layering: .env, then environment
variables. Invalid values raise at startup, not on the first request.

Stack: pydantic-settings
"""
from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineConfig(BaseSettings):
    """Engine configuration. Fields can be passed by name in tests."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # ── Application ───────────────────────────────────────────────────────────
    app_name: str = Field(default="experiment-engine", alias="APP_NAME")
    environment: str = Field(default="development", alias="APP_ENV")

    # ── Logging ───────────────────────────────────────────────────────────────
    log_level: str = Field(default="INFO", alias="EXPERIMENT_LOG_LEVEL")
    log_format: str = Field(default="json", alias="EXPERIMENT_LOG_FORMAT")

    # ── Collaborators ─────────────────────────────────────────────────────────
    store_backend: str = Field(default="memory", alias="EXPERIMENT_STORE_BACKEND")
    database_url: str = Field(
        default="sqlite+aiosqlite:///./experiments.db",
        alias="DATABASE_URL",
    )
    database_pool_size: int = Field(default=5, alias="DATABASE_POOL_SIZE")
    database_max_overflow: int = Field(default=10, alias="DATABASE_MAX_OVERFLOW")
    store_retry_attempts: int = Field(
        default=3, ge=1, alias="EXPERIMENT_STORE_RETRY_ATTEMPTS"
    )
    event_sink_backend: str = Field(default="log", alias="EXPERIMENT_EVENT_SINK")

    # Seconds a metrics aggregation may scan before it is abandoned.
    metrics_query_timeout: float = Field(
        default=30.0, gt=0, alias="EXPERIMENT_METRICS_TIMEOUT"
    )

    # ── Error reporting ───────────────────────────────────────────────────────
    error_backend: str = Field(default="none", alias="EXPERIMENT_ERROR_BACKEND")

    # ── Kernel transport ──────────────────────────────────────────────────────
    kernel_host: str = Field(default="0.0.0.0", alias="KERNEL_HOST")
    kernel_port: int = Field(default=8080, alias="KERNEL_PORT")
    metrics_enabled: bool = Field(default=False, alias="EXPERIMENT_METRICS_ENABLED")
    metrics_port: int = Field(default=8001, alias="EXPERIMENT_METRICS_PORT")

    @field_validator("environment")
    @classmethod
    def validate_env(cls, v: str) -> str:
        allowed = {"development", "staging", "production", "test"}
        if v.lower() not in allowed:
            raise ValueError(f"environment must be one of {allowed}, got {v!r}")
        return v.lower()

    @field_validator("store_backend")
    @classmethod
    def validate_store_backend(cls, v: str) -> str:
        if v.lower() not in {"memory", "sql"}:
            raise ValueError(f"store backend must be 'memory' or 'sql', got {v!r}")
        return v.lower()

    @field_validator("event_sink_backend")
    @classmethod
    def validate_sink_backend(cls, v: str) -> str:
        if v.lower() not in {"log", "memory"}:
            raise ValueError(f"event sink must be 'log' or 'memory', got {v!r}")
        return v.lower()

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


@lru_cache(maxsize=1)
def get_config() -> EngineConfig:
    """
    Return the process-wide config. Cached after first call.
    Call _reset_config() in tests to pick up new env vars.
    """
    return EngineConfig()


def _reset_config() -> None:
    get_config.cache_clear()


__all__ = ["EngineConfig", "get_config"]
