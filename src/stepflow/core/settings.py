"""Engine settings for stepflow.

All fields can be set via ``STEPFLOW_*`` environment variables (e.g.
``STEPFLOW_MAX_WORKERS=16``) or a ``.env`` file. Hosts that construct the
engine themselves can also pass an ``EngineSettings`` instance directly.

Manifesto:
    Configuration should be explicit, validated, and environment-driven.

    - **Pydantic validation:** Type-checked at startup, not at first use
    - **Environment-driven:** Reads from env vars and .env files
    - **Sensible defaults:** Works out of the box for development

Tags:
    settings, configuration, pydantic, environment, stepflow

Doc-Types:
    - API Reference
    - Configuration Guide
"""

from __future__ import annotations

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Runtime knobs for the execution engine.

    Fields
    ──────
    log_level              : structlog log level
    json_logs              : JSON renderer instead of console
    max_workers            : Thread pool for parallel gateway branches
    base_retry_delay       : First retry backoff in seconds
    max_retry_delay        : Backoff ceiling in seconds
    enforce_step_timeouts  : Run executors under a wall-clock deadline
    timeout_poll_interval  : Scheduler tick for waiting-step deadlines
    """

    model_config = SettingsConfigDict(
        env_prefix="STEPFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    json_logs: bool = False

    # ── Concurrency ──────────────────────────────────────────────
    max_workers: int = Field(default=8, ge=1, description="Parallel branch pool size")

    # ── Retry ────────────────────────────────────────────────────
    base_retry_delay: float = Field(default=1.0, ge=0.0)
    max_retry_delay: float = Field(default=60.0, ge=0.0)

    # ── Timeouts ─────────────────────────────────────────────────
    enforce_step_timeouts: bool = True
    timeout_poll_interval: float = Field(default=1.0, gt=0.0)

    @model_validator(mode="after")
    def _validate_retry_bounds(self) -> EngineSettings:
        if self.max_retry_delay < self.base_retry_delay:
            raise ValueError(
                f"max_retry_delay ({self.max_retry_delay}) must be >= "
                f"base_retry_delay ({self.base_retry_delay})"
            )
        return self


# ── Settings factory with caching ────────────────────────────────────────

_settings_cache: dict[str, EngineSettings] = {}


def get_settings(*, _force_reload: bool = False) -> EngineSettings:
    """Load, validate, and cache the process-wide :class:`EngineSettings`."""
    if not _force_reload and "default" in _settings_cache:
        return _settings_cache["default"]
    settings = EngineSettings()
    _settings_cache["default"] = settings
    return settings


def clear_settings_cache() -> None:
    """Clear the settings cache (primarily for testing)."""
    _settings_cache.clear()


__all__ = ["EngineSettings", "get_settings", "clear_settings_cache"]
