"""Environment-driven settings for the harvest resilience core.

The core components never read the environment themselves: the host
application loads ``HarvestSettings`` once and hands the derived value
objects (``RetryOptions``, ``BatchProcessorConfig``) to the components it
constructs.

Features:
    - **HarvestSettings:** retry, circuit breaker, batch and metric defaults
    - **env_prefix:** ``HARVEST_`` (e.g. ``HARVEST_MAX_RETRIES=5``)
    - **.env file support:** automatic loading via pydantic-settings
    - **Extra ignore:** unknown env vars don't cause startup failures

Examples:
    >>> from harvest.core.settings import get_settings
    >>> settings = get_settings()
    >>> config = settings.to_batch_config()
    >>> config.concurrency_limit
    3
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from harvest.execution.batch import BatchProcessorConfig
    from harvest.execution.retry import RetryOptions


class HarvestSettings(BaseSettings):
    """Settings for retries, circuit breaking, batching and metric retention.

    Fields
    ──────
    max_attempts          : Attempts per standalone retried call (>= 1)
    initial_delay_ms      : First retry delay
    max_delay_ms          : Retry delay cap for standalone calls
    backoff_factor        : Exponential multiplier
    retry_jitter          : Fraction of each delay that may be randomised away
    max_retries           : Retries per batch item (attempts = retries + 1)
    retry_delay_ms        : First retry delay for batch items
    max_retry_delay_ms    : Retry delay cap for batch items
    concurrency_limit     : In-flight batch items
    circuit_breaker_*     : Failure threshold and open-state cooldown
    metrics_retention_ms  : Maximum sample age kept by the metric store
    """

    model_config = SettingsConfigDict(
        env_prefix="HARVEST_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Retry ────────────────────────────────────────────────────
    max_attempts: int = Field(default=3, ge=1)
    initial_delay_ms: int = Field(default=1000, ge=0)
    max_delay_ms: int = Field(default=10_000, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1.0)
    retry_jitter: float = Field(default=0.0, ge=0.0, le=1.0)

    # ── Batch ────────────────────────────────────────────────────
    max_retries: int = Field(default=3, ge=0)
    retry_delay_ms: int = Field(default=1000, ge=0)
    max_retry_delay_ms: int = Field(default=30_000, ge=0)
    concurrency_limit: int = Field(default=3, ge=1)

    # ── Circuit breaker ──────────────────────────────────────────
    circuit_breaker_threshold: int = Field(default=5, ge=1)
    circuit_breaker_timeout_ms: int = Field(default=60_000, ge=0)

    # ── Metrics ──────────────────────────────────────────────────
    metrics_retention_ms: int = Field(
        default=24 * 60 * 60 * 1000,
        gt=0,
        description="Samples older than this are evicted on the next write",
    )

    # ── Observability ────────────────────────────────────────────
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "console", "auto"] = "json"

    @field_validator("log_level", mode="before")
    @classmethod
    def normalise_log_level(cls, value: object) -> object:
        return value.upper() if isinstance(value, str) else value

    def to_retry_options(self) -> RetryOptions:
        """Build the retry options for standalone retried calls."""
        from harvest.execution.retry import RetryOptions

        return RetryOptions(
            max_attempts=self.max_attempts,
            initial_delay_ms=self.initial_delay_ms,
            max_delay_ms=self.max_delay_ms,
            backoff_factor=self.backoff_factor,
            jitter=self.retry_jitter,
        )

    def to_batch_config(self) -> BatchProcessorConfig:
        """Build the batch coordinator configuration."""
        from harvest.execution.batch import BatchProcessorConfig

        return BatchProcessorConfig(
            max_retries=self.max_retries,
            retry_delay_ms=self.retry_delay_ms,
            concurrency_limit=self.concurrency_limit,
            circuit_breaker_threshold=self.circuit_breaker_threshold,
            circuit_breaker_timeout_ms=self.circuit_breaker_timeout_ms,
            max_retry_delay_ms=self.max_retry_delay_ms,
            backoff_factor=self.backoff_factor,
        )


_settings_cache: dict[str, HarvestSettings] = {}


def get_settings(*, _force_reload: bool = False) -> HarvestSettings:
    """Load, validate, and cache a :class:`HarvestSettings` instance."""
    if not _force_reload and "default" in _settings_cache:
        return _settings_cache["default"]

    settings = HarvestSettings()
    _settings_cache["default"] = settings
    return settings


def clear_settings_cache() -> None:
    """Clear the settings cache (primarily for testing)."""
    _settings_cache.clear()


__all__ = ["HarvestSettings", "get_settings", "clear_settings_cache"]
