from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Literal

import structlog
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from api_resilience.circuit_breaker import CircuitBreakerConfig
from api_resilience.logging import AnyLogger, configure_structlog, get_log_level_value
from api_resilience.rate_limit import (
    AdmissionPolicy,
    RateLimiter,
    SlidingWindowConfig,
    SlidingWindowLimiter,
    TokenBucketConfig,
    TokenBucketLimiter,
)
from api_resilience.retry import BackoffStrategy, RetryPolicy

LimiterStrategy = Literal["token_bucket", "sliding_window"]

_TOKEN_BUCKET_FIELDS = ("refill_rate", "max_tokens", "initial_tokens")
_SLIDING_WINDOW_FIELDS = ("window_size", "max_requests")


def prefixed_settings_config(prefix: str) -> SettingsConfigDict:
    """Build standard Pydantic settings config for prefixed environments."""
    return SettingsConfigDict(env_prefix=prefix, case_sensitive=False)


class ResilienceSettings(BaseSettings):
    """Resilience options read from ``RESILIENCE_*`` environment variables.

    No limiter is built unless ``limiter_strategy`` is set. Per-provider
    settings can subclass this and override ``model_config`` with
    ``prefixed_settings_config("ANTHROPIC_RESILIENCE_")``.
    """

    model_config = prefixed_settings_config("RESILIENCE_")

    failure_threshold: int = 5
    success_threshold: int = 1
    open_timeout: float = 30.0
    half_open_max_requests: int = 1

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter_fraction: float = 0.1
    max_elapsed_time: float | None = None
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL

    limiter_strategy: LimiterStrategy | None = None
    refill_rate: float | None = None
    max_tokens: float | None = None
    initial_tokens: float | None = None
    window_size: float | None = None
    max_requests: int | None = None
    admission_policy: AdmissionPolicy = AdmissionPolicy.WAIT

    log_level: str = "INFO"

    @field_validator(
        "limiter_strategy",
        "admission_policy",
        "backoff_strategy",
        mode="before",
    )
    @classmethod
    def _normalize_choice(cls, value: object) -> object:
        if isinstance(value, str):
            normalized = value.strip().lower()
            return normalized or None
        return value

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        get_log_level_value(value)
        return value.strip().upper()

    @model_validator(mode="after")
    def _validate_resilience_settings(self) -> ResilienceSettings:
        self.breaker_config()
        self.retry_policy()

        strategy = self.limiter_strategy
        if strategy is None:
            configured = [
                name
                for name in (*_TOKEN_BUCKET_FIELDS, *_SLIDING_WINDOW_FIELDS)
                if getattr(self, name) is not None
            ]
            if configured:
                raise ValueError(
                    f"{', '.join(configured)} require limiter_strategy to be set"
                )
            return self

        if strategy == "token_bucket":
            if self.refill_rate is None or self.max_tokens is None:
                raise ValueError(
                    "refill_rate and max_tokens are required for token_bucket"
                )
            stray = [n for n in _SLIDING_WINDOW_FIELDS if getattr(self, n) is not None]
        else:
            if self.window_size is None or self.max_requests is None:
                raise ValueError(
                    "window_size and max_requests are required for sliding_window"
                )
            stray = [n for n in _TOKEN_BUCKET_FIELDS if getattr(self, n) is not None]
        if stray:
            raise ValueError(f"{', '.join(stray)} do not apply to {strategy}")
        self._limiter_config()
        return self

    def breaker_config(self) -> CircuitBreakerConfig:
        """Build the circuit breaker configuration."""
        return CircuitBreakerConfig(
            failure_threshold=self.failure_threshold,
            success_threshold=self.success_threshold,
            open_timeout=self.open_timeout,
            half_open_max_requests=self.half_open_max_requests,
        )

    def retry_policy(self) -> RetryPolicy:
        """Build the retry policy."""
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            backoff_multiplier=self.backoff_multiplier,
            jitter_fraction=self.jitter_fraction,
            max_elapsed_time=self.max_elapsed_time,
            strategy=self.backoff_strategy,
        )

    def configure_logging(self) -> structlog.stdlib.BoundLogger:
        """Configure structlog and stdlib logging at ``log_level``."""
        return configure_structlog(log_level=self.log_level)

    def _limiter_config(self) -> TokenBucketConfig | SlidingWindowConfig | None:
        if self.limiter_strategy == "token_bucket":
            assert self.refill_rate is not None and self.max_tokens is not None
            return TokenBucketConfig(
                max_tokens=self.max_tokens,
                refill_rate=self.refill_rate,
                initial_tokens=self.initial_tokens,
            )
        if self.limiter_strategy == "sliding_window":
            assert self.window_size is not None and self.max_requests is not None
            return SlidingWindowConfig(
                window_size=self.window_size,
                max_requests=self.max_requests,
            )
        return None

    def limiter(
        self,
        name: str,
        *,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        logger: AnyLogger | None = None,
    ) -> RateLimiter | None:
        """Build the configured rate limiter, or ``None`` when disabled."""
        config = self._limiter_config()
        if isinstance(config, TokenBucketConfig):
            return TokenBucketLimiter(
                name,
                config=config,
                policy=self.admission_policy,
                sleep=sleep,
                logger=logger,
            )
        if isinstance(config, SlidingWindowConfig):
            return SlidingWindowLimiter(
                name,
                config=config,
                policy=self.admission_policy,
                sleep=sleep,
                logger=logger,
            )
        return None
