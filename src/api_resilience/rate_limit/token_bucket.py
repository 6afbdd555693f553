"""Token bucket limiter: steady refill with burst capacity."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from api_resilience.logging import AnyLogger
from api_resilience.rate_limit import base
from api_resilience.rate_limit.base import AdmissionPolicy, RateLimiter


@dataclass(frozen=True)
class TokenBucketConfig:
    """Token bucket parameters.

    Attributes:
        max_tokens: Bucket capacity, the largest burst admitted at once.
        refill_rate: Tokens added per second.
        initial_tokens: Tokens at construction; ``None`` starts full.
    """

    max_tokens: float
    refill_rate: float
    initial_tokens: float | None = None

    def __post_init__(self) -> None:
        if self.max_tokens < 1.0:
            raise ValueError("max_tokens must be >= 1")
        if self.refill_rate <= 0:
            raise ValueError("refill_rate must be > 0")
        if self.initial_tokens is not None and not (
            0.0 <= self.initial_tokens <= self.max_tokens
        ):
            raise ValueError("initial_tokens must be between 0 and max_tokens")

    @property
    def starting_tokens(self) -> float:
        return self.max_tokens if self.initial_tokens is None else self.initial_tokens


class TokenBucketLimiter(RateLimiter):
    """Admit a call per whole token; tokens refill continuously."""

    strategy = "token_bucket"

    def __init__(
        self,
        name: str,
        *,
        config: TokenBucketConfig,
        policy: AdmissionPolicy,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        logger: AnyLogger | None = None,
    ) -> None:
        super().__init__(name, policy=policy, sleep=sleep, logger=logger)
        self.config = config
        self._tokens = config.starting_tokens
        self._last_refill = base._monotonic()

    def _projected_tokens(self, now: float) -> float:
        elapsed = max(now - self._last_refill, 0.0)
        return min(
            self.config.max_tokens,
            self._tokens + elapsed * self.config.refill_rate,
        )

    def _consume(self, now: float) -> float:
        self._tokens = self._projected_tokens(now)
        self._last_refill = now
        if self._tokens >= 1.0:
            self._tokens -= 1.0
            return 0.0
        return (1.0 - self._tokens) / self.config.refill_rate

    def _occupancy(self, now: float) -> dict[str, float | int]:
        return {"current_tokens": self._projected_tokens(now)}

    def _reset_state(self, now: float) -> None:
        self._tokens = self.config.starting_tokens
        self._last_refill = now
