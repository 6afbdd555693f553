"""Sliding window limiter: exact request count within a rolling interval."""

from __future__ import annotations

from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from api_resilience.logging import AnyLogger
from api_resilience.rate_limit.base import AdmissionPolicy, RateLimiter


@dataclass(frozen=True)
class SlidingWindowConfig:
    """Sliding window parameters.

    Attributes:
        window_size: Window length in seconds.
        max_requests: Admissions allowed within any window.
    """

    window_size: float
    max_requests: int

    def __post_init__(self) -> None:
        if self.window_size <= 0:
            raise ValueError("window_size must be > 0")
        if self.max_requests < 1:
            raise ValueError("max_requests must be >= 1")


class SlidingWindowLimiter(RateLimiter):
    """Admit while fewer than ``max_requests`` timestamps fall in the window."""

    strategy = "sliding_window"

    def __init__(
        self,
        name: str,
        *,
        config: SlidingWindowConfig,
        policy: AdmissionPolicy,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        logger: AnyLogger | None = None,
    ) -> None:
        super().__init__(name, policy=policy, sleep=sleep, logger=logger)
        self.config = config
        self._timestamps: deque[float] = deque()

    def _prune(self, now: float) -> None:
        cutoff = now - self.config.window_size
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    def _consume(self, now: float) -> float:
        self._prune(now)
        if len(self._timestamps) < self.config.max_requests:
            self._timestamps.append(now)
            return 0.0
        return max(self._timestamps[0] + self.config.window_size - now, 0.0)

    def _occupancy(self, now: float) -> dict[str, float | int]:
        cutoff = now - self.config.window_size
        return {"window_occupancy": sum(1 for ts in self._timestamps if ts > cutoff)}

    def _reset_state(self, now: float) -> None:
        self._timestamps.clear()
