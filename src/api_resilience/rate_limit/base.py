"""Shared rate limiter contract.

Each strategy implements one atomic refill/prune-then-check-then-consume step.
The step runs under a ``threading.Lock`` and never awaits, so no more than
the configured rate is admitted however many tasks or threads contend.
Waiting callers retry after sleeping; admission among them is not FIFO.
"""

from __future__ import annotations

import asyncio
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from enum import StrEnum

from api_resilience.errors import RateLimitExceeded
from api_resilience.logging import AnyLogger, get_logger, log_debug, log_warning


def _monotonic() -> float:
    return time.monotonic()


class AdmissionPolicy(StrEnum):
    """What ``acquire()`` does when no capacity is available."""

    WAIT = "wait"
    REJECT = "reject"


@dataclass(frozen=True)
class AcquireDecision:
    """Result of one non-blocking admission attempt."""

    admitted: bool
    wait: float = 0.0


@dataclass(frozen=True)
class LimiterMetrics:
    """Limiter counters and current occupancy.

    Exactly one of ``current_tokens`` and ``window_occupancy`` is set,
    depending on the strategy.
    """

    name: str
    strategy: str
    policy: AdmissionPolicy
    requests_allowed: int
    requests_rejected: int
    requests_delayed: int
    current_tokens: float | None = None
    window_occupancy: int | None = None

    def as_dict(self) -> dict[str, object]:
        data = asdict(self)
        data["policy"] = str(self.policy)
        return data


class RateLimiter(ABC):
    """Abstract base for async-aware rate limiters."""

    strategy: str

    def __init__(
        self,
        name: str,
        *,
        policy: AdmissionPolicy,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        logger: AnyLogger | None = None,
    ) -> None:
        self.name = name
        self.policy = AdmissionPolicy(policy)
        self._sleep = asyncio.sleep if sleep is None else sleep
        self._logger = get_logger(__name__) if logger is None else logger
        self._lock = threading.Lock()
        self._requests_allowed = 0
        self._requests_rejected = 0
        self._requests_delayed = 0

    @abstractmethod
    def _consume(self, now: float) -> float:
        """Try to take one unit of capacity. Caller holds the lock.

        Returns:
            ``0.0`` when admitted, otherwise seconds until capacity frees up.
        """

    @abstractmethod
    def _occupancy(self, now: float) -> dict[str, float | int]:
        """Return read-only occupancy fields for metrics. Caller holds the lock."""

    @abstractmethod
    def _reset_state(self, now: float) -> None:
        """Restore full capacity. Caller holds the lock."""

    def try_acquire(self) -> AcquireDecision:
        """Admit immediately if capacity exists, never blocking."""
        with self._lock:
            wait = self._consume(_monotonic())
            if wait <= 0.0:
                self._requests_allowed += 1
                return AcquireDecision(admitted=True)
        return AcquireDecision(admitted=False, wait=wait)

    async def acquire(self) -> None:
        """Admit one call, applying the configured admission policy.

        Raises:
            RateLimitExceeded: When no capacity is available and the policy is
                ``reject``.
        """
        delayed = False
        while True:
            decision = self.try_acquire()
            if decision.admitted:
                return

            if self.policy == AdmissionPolicy.REJECT:
                with self._lock:
                    self._requests_rejected += 1
                log_warning(
                    self._logger,
                    "rate_limit.rejected",
                    limiter=self.name,
                    retry_after=decision.wait,
                )
                raise RateLimitExceeded(self.name, retry_after=decision.wait)

            if not delayed:
                delayed = True
                with self._lock:
                    self._requests_delayed += 1
            log_debug(
                self._logger,
                "rate_limit.waiting",
                limiter=self.name,
                wait_seconds=decision.wait,
            )
            await self._sleep(decision.wait)

    def metrics(self) -> LimiterMetrics:
        with self._lock:
            occupancy = self._occupancy(_monotonic())
            return LimiterMetrics(
                name=self.name,
                strategy=self.strategy,
                policy=self.policy,
                requests_allowed=self._requests_allowed,
                requests_rejected=self._requests_rejected,
                requests_delayed=self._requests_delayed,
                **occupancy,  # type: ignore[arg-type]
            )

    def reset(self) -> None:
        """Restore full capacity. Counters are kept."""
        with self._lock:
            self._reset_state(_monotonic())
