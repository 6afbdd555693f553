"""Composition of rate limiting, circuit breaking and retries for one dependency."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import asdict, dataclass
from typing import TypeVar

from api_resilience.circuit_breaker import (
    Admission,
    CircuitBreaker,
    CircuitState,
    StateTransition,
)
from api_resilience.classification import ErrorClassifier, kind_of
from api_resilience.errors import (
    CircuitOpenError,
    ErrorKind,
    RateLimitExceeded,
    ResilienceError,
    TerminalCallError,
)
from api_resilience.listeners import ResilienceListener
from api_resilience.logging import AnyLogger, get_logger, log_exception, log_warning
from api_resilience.rate_limit import RateLimiter
from api_resilience.retry import RetryExecutor
from api_resilience.settings import ResilienceSettings

T = TypeVar("T")


def _monotonic() -> float:
    return time.monotonic()


@dataclass(frozen=True)
class CallerMetrics:
    """Combined breaker and limiter view for external metrics publishers."""

    name: str
    state: CircuitState
    total_requests: int
    total_failures: int
    trip_count: int
    success_rate: float
    current_tokens: float | None = None
    window_occupancy: int | None = None

    def as_dict(self) -> dict[str, object]:
        data = asdict(self)
        data["state"] = str(self.state)
        return data


class ResilientCaller:
    """Guard calls to one remote dependency.

    Each call is admitted by the rate limiter, then by the circuit breaker,
    then run through the retry executor. Every attempt outcome is recorded in
    the breaker exactly once, cancellation included, so breaker history
    reflects attempt-level health rather than end-to-end results.
    """

    def __init__(
        self,
        name: str,
        *,
        breaker: CircuitBreaker,
        retry: RetryExecutor,
        limiter: RateLimiter | None = None,
        listeners: Sequence[ResilienceListener] | None = None,
        logger: AnyLogger | None = None,
    ) -> None:
        """Wire shared breaker and limiter instances to a retry executor.

        Args:
            name: Caller name used in listener events and logs.
            breaker: Breaker shared by every call to the dependency.
            retry: Executor holding the retry policy and error classifier.
            limiter: Optional limiter shared by every call to the dependency.
            listeners: Optional metrics sinks.
            logger: Structured logger for listener failures and rejections.
        """
        self.name = name
        self.breaker = breaker
        self.retry = retry
        self.limiter = limiter
        self._listeners = tuple(listeners) if listeners is not None else ()
        self._logger = get_logger(__name__) if logger is None else logger

    @classmethod
    def from_settings(
        cls,
        name: str,
        settings: ResilienceSettings,
        *,
        classifier: ErrorClassifier | None = None,
        listeners: Sequence[ResilienceListener] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        stop_event: asyncio.Event | None = None,
        logger: AnyLogger | None = None,
    ) -> ResilientCaller:
        """Build a caller with fresh breaker, executor and limiter from settings.

        ``stop_event`` replaces ``sleep`` for retry backoff, so setting it
        aborts pending retries; ``sleep`` then only drives the limiter.
        """
        breaker = CircuitBreaker(
            name,
            config=settings.breaker_config(),
            classifier=classifier,
            logger=logger,
        )
        retry = RetryExecutor(
            settings.retry_policy(),
            breaker.classifier,
            sleep=sleep if stop_event is None else None,
            stop_event=stop_event,
            logger=logger,
        )
        return cls(
            name,
            breaker=breaker,
            retry=retry,
            limiter=settings.limiter(name, sleep=sleep, logger=logger),
            listeners=listeners,
            logger=logger,
        )

    async def _emit(self, event: str, *args: object) -> None:
        for listener in self._listeners:
            try:
                await getattr(listener, event)(self.name, *args)
            except Exception:
                log_exception(
                    self._logger,
                    "resilience.listener_failed",
                    caller=self.name,
                    listener_event=event,
                )

    async def _emit_transition(self, transition: StateTransition | None) -> None:
        if transition is not None:
            await self._emit("on_state_change", transition.old, transition.new)

    async def _admit(self, last_error: BaseException | None = None) -> None:
        admission: Admission = self.breaker.admit()
        if admission.allowed:
            # Every granted admission is followed by exactly one outcome.
            try:
                await self._emit_transition(admission.transition)
            except BaseException as exc:
                self.breaker.record_failure(exc)
                raise
            return

        await self._emit_transition(admission.transition)
        log_warning(
            self._logger,
            "resilience.circuit_open",
            caller=self.name,
            breaker=self.breaker.name,
            retry_after=admission.retry_after,
        )
        await self._emit("on_call_rejected", ErrorKind.CIRCUIT_OPEN, admission.retry_after)
        raise CircuitOpenError(
            self.breaker.name, retry_after=admission.retry_after
        ) from last_error

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` under rate limiting, circuit breaking and retries.

        Args:
            operation: Zero-argument coroutine function; invoked once per
                attempt, so it must be safe to repeat.

        Returns:
            The result of the first successful attempt.

        Raises:
            RateLimitExceeded: The limiter refused the call (``reject`` policy).
            CircuitOpenError: The breaker refused the call, or refused a retry
                attempt after an earlier attempt tripped it.
            RetryBudgetExhausted: Retryable failures used the whole budget.
            TerminalCallError: The operation failed with a non-retryable error.
            RetryInterrupted: Shutdown was requested during a retry backoff.
        """
        if self.limiter is not None:
            try:
                await self.limiter.acquire()
            except RateLimitExceeded as exc:
                await self._emit("on_call_rejected", ErrorKind.RATE_LIMITED, exc.retry_after)
                raise

        await self._admit()

        attempt = 0
        last_error: BaseException | None = None
        # True from the first granted admission until its attempt starts.
        unreported = True

        async def _attempt() -> T:
            nonlocal attempt, last_error, unreported
            unreported = False
            attempt += 1
            if attempt > 1:
                await self._admit(last_error)

            started = _monotonic()
            try:
                result = await operation()
            except BaseException as exc:
                transition = self.breaker.record_failure(exc)
                last_error = exc
                if isinstance(exc, Exception):
                    elapsed = max(_monotonic() - started, 0.0)
                    await self._emit("on_attempt_failed", attempt, exc, elapsed)
                    await self._emit_transition(transition)
                raise

            transition = self.breaker.record_success()
            elapsed = max(_monotonic() - started, 0.0)
            await self._emit("on_attempt_succeeded", attempt, elapsed)
            await self._emit_transition(transition)
            return result

        try:
            return await self.retry.execute(_attempt)
        except BaseException as exc:
            if unreported:
                unreported = False
                self.breaker.record_failure(exc)
            if isinstance(exc, ResilienceError) or not isinstance(exc, Exception):
                raise
            kind = kind_of(self.retry.classifier, exc)
            raise TerminalCallError(exc, kind=kind, attempts=attempt) from exc

    def metrics(self) -> CallerMetrics:
        breaker_metrics = self.breaker.metrics()
        current_tokens: float | None = None
        window_occupancy: int | None = None
        if self.limiter is not None:
            limiter_metrics = self.limiter.metrics()
            current_tokens = limiter_metrics.current_tokens
            window_occupancy = limiter_metrics.window_occupancy
        return CallerMetrics(
            name=self.name,
            state=breaker_metrics.state,
            total_requests=breaker_metrics.total_requests,
            total_failures=breaker_metrics.total_failures,
            trip_count=breaker_metrics.trip_count,
            success_rate=breaker_metrics.success_rate,
            current_tokens=current_tokens,
            window_occupancy=window_occupancy,
        )
