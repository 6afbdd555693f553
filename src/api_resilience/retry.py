from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass
from enum import StrEnum
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
)
from tenacity.stop import stop_base
from tenacity.wait import wait_base

from api_resilience.classification import (
    ErrorClassifier,
    ExceptionTypeClassifier,
    kind_of,
    retry_after_hint,
)
from api_resilience.errors import ResilienceError, RetryBudgetExhausted, RetryInterrupted
from api_resilience.logging import AnyLogger, get_logger, log_info, log_warning

T = TypeVar("T")


def _monotonic() -> float:
    return time.monotonic()


class BackoffStrategy(StrEnum):
    """Shape of the delay curve between attempts."""

    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    FIXED = "fixed"


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and backoff shape for one logical call.

    Attributes:
        max_attempts: Hard cap on invocations, including the first.
        base_delay: Delay in seconds after the first failed attempt.
        max_delay: Cap on the computed delay before jitter.
        backoff_multiplier: Growth factor per attempt for exponential backoff.
        jitter_fraction: Jitter is uniform in ``[0, jitter_fraction * delay]``.
        max_elapsed_time: Wall-clock budget in seconds; ``None`` disables it.
        strategy: Exponential, linear or fixed delay curve.
    """

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter_fraction: float = 0.1
    max_elapsed_time: float | None = None
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.max_delay < 0:
            raise ValueError("max_delay must be >= 0")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.backoff_multiplier <= 1.0:
            raise ValueError("backoff_multiplier must be > 1.0")
        if not 0.0 <= self.jitter_fraction <= 1.0:
            raise ValueError("jitter_fraction must be between 0 and 1")
        if self.max_elapsed_time is not None and self.max_elapsed_time <= 0:
            raise ValueError("max_elapsed_time must be > 0 when provided")
        object.__setattr__(self, "strategy", BackoffStrategy(self.strategy))


@dataclass(frozen=True)
class RetryState:
    """Progress of one logical call. Never shared between calls."""

    attempt: int
    total_attempts: int
    last_error: BaseException | None
    elapsed: float


def compute_delay(policy: RetryPolicy, attempt: int) -> float:
    """Return the jitter-free delay after failed attempt number ``attempt``."""
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    if policy.strategy == BackoffStrategy.FIXED:
        delay = policy.base_delay
    elif policy.strategy == BackoffStrategy.LINEAR:
        delay = policy.base_delay * attempt
    else:
        try:
            delay = policy.base_delay * policy.backoff_multiplier ** (attempt - 1)
        except OverflowError:
            delay = policy.max_delay
    return min(delay, policy.max_delay)


class wait_policy_backoff(wait_base):
    """Tenacity wait strategy for ``RetryPolicy`` plus server delay hints."""

    def __init__(
        self,
        policy: RetryPolicy,
        classifier: ErrorClassifier,
        *,
        uniform: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self.policy = policy
        self.classifier = classifier
        self.uniform = uniform

    def __call__(self, retry_state: RetryCallState) -> float:
        delay = compute_delay(self.policy, retry_state.attempt_number)
        outcome = retry_state.outcome
        if outcome is not None and outcome.failed:
            error = outcome.exception()
            hint = None if error is None else retry_after_hint(self.classifier, error)
            if hint is not None:
                delay = min(max(delay, hint), self.policy.max_delay)
        if self.policy.jitter_fraction > 0 and delay > 0:
            delay += self.uniform(0.0, self.policy.jitter_fraction * delay)
        return delay


class stop_after_elapsed(stop_base):
    """Stop once ``max_elapsed`` seconds have passed since ``started_at``."""

    def __init__(self, max_elapsed: float, started_at: float) -> None:
        self.max_elapsed = max_elapsed
        self.started_at = started_at

    def __call__(self, retry_state: RetryCallState) -> bool:
        return _monotonic() - self.started_at >= self.max_elapsed


def build_interruptible_sleep(
    stop_event: asyncio.Event,
) -> Callable[[float], Awaitable[None]]:
    """Build a backoff sleep that aborts the retry loop on shutdown.

    Raises:
        RetryInterrupted: When ``stop_event`` is set before or during the
            delay. Tenacity propagates it, so no further attempt is made.
    """

    async def _interruptible_sleep(delay: float) -> None:
        if stop_event.is_set():
            raise RetryInterrupted()

        with suppress(TimeoutError):
            await asyncio.wait_for(stop_event.wait(), timeout=max(delay, 0.0))
        if stop_event.is_set():
            raise RetryInterrupted()

    return _interruptible_sleep


class RetryExecutor:
    """Retry a re-invocable async operation with bounded backoff.

    The executor cannot verify idempotence; callers must only hand it
    operations that are safe to repeat. Passing ``stop_event`` makes every
    backoff sleep raise ``RetryInterrupted`` once shutdown is requested.
    """

    def __init__(
        self,
        policy: RetryPolicy,
        classifier: ErrorClassifier | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        stop_event: asyncio.Event | None = None,
        logger: AnyLogger | None = None,
    ) -> None:
        if sleep is not None and stop_event is not None:
            raise ValueError("sleep and stop_event are mutually exclusive")
        self.policy = policy
        self.classifier = ExceptionTypeClassifier() if classifier is None else classifier
        if stop_event is not None:
            sleep = build_interruptible_sleep(stop_event)
        self._sleep = asyncio.sleep if sleep is None else sleep
        self._logger = get_logger(__name__) if logger is None else logger

    def _should_retry(self, error: BaseException) -> bool:
        if not isinstance(error, Exception) or isinstance(error, ResilienceError):
            return False
        return self.classifier.is_retryable(error)

    def _build_retrying(
        self,
        started_at: float,
        on_retry: Callable[[RetryState, float], None] | None,
    ) -> AsyncRetrying:
        stop = stop_after_attempt(self.policy.max_attempts)
        if self.policy.max_elapsed_time is not None:
            stop = stop | stop_after_elapsed(self.policy.max_elapsed_time, started_at)

        def _before_sleep(retry_state: RetryCallState) -> None:
            state = self._state_from(retry_state, started_at)
            delay = 0.0 if retry_state.next_action is None else retry_state.next_action.sleep
            error = state.last_error
            log_info(
                self._logger,
                "retry.scheduled",
                attempt=state.attempt,
                max_attempts=self.policy.max_attempts,
                delay_seconds=delay,
                elapsed_seconds=state.elapsed,
                error_type=None if error is None else error.__class__.__name__,
            )
            if on_retry is not None:
                on_retry(state, delay)

        retrying = AsyncRetrying(
            retry=retry_if_exception(self._should_retry),
            wait=wait_policy_backoff(self.policy, self.classifier),
            stop=stop,
            sleep=self._sleep,
            before_sleep=_before_sleep,
            reraise=False,
        )
        return retrying

    @staticmethod
    def _state_from(retry_state: RetryCallState, started_at: float) -> RetryState:
        outcome = retry_state.outcome
        last_error = None
        if outcome is not None and outcome.failed:
            last_error = outcome.exception()
        return RetryState(
            attempt=retry_state.attempt_number,
            total_attempts=retry_state.attempt_number,
            last_error=last_error,
            elapsed=max(_monotonic() - started_at, 0.0),
        )

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        on_retry: Callable[[RetryState, float], None] | None = None,
    ) -> T:
        """Invoke ``operation`` until it succeeds or the retry budget runs out.

        Args:
            operation: Zero-argument coroutine function, invoked once per attempt.
            on_retry: Optional hook called with the call's ``RetryState`` and
                the chosen delay before each backoff sleep.

        Returns:
            The first successful result.

        Raises:
            RetryBudgetExhausted: When retryable failures used up
                ``max_attempts`` or ``max_elapsed_time``.
            RetryInterrupted: When ``stop_event`` was set during backoff.
            Exception: The operation's own error when it is not retryable.
        """
        started_at = _monotonic()
        retrying = self._build_retrying(started_at, on_retry)
        try:
            return await retrying(operation)
        except RetryInterrupted:
            log_warning(
                self._logger,
                "retry.interrupted",
                elapsed_seconds=max(_monotonic() - started_at, 0.0),
            )
            raise
        except RetryError as exc:
            last_attempt = exc.last_attempt
            last_error = last_attempt.exception()
            assert last_error is not None
            elapsed = max(_monotonic() - started_at, 0.0)
            error_kind = kind_of(self.classifier, last_error)
            log_warning(
                self._logger,
                "retry.exhausted",
                attempts=last_attempt.attempt_number,
                elapsed_seconds=elapsed,
                error_kind=str(error_kind),
                error_type=last_error.__class__.__name__,
            )
            raise RetryBudgetExhausted(
                attempts=last_attempt.attempt_number,
                elapsed=elapsed,
                last_error=last_error,
                last_error_kind=error_kind,
            ) from last_error
