"""Error taxonomy shared by the breaker, limiter, retry executor and caller.

Callers can distinguish between:
  - A call rejected because the circuit is open (operation never invoked).
  - A call rejected because the rate limiter had no capacity.
  - A call whose retry budget ran out (carries the last underlying error).
  - A call that failed with a terminal client error (never retried).
"""

from __future__ import annotations

from enum import StrEnum


class ErrorKind(StrEnum):
    """Kinds of failure a resilient call can end with."""

    TRANSIENT = "transient"
    OVERLOAD = "overload"
    CLIENT = "client"
    EXHAUSTED = "exhausted"
    CIRCUIT_OPEN = "circuit_open"
    RATE_LIMITED = "rate_limited"
    INTERRUPTED = "interrupted"


class TransientError(RuntimeError):
    """Generic retry-safe transient dependency failure."""


class OverloadError(RuntimeError):
    """Remote signalled throttling; retry later but do not blame its health.

    Attributes:
        retry_after: Server-suggested delay in seconds, when known.
    """

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ClientError(RuntimeError):
    """Malformed request, invalid argument or authentication failure."""


class ResilienceError(Exception):
    """Base exception for errors synthesized by the resilience layer."""

    kind: ErrorKind


class CircuitOpenError(ResilienceError):
    """Raised when a call is rejected because the circuit is open.

    Attributes:
        breaker_name: Name of the breaker rejecting the call.
        retry_after: Seconds until a half-open probe may be attempted.
    """

    kind = ErrorKind.CIRCUIT_OPEN

    def __init__(self, breaker_name: str, retry_after: float) -> None:
        """Initialize a circuit-open exception payload.

        Args:
            breaker_name: Breaker rejecting the call.
            retry_after: Seconds until the next probe window opens.
        """
        self.breaker_name = breaker_name
        self.retry_after = retry_after
        super().__init__(f"circuit_open: {breaker_name} retry_after={retry_after:g}s")


class RateLimitExceeded(ResilienceError):
    """Raised when the limiter rejects a call under the ``reject`` policy."""

    kind = ErrorKind.RATE_LIMITED

    def __init__(self, limiter_name: str, retry_after: float) -> None:
        self.limiter_name = limiter_name
        self.retry_after = retry_after
        super().__init__(f"rate_limited: {limiter_name} retry_after={retry_after:g}s")


class RetryBudgetExhausted(ResilienceError):
    """Raised when attempts or wall-clock time run out for one logical call.

    Attributes:
        attempts: Number of invocations made.
        elapsed: Seconds since the call began.
        last_error: The final underlying failure.
        last_error_kind: Classification of ``last_error``.
    """

    kind = ErrorKind.EXHAUSTED

    def __init__(
        self,
        *,
        attempts: int,
        elapsed: float,
        last_error: BaseException,
        last_error_kind: ErrorKind,
    ) -> None:
        self.attempts = attempts
        self.elapsed = elapsed
        self.last_error = last_error
        self.last_error_kind = last_error_kind
        super().__init__(
            f"retry_exhausted: attempts={attempts} elapsed={elapsed:.3f}s "
            f"last_error={last_error_kind}:{last_error.__class__.__name__}: {last_error}"
        )


class RetryInterrupted(ResilienceError):
    """Raised when shutdown is requested while waiting to retry.

    No further attempt is made once the stop event is set.
    """

    kind = ErrorKind.INTERRUPTED

    def __init__(self) -> None:
        super().__init__("retry_interrupted: shutdown requested during backoff")


class TerminalCallError(ResilienceError):
    """Raised when the operation fails with an error that must not be retried.

    The underlying error is available as ``error`` and ``__cause__``.
    """

    def __init__(self, error: BaseException, *, kind: ErrorKind, attempts: int) -> None:
        self.error = error
        self.kind = kind
        self.attempts = attempts
        super().__init__(
            f"terminal_error: {kind} after attempts={attempts}: "
            f"{error.__class__.__name__}: {error}"
        )
