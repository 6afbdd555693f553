"""Observability hooks for resilient callers."""

from __future__ import annotations

from typing import Protocol

from api_resilience.circuit_breaker.state import CircuitState
from api_resilience.errors import ErrorKind
from api_resilience.logging import AnyLogger, get_logger, log_info, log_warning


class ResilienceListener(Protocol):
    """Listener protocol for resilient call events.

    Notes:
        Attempt events fire once per invocation of the operation, so a call
        that retries twice emits three attempt events. Cancelled attempts are
        recorded in the breaker but not emitted here.
    """

    async def on_state_change(
        self, name: str, old: CircuitState, new: CircuitState
    ) -> None:
        """Handle circuit state transitions."""

    async def on_call_rejected(
        self, name: str, reason: ErrorKind, retry_after: float
    ) -> None:
        """Handle a call refused by the limiter or an open circuit."""

    async def on_attempt_succeeded(
        self, name: str, attempt: int, elapsed: float
    ) -> None:
        """Handle one successful attempt."""

    async def on_attempt_failed(
        self, name: str, attempt: int, exc: Exception, elapsed: float
    ) -> None:
        """Handle one failed attempt."""


class LoggingListener:
    """Write every resilience event as a structured log line."""

    def __init__(self, logger: AnyLogger | None = None) -> None:
        self._logger = get_logger(__name__) if logger is None else logger

    async def on_state_change(
        self, name: str, old: CircuitState, new: CircuitState
    ) -> None:
        log_info(
            self._logger,
            "resilience.state_change",
            caller=name,
            old_state=str(old),
            new_state=str(new),
        )

    async def on_call_rejected(
        self, name: str, reason: ErrorKind, retry_after: float
    ) -> None:
        log_warning(
            self._logger,
            "resilience.call_rejected",
            caller=name,
            reason=str(reason),
            retry_after=retry_after,
        )

    async def on_attempt_succeeded(
        self, name: str, attempt: int, elapsed: float
    ) -> None:
        log_info(
            self._logger,
            "resilience.attempt_succeeded",
            caller=name,
            attempt=attempt,
            elapsed_seconds=elapsed,
        )

    async def on_attempt_failed(
        self, name: str, attempt: int, exc: Exception, elapsed: float
    ) -> None:
        log_warning(
            self._logger,
            "resilience.attempt_failed",
            caller=name,
            attempt=attempt,
            error_type=exc.__class__.__name__,
            error=str(exc),
            elapsed_seconds=elapsed,
        )
