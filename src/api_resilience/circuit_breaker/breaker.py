"""Core circuit breaker implementation."""

import asyncio
import threading
from dataclasses import dataclass
from datetime import UTC, datetime

from api_resilience.circuit_breaker.metrics import BreakerMetrics
from api_resilience.circuit_breaker.state import (
    Admission,
    BreakerSnapshot,
    CircuitState,
    StateTransition,
)
from api_resilience.classification import ErrorClassifier, ExceptionTypeClassifier
from api_resilience.logging import (
    AnyLogger,
    get_logger,
    log_info,
    log_warning,
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True)
class CircuitBreakerConfig:
    """Circuit breaker configuration values.

    Attributes:
        failure_threshold: Consecutive counted failures while ``CLOSED``
            before opening.
        success_threshold: Consecutive successes while ``HALF_OPEN`` before
            closing.
        open_timeout: Seconds to stay ``OPEN`` before allowing a probe.
        half_open_max_requests: Concurrent probes admitted while ``HALF_OPEN``.
    """

    failure_threshold: int = 5
    success_threshold: int = 1
    open_timeout: float = 30.0
    half_open_max_requests: int = 1

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.success_threshold < 1:
            raise ValueError("success_threshold must be >= 1")
        if self.open_timeout < 0:
            raise ValueError("open_timeout must be >= 0")
        if self.half_open_max_requests < 1:
            raise ValueError("half_open_max_requests must be >= 1")


class CircuitBreaker:
    """Failure-history state machine guarding one remote dependency.

    The breaker never invokes anything itself. Callers ask ``admit()`` (or
    ``can_execute()``) before an attempt and report every attempt outcome with
    ``record_success()`` or ``record_failure()``. Each check-then-mutate
    sequence runs under one lock, so concurrent failures crossing the
    threshold trip the breaker exactly once.
    """

    def __init__(
        self,
        name: str,
        *,
        config: CircuitBreakerConfig | None = None,
        classifier: ErrorClassifier | None = None,
        logger: AnyLogger | None = None,
    ) -> None:
        """Build a circuit breaker with optional custom dependencies.

        Args:
            name: Breaker name used in errors, logs and metrics.
            config: Breaker behavior configuration. Defaults to
                ``CircuitBreakerConfig()``.
            classifier: Decides which failures count toward circuit health.
                Defaults to ``ExceptionTypeClassifier()``.
            logger: Structured logger for state transitions.
        """
        self.name = name
        self.config = CircuitBreakerConfig() if config is None else config
        self.classifier = ExceptionTypeClassifier() if classifier is None else classifier
        self._logger = get_logger(__name__) if logger is None else logger
        self._lock = threading.Lock()

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_at: datetime | None = None
        self._opened_at: datetime | None = None
        self._half_open_at: datetime | None = None
        self._half_open_in_flight = 0

        self._total_requests = 0
        self._total_successes = 0
        self._total_failures = 0
        self._trip_count = 0
        self._rejected_requests = 0
        self._state_changes = 0

    @property
    def state(self) -> CircuitState:
        """Current state. Reading it never triggers the open timeout."""
        with self._lock:
            return self._state

    def can_execute(self) -> bool:
        """Return whether a call may proceed right now."""
        return self.admit().allowed

    def admit(self) -> Admission:
        """Decide admission for one attempt, probing when the timeout elapsed."""
        with self._lock:
            now = _utcnow()
            if self._state == CircuitState.CLOSED:
                self._total_requests += 1
                return Admission(allowed=True)

            if self._state == CircuitState.OPEN:
                retry_after = self._retry_after(now)
                if retry_after > 0:
                    self._rejected_requests += 1
                    return Admission(allowed=False, retry_after=retry_after)
                transition = self._transition(CircuitState.HALF_OPEN, now)
                self._half_open_in_flight = 1
                self._total_requests += 1
                admission = Admission(allowed=True, transition=transition)
            elif self._half_open_in_flight < self.config.half_open_max_requests:
                self._half_open_in_flight += 1
                self._total_requests += 1
                return Admission(allowed=True)
            else:
                self._rejected_requests += 1
                return Admission(allowed=False, retry_after=0.0)

        self._log_transition(transition)
        return admission

    def record_success(self) -> StateTransition | None:
        """Record one successful attempt.

        Returns:
            The ``HALF_OPEN`` to ``CLOSED`` transition when this success
            completed recovery, otherwise ``None``.
        """
        transition: StateTransition | None = None
        with self._lock:
            if self._state == CircuitState.OPEN:
                return None

            self._total_successes += 1
            if self._state == CircuitState.CLOSED:
                self._failure_count = 0
                return None

            self._release_probe()
            self._success_count += 1
            if self._success_count >= self.config.success_threshold:
                transition = self._transition(CircuitState.CLOSED, _utcnow())

        if transition is not None:
            self._log_transition(transition)
        return transition

    def record_failure(self, error: BaseException) -> StateTransition | None:
        """Record one failed attempt.

        Failures the classifier does not count toward circuit health change
        no counters; they only give back a half-open probe slot. Cancellation
        always counts.

        Returns:
            The transition into ``OPEN`` when this failure tripped the
            breaker, otherwise ``None``.
        """
        counted = isinstance(error, asyncio.CancelledError) or (
            self.classifier.is_circuit_failure(error)
        )
        transition: StateTransition | None = None
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._release_probe()
            if not counted or self._state == CircuitState.OPEN:
                return None

            now = _utcnow()
            self._total_failures += 1
            self._last_failure_at = now
            if self._state == CircuitState.CLOSED:
                self._failure_count += 1
                if self._failure_count >= self.config.failure_threshold:
                    transition = self._transition(CircuitState.OPEN, now)
            else:
                transition = self._transition(CircuitState.OPEN, now)

        if transition is not None:
            self._log_transition(transition, error=error)
        return transition

    def reset(self) -> StateTransition | None:
        """Force a fresh ``CLOSED`` state. Lifetime counters are kept."""
        transition: StateTransition | None = None
        with self._lock:
            if self._state != CircuitState.CLOSED:
                transition = self._transition(CircuitState.CLOSED, _utcnow())
            self._failure_count = 0
            self._last_failure_at = None

        if transition is not None:
            self._log_transition(transition)
        return transition

    def snapshot(self) -> BreakerSnapshot:
        with self._lock:
            return BreakerSnapshot(
                name=self.name,
                state=self._state,
                failure_count=self._failure_count,
                success_count=self._success_count,
                last_failure_at=self._last_failure_at,
                opened_at=self._opened_at,
                half_open_at=self._half_open_at,
                half_open_in_flight=self._half_open_in_flight,
            )

    def metrics(self) -> BreakerMetrics:
        with self._lock:
            return BreakerMetrics(
                name=self.name,
                state=self._state,
                total_requests=self._total_requests,
                total_successes=self._total_successes,
                total_failures=self._total_failures,
                trip_count=self._trip_count,
                rejected_requests=self._rejected_requests,
                state_changes=self._state_changes,
            )

    def _retry_after(self, now: datetime) -> float:
        opened_at = now if self._opened_at is None else self._opened_at
        elapsed = (now - opened_at).total_seconds()
        return max(self.config.open_timeout - elapsed, 0.0)

    def _release_probe(self) -> None:
        self._half_open_in_flight = max(self._half_open_in_flight - 1, 0)

    def _transition(self, new: CircuitState, now: datetime) -> StateTransition:
        # Caller holds self._lock.
        old = self._state
        self._state = new
        self._state_changes += 1
        if new == CircuitState.OPEN:
            self._opened_at = now
            self._half_open_at = None
            self._half_open_in_flight = 0
            self._success_count = 0
            self._trip_count += 1
        elif new == CircuitState.HALF_OPEN:
            self._opened_at = None
            self._half_open_at = now
            self._half_open_in_flight = 0
            self._failure_count = 0
            self._success_count = 0
        else:
            self._opened_at = None
            self._half_open_at = None
            self._half_open_in_flight = 0
            self._failure_count = 0
            self._success_count = 0
            self._last_failure_at = None
        return StateTransition(name=self.name, old=old, new=new, at=now)

    def _log_transition(
        self,
        transition: StateTransition,
        *,
        error: BaseException | None = None,
    ) -> None:
        fields: dict[str, object] = {
            "breaker": self.name,
            "old_state": str(transition.old),
            "new_state": str(transition.new),
        }
        if transition.new == CircuitState.OPEN:
            if error is not None:
                fields["error_type"] = error.__class__.__name__
            log_warning(
                self._logger,
                "circuit_breaker.opened",
                open_timeout=self.config.open_timeout,
                **fields,
            )
        elif transition.new == CircuitState.HALF_OPEN:
            log_info(self._logger, "circuit_breaker.half_open", **fields)
        else:
            log_info(self._logger, "circuit_breaker.closed", **fields)
