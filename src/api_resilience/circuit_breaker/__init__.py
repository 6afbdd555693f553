"""Thread- and task-safe circuit breaker.

This package implements the circuit breaker pattern from *Release It!*.

Key behavior notes:
  - The breaker does not wrap calls. Callers ask for admission and report each
    attempt outcome; ``ResilientCaller`` does this wiring.
  - ``HALF_OPEN`` admits up to ``half_open_max_requests`` in-flight probes.
    Every recorded outcome gives back one probe slot.
  - Failures the classifier does not count (overload signals, client errors)
    never change counters or state.
"""

from api_resilience.circuit_breaker.breaker import CircuitBreaker, CircuitBreakerConfig
from api_resilience.circuit_breaker.metrics import BreakerMetrics
from api_resilience.circuit_breaker.state import (
    Admission,
    BreakerSnapshot,
    CircuitState,
    StateTransition,
)
from api_resilience.errors import CircuitOpenError

__all__ = [
    "Admission",
    "BreakerMetrics",
    "BreakerSnapshot",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitOpenError",
    "CircuitState",
    "StateTransition",
]
