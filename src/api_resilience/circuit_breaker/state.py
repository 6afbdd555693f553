"""Circuit breaker state primitives."""

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum


class CircuitState(StrEnum):
    """Circuit breaker state values."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class StateTransition:
    """One recorded state change."""

    name: str
    old: CircuitState
    new: CircuitState
    at: datetime


@dataclass(frozen=True)
class Admission:
    """Outcome of asking the breaker whether a call may proceed.

    Attributes:
        allowed: Whether the caller may invoke the operation.
        retry_after: Seconds until a probe may be attempted when rejected.
        transition: The ``OPEN`` to ``HALF_OPEN`` change this admission caused.
    """

    allowed: bool
    retry_after: float = 0.0
    transition: StateTransition | None = None


@dataclass(frozen=True)
class BreakerSnapshot:
    """Point-in-time view of breaker internals useful for metrics/logging.

    Attributes:
        name: Breaker name.
        state: Current breaker state.
        failure_count: Consecutive counted failures while ``CLOSED``.
        success_count: Consecutive successes while ``HALF_OPEN``.
        last_failure_at: Timestamp of the last counted failure, if any.
        opened_at: Timestamp when the breaker entered ``OPEN``, if open.
        half_open_at: Timestamp when the breaker entered ``HALF_OPEN``.
        half_open_in_flight: Probe calls currently admitted in ``HALF_OPEN``.
    """

    name: str
    state: CircuitState
    failure_count: int
    success_count: int
    last_failure_at: datetime | None
    opened_at: datetime | None
    half_open_at: datetime | None
    half_open_in_flight: int
