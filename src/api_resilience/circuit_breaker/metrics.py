"""Lifetime counters exported by circuit breakers."""

from __future__ import annotations

from dataclasses import asdict, dataclass

from api_resilience.circuit_breaker.state import CircuitState

_STATE_GAUGE: dict[CircuitState, int] = {
    CircuitState.CLOSED: 0,
    CircuitState.OPEN: 1,
    CircuitState.HALF_OPEN: 2,
}


@dataclass(frozen=True)
class BreakerMetrics:
    """Monotonic breaker counters. Never reset, not even by ``reset()``."""

    name: str
    state: CircuitState
    total_requests: int
    total_successes: int
    total_failures: int
    trip_count: int
    rejected_requests: int
    state_changes: int

    @property
    def success_rate(self) -> float:
        """Share of recorded outcomes that succeeded; ``1.0`` before any."""
        recorded = self.total_successes + self.total_failures
        if recorded == 0:
            return 1.0
        return self.total_successes / recorded

    def as_dict(self) -> dict[str, object]:
        data = asdict(self)
        data["state"] = str(self.state)
        data["success_rate"] = self.success_rate
        return data

    def to_prometheus_text(self) -> str:
        """Render the counters in Prometheus text exposition format."""
        labels = f'{{breaker="{self.name}"}}'
        lines = [
            f"circuit_breaker_requests_total{labels} {self.total_requests}",
            f"circuit_breaker_successes_total{labels} {self.total_successes}",
            f"circuit_breaker_failures_total{labels} {self.total_failures}",
            f"circuit_breaker_trips_total{labels} {self.trip_count}",
            f"circuit_breaker_rejected_total{labels} {self.rejected_requests}",
            f"circuit_breaker_state{labels} {_STATE_GAUGE[self.state]}",
            f"circuit_breaker_success_rate{labels} {self.success_rate:g}",
        ]
        return "\n".join(lines) + "\n"
