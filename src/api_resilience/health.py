from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from api_resilience.caller import ResilientCaller
from api_resilience.circuit_breaker import CircuitState

REASON_OK = "ok"
REASON_CIRCUIT_OPEN = "circuit_open"
REASON_CIRCUIT_HALF_OPEN = "circuit_half_open"
REASON_NO_DEPENDENCIES = "no_dependencies"


@dataclass(frozen=True)
class CheckResult:
    """Health of one guarded dependency."""

    name: str
    ok: bool
    reason: str
    detail: str = ""
    data: Mapping[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Freeze check metadata mapping to keep snapshots read-only."""
        frozen_data = MappingProxyType(dict(self.data))
        object.__setattr__(self, "data", frozen_data)


@dataclass(frozen=True)
class HealthSnapshot:
    """Immutable snapshot of dependency health for readiness probes."""

    status: str
    ready: bool
    reason: str
    checked_at: float
    check_results: tuple[CheckResult, ...]


def check_caller(caller: ResilientCaller) -> CheckResult:
    """Derive one check result from a caller's breaker and limiter state."""
    metrics = caller.metrics()
    data = metrics.as_dict()
    if metrics.state == CircuitState.OPEN:
        return CheckResult(
            name=caller.name,
            ok=False,
            reason=REASON_CIRCUIT_OPEN,
            detail=f"Circuit {caller.breaker.name} is open.",
            data=data,
        )
    if metrics.state == CircuitState.HALF_OPEN:
        return CheckResult(
            name=caller.name,
            ok=True,
            reason=REASON_CIRCUIT_HALF_OPEN,
            detail=f"Circuit {caller.breaker.name} is probing recovery.",
            data=data,
        )
    return CheckResult(name=caller.name, ok=True, reason=REASON_OK, data=data)


def build_health_snapshot(
    callers: Iterable[ResilientCaller],
    *,
    now_fn: Callable[[], float] = time.time,
) -> HealthSnapshot:
    """Summarize callers: degraded when any circuit is not closed.

    A half-open circuit keeps the service ready; an open one does not.
    """
    results = tuple(check_caller(caller) for caller in callers)
    if not results:
        return HealthSnapshot(
            status="ok",
            ready=True,
            reason=REASON_NO_DEPENDENCIES,
            checked_at=now_fn(),
            check_results=(),
        )

    ready = all(result.ok for result in results)
    degraded = [result for result in results if result.reason != REASON_OK]
    if not degraded:
        status, reason = "ok", REASON_OK
    else:
        status = "degraded"
        reason = REASON_CIRCUIT_OPEN if not ready else degraded[0].reason
    return HealthSnapshot(
        status=status,
        ready=ready,
        reason=reason,
        checked_at=now_fn(),
        check_results=results,
    )
