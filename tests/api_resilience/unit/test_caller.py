from __future__ import annotations

import asyncio

import pytest

import api_resilience.caller as caller_mod
import api_resilience.circuit_breaker.breaker as breaker_mod
import api_resilience.rate_limit.base as base_mod
import api_resilience.retry as retry_mod
from api_resilience.caller import ResilientCaller
from api_resilience.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState
from api_resilience.classification import HttpxErrorClassifier
from api_resilience.errors import (
    CircuitOpenError,
    ClientError,
    ErrorKind,
    OverloadError,
    RateLimitExceeded,
    RetryBudgetExhausted,
    RetryInterrupted,
    TerminalCallError,
    TransientError,
)
from api_resilience.listeners import LoggingListener, ResilienceListener
from api_resilience.rate_limit import (
    AdmissionPolicy,
    RateLimiter,
    TokenBucketConfig,
    TokenBucketLimiter,
)
from api_resilience.retry import RetryExecutor, RetryPolicy
from api_resilience.settings import ResilienceSettings
from tests.api_resilience.support.fakes import (
    ExplodingListener,
    FakeClock,
    FakeLogger,
    RecordingListener,
    ScriptedOperation,
    SuspendingListener,
)

pytestmark = pytest.mark.asyncio


@pytest.fixture
def clock(monkeypatch: pytest.MonkeyPatch) -> FakeClock:
    fake = FakeClock()
    monkeypatch.setattr(breaker_mod, "_utcnow", fake.now)
    monkeypatch.setattr(retry_mod, "_monotonic", fake.monotonic)
    monkeypatch.setattr(caller_mod, "_monotonic", fake.monotonic)
    monkeypatch.setattr(base_mod, "_monotonic", fake.monotonic)
    return fake


def _caller(
    clock: FakeClock,
    *,
    failure_threshold: int = 5,
    open_timeout: float = 30.0,
    max_attempts: int = 3,
    limiter: RateLimiter | None = None,
    listeners: list[ResilienceListener] | None = None,
    logger: FakeLogger | None = None,
) -> ResilientCaller:
    breaker = CircuitBreaker(
        "svc",
        config=CircuitBreakerConfig(
            failure_threshold=failure_threshold,
            open_timeout=open_timeout,
        ),
        logger=logger,
    )
    retry = RetryExecutor(
        RetryPolicy(max_attempts=max_attempts, base_delay=1.0, jitter_fraction=0.0),
        breaker.classifier,
        sleep=clock.sleep,
        logger=logger,
    )
    return ResilientCaller(
        "svc",
        breaker=breaker,
        retry=retry,
        limiter=limiter,
        listeners=listeners,
        logger=logger,
    )


async def test_successful_call_returns_result(clock: FakeClock) -> None:
    caller = _caller(clock)
    operation = ScriptedOperation(result={"completion": "hi"})

    assert await caller.call(operation) == {"completion": "hi"}
    assert operation.calls == 1
    assert caller.breaker.metrics().total_successes == 1


async def test_open_circuit_fails_fast_without_invoking(clock: FakeClock) -> None:
    listener = RecordingListener()
    caller = _caller(clock, failure_threshold=1, listeners=[listener])
    caller.breaker.record_failure(TransientError("down"))
    clock.advance(10.0)
    operation = ScriptedOperation()

    with pytest.raises(CircuitOpenError) as excinfo:
        await caller.call(operation)

    assert operation.calls == 0
    assert excinfo.value.breaker_name == "svc"
    assert excinfo.value.retry_after == pytest.approx(20.0)
    assert listener.events == [("rejected", ("svc", ErrorKind.CIRCUIT_OPEN))]


async def test_every_attempt_is_recorded_in_the_breaker(clock: FakeClock) -> None:
    listener = RecordingListener()
    caller = _caller(clock, listeners=[listener])
    operation = ScriptedOperation(TransientError("503"), TransientError("503"))

    assert await caller.call(operation) == "ok"

    metrics = caller.breaker.metrics()
    assert metrics.total_requests == 3
    assert metrics.total_failures == 2
    assert metrics.total_successes == 1
    assert caller.breaker.snapshot().failure_count == 0
    assert listener.events == [
        ("failed", ("svc", 1, "TransientError")),
        ("failed", ("svc", 2, "TransientError")),
        ("succeeded", ("svc", 3)),
    ]
    assert clock.sleeps == [1.0, 2.0]


async def test_retry_stops_when_circuit_opens_mid_call(clock: FakeClock) -> None:
    listener = RecordingListener()
    caller = _caller(clock, failure_threshold=2, max_attempts=5, listeners=[listener])
    operation = ScriptedOperation(*(TransientError("down") for _ in range(5)))

    with pytest.raises(CircuitOpenError) as excinfo:
        await caller.call(operation)

    assert operation.calls == 2
    assert isinstance(excinfo.value.__cause__, TransientError)
    assert caller.breaker.state == CircuitState.OPEN
    assert listener.events == [
        ("failed", ("svc", 1, "TransientError")),
        ("failed", ("svc", 2, "TransientError")),
        ("state", ("svc", CircuitState.CLOSED, CircuitState.OPEN)),
        ("rejected", ("svc", ErrorKind.CIRCUIT_OPEN)),
    ]


async def test_terminal_error_is_wrapped_and_not_counted(clock: FakeClock) -> None:
    caller = _caller(clock, failure_threshold=1)
    error = ClientError("invalid request")
    operation = ScriptedOperation(error)

    with pytest.raises(TerminalCallError) as excinfo:
        await caller.call(operation)

    assert excinfo.value.error is error
    assert excinfo.value.__cause__ is error
    assert excinfo.value.kind == ErrorKind.CLIENT
    assert excinfo.value.attempts == 1
    assert operation.calls == 1
    assert caller.breaker.state == CircuitState.CLOSED


async def test_exhausted_retries_report_budget(clock: FakeClock) -> None:
    caller = _caller(clock, failure_threshold=10)
    operation = ScriptedOperation(*(TransientError("down") for _ in range(3)))

    with pytest.raises(RetryBudgetExhausted) as excinfo:
        await caller.call(operation)

    assert excinfo.value.attempts == 3
    assert excinfo.value.last_error_kind == ErrorKind.TRANSIENT
    assert caller.breaker.snapshot().failure_count == 3


async def test_overload_retries_never_open_the_circuit(clock: FakeClock) -> None:
    caller = _caller(clock, failure_threshold=1)
    operation = ScriptedOperation(*(OverloadError("429") for _ in range(3)))

    with pytest.raises(RetryBudgetExhausted) as excinfo:
        await caller.call(operation)

    assert excinfo.value.last_error_kind == ErrorKind.OVERLOAD
    assert operation.calls == 3
    assert caller.breaker.state == CircuitState.CLOSED
    assert caller.breaker.metrics().trip_count == 0


async def test_rate_limiter_rejection_skips_breaker(clock: FakeClock) -> None:
    listener = RecordingListener()
    limiter = TokenBucketLimiter(
        "svc",
        config=TokenBucketConfig(max_tokens=1.0, refill_rate=0.5),
        policy=AdmissionPolicy.REJECT,
    )
    caller = _caller(clock, limiter=limiter, listeners=[listener])
    operation = ScriptedOperation()
    await caller.call(operation)
    listener.events.clear()

    with pytest.raises(RateLimitExceeded) as excinfo:
        await caller.call(operation)

    assert excinfo.value.retry_after == pytest.approx(2.0)
    assert operation.calls == 1
    assert caller.breaker.metrics().total_requests == 1
    assert listener.events == [("rejected", ("svc", ErrorKind.RATE_LIMITED))]


async def test_rate_limiter_wait_policy_delays_call(clock: FakeClock) -> None:
    limiter = TokenBucketLimiter(
        "svc",
        config=TokenBucketConfig(max_tokens=1.0, refill_rate=0.5),
        policy=AdmissionPolicy.WAIT,
        sleep=clock.sleep,
    )
    caller = _caller(clock, limiter=limiter)
    operation = ScriptedOperation()

    await caller.call(operation)
    await caller.call(operation)

    assert operation.calls == 2
    assert clock.sleeps == [pytest.approx(2.0)]


async def test_cancellation_is_recorded_once_and_propagates(clock: FakeClock) -> None:
    listener = RecordingListener()
    caller = _caller(clock, listeners=[listener])
    started = asyncio.Event()

    async def _hanging() -> str:
        started.set()
        await asyncio.Event().wait()
        return "never"

    task = asyncio.create_task(caller.call(_hanging))
    await started.wait()

    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    metrics = caller.breaker.metrics()
    assert metrics.total_failures == 1
    assert caller.breaker.snapshot().failure_count == 1
    assert listener.events == []


async def test_half_open_probe_success_closes_circuit(clock: FakeClock) -> None:
    listener = RecordingListener()
    caller = _caller(
        clock,
        failure_threshold=1,
        open_timeout=5.0,
        max_attempts=1,
        listeners=[listener],
    )
    with pytest.raises(RetryBudgetExhausted):
        await caller.call(ScriptedOperation(TransientError("down")))
    assert caller.breaker.state == CircuitState.OPEN

    clock.advance(5.0)
    assert await caller.call(ScriptedOperation()) == "ok"

    state_events = [payload for name, payload in listener.events if name == "state"]
    assert state_events == [
        ("svc", CircuitState.CLOSED, CircuitState.OPEN),
        ("svc", CircuitState.OPEN, CircuitState.HALF_OPEN),
        ("svc", CircuitState.HALF_OPEN, CircuitState.CLOSED),
    ]

async def test_cancelled_state_notification_releases_half_open_slot(clock: FakeClock) -> None:
    caller = _caller(
        clock,
        failure_threshold=1,
        open_timeout=5.0,
        listeners=[SuspendingListener()],
    )
    caller.breaker.record_failure(TransientError("down"))
    clock.advance(5.0)
    operation = ScriptedOperation()

    with pytest.raises(TimeoutError):
        await asyncio.wait_for(caller.call(operation), 0.05)

    assert operation.calls == 0
    assert caller.breaker.state == CircuitState.OPEN
    assert caller.breaker.snapshot().half_open_in_flight == 0
    clock.advance(5.0)
    assert caller.breaker.can_execute() is True


async def test_cancelled_readmission_notification_releases_half_open_slot(
    clock: FakeClock,
) -> None:
    caller = _caller(
        clock,
        failure_threshold=1,
        open_timeout=1.0,
        max_attempts=3,
        listeners=[SuspendingListener(suspend_on=2)],
    )
    caller.breaker.record_failure(TransientError("down"))
    clock.advance(1.0)
    operation = ScriptedOperation(TransientError("still down"))

    with pytest.raises(TimeoutError):
        await asyncio.wait_for(caller.call(operation), 0.05)

    assert operation.calls == 1
    assert clock.sleeps == [1.0]
    assert caller.breaker.state == CircuitState.OPEN
    assert caller.breaker.snapshot().half_open_in_flight == 0


async def test_stop_event_interrupts_retries_without_wrapping(clock: FakeClock) -> None:
    logger = FakeLogger()
    breaker = CircuitBreaker("svc", logger=logger)
    stop_event = asyncio.Event()
    stop_event.set()
    caller = ResilientCaller(
        "svc",
        breaker=breaker,
        retry=RetryExecutor(
            RetryPolicy(max_attempts=5, base_delay=10.0, jitter_fraction=0.0),
            breaker.classifier,
            stop_event=stop_event,
            logger=logger,
        ),
        logger=logger,
    )
    operation = ScriptedOperation(
        TransientError("a"), TransientError("b"), TransientError("c")
    )

    with pytest.raises(RetryInterrupted):
        await caller.call(operation)

    assert operation.calls == 1
    assert breaker.metrics().total_failures == 1
    assert "retry.interrupted" in logger.events



async def test_failing_listener_is_logged_and_ignored(clock: FakeClock) -> None:
    logger = FakeLogger()
    recorder = RecordingListener()
    caller = _caller(clock, listeners=[ExplodingListener(), recorder], logger=logger)

    assert await caller.call(ScriptedOperation(TransientError("503"))) == "ok"

    assert recorder.events == [
        ("failed", ("svc", 1, "TransientError")),
        ("succeeded", ("svc", 2)),
    ]
    failures = [call for call in logger.calls if call[1] == "resilience.listener_failed"]
    assert len(failures) == 2
    assert failures[0][0] == "exception"
    assert failures[0][2]["listener_event"] == "on_attempt_failed"


async def test_logging_listener_writes_structured_events(clock: FakeClock) -> None:
    logger = FakeLogger()
    caller = _caller(
        clock,
        failure_threshold=1,
        max_attempts=1,
        listeners=[LoggingListener(logger)],
    )

    with pytest.raises(RetryBudgetExhausted):
        await caller.call(ScriptedOperation(TransientError("503")))
    with pytest.raises(CircuitOpenError):
        await caller.call(ScriptedOperation())

    assert logger.events == [
        "resilience.attempt_failed",
        "resilience.state_change",
        "resilience.call_rejected",
    ]
    _, _, fields = logger.calls[1]
    assert fields == {"caller": "svc", "old_state": "closed", "new_state": "open"}


async def test_metrics_combine_breaker_and_limiter(clock: FakeClock) -> None:
    limiter = TokenBucketLimiter(
        "svc",
        config=TokenBucketConfig(max_tokens=4.0, refill_rate=1.0),
        policy=AdmissionPolicy.REJECT,
    )
    caller = _caller(clock, limiter=limiter)
    await caller.call(ScriptedOperation())

    metrics = caller.metrics()

    assert metrics.state == CircuitState.CLOSED
    assert metrics.total_requests == 1
    assert metrics.success_rate == 1.0
    assert metrics.current_tokens == pytest.approx(3.0)
    assert metrics.window_occupancy is None
    assert metrics.as_dict()["state"] == "closed"


async def test_from_settings_wires_shared_classifier(clock: FakeClock) -> None:
    settings = ResilienceSettings(
        failure_threshold=2,
        jitter_fraction=0.0,
        limiter_strategy="token_bucket",
        refill_rate=1.0,
        max_tokens=5.0,
    )
    classifier = HttpxErrorClassifier()

    caller = ResilientCaller.from_settings(
        "anthropic",
        settings,
        classifier=classifier,
        sleep=clock.sleep,
    )

    assert caller.name == "anthropic"
    assert caller.breaker.name == "anthropic"
    assert caller.breaker.config.failure_threshold == 2
    assert caller.breaker.classifier is classifier
    assert caller.retry.classifier is classifier
    assert isinstance(caller.limiter, TokenBucketLimiter)
    assert await caller.call(ScriptedOperation(TransientError("x"))) == "ok"
    assert clock.sleeps == [0.5]


async def test_from_settings_stop_event_aborts_backoff(clock: FakeClock) -> None:
    stop_event = asyncio.Event()
    stop_event.set()
    caller = ResilientCaller.from_settings(
        "anthropic",
        ResilienceSettings(jitter_fraction=0.0),
        sleep=clock.sleep,
        stop_event=stop_event,
    )
    operation = ScriptedOperation(TransientError("x"))

    with pytest.raises(RetryInterrupted):
        await caller.call(operation)

    assert operation.calls == 1
    assert clock.sleeps == []
