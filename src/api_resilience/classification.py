"""Error classifiers consumed by the circuit breaker and retry executor.

A classifier answers two questions about a failed attempt: does it count
against the remote dependency's health, and is it worth trying again. The
resilience state machines never look at error types themselves.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Protocol, runtime_checkable

import httpx

from api_resilience.errors import ClientError, ErrorKind, OverloadError, TransientError

OVERLOAD_STATUSES = frozenset({429})
TRANSIENT_STATUSES = frozenset({408})
CLIENT_TRANSPORT_ERRORS: tuple[type[Exception], ...] = (
    httpx.InvalidURL,
    httpx.UnsupportedProtocol,
)


@runtime_checkable
class ErrorClassifier(Protocol):
    """Capability mapping an operation error to breaker and retry decisions."""

    def is_circuit_failure(self, error: BaseException) -> bool:
        """Return whether ``error`` counts toward circuit health."""

    def is_retryable(self, error: BaseException) -> bool:
        """Return whether another attempt may succeed after ``error``."""


def retry_after_hint(classifier: ErrorClassifier, error: BaseException) -> float | None:
    """Return the classifier's server delay hint, if it offers one."""
    hint = getattr(classifier, "retry_after", None)
    if hint is None:
        return None
    value = hint(error)
    if value is None:
        return None
    return max(float(value), 0.0)


def kind_of(classifier: ErrorClassifier, error: BaseException) -> ErrorKind:
    """Project the two classifier predicates back onto an ``ErrorKind``."""
    classify = getattr(classifier, "classify", None)
    if classify is not None:
        return classify(error)
    if not classifier.is_retryable(error):
        return ErrorKind.CLIENT
    if classifier.is_circuit_failure(error):
        return ErrorKind.TRANSIENT
    return ErrorKind.OVERLOAD


class KindClassifier(ABC):
    """Classifier that decides one ``ErrorKind`` and derives both predicates."""

    @abstractmethod
    def classify(self, error: BaseException) -> ErrorKind:
        """Return the kind of ``error``."""

    def is_circuit_failure(self, error: BaseException) -> bool:
        if isinstance(error, asyncio.CancelledError):
            return True
        return self.classify(error) == ErrorKind.TRANSIENT

    def is_retryable(self, error: BaseException) -> bool:
        if not isinstance(error, Exception):
            return False
        return self.classify(error) in {ErrorKind.TRANSIENT, ErrorKind.OVERLOAD}

    def retry_after(self, error: BaseException) -> float | None:
        if isinstance(error, OverloadError):
            return error.retry_after
        return None


class ExceptionTypeClassifier(KindClassifier):
    """Classify by exception type.

    Lookup order is client, overload, transient; anything unmatched gets
    ``default``. The package's own marker exceptions are always registered.
    """

    def __init__(
        self,
        *,
        transient: tuple[type[BaseException], ...] = (),
        overload: tuple[type[BaseException], ...] = (),
        client: tuple[type[BaseException], ...] = (),
        default: ErrorKind = ErrorKind.TRANSIENT,
    ) -> None:
        if default not in {ErrorKind.TRANSIENT, ErrorKind.OVERLOAD, ErrorKind.CLIENT}:
            raise ValueError("default must be transient, overload or client")
        self.transient = (TransientError, TimeoutError, *transient)
        self.overload = (OverloadError, *overload)
        self.client = (ClientError, *client)
        self.default = default

    def classify(self, error: BaseException) -> ErrorKind:
        if isinstance(error, asyncio.CancelledError):
            return ErrorKind.TRANSIENT
        if isinstance(error, self.client):
            return ErrorKind.CLIENT
        if isinstance(error, self.overload):
            return ErrorKind.OVERLOAD
        if isinstance(error, self.transient):
            return ErrorKind.TRANSIENT
        return self.default


class HttpxErrorClassifier(ExceptionTypeClassifier):
    """Classify ``httpx`` failures from remote HTTP APIs.

    429 is an overload signal, 408 and 5xx are transient, remaining 4xx are
    client errors. Transport errors and timeouts are transient.
    """

    def classify(self, error: BaseException) -> ErrorKind:
        if isinstance(error, httpx.HTTPStatusError):
            return self._classify_status(error.response.status_code)
        if isinstance(error, CLIENT_TRANSPORT_ERRORS):
            return ErrorKind.CLIENT
        if isinstance(error, (httpx.TimeoutException, httpx.TransportError)):
            return ErrorKind.TRANSIENT
        return super().classify(error)

    @staticmethod
    def _classify_status(status: int) -> ErrorKind:
        if status in OVERLOAD_STATUSES:
            return ErrorKind.OVERLOAD
        if status in TRANSIENT_STATUSES or status >= 500:
            return ErrorKind.TRANSIENT
        return ErrorKind.CLIENT

    def retry_after(self, error: BaseException) -> float | None:
        if isinstance(error, httpx.HTTPStatusError):
            return parse_retry_after(error.response.headers.get("retry-after"))
        return super().retry_after(error)


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> float | None:
    """Parse a ``Retry-After`` header given in seconds or as an HTTP-date."""
    if value is None:
        return None
    normalized = value.strip()
    if not normalized:
        return None
    try:
        return max(float(normalized), 0.0)
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(normalized)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=UTC)
    reference = datetime.now(UTC) if now is None else now
    return max((retry_at - reference).total_seconds(), 0.0)
