"""
MODULE OVERVIEW:
The error vocabulary of the scheduler.

WHAT IS HAPPENING HERE:
Every failure that lands on a queue entry or in a dispatch summary is
reduced to an `ErrorKind`. Transports raise `TransportTransient` or
`TransportPermanent` so the dispatch engine can decide between a retry and
a final Failed without knowing the provider. Anything else (raw httpx
network errors, timeouts, bugs in a composer) goes through
`classify_error`, and only a permanent transport error stops retries.

`describe` renders the "<Kind>: <message>" string stored in `last_error`.
"""
from enum import Enum

import httpx


class ErrorKind(str, Enum):
    PERMISSION_DENIED = "PermissionDenied"
    RATE_LIMITED = "RateLimited"
    TRANSPORT_TRANSIENT = "TransportTransient"
    TRANSPORT_PERMANENT = "TransportPermanent"
    UNKNOWN = "Unknown"


class NotifySchedulerError(Exception):
    """Base class for errors raised by the scheduler and its collaborators."""


class QueueStoreError(NotifySchedulerError):
    """A Queue Store read or write could not be completed."""


class TransportError(NotifySchedulerError):
    kind = ErrorKind.UNKNOWN


class TransportTransient(TransportError):
    """Network failure, timeout or provider-side throttling. Retried with backoff."""

    kind = ErrorKind.TRANSPORT_TRANSIENT


class TransportPermanent(TransportError):
    """Invalid recipient, hard bounce or rejected request. Never retried."""

    kind = ErrorKind.TRANSPORT_PERMANENT


def classify_error(exc: BaseException) -> ErrorKind:
    if isinstance(exc, TransportError):
        return exc.kind
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, TimeoutError, ConnectionError)):
        return ErrorKind.TRANSPORT_TRANSIENT
    return ErrorKind.UNKNOWN


def is_retryable(kind: ErrorKind) -> bool:
    # Unknown failures are treated like transient ones.
    return kind in (ErrorKind.TRANSPORT_TRANSIENT, ErrorKind.UNKNOWN)


def describe(exc: BaseException) -> str:
    return f"{classify_error(exc).value}: {exc}" if str(exc) else classify_error(exc).value
