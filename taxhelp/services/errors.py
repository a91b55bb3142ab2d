"""
errors.py — Failure taxonomy for calls to the TaxHelp backend.

The API client is the ONLY place that inspects raw exceptions or HTTP statuses.
It turns every failure into one ApiError carrying a closed ErrorKind; callers
branch on ApiError.failure (transient / conflict / terminal) and never look at
causes themselves.

Classification rules:
  - asyncio deadline or httpx timeout                       → timeout
  - httpx transport errors, ConnectionError, DNS failures,
    OSErrors with connection errnos, network-ish messages   → network_error
  - the same two checks, applied once to __cause__/__context__
  - anything else is not a transport failure → classify_exception() returns None
    and the caller lets the original exception propagate
"""
from __future__ import annotations

import asyncio
import errno
import socket
from enum import Enum
from typing import Optional

import httpx


class ErrorKind(str, Enum):
    network_error = "network_error"
    timeout = "timeout"
    invalid_response = "invalid_response"
    health_check_failed = "health_check_failed"
    http_error = "http_error"             # non-2xx answer from the backend


class FailureClass(str, Enum):
    transient = "transient"               # likely to succeed if retried later
    conflict = "conflict"                 # HTTP 409, may redirect the flow
    terminal = "terminal"                 # retrying the same call will not help


class Severity(str, Enum):
    warning = "warning"
    error = "error"


_TRANSIENT_KINDS = frozenset({
    ErrorKind.network_error,
    ErrorKind.timeout,
    ErrorKind.health_check_failed,
})

NETWORK_ERRNOS = frozenset({
    errno.ECONNREFUSED,
    errno.ECONNRESET,
    errno.ECONNABORTED,
    errno.ETIMEDOUT,
    errno.EHOSTUNREACH,
    errno.ENETUNREACH,
    errno.EHOSTDOWN,
    errno.EPIPE,
})

_NETWORK_MESSAGE_HINTS = (
    "network",
    "fetch failed",
    "timed out",
    "timeout",
    "connection refused",
    "connection reset",
    "name or service not known",
    "temporary failure in name resolution",
)


def is_retryable_status(status: int) -> bool:
    """HTTP 429 and every 5xx are worth another attempt."""
    return status == 429 or status >= 500


class ApiError(Exception):
    """A classified backend failure."""

    def __init__(
        self,
        message: str,
        status: int,
        kind: ErrorKind = ErrorKind.http_error,
        code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.kind = kind
        self._code = code

    @property
    def code(self) -> str:
        """Backend-supplied error code, or the kind when the backend gave none."""
        return self._code or self.kind.value

    @property
    def is_transient(self) -> bool:
        if self.kind in _TRANSIENT_KINDS:
            return True
        return self.kind == ErrorKind.http_error and is_retryable_status(self.status)

    @property
    def failure(self) -> FailureClass:
        if self.is_transient:
            return FailureClass.transient
        if self.kind == ErrorKind.http_error and self.status == 409:
            return FailureClass.conflict
        return FailureClass.terminal

    @property
    def severity(self) -> Severity:
        return Severity.warning if self.is_transient else Severity.error

    def __repr__(self) -> str:
        return (
            f"ApiError(status={self.status}, kind={self.kind.value}, "
            f"code={self.code!r}, message={self.message!r})"
        )


# ---------------------------------------------------------------------------
# Raw exception classification
# ---------------------------------------------------------------------------

def _is_timeout(exc: BaseException) -> bool:
    return isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException))


def _is_network(exc: BaseException) -> bool:
    if isinstance(exc, (httpx.TransportError, ConnectionError, socket.gaierror)):
        return True
    if isinstance(exc, OSError) and exc.errno in NETWORK_ERRNOS:
        return True
    message = str(exc).lower()
    return any(hint in message for hint in _NETWORK_MESSAGE_HINTS)


def classify_exception(
    exc: BaseException,
    *,
    timeout_kind: ErrorKind = ErrorKind.timeout,
    network_kind: ErrorKind = ErrorKind.network_error,
) -> Optional[ApiError]:
    """
    Map a raised exception to an ApiError, or None if it is not a transport failure.

    The kind overrides let the liveness probe report everything as
    health_check_failed while reusing the same rules.
    """
    if isinstance(exc, ApiError):
        return exc

    cause = exc.__cause__ or exc.__context__
    if cause is exc:
        cause = None

    if _is_timeout(exc) or (cause is not None and _is_timeout(cause)):
        return ApiError("Request timed out", 504, kind=timeout_kind)
    if _is_network(exc) or (cause is not None and _is_network(cause)):
        return ApiError("Network request failed", 503, kind=network_kind)
    return None
