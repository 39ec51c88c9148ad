"""Error taxonomy shared by the run controller, the agent loop and the SDK surface.

Failures that reach the run boundary are reduced to an :class:`ErrorCode` so
callers can decide whether to retry without inspecting exception types.
Classification prefers structured data (status codes, typed exceptions) and
falls back to message heuristics because some upstream failures arrive as plain
text after an inner retry layer has already given up.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from typing import Any, ClassVar, Collection

import httpx
from openai import APIConnectionError, APIStatusError, APITimeoutError

__all__ = [
    "ErrorCode",
    "RETRYABLE_ERROR_CODES",
    "TaskforgeError",
    "AuthenticationError",
    "PaymentRequiredError",
    "NetworkError",
    "ModelProviderError",
    "RunCancelledError",
    "error_code_from_status",
    "classify_message",
    "classify_exception",
    "is_retryable",
    "sanitize_error_message",
]


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------


class ErrorCode:
    """Machine-readable codes attached to error outputs."""

    # Authentication
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    FORBIDDEN = "FORBIDDEN"
    INVALID_CREDENTIAL = "INVALID_CREDENTIAL"

    # Billing
    PAYMENT_REQUIRED = "PAYMENT_REQUIRED"

    # Network
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    CONNECTION_REFUSED = "CONNECTION_REFUSED"
    DNS_FAILURE = "DNS_FAILURE"

    # Server
    SERVER_ERROR = "SERVER_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"

    # Client
    BAD_REQUEST = "BAD_REQUEST"
    NOT_FOUND = "NOT_FOUND"

    UNKNOWN_ERROR = "UNKNOWN_ERROR"


RETRYABLE_ERROR_CODES: frozenset[str] = frozenset(
    {
        ErrorCode.NETWORK_ERROR,
        ErrorCode.TIMEOUT,
        ErrorCode.CONNECTION_REFUSED,
        ErrorCode.DNS_FAILURE,
        ErrorCode.SERVER_ERROR,
        ErrorCode.SERVICE_UNAVAILABLE,
    }
)


# -----------------------------------------------------------------------------
# Exceptions
# -----------------------------------------------------------------------------


@dataclass
class TaskforgeError(Exception):
    """Base exception carrying a classified error code.

    Attributes:
        error_code: One of the :class:`ErrorCode` constants.
        message: Human-readable description, safe to show to users.
        details: Additional structured information.
    """

    error_code: str = ErrorCode.UNKNOWN_ERROR
    message: str = "Unknown error"
    details: dict[str, Any] = field(default_factory=dict)

    retryable: ClassVar[bool] = False

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"error_code": self.error_code, "message": self.message}
        if self.details:
            result["details"] = dict(self.details)
        return result

    def __str__(self) -> str:
        return self.message


@dataclass
class AuthenticationError(TaskforgeError):
    """Raised when the backend rejects the configured credentials."""

    error_code: str = field(default=ErrorCode.INVALID_CREDENTIAL)
    message: str = field(default="Invalid API key. Please check your credentials.")
    status: int | None = None

    @classmethod
    def from_status(cls, status: int | None, message: str | None = None) -> "AuthenticationError":
        if status == 401:
            code = ErrorCode.AUTHENTICATION_FAILED
        elif status == 403:
            code = ErrorCode.FORBIDDEN
        else:
            code = ErrorCode.INVALID_CREDENTIAL
        return cls(error_code=code, message=message or _SANITIZED_MESSAGES[code], status=status)


@dataclass
class PaymentRequiredError(TaskforgeError):
    """Raised when the account has insufficient credits; never retried."""

    error_code: str = field(default=ErrorCode.PAYMENT_REQUIRED)
    message: str = field(default="Payment required. Please add credits to continue.")
    status: int = 402


@dataclass
class NetworkError(TaskforgeError):
    """Transport or server failure that may succeed on a later attempt."""

    error_code: str = field(default=ErrorCode.NETWORK_ERROR)
    message: str = field(default="Network error. Please check your internet connection.")
    status: int | None = None

    @property
    def is_retryable(self) -> bool:
        return self.error_code in RETRYABLE_ERROR_CODES


@dataclass
class ModelProviderError(TaskforgeError):
    """Model call failure surfaced after the client exhausted its own retries."""

    error_code: str = field(default=ErrorCode.UNKNOWN_ERROR)
    message: str = field(default="Model provider error")
    attempts: int = 1


@dataclass
class RunCancelledError(TaskforgeError):
    """Raised inside a run when the shared cancellation signal fires."""

    error_code: str = field(default=ErrorCode.UNKNOWN_ERROR)
    message: str = field(default="Run cancelled by user.")


# -----------------------------------------------------------------------------
# Classification
# -----------------------------------------------------------------------------


_SANITIZED_MESSAGES: dict[str, str] = {
    ErrorCode.AUTHENTICATION_FAILED: "Authentication failed. Please check your API key.",
    ErrorCode.FORBIDDEN: "Access forbidden. You do not have permission to access this resource.",
    ErrorCode.INVALID_CREDENTIAL: "Invalid API key. Please check your credentials.",
    ErrorCode.TIMEOUT: "Request timed out. Please check your internet connection.",
    ErrorCode.CONNECTION_REFUSED: "Connection refused. The server may be down.",
    ErrorCode.DNS_FAILURE: "DNS resolution failed. Please check your internet connection.",
    ErrorCode.SERVER_ERROR: "Server error. Please try again later.",
    ErrorCode.SERVICE_UNAVAILABLE: "Service unavailable. Please try again later.",
    ErrorCode.NETWORK_ERROR: "Network error. Please check your internet connection.",
}

_FAILED_AFTER_PATTERN = re.compile(r"failed after\s+\d*\s*attempts?", re.IGNORECASE)
_SECRET_PATTERNS = (
    re.compile(r"\bsk-[A-Za-z0-9_\-]{8,}"),
    re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._\-]+"),
    re.compile(r"(?i)(api[_-]?key[\"'=:\s]+)[A-Za-z0-9._\-]{8,}"),
)


def error_code_from_status(status: int | None) -> str | None:
    """Map an HTTP status code to an :class:`ErrorCode`."""

    if status is None:
        return None
    if status == 400:
        return ErrorCode.BAD_REQUEST
    if status == 401:
        return ErrorCode.AUTHENTICATION_FAILED
    if status == 402:
        return ErrorCode.PAYMENT_REQUIRED
    if status == 403:
        return ErrorCode.FORBIDDEN
    if status == 404:
        return ErrorCode.NOT_FOUND
    if status == 408:
        return ErrorCode.TIMEOUT
    if status in (429, 503):
        return ErrorCode.SERVICE_UNAVAILABLE
    if 500 <= status < 600:
        return ErrorCode.SERVER_ERROR
    return None


def classify_message(message: str | None) -> str | None:
    """Return the retryable error code suggested by ``message`` or ``None``.

    Only network and server failures are recognised; anything else is left
    for the caller to treat as terminal.
    """

    if not message:
        return None
    lowered = message.lower()

    if _FAILED_AFTER_PATTERN.search(lowered):
        if "service unavailable" in lowered or "503" in lowered:
            return ErrorCode.SERVICE_UNAVAILABLE
        if "timeout" in lowered or "timed out" in lowered:
            return ErrorCode.TIMEOUT
        if "econnrefused" in lowered or "connection refused" in lowered:
            return ErrorCode.CONNECTION_REFUSED
        return ErrorCode.SERVER_ERROR

    if "503" in lowered or "service unavailable" in lowered:
        return ErrorCode.SERVICE_UNAVAILABLE
    if "timeout" in lowered or "timed out" in lowered:
        return ErrorCode.TIMEOUT
    if "econnrefused" in lowered or "connection refused" in lowered:
        return ErrorCode.CONNECTION_REFUSED
    if "dns" in lowered or "enotfound" in lowered or "name resolution" in lowered:
        return ErrorCode.DNS_FAILURE
    if any(token in lowered for token in ("server error", "500", "502", "504")):
        return ErrorCode.SERVER_ERROR
    if "network error" in lowered or "fetch failed" in lowered:
        return ErrorCode.NETWORK_ERROR
    return None


def classify_exception(exc: BaseException) -> str:
    """Classify an exception into an :class:`ErrorCode`."""

    if isinstance(exc, TaskforgeError):
        if exc.error_code != ErrorCode.UNKNOWN_ERROR:
            return exc.error_code
        return classify_message(exc.message) or ErrorCode.UNKNOWN_ERROR
    if isinstance(exc, APIStatusError):
        code = error_code_from_status(getattr(exc, "status_code", None))
        if code is not None:
            return code
    if isinstance(exc, (APITimeoutError, httpx.TimeoutException, asyncio.TimeoutError)):
        return ErrorCode.TIMEOUT
    if isinstance(exc, (APIConnectionError, httpx.TransportError)):
        return classify_message(_describe(exc)) or ErrorCode.NETWORK_ERROR
    if isinstance(exc, httpx.HTTPStatusError):
        code = error_code_from_status(exc.response.status_code)
        if code is not None:
            return code
    if isinstance(exc, ConnectionRefusedError):
        return ErrorCode.CONNECTION_REFUSED
    if isinstance(exc, ConnectionError):
        return ErrorCode.NETWORK_ERROR
    return classify_message(_describe(exc)) or ErrorCode.UNKNOWN_ERROR


def is_retryable(error_code: str | None, codes: Collection[str] = RETRYABLE_ERROR_CODES) -> bool:
    return error_code is not None and error_code in codes


def sanitize_error_message(error: BaseException | str) -> str:
    """Return a user-facing message free of stack traces and credentials."""

    if isinstance(error, PaymentRequiredError):
        return error.message
    if isinstance(error, TaskforgeError) and not isinstance(error, (NetworkError, ModelProviderError)):
        return _redact(error.message)
    if isinstance(error, BaseException):
        code = classify_exception(error)
        canned = _SANITIZED_MESSAGES.get(code)
        if canned is not None and not isinstance(error, ModelProviderError):
            return canned
        text = _describe(error)
    else:
        text = error
    first_line = text.strip().splitlines()[0] if text.strip() else "Unknown error"
    return _redact(first_line)


def _describe(exc: BaseException) -> str:
    text = str(exc)
    if not text:
        text = type(exc).__name__
    cause = exc.__cause__
    if cause is not None and str(cause) and str(cause) not in text:
        text = f"{text}: {cause}"
    return text


def _redact(text: str) -> str:
    for pattern in _SECRET_PATTERNS:
        if pattern.groups:
            text = pattern.sub(lambda match: f"{match.group(1)}[redacted]", text)
        else:
            text = pattern.sub("[redacted]", text)
    return text
