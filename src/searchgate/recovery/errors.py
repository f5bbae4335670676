"""
Exception types carrying the classified error taxonomy.
"""

from __future__ import annotations

import math
from typing import Any, Dict, Optional, Tuple

from searchgate.protocols import ErrorKind, ErrorSeverity

# kind -> (severity, retryable)
KIND_DEFAULTS: Dict[ErrorKind, Tuple[ErrorSeverity, bool]] = {
    ErrorKind.TOO_MANY_REQUESTS: (ErrorSeverity.MEDIUM, True),
    ErrorKind.SERVER_ERROR: (ErrorSeverity.HIGH, True),
    ErrorKind.BAD_GATEWAY: (ErrorSeverity.HIGH, True),
    ErrorKind.SERVICE_UNAVAILABLE: (ErrorSeverity.HIGH, True),
    ErrorKind.GATEWAY_TIMEOUT: (ErrorSeverity.HIGH, True),
    ErrorKind.API_ERROR: (ErrorSeverity.MEDIUM, False),
    ErrorKind.TIMEOUT: (ErrorSeverity.HIGH, True),
    ErrorKind.CONNECTION_REFUSED: (ErrorSeverity.HIGH, True),
    ErrorKind.DNS_ERROR: (ErrorSeverity.HIGH, True),
    ErrorKind.TOKEN_ERROR: (ErrorSeverity.LOW, True),
    ErrorKind.RESULTS_PARSING_ERROR: (ErrorSeverity.LOW, False),
    ErrorKind.INVALID_INPUT: (ErrorSeverity.LOW, False),
    ErrorKind.CIRCUIT_OPEN: (ErrorSeverity.MEDIUM, False),
    ErrorKind.UNKNOWN_ERROR: (ErrorSeverity.MEDIUM, False),
}

_UNAVAILABLE_MESSAGE = "The search service is temporarily unavailable. Please try again later."


def default_user_message(kind: ErrorKind, message: str, retry_after_ms: Optional[int] = None) -> str:
    """Render the human-readable message template for a kind."""
    if kind is ErrorKind.TOO_MANY_REQUESTS:
        if retry_after_ms:
            seconds = math.ceil(retry_after_ms / 1000)
            return f"Too many requests. Please wait {seconds} seconds before trying again."
        return "Too many requests. Please wait before making more requests."
    if kind in (
        ErrorKind.SERVER_ERROR,
        ErrorKind.BAD_GATEWAY,
        ErrorKind.SERVICE_UNAVAILABLE,
        ErrorKind.GATEWAY_TIMEOUT,
    ):
        return _UNAVAILABLE_MESSAGE
    if kind is ErrorKind.API_ERROR:
        return f"The search service rejected the request: {message}"
    if kind is ErrorKind.TIMEOUT:
        return "Request timed out. The search service may be slow. Please try again."
    if kind is ErrorKind.CONNECTION_REFUSED:
        return "Connection to the search service was refused. Please try again later."
    if kind is ErrorKind.DNS_ERROR:
        return "The search service host could not be resolved. Please check your network connection."
    if kind is ErrorKind.TOKEN_ERROR:
        return "Search session expired. The search will be retried automatically."
    if kind is ErrorKind.RESULTS_PARSING_ERROR:
        return "Unable to parse search results. The provider may have changed its format."
    if kind is ErrorKind.INVALID_INPUT:
        return f"Invalid input: {message}"
    if kind is ErrorKind.CIRCUIT_OPEN:
        if retry_after_ms:
            seconds = math.ceil(retry_after_ms / 1000)
            return f"Searches are paused after repeated failures. Retrying in {seconds}s."
        return "Searches are paused after repeated failures."
    return message


class ClassifiedError(Exception):
    """A failure mapped onto the closed error taxonomy."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        severity: Optional[ErrorSeverity] = None,
        retryable: Optional[bool] = None,
        user_message: Optional[str] = None,
        technical_detail: Any = None,
        retry_after_ms: Optional[int] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        default_severity, default_retryable = KIND_DEFAULTS[kind]
        self.kind = kind
        self.message = message
        self.severity = severity or default_severity
        self.retryable = default_retryable if retryable is None else retryable
        self.retry_after_ms = retry_after_ms
        self.status_code = status_code
        self.technical_detail = technical_detail
        self.user_message = user_message or default_user_message(kind, message, retry_after_ms)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value}, retryable={self.retryable}, message={self.message!r})"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "kind": self.kind.value,
            "severity": self.severity.value,
            "retryable": self.retryable,
            "user_message": self.user_message,
            "message": self.message,
        }
        if self.status_code is not None:
            data["status_code"] = self.status_code
        if self.retry_after_ms is not None:
            data["retry_after_ms"] = self.retry_after_ms
        if self.technical_detail is not None:
            data["technical_detail"] = self.technical_detail
        return data


class InvalidInputError(ClassifiedError):
    """Field-level input violation."""

    def __init__(self, message: str, *, field: Optional[str] = None, value: Any = None, debug: bool = False):
        user_message = f'Invalid value for field "{field}": {message}' if field else None
        super().__init__(
            ErrorKind.INVALID_INPUT,
            message,
            user_message=user_message,
            technical_detail={"field": field, "value": value} if debug else None,
        )
        self.field = field
        self.value = value


class CircuitOpenError(ClassifiedError):
    """The shared gate refused a call while the circuit is open."""

    def __init__(self, operation: str, retry_after_ms: Optional[int] = None):
        super().__init__(
            ErrorKind.CIRCUIT_OPEN,
            f"Circuit breaker is open; {operation} call blocked",
            retry_after_ms=retry_after_ms,
        )
        self.operation = operation


class ProviderResponseError(ClassifiedError):
    """The provider returned something that cannot be read as a result page."""

    def __init__(self, message: str):
        super().__init__(ErrorKind.RESULTS_PARSING_ERROR, f"Unable to parse provider response: {message}")


class RateLimitExceededError(ClassifiedError):
    """The operation used up its request window and is locked out for a while."""

    def __init__(self, operation: str, retry_after_ms: Optional[int] = None):
        super().__init__(
            ErrorKind.TOO_MANY_REQUESTS,
            f"Request quota exhausted; {operation} call blocked",
            retry_after_ms=retry_after_ms,
        )
        self.operation = operation
