"""
Error classification for raw provider and transport failures.

Maps heterogeneous, loosely typed failures (exceptions, HTTP responses,
mappings, bare strings) onto the closed ``ErrorKind`` taxonomy with a
severity and a retryability flag. The mapping is pure and deterministic.
"""

from __future__ import annotations

import asyncio
import re
import socket
from typing import Any, Dict, List, Mapping, Optional, Pattern, Tuple

from pydantic import ValidationError

from searchgate.protocols import ErrorKind
from searchgate.recovery.errors import ClassifiedError, InvalidInputError

_STATUS_IN_MESSAGE = re.compile(r"\b(?:http|status)(?:\s+code)?\s*[:=]?\s*([45]\d\d)\b", re.IGNORECASE)

# Evaluated in order; the first match wins.
_MESSAGE_RULES: List[Tuple[Pattern[str], ErrorKind]] = [
    (re.compile(r"rate[\s_-]?limit|too many requests|\b429\b", re.IGNORECASE), ErrorKind.TOO_MANY_REQUESTS),
    (
        re.compile(r"\b(?:etimedout|timed?[\s_-]?out)\b|timeout(?:error|exception)\b", re.IGNORECASE),
        ErrorKind.TIMEOUT,
    ),
    (re.compile(r"econnrefused|connection refused", re.IGNORECASE), ErrorKind.CONNECTION_REFUSED),
    (
        re.compile(r"enotfound|eai_again|\bdns\b|getaddrinfo|name or service not known", re.IGNORECASE),
        ErrorKind.DNS_ERROR,
    ),
    (
        re.compile(
            r"\bvqd\b|continuation[\s_-]*token"
            r"|(?:invalid|expired|rejected|stale)\s+(?:session\s+)?token"
            r"|token\s+(?:is\s+|was\s+)?(?:invalid|expired|rejected)",
            re.IGNORECASE,
        ),
        ErrorKind.TOKEN_ERROR,
    ),
    (re.compile(r"\bpars(?:e|ed|er|ing)\b", re.IGNORECASE), ErrorKind.RESULTS_PARSING_ERROR),
]


def _get(raw: Any, name: str) -> Any:
    """Read ``name`` from a mapping key or an attribute."""
    if isinstance(raw, Mapping):
        return raw.get(name)
    return getattr(raw, name, None)


def _as_status(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        status = int(value)
    except (TypeError, ValueError):
        return None
    return status if 100 <= status <= 599 else None


def extract_status(raw: Any) -> Optional[int]:
    """Find an HTTP status code on the raw failure, if any."""
    for name in ("status_code", "status", "http_code", "statusCode", "httpCode"):
        status = _as_status(_get(raw, name))
        if status is not None:
            return status

    response = _get(raw, "response")
    if response is not None:
        for name in ("status_code", "status"):
            status = _as_status(_get(response, name))
            if status is not None:
                return status
    return None


def extract_message(raw: Any) -> str:
    if raw is None:
        return ""
    if isinstance(raw, str):
        return raw
    if isinstance(raw, Mapping):
        for key in ("message", "error", "detail"):
            value = raw.get(key)
            if value:
                return str(value)
        return ""
    if isinstance(raw, BaseException):
        return str(raw) or type(raw).__name__
    message = getattr(raw, "message", None)
    return str(message) if message else str(raw)


def _headers_of(raw: Any) -> Optional[Mapping[str, Any]]:
    headers = _get(raw, "headers")
    if headers is None:
        response = _get(raw, "response")
        if response is not None:
            headers = _get(response, "headers")
    return headers if isinstance(headers, Mapping) or hasattr(headers, "get") else None


def extract_retry_after_ms(raw: Any) -> Optional[int]:
    """Read an explicit wait hint, in milliseconds."""
    explicit = _get(raw, "retry_after_ms")
    if explicit is not None:
        try:
            return max(0, int(explicit))
        except (TypeError, ValueError):
            pass

    seconds = _get(raw, "retry_after")
    headers = _headers_of(raw)
    if seconds is None and headers is not None:
        seconds = headers.get("Retry-After") or headers.get("retry-after")
    if seconds is None:
        return None
    try:
        return max(0, int(float(seconds) * 1000))
    except (TypeError, ValueError):
        # HTTP-date form is not interpreted
        return None


def kind_for_status(status: int) -> ErrorKind:
    if status == 429:
        return ErrorKind.TOO_MANY_REQUESTS
    if status == 502:
        return ErrorKind.BAD_GATEWAY
    if status == 503:
        return ErrorKind.SERVICE_UNAVAILABLE
    if status == 504:
        return ErrorKind.GATEWAY_TIMEOUT
    if status >= 500:
        return ErrorKind.SERVER_ERROR
    return ErrorKind.API_ERROR


def _kind_for_exception_type(raw: Any) -> Optional[ErrorKind]:
    if isinstance(raw, (TimeoutError, asyncio.TimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(raw, ConnectionRefusedError):
        return ErrorKind.CONNECTION_REFUSED
    if isinstance(raw, socket.gaierror):
        return ErrorKind.DNS_ERROR
    return None


def _kind_for_message(message: str) -> ErrorKind:
    for pattern, kind in _MESSAGE_RULES:
        if pattern.search(message):
            return kind
    return ErrorKind.UNKNOWN_ERROR


def _from_validation_error(raw: ValidationError, debug: bool) -> InvalidInputError:
    errors = raw.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ())) or None
    return InvalidInputError(
        first.get("msg", "validation failed"),
        field=field,
        value=first.get("input"),
        debug=debug,
    )


def classify_error(raw: Any, *, debug: bool = False, operation: Optional[str] = None) -> ClassifiedError:
    """
    Classify a raw failure.

    Args:
        raw: Exception, response-like object, mapping or string
        debug: Attach a technical detail payload to the result
        operation: Name of the operation that failed, recorded in the detail

    Returns:
        ClassifiedError describing the failure. Already classified errors are
        returned unchanged.
    """
    if isinstance(raw, ClassifiedError):
        return raw
    if isinstance(raw, ValidationError):
        return _from_validation_error(raw, debug)

    message = extract_message(raw)
    status = extract_status(raw)
    if status is None:
        match = _STATUS_IN_MESSAGE.search(message)
        if match:
            status = int(match.group(1))
    retry_after_ms = extract_retry_after_ms(raw)

    if status is not None and status >= 400:
        kind = kind_for_status(status)
    else:
        kind = _kind_for_exception_type(raw) or _kind_for_message(message)

    detail: Optional[Dict[str, Any]] = None
    if debug:
        detail = {
            "operation": operation,
            "error_type": type(raw).__name__,
            "raw_message": message,
            "status_code": status,
        }

    if not message:
        message = f"HTTP {status}" if status is not None else "Unknown error"

    return ClassifiedError(
        kind,
        message,
        technical_detail=detail,
        retry_after_ms=retry_after_ms,
        status_code=status,
    )
