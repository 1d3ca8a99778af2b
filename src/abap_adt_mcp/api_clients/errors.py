"""Error classification for the ADT API client.

Every failure that leaves the transport core is an ``AdtError`` tagged with
an ``ErrorKind`` and a ``retryable`` flag. The retry policy of the
dispatcher only looks at the tag, never at the exception type.
"""

import json
import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

import httpx

logger = logging.getLogger(__name__)

BODY_EXCERPT_LENGTH = 1000


class ErrorKind(str, Enum):
    """Machine-checkable error categories."""

    CONNECTION = "connection"
    AUTHENTICATION = "authentication"
    CSRF = "csrf"
    OBJECT_NOT_FOUND = "object-not-found"
    OBJECT_EXISTS = "object-exists"
    OBJECT_LOCKED = "object-locked"
    ACTIVATION_FAILED = "activation-failed"
    SYNTAX_ERROR = "syntax-error"
    VALIDATION = "validation"
    INTERNAL = "internal"
    RATE_LIMITED = "rate-limited"
    SERVER_ERROR = "server-error"
    REQUEST_FAILED = "request-failed"


class AdtError(Exception):
    """Failure raised by every ADT client operation.

    Args:
        kind: Error category
        message: Human-readable message
        details: Structured context (status code, object URI, ...)
        status_code: HTTP status of the failed response, if any
        retryable: Whether the dispatcher may retry the request
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})
        self.status_code = status_code
        self.retryable = retryable
        self.timestamp = datetime.now(timezone.utc).isoformat()
        if status_code is not None:
            self.details.setdefault("status_code", status_code)

    def __str__(self):
        return f"[{self.kind.value}] {self.message}"

    def __repr__(self):
        return (
            f"AdtError(kind={self.kind.value!r}, message={self.message!r}, "
            f"status_code={self.status_code!r}, retryable={self.retryable!r})"
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary."""
        return {
            "error": self.kind.value,
            "message": self.message,
            "details": self.details,
            "isRetryable": self.retryable,
            "timestamp": self.timestamp,
        }

    def to_tool_error(self) -> Dict[str, Any]:
        """Render the error as a failed tool-call result."""
        payload = {
            "error": self.kind.value,
            "message": self.message,
            "details": self.details,
            "isRetryable": self.retryable,
        }
        return {
            "isError": True,
            "content": [
                {"type": "text", "text": json.dumps(payload, indent=2, default=str)}
            ],
        }

    @classmethod
    def not_found(cls, object_type: str, object_name: str) -> "AdtError":
        return cls(
            ErrorKind.OBJECT_NOT_FOUND,
            f"{object_type} '{object_name}' not found",
            {"object_type": object_type, "object_name": object_name},
            status_code=404,
        )

    @classmethod
    def already_exists(cls, object_type: str, object_name: str) -> "AdtError":
        return cls(
            ErrorKind.OBJECT_EXISTS,
            f"{object_type} '{object_name}' already exists",
            {"object_type": object_type, "object_name": object_name},
            status_code=409,
        )

    @classmethod
    def locked(
        cls, object_uri: str, reason: str = "", **details: Any
    ) -> "AdtError":
        message = f"Object '{object_uri}' could not be locked"
        if reason:
            message = f"{message}: {reason}"
        return cls(
            ErrorKind.OBJECT_LOCKED, message, {"object_uri": object_uri, **details}
        )

    @classmethod
    def activation_failed(cls, object_name: str, errors: List[str]) -> "AdtError":
        return cls(
            ErrorKind.ACTIVATION_FAILED,
            f"Activation failed for '{object_name}'",
            {"object_name": object_name, "errors": errors},
        )

    @classmethod
    def syntax_error(
        cls, object_name: str, errors: List[Dict[str, Any]]
    ) -> "AdtError":
        return cls(
            ErrorKind.SYNTAX_ERROR,
            f"Syntax errors in '{object_name}'",
            {"object_name": object_name, "errors": errors},
        )

    @classmethod
    def validation(cls, message: str, field: Optional[str] = None, value: Any = None):
        return cls(ErrorKind.VALIDATION, message, {"field": field, "value": value})

    @classmethod
    def missing_field(cls, field: str) -> "AdtError":
        return cls.validation(f"Missing required field: {field}", field)


# Message patterns the ADT endpoints use for error bodies, most specific first.
_MESSAGE_PATTERNS = [
    re.compile(r"<message[^>]*>([^<]+)</message>", re.IGNORECASE),
    re.compile(r"<exception[^>]*text=\"([^\"]+)\"", re.IGNORECASE),
    re.compile(r"<error[^>]*>([^<]+)</error>", re.IGNORECASE),
]

_DNS_ERROR_PATTERNS = [
    r"name.*resolution.*failed",
    r"name.*or.*service.*not.*known",
    r"nodename.*nor.*servname.*provided",
    r"temporary.*failure.*in.*name.*resolution",
    r"getaddrinfo.*failed",
]
_REFUSED_ERROR_PATTERNS = [
    r"connection.*refused",
    r"actively.*refused",
]
_SSL_ERROR_PATTERNS = [
    r"ssl.*certificate.*verification.*failed",
    r"certificate.*verify.*failed",
    r"ssl.*handshake.*failed",
    r"bad.*certificate",
]


def extract_error_message(body: Union[str, bytes, None]) -> Optional[str]:
    """Pull a human-readable message out of an ADT error body.

    The service has no single error envelope, so ``<message>``,
    ``<exception ... text="...">`` and ``<error>`` are tried in turn.
    """
    if not body:
        return None
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    for pattern in _MESSAGE_PATTERNS:
        match = pattern.search(body)
        if match:
            return match.group(1).strip()
    return None


def classify_response(
    status: int, status_text: str, body: Union[str, bytes, None] = None
) -> AdtError:
    """Map a failed HTTP response onto an ``AdtError``.

    Args:
        status: HTTP status code (>= 400)
        status_text: HTTP reason phrase
        body: Response body, used for the message and kept truncated in details

    Returns:
        Classified error (not raised)
    """
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    message = extract_error_message(body) or status_text or f"HTTP {status}"
    details: Dict[str, Any] = {
        "status_code": status,
        "status_text": status_text,
        "body": body[:BODY_EXCERPT_LENGTH] if body else body,
    }

    if status == 401:
        return AdtError(
            ErrorKind.AUTHENTICATION,
            f"Authentication required: {message}",
            details,
            status_code=status,
        )
    if status == 403:
        return AdtError(
            ErrorKind.AUTHENTICATION,
            f"Access forbidden: {message}",
            details,
            status_code=status,
        )
    if status == 404:
        return AdtError(
            ErrorKind.OBJECT_NOT_FOUND,
            f"Resource not found: {message}",
            details,
            status_code=status,
        )
    if status == 409:
        return AdtError(
            ErrorKind.OBJECT_EXISTS,
            f"Resource conflict: {message}",
            details,
            status_code=status,
        )
    if status == 423:
        return AdtError(
            ErrorKind.OBJECT_LOCKED,
            f"Resource is locked: {message}",
            details,
            status_code=status,
        )
    if status == 429:
        return AdtError(
            ErrorKind.RATE_LIMITED,
            f"Rate limit exceeded: {message}",
            details,
            status_code=status,
            retryable=True,
        )
    if status >= 500:
        return AdtError(
            ErrorKind.SERVER_ERROR,
            f"Server error: {message}",
            details,
            status_code=status,
            retryable=True,
        )
    return AdtError(
        ErrorKind.REQUEST_FAILED,
        f"Request failed: {message}",
        details,
        status_code=status,
    )


def _matches(patterns: List[str], text: str) -> bool:
    return any(re.search(pattern, text) for pattern in patterns)


def classify_exception(error: BaseException, host: Optional[str] = None) -> AdtError:
    """Map a transport-level exception onto an ``AdtError``.

    Connection-refused, host-not-found and certificate failures are
    permanent; timeouts and other transport failures may be retried.
    """
    if isinstance(error, AdtError):
        return error

    error_message = str(error).lower()
    details: Dict[str, Any] = {"exception": type(error).__name__}
    if host:
        details["host"] = host

    if isinstance(error, httpx.TimeoutException):
        return AdtError(
            ErrorKind.CONNECTION,
            "Connection timeout",
            details,
            retryable=True,
        )

    if isinstance(error, httpx.ConnectError):
        if _matches(_DNS_ERROR_PATTERNS, error_message):
            return AdtError(
                ErrorKind.CONNECTION, f"Host not found: {host or error}", details
            )
        if _matches(_REFUSED_ERROR_PATTERNS, error_message):
            return AdtError(
                ErrorKind.CONNECTION, f"Connection refused to {host or error}", details
            )
        if _matches(_SSL_ERROR_PATTERNS, error_message):
            return AdtError(
                ErrorKind.CONNECTION,
                "SSL certificate verification failed. "
                "Set SAP_ALLOW_INSECURE=true for self-signed certificates.",
                details,
            )
        return AdtError(
            ErrorKind.CONNECTION, f"Connection failed: {error}", details, retryable=True
        )

    if isinstance(error, httpx.TransportError):
        return AdtError(
            ErrorKind.CONNECTION, f"Network error: {error}", details, retryable=True
        )

    return wrap_error(error)


def wrap_error(error: BaseException) -> AdtError:
    """Wrap any exception as a non-retryable internal ``AdtError``."""
    if isinstance(error, AdtError):
        return error
    return AdtError(
        ErrorKind.INTERNAL,
        str(error) or type(error).__name__,
        {"original_error": type(error).__name__},
    )
