"""API Client Abstractions for SAP ADT.

Provides the ADT transport core (session, CSRF, retries, locks) and the
object operations built on it. No raw HTTP calls outside this package.
"""

from .errors import (
    AdtError,
    ErrorKind,
    classify_exception,
    classify_response,
    wrap_error,
)
from .session import CookieJar, SessionMode, SessionState
from .csrf import CsrfTokenCache
from .uris import AcceptHeaderTable, lock_scope_uri, normalize_uri
from .locks import LockHandle, LockRegistry
from .models import (
    ActivationResult,
    AdtResponse,
    Message,
    SearchResult,
    SyntaxCheckResult,
    TransportRequest,
)
from .dispatcher import RequestDispatcher
from .client import AdtClient

__all__ = [
    # Errors
    "AdtError",
    "ErrorKind",
    "classify_exception",
    "classify_response",
    "wrap_error",
    # Session
    "CookieJar",
    "SessionMode",
    "SessionState",
    "CsrfTokenCache",
    # URIs and locks
    "AcceptHeaderTable",
    "lock_scope_uri",
    "normalize_uri",
    "LockHandle",
    "LockRegistry",
    # Results
    "ActivationResult",
    "AdtResponse",
    "Message",
    "SearchResult",
    "SyntaxCheckResult",
    "TransportRequest",
    # Clients
    "RequestDispatcher",
    "AdtClient",
]
