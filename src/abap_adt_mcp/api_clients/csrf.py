"""CSRF token cache for ADT write operations.

Handles token fetching, expiry detection and invalidation. The ADT server
hands out a token in the ``X-CSRF-Token`` response header of a GET carrying
``X-CSRF-Token: Fetch``; the token is only good together with the session
cookies issued alongside it.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Mapping, Optional

from .errors import AdtError, ErrorKind
from .session import SessionState

logger = logging.getLogger(__name__)

CSRF_HEADER = "X-CSRF-Token"
UNSAFE_TOKEN = "unsafe"

# Server-side validity is about 30 minutes; refresh a few minutes early.
DEFAULT_TOKEN_VALIDITY = timedelta(minutes=25)

HeaderFetcher = Callable[[], Awaitable[Mapping[str, str]]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def find_header(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup."""
    value = headers.get(name)
    if value is not None:
        return value
    wanted = name.lower()
    for key, candidate in headers.items():
        if key.lower() == wanted:
            return candidate
    return None


class CsrfTokenCache:
    """Caches the CSRF token inside a ``SessionState``.

    Args:
        session: Session whose token, expiry and cookies are managed
        fetch: Coroutine issuing the fetch request, returning response headers
        validity: How long a fetched token is trusted
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        session: SessionState,
        fetch: HeaderFetcher,
        validity: timedelta = DEFAULT_TOKEN_VALIDITY,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.session = session
        self._fetch = fetch
        self.validity = validity
        self._clock = clock

    @property
    def token(self) -> Optional[str]:
        return self.session.csrf_token

    @property
    def is_valid(self) -> bool:
        """True while the token is non-empty, not the sentinel and not expired."""
        token = self.session.csrf_token
        expires_at = self.session.csrf_expires_at
        if not token or token == UNSAFE_TOKEN:
            return False
        if expires_at is None:
            return False
        return self._clock() < expires_at

    async def get_or_fetch(self) -> str:
        """Return a valid token, fetching a new one when needed.

        Raises:
            AdtError: ``csrf`` kind if no usable token could be obtained
        """
        if self.is_valid:
            logger.debug(
                f"Using cached CSRF token (expires: {self.session.csrf_expires_at})"
            )
            return self.session.csrf_token  # type: ignore[return-value]

        logger.debug("Fetching new CSRF token from /discovery endpoint")
        try:
            headers = await self._fetch()
        except AdtError as e:
            if e.kind is ErrorKind.CSRF:
                raise
            raise AdtError(
                ErrorKind.CSRF,
                f"Failed to fetch CSRF token: {e.message}",
                {"original_kind": e.kind.value, **e.details},
                status_code=e.status_code,
                retryable=e.retryable,
            ) from e

        token = find_header(headers, CSRF_HEADER)
        if not token or token == UNSAFE_TOKEN:
            logger.error(f"Invalid CSRF token received: {token!r}")
            raise AdtError(
                ErrorKind.CSRF,
                "Failed to fetch valid CSRF token",
                {
                    "received_token": token,
                    "response_headers": sorted(headers.keys()),
                },
            )

        self.session.csrf_token = token
        self.session.csrf_expires_at = self._clock() + self.validity
        logger.debug(f"CSRF token fetched successfully: {token[:20]}...")
        return token

    def invalidate(self) -> None:
        """Drop the token and the session cookies it belongs to."""
        self.session.csrf_token = None
        self.session.csrf_expires_at = None
        self.session.cookies.clear()
        logger.debug("CSRF token and session cookies cleared")
