"""Session state for one ADT client.

The ADT backend ties a lock to the HTTP session that acquired it. Losing the
session cookies, the CSRF token, the session type or the connection id
between lock and unlock breaks the sequence without a clear error, so all of
them live together in one ``SessionState`` owned by a single client.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, Optional, Union

logger = logging.getLogger(__name__)

SESSION_TYPE_HEADER = "X-sap-adt-sessiontype"
CONNECTION_ID_HEADER = "sap-adt-connection-id"


class SessionMode(str, Enum):
    STATEFUL = "stateful"
    STATELESS = "stateless"


class CookieJar:
    """Merged session cookies, one entry per cookie name.

    Only the ``name=value`` part of a ``Set-Cookie`` header is kept;
    attributes such as ``Path`` or ``HttpOnly`` are dropped.
    """

    def __init__(self):
        self._cookies: Dict[str, str] = {}

    def merge(self, set_cookie_headers: Union[str, Iterable[str], None]) -> None:
        """Merge raw ``Set-Cookie`` values, newest value wins per name."""
        if not set_cookie_headers:
            return
        if isinstance(set_cookie_headers, str):
            set_cookie_headers = [set_cookie_headers]

        for raw in set_cookie_headers:
            pair = raw.split(";", 1)[0].strip()
            if not pair or "=" not in pair:
                continue
            name, value = pair.split("=", 1)
            name = name.strip()
            if not name:
                continue
            self._cookies[name] = value.strip()

        logger.debug(f"Session cookies updated: {self._truncated()}")

    def header(self) -> Optional[str]:
        """Render the ``Cookie`` request header, or None when empty."""
        if not self._cookies:
            return None
        return "; ".join(f"{name}={value}" for name, value in self._cookies.items())

    def clear(self) -> None:
        self._cookies.clear()

    def get(self, name: str) -> Optional[str]:
        return self._cookies.get(name)

    def __len__(self) -> int:
        return len(self._cookies)

    def _truncated(self) -> str:
        header = self.header() or ""
        return header[:100] + ("..." if len(header) > 100 else "")


@dataclass
class SessionState:
    """Mutable per-client session.

    Never persisted; it lives as long as the client that owns it.
    """

    cookies: CookieJar = field(default_factory=CookieJar)
    csrf_token: Optional[str] = None
    csrf_expires_at: Optional[datetime] = None
    mode: SessionMode = SessionMode.STATELESS
    connection_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def is_stateful(self) -> bool:
        return self.mode is SessionMode.STATEFUL

    def set_mode(self, mode: Union[SessionMode, str]) -> None:
        mode = SessionMode(mode)
        if mode is not self.mode:
            logger.debug(f"Session type set to: {mode.value}")
        self.mode = mode

    def headers(self) -> Dict[str, str]:
        """Session headers attached to every request."""
        headers = {
            SESSION_TYPE_HEADER: self.mode.value,
            CONNECTION_ID_HEADER: self.connection_id,
        }
        cookie = self.cookies.header()
        if cookie:
            headers["Cookie"] = cookie
        return headers
