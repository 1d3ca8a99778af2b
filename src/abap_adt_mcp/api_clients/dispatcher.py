"""Request dispatcher for the ADT REST API.

Provides the single request path every ADT call goes through: session and
authentication headers, CSRF handling for writes, failure classification,
and bounded retries with linear backoff.
"""

import asyncio
import base64
import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

import httpx

from ..config import ConnectionConfig, RetryPolicy
from .csrf import CSRF_HEADER, CsrfTokenCache
from .errors import AdtError, ErrorKind, classify_exception, classify_response
from .models import AdtResponse
from .session import SessionState

logger = logging.getLogger(__name__)

WRITE_METHODS = frozenset({"POST", "PUT", "DELETE"})
DISCOVERY_PATH = "/discovery"
DEFAULT_ACCEPT = "application/xml, application/atom+xml, text/plain, */*"
DEFAULT_CONTENT_TYPE = "application/xml"
DEFAULT_TIMEOUT = 30.0

Sleep = Callable[[float], Awaitable[Any]]
RequestBody = Union[str, bytes, None]


class RequestDispatcher:
    """Sends ADT requests on behalf of one client session.

    Args:
        connection: SAP connection settings
        retry: Attempt count and base delay
        timeout: Default per-request timeout in seconds
        session: Session state to use (a fresh one by default)
        sleep: Coroutine used for backoff waits
        transport: Optional httpx transport (tests, proxies)
    """

    def __init__(
        self,
        connection: ConnectionConfig,
        retry: Optional[RetryPolicy] = None,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[SessionState] = None,
        sleep: Sleep = asyncio.sleep,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.connection = connection
        self.retry = retry or RetryPolicy()
        self.timeout = timeout
        self.session = session or SessionState()
        self.csrf = CsrfTokenCache(self.session, self._fetch_csrf_headers)
        self._sleep = sleep
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        # Diagnostics for the most recent execute() call
        self.attempts = 0
        self.retry_delays: List[float] = []

        logger.debug(f"Generated connection ID: {self.session.connection_id}")

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.connection.base_url,
                timeout=httpx.Timeout(self.timeout),
                headers={
                    "Accept": DEFAULT_ACCEPT,
                    "Content-Type": DEFAULT_CONTENT_TYPE,
                },
                verify=not self.connection.allow_insecure,
                follow_redirects=False,
                transport=self._transport,
            )
        return self._client

    def _auth_headers(self) -> Dict[str, str]:
        credentials = f"{self.connection.username}:{self.connection.password}"
        token = base64.b64encode(credentials.encode("utf-8")).decode("ascii")
        headers = {"Authorization": f"Basic {token}"}
        if self.connection.client:
            headers["sap-client"] = self.connection.client
        if self.connection.language:
            headers["sap-language"] = self.connection.language
        return headers

    def _build_headers(self, extra: Optional[Mapping[str, str]]) -> Dict[str, str]:
        headers = self._auth_headers()
        headers.update(self.session.headers())
        if extra:
            headers.update(extra)
        return headers

    async def send_once(
        self,
        method: str,
        path: str,
        body: RequestBody = None,
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> AdtResponse:
        """Issue exactly one HTTP request.

        Cookies from the response are merged into the session whether the
        request succeeded or not.

        Raises:
            AdtError: Classified failure for transport errors and status >= 400
        """
        request_headers = self._build_headers(headers)
        logger.debug(f"{method} {path} params={dict(params or {})}")

        try:
            response = await self.client.request(
                method,
                path,
                content=body,
                headers=request_headers,
                params=params,
                timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
            )
        except httpx.HTTPError as e:
            raise classify_exception(e, host=self.connection.host) from e

        self.session.cookies.merge(response.headers.get_list("set-cookie"))
        # The session's jar is authoritative; keep httpx from replaying its own
        self.client.cookies.clear()

        logger.debug(f"HTTP {response.status_code} {response.reason_phrase}")

        if response.status_code >= 400:
            raise classify_response(
                response.status_code, response.reason_phrase, response.text
            )

        return AdtResponse(
            status=response.status_code,
            headers={k.lower(): v for k, v in response.headers.items()},
            text=response.text,
        )

    async def _fetch_csrf_headers(self) -> Mapping[str, str]:
        response = await self.send_once(
            "GET",
            DISCOVERY_PATH,
            headers={CSRF_HEADER: "Fetch", "Accept": "application/atomsvc+xml"},
        )
        return response.headers

    async def execute(
        self,
        method: str,
        path: str,
        body: RequestBody = None,
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
        skip_csrf: bool = False,
    ) -> AdtResponse:
        """Execute one logical ADT call with CSRF handling and retries.

        Args:
            method: HTTP method
            path: Path relative to the ADT root, may carry a query string
            body: Request body (text is sent verbatim)
            headers: Extra request headers
            params: Query parameters
            timeout: Per-call timeout in seconds
            skip_csrf: Do not attach a CSRF token to a write request

        Returns:
            Normalised response

        Raises:
            AdtError: Non-retryable failure, or the last failure once all
                attempts are used up
        """
        method = method.upper()
        needs_csrf = method in WRITE_METHODS and not skip_csrf
        max_attempts = self.retry.max_attempts
        last_error: Optional[AdtError] = None
        csrf_refreshed = False

        self.attempts = 0
        self.retry_delays = []

        attempt = 1
        while attempt <= max_attempts:
            request_headers = dict(headers or {})
            try:
                if needs_csrf:
                    request_headers[CSRF_HEADER] = await self.csrf.get_or_fetch()
                self.attempts += 1
                return await self.send_once(
                    method, path, body, request_headers, params, timeout
                )
            except AdtError as e:
                last_error = e
                logger.warning(
                    f"Request failed (attempt {attempt}/{max_attempts}): "
                    f"{method} {path}: {e.message}"
                )

                if e.status_code == 403 or e.kind is ErrorKind.CSRF:
                    self.csrf.invalidate()
                    # A stale token shows up as a plain 403: refresh once.
                    if needs_csrf and e.status_code == 403 and not csrf_refreshed:
                        csrf_refreshed = True
                        logger.debug("Received 403, refetching CSRF token")
                        continue

                if not e.retryable:
                    raise

                if attempt < max_attempts:
                    delay = self.retry.delay_for(attempt)
                    self.retry_delays.append(delay)
                    logger.debug(
                        f"Retrying request (attempt {attempt + 1}/{max_attempts}) "
                        f"in {delay:.2f}s"
                    )
                    await self._sleep(delay)
                attempt += 1

        if last_error is not None:
            raise last_error
        raise AdtError(
            ErrorKind.CONNECTION,
            "Request failed after all retries",
            {"method": method, "path": path},
        )

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None
