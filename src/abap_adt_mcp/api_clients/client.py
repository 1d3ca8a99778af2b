"""ADT client: object operations on top of the request dispatcher.

One ``AdtClient`` owns one ADT session (cookies, CSRF token, session mode,
connection id) and the locks acquired through it. Use one client per
logical session; concurrent lock/update/unlock sequences on the same
client race on the session mode.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union
from urllib.parse import unquote

import httpx

from ..config import ConnectionConfig, RetryPolicy, ServerConfig
from . import xml_codec
from .dispatcher import DEFAULT_TIMEOUT, RequestBody, RequestDispatcher, Sleep
from .errors import AdtError, ErrorKind
from .locks import DEFAULT_LOCK_LIFETIME, LockHandle, LockRegistry
from .models import (
    ActivationResult,
    AdtResponse,
    SearchResult,
    SyntaxCheckResult,
    TransportRequest,
)
from .parsing import (
    find_deletion_failure,
    parse_activation_messages,
    parse_check_messages,
    parse_lock_response,
    parse_search_results,
    parse_transport_requests,
)
from .session import SessionMode
from .uris import (
    AcceptHeaderTable,
    full_uri,
    infer_object_type,
    lock_scope_uri,
    normalize_uri,
    object_name_from_uri,
    source_uri,
)

logger = logging.getLogger(__name__)

ADT_CORE_NAMESPACE = "http://www.sap.com/adt/core"
ADT_DELETION_NAMESPACE = "http://www.sap.com/adt/deletion"

METADATA_ACCEPT = (
    "application/vnd.sap.adt.oo.classes.v4+xml, "
    "application/vnd.sap.adt.oo.interfaces.v4+xml, "
    "application/vnd.sap.adt.programs.programs.v2+xml, "
    "application/vnd.sap.adt.functions.v3+xml, application/xml, */*"
)
DELETION_CHECK_CONTENT_TYPE = "application/vnd.sap.adt.deletion.check.request.v1+xml"
DELETION_CHECK_ACCEPT = (
    "application/vnd.sap.adt.deletion.check.response.v1+xml, application/xml, */*"
)
DELETION_CONTENT_TYPE = "application/vnd.sap.adt.deletion.request.v1+xml"
DELETION_ACCEPT = (
    "application/vnd.sap.adt.deletion.response.v1+xml, application/xml, */*"
)


def _truncate(value: str, length: int = 20) -> str:
    return f"{value[:length]}..." if len(value) > length else value


class AdtClient:
    """Client for the SAP ABAP Development Tools REST API.

    Args:
        config: Full server configuration or just the connection settings
        retry: Retry policy (defaults to the one in ``config``)
        timeout: Per-request timeout in seconds (defaults to ``config``)
        accept_headers: Lock Accept-header table per object family
        sleep: Coroutine used for retry backoff
        transport: Optional httpx transport
    """

    def __init__(
        self,
        config: Union[ServerConfig, ConnectionConfig],
        retry: Optional[RetryPolicy] = None,
        timeout: Optional[float] = None,
        accept_headers: Optional[AcceptHeaderTable] = None,
        sleep: Sleep = asyncio.sleep,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if isinstance(config, ServerConfig):
            self.connection = config.connection
            retry = retry or config.retry
            timeout = timeout if timeout is not None else config.timeout
        else:
            self.connection = config

        self.dispatcher = RequestDispatcher(
            self.connection,
            retry=retry,
            timeout=timeout if timeout is not None else DEFAULT_TIMEOUT,
            sleep=sleep,
            transport=transport,
        )
        self.session = self.dispatcher.session
        self.locks = LockRegistry()
        self.accept_headers = accept_headers or AcceptHeaderTable()

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    @property
    def session_mode(self) -> SessionMode:
        return self.session.mode

    def set_session_mode(self, mode: Union[SessionMode, str]) -> None:
        self.session.set_mode(mode)

    async def test_connection(self) -> bool:
        """Check the discovery endpoint.

        Returns:
            True if the server answered 200, False on any ADT failure
        """
        logger.info("Testing connection to SAP system")
        try:
            response = await self.get("/discovery", skip_csrf=True)
        except AdtError as e:
            logger.error(f"Connection test failed: {e}")
            return False
        logger.info("Connection test successful")
        return response.status == 200

    async def fetch_csrf_token(self) -> str:
        return await self.dispatcher.csrf.get_or_fetch()

    def clear_csrf_token(self) -> None:
        self.dispatcher.csrf.invalidate()

    # ------------------------------------------------------------------
    # Raw requests
    # ------------------------------------------------------------------

    async def request(
        self,
        method: str,
        path: str,
        body: RequestBody = None,
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
        skip_csrf: bool = False,
    ) -> AdtResponse:
        return await self.dispatcher.execute(
            method,
            normalize_uri(path),
            body=body,
            headers=headers,
            params=params,
            timeout=timeout,
            skip_csrf=skip_csrf,
        )

    async def get(self, path: str, **kwargs: Any) -> AdtResponse:
        return await self.request("GET", path, **kwargs)

    async def post(
        self, path: str, body: RequestBody = None, **kwargs: Any
    ) -> AdtResponse:
        return await self.request("POST", path, body, **kwargs)

    async def put(
        self, path: str, body: RequestBody = None, **kwargs: Any
    ) -> AdtResponse:
        return await self.request("PUT", path, body, **kwargs)

    async def delete(self, path: str, **kwargs: Any) -> AdtResponse:
        return await self.request("DELETE", path, **kwargs)

    # ------------------------------------------------------------------
    # Objects
    # ------------------------------------------------------------------

    async def get_object(self, object_uri: str) -> AdtResponse:
        normalized = normalize_uri(object_uri)
        logger.debug(f"ADT getObject: {normalized}")
        return await self.get(normalized)

    async def get_object_source(self, object_uri: str) -> str:
        uri = source_uri(object_uri)
        logger.debug(f"ADT getSource: {uri}")
        response = await self.get(uri, headers={"Accept": "text/plain"})
        return response.text

    async def get_object_metadata(self, object_uri: str) -> Dict[str, Any]:
        """Decoded object metadata, ``{}`` for an empty body."""
        response = await self.get(
            normalize_uri(object_uri), headers={"Accept": METADATA_ACCEPT}
        )
        if not response.text:
            return {}
        return xml_codec.decode(response.text)

    async def update_object_source(
        self, object_uri: str, source: str, lock_handle: str
    ) -> None:
        """Replace the main source of a locked object.

        The lock handle travels as a query parameter; ADT ignores it as a
        header.

        Raises:
            AdtError: ``validation`` when no lock handle is given
        """
        if not lock_handle:
            raise AdtError.missing_field("lock_handle")

        uri = source_uri(object_uri)
        logger.debug(
            f"Updating source at URI: {uri} with lockHandle: {_truncate(lock_handle)}"
        )
        await self.put(
            uri,
            source,
            headers={"Content-Type": "text/plain"},
            params={"lockHandle": lock_handle},
        )

    # ------------------------------------------------------------------
    # Locks
    # ------------------------------------------------------------------

    async def lock_object(self, object_uri: str) -> LockHandle:
        """Lock an object for modification.

        Switches the session to stateful; the session stays stateful until
        the matching ``unlock_object``.

        Returns:
            Registered lock handle

        Raises:
            AdtError: ``object-locked`` if no lock handle came back, or the
                classified request failure
        """
        normalized = normalize_uri(object_uri)
        lock_uri = lock_scope_uri(normalized)
        accept = self.accept_headers.select(lock_uri)
        logger.debug(f"Locking object at URI: {lock_uri} (Accept: {accept})")

        self.session.set_mode(SessionMode.STATEFUL)
        try:
            response = await self.post(
                lock_uri,
                headers={"Accept": accept},
                params={"_action": "LOCK", "accessMode": "MODIFY"},
            )
        except AdtError:
            if not self.locks:
                self.session.set_mode(SessionMode.STATELESS)
            raise

        parsed = parse_lock_response(response.text)
        if not parsed["lock_handle"]:
            if not self.locks:
                self.session.set_mode(SessionMode.STATELESS)
            raise AdtError.locked(
                lock_uri,
                "Failed to obtain lock handle",
                lock_uri=lock_uri,
                requested_uri=object_uri,
                status_code=response.status,
            )

        handle = LockHandle(
            lock_handle=parsed["lock_handle"],
            object_uri=lock_uri,
            expires_at=datetime.now(timezone.utc) + DEFAULT_LOCK_LIFETIME,
            transport_number=parsed["transport_number"],
            transport_owner=parsed["transport_owner"],
            transport_text=parsed["transport_text"],
        )
        self.locks.register(handle, normalized)
        logger.debug(f"Lock acquired: {_truncate(handle.lock_handle)}")
        return handle

    async def unlock_object(
        self, object_uri: str, lock_handle: Optional[str] = None
    ) -> None:
        """Release a lock.

        Without an explicit handle the registered one is used. The session
        returns to stateless and the registry entry is dropped whether or not
        the request succeeds.
        """
        normalized = normalize_uri(object_uri)
        unlock_uri = lock_scope_uri(normalized)

        if not lock_handle:
            active = self.locks.get(normalized)
            if active is None:
                raise AdtError(
                    ErrorKind.VALIDATION,
                    f"No active lock for '{unlock_uri}'",
                    {"field": "lock_handle", "object_uri": unlock_uri},
                )
            lock_handle = active.lock_handle

        logger.debug(f"Unlocking object at URI: {unlock_uri}")
        try:
            await self.post(
                unlock_uri,
                params={"_action": "UNLOCK", "lockHandle": lock_handle},
            )
        finally:
            self.session.set_mode(SessionMode.STATELESS)
            self.locks.remove(normalized)

        logger.debug(f"Lock released for {unlock_uri}")

    def get_active_lock(self, object_uri: str) -> Optional[LockHandle]:
        return self.locks.get(object_uri)

    async def release_all_locks(self) -> int:
        """Best-effort unlock of every registered lock.

        Returns:
            Number of locks released successfully
        """
        handles = self.locks.handles()
        logger.info(f"Releasing {len(handles)} active locks")

        async def release(handle: LockHandle) -> bool:
            try:
                await self.unlock_object(handle.object_uri, handle.lock_handle)
                return True
            except AdtError as e:
                logger.warning(f"Failed to release lock for {handle.object_uri}: {e}")
                return False

        results = await asyncio.gather(*(release(h) for h in handles))
        self.locks.clear()
        self.session.set_mode(SessionMode.STATELESS)
        return sum(1 for released in results if released)

    async def write_source(
        self, object_uri: str, source: str, activate: bool = False
    ) -> Optional[ActivationResult]:
        """Lock, update and unlock an object, optionally activating it.

        If the update fails or is cancelled the unlock is still attempted; the
        update error is raised and an unlock failure is only logged. An
        unlock failure after a successful update is raised.

        Returns:
            Activation result when ``activate`` is set, else None
        """
        handle = await self.lock_object(object_uri)
        try:
            await self.update_object_source(object_uri, source, handle.lock_handle)
        except BaseException:
            try:
                await self.unlock_object(object_uri, handle.lock_handle)
            except AdtError as cleanup_error:
                logger.warning(
                    f"Failed to unlock {handle.object_uri} after failed update: "
                    f"{cleanup_error}"
                )
            raise

        await self.unlock_object(object_uri, handle.lock_handle)

        if activate:
            return await self.activate(handle.object_uri)
        return None

    async def delete_object(
        self, object_uri: str, transport_request: Optional[str] = None
    ) -> None:
        """Delete an object through the deletion API (no lock needed).

        Raises:
            AdtError: ``request-failed`` when the check or the deletion is
                rejected in the response body
        """
        uri = full_uri(object_uri)
        logger.info(f"Deleting object using ADT Deletion API: {uri}")

        check_body = xml_codec.encode(
            {
                "del:checkRequest": {
                    "@xmlns:adtcore": ADT_CORE_NAMESPACE,
                    "@xmlns:del": ADT_DELETION_NAMESPACE,
                    "del:object": {"@adtcore:uri": uri},
                }
            }
        )
        response = await self.post(
            "/deletion/check",
            check_body,
            headers={
                "Content-Type": DELETION_CHECK_CONTENT_TYPE,
                "Accept": DELETION_CHECK_ACCEPT,
            },
        )
        reason = find_deletion_failure(response.text)
        if reason:
            raise AdtError(
                ErrorKind.REQUEST_FAILED,
                f"Cannot delete object: {reason}",
                {"uri": uri},
            )
        logger.debug(f"Deletion check passed for: {uri}")

        delete_body = xml_codec.encode(
            {
                "del:deletionRequest": {
                    "@xmlns:adtcore": ADT_CORE_NAMESPACE,
                    "@xmlns:del": ADT_DELETION_NAMESPACE,
                    "del:object": {
                        "@adtcore:uri": uri,
                        "del:transportNumber": transport_request or "",
                    },
                }
            }
        )
        response = await self.post(
            "/deletion/delete",
            delete_body,
            headers={"Content-Type": DELETION_CONTENT_TYPE, "Accept": DELETION_ACCEPT},
        )
        reason = find_deletion_failure(response.text)
        if reason:
            raise AdtError(
                ErrorKind.REQUEST_FAILED,
                f"Failed to delete object: {reason}",
                {"uri": uri, "transport_request": transport_request},
            )
        self.locks.remove(object_uri)
        logger.info(f"Object deleted successfully: {uri}")

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------

    def _object_references(
        self,
        object_uris: Sequence[str],
        object_types: Optional[Sequence[Optional[str]]] = None,
    ) -> str:
        references = []
        for index, uri in enumerate(object_uris):
            object_type = None
            if object_types and index < len(object_types):
                object_type = object_types[index]
            references.append(
                {
                    "@adtcore:uri": full_uri(uri),
                    "@adtcore:type": object_type or infer_object_type(uri),
                    "@adtcore:name": unquote(object_name_from_uri(uri)).upper(),
                }
            )
        return xml_codec.encode(
            {
                "adtcore:objectReferences": {
                    "@xmlns:adtcore": ADT_CORE_NAMESPACE,
                    "adtcore:objectReference": references,
                }
            }
        )

    async def activate(
        self,
        object_uris: Union[str, Sequence[str]],
        preaudit_requested: bool = False,
        object_types: Optional[Sequence[Optional[str]]] = None,
    ) -> ActivationResult:
        """Activate one or more objects.

        Args:
            object_uris: Object URI or list of URIs
            preaudit_requested: Ask the server for a pre-audit run
            object_types: ADT type codes per URI (inferred when missing)

        Returns:
            ActivationResult; ``success`` is False if any error message came back
        """
        uris = [object_uris] if isinstance(object_uris, str) else list(object_uris)
        if not uris:
            raise AdtError.missing_field("object_uris")

        body = self._object_references(uris, object_types)
        logger.debug(f"Activation request body:\n{body}")

        response = await self.post(
            "/activation",
            body,
            headers={"Content-Type": "application/xml"},
            params={
                "method": "activate",
                "preauditRequested": "true" if preaudit_requested else "false",
            },
        )
        success, messages = parse_activation_messages(response.text)
        if not success:
            logger.warning(
                f"Activation of {', '.join(uris)} reported "
                f"{sum(1 for m in messages if m.is_error)} error(s)"
            )
        return ActivationResult(success=success, messages=messages)

    async def check_syntax(self, object_uri: str) -> SyntaxCheckResult:
        """Run a pre-audit activation, which validates without persisting."""
        body = self._object_references([object_uri])
        response = await self.post(
            "/activation",
            body,
            headers={"Content-Type": "application/xml", "Accept": "application/xml, */*"},
            params={"method": "activate", "preauditRequested": "true"},
        )
        has_errors, messages = parse_check_messages(response.text)
        return SyntaxCheckResult(has_errors=has_errors, messages=messages)

    # ------------------------------------------------------------------
    # Repository information
    # ------------------------------------------------------------------

    async def search_objects(
        self,
        query: str,
        object_type: Optional[str] = None,
        max_results: Optional[int] = None,
        package_name: Optional[str] = None,
    ) -> List[SearchResult]:
        if not query:
            raise AdtError.missing_field("query")

        params = {"operation": "quickSearch", "query": query}
        if object_type:
            params["objectType"] = object_type
        if max_results:
            params["maxResults"] = str(max_results)
        if package_name:
            params["packageName"] = package_name

        response = await self.get("/repository/informationsystem/search", params=params)
        return parse_search_results(response.text)

    async def get_transport_requests(
        self, user: Optional[str] = None, request_types: Optional[List[str]] = None
    ) -> List[TransportRequest]:
        params = {}
        if user:
            params["user"] = user
        if request_types:
            params["requestTypes"] = ",".join(request_types)

        response = await self.get("/cts/transportrequests", params=params)
        return parse_transport_requests(response.text)

    def connection_info(self) -> Dict[str, Any]:
        return {
            "host": self.connection.host,
            "port": self.connection.port,
            "client": self.connection.client,
            "user": self.connection.username,
            "language": self.connection.language,
            "base_url": self.connection.base_url,
            "session_mode": self.session.mode.value,
            "connection_id": self.session.connection_id,
            "csrf_token_valid": self.dispatcher.csrf.is_valid,
            "active_locks": len(self.locks),
        }

    async def close(self) -> None:
        await self.dispatcher.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
