"""Unit tests for AdtClient object operations.

Uses pytest-httpx to stand in for the ADT server; every test registers
exactly the responses the operation is expected to consume.
"""

import asyncio
import re
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from abap_adt_mcp.api_clients import AdtClient, AdtError, ErrorKind, SessionMode
from abap_adt_mcp.api_clients.xml_codec import decode, find_elements, get_attribute
from abap_adt_mcp.config import RetryPolicy, ServerConfig


LOCK_BODY = """<?xml version="1.0" encoding="utf-8"?>
<asx:abap xmlns:asx="http://www.sap.com/abapxml" version="1.0">
  <asx:values><DATA><LOCK_HANDLE>{handle}</LOCK_HANDLE><CORRNR/></DATA></asx:values>
</asx:abap>"""

ACTIVATION_ERROR = """<?xml version="1.0" encoding="utf-8"?>
<chkl:messages xmlns:chkl="http://www.sap.com/abapxml/checklist">
  <msg objDescr="Program ZTEST" type="E" line="1"
       href="/sap/bc/adt/programs/programs/ztest/source/main#start=3,2">
    <shortText><txt>Syntax error</txt></shortText>
  </msg>
</chkl:messages>"""


def add_csrf(httpx_mock, token="csrf-token"):
    httpx_mock.add_response(method="GET", headers={"x-csrf-token": token})


def add_lock(httpx_mock, handle="H1", url=None):
    kwargs = {"url": url} if url is not None else {}
    httpx_mock.add_response(method="POST", text=LOCK_BODY.format(handle=handle), **kwargs)


class TestClientConstruction:
    """Test wiring from configuration."""

    def test_server_config_supplies_retry_and_timeout(self, connection):
        config = ServerConfig(
            connection=connection,
            retry=RetryPolicy(max_attempts=5, base_delay=2),
            timeout=60,
        )

        client = AdtClient(config)

        assert client.dispatcher.retry.max_attempts == 5
        assert client.dispatcher.timeout == 60
        assert client.session_mode is SessionMode.STATELESS

    def test_connection_info(self, connection):
        client = AdtClient(connection)

        info = client.connection_info()

        assert info["host"] == "sap.example.com"
        assert info["base_url"] == "https://sap.example.com:44300/sap/bc/adt"
        assert info["session_mode"] == "stateless"
        assert info["active_locks"] == 0
        assert "password" not in info


@pytest.mark.asyncio
class TestLockProtocol:
    """Test the lock -> update -> unlock sequence."""

    async def test_lock_update_unlock(self, adt_client, httpx_mock):
        add_csrf(httpx_mock)
        add_lock(httpx_mock, "H1")
        httpx_mock.add_response(method="PUT")
        httpx_mock.add_response(method="POST")

        handle = await adt_client.lock_object("/programs/programs/ztest")

        assert handle.lock_handle == "H1"
        assert handle.object_uri == "/programs/programs/ztest"
        assert adt_client.session_mode is SessionMode.STATEFUL
        assert adt_client.get_active_lock("/programs/programs/ztest/source/main") is handle

        await adt_client.update_object_source(
            "/programs/programs/ztest", "REPORT ztest.", handle.lock_handle
        )
        await adt_client.unlock_object("/programs/programs/ztest", handle.lock_handle)

        _, lock, update, unlock = httpx_mock.get_requests()

        assert lock.url.path == "/sap/bc/adt/programs/programs/ztest"
        assert lock.url.params["_action"] == "LOCK"
        assert lock.url.params["accessMode"] == "MODIFY"
        assert lock.headers["X-sap-adt-sessiontype"] == "stateful"
        assert "programs.programs" in lock.headers["Accept"]

        assert update.method == "PUT"
        assert update.url.path == "/sap/bc/adt/programs/programs/ztest/source/main"
        assert update.url.params["lockHandle"] == "H1"
        assert "lockHandle" not in update.headers
        assert update.headers["Content-Type"] == "text/plain"
        assert update.headers["X-sap-adt-sessiontype"] == "stateful"
        assert update.content == b"REPORT ztest."

        assert unlock.url.path == "/sap/bc/adt/programs/programs/ztest"
        assert unlock.url.params["_action"] == "UNLOCK"
        assert unlock.url.params["lockHandle"] == "H1"

        connection_ids = {r.headers["sap-adt-connection-id"] for r in (lock, update, unlock)}
        assert connection_ids == {adt_client.session.connection_id}

        assert "/programs/programs/ztest" not in adt_client.locks
        assert adt_client.session_mode is SessionMode.STATELESS

    async def test_lock_via_source_uri_locks_object(self, adt_client, httpx_mock):
        add_csrf(httpx_mock)
        add_lock(httpx_mock, "H2")

        handle = await adt_client.lock_object(
            "/sap/bc/adt/oo/classes/zcl_demo/source/main"
        )

        request = httpx_mock.get_requests()[1]
        assert request.url.path == "/sap/bc/adt/oo/classes/zcl_demo"
        assert "oo.classes" in request.headers["Accept"]
        assert adt_client.get_active_lock("/oo/classes/zcl_demo") is handle

    async def test_ddic_lock_uses_dedicated_accept(self, adt_client, httpx_mock):
        add_csrf(httpx_mock)
        add_lock(httpx_mock)

        await adt_client.lock_object("/ddic/domains/zdomain")

        assert httpx_mock.get_requests()[1].headers["Accept"] == (
            "application/vnd.sap.as+xml"
        )

    async def test_missing_lock_handle_is_lock_error(self, adt_client, httpx_mock):
        add_csrf(httpx_mock)
        httpx_mock.add_response(method="POST", text="<asx:abap xmlns:asx='urn:a'/>")

        with pytest.raises(AdtError) as exc_info:
            await adt_client.lock_object("/programs/programs/ztest")

        assert exc_info.value.kind is ErrorKind.OBJECT_LOCKED
        assert len(adt_client.locks) == 0
        assert adt_client.session_mode is SessionMode.STATELESS

    async def test_unlock_failure_still_resets_session(self, adt_client, httpx_mock):
        add_csrf(httpx_mock)
        add_lock(httpx_mock, "H1")
        httpx_mock.add_response(method="POST", status_code=404)

        await adt_client.lock_object("/programs/programs/ztest")

        with pytest.raises(AdtError) as exc_info:
            await adt_client.unlock_object("/programs/programs/ztest", "H1")

        assert exc_info.value.kind is ErrorKind.OBJECT_NOT_FOUND
        assert adt_client.session_mode is SessionMode.STATELESS
        assert len(adt_client.locks) == 0

    async def test_unlock_uses_registered_handle(self, adt_client, httpx_mock):
        add_csrf(httpx_mock)
        add_lock(httpx_mock, "REGISTERED")
        httpx_mock.add_response(method="POST")

        await adt_client.lock_object("/programs/programs/ztest")
        await adt_client.unlock_object("/programs/programs/ztest/source/main")

        assert httpx_mock.get_requests()[2].url.params["lockHandle"] == "REGISTERED"

    async def test_unlock_without_any_handle(self, adt_client):
        with pytest.raises(AdtError) as exc_info:
            await adt_client.unlock_object("/programs/programs/ztest")

        assert exc_info.value.kind is ErrorKind.VALIDATION

    async def test_update_requires_lock_handle(self, adt_client):
        with pytest.raises(AdtError) as exc_info:
            await adt_client.update_object_source("/programs/programs/ztest", "x", "")

        assert exc_info.value.kind is ErrorKind.VALIDATION

    async def test_release_all_locks_is_best_effort(self, adt_client, httpx_mock):
        add_csrf(httpx_mock)
        add_lock(httpx_mock, "HA")
        add_lock(httpx_mock, "HB")
        httpx_mock.add_response(
            method="POST", url=re.compile(r".*/programs/programs/zone\?.*UNLOCK.*")
        )
        httpx_mock.add_response(
            method="POST",
            url=re.compile(r".*/programs/programs/ztwo\?.*UNLOCK.*"),
            status_code=404,
        )

        await adt_client.lock_object("/programs/programs/zone")
        await adt_client.lock_object("/programs/programs/ztwo")
        assert len(adt_client.locks) == 2

        released = await adt_client.release_all_locks()

        assert released == 1
        assert len(adt_client.locks) == 0
        assert adt_client.session_mode is SessionMode.STATELESS

    async def test_lock_past_its_estimate_is_still_released(
        self, adt_client, httpx_mock
    ):
        add_csrf(httpx_mock)
        add_lock(httpx_mock, "H1")
        httpx_mock.add_response(method="POST")

        handle = await adt_client.lock_object("/programs/programs/ztest")
        handle.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)

        assert adt_client.get_active_lock("/programs/programs/ztest") is handle
        assert await adt_client.release_all_locks() == 1

        unlock = httpx_mock.get_requests()[-1]
        assert unlock.url.params["_action"] == "UNLOCK"
        assert unlock.url.params["lockHandle"] == "H1"


@pytest.mark.asyncio
class TestWriteSource:
    """Test the combined write operation and its cleanup policy."""

    async def test_write_and_activate(self, adt_client, httpx_mock):
        add_csrf(httpx_mock)
        add_lock(httpx_mock, "H1")
        httpx_mock.add_response(method="PUT")
        httpx_mock.add_response(method="POST")
        httpx_mock.add_response(method="POST", text="")

        result = await adt_client.write_source(
            "/programs/programs/ztest", "REPORT ztest.", activate=True
        )

        assert result is not None
        assert result.success is True
        activation = httpx_mock.get_requests()[4]
        assert activation.url.path == "/sap/bc/adt/activation"
        assert activation.url.params["preauditRequested"] == "false"
        assert len(adt_client.locks) == 0

    async def test_update_failure_unlocks_and_raises_update_error(
        self, adt_client, httpx_mock
    ):
        add_csrf(httpx_mock)
        add_lock(httpx_mock, "H1")
        httpx_mock.add_response(method="PUT", status_code=423)
        httpx_mock.add_response(method="POST")

        with pytest.raises(AdtError) as exc_info:
            await adt_client.write_source("/programs/programs/ztest", "REPORT ztest.")

        assert exc_info.value.kind is ErrorKind.OBJECT_LOCKED
        unlock = httpx_mock.get_requests()[3]
        assert unlock.url.params["_action"] == "UNLOCK"
        assert len(adt_client.locks) == 0
        assert adt_client.session_mode is SessionMode.STATELESS

    async def test_cancelled_update_still_unlocks(
        self, adt_client, httpx_mock, monkeypatch
    ):
        add_csrf(httpx_mock)
        add_lock(httpx_mock, "H1")
        httpx_mock.add_response(method="POST")

        async def cancelled(*args, **kwargs):
            raise asyncio.CancelledError()

        monkeypatch.setattr(adt_client, "update_object_source", cancelled)

        with pytest.raises(asyncio.CancelledError):
            await adt_client.write_source("/programs/programs/ztest", "REPORT ztest.")

        unlock = httpx_mock.get_requests()[-1]
        assert unlock.url.params["_action"] == "UNLOCK"
        assert len(adt_client.locks) == 0
        assert adt_client.session_mode is SessionMode.STATELESS

    async def test_update_error_wins_over_unlock_error(self, adt_client, httpx_mock):
        add_csrf(httpx_mock)
        add_lock(httpx_mock, "H1")
        httpx_mock.add_response(method="PUT", status_code=400)
        httpx_mock.add_response(method="POST", status_code=404)

        with pytest.raises(AdtError) as exc_info:
            await adt_client.write_source("/programs/programs/ztest", "REPORT ztest.")

        assert exc_info.value.kind is ErrorKind.REQUEST_FAILED

    async def test_unlock_error_raised_when_only_failure(self, adt_client, httpx_mock):
        add_csrf(httpx_mock)
        add_lock(httpx_mock, "H1")
        httpx_mock.add_response(method="PUT")
        httpx_mock.add_response(method="POST", status_code=404)

        with pytest.raises(AdtError) as exc_info:
            await adt_client.write_source("/programs/programs/ztest", "REPORT ztest.")

        assert exc_info.value.kind is ErrorKind.OBJECT_NOT_FOUND


@pytest.mark.asyncio
class TestActivation:
    """Test activation and syntax check requests."""

    async def test_error_message_fails_activation(self, adt_client, httpx_mock):
        add_csrf(httpx_mock)
        httpx_mock.add_response(method="POST", text=ACTIVATION_ERROR)

        result = await adt_client.activate("/programs/programs/ztest")

        assert result.success is False
        assert len(result.messages) == 1
        assert result.messages[0].line == 3
        assert result.messages[0].message == "Syntax error"

    async def test_payload_references_full_uris(self, adt_client, httpx_mock):
        add_csrf(httpx_mock)
        httpx_mock.add_response(method="POST")

        await adt_client.activate(
            ["/programs/programs/ztest", "/sap/bc/adt/ddic/domains/zdomain"],
            object_types=[None, "DOMA/DD"],
        )

        request = httpx_mock.get_requests()[1]
        assert request.url.params["method"] == "activate"
        refs = find_elements(decode(request.content.decode("utf-8")), "objectReference")
        assert [get_attribute(r, "uri") for r in refs] == [
            "/sap/bc/adt/programs/programs/ztest",
            "/sap/bc/adt/ddic/domains/zdomain",
        ]
        assert [get_attribute(r, "type") for r in refs] == ["PROG/P", "DOMA/DD"]
        assert [get_attribute(r, "name") for r in refs] == ["ZTEST", "ZDOMAIN"]

    async def test_namespaced_name_is_decoded(self, adt_client, httpx_mock):
        add_csrf(httpx_mock)
        httpx_mock.add_response(method="POST")

        await adt_client.activate("/oo/classes/%2fsmb98%2fcl_demo")

        request = httpx_mock.get_requests()[1]
        refs = find_elements(decode(request.content.decode("utf-8")), "objectReference")
        assert get_attribute(refs[0], "name") == "/SMB98/CL_DEMO"

    async def test_activate_requires_uris(self, adt_client):
        with pytest.raises(AdtError) as exc_info:
            await adt_client.activate([])

        assert exc_info.value.kind is ErrorKind.VALIDATION

    async def test_check_syntax_requests_preaudit(self, adt_client, httpx_mock):
        add_csrf(httpx_mock)
        httpx_mock.add_response(method="POST", text=ACTIVATION_ERROR)

        result = await adt_client.check_syntax("/programs/programs/ztest/source/main")

        request = httpx_mock.get_requests()[1]
        assert request.url.params["preauditRequested"] == "true"
        assert result.has_errors is True
        assert result.to_dict()["messages"][0]["line"] == 3


@pytest.mark.asyncio
class TestRepositoryOperations:
    """Test read, search, transport and deletion operations."""

    async def test_get_object_source(self, adt_client, httpx_mock):
        httpx_mock.add_response(text="REPORT ztest.\nWRITE 'hi'.")

        source = await adt_client.get_object_source("/sap/bc/adt/programs/programs/ztest")

        request = httpx_mock.get_request()
        assert request.url.path == "/sap/bc/adt/programs/programs/ztest/source/main"
        assert request.headers["Accept"] == "text/plain"
        assert source == "REPORT ztest.\nWRITE 'hi'."

    async def test_root_prefixed_path_without_slash(self, adt_client, httpx_mock):
        httpx_mock.add_response()

        await adt_client.get("sap/bc/adt/programs/programs/ztest")

        assert httpx_mock.get_request().url.path == (
            "/sap/bc/adt/programs/programs/ztest"
        )

    async def test_get_object_metadata(self, adt_client, httpx_mock):
        httpx_mock.add_response(
            text='<program:abapProgram xmlns:program="urn:p" name="ZTEST"/>'
        )

        metadata = await adt_client.get_object_metadata("/programs/programs/ztest")

        assert metadata["program:abapProgram"]["@name"] == "ZTEST"

    async def test_search_objects(self, adt_client, httpx_mock):
        httpx_mock.add_response(
            text=(
                '<adtcore:objectReferences xmlns:adtcore="http://www.sap.com/adt/core">'
                '<adtcore:objectReference adtcore:uri="/sap/bc/adt/programs/programs/ztest"'
                ' adtcore:type="PROG/P" adtcore:name="ZTEST"/>'
                "</adtcore:objectReferences>"
            )
        )

        results = await adt_client.search_objects("ZTEST*", max_results=10)

        request = httpx_mock.get_request()
        assert request.url.path == "/sap/bc/adt/repository/informationsystem/search"
        assert request.url.params["operation"] == "quickSearch"
        assert request.url.params["query"] == "ZTEST*"
        assert request.url.params["maxResults"] == "10"
        assert [r.name for r in results] == ["ZTEST"]

    async def test_get_transport_requests(self, adt_client, httpx_mock):
        httpx_mock.add_response(
            text=(
                '<tm:root xmlns:tm="http://www.sap.com/cts/adt/tm">'
                '<tm:request tm:number="DEVK900001" tm:desc="Fix" tm:owner="DEV"'
                ' tm:status="D"/></tm:root>'
            )
        )

        requests = await adt_client.get_transport_requests(user="DEV")

        request = httpx_mock.get_request()
        assert request.url.path == "/sap/bc/adt/cts/transportrequests"
        assert request.url.params["user"] == "DEV"
        assert requests[0].number == "DEVK900001"

    async def test_delete_object(self, adt_client, httpx_mock):
        add_csrf(httpx_mock)
        httpx_mock.add_response(method="POST")
        httpx_mock.add_response(method="POST")

        await adt_client.delete_object("/programs/programs/ztest", "DEVK900001")

        _, check, delete = httpx_mock.get_requests()
        assert check.url.path == "/sap/bc/adt/deletion/check"
        assert check.headers["Content-Type"] == (
            "application/vnd.sap.adt.deletion.check.request.v1+xml"
        )
        assert b'adtcore:uri="/sap/bc/adt/programs/programs/ztest"' in check.content
        assert delete.url.path == "/sap/bc/adt/deletion/delete"
        assert b"<del:transportNumber>DEVK900001</del:transportNumber>" in delete.content

    async def test_delete_rejected_by_check(self, adt_client, httpx_mock):
        add_csrf(httpx_mock)
        httpx_mock.add_response(
            method="POST",
            text="<del:checkResponse xmlns:del='urn:d'><del:error>Object is used</del:error></del:checkResponse>",
        )

        with pytest.raises(AdtError) as exc_info:
            await adt_client.delete_object("/programs/programs/ztest")

        assert "Object is used" in exc_info.value.message
        assert len(httpx_mock.get_requests()) == 2

    async def test_connection_check(self, adt_client, httpx_mock):
        httpx_mock.add_response()

        assert await adt_client.test_connection() is True
        assert "X-CSRF-Token" not in httpx_mock.get_request().headers

    async def test_connection_check_failure(self, adt_client, httpx_mock):
        httpx_mock.add_exception(httpx.ConnectError("[Errno 111] Connection refused"))

        assert await adt_client.test_connection() is False
