"""Unit tests for ADT error classification."""

import json

import httpx
import pytest

from abap_adt_mcp.api_clients.errors import (
    AdtError,
    ErrorKind,
    classify_exception,
    classify_response,
    extract_error_message,
    wrap_error,
)


class TestClassifyResponse:
    """Test HTTP status to error kind mapping."""

    @pytest.mark.parametrize(
        "status,kind,retryable",
        [
            (401, ErrorKind.AUTHENTICATION, False),
            (403, ErrorKind.AUTHENTICATION, False),
            (404, ErrorKind.OBJECT_NOT_FOUND, False),
            (409, ErrorKind.OBJECT_EXISTS, False),
            (423, ErrorKind.OBJECT_LOCKED, False),
            (429, ErrorKind.RATE_LIMITED, True),
            (500, ErrorKind.SERVER_ERROR, True),
            (503, ErrorKind.SERVER_ERROR, True),
            (400, ErrorKind.REQUEST_FAILED, False),
            (415, ErrorKind.REQUEST_FAILED, False),
        ],
    )
    def test_status_table(self, status, kind, retryable):
        error = classify_response(status, "Reason", "")

        assert error.kind is kind
        assert error.retryable is retryable
        assert error.status_code == status
        assert error.details["status_code"] == status

    def test_message_taken_from_body(self):
        body = (
            '<exc:exception xmlns:exc="http://www.sap.com/abapxml/types/communicationframework">'
            '<message lang="EN">Object ZTEST is locked by user OTHER</message>'
            "</exc:exception>"
        )

        error = classify_response(423, "Locked", body)

        assert "Object ZTEST is locked by user OTHER" in error.message

    def test_falls_back_to_status_text(self):
        error = classify_response(404, "Not Found", "no markup here")

        assert error.message == "Resource not found: Not Found"

    def test_body_is_truncated_in_details(self):
        error = classify_response(500, "Internal Server Error", "x" * 5000)

        assert len(error.details["body"]) == 1000


class TestExtractErrorMessage:
    """Test message extraction from heterogeneous error bodies."""

    def test_message_element(self):
        assert extract_error_message("<message>Broken</message>") == "Broken"

    def test_exception_text_attribute(self):
        body = '<exception type="ResourceNotFound" text="Program does not exist"/>'

        assert extract_error_message(body) == "Program does not exist"

    def test_error_element(self):
        assert extract_error_message("<error> Bad request </error>") == "Bad request"

    def test_message_wins_over_error(self):
        body = "<error>generic</error><message>specific</message>"

        assert extract_error_message(body) == "specific"

    def test_no_match(self):
        assert extract_error_message("plain text") is None
        assert extract_error_message(None) is None


class TestClassifyException:
    """Test network failure classification."""

    def test_timeout_is_retryable(self):
        error = classify_exception(httpx.ReadTimeout("timed out"))

        assert error.kind is ErrorKind.CONNECTION
        assert error.retryable is True

    def test_connection_refused_is_permanent(self):
        error = classify_exception(
            httpx.ConnectError("[Errno 111] Connection refused"), host="sap.example.com"
        )

        assert error.kind is ErrorKind.CONNECTION
        assert error.retryable is False
        assert error.details["host"] == "sap.example.com"

    def test_dns_failure_is_permanent(self):
        error = classify_exception(
            httpx.ConnectError("[Errno -2] Name or service not known"),
            host="nowhere.invalid",
        )

        assert error.retryable is False
        assert "Host not found" in error.message

    def test_ssl_failure_is_permanent(self):
        error = classify_exception(
            httpx.ConnectError("[SSL: CERTIFICATE_VERIFY_FAILED] certificate verify failed")
        )

        assert error.retryable is False
        assert "SAP_ALLOW_INSECURE" in error.message

    def test_other_transport_error_is_retryable(self):
        error = classify_exception(httpx.RemoteProtocolError("peer closed connection"))

        assert error.kind is ErrorKind.CONNECTION
        assert error.retryable is True

    def test_adt_error_passes_through(self):
        original = AdtError(ErrorKind.CSRF, "bad token")

        assert classify_exception(original) is original

    def test_unknown_exception_is_internal(self):
        error = classify_exception(RuntimeError("boom"))

        assert error.kind is ErrorKind.INTERNAL
        assert error.retryable is False


class TestAdtError:
    """Test error rendering."""

    def test_str_includes_kind(self):
        error = AdtError(ErrorKind.OBJECT_LOCKED, "locked")

        assert str(error) == "[object-locked] locked"

    def test_to_tool_error(self):
        error = AdtError.not_found("PROG", "ZTEST")

        result = error.to_tool_error()

        assert result["isError"] is True
        payload = json.loads(result["content"][0]["text"])
        assert payload["error"] == "object-not-found"
        assert payload["message"] == "PROG 'ZTEST' not found"
        assert payload["details"]["object_name"] == "ZTEST"
        assert payload["isRetryable"] is False

    def test_locked_helper_carries_details(self):
        error = AdtError.locked("/programs/programs/ztest", "no handle", lock_uri="x")

        assert error.kind is ErrorKind.OBJECT_LOCKED
        assert error.details["object_uri"] == "/programs/programs/ztest"
        assert error.details["lock_uri"] == "x"
        assert "no handle" in error.message

    def test_wrap_error(self):
        error = wrap_error(KeyError("missing"))

        assert error.kind is ErrorKind.INTERNAL
        assert error.details["original_error"] == "KeyError"
