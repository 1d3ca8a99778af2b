"""JSON-RPC 2.0 framing for the ADT tool server.

One request per line comes in on stdin; responses are plain dicts ready for
``json.dumps``. A request without an ``id`` is a notification and gets no
response.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

JSONRPC_VERSION = "2.0"

# JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

RequestId = Union[int, str, None]


class ProtocolError(Exception):
    """Input that cannot be dispatched, with the error code to answer with."""

    def __init__(self, code: int, message: str, detail: Optional[str] = None):
        super().__init__(detail or message)
        self.code = code
        self.message = message
        self.detail = detail

    def to_response(self, request_id: RequestId = None) -> Dict[str, Any]:
        data = {"detail": self.detail} if self.detail else None
        return error_response(request_id, self.code, self.message, data)


@dataclass
class JsonRpcRequest:
    method: str
    id: RequestId = None
    params: Optional[Dict[str, Any]] = None

    @property
    def is_notification(self) -> bool:
        return self.id is None

    def param(self, name: str, default: Any = None) -> Any:
        return (self.params or {}).get(name, default)


def _invalid(detail: str) -> ProtocolError:
    return ProtocolError(INVALID_REQUEST, "Invalid Request", detail)


def parse_request(line: str) -> JsonRpcRequest:
    """Parse one line of input.

    Raises:
        ProtocolError: ``PARSE_ERROR`` for malformed JSON, ``INVALID_REQUEST``
            for a message that is not a JSON-RPC 2.0 request
    """
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        raise ProtocolError(PARSE_ERROR, "Parse error", str(e)) from e

    if not isinstance(data, dict):
        raise _invalid("Request must be a JSON object")
    if data.get("jsonrpc") != JSONRPC_VERSION:
        raise _invalid(f"jsonrpc must be '{JSONRPC_VERSION}', got {data.get('jsonrpc')!r}")

    method = data.get("method")
    if not isinstance(method, str) or not method:
        raise _invalid("method must be a non-empty string")

    params = data.get("params")
    if params is not None and not isinstance(params, dict):
        raise _invalid("params must be an object")

    return JsonRpcRequest(method=method, id=data.get("id"), params=params)


def error_response(
    request_id: RequestId, code: int, message: str, data: Optional[Any] = None
) -> Dict[str, Any]:
    error: Dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": error}


def success_response(request_id: RequestId, result: Any) -> Dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def tool_result(payload: Dict[str, Any], is_error: bool = False) -> Dict[str, Any]:
    """Wrap a payload as the single JSON text block of a tools/call result."""
    result: Dict[str, Any] = {
        "content": [
            {"type": "text", "text": json.dumps(payload, indent=2, default=str)}
        ]
    }
    if is_error:
        result["isError"] = True
    return result
