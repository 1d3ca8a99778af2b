"""Tool definitions exposed by the ADT tool server.

Each tool has a pydantic argument model (its JSON schema is the tool's
``inputSchema``) and an async handler that calls the ``AdtClient``.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

from pydantic import BaseModel, Field, ValidationError

from ..api_clients import AdtClient, AdtError, ErrorKind, wrap_error
from .protocol import tool_result

logger = logging.getLogger(__name__)


class NoArguments(BaseModel):
    pass


class ObjectArguments(BaseModel):
    uri: str = Field(
        min_length=1,
        description="Object URI, e.g. /sap/bc/adt/programs/programs/ztest",
    )


class WriteSourceArguments(ObjectArguments):
    source: str = Field(description="Complete new source code")
    activate: bool = Field(default=False, description="Activate after writing")


class UnlockArguments(ObjectArguments):
    lock_handle: Optional[str] = Field(
        default=None, description="Lock handle (defaults to the registered one)"
    )


class ActivateArguments(BaseModel):
    uris: List[str] = Field(min_length=1, description="Object URIs to activate")
    preaudit_requested: bool = Field(
        default=False, description="Request a pre-audit run"
    )
    object_types: Optional[List[Optional[str]]] = Field(
        default=None, description="ADT type codes per URI, e.g. PROG/P"
    )


class SearchArguments(BaseModel):
    query: str = Field(min_length=1, description="Search pattern, e.g. ZCL_*")
    object_type: Optional[str] = Field(default=None, description="ADT type filter")
    max_results: Optional[int] = Field(
        default=None, ge=1, le=1000, description="Maximum number of results"
    )
    package_name: Optional[str] = Field(default=None, description="Package filter")


class DeleteArguments(ObjectArguments):
    transport_request: Optional[str] = Field(
        default=None, description="Transport request (empty for $TMP objects)"
    )


class TransportArguments(BaseModel):
    user: Optional[str] = Field(default=None, description="Owner of the requests")
    request_types: Optional[List[str]] = Field(
        default=None, description="Request types, e.g. K, W"
    )


Handler = Callable[[AdtClient, Any], Awaitable[Dict[str, Any]]]


@dataclass
class Tool:
    name: str
    description: str
    arguments: Type[BaseModel]
    handler: Handler

    def definition(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.arguments.model_json_schema(),
        }


async def _test_connection(client: AdtClient, args: NoArguments) -> Dict[str, Any]:
    connected = await client.test_connection()
    return {"connected": connected, **client.connection_info()}


async def _get_object(client: AdtClient, args: ObjectArguments) -> Dict[str, Any]:
    response = await client.get_object(args.uri)
    return {"uri": args.uri, "status": response.status, "content": response.text}


async def _get_source(client: AdtClient, args: ObjectArguments) -> Dict[str, Any]:
    source = await client.get_object_source(args.uri)
    return {"uri": args.uri, "source": source}


async def _write_source(
    client: AdtClient, args: WriteSourceArguments
) -> Dict[str, Any]:
    activation = await client.write_source(args.uri, args.source, args.activate)
    result: Dict[str, Any] = {"uri": args.uri, "written": True}
    if activation is not None:
        result["activation"] = activation.to_dict()
    return result


async def _lock_object(client: AdtClient, args: ObjectArguments) -> Dict[str, Any]:
    handle = await client.lock_object(args.uri)
    return handle.to_dict()


async def _unlock_object(client: AdtClient, args: UnlockArguments) -> Dict[str, Any]:
    await client.unlock_object(args.uri, args.lock_handle)
    return {"uri": args.uri, "unlocked": True}


async def _release_locks(client: AdtClient, args: NoArguments) -> Dict[str, Any]:
    released = await client.release_all_locks()
    return {"released": released}


async def _activate(client: AdtClient, args: ActivateArguments) -> Dict[str, Any]:
    result = await client.activate(
        args.uris,
        preaudit_requested=args.preaudit_requested,
        object_types=args.object_types,
    )
    return result.to_dict()


async def _check_syntax(client: AdtClient, args: ObjectArguments) -> Dict[str, Any]:
    result = await client.check_syntax(args.uri)
    return result.to_dict()


async def _search_objects(
    client: AdtClient, args: SearchArguments
) -> Dict[str, Any]:
    results = await client.search_objects(
        args.query,
        object_type=args.object_type,
        max_results=args.max_results,
        package_name=args.package_name,
    )
    return {"results": [asdict(r) for r in results], "count": len(results)}


async def _delete_object(client: AdtClient, args: DeleteArguments) -> Dict[str, Any]:
    await client.delete_object(args.uri, args.transport_request)
    return {"uri": args.uri, "deleted": True}


async def _get_transports(
    client: AdtClient, args: TransportArguments
) -> Dict[str, Any]:
    requests = await client.get_transport_requests(args.user, args.request_types)
    return {"requests": [asdict(r) for r in requests], "count": len(requests)}


TOOLS: Dict[str, Tool] = {
    tool.name: tool
    for tool in [
        Tool(
            "test_connection",
            "Test the connection to the SAP system",
            NoArguments,
            _test_connection,
        ),
        Tool(
            "get_object",
            "Read an ADT object (metadata XML)",
            ObjectArguments,
            _get_object,
        ),
        Tool(
            "get_source",
            "Read the main source code of an ABAP object",
            ObjectArguments,
            _get_source,
        ),
        Tool(
            "write_source",
            "Replace the source code of an ABAP object (lock, update, unlock)",
            WriteSourceArguments,
            _write_source,
        ),
        Tool("lock_object", "Lock an object for editing", ObjectArguments, _lock_object),
        Tool(
            "unlock_object",
            "Release the lock on an object",
            UnlockArguments,
            _unlock_object,
        ),
        Tool(
            "release_locks",
            "Release every lock held by this server",
            NoArguments,
            _release_locks,
        ),
        Tool("activate", "Activate one or more objects", ActivateArguments, _activate),
        Tool(
            "check_syntax",
            "Check the syntax of an object without activating it",
            ObjectArguments,
            _check_syntax,
        ),
        Tool(
            "search_objects",
            "Search the repository by name pattern",
            SearchArguments,
            _search_objects,
        ),
        Tool(
            "delete_object",
            "Delete an object through the ADT deletion API",
            DeleteArguments,
            _delete_object,
        ),
        Tool(
            "get_transports",
            "List transport requests",
            TransportArguments,
            _get_transports,
        ),
    ]
}


def list_tools() -> List[Dict[str, Any]]:
    return [tool.definition() for tool in TOOLS.values()]


async def call_tool(
    client: AdtClient, name: str, arguments: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """Run a tool and render its outcome as a tool-call result.

    Failures inside the tool (invalid arguments, ADT errors) come back as
    ``isError`` results, not as exceptions.

    Raises:
        KeyError: Unknown tool name
    """
    tool = TOOLS[name]

    try:
        args = tool.arguments.model_validate(arguments or {})
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ()))
        error = AdtError(
            ErrorKind.VALIDATION,
            f"Invalid arguments for {name}: {first.get('msg')}",
            {"field": field or None, "errors": e.errors(include_url=False)},
        )
        return error.to_tool_error()

    try:
        payload = await tool.handler(client, args)
    except AdtError as e:
        logger.warning(f"Tool {name} failed: {e}")
        return e.to_tool_error()
    except Exception as e:
        logger.exception(f"Unexpected error in tool {name}")
        return wrap_error(e).to_tool_error()

    return tool_result(payload)
