"""Stdio tool server.

Reads JSON-RPC requests from stdin, runs the requested ADT tools, and writes
responses to stdout. Logging goes to stderr; stdout carries protocol frames
only.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Optional, TextIO

from .. import __version__
from ..api_clients import AdtClient
from ..config import ServerConfig, load_config
from .protocol import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    METHOD_NOT_FOUND,
    JsonRpcRequest,
    ProtocolError,
    error_response,
    parse_request,
    success_response,
)
from .tools import TOOLS, call_tool, list_tools

logger = logging.getLogger(__name__)

SERVER_NAME = "abap-adt-mcp"
PROTOCOL_VERSION = "2024-11-05"


def setup_logging(level: str = "info") -> None:
    """Configure stderr logging; httpx stays quiet unless debugging."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )
    if level.lower() != "debug":
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)


class ToolServer:
    """ADT tool server - JSON-RPC over stdio in front of one ``AdtClient``.

    Args:
        config: Server configuration
        client: Client to use (built from ``config`` by default)
    """

    def __init__(self, config: ServerConfig, client: Optional[AdtClient] = None):
        self.config = config
        self.client = client or AdtClient(config)

    async def process_line(self, line: str) -> Optional[dict]:
        """Process a single line of input containing a JSON-RPC request.

        Returns:
            JSON-RPC response as dictionary, None for notifications
        """
        try:
            request = parse_request(line)
        except ProtocolError as e:
            logger.warning(f"Rejected input: {e}")
            return e.to_response()

        return await self.process_request(request)

    async def process_request(self, request: JsonRpcRequest) -> Optional[dict]:
        method = request.method

        if request.is_notification:
            logger.debug(f"Notification received: {method}")
            return None

        if method == "initialize":
            result = {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {}},
                "serverInfo": {"name": SERVER_NAME, "version": __version__},
            }
        elif method == "ping":
            result = {}
        elif method == "tools/list":
            result = {"tools": list_tools()}
        elif method == "tools/call":
            return await self._tools_call(request)
        else:
            return error_response(
                request.id, METHOD_NOT_FOUND, f"Method not found: {method}"
            )

        return success_response(request.id, result)

    async def _tools_call(self, request: JsonRpcRequest) -> dict:
        name = request.param("name")
        if name not in TOOLS:
            return error_response(request.id, INVALID_PARAMS, f"Unknown tool: {name}")

        arguments = request.param("arguments")
        if arguments is not None and not isinstance(arguments, dict):
            return error_response(
                request.id, INVALID_PARAMS, "arguments must be an object"
            )

        try:
            result = await call_tool(self.client, name, arguments)
        except Exception as e:
            logger.exception(f"Internal error while running {name}")
            return error_response(request.id, INTERNAL_ERROR, f"Internal error: {e}")
        return success_response(request.id, result)

    async def shutdown(self) -> None:
        """Release every lock still held, then close the HTTP client."""
        try:
            if len(self.client.locks):
                released = await self.client.release_all_locks()
                logger.info(f"Released {released} lock(s) on shutdown")
        finally:
            await self.client.close()

    async def run_stdio_loop(
        self, stdin: Optional[TextIO] = None, stdout: Optional[TextIO] = None
    ):
        """Run main stdio loop - read from stdin, write to stdout.

        Args:
            stdin: Input stream (default: sys.stdin)
            stdout: Output stream (default: sys.stdout)
        """
        if stdin is None:
            stdin = sys.stdin
        if stdout is None:
            stdout = sys.stdout

        logger.info(f"{SERVER_NAME} {__version__} ready ({self.client.connection.host})")
        try:
            for line in stdin:
                line = line.strip()
                if not line:
                    continue

                response = await self.process_line(line)
                if response is None:
                    continue

                stdout.write(json.dumps(response, default=str) + "\n")
                stdout.flush()
        finally:
            await self.shutdown()

    async def run(self):
        await self.run_stdio_loop()


async def check_connection(config: ServerConfig) -> bool:
    async with AdtClient(config) as client:
        return await client.test_connection()


def main():  # pragma: no cover
    """Synchronous wrapper for CLI entry point with argument parsing."""
    parser = argparse.ArgumentParser(
        prog=SERVER_NAME,
        description="ABAP ADT tool server - JSON-RPC over stdio",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Test the connection to the SAP system and exit",
    )
    args = parser.parse_args()

    try:
        config = load_config()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config.log_level)

    if args.check:
        ok = asyncio.run(check_connection(config))
        print(
            f"Connection to {config.connection.host} "
            f"{'succeeded' if ok else 'failed'}",
            file=sys.stderr,
        )
        sys.exit(0 if ok else 1)

    try:
        asyncio.run(ToolServer(config).run())
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")


if __name__ == "__main__":
    main()
