"""JSON-RPC stdio server exposing ADT operations as tools."""

from .server import ToolServer, main

__all__ = ["ToolServer", "main"]
