"""MCP-style tool providers and the tool catalog.

Providers list and invoke tools over an opaque transport. The catalog
aggregates the providers reachable by one conversation, and the registry
decides which providers those are.
"""

from mcp_client.client import (
    HTTPToolProvider,
    ToolProvider,
    ToolProviderAuthError,
    ToolProviderConnectionError,
    ToolProviderError,
)
from mcp_client.catalog import ToolCatalog, UnknownToolError
from mcp_client.local import LocalToolProvider
from mcp_client.registry import ProviderScope, ToolProviderRegistry

__all__ = [
    "HTTPToolProvider",
    "LocalToolProvider",
    "ProviderScope",
    "ToolCatalog",
    "ToolProvider",
    "ToolProviderAuthError",
    "ToolProviderConnectionError",
    "ToolProviderError",
    "ToolProviderRegistry",
    "UnknownToolError",
]
