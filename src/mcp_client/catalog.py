"""Tool Catalog.

Aggregates tool descriptors from every provider reachable by one
conversation and resolves tool names back to their provider.
"""

import asyncio
from typing import Any, Optional

from shared.logging import get_logger
from shared.models import ToolCallResult, ToolDescriptor
from mcp_client.client import ToolProvider

logger = get_logger(__name__)


class UnknownToolError(LookupError):
    """A tool name could not be resolved to any provider."""

    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class ToolCatalog:
    """
    Read-only view over a set of tool providers.

    A provider that cannot be reached is logged and left out of the
    listing; it never fails the whole catalog. Nothing is cached across
    catalogs: each conversation turn builds a fresh one.
    """

    def __init__(self, providers: Optional[list[ToolProvider]] = None) -> None:
        self.providers = list(providers or [])
        self._by_name: dict[str, tuple[ToolDescriptor, ToolProvider]] = {}
        self._listed = False

    async def list_tools(self) -> list[ToolDescriptor]:
        """
        List tools from every provider, in provider order.

        When two providers offer the same tool name, the first one wins.
        """
        listings = await asyncio.gather(
            *(provider.list_tools() for provider in self.providers),
            return_exceptions=True
        )

        by_name: dict[str, tuple[ToolDescriptor, ToolProvider]] = {}
        tools: list[ToolDescriptor] = []

        for provider, listing in zip(self.providers, listings):
            if isinstance(listing, BaseException):
                if isinstance(listing, asyncio.CancelledError):
                    raise listing
                logger.warning(
                    "Tool provider unavailable",
                    provider=provider.name,
                    error=str(listing)
                )
                continue

            for descriptor in listing:
                if descriptor.name in by_name:
                    logger.warning(
                        "Duplicate tool name ignored",
                        tool=descriptor.name,
                        provider=provider.name,
                        kept=by_name[descriptor.name][1].name
                    )
                    continue
                by_name[descriptor.name] = (descriptor, provider)
                tools.append(descriptor)

        self._by_name = by_name
        self._listed = True

        logger.debug("Tool catalog listed", tool_count=len(tools), provider_count=len(self.providers))
        return tools

    async def get(self, name: str) -> Optional[ToolDescriptor]:
        """Get a tool descriptor by name, listing providers if needed."""
        entry = await self._resolve(name)
        return entry[0] if entry else None

    async def _resolve(self, name: str) -> Optional[tuple[ToolDescriptor, ToolProvider]]:
        entry = self._by_name.get(name)
        if entry is None:
            # The listing may be stale or missing; refresh once
            await self.list_tools()
            entry = self._by_name.get(name)
        return entry

    async def invoke(self, name: str, parameters: dict[str, Any]) -> ToolCallResult:
        """
        Invoke a tool through the provider that offers it.

        Raises:
            UnknownToolError: If no provider offers the tool
        """
        entry = await self._resolve(name)
        if entry is None:
            raise UnknownToolError(name)

        _, provider = entry
        return await provider.invoke(name, parameters)

    def __len__(self) -> int:
        return len(self._by_name)
