"""In-process tool provider.

Registers plain Python callables as tools. Input is validated against
each tool's JSON Schema before the handler runs; sync handlers run in a
worker thread so they never block the event loop.
"""

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Callable, Optional

from shared.logging import get_logger
from shared.models import ToolCallResult, ToolDescriptor
from shared.schema import validate_schema
from mcp_client.client import ToolProvider, format_tool_output

logger = get_logger(__name__)


ToolHandler = Callable[..., Any]


def _accepted_parameters(handler: ToolHandler, parameters: dict[str, Any]) -> dict[str, Any]:
    """Drop parameters the handler cannot take (collected params are shared by a chain)."""
    signature = inspect.signature(handler)
    if any(p.kind is inspect.Parameter.VAR_KEYWORD for p in signature.parameters.values()):
        return dict(parameters)

    names = {
        p.name for p in signature.parameters.values()
        if p.kind in (inspect.Parameter.POSITIONAL_OR_KEYWORD, inspect.Parameter.KEYWORD_ONLY)
    }
    return {k: v for k, v in parameters.items() if k in names}


@dataclass
class _RegisteredTool:
    descriptor: ToolDescriptor
    handler: ToolHandler


class LocalToolProvider(ToolProvider):
    """
    Tool provider for tools implemented in this process.

    Handlers receive the tool parameters as keyword arguments. A handler
    signals failure by raising or by returning a mapping with an "error" key.
    """

    def __init__(self, name: str = "local") -> None:
        self.name = name
        self._tools: dict[str, _RegisteredTool] = {}

    def register(
        self,
        name: str,
        handler: ToolHandler,
        description: str = "",
        input_schema: Optional[dict[str, Any]] = None
    ) -> ToolDescriptor:
        """
        Register a tool.

        Args:
            name: Tool name
            handler: Callable invoked with the parameters as keyword arguments
            description: Description shown to the LLM
            input_schema: JSON Schema for the parameters

        Returns:
            The registered tool's descriptor

        Raises:
            ValueError: If the name is already registered
        """
        if name in self._tools:
            raise ValueError(f"Tool '{name}' is already registered")

        descriptor = ToolDescriptor.from_schema(name, description, input_schema)
        self._tools[name] = _RegisteredTool(descriptor=descriptor, handler=handler)

        logger.info(
            "Tool registered",
            provider=self.name,
            tool=name,
            required=list(descriptor.required_parameters)
        )
        return descriptor

    def tool(
        self,
        name: Optional[str] = None,
        description: Optional[str] = None,
        input_schema: Optional[dict[str, Any]] = None
    ) -> Callable[[ToolHandler], ToolHandler]:
        """Decorator form of register(); defaults to the function name and docstring."""
        def decorator(func: ToolHandler) -> ToolHandler:
            self.register(
                name or func.__name__,
                func,
                description=description if description is not None else inspect.getdoc(func) or "",
                input_schema=input_schema
            )
            return func
        return decorator

    def unregister(self, name: str) -> bool:
        """Remove a tool. Returns False if it was not registered."""
        if name in self._tools:
            del self._tools[name]
            logger.info("Tool unregistered", provider=self.name, tool=name)
            return True
        return False

    async def list_tools(self) -> list[ToolDescriptor]:
        return [registered.descriptor for registered in self._tools.values()]

    async def invoke(self, tool_name: str, parameters: dict[str, Any]) -> ToolCallResult:
        registered = self._tools.get(tool_name)
        if registered is None:
            return ToolCallResult.failure(tool_name, f"Tool '{tool_name}' not found")

        handler = registered.handler
        parameters = _accepted_parameters(handler, parameters)

        is_valid, errors = validate_schema(parameters, registered.descriptor.input_schema)
        if not is_valid:
            return ToolCallResult.failure(
                tool_name, f"Validation failed: {'; '.join(errors)}"
            )

        try:
            if inspect.iscoroutinefunction(handler):
                result = await handler(**parameters)
            else:
                result = await asyncio.to_thread(handler, **parameters)
        except Exception as e:
            logger.error(
                "Tool execution failed",
                provider=self.name,
                tool=tool_name,
                error=str(e),
                exc_info=True
            )
            return ToolCallResult.failure(tool_name, str(e) or type(e).__name__)

        if isinstance(result, ToolCallResult):
            return result

        if isinstance(result, dict) and result.get("error"):
            return ToolCallResult.failure(tool_name, str(result["error"]))

        return ToolCallResult.success(tool_name, format_tool_output(result))
