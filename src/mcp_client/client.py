"""Tool providers for tool discovery and execution.

A tool provider lists the tools it offers and invokes them by name.
Providers never raise for a failed invocation: the failure is returned
as an error result so one broken tool cannot abort a chain.
"""

import json
import uuid
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from shared.logging import get_logger
from shared.models import ToolCallResult, ToolDescriptor

logger = get_logger(__name__)


class ToolProviderError(Exception):
    """Base exception for tool provider errors."""
    pass


class ToolProviderConnectionError(ToolProviderError):
    """Connection to a tool server failed."""
    pass


class ToolProviderAuthError(ToolProviderError):
    """Authentication with a tool server failed."""
    pass


def format_tool_output(data: Any) -> str:
    """Render tool output as text for the conversation."""
    if data is None:
        return "Tool executed successfully."

    if isinstance(data, str):
        return data

    return json.dumps(data, indent=2, default=str)


class ToolProvider(ABC):
    """
    A source of tools, e.g. a tool server process or endpoint.

    The transport is opaque to the orchestrator: it only lists tools and
    invokes them by name.
    """

    name: str

    @abstractmethod
    async def list_tools(self) -> list[ToolDescriptor]:
        """
        List the tools offered by this provider.

        Raises:
            ToolProviderError: If the provider cannot be reached
        """
        pass

    @abstractmethod
    async def invoke(self, tool_name: str, parameters: dict[str, Any]) -> ToolCallResult:
        """
        Invoke a tool.

        Args:
            tool_name: Tool name as listed by this provider
            parameters: Tool parameters

        Returns:
            Result with either content or error set
        """
        pass

    async def close(self) -> None:
        """Release any resources held by the provider."""
        return None


class HTTPToolProvider(ToolProvider):
    """
    Tool provider backed by an HTTP tool server.

    Server contract:
    - GET /tools returns {"tools": [<OpenAI function spec>, ...]}
    - POST /execute with {"tool_name", "parameters", "request_id"} returns
      {"tool_name", "status", "data", "error"}
    - GET /health returns server status
    """

    def __init__(
        self,
        name: str,
        server_url: str,
        timeout: float = 30.0,
        auth_token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        """
        Initialize the provider.

        Args:
            name: Provider name used in logs and registries
            server_url: Tool server base URL
            timeout: Request timeout in seconds
            auth_token: Optional bearer token
            transport: Optional httpx transport (used by tests)
        """
        self.name = name
        self.server_url = server_url.rstrip("/")
        self.timeout = timeout
        self._auth_token = auth_token
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_headers(self) -> dict[str, str]:
        """Get request headers including authentication."""
        headers = {"Content-Type": "application/json"}
        if self._auth_token:
            headers["Authorization"] = f"Bearer {self._auth_token}"
        return headers

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.server_url,
                timeout=self.timeout,
                headers=self._get_headers(),
                transport=self._transport
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "HTTPToolProvider":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @staticmethod
    def _check_auth(response: httpx.Response) -> None:
        if response.status_code == 401:
            raise ToolProviderAuthError("Authentication required")
        if response.status_code == 403:
            raise ToolProviderAuthError("Access denied")

    @retry(
        retry=retry_if_exception_type(ToolProviderConnectionError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True
    )
    async def health_check(self) -> dict[str, Any]:
        """
        Check tool server health.

        Raises:
            ToolProviderConnectionError: If server is unreachable
        """
        try:
            client = await self._get_client()
            response = await client.get("/health")
            response.raise_for_status()
            return response.json()
        except httpx.ConnectError as e:
            raise ToolProviderConnectionError(f"Cannot connect to tool server: {e}")
        except httpx.HTTPStatusError as e:
            raise ToolProviderError(f"Health check failed: {e}")

    @retry(
        retry=retry_if_exception_type(ToolProviderConnectionError),
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        reraise=True
    )
    async def list_tools(self) -> list[ToolDescriptor]:
        """
        List tools from the tool server.

        Raises:
            ToolProviderConnectionError: If server is unreachable
            ToolProviderAuthError: If authentication fails
            ToolProviderError: If the server answers with an error
        """
        try:
            client = await self._get_client()
            response = await client.get("/tools")
            self._check_auth(response)
            response.raise_for_status()
            data = response.json()
        except httpx.ConnectError as e:
            raise ToolProviderConnectionError(f"Cannot connect to tool server: {e}")
        except httpx.HTTPStatusError as e:
            raise ToolProviderError(f"Tool listing failed: {e}")

        descriptors = []
        for spec in data.get("tools", []):
            try:
                descriptors.append(ToolDescriptor.from_function_spec(spec))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(
                    "Skipping malformed tool definition",
                    provider=self.name,
                    error=str(e)
                )
        return descriptors

    async def invoke(self, tool_name: str, parameters: dict[str, Any]) -> ToolCallResult:
        """Execute a tool on the tool server."""
        request_id = str(uuid.uuid4())

        logger.debug(
            "Executing tool",
            provider=self.name,
            tool=tool_name,
            request_id=request_id
        )

        try:
            client = await self._get_client()
            response = await client.post(
                "/execute",
                json={
                    "tool_name": tool_name,
                    "parameters": parameters,
                    "request_id": request_id
                }
            )
            self._check_auth(response)
            response.raise_for_status()
            data = response.json()
        except ToolProviderAuthError as e:
            return ToolCallResult.failure(tool_name, str(e))
        except httpx.ConnectError as e:
            logger.error("Tool server connection failed", provider=self.name, error=str(e))
            return ToolCallResult.failure(tool_name, f"Cannot connect to tool server: {e}")
        except httpx.HTTPStatusError as e:
            logger.error("Tool server request failed", provider=self.name, error=str(e))
            return ToolCallResult.failure(tool_name, f"Request failed: {e}")
        except httpx.HTTPError as e:
            logger.error("Tool server request failed", provider=self.name, error=str(e))
            return ToolCallResult.failure(tool_name, f"Request failed: {e}")

        if data.get("status", "success") != "success" or data.get("error"):
            return ToolCallResult.failure(
                tool_name,
                data.get("error") or f"Tool returned status '{data.get('status')}'"
            )

        return ToolCallResult.success(tool_name, format_tool_output(data.get("data")))
