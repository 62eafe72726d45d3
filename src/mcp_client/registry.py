"""Tool provider registry.

Owns the tool providers of the running application and decides which of
them a conversation can reach: global providers, the user's providers
and the conversation's own providers, in that order.
"""

from enum import Enum
from typing import Optional

from shared.logging import get_logger
from shared.models import ConversationScope
from mcp_client.catalog import ToolCatalog
from mcp_client.client import ToolProvider

logger = get_logger(__name__)


class ProviderScope(str, Enum):
    GLOBAL = "global"
    USER = "user"
    CONVERSATION = "conversation"


class ToolProviderRegistry:
    """
    Registry of tool providers, scoped to everyone, a user, or a conversation.

    An instance is created by the embedding application and injected where
    needed. Providers are kept alive for the registry's lifetime and closed
    by close().
    """

    def __init__(self) -> None:
        self._global: dict[str, ToolProvider] = {}
        self._by_user: dict[str, dict[str, ToolProvider]] = {}
        self._by_conversation: dict[str, dict[str, ToolProvider]] = {}

    def _bucket(self, scope: ProviderScope, key: Optional[str]) -> dict[str, ToolProvider]:
        if scope is ProviderScope.GLOBAL:
            return self._global
        if key is None:
            raise ValueError(f"A key is required for {scope.value} providers")
        if scope is ProviderScope.USER:
            return self._by_user.setdefault(key, {})
        return self._by_conversation.setdefault(key, {})

    def register(
        self,
        provider: ToolProvider,
        scope: ProviderScope = ProviderScope.GLOBAL,
        key: Optional[str] = None
    ) -> None:
        """
        Register a provider.

        Args:
            provider: Tool provider
            scope: Who can reach the provider
            key: User id or conversation id for scoped providers

        Raises:
            ValueError: If a provider with the same name exists in the scope
        """
        bucket = self._bucket(scope, key)
        if provider.name in bucket:
            raise ValueError(
                f"Provider '{provider.name}' is already registered for {scope.value}"
                + (f" '{key}'" if key else "")
            )
        bucket[provider.name] = provider
        logger.info("Tool provider registered", provider=provider.name, scope=scope.value, key=key)

    def add_global(self, provider: ToolProvider) -> None:
        self.register(provider, ProviderScope.GLOBAL)

    def add_for_user(self, user_id: str, provider: ToolProvider) -> None:
        self.register(provider, ProviderScope.USER, user_id)

    def add_for_conversation(self, conversation_id: str, provider: ToolProvider) -> None:
        self.register(provider, ProviderScope.CONVERSATION, conversation_id)

    def unregister(
        self,
        name: str,
        scope: ProviderScope = ProviderScope.GLOBAL,
        key: Optional[str] = None
    ) -> Optional[ToolProvider]:
        """Remove a provider and return it (the caller closes it), or None if absent."""
        provider = self._bucket(scope, key).pop(name, None)
        if provider is not None:
            logger.info("Tool provider unregistered", provider=name, scope=scope.value, key=key)
        return provider

    def providers_for(self, scope: ConversationScope) -> list[ToolProvider]:
        """Providers reachable from a conversation: global, then user, then conversation."""
        providers = list(self._global.values())
        if scope.user_id is not None:
            providers.extend(self._by_user.get(scope.user_id, {}).values())
        providers.extend(self._by_conversation.get(scope.conversation_id, {}).values())
        return providers

    def catalog_for(self, scope: ConversationScope) -> ToolCatalog:
        """Build a fresh tool catalog for a conversation."""
        return ToolCatalog(self.providers_for(scope))

    def all_providers(self) -> list[ToolProvider]:
        providers = list(self._global.values())
        for bucket in self._by_user.values():
            providers.extend(bucket.values())
        for bucket in self._by_conversation.values():
            providers.extend(bucket.values())
        return providers

    async def close(self) -> None:
        """Close every provider. Failures are logged, not raised."""
        for provider in self.all_providers():
            try:
                await provider.close()
            except Exception as e:
                logger.error("Error closing tool provider", provider=provider.name, error=str(e))

        self._global.clear()
        self._by_user.clear()
        self._by_conversation.clear()
        logger.info("Tool provider registry closed")
