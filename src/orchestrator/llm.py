"""LLM Integration Layer using LlamaIndex.

The orchestration engine only needs single-shot text completion:
one prompt in, one text answer out. Supported providers:
- Azure OpenAI
- OpenAI
- Anthropic
- Mock (deterministic, for tests and offline development)

The LLM has no direct tool access; it only answers prompts.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Callable, Optional

from shared.config import LLMSettings
from shared.logging import get_logger

logger = get_logger(__name__)


class LLMProvider(ABC):
    """Abstract base class for text-completion providers."""

    @abstractmethod
    async def complete(
        self,
        prompt: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None
    ) -> str:
        """
        Complete a prompt.

        Args:
            prompt: Full prompt text
            temperature: Sampling temperature override
            max_tokens: Maximum tokens override

        Returns:
            The completion text
        """
        pass


class LlamaIndexProvider(LLMProvider):
    """Base for providers backed by a LlamaIndex LLM."""

    def __init__(self, settings: LLMSettings) -> None:
        self.settings = settings
        self._llm = None

    @abstractmethod
    def _build_llm(self) -> Any:
        """Create the LlamaIndex LLM instance."""
        pass

    def _get_llm(self) -> Any:
        """Lazy initialization of LlamaIndex LLM."""
        if self._llm is None:
            self._llm = self._build_llm()
        return self._llm

    async def complete(
        self,
        prompt: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None
    ) -> str:
        llm = self._get_llm()

        # Temporarily override settings if provided
        saved = {"temperature": llm.temperature, "max_tokens": llm.max_tokens}
        if temperature is not None:
            llm.temperature = temperature
        if max_tokens is not None:
            llm.max_tokens = max_tokens

        try:
            response = await llm.acomplete(prompt)
        except Exception as e:
            logger.error("LLM completion failed", provider=self.settings.provider, error=str(e))
            raise
        finally:
            llm.temperature = saved["temperature"]
            llm.max_tokens = saved["max_tokens"]

        return response.text or ""


class AzureOpenAIProvider(LlamaIndexProvider):
    """Azure OpenAI LLM provider using LlamaIndex."""

    def _build_llm(self) -> Any:
        from llama_index.llms.azure_openai import AzureOpenAI

        return AzureOpenAI(
            deployment_name=self.settings.deployment_name or self.settings.model,
            model=self.settings.model,
            api_key=self.settings.api_key,
            azure_endpoint=self.settings.api_base,
            api_version=self.settings.api_version,
            temperature=self.settings.temperature,
            max_tokens=self.settings.max_tokens,
        )


class OpenAIProvider(LlamaIndexProvider):
    """OpenAI LLM provider using LlamaIndex."""

    def _build_llm(self) -> Any:
        from llama_index.llms.openai import OpenAI

        return OpenAI(
            model=self.settings.model,
            api_key=self.settings.api_key,
            api_base=self.settings.api_base,
            temperature=self.settings.temperature,
            max_tokens=self.settings.max_tokens,
        )


class AnthropicProvider(LlamaIndexProvider):
    """Anthropic LLM provider using LlamaIndex."""

    def _build_llm(self) -> Any:
        from llama_index.llms.anthropic import Anthropic

        return Anthropic(
            model=self.settings.model,
            api_key=self.settings.api_key,
            temperature=self.settings.temperature,
            max_tokens=self.settings.max_tokens,
        )


class MockLLMProvider(LLMProvider):
    """
    Deterministic LLM provider for testing without API calls.

    Answers are taken, in order of precedence, from queued responses,
    from the responder callable, or from a fixed default.
    """

    DEFAULT_RESPONSE = "This is a mock response."

    def __init__(
        self,
        settings: Optional[LLMSettings] = None,
        responder: Optional[Callable[[str], str]] = None,
        delay: float = 0.0
    ) -> None:
        self.settings = settings
        self.responder = responder
        self.delay = delay
        self.call_history: list[dict[str, Any]] = []
        self._queue: deque[str] = deque()
        self._failure: Optional[Exception] = None

    def set_next_response(self, response: str) -> None:
        """Queue the next response to return."""
        self._queue.append(response)

    def fail_with(self, error: Optional[Exception]) -> None:
        """Raise this error from every call until reset with None."""
        self._failure = error

    @property
    def prompts(self) -> list[str]:
        return [call["prompt"] for call in self.call_history]

    async def complete(
        self,
        prompt: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None
    ) -> str:
        self.call_history.append({
            "prompt": prompt,
            "temperature": temperature,
            "max_tokens": max_tokens
        })

        if self.delay:
            await asyncio.sleep(self.delay)

        if self._failure is not None:
            raise self._failure

        if self._queue:
            return self._queue.popleft()

        if self.responder is not None:
            return self.responder(prompt)

        return self.DEFAULT_RESPONSE


def create_llm_provider(settings: LLMSettings) -> LLMProvider:
    """
    Factory function to create appropriate LLM provider.

    Supports:
    - azure_openai: Azure OpenAI Service
    - openai: OpenAI API
    - anthropic: Anthropic API
    - mock: Mock provider for testing

    Raises:
        ValueError: If provider is not supported
    """
    providers: dict[str, type[LLMProvider]] = {
        "azure_openai": AzureOpenAIProvider,
        "openai": OpenAIProvider,
        "anthropic": AnthropicProvider,
        "mock": MockLLMProvider,
    }

    provider_class = providers.get(settings.provider)
    if not provider_class:
        raise ValueError(
            f"Unsupported LLM provider: {settings.provider}. "
            f"Supported: {list(providers.keys())}"
        )

    logger.info("Creating LLM provider", provider=settings.provider, model=settings.model)
    return provider_class(settings)
