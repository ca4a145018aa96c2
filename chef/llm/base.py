from abc import ABC, abstractmethod
from typing import AsyncIterator

from loguru import logger

from core.config import ConfigManager


class BaseLLM(ABC):
    """Abstract base class for all cloud LLM providers."""

    @abstractmethod
    async def stream(self, messages: list[dict]) -> AsyncIterator[str]:
        """Stream tokens from the LLM.

        Args:
            messages: List of message dicts with "role" and "content" keys.
                A leading "system" message carries the system prompt.

        Yields:
            Token strings one at a time.
        """
        ...

    async def complete(self, messages: list[dict]) -> str:
        """Collect the full streamed response into one string."""
        parts = []
        async for token in self.stream(messages):
            parts.append(token)
        return "".join(parts).strip()


class LLMRouter:
    """Routes LLM requests to the provider selected in config."""

    PROVIDERS = ("claude", "openai")

    def __init__(self, config_manager: ConfigManager):
        self.config_manager = config_manager
        self._providers: dict[str, BaseLLM] = {}

    def get_provider(self) -> BaseLLM:
        """Get or create the configured provider.

        Re-reads the API key from config each time so that key updates
        via the settings API take effect without restart.
        """
        config = self.config_manager.config
        name = config.provider if config.provider in self.PROVIDERS else "claude"
        current_key = getattr(config.api_keys, name, "")

        cached = self._providers.get(name)
        if cached is not None and getattr(cached, "api_key", None) == current_key:
            return cached

        if name == "openai":
            from llm.providers.openai_provider import OpenAIProvider
            self._providers[name] = OpenAIProvider(api_key=current_key)
        else:
            from llm.providers.claude_provider import ClaudeProvider
            self._providers[name] = ClaudeProvider(api_key=current_key)

        logger.info("LLM provider '{}' initialized.", name)
        return self._providers[name]
