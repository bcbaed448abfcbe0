"""
Agent Provider Registry

Maps provider ids to provider instances. Registries are plain objects so
callers (and tests) can build their own instead of sharing module state.
"""

import logging
from typing import TYPE_CHECKING, Dict, List, Optional

from agentrelay.core.ai.base import BaseAgentProvider
from agentrelay.core.ai.claude_provider import ClaudeCliProvider
from agentrelay.core.ai.codex_provider import CodexCliProvider
from agentrelay.core.ai.ollama_provider import OllamaProvider
from agentrelay.core.errors import UnknownProviderError

if TYPE_CHECKING:
    from agentrelay.config.settings import Settings

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Registry of available agent providers."""

    def __init__(self) -> None:
        self._providers: Dict[str, BaseAgentProvider] = {}

    def register(self, provider: BaseAgentProvider) -> None:
        self._providers[provider.provider_id] = provider
        logger.info(f"Registered provider: {provider.provider_id}")

    def get(self, provider_id: str) -> BaseAgentProvider:
        """
        Get a provider by id.

        Raises:
            UnknownProviderError: If no provider is registered under the id
        """
        provider = self._providers.get(provider_id)
        if provider is None:
            raise UnknownProviderError(provider_id)
        return provider

    def has(self, provider_id: str) -> bool:
        return provider_id in self._providers

    def get_all(self) -> List[dict]:
        return [p.describe() for p in self._providers.values()]

    def providers(self) -> List[BaseAgentProvider]:
        return list(self._providers.values())


def default_registry(settings: Optional["Settings"] = None) -> ProviderRegistry:
    """Registry with Claude, Ollama and Codex configured from settings."""
    from agentrelay.config.settings import load_settings

    settings = settings or load_settings()
    registry = ProviderRegistry()
    registry.register(ClaudeCliProvider(
        binary=settings.claude_binary,
        timeout=settings.process_timeout,
        tool_result_max_length=settings.tool_result_max_length,
    ))
    registry.register(OllamaProvider(host=settings.ollama_host, timeout=settings.process_timeout))
    registry.register(CodexCliProvider(
        binary=settings.codex_binary,
        timeout=settings.process_timeout,
        tool_result_max_length=settings.tool_result_max_length,
    ))
    logger.info(f"Initialized {len(registry.providers())} providers: {', '.join(p['id'] for p in registry.get_all())}")
    return registry
