"""
Agent Provider Layer

One interface for every agent backend (Claude CLI, Codex CLI, Ollama HTTP),
selected through a ProviderRegistry.
"""

from agentrelay.core.ai.base import BaseAgentProvider
from agentrelay.core.ai.claude_provider import ClaudeCliProvider
from agentrelay.core.ai.codex_provider import CodexCliProvider
from agentrelay.core.ai.ollama_provider import OllamaProvider
from agentrelay.core.ai.factory import ProviderRegistry, default_registry

__all__ = [
    "BaseAgentProvider",
    "ClaudeCliProvider",
    "CodexCliProvider",
    "OllamaProvider",
    "ProviderRegistry",
    "default_registry",
]
