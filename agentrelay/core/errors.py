# agentrelay/core/errors.py
"""
Exception hierarchy for the provider streaming layer.

Turn-level failures never escape a running turn; these exceptions are raised
at component seams (spawn, registry, provider lookup, summaries) and handled
by the turn runner or the inbound dispatch layer.
"""

from typing import Optional


class AgentRelayError(Exception):
    """Base class for all agentrelay errors."""

    pass


class SpawnError(AgentRelayError):
    """
    Raised when the external agent binary cannot be started
    (not found, not executable, argument list too long).
    """

    def __init__(self, binary: str, reason: str, errno: Optional[int] = None):
        self.binary = binary
        self.reason = reason
        self.errno = errno
        super().__init__(f"Failed to spawn {binary}: {reason}")


class ConversationBusyError(AgentRelayError):
    """Raised when a turn is already in flight for a conversation."""

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation {conversation_id} is busy")


class UnknownProviderError(AgentRelayError):
    """Raised when a provider id is not present in the registry."""

    def __init__(self, provider_id: str):
        self.provider_id = provider_id
        super().__init__(f"Unknown provider: {provider_id}")


class ProviderNotConfiguredError(AgentRelayError):
    """
    Raised when a requested provider is not available on the host
    (missing binary, unreachable daemon).
    """

    pass


class SummaryError(AgentRelayError):
    """Raised when a provider fails to produce a conversation summary."""

    pass
