# Core modules
from .errors import (
    AgentRelayError,
    ConversationBusyError,
    SpawnError,
    SummaryError,
    UnknownProviderError,
)
from .models import Attachment, Conversation, MemoryNote, Message, TurnRequest
from .chat_service import ChatService

__all__ = [
    "AgentRelayError",
    "ConversationBusyError",
    "SpawnError",
    "SummaryError",
    "UnknownProviderError",
    "Attachment",
    "Conversation",
    "MemoryNote",
    "Message",
    "TurnRequest",
    "ChatService",
]
