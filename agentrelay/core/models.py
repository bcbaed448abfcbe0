# agentrelay/core/models.py
"""
Conversation state shared between the inbound dispatch layer, the provider
adapters and the persistence callback.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from agentrelay.core.execution_mode import ExecutionMode

logger = logging.getLogger(__name__)

IMAGE_EXTENSION_RE = re.compile(r"\.(png|jpg|jpeg|gif|webp)$", re.IGNORECASE)


def now_ms() -> int:
    """Wall-clock timestamp in milliseconds (persistence format)."""
    return int(time.time() * 1000)


class ConversationStatus(Enum):
    IDLE = "idle"
    THINKING = "thinking"


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class RetryMode(Enum):
    NONE = "none"
    FRESH_SESSION = "fresh-session"
    COMPACT_HISTORY = "compact-history"


@dataclass(frozen=True)
class RetryState:
    """
    Retry information for one turn attempt.

    Passed explicitly into every attempt; a retry builds a new value with
    retried=True so the one-retry bound can be checked without hidden state.
    """
    mode: RetryMode = RetryMode.NONE
    retried: bool = False

    @property
    def compact_history(self) -> bool:
        return self.mode == RetryMode.COMPACT_HISTORY

    def next_attempt(self, mode: RetryMode) -> "RetryState":
        return RetryState(mode=mode, retried=True)


INITIAL_RETRY_STATE = RetryState()


@dataclass
class Attachment:
    path: str
    type: Optional[str] = None

    @property
    def is_image(self) -> bool:
        return bool(self.path) and bool(IMAGE_EXTENSION_RE.search(self.path))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Attachment":
        return cls(path=data.get("path") or "", type=data.get("type"))

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"path": self.path}
        if self.type is not None:
            result["type"] = self.type
        return result


@dataclass
class MemoryNote:
    text: str
    scope: str = "global"
    enabled: bool = True

    @property
    def is_global(self) -> bool:
        return self.scope == "global"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MemoryNote":
        return cls(
            text=data.get("text", ""),
            scope=data.get("scope", "global"),
            enabled=data.get("enabled", True) is not False,
        )


# Python attribute → persisted key
_MESSAGE_KEYS = {
    "cost": "cost",
    "duration": "duration",
    "session_id": "sessionId",
    "input_tokens": "inputTokens",
    "output_tokens": "outputTokens",
    "display_input_tokens": "displayInputTokens",
    "raw_input_tokens": "rawInputTokens",
    "cached_input_tokens": "cachedInputTokens",
    "incomplete": "incomplete",
    "compression_meta": "compressionMeta",
    "summarized": "summarized",
}


@dataclass
class Message:
    role: str
    text: str
    timestamp: int = field(default_factory=now_ms)
    cost: Optional[float] = None
    duration: Optional[int] = None
    session_id: Optional[str] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    display_input_tokens: Optional[int] = None
    raw_input_tokens: Optional[int] = None
    cached_input_tokens: Optional[int] = None
    incomplete: Optional[bool] = None
    attachments: Optional[List[Attachment]] = None
    compression_meta: Optional[Dict[str, Any]] = None
    summarized: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "role": self.role,
            "text": self.text,
            "timestamp": self.timestamp,
        }
        for attr, key in _MESSAGE_KEYS.items():
            value = getattr(self, attr)
            if value is not None:
                result[key] = value
        if self.attachments:
            result["attachments"] = [a.to_dict() for a in self.attachments]
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        kwargs: Dict[str, Any] = {
            "role": data.get("role", "user"),
            "text": data.get("text") or "",
            "timestamp": data.get("timestamp") or now_ms(),
        }
        for attr, key in _MESSAGE_KEYS.items():
            if key in data:
                kwargs[attr] = data[key]
        if data.get("attachments"):
            kwargs["attachments"] = [Attachment.from_dict(a) for a in data["attachments"]]
        return cls(**kwargs)


@dataclass
class Conversation:
    """
    Mutable conversation state.

    The adapters only touch status, session ids, the retry marker and the
    message list (appending the assistant reply). Everything else belongs
    to the persistence layer.
    """
    id: str
    messages: List[Message] = field(default_factory=list)
    status: ConversationStatus = ConversationStatus.IDLE
    cwd: Optional[str] = None
    model: Optional[str] = None
    provider: str = "claude"
    sandboxed: bool = True
    autopilot: Optional[bool] = None
    execution_mode: Optional[ExecutionMode] = None
    claude_session_id: Optional[str] = None
    codex_session_id: Optional[str] = None
    retry_marker: Optional[RetryMode] = None
    thinking_start_time: Optional[int] = None

    @property
    def is_thinking(self) -> bool:
        return self.status == ConversationStatus.THINKING

    def mark_thinking(self) -> None:
        self.status = ConversationStatus.THINKING
        self.thinking_start_time = now_ms()

    def mark_idle(self) -> None:
        self.status = ConversationStatus.IDLE
        self.thinking_start_time = None

    def add_message(self, role: str, text: str, **kwargs) -> Message:
        message = Message(role=role, text=text, **kwargs)
        self.messages.append(message)
        logger.debug(f"Added message: conversation={self.id} role={role} len={len(text)}")
        return message

    def compression_summary(self) -> Optional[Message]:
        """First system message produced by history compression, if any."""
        for message in self.messages:
            if message.role == MessageRole.SYSTEM.value and message.compression_meta:
                return message
        return None


@dataclass
class TurnRequest:
    """
    One inbound chat turn.

    ``send`` pushes a serialized event to the initiating transport,
    ``on_save`` persists the conversation's message list and
    ``broadcast_status`` notifies every observer of a status change.
    ``on_save`` may be a plain function or a coroutine function.
    """
    conversation: Conversation
    text: str
    send: Optional[Callable[[str], Any]] = None
    on_save: Optional[Callable[[str], Any]] = None
    broadcast_status: Optional[Callable[[str, str], Any]] = None
    attachments: List[Attachment] = field(default_factory=list)
    memories: List[MemoryNote] = field(default_factory=list)
    upload_dir: Optional[str] = None

    @property
    def conversation_id(self) -> str:
        return self.conversation.id
