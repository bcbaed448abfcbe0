"""
Inbound turn dispatch.

Turns a user action (send, cancel, regenerate, edit) into state changes on
the conversation plus one provider turn. The service owns no conversation
storage; persistence and fan-out happen through the callbacks it is
constructed with.
"""

import logging
from typing import Any, Callable, List, Optional, Sequence

from agentrelay.core.ai.base import BaseAgentProvider
from agentrelay.core.ai.factory import ProviderRegistry
from agentrelay.core.errors import UnknownProviderError
from agentrelay.core.models import (
    Attachment,
    Conversation,
    MemoryNote,
    MessageRole,
    TurnRequest,
    now_ms,
)
from agentrelay.core.relay import OutputRelay
from agentrelay.core.turn_runner import call_maybe_async

logger = logging.getLogger(__name__)


class ChatService:
    """Dispatches user actions to the conversation's provider."""

    def __init__(
        self,
        registry: ProviderRegistry,
        send: Optional[Callable[[str], Any]] = None,
        on_save: Optional[Callable[[str], Any]] = None,
        broadcast_status: Optional[Callable[[str, str], Any]] = None,
        upload_dir: Optional[str] = None,
    ):
        self.registry = registry
        self.send = send
        self.on_save = on_save
        self.broadcast_status = broadcast_status
        self.upload_dir = upload_dir
        self.relay = OutputRelay(send, broadcast_status)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _provider_for(self, conv: Conversation) -> Optional[BaseAgentProvider]:
        try:
            return self.registry.get(conv.provider)
        except UnknownProviderError as e:
            logger.error(str(e))
            self.relay.error(conv.id, str(e))
            return None

    def _reject_if_busy(self, conv: Conversation, provider: BaseAgentProvider) -> bool:
        if provider.is_active(conv.id) or conv.is_thinking:
            self.relay.error(conv.id, "Conversation is busy")
            return True
        return False

    @staticmethod
    def _reset_sessions(conv: Conversation) -> None:
        conv.claude_session_id = None
        conv.codex_session_id = None

    async def _begin_turn(self, conv: Conversation) -> None:
        conv.mark_thinking()
        await call_maybe_async(self.on_save, conv.id)
        self.relay.status(conv.id, "thinking")
        await self.relay.flush()

    async def _rejected(self) -> bool:
        await self.relay.flush()
        return False

    async def _run_turn(
        self,
        conv: Conversation,
        provider: BaseAgentProvider,
        text: str,
        attachments: Optional[Sequence[Attachment]],
        memories: Optional[Sequence[MemoryNote]],
    ) -> None:
        request = TurnRequest(
            conversation=conv,
            text=text,
            send=self.send,
            on_save=self.on_save,
            broadcast_status=self.broadcast_status,
            attachments=list(attachments or []),
            memories=list(memories or []),
            upload_dir=self.upload_dir,
        )
        logger.info(f"Starting {provider.provider_id} turn for {conv.id}")
        await provider.chat(request)

    # ------------------------------------------------------------------
    # actions
    # ------------------------------------------------------------------

    async def send_message(
        self,
        conv: Conversation,
        text: str,
        attachments: Optional[Sequence[Attachment]] = None,
        memories: Optional[Sequence[MemoryNote]] = None,
    ) -> bool:
        """Append the user message and run a turn. Returns False if rejected."""
        provider = self._provider_for(conv)
        if provider is None or self._reject_if_busy(conv, provider):
            return await self._rejected()

        conv.add_message(
            MessageRole.USER.value,
            text,
            attachments=list(attachments) if attachments else None,
        )
        await self._begin_turn(conv)
        await self._run_turn(conv, provider, text, attachments, memories)
        return True

    async def cancel(self, conv: Conversation) -> bool:
        provider = self._provider_for(conv)
        if provider is None:
            return await self._rejected()
        if not provider.cancel(conv.id):
            self.relay.error(conv.id, "No active process to cancel")
            return await self._rejected()
        return True

    async def regenerate(
        self,
        conv: Conversation,
        memories: Optional[Sequence[MemoryNote]] = None,
    ) -> bool:
        """Drop the last assistant reply and answer the last user message again."""
        provider = self._provider_for(conv)
        if provider is None or self._reject_if_busy(conv, provider):
            return await self._rejected()

        if conv.messages and conv.messages[-1].role == MessageRole.ASSISTANT.value:
            conv.messages.pop()

        last_user = next(
            (m for m in reversed(conv.messages) if m.role == MessageRole.USER.value),
            None,
        )
        if last_user is None:
            self.relay.error(conv.id, "No user message to regenerate from")
            return await self._rejected()

        self._reset_sessions(conv)
        await self._begin_turn(conv)
        await self._run_turn(conv, provider, last_user.text, last_user.attachments, memories)
        return True

    async def edit(
        self,
        conv: Conversation,
        message_index: int,
        text: str,
        memories: Optional[Sequence[MemoryNote]] = None,
    ) -> bool:
        """Rewrite a user message, drop everything after it, and rerun."""
        provider = self._provider_for(conv)
        if provider is None or self._reject_if_busy(conv, provider):
            return await self._rejected()

        if message_index < 0 or message_index >= len(conv.messages):
            self.relay.error(conv.id, "Invalid message index")
            return await self._rejected()
        message = conv.messages[message_index]
        if message.role != MessageRole.USER.value:
            self.relay.error(conv.id, "Can only edit user messages")
            return await self._rejected()

        message.text = text
        message.timestamp = now_ms()
        del conv.messages[message_index + 1:]
        self._reset_sessions(conv)

        await self._begin_turn(conv)
        self.relay.emit("messages_updated", conv.id, messages=self.serialize_messages(conv))
        await self.relay.flush()
        await self._run_turn(conv, provider, text, None, memories)
        return True

    @staticmethod
    def serialize_messages(conv: Conversation) -> List[dict]:
        return [m.to_dict() for m in conv.messages]
