# agentrelay/core/relay.py
"""
Output relay: pushes structured turn events to the calling transport.

Every event is serialized to JSON and handed to the transport exactly once,
in emission order. Status changes go through the broadcast callback so every
connected observer sees them, not just the one that started the turn.

Transports may be plain functions or coroutine functions (an aiohttp
``WebSocketResponse.send_str``, for instance). Awaitables returned by the
transport are queued in emission order and awaited by ``flush()``, which
the async owner of the relay calls after each batch of events.
"""

import inspect
import json
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

SendFn = Callable[[str], Any]
BroadcastFn = Callable[[str, str], Any]

# A transport that went away; anything else propagates to the turn boundary.
TRANSPORT_CLOSED_ERRORS = (ConnectionError, RuntimeError)


class OutputRelay:
    """Typed fan-out for one transport."""

    def __init__(self, send: Optional[SendFn], broadcast_status: Optional[BroadcastFn] = None):
        self._send = send
        self._broadcast_status = broadcast_status
        self._pending: Deque[Tuple[str, str, Awaitable[Any]]] = deque()
        self.sent_count = 0
        self.terminal_sent = False

    @property
    def pending(self) -> int:
        return len(self._pending)

    def _deliver(self, event_type: str, conversation_id: str, call: Callable[[], Any]) -> bool:
        try:
            delivered = call()
        except TRANSPORT_CLOSED_ERRORS as e:
            logger.warning(f"Transport closed, dropping {event_type} for {conversation_id}: {e}")
            return False
        if inspect.isawaitable(delivered):
            self._pending.append((event_type, conversation_id, delivered))
            return True
        if delivered is False:
            return False
        self.sent_count += 1
        return True

    def emit(self, event_type: str, conversation_id: str, **payload: Any) -> bool:
        """
        Serialize and send one event.

        Returns False when the transport is gone; a closed transport never
        interrupts the turn. Other transport errors propagate.
        """
        message: Dict[str, Any] = {"type": event_type, "conversationId": conversation_id}
        message.update({k: v for k, v in payload.items() if v is not None})
        if self._send is None:
            return False
        data = json.dumps(message)
        return self._deliver(event_type, conversation_id, lambda: self._send(data))

    async def flush(self) -> None:
        """Await queued async sends in emission order."""
        try:
            while self._pending:
                event_type, conversation_id, pending = self._pending.popleft()
                try:
                    delivered = await pending
                except TRANSPORT_CLOSED_ERRORS as e:
                    logger.warning(f"Transport closed, dropping {event_type} for {conversation_id}: {e}")
                    continue
                if delivered is not False:
                    self.sent_count += 1
        except BaseException:
            self.discard()
            raise

    def discard(self) -> None:
        """Drop queued sends without running them."""
        while self._pending:
            _, _, pending = self._pending.popleft()
            close = getattr(pending, "close", None)
            if close is not None:
                close()

    def delta(self, conversation_id: str, text: str) -> bool:
        return self.emit("delta", conversation_id, text=text)

    def thinking(self, conversation_id: str, text: str) -> bool:
        return self.emit("thinking", conversation_id, text=text)

    def tool_start(self, conversation_id: str, tool: str, tool_id: Optional[str] = None) -> bool:
        return self.emit("tool_start", conversation_id, tool=tool, id=tool_id)

    def tool_result(self, conversation_id: str, tool_use_id: Optional[str], is_error: bool) -> bool:
        return self.emit("tool_result", conversation_id, toolUseId=tool_use_id, isError=is_error)

    def result(self, conversation_id: str, text: str, **details: Any) -> bool:
        sent = self.emit("result", conversation_id, text=text, **details)
        self.terminal_sent = True
        return sent

    def error(self, conversation_id: str, error: str) -> bool:
        sent = self.emit("error", conversation_id, error=error)
        self.terminal_sent = True
        return sent

    def stderr(self, conversation_id: str, text: str) -> bool:
        return self.emit("stderr", conversation_id, text=text)

    def status(self, conversation_id: str, status: str) -> None:
        """Broadcast a status change to every observer."""
        if self._broadcast_status is not None:
            self._deliver(
                "status",
                conversation_id,
                lambda: self._broadcast_status(conversation_id, status),
            )
            return
        self.emit("status", conversation_id, status=status)
