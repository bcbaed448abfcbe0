# agentrelay/ui/console.py
"""
Terminal transport: renders relay events as they arrive.

EventPrinter is used as the ``send`` / ``broadcast_status`` pair of a
ChatService, so the terminal sees exactly what a remote client would.
"""

import json
import sys
from typing import Any, Dict, List, Optional, TextIO

from agentrelay.ui import colors as c


class EventPrinter:
    """Pure event → text renderer bound to one output stream."""

    def __init__(self, stream: Optional[TextIO] = None, color: Optional[bool] = None, show_stderr: bool = False):
        self.stream = stream or sys.stdout
        self.color = c.color_enabled(self.stream) if color is None else color
        self.show_stderr = show_stderr
        self.results: List[Dict[str, Any]] = []
        self.errors: List[str] = []
        self._in_thinking = False

    def _write(self, text: str, color: str = "") -> None:
        self.stream.write(c.colorize(text, color, self.color))
        self.stream.flush()

    def _end_thinking(self) -> None:
        if self._in_thinking:
            self._write("\n")
            self._in_thinking = False

    # Transport interface ------------------------------------------------

    def send(self, payload: str) -> bool:
        event = json.loads(payload)
        handler = getattr(self, f"_on_{event.get('type')}", None)
        if handler is not None:
            handler(event)
        return True

    def broadcast_status(self, conversation_id: str, status: str) -> None:
        if status == "thinking":
            self._write("… thinking\n", c.MUTED_FG)

    # Event handlers -----------------------------------------------------

    def _on_delta(self, event: Dict[str, Any]) -> None:
        self._end_thinking()
        self._write(event.get("text", ""), c.ASSISTANT_FG)

    def _on_thinking(self, event: Dict[str, Any]) -> None:
        self._in_thinking = True
        self._write(event.get("text", ""), c.THINKING_FG)

    def _on_tool_start(self, event: Dict[str, Any]) -> None:
        self._end_thinking()
        self._write(f"\n[tool] {event.get('tool')}\n", c.TOOL_FG)

    def _on_tool_result(self, event: Dict[str, Any]) -> None:
        if event.get("isError"):
            self._write("[tool failed]\n", c.TOOL_ERROR_FG)

    def _on_stderr(self, event: Dict[str, Any]) -> None:
        if self.show_stderr:
            self._write(event.get("text", ""), c.STDERR_FG)

    def _on_result(self, event: Dict[str, Any]) -> None:
        self._end_thinking()
        self.results.append(event)
        parts = []
        if event.get("incomplete"):
            parts.append("incomplete")
        if event.get("inputTokens") is not None:
            parts.append(f"{event['inputTokens']} in / {event.get('outputTokens', 0)} out")
        if event.get("cost") is not None:
            parts.append(f"${event['cost']:.4f}")
        if event.get("duration") is not None:
            parts.append(f"{event['duration'] / 1000:.1f}s")
        color = c.WARNING_FG if event.get("incomplete") else c.SUCCESS_FG
        self._write(f"\n\n-- {' · '.join(parts)}\n" if parts else "\n", color)

    def _on_error(self, event: Dict[str, Any]) -> None:
        self._end_thinking()
        self.errors.append(event.get("error", ""))
        self._write(f"\nError: {event.get('error')}\n", c.ERROR_FG)

    def _on_messages_updated(self, event: Dict[str, Any]) -> None:
        self._write(f"({len(event.get('messages') or [])} messages)\n", c.MUTED_FG)
