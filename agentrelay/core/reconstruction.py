# agentrelay/core/reconstruction.py
"""
Text & trace reconstruction.

Accumulates the assistant reply for one turn from normalized events,
renders tool invocations as inline ``:::trace`` spans, relays live events,
and reconciles the streamed text with the provider's final result.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Set

from agentrelay.core.events import (
    AgentEvent,
    SessionObserved,
    TextDelta,
    TextSnapshot,
    ThinkingDelta,
    ToolNotice,
    ToolResult,
    ToolStart,
    TurnCompleted,
)
from agentrelay.core.relay import OutputRelay

logger = logging.getLogger(__name__)

TRACE_OPEN = "\n\n:::trace\n"
TRACE_CLOSE = ":::\n\n"
TRUNCATION_MARKER = "...\n(truncated)"
DEFAULT_TOOL_RESULT_MAX_LENGTH = 500

# Order matters: first key present wins.
TOOL_ARGUMENT_KEYS = ("command", "file_path", "pattern")


def combine_with_overlap(a: str, b: str) -> str:
    """
    Combine streamed text ``a`` with authoritative text ``b`` without
    duplicating the region they share.

    >>> combine_with_overlap("Hello wor", "world!")
    'Hello world!'
    >>> combine_with_overlap("abc", "xyz")
    'abc\\n\\nxyz'
    """
    if not a:
        return b
    if not b:
        return a
    if a == b:
        return a
    if b in a:
        return a
    if a in b:
        return b

    for length in range(min(len(a), len(b)), 0, -1):
        if a[-length:] == b[:length]:
            return a + b[length:]

    return a + "\n\n" + b


def format_tool_description(tool_name: str, tool_input: Optional[Dict[str, Any]] = None) -> str:
    description = f"\n\n**Using {tool_name}**"
    if isinstance(tool_input, dict):
        for key in TOOL_ARGUMENT_KEYS:
            if tool_input.get(key):
                description += f": `{tool_input[key]}`"
                break
    return description + "\n"


def format_tool_output(content: Optional[str], is_error: bool, max_length: int) -> str:
    """Fenced, truncated tool output followed by the trace-close marker."""
    output = ""
    if content:
        if len(content) > max_length:
            content = content[:max_length] + TRUNCATION_MARKER
        body = f"Error: {content}" if is_error else content
        output = f"\n```\n{body}\n```\n"
    return output + TRACE_CLOSE


@dataclass
class TurnOutcome:
    """Final, reconciled view of a completed turn."""
    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    duration_ms: Optional[int] = None
    session_id: Optional[str] = None
    raw_input_tokens: Optional[int] = None
    cached_input_tokens: Optional[int] = None

    @property
    def is_empty(self) -> bool:
        return not self.text.strip() and self.input_tokens == 0 and self.output_tokens == 0


class ReconstructionEngine:
    """
    Per-turn state machine.

    State is the growing assistant text, the number of trace spans still
    open, and the set of tool ids already announced. ``apply`` returns a
    TurnOutcome when the event completes the turn, otherwise None.
    """

    def __init__(
        self,
        conversation_id: str,
        relay: OutputRelay,
        on_session: Optional[Callable[[str, bool], None]] = None,
        tool_result_max_length: int = DEFAULT_TOOL_RESULT_MAX_LENGTH,
    ):
        self.conversation_id = conversation_id
        self.relay = relay
        self.on_session = on_session
        self.tool_result_max_length = tool_result_max_length
        self.text = ""
        self.open_traces = 0
        self.started_tools: Set[str] = set()
        self.outcome: Optional[TurnOutcome] = None
        self._handlers = {
            TextDelta: self._on_text_delta,
            TextSnapshot: self._on_text_snapshot,
            ThinkingDelta: self._on_thinking,
            ToolNotice: self._on_tool_notice,
            ToolStart: self._on_tool_start,
            ToolResult: self._on_tool_result,
            SessionObserved: self._on_session,
            TurnCompleted: self._on_turn_completed,
        }

    def apply(self, event: AgentEvent) -> Optional[TurnOutcome]:
        handler = self._handlers.get(type(event))
        if handler is None:
            return None
        return handler(event)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _append(self, text: str) -> None:
        if not text:
            return
        self.text += text
        self.relay.delta(self.conversation_id, text)

    def _announce_tool(self, name: str, tool_id: Optional[str]) -> None:
        if tool_id:
            if tool_id in self.started_tools:
                return
            self.started_tools.add(tool_id)
        self.relay.tool_start(self.conversation_id, name, tool_id)

    def close_open_traces(self) -> str:
        """Close every trace span the provider left open."""
        closing = TRACE_CLOSE * self.open_traces
        self.open_traces = 0
        return closing

    # ------------------------------------------------------------------
    # handlers
    # ------------------------------------------------------------------

    def _on_text_delta(self, event: TextDelta) -> None:
        self._append(event.text)

    def _on_text_snapshot(self, event: TextSnapshot) -> None:
        if event.text.startswith(self.text):
            self._append(event.text[len(self.text):])
        elif not self.text.endswith(event.text):
            self._append(event.text)

    def _on_thinking(self, event: ThinkingDelta) -> None:
        self.relay.thinking(self.conversation_id, event.text)

    def _on_tool_notice(self, event: ToolNotice) -> None:
        self._announce_tool(event.name, event.tool_id)

    def _on_tool_start(self, event: ToolStart) -> None:
        self._announce_tool(event.name, event.tool_id)
        self._append(TRACE_OPEN + format_tool_description(event.name, event.tool_input))
        self.open_traces += 1

    def _on_tool_result(self, event: ToolResult) -> None:
        self.relay.tool_result(self.conversation_id, event.tool_id, event.is_error)
        output = format_tool_output(event.content, event.is_error, self.tool_result_max_length)
        if self.open_traces > 0:
            self.open_traces -= 1
        else:
            # No span to close (start was notice-only).
            output = output[: -len(TRACE_CLOSE)]
        self._append(output)

    def _on_session(self, event: SessionObserved) -> None:
        if self.on_session is not None:
            self.on_session(event.session_id, event.authoritative)

    def _on_turn_completed(self, event: TurnCompleted) -> TurnOutcome:
        text = combine_with_overlap(self.text, event.result or "")
        if self.open_traces:
            # Persisted text must stay balanced even if the provider never
            # reported a result for some tools.
            text += self.close_open_traces()
        self.text = text
        if event.session_id and self.on_session is not None:
            self.on_session(event.session_id, True)
        self.outcome = TurnOutcome(
            text=text,
            input_tokens=event.input_tokens,
            output_tokens=event.output_tokens,
            duration_ms=event.duration_ms,
            session_id=event.session_id,
            raw_input_tokens=event.raw_input_tokens,
            cached_input_tokens=event.cached_input_tokens,
        )
        return self.outcome

    def finalize_partial(self) -> str:
        """Text to persist when the process died before completing the turn."""
        if self.text and self.open_traces:
            self.text += self.close_open_traces()
        return self.text
