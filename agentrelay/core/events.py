# agentrelay/core/events.py
"""
Normalized agent events.

Each provider speaks its own JSON dialect on stdout. The normalizers in this
module translate one raw object into zero or more tagged events so the
reconstruction engine only ever deals with a single vocabulary. Unknown
kinds normalize to an empty list.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

DEBUG_TRUNCATE = 500


@dataclass(frozen=True)
class TextDelta:
    """Incremental assistant text."""
    text: str


@dataclass(frozen=True)
class TextSnapshot:
    """A complete assistant text block that may repeat already-streamed text."""
    text: str


@dataclass(frozen=True)
class ThinkingDelta:
    text: str


@dataclass(frozen=True)
class ToolNotice:
    """Tool start notification without a trace span (no input known yet)."""
    name: str
    tool_id: Optional[str] = None


@dataclass(frozen=True)
class ToolStart:
    """Tool invocation: notification plus an opened trace span."""
    name: str
    tool_id: Optional[str] = None
    tool_input: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class ToolResult:
    tool_id: Optional[str]
    is_error: bool = False
    content: Optional[str] = None


@dataclass(frozen=True)
class SessionObserved:
    """
    Provider session identifier seen on the stream.

    authoritative=False only fills an empty slot; True always overwrites.
    """
    session_id: str
    authoritative: bool = False


@dataclass(frozen=True)
class TurnCompleted:
    result: str = ""
    session_id: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    duration_ms: Optional[int] = None
    raw_input_tokens: Optional[int] = None
    cached_input_tokens: Optional[int] = None


AgentEvent = Union[
    TextDelta,
    TextSnapshot,
    ThinkingDelta,
    ToolNotice,
    ToolStart,
    ToolResult,
    SessionObserved,
    TurnCompleted,
]


def debug_payload(data: Any, truncate: int = DEBUG_TRUNCATE) -> str:
    """Render a payload for debug logging, truncated."""
    output = repr(data) if not isinstance(data, str) else data
    if truncate and len(output) > truncate:
        output = output[:truncate] + "..."
    return output


def _first_int(*values: Any) -> int:
    for value in values:
        if value is not None:
            try:
                return int(value)
            except (TypeError, ValueError):
                continue
    return 0


# ----------------------------------------------------------------------
# Claude CLI (--output-format stream-json)
# ----------------------------------------------------------------------

def _claude_tool_result_text(block: Dict[str, Any], event: Dict[str, Any]) -> str:
    content = block.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            part.get("text", "")
            for part in content
            if isinstance(part, dict) and part.get("type") == "text"
        ]
        if any(parts):
            return "".join(parts)
    tool_use_result = event.get("tool_use_result")
    if isinstance(tool_use_result, dict) and tool_use_result.get("stdout"):
        return tool_use_result["stdout"]
    return ""


def _claude_stream_event(event: Dict[str, Any]) -> List[AgentEvent]:
    inner = event.get("event") or {}
    out: List[AgentEvent] = []
    inner_type = inner.get("type")

    if inner_type == "content_block_delta":
        delta = inner.get("delta") or {}
        if delta.get("type") == "text_delta" and delta.get("text"):
            out.append(TextDelta(delta["text"]))
        elif delta.get("type") == "thinking_delta":
            out.append(ThinkingDelta(delta.get("thinking", "")))
    elif inner_type == "content_block_start":
        block = inner.get("content_block") or {}
        if block.get("type") == "tool_use":
            out.append(ToolNotice(block.get("name") or "unknown", block.get("id")))

    if event.get("session_id"):
        out.append(SessionObserved(event["session_id"]))
    return out


def normalize_claude_event(event: Dict[str, Any]) -> List[AgentEvent]:
    """Translate one Claude CLI stream-json object."""
    kind = event.get("type")
    logger.debug(f"[claude] event {debug_payload(event)}")

    if kind == "stream_event":
        if not event.get("event"):
            return []
        return _claude_stream_event(event)

    if kind == "content_block_start":
        block = event.get("content_block") or {}
        if block.get("type") == "tool_use":
            return [ToolNotice(block.get("name") or "unknown", block.get("id"))]
        return []

    if kind == "system":
        subtype = event.get("subtype")
        if subtype == "tool_use":
            return [ToolNotice(event.get("tool") or "unknown")]
        if subtype == "init" and event.get("session_id"):
            return [SessionObserved(event["session_id"])]
        return []

    if kind == "assistant":
        out: List[AgentEvent] = []
        if event.get("session_id"):
            out.append(SessionObserved(event["session_id"]))
        message = event.get("message") or {}
        for block in message.get("content") or []:
            block_type = block.get("type")
            if block_type == "text" and block.get("text"):
                out.append(TextSnapshot(block["text"]))
            elif block_type == "tool_use" and block.get("name"):
                out.append(ToolStart(block["name"], block.get("id"), block.get("input")))
        return out

    if kind == "user":
        message = event.get("message") or {}
        out = []
        for block in message.get("content") or []:
            if not isinstance(block, dict) or block.get("type") != "tool_result":
                continue
            out.append(ToolResult(
                tool_id=block.get("tool_use_id"),
                is_error=bool(block.get("is_error")),
                content=_claude_tool_result_text(block, event),
            ))
        return out

    if kind == "result":
        usage = event.get("usage") or {}
        return [TurnCompleted(
            result=event.get("result") or "",
            session_id=event.get("session_id"),
            input_tokens=_first_int(
                event.get("total_input_tokens"),
                event.get("input_tokens"),
                usage.get("input_tokens"),
            ),
            output_tokens=_first_int(
                event.get("total_output_tokens"),
                event.get("output_tokens"),
                usage.get("output_tokens"),
            ),
            duration_ms=event.get("duration_ms"),
        )]

    return []


# ----------------------------------------------------------------------
# Codex CLI (exec --json)
# ----------------------------------------------------------------------

def normalize_codex_event(event: Dict[str, Any]) -> List[AgentEvent]:
    """Translate one Codex CLI JSONL object."""
    kind = event.get("type")
    logger.debug(f"[codex] event {debug_payload(event)}")

    if kind == "thread.started":
        if event.get("thread_id"):
            return [SessionObserved(event["thread_id"], authoritative=True)]
        return []

    if kind == "item.completed":
        item = event.get("item") or {}
        item_type = item.get("type")
        if item_type == "reasoning":
            return [ThinkingDelta(item.get("text") or "")]
        if item_type == "agent_message":
            return [TextDelta(item.get("text") or "")]
        if item_type == "tool_use":
            return [ToolStart(item.get("name") or "Tool", item.get("id"))]
        if item_type == "tool_result":
            return [ToolResult(item.get("tool_use_id"), bool(item.get("is_error")))]
        return []

    if kind == "turn.completed":
        usage = event.get("usage") or {}
        details = usage.get("input_tokens_details") or {}
        raw_input = _first_int(usage.get("input_tokens"))
        cached = _first_int(details.get("cached_tokens"), details.get("cache_read_input_tokens"))
        return [TurnCompleted(
            result="",
            input_tokens=max(0, raw_input - cached),
            output_tokens=_first_int(usage.get("output_tokens")),
            duration_ms=event.get("duration_ms"),
            raw_input_tokens=raw_input,
            cached_input_tokens=cached,
        )]

    if kind not in ("turn.started", None):
        logger.debug(f"[codex] unhandled event type: {kind}")
    return []


# ----------------------------------------------------------------------
# Ollama (/api/chat NDJSON)
# ----------------------------------------------------------------------

def normalize_ollama_event(event: Dict[str, Any]) -> List[AgentEvent]:
    """Translate one Ollama /api/chat stream object."""
    out: List[AgentEvent] = []
    message = event.get("message") or {}
    if message.get("content"):
        out.append(TextDelta(message["content"]))
    if event.get("done"):
        out.append(TurnCompleted(
            input_tokens=_first_int(event.get("prompt_eval_count")),
            output_tokens=_first_int(event.get("eval_count")),
        ))
    return out
