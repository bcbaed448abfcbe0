# agentrelay/core/execution_mode.py
"""
Execution modes control whether an agent may write to the working directory.

- discuss     → read-only conversation
- patch       → default; changes are proposed, not applied
- autonomous  → agent may edit files directly
"""

from enum import Enum
from typing import Any, Optional


class ExecutionMode(Enum):
    DISCUSS = "discuss"
    PATCH = "patch"
    AUTONOMOUS = "autonomous"


EXECUTION_MODE_VALUES = {mode.value for mode in ExecutionMode}


def normalize_execution_mode(
    value: Any,
    fallback: ExecutionMode = ExecutionMode.PATCH,
) -> ExecutionMode:
    """Coerce a raw value (enum, string, None) into an ExecutionMode."""
    if isinstance(value, ExecutionMode):
        return value
    mode = str(value or "").lower().strip()
    if mode in EXECUTION_MODE_VALUES:
        return ExecutionMode(mode)
    return fallback


def infer_execution_mode_from_autopilot(autopilot: bool) -> ExecutionMode:
    return ExecutionMode.DISCUSS if autopilot is False else ExecutionMode.AUTONOMOUS


def resolve_conversation_execution_mode(conv: Any) -> ExecutionMode:
    """
    Resolve the effective mode for a conversation.

    An explicit execution_mode wins; otherwise the legacy autopilot flag is
    used; otherwise PATCH.
    """
    explicit: Optional[Any] = getattr(conv, "execution_mode", None)
    if explicit is not None:
        mode = normalize_execution_mode(explicit, fallback=None)
        if mode is not None:
            return mode
    autopilot = getattr(conv, "autopilot", None)
    if autopilot is not None:
        return infer_execution_mode_from_autopilot(autopilot)
    return ExecutionMode.PATCH


def mode_to_autopilot(mode: Any) -> bool:
    return normalize_execution_mode(mode) != ExecutionMode.DISCUSS


def apply_execution_mode(conv: Any, mode: Any) -> ExecutionMode:
    """Set the conversation mode and keep the legacy autopilot flag in sync."""
    resolved = normalize_execution_mode(mode)
    if conv is None:
        return resolved
    conv.execution_mode = resolved
    conv.autopilot = mode_to_autopilot(resolved)
    return resolved


def mode_allows_writes(mode: Any) -> bool:
    return normalize_execution_mode(mode) == ExecutionMode.AUTONOMOUS
