# agentrelay/core/continuity.py
"""
Context continuity: native session resume vs. inline history replay.

When the provider can resume a session server-side no history is sent.
Otherwise prior turns are rendered as text and prepended to the prompt,
newest first until the character budget is hit, then put back in order.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from agentrelay.core.models import Message, RetryState

logger = logging.getLogger(__name__)

COMPACT_HISTORY_CHAR_BUDGET = 24_000

HISTORY_OPEN = "[Conversation history]"
HISTORY_CLOSE = "[/Conversation history]"
NEW_MESSAGE_MARKER = "[New user message]"

_ROLE_LABELS = {"assistant": "Assistant", "system": "System"}


def build_inline_history(
    messages: Sequence[Message],
    latest_user_text: str = "",
    max_chars: Optional[int] = None,
) -> str:
    """
    Render prior messages as ``[Role]\\ntext`` blocks.

    A trailing user message identical to the current prompt is skipped so
    the prompt is not sent twice. ``max_chars`` of None (or <= 0) means
    unbounded.
    """
    if not messages:
        return ""
    budget = max_chars if max_chars and max_chars > 0 else None

    prior = list(messages)
    last = prior[-1]
    if last.role == "user" and (last.text or "") == (latest_user_text or ""):
        prior.pop()

    chunks: List[str] = []
    total = 0
    for message in reversed(prior):
        text = (message.text or "").strip()
        if not text:
            continue
        role = _ROLE_LABELS.get(message.role, "User")
        chunk = f"[{role}]\n{text}"
        if budget is not None and total + len(chunk) > budget:
            break
        chunks.append(chunk)
        total += len(chunk)

    if not chunks:
        return ""
    chunks.reverse()
    return f"{HISTORY_OPEN}\n" + "\n\n".join(chunks) + f"\n{HISTORY_CLOSE}"


@dataclass(frozen=True)
class ContinuityPlan:
    """How one turn attempt carries prior context."""
    session_id: Optional[str]
    inline_history: str
    history_mode: str
    prompt_text: str
    can_retry_compact: bool
    can_retry_fresh: bool

    @property
    def resumes_session(self) -> bool:
        return bool(self.session_id)


def select_continuity(
    session_id: Optional[str],
    messages: Sequence[Message],
    text: str,
    retry_state: RetryState,
    supports_resume: bool = True,
    compact_budget: int = COMPACT_HISTORY_CHAR_BUDGET,
) -> ContinuityPlan:
    """Decide resume vs. inline history for one attempt."""
    native = session_id if supports_resume else None
    history_mode = "compact" if retry_state.compact_history else "full"

    if native:
        inline_history = ""
    else:
        inline_history = build_inline_history(
            messages,
            text,
            max_chars=compact_budget if history_mode == "compact" else None,
        )

    prompt_text = f"{inline_history}\n\n{NEW_MESSAGE_MARKER}\n{text}" if inline_history else text

    plan = ContinuityPlan(
        session_id=native,
        inline_history=inline_history,
        history_mode=history_mode,
        prompt_text=prompt_text,
        can_retry_compact=(
            not native
            and history_mode == "full"
            and bool(inline_history)
            and not retry_state.retried
        ),
        can_retry_fresh=bool(native) and not retry_state.retried,
    )
    logger.debug(
        f"Continuity: resume={plan.resumes_session} mode={history_mode} "
        f"history_chars={len(inline_history)} retried={retry_state.retried}"
    )
    return plan
