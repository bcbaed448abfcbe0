# agentrelay/core/retry_policy.py
"""
Retry policy for agent turns.

A turn is retried at most once, and only for failures that a different
continuity strategy can plausibly fix:

- empty result (no text, 0/0 tokens) after resuming a session
  → retry with a fresh session;
- empty result or context overflow while replaying full inline history
  → retry with compact history.
"""

import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional

from agentrelay.core.continuity import ContinuityPlan
from agentrelay.core.models import RetryMode, RetryState
from agentrelay.core.reconstruction import TurnOutcome

logger = logging.getLogger(__name__)

OverflowPredicate = Callable[[str], bool]

CONTEXT_OVERFLOW_RE = re.compile(
    r"(context|token|prompt|request).*(limit|length|size|large|long|exceed|overflow)|e2big"
)


def is_context_overflow_error(value: Optional[str]) -> bool:
    """Keyword heuristic; may under- or over-trigger."""
    return bool(CONTEXT_OVERFLOW_RE.search(str(value or "").lower()))


@dataclass(frozen=True)
class CloseContext:
    """What the turn runner knows when the process has exited."""
    assistant_text: str
    still_thinking: bool
    stderr: str
    pending_marker: Optional[RetryMode]
    cancelled: bool = False


class RetryPolicy:
    """
    Stateless decision object; state lives in the RetryState passed in.

    The overflow predicate is pluggable because free-text diagnostics are
    not authoritative.
    """

    def __init__(self, overflow_predicate: Optional[OverflowPredicate] = None):
        self.overflow_predicate = overflow_predicate or is_context_overflow_error

    def on_result(
        self,
        outcome: TurnOutcome,
        plan: ContinuityPlan,
        retry_state: RetryState,
    ) -> Optional[RetryMode]:
        """
        Decide at result time whether an empty result should be retried.

        Returns the retry mode to record as the pending marker, or None
        when the result must be finalized as-is.
        """
        if not outcome.is_empty or retry_state.retried:
            return None
        if plan.can_retry_fresh:
            logger.info("Empty result on resumed session, scheduling fresh-session retry")
            return RetryMode.FRESH_SESSION
        if plan.can_retry_compact:
            logger.info("Empty result with full inline history, scheduling compact-history retry")
            return RetryMode.COMPACT_HISTORY
        return None

    def on_close(
        self,
        close: CloseContext,
        plan: ContinuityPlan,
        retry_state: RetryState,
    ) -> Optional[RetryMode]:
        """Final decision once the process has exited."""
        if close.assistant_text or not close.still_thinking or retry_state.retried:
            return None
        if close.cancelled:
            # User cancel: surface, do not replay. Timeouts fall through.
            return None
        if close.pending_marker in (RetryMode.FRESH_SESSION, RetryMode.COMPACT_HISTORY):
            return close.pending_marker
        if plan.can_retry_compact and self.overflow_predicate(close.stderr):
            logger.info("Context overflow detected in diagnostics, retrying with compact history")
            return RetryMode.COMPACT_HISTORY
        return None

    def on_spawn_error(
        self,
        error_text: str,
        plan: ContinuityPlan,
        retry_state: RetryState,
    ) -> Optional[RetryMode]:
        """Spawn can fail with E2BIG when the inline history is too long."""
        if retry_state.retried or not plan.can_retry_compact:
            return None
        if self.overflow_predicate(error_text):
            logger.info("Spawn failed on oversized arguments, retrying with compact history")
            return RetryMode.COMPACT_HISTORY
        return None
