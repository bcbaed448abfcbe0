"""
Base Agent Provider Interface

Abstract base class for all agent providers, plus the summary prompt and
one-shot summary process shared by the CLI providers.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence, Tuple

from agentrelay.core.errors import SummaryError
from agentrelay.core.models import Message, MessageRole, TurnRequest
from agentrelay.core.pricing import ModelInfo

logger = logging.getLogger(__name__)

SUMMARY_TIMEOUT = 120  # seconds
SUMMARY_MESSAGE_MAX_LENGTH = 2000

DETAILED_SUMMARY_POINTS = """Summarize the following conversation in approximately 2000-3000 tokens. Preserve:
1. Key decisions and conclusions reached
2. Important code snippets, file paths, and technical details discussed
3. Current state of any ongoing tasks
4. Action items or commitments made
5. User preferences or requirements stated"""

BRIEF_SUMMARY_POINTS = """Summarize the following conversation in approximately 500-1000 words. Preserve:
1. Key decisions and conclusions reached
2. Important technical details discussed
3. Current state of any ongoing tasks
4. User preferences or requirements stated"""

SUMMARY_PROMPT_TEMPLATE = """You are compressing a conversation history to preserve context while reducing token usage.

{points}

Format as a clear summary that could be used to continue the conversation naturally.

---
CONVERSATION TO SUMMARIZE:
{conversation}
---

Write your summary:"""


def build_summary_prompt(
    messages: Sequence[Message],
    assistant_label: str = "Assistant",
    points: str = DETAILED_SUMMARY_POINTS,
) -> str:
    """
    Render messages into the compression prompt.

    Each message is cut to 2000 characters so one huge tool dump cannot
    crowd out the rest of the conversation.
    """
    parts = []
    for message in messages:
        role = "User" if message.role == MessageRole.USER.value else assistant_label
        text = message.text or ""
        if len(text) > SUMMARY_MESSAGE_MAX_LENGTH:
            text = text[:SUMMARY_MESSAGE_MAX_LENGTH] + "\n[... truncated ...]"
        parts.append(f"[{role}]: {text}")
    return SUMMARY_PROMPT_TEMPLATE.format(points=points, conversation="\n\n".join(parts))


async def run_summary_process(
    argv: List[str],
    cwd: Optional[str] = None,
    timeout: float = SUMMARY_TIMEOUT,
) -> Tuple[int, str, str]:
    """
    Run a one-shot summary process to completion.

    Returns (exit code, stdout, stderr). Raises SummaryError on spawn
    failure or timeout.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd or None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise SummaryError(f"Failed to spawn {argv[0]}: {e.strerror or e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        try:
            process.terminate()
        except ProcessLookupError:
            pass
        await process.wait()
        raise SummaryError("Summary generation timed out")

    return (
        process.returncode,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


class BaseAgentProvider(ABC):
    """
    Abstract base class for all agent providers.

    All providers must implement this interface so the dispatch layer can
    drive any of them the same way.
    """

    provider_id: str = "base"
    display_name: str = "Base Provider"

    @abstractmethod
    async def chat(self, request: TurnRequest) -> None:
        """
        Run one turn and stream its output through the request callbacks.

        The conversation is already marked thinking. Implementations must
        leave it idle when they return and never raise.
        """

    @abstractmethod
    def cancel(self, conversation_id: str) -> bool:
        """Stop an in-flight turn. Returns whether one was found."""

    @abstractmethod
    def is_active(self, conversation_id: str) -> bool:
        """Whether a turn is currently running for the conversation."""

    @abstractmethod
    async def get_models(self) -> List[ModelInfo]:
        """List the models this provider can run."""

    @abstractmethod
    async def generate_summary(
        self,
        messages: Sequence[Message],
        model: Optional[str] = None,
        cwd: Optional[str] = None,
    ) -> str:
        """
        Summarize messages for history compression.

        Raises:
            SummaryError: the summary could not be produced
        """

    def check_available(self) -> str:
        """
        Verify the provider can run on this host.

        Returns where it was found (binary path or server URL).

        Raises:
            ProviderNotConfiguredError: binary missing or server unreachable
        """
        raise NotImplementedError

    def describe(self) -> dict:
        return {"id": self.provider_id, "name": self.display_name}
