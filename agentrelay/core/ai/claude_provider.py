"""
Claude CLI Provider

Runs `claude -p ... --output-format stream-json` once per turn and resumes
native sessions with `--resume`.
"""

import logging
from typing import List, Optional, Sequence

from agentrelay.core.ai.base import build_summary_prompt, run_summary_process
from agentrelay.core.ai.cli_provider import CliAgentProvider
from agentrelay.core.arguments import Invocation, build_claude_invocation
from agentrelay.core.continuity import ContinuityPlan
from agentrelay.core.errors import SummaryError
from agentrelay.core.events import normalize_claude_event
from agentrelay.core.models import Conversation, Message, TurnRequest
from agentrelay.core.pricing import ModelInfo, PriceTable
from agentrelay.core.turn_runner import CliAgentProfile

logger = logging.getLogger(__name__)

CLAUDE_MODELS: List[ModelInfo] = [
    ModelInfo("claude-sonnet-4.5", "Sonnet 4.5", 200000, 3, 15),
    ModelInfo("claude-opus-4.6", "Opus 4.6", 200000, 15, 75),
    ModelInfo("claude-opus-4.5", "Opus 4.5", 200000, 15, 75),
    ModelInfo("claude-haiku-4.5", "Haiku 4.5", 200000, 1.5, 7.5),
]
CLAUDE_PRICING = PriceTable(CLAUDE_MODELS, default_model="claude-sonnet-4.5")

# Alias the CLI itself resolves; pricing maps it onto claude-sonnet-4.5.
DEFAULT_CLI_MODEL = "sonnet"


class ClaudeCliProvider(CliAgentProvider):
    """Claude Code CLI provider."""

    provider_id = "claude"
    display_name = "Claude"
    models = CLAUDE_MODELS
    default_binary = "claude"

    def build_profile(self) -> CliAgentProfile:
        return CliAgentProfile(
            provider_name="Claude",
            binary=self.binary,
            session_attr="claude_session_id",
            price_table=CLAUDE_PRICING,
            default_model=DEFAULT_CLI_MODEL,
            build_invocation=self._build_invocation,
            normalize=normalize_claude_event,
            slash_hint=True,
        )

    def _build_invocation(self, conv: Conversation, plan: ContinuityPlan, request: TurnRequest) -> Invocation:
        return build_claude_invocation(
            conv,
            plan,
            attachments=request.attachments,
            memories=request.memories,
            upload_dir=request.upload_dir,
            default_model=DEFAULT_CLI_MODEL,
            binary=self.binary,
        )

    async def generate_summary(
        self,
        messages: Sequence[Message],
        model: Optional[str] = None,
        cwd: Optional[str] = None,
    ) -> str:
        prompt = build_summary_prompt(messages, assistant_label="Claude")
        argv = [self.binary, "-p", prompt, "--model", model or DEFAULT_CLI_MODEL, "--output-format", "text"]
        code, output, stderr = await run_summary_process(argv, cwd=cwd)
        if code == 0 and output.strip():
            return output.strip()
        raise SummaryError(f"Summary generation failed (code {code}): {stderr.strip()}")
