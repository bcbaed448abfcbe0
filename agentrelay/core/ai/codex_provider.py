"""
Codex CLI Provider

Runs `codex exec --json` once per turn; `codex exec resume <id>` continues
a native thread.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from agentrelay.core.ai.base import build_summary_prompt, run_summary_process
from agentrelay.core.ai.cli_provider import CliAgentProvider
from agentrelay.core.arguments import Invocation, build_codex_invocation, estimate_display_tokens
from agentrelay.core.continuity import ContinuityPlan
from agentrelay.core.errors import SummaryError
from agentrelay.core.events import TextDelta, TextSnapshot, normalize_codex_event
from agentrelay.core.models import Conversation, Message, TurnRequest
from agentrelay.core.pricing import ModelInfo, PriceTable
from agentrelay.core.reconstruction import TurnOutcome
from agentrelay.core.stream_parser import JsonLineParser
from agentrelay.core.turn_runner import CliAgentProfile

logger = logging.getLogger(__name__)

CODEX_MODELS: List[ModelInfo] = [
    ModelInfo("gpt-5.3-codex", "GPT-5.3 Codex", 128000, 10, 30),
    ModelInfo("gpt-5.2-codex", "GPT-5.2 Codex", 128000, 10, 30),
    ModelInfo("o3", "o3", 200000, 15, 60),
]
DEFAULT_CODEX_MODEL = "gpt-5.3-codex"
CODEX_PRICING = PriceTable(CODEX_MODELS, default_model=DEFAULT_CODEX_MODEL)
KNOWN_CODEX_MODELS = frozenset(m.id for m in CODEX_MODELS)


def codex_message_extras(request: TurnRequest, outcome: TurnOutcome) -> Dict[str, Any]:
    """Token breakdown Codex reports beyond plain input/output."""
    display = estimate_display_tokens(request.text) if request.text else outcome.input_tokens
    return {
        "display_input_tokens": display,
        "raw_input_tokens": outcome.raw_input_tokens,
        "cached_input_tokens": outcome.cached_input_tokens,
    }


class CodexCliProvider(CliAgentProvider):
    """OpenAI Codex CLI provider."""

    provider_id = "codex"
    display_name = "Codex"
    models = CODEX_MODELS
    default_binary = "codex"

    def build_profile(self) -> CliAgentProfile:
        return CliAgentProfile(
            provider_name="Codex",
            binary=self.binary,
            session_attr="codex_session_id",
            price_table=CODEX_PRICING,
            default_model=DEFAULT_CODEX_MODEL,
            build_invocation=self._build_invocation,
            normalize=normalize_codex_event,
            message_extras=codex_message_extras,
        )

    def _build_invocation(self, conv: Conversation, plan: ContinuityPlan, request: TurnRequest) -> Invocation:
        return build_codex_invocation(
            conv,
            plan,
            attachments=request.attachments,
            memories=request.memories,
            upload_dir=request.upload_dir,
            known_models=KNOWN_CODEX_MODELS,
            default_model=DEFAULT_CODEX_MODEL,
            binary=self.binary,
        )

    async def generate_summary(
        self,
        messages: Sequence[Message],
        model: Optional[str] = None,
        cwd: Optional[str] = None,
    ) -> str:
        prompt = build_summary_prompt(messages)
        argv = [
            self.binary, "exec", "--json", "--skip-git-repo-check",
            "-m", model or DEFAULT_CODEX_MODEL,
            prompt,
        ]
        code, output, stderr = await run_summary_process(argv, cwd=cwd)

        parser = JsonLineParser()
        events = list(parser.feed(output.encode("utf-8"))) + list(parser.flush())
        summary = ""
        for raw in events:
            for event in normalize_codex_event(raw):
                if isinstance(event, (TextDelta, TextSnapshot)):
                    summary += event.text

        if code == 0 and summary.strip():
            return summary.strip()
        raise SummaryError(f"Summary generation failed (code {code}): {stderr.strip()}")
