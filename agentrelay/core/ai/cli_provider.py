"""
Shared plumbing for providers backed by a local agent CLI.

Each subclass supplies a CliAgentProfile (binary, normalizer, argument
builder, pricing); process supervision, streaming and retries live in
CliTurnRunner.
"""

import logging
import shutil
from typing import List, Optional

from agentrelay.core.ai.base import BaseAgentProvider
from agentrelay.core.errors import ProviderNotConfiguredError
from agentrelay.core.models import TurnRequest
from agentrelay.core.pricing import ModelInfo
from agentrelay.core.process_supervisor import DEFAULT_PROCESS_TIMEOUT, ProcessSupervisor
from agentrelay.core.reconstruction import DEFAULT_TOOL_RESULT_MAX_LENGTH
from agentrelay.core.retry_policy import RetryPolicy
from agentrelay.core.turn_runner import CliAgentProfile, CliTurnRunner

logger = logging.getLogger(__name__)


class CliAgentProvider(BaseAgentProvider):
    """Base for providers that spawn one CLI process per turn."""

    models: List[ModelInfo] = []
    default_binary: str = ""

    def __init__(
        self,
        binary: Optional[str] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        policy: Optional[RetryPolicy] = None,
        timeout: float = DEFAULT_PROCESS_TIMEOUT,
        tool_result_max_length: int = DEFAULT_TOOL_RESULT_MAX_LENGTH,
    ):
        self.binary = binary or self.default_binary
        self.supervisor = supervisor or ProcessSupervisor(timeout=timeout)
        self.runner = CliTurnRunner(
            self.build_profile(),
            self.supervisor,
            policy=policy,
            tool_result_max_length=tool_result_max_length,
        )
        logger.info(f"{self.display_name} provider initialized (binary={self.binary})")

    def build_profile(self) -> CliAgentProfile:
        raise NotImplementedError

    @property
    def profile(self) -> CliAgentProfile:
        return self.runner.profile

    async def chat(self, request: TurnRequest) -> None:
        await self.runner.run(request)

    def cancel(self, conversation_id: str) -> bool:
        return self.supervisor.cancel(conversation_id)

    def is_active(self, conversation_id: str) -> bool:
        return self.supervisor.is_active(conversation_id)

    async def get_models(self) -> List[ModelInfo]:
        return list(self.models)

    def check_available(self) -> str:
        path = shutil.which(self.binary)
        if path is None:
            raise ProviderNotConfiguredError(f"{self.display_name} CLI ({self.binary}) not found on PATH")
        return path
