"""
Runtime settings.

Built-in defaults, overridden by the config file (ConfigService), then by
environment variables.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

from agentrelay.core.ai.ollama_provider import DEFAULT_OLLAMA_HOST
from agentrelay.core.process_supervisor import DEFAULT_PROCESS_TIMEOUT
from agentrelay.core.reconstruction import DEFAULT_TOOL_RESULT_MAX_LENGTH
from agentrelay.services.config_service import ConfigService

logger = logging.getLogger(__name__)

DEFAULT_UPLOAD_DIR = str(Path.home() / ".agentrelay" / "uploads")
_TRUTHY = {"1", "true", "yes", "on"}


@dataclass
class Settings:
    process_timeout_ms: int = DEFAULT_PROCESS_TIMEOUT * 1000
    tool_result_max_length: int = DEFAULT_TOOL_RESULT_MAX_LENGTH
    ollama_host: str = DEFAULT_OLLAMA_HOST
    upload_dir: str = DEFAULT_UPLOAD_DIR
    claude_binary: str = "claude"
    codex_binary: str = "codex"
    default_provider: str = "claude"
    debug: bool = False

    @property
    def process_timeout(self) -> float:
        """Timeout in seconds, as the supervisor expects."""
        return self.process_timeout_ms / 1000


def _as_int(value: Any, name: str, fallback: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring non-integer {name}={value!r}")
        return fallback
    if parsed <= 0:
        logger.warning(f"Ignoring non-positive {name}={value!r}")
        return fallback
    return parsed


def load_settings(
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    env = os.environ if environ is None else environ
    config = ConfigService(config_path)
    settings = Settings()

    settings.process_timeout_ms = _as_int(
        config.get("process_timeout_ms", settings.process_timeout_ms),
        "process_timeout_ms",
        settings.process_timeout_ms,
    )
    settings.tool_result_max_length = _as_int(
        config.get("tool_result_max_length", settings.tool_result_max_length),
        "tool_result_max_length",
        settings.tool_result_max_length,
    )
    settings.ollama_host = config.get("ollama.host", settings.ollama_host)
    settings.upload_dir = os.path.expanduser(config.get("upload_dir", settings.upload_dir))
    settings.claude_binary = config.get("providers.claude.binary", settings.claude_binary)
    settings.codex_binary = config.get("providers.codex.binary", settings.codex_binary)
    settings.default_provider = config.get("default_provider", settings.default_provider)
    settings.debug = bool(config.get("debug", False))

    if env.get("PROCESS_TIMEOUT_MS"):
        settings.process_timeout_ms = _as_int(
            env["PROCESS_TIMEOUT_MS"], "PROCESS_TIMEOUT_MS", settings.process_timeout_ms
        )
    if env.get("TOOL_RESULT_MAX_LENGTH"):
        settings.tool_result_max_length = _as_int(
            env["TOOL_RESULT_MAX_LENGTH"], "TOOL_RESULT_MAX_LENGTH", settings.tool_result_max_length
        )
    if env.get("OLLAMA_HOST"):
        settings.ollama_host = env["OLLAMA_HOST"]
    if env.get("AGENTRELAY_UPLOAD_DIR"):
        settings.upload_dir = os.path.expanduser(env["AGENTRELAY_UPLOAD_DIR"])
    if env.get("AGENTRELAY_DEBUG"):
        settings.debug = env["AGENTRELAY_DEBUG"].strip().lower() in _TRUTHY

    return settings
