"""
Ollama Provider

Talks to a local Ollama server over HTTP. Ollama is stateless, so every
turn sends the full message list; the /api/chat NDJSON stream goes through
the same parser and reconstruction engine as the CLI providers.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Sequence

import aiohttp
import requests

from agentrelay.core.ai.base import BRIEF_SUMMARY_POINTS, SUMMARY_TIMEOUT, BaseAgentProvider, build_summary_prompt
from agentrelay.core.arguments import enabled_memories
from agentrelay.core.errors import ConversationBusyError, ProviderNotConfiguredError, SummaryError
from agentrelay.core.events import normalize_ollama_event
from agentrelay.core.models import Conversation, MemoryNote, MessageRole, TurnRequest
from agentrelay.core.pricing import ModelInfo
from agentrelay.core.process_supervisor import DEFAULT_PROCESS_TIMEOUT, ActiveProcessRegistry
from agentrelay.core.reconstruction import ReconstructionEngine, TurnOutcome
from agentrelay.core.relay import OutputRelay
from agentrelay.core.stream_parser import JsonLineParser
from agentrelay.core.turn_runner import call_maybe_async, report_failure

logger = logging.getLogger(__name__)

DEFAULT_OLLAMA_HOST = "http://localhost:11434"
DEFAULT_OLLAMA_MODEL = "llama3.2"
MODELS_TIMEOUT = 10  # seconds
AVAILABILITY_TIMEOUT = 3  # seconds

DEFAULT_MODELS: List[ModelInfo] = [
    ModelInfo("llama3.2", "Llama 3.2", 128000),
    ModelInfo("llama3.1", "Llama 3.1", 128000),
    ModelInfo("mistral", "Mistral", 32000),
    ModelInfo("codellama", "Code Llama", 16000),
    ModelInfo("gemma2", "Gemma 2", 8192),
]

BASE_SYSTEM_PROMPT = "You are a helpful assistant."
ATTACHMENTS_UNSUPPORTED = (
    "Ollama does not support file attachments. Please use Claude for file-based conversations."
)


def estimate_context(parameter_size: Optional[str]) -> int:
    """Rough context window from a parameter size label such as "8.0B"."""
    if not parameter_size:
        return 4096
    size = parameter_size.lower()
    if "70b" in size or "65b" in size:
        return 32000
    if "34b" in size or "30b" in size:
        return 16000
    if "13b" in size or "14b" in size:
        return 8192
    if "7b" in size or "8b" in size:
        return 8192
    return 4096


def build_system_prompt(conv: Conversation, memories: Sequence[MemoryNote]) -> str:
    prompt = BASE_SYSTEM_PROMPT
    notes = enabled_memories(memories)
    if notes:
        global_notes = [m for m in notes if m.is_global]
        project_notes = [m for m in notes if not m.is_global]
        prompt += "\n\n# User Memories\nThese are things the user has asked you to remember:\n"
        if global_notes:
            prompt += "\n## Global\n" + "\n".join(f"- {m.text}" for m in global_notes)
        if project_notes:
            prompt += "\n## Project-specific\n" + "\n".join(f"- {m.text}" for m in project_notes)

    summary = conv.compression_summary()
    if summary is not None:
        prompt += (
            "\n\n[COMPRESSED CONVERSATION CONTEXT]\n"
            "The following is a summary of earlier messages:\n"
            f"{summary.text}\n"
            "[END COMPRESSED CONTEXT]"
        )
    return prompt


def build_chat_messages(conv: Conversation, text: str, memories: Sequence[MemoryNote] = ()) -> List[Dict[str, str]]:
    """
    Full /api/chat message list: system prompt, history, then the new turn.

    System messages and messages folded into a compression summary are
    skipped. A trailing user message equal to ``text`` is the turn itself
    (already appended by the dispatch layer) and is not sent twice.
    """
    history = [m for m in conv.messages if m.role != MessageRole.SYSTEM.value and not m.summarized]
    if history and history[-1].role == MessageRole.USER.value and history[-1].text == text:
        history = history[:-1]

    messages = [{"role": "system", "content": build_system_prompt(conv, memories)}]
    for m in history:
        role = "user" if m.role == MessageRole.USER.value else "assistant"
        messages.append({"role": role, "content": m.text or ""})
    messages.append({"role": "user", "content": text})
    return messages


class _StreamHandle:
    """Registry handle for an in-flight HTTP stream."""

    def __init__(self, task: "asyncio.Future[Any]"):
        self.task = task
        self.cancelled_by_user = False

    def terminate(self) -> None:
        self.cancelled_by_user = True
        self.task.cancel()


class OllamaProvider(BaseAgentProvider):
    """Ollama HTTP provider (local models, cost 0)."""

    provider_id = "ollama"
    display_name = "Ollama"

    def __init__(
        self,
        host: str = DEFAULT_OLLAMA_HOST,
        registry: Optional[ActiveProcessRegistry] = None,
        timeout: float = DEFAULT_PROCESS_TIMEOUT,
    ):
        self.host = host.rstrip("/")
        self.registry = registry if registry is not None else ActiveProcessRegistry()
        self.timeout = timeout
        logger.info(f"OllamaProvider initialized with host: {self.host}")

    # ------------------------------------------------------------------
    # models
    # ------------------------------------------------------------------

    async def get_models(self) -> List[ModelInfo]:
        url = f"{self.host}/api/tags"
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(url, timeout=aiohttp.ClientTimeout(total=MODELS_TIMEOUT)) as resp:
                    if resp.status != 200:
                        logger.error(f"Failed to fetch Ollama models: {resp.status}")
                        return list(DEFAULT_MODELS)
                    data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.error(f"Error fetching Ollama models: {e}")
            return list(DEFAULT_MODELS)

        models = data.get("models") or []
        if not models:
            return list(DEFAULT_MODELS)
        return [
            ModelInfo(
                id=m["name"],
                name=m["name"].split(":")[0],
                context=estimate_context((m.get("details") or {}).get("parameter_size")),
            )
            for m in models
            if m.get("name")
        ]

    def check_available(self) -> str:
        try:
            resp = requests.get(f"{self.host}/api/tags", timeout=AVAILABILITY_TIMEOUT)
            resp.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise ProviderNotConfiguredError(f"Ollama not reachable at {self.host}: {e}") from e
        return self.host

    # ------------------------------------------------------------------
    # chat
    # ------------------------------------------------------------------

    def cancel(self, conversation_id: str) -> bool:
        found = self.registry.request_cancel(conversation_id)
        if found:
            logger.info(f"Cancellation requested for Ollama conversation {conversation_id}")
        return found

    def is_active(self, conversation_id: str) -> bool:
        return conversation_id in self.registry

    async def chat(self, request: TurnRequest) -> None:
        conv = request.conversation
        relay = OutputRelay(request.send, request.broadcast_status)
        try:
            await self._run_turn(request, relay)
            await relay.flush()
        except asyncio.CancelledError:
            relay.discard()
            raise
        except Exception as e:
            logger.error(f"Ollama turn failed for {conv.id}: {e}", exc_info=True)
            conv.mark_idle()
            if not relay.terminal_sent:
                await report_failure(relay, conv.id, f"Ollama turn failed: {e}")

    async def _run_turn(self, request: TurnRequest, relay: OutputRelay) -> None:
        conv = request.conversation
        if request.attachments:
            conv.mark_idle()
            relay.error(conv.id, ATTACHMENTS_UNSUPPORTED)
            relay.status(conv.id, "idle")
            return

        try:
            self.registry.reserve(conv.id)
        except ConversationBusyError:
            relay.error(conv.id, "Conversation is busy")
            return

        engine = ReconstructionEngine(conv.id, relay)
        messages = build_chat_messages(conv, request.text, request.memories)
        model = conv.model or DEFAULT_OLLAMA_MODEL
        started = time.monotonic()

        stream_task = asyncio.ensure_future(self._stream(model, messages, engine))
        handle = _StreamHandle(stream_task)
        self.registry.attach(conv.id, handle)
        try:
            outcome = await stream_task
        except asyncio.CancelledError:
            if not handle.cancelled_by_user:
                raise
            logger.info(f"Ollama turn cancelled for {conv.id}")
            conv.mark_idle()
            relay.status(conv.id, "idle")
            return
        except aiohttp.ClientConnectorError as e:
            logger.error(f"Ollama connection failed: {e}")
            self._fail(conv, relay, f"Cannot connect to Ollama at {self.host}. Is Ollama running? Try: ollama serve")
            return
        except aiohttp.ClientResponseError as e:
            logger.error(f"Ollama chat error: {e.message}")
            self._fail(conv, relay, e.message)
            return
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Ollama chat error: {e}", exc_info=True)
            self._fail(conv, relay, str(e) or "Ollama request timed out")
            return
        finally:
            self.registry.remove(conv.id, handle)

        duration = outcome.duration_ms if outcome and outcome.duration_ms is not None else int(
            (time.monotonic() - started) * 1000
        )
        if outcome is None:
            partial = engine.finalize_partial()
            if partial.strip():
                conv.add_message(MessageRole.ASSISTANT.value, partial, incomplete=True)
                conv.mark_idle()
                await call_maybe_async(request.on_save, conv.id)
                relay.result(conv.id, partial, incomplete=True)
                relay.status(conv.id, "idle")
            else:
                self._fail(conv, relay, "Ollama stream ended without producing a response")
            return

        conv.add_message(
            MessageRole.ASSISTANT.value,
            outcome.text,
            cost=0,
            duration=duration,
            input_tokens=outcome.input_tokens,
            output_tokens=outcome.output_tokens,
        )
        conv.mark_idle()
        await call_maybe_async(request.on_save, conv.id)
        relay.result(
            conv.id,
            outcome.text,
            cost=0,
            duration=duration,
            inputTokens=outcome.input_tokens,
            outputTokens=outcome.output_tokens,
        )
        relay.status(conv.id, "idle")

    async def _stream(
        self,
        model: str,
        messages: List[Dict[str, str]],
        engine: ReconstructionEngine,
    ) -> Optional[TurnOutcome]:
        url = f"{self.host}/api/chat"
        payload = {"model": model, "messages": messages, "stream": True}
        parser = JsonLineParser()
        async with aiohttp.ClientSession() as session:
            async with session.post(url, json=payload, timeout=aiohttp.ClientTimeout(total=self.timeout)) as resp:
                if resp.status != 200:
                    raise aiohttp.ClientResponseError(
                        resp.request_info,
                        resp.history,
                        status=resp.status,
                        message=f"Ollama API error: {resp.status} {resp.reason}",
                    )
                async for chunk in resp.content.iter_any():
                    for raw in parser.feed(chunk):
                        outcome = self._apply(engine, raw)
                        await engine.relay.flush()
                        if outcome is not None:
                            return outcome
        for raw in parser.flush():
            outcome = self._apply(engine, raw)
            if outcome is not None:
                return outcome
        return None

    @staticmethod
    def _apply(engine: ReconstructionEngine, raw: Dict[str, Any]) -> Optional[TurnOutcome]:
        outcome = None
        for event in normalize_ollama_event(raw):
            outcome = engine.apply(event) or outcome
        return outcome

    def _fail(self, conv: Conversation, relay: OutputRelay, error: str) -> None:
        conv.mark_idle()
        relay.error(conv.id, error)
        relay.status(conv.id, "idle")

    # ------------------------------------------------------------------
    # summary
    # ------------------------------------------------------------------

    async def generate_summary(self, messages, model=None, cwd=None) -> str:
        prompt = build_summary_prompt(messages, points=BRIEF_SUMMARY_POINTS)
        url = f"{self.host}/api/generate"

        def _call() -> str:
            payload = {"model": model or DEFAULT_OLLAMA_MODEL, "prompt": prompt, "stream": False}
            try:
                resp = requests.post(url, json=payload, timeout=SUMMARY_TIMEOUT)
                resp.raise_for_status()
                return resp.json().get("response") or ""
            except (requests.exceptions.RequestException, ValueError) as e:
                raise SummaryError(f"Failed to generate summary: {e}") from e

        return await asyncio.to_thread(_call)
