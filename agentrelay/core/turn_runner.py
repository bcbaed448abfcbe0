# agentrelay/core/turn_runner.py
"""
CLI turn runner.

Drives one turn against an agent CLI from spawn to finalization:

    continuity plan + argv → supervisor.start → stdout → JsonLineParser
    → provider normalizer → ReconstructionEngine → OutputRelay
    → process exit → RetryPolicy → finalize or retry (once)

Nothing raised inside a turn escapes ``run``; every failure ends the turn
idle with exactly one error (or incomplete result) event.
"""

import asyncio
import errno as errno_codes
import inspect
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from agentrelay.core.arguments import Invocation
from agentrelay.core.continuity import ContinuityPlan, select_continuity
from agentrelay.core.errors import ConversationBusyError, SpawnError
from agentrelay.core.events import AgentEvent, debug_payload
from agentrelay.core.models import (
    INITIAL_RETRY_STATE,
    Conversation,
    MessageRole,
    RetryMode,
    RetryState,
    TurnRequest,
)
from agentrelay.core.pricing import PriceTable
from agentrelay.core.process_supervisor import ProcessSupervisor, SupervisedProcess
from agentrelay.core.reconstruction import (
    DEFAULT_TOOL_RESULT_MAX_LENGTH,
    ReconstructionEngine,
    TurnOutcome,
)
from agentrelay.core.relay import OutputRelay
from agentrelay.core.retry_policy import CloseContext, RetryPolicy
from agentrelay.core.stream_parser import JsonLineParser

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024
STDERR_EXCERPT_LENGTH = 1200
REAP_TIMEOUT = 5  # seconds
EMPTY_RESPONSE_ERROR = "Model returned an empty response. Please retry."
SLASH_ONLY_HINT = (
    ". Slash-only skill/agent selections need a task. "
    "Example: `/code-quality-reviewer review my latest changes`."
)

_SLASH_ONLY_RE = re.compile(r"^/\S+\s*$")


async def call_maybe_async(fn: Optional[Callable[..., Any]], *args: Any) -> Any:
    """Call a callback that may be a plain function or a coroutine function."""
    if fn is None:
        return None
    result = fn(*args)
    if inspect.isawaitable(result):
        return await result
    return result


async def report_failure(relay: OutputRelay, conversation_id: str, error: str) -> None:
    """
    Last-resort error + idle status from a turn boundary.

    The transport itself may be what failed, so a second failure here is
    logged instead of raised.
    """
    try:
        relay.error(conversation_id, error)
        relay.status(conversation_id, "idle")
        await relay.flush()
    except Exception as e:
        relay.discard()
        logger.warning(f"Could not report failure for {conversation_id}: {e}")


def is_slash_only_prompt(text: str) -> bool:
    return isinstance(text, str) and bool(_SLASH_ONLY_RE.match(text.strip()))


@dataclass
class CliAgentProfile:
    """
    Everything that differs between agent CLIs.

    build_invocation(conv, plan, request) → Invocation
    normalize(raw_event) → list of AgentEvent
    message_extras(request, outcome) → extra Message/result fields
    """
    provider_name: str
    binary: str
    session_attr: str
    price_table: PriceTable
    default_model: str
    build_invocation: Callable[[Conversation, ContinuityPlan, TurnRequest], Invocation]
    normalize: Callable[[Dict[str, Any]], List[AgentEvent]]
    message_extras: Optional[Callable[[TurnRequest, TurnOutcome], Dict[str, Any]]] = None
    supports_resume: bool = True
    slash_hint: bool = False


@dataclass
class _Attempt:
    """Mutable bookkeeping for one attempt (not shared across retries)."""
    plan: ContinuityPlan
    retry_state: RetryState
    relay: OutputRelay
    engine: ReconstructionEngine
    stderr_chunks: List[str] = field(default_factory=list)
    started_at: float = field(default_factory=time.monotonic)

    @property
    def stderr(self) -> str:
        return "".join(self.stderr_chunks)

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)


class CliTurnRunner:
    """Provider-agnostic driver shared by the CLI providers."""

    def __init__(
        self,
        profile: CliAgentProfile,
        supervisor: ProcessSupervisor,
        policy: Optional[RetryPolicy] = None,
        tool_result_max_length: int = DEFAULT_TOOL_RESULT_MAX_LENGTH,
    ):
        self.profile = profile
        self.supervisor = supervisor
        self.policy = policy or RetryPolicy()
        self.tool_result_max_length = tool_result_max_length

    # ------------------------------------------------------------------
    # session bookkeeping
    # ------------------------------------------------------------------

    def get_session(self, conv: Conversation) -> Optional[str]:
        return getattr(conv, self.profile.session_attr, None)

    def set_session(self, conv: Conversation, session_id: Optional[str]) -> None:
        setattr(conv, self.profile.session_attr, session_id)

    def _observe_session(self, conv: Conversation, session_id: str, authoritative: bool) -> None:
        if authoritative or not self.get_session(conv):
            self.set_session(conv, session_id)

    # ------------------------------------------------------------------
    # entry point
    # ------------------------------------------------------------------

    async def run(self, request: TurnRequest, retry_state: RetryState = INITIAL_RETRY_STATE) -> None:
        conv = request.conversation
        relay = OutputRelay(request.send, request.broadcast_status)
        try:
            await self._run_attempt(request, relay, retry_state)
            await relay.flush()
        except asyncio.CancelledError:
            relay.discard()
            raise
        except Exception as e:
            logger.error(f"{self.profile.provider_name} turn failed for {conv.id}: {e}", exc_info=True)
            conv.retry_marker = None
            conv.mark_idle()
            if not relay.terminal_sent:
                await report_failure(relay, conv.id, f"{self.profile.provider_name} turn failed: {e}")

    async def _run_attempt(self, request: TurnRequest, relay: OutputRelay, retry_state: RetryState) -> None:
        conv = request.conversation
        conv.retry_marker = None

        plan = select_continuity(
            self.get_session(conv),
            conv.messages,
            request.text,
            retry_state,
            supports_resume=self.profile.supports_resume,
        )
        invocation = self.profile.build_invocation(conv, plan, request)
        logger.debug(
            f"[{self.profile.binary}] spawn cwd={conv.cwd} resume={plan.resumes_session} "
            f"mode={plan.history_mode} argv={debug_payload(invocation.argv, truncate=0)}"
        )

        try:
            proc = await self.supervisor.start(conv.id, invocation.argv, cwd=conv.cwd)
        except ConversationBusyError:
            relay.error(conv.id, "Conversation is busy")
            return
        except SpawnError as e:
            code_name = errno_codes.errorcode.get(e.errno or 0, "")
            mode = self.policy.on_spawn_error(f"{code_name} {e.reason}", plan, retry_state)
            if mode is not None and conv.is_thinking:
                await self._retry(request, relay, retry_state, mode)
                return
            self._finish_with_error(conv, relay, str(e))
            return

        engine = ReconstructionEngine(
            conv.id,
            relay,
            on_session=lambda sid, authoritative: self._observe_session(conv, sid, authoritative),
            tool_result_max_length=self.tool_result_max_length,
        )
        attempt = _Attempt(plan=plan, retry_state=retry_state, relay=relay, engine=engine)
        parser = JsonLineParser()

        pumps = [
            asyncio.ensure_future(self._pump_stdout(request, attempt, proc, parser)),
            asyncio.ensure_future(self._pump_stderr(conv, attempt, proc)),
        ]
        try:
            await asyncio.gather(*pumps)
            code = await proc.wait()
            for raw in parser.flush():
                await self._dispatch(request, attempt, raw)
        except asyncio.CancelledError:
            self._abort(proc, pumps)
            raise
        except Exception:
            # Reap the agent while the registry entry and timer still own it.
            self._abort(proc, pumps)
            await self._reap(proc)
            raise
        finally:
            self.supervisor.release(conv.id, proc)

        await self._on_close(request, attempt, proc, code)

    @staticmethod
    def _abort(proc: SupervisedProcess, pumps: List["asyncio.Future[None]"]) -> None:
        for pump in pumps:
            pump.cancel()
        proc.terminate()

    @staticmethod
    async def _reap(proc: SupervisedProcess) -> None:
        try:
            await asyncio.wait_for(proc.wait(), timeout=REAP_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning(f"{proc.binary} (pid={proc.pid}) did not exit after SIGTERM")

    # ------------------------------------------------------------------
    # streams
    # ------------------------------------------------------------------

    async def _pump_stdout(
        self,
        request: TurnRequest,
        attempt: _Attempt,
        proc: SupervisedProcess,
        parser: JsonLineParser,
    ) -> None:
        if proc.stdout is None:
            return
        while True:
            chunk = await proc.stdout.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            for raw in parser.feed(chunk):
                await self._dispatch(request, attempt, raw)

    async def _pump_stderr(self, conv: Conversation, attempt: _Attempt, proc: SupervisedProcess) -> None:
        if proc.stderr is None:
            return
        while True:
            chunk = await proc.stderr.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            text = chunk.decode("utf-8", errors="replace")
            attempt.stderr_chunks.append(text)
            attempt.relay.stderr(conv.id, text)
            await attempt.relay.flush()

    async def _dispatch(self, request: TurnRequest, attempt: _Attempt, raw: Dict[str, Any]) -> None:
        for event in self.profile.normalize(raw):
            outcome = attempt.engine.apply(event)
            if outcome is not None:
                await self._on_outcome(request, attempt, outcome)
        await attempt.relay.flush()

    # ------------------------------------------------------------------
    # finalization
    # ------------------------------------------------------------------

    async def _on_outcome(self, request: TurnRequest, attempt: _Attempt, outcome: TurnOutcome) -> None:
        conv = request.conversation
        relay = attempt.relay
        if not conv.is_thinking:
            logger.debug(f"Ignoring duplicate completion for {conv.id}")
            return

        mode = self.policy.on_result(outcome, attempt.plan, attempt.retry_state)
        if mode is not None:
            # Decided for real at close time, once the process has exited.
            self.set_session(conv, None)
            conv.retry_marker = mode
            return

        if outcome.is_empty:
            conv.mark_idle()
            conv.retry_marker = None
            await call_maybe_async(request.on_save, conv.id)
            relay.error(conv.id, EMPTY_RESPONSE_ERROR)
            relay.status(conv.id, "idle")
            return

        model = conv.model or self.profile.default_model
        cost = self.profile.price_table.calculate_cost(outcome.input_tokens, outcome.output_tokens, model)
        duration = outcome.duration_ms if outcome.duration_ms is not None else attempt.elapsed_ms()
        session_id = outcome.session_id or self.get_session(conv)
        extras = self.profile.message_extras(request, outcome) if self.profile.message_extras else {}

        conv.add_message(
            MessageRole.ASSISTANT.value,
            outcome.text,
            cost=cost,
            duration=duration,
            session_id=session_id,
            input_tokens=outcome.input_tokens,
            output_tokens=outcome.output_tokens,
            **extras,
        )
        conv.mark_idle()
        conv.retry_marker = None
        await call_maybe_async(request.on_save, conv.id)

        relay.result(
            conv.id,
            outcome.text,
            cost=cost,
            duration=duration,
            sessionId=session_id,
            inputTokens=outcome.input_tokens,
            outputTokens=outcome.output_tokens,
            **_camel(extras),
        )
        relay.status(conv.id, "idle")
        logger.info(
            f"{self.profile.provider_name} turn complete for {conv.id}: "
            f"{outcome.input_tokens} in / {outcome.output_tokens} out, ${cost:.4f}"
        )

    async def _on_close(
        self,
        request: TurnRequest,
        attempt: _Attempt,
        proc: SupervisedProcess,
        code: Optional[int],
    ) -> None:
        conv = request.conversation
        relay = attempt.relay
        text = attempt.engine.text

        close = CloseContext(
            assistant_text=text.strip(),
            still_thinking=conv.is_thinking,
            stderr=attempt.stderr,
            pending_marker=conv.retry_marker,
            cancelled=proc.terminated and not proc.timed_out,
        )
        mode = self.policy.on_close(close, attempt.plan, attempt.retry_state)
        if mode is not None:
            await self._retry(request, relay, attempt.retry_state, mode)
            return

        if conv.is_thinking and text.strip():
            partial = attempt.engine.finalize_partial()
            conv.add_message(MessageRole.ASSISTANT.value, partial, incomplete=True)
            conv.mark_idle()
            conv.retry_marker = None
            await call_maybe_async(request.on_save, conv.id)
            relay.result(conv.id, partial, incomplete=True)
            relay.status(conv.id, "idle")
            logger.warning(f"{self.profile.provider_name} exited (code {code}) mid-stream for {conv.id}")
        elif conv.is_thinking:
            self._finish_with_error(conv, relay, self._no_output_error(request, code, attempt.stderr))

        conv.retry_marker = None

    def _no_output_error(self, request: TurnRequest, code: Optional[int], stderr: str) -> str:
        name = self.profile.provider_name
        excerpt = stderr.strip()[:STDERR_EXCERPT_LENGTH]
        if code == 0:
            error = f"{name} process exited without producing a response"
        else:
            error = f"{name} process exited with code {code}" + (f": {excerpt}" if excerpt else "")
        if self.profile.slash_hint and is_slash_only_prompt(request.text):
            error += SLASH_ONLY_HINT
        return error

    def _finish_with_error(self, conv: Conversation, relay: OutputRelay, error: str) -> None:
        conv.mark_idle()
        conv.retry_marker = None
        relay.error(conv.id, error)
        relay.status(conv.id, "idle")
        logger.error(f"Turn failed for {conv.id}: {error}")

    async def _retry(
        self,
        request: TurnRequest,
        relay: OutputRelay,
        retry_state: RetryState,
        mode: RetryMode,
    ) -> None:
        conv = request.conversation
        conv.retry_marker = None
        if mode == RetryMode.FRESH_SESSION or mode == RetryMode.COMPACT_HISTORY:
            self.set_session(conv, None)
        logger.info(f"Retrying {self.profile.provider_name} turn for {conv.id} ({mode.value})")
        await self._run_attempt(request, relay, retry_state.next_attempt(mode))


def _camel(fields: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for key, value in fields.items():
        head, *rest = key.split("_")
        out[head + "".join(part.title() for part in rest)] = value
    return out
