"""
End-to-end turn tests: real supervisor, real parser, fake agent CLIs.
"""

import asyncio
import json
import os
import time

import pytest

from conftest import emit_lines, run_async

from agentrelay.core.ai.claude_provider import ClaudeCliProvider
from agentrelay.core.ai.codex_provider import CodexCliProvider
from agentrelay.core.continuity import COMPACT_HISTORY_CHAR_BUDGET, HISTORY_OPEN, NEW_MESSAGE_MARKER
from agentrelay.core.errors import ProviderNotConfiguredError
from agentrelay.core.models import Message, RetryMode
from agentrelay.core.reconstruction import TRACE_CLOSE, TRACE_OPEN
from agentrelay.core.turn_runner import EMPTY_RESPONSE_ERROR, is_slash_only_prompt


def delta(text):
    return {
        "type": "stream_event",
        "session_id": "sess-new",
        "event": {"type": "content_block_delta", "delta": {"type": "text_delta", "text": text}},
    }


def result(text="", input_tokens=0, output_tokens=0, session_id="sess-new"):
    return {
        "type": "result",
        "result": text,
        "session_id": session_id,
        "duration_ms": 1500,
        "usage": {"input_tokens": input_tokens, "output_tokens": output_tokens},
    }


def run_turn(provider, collector, conv, text="add it"):
    conv.add_message("user", text)
    conv.mark_thinking()
    run_async(provider.chat(collector.request(conv, text)))


def claude(fake):
    return ClaudeCliProvider(binary=str(fake.path))


# ---------------------------------------------------------------------------
# happy path
# ---------------------------------------------------------------------------

def test_deltas_and_result_merge_into_one_message(fake_cli, collector, conversation):
    fake = fake_cli(emit_lines(
        delta("Sure"), delta(", I'll"), delta(" add it."),
        result("Sure, I'll add it.", input_tokens=1000, output_tokens=500),
    ))
    provider = claude(fake)
    run_turn(provider, collector, conversation)

    assert [e["text"] for e in collector.of_type("delta")] == ["Sure", ", I'll", " add it."]
    [res] = collector.of_type("result")
    assert res["text"] == "Sure, I'll add it."
    assert res["inputTokens"] == 1000 and res["outputTokens"] == 500
    assert res["cost"] == 1000 / 1e6 * 3 + 500 / 1e6 * 15
    assert res["sessionId"] == "sess-new"
    assert res["duration"] == 1500

    reply = conversation.messages[-1]
    assert reply.role == "assistant"
    assert reply.text == "Sure, I'll add it."
    assert conversation.claude_session_id == "sess-new"
    assert not conversation.is_thinking
    assert conversation.retry_marker is None
    assert collector.statuses[-1] == ("conv-1", "idle")
    assert collector.saves == ["conv-1"]
    assert not provider.is_active("conv-1")
    assert not collector.of_type("error")


def test_tool_trace_is_persisted_balanced(fake_cli, collector, conversation):
    fake = fake_cli(emit_lines(
        {"type": "assistant", "message": {"content": [
            {"type": "text", "text": "Checking."},
            {"type": "tool_use", "id": "t1", "name": "Bash", "input": {"command": "ls"}},
        ]}},
        {"type": "user", "message": {"content": [{"type": "tool_result", "tool_use_id": "t1", "content": "a.py"}]}},
        {"type": "assistant", "message": {"content": [{"type": "text", "text": "Found a.py."}]}},
        result("Found a.py.", input_tokens=10, output_tokens=5),
    ))
    run_turn(claude(fake), collector, conversation)

    text = conversation.messages[-1].text
    assert text.startswith("Checking." + TRACE_OPEN + "\n\n**Using Bash**: `ls`\n")
    assert text.count(TRACE_OPEN) == text.count(TRACE_CLOSE) == 1
    assert text.endswith("Found a.py.")
    assert [e["tool"] for e in collector.of_type("tool_start")] == ["Bash"]
    assert collector.of_type("tool_result")[0]["toolUseId"] == "t1"


def test_stdout_noise_is_ignored(fake_cli, collector, conversation):
    fake = fake_cli("echo 'not json at all'\n" + emit_lines(result("ok", 1, 1)))
    run_turn(claude(fake), collector, conversation)
    assert collector.of_type("result")[0]["text"] == "ok"


# ---------------------------------------------------------------------------
# failures
# ---------------------------------------------------------------------------

def test_exit_with_no_output_is_exactly_one_error(fake_cli, collector, conversation):
    fake = fake_cli("echo 'boom: auth failed' >&2\nexit 1")
    run_turn(claude(fake), collector, conversation)

    errors = collector.of_type("error")
    assert len(errors) == 1
    assert errors[0]["error"] == "Claude process exited with code 1: boom: auth failed"
    assert not collector.of_type("result")
    assert collector.of_type("stderr")[0]["text"] == "boom: auth failed\n"
    assert not conversation.is_thinking
    assert conversation.messages[-1].role == "user"
    assert fake.calls == 1


def test_exit_zero_without_output_and_slash_hint(fake_cli, collector, conversation):
    fake = fake_cli("exit 0")
    run_turn(claude(fake), collector, conversation, text="/code-quality-reviewer")
    [error] = collector.of_type("error")
    assert error["error"].startswith("Claude process exited without producing a response")
    assert "Slash-only skill/agent selections need a task" in error["error"]


def test_partial_text_becomes_incomplete_result(fake_cli, collector, conversation):
    fake = fake_cli(emit_lines(delta("Half an ans")) + "\nexit 1")
    run_turn(claude(fake), collector, conversation)

    [res] = collector.of_type("result")
    assert res["incomplete"] is True
    assert res["text"] == "Half an ans"
    assert conversation.messages[-1].incomplete is True
    assert not collector.of_type("error")
    assert not conversation.is_thinking


def test_spawn_failure_is_reported(collector, conversation):
    provider = ClaudeCliProvider(binary="/nonexistent/claude")
    run_turn(provider, collector, conversation)
    [error] = collector.of_type("error")
    assert error["error"].startswith("Failed to spawn /nonexistent/claude:")
    assert not conversation.is_thinking
    assert not provider.is_active("conv-1")


def test_busy_conversation_is_rejected(fake_cli, collector, conversation):
    provider = claude(fake_cli(emit_lines(result("ok", 1, 1))))
    provider.supervisor.registry.reserve("conv-1")
    run_turn(provider, collector, conversation)
    assert [e["error"] for e in collector.of_type("error")] == ["Conversation is busy"]
    assert not collector.of_type("result")


def test_transport_failure_mid_stream_reaps_agent(fake_cli, collector, conversation, tmp_path):
    pid_file = tmp_path / "agent.pid"
    fake = fake_cli(f'echo $$ > "{pid_file}"\n' + emit_lines(delta("partial")) + "\nexec sleep 3")
    provider = claude(fake)
    request = collector.request(conversation, "add it")

    def send(payload):
        if json.loads(payload)["type"] == "delta":
            raise ValueError("socket went away")
        return collector.send(payload)

    request.send = send
    conversation.add_message("user", "add it")
    conversation.mark_thinking()
    started = time.monotonic()
    run_async(provider.chat(request))

    assert time.monotonic() - started < 3
    pid = int(pid_file.read_text().strip())
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)
    assert [e["error"] for e in collector.of_type("error")] == ["Claude turn failed: socket went away"]
    assert collector.statuses[-1] == ("conv-1", "idle")
    assert not conversation.is_thinking
    assert not provider.is_active("conv-1")


def test_async_transport_callbacks_are_awaited(fake_cli, collector, conversation):
    fake = fake_cli(emit_lines(delta("One"), delta(" two"), result("One two", 2, 2)))
    received, statuses = [], []

    async def send(payload):
        await asyncio.sleep(0)
        received.append(json.loads(payload)["type"])
        return True

    async def broadcast(conversation_id, status):
        await asyncio.sleep(0)
        statuses.append(status)

    request = collector.request(conversation, "add it")
    request.send = send
    request.broadcast_status = broadcast
    conversation.add_message("user", "add it")
    conversation.mark_thinking()
    run_async(claude(fake).chat(request))

    assert received == ["delta", "delta", "result"]
    assert statuses == ["idle"]
    assert conversation.messages[-1].text == "One two"


# ---------------------------------------------------------------------------
# retries
# ---------------------------------------------------------------------------

def test_empty_result_on_resumed_session_retries_fresh_once(fake_cli, collector, conversation):
    fake = fake_cli(
        emit_lines(result("", session_id="sess-old")),
        emit_lines(delta("Fresh answer"), result("Fresh answer", 5, 5, session_id="sess-2")),
    )
    conversation.messages = [Message("user", "earlier"), Message("assistant", "reply")]
    conversation.claude_session_id = "sess-old"
    run_turn(claude(fake), collector, conversation)

    assert fake.calls == 2
    first, second = fake.argv(1), fake.argv(2)
    assert first[first.index("--resume") + 1] == "sess-old"
    assert "--resume" not in second
    assert "[Conversation history]" in second[second.index("-p") + 1]
    assert len(collector.of_type("result")) == 1
    assert not collector.of_type("error")
    assert conversation.claude_session_id == "sess-2"
    assert conversation.retry_marker is None


def test_empty_result_twice_surfaces_single_error(fake_cli, collector, conversation):
    fake = fake_cli(emit_lines(result("")), emit_lines(result("")), emit_lines(result("never")))
    conversation.claude_session_id = "sess-old"
    run_turn(claude(fake), collector, conversation)

    assert fake.calls == 2
    assert [e["error"] for e in collector.of_type("error")] == [EMPTY_RESPONSE_ERROR]
    assert not collector.of_type("result")
    assert not conversation.is_thinking


def test_context_overflow_retries_with_compact_history(fake_cli, collector, conversation):
    fake = fake_cli(
        emit_lines({"type": "system", "subtype": "init", "session_id": "sess-stale"})
        + "\necho 'Error: prompt is too long for the context limit' >&2\nexit 1",
        emit_lines(result("Compact worked", 3, 3, session_id="sess-2")),
    )
    for i in range(10):
        conversation.add_message("user", f"question {i}: " + "q" * 3500)
        conversation.add_message("assistant", f"answer {i}: " + "a" * 3500)
    run_turn(claude(fake), collector, conversation)

    assert fake.calls == 2
    first, second = fake.argv(1), fake.argv(2)
    full_prompt = first[first.index("-p") + 1]
    compact_prompt = second[second.index("-p") + 1]

    assert len(full_prompt) > 60000
    assert "question 0:" in full_prompt

    history = compact_prompt.split(NEW_MESSAGE_MARKER)[0]
    assert HISTORY_OPEN in history
    assert len(history) <= COMPACT_HISTORY_CHAR_BUDGET + 100
    assert "answer 9:" in history
    assert "question 0:" not in history
    assert compact_prompt.endswith(NEW_MESSAGE_MARKER + "\nadd it")

    # The init event filled the session slot; the retry must not resume it.
    assert "--resume" not in first
    assert "--resume" not in second
    assert collector.of_type("result")[0]["text"] == "Compact worked"
    assert conversation.claude_session_id == "sess-2"
    assert not collector.of_type("error")


def test_overflow_without_history_is_not_retried(fake_cli, collector, conversation):
    fake = fake_cli("echo 'context length exceeded' >&2\nexit 2", emit_lines(result("unused", 1, 1)))
    run_turn(claude(fake), collector, conversation)
    assert fake.calls == 1
    assert collector.of_type("error")[0]["error"].startswith("Claude process exited with code 2")


# ---------------------------------------------------------------------------
# cancellation / timeout
# ---------------------------------------------------------------------------

def test_cancel_ends_turn_without_retry(fake_cli, collector, conversation):
    fake = fake_cli(emit_lines(result("")) + "\nexec sleep 5")
    conversation.claude_session_id = "sess-old"
    provider = claude(fake)

    async def scenario():
        conversation.add_message("user", "long job")
        conversation.mark_thinking()
        task = asyncio.ensure_future(provider.chat(collector.request(conversation, "long job")))
        for _ in range(200):
            if provider.is_active("conv-1") and provider.supervisor.registry.get("conv-1") is not None:
                break
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.2)
        assert provider.cancel("conv-1")
        await asyncio.wait_for(task, timeout=5)

    run_async(scenario())
    assert fake.calls == 1
    assert not conversation.is_thinking
    assert not provider.is_active("conv-1")
    assert len(collector.of_type("error")) == 1
    assert conversation.retry_marker is None


def test_timeout_terminates_and_surfaces_error(fake_cli, collector, conversation):
    fake = fake_cli("exec sleep 5")
    provider = ClaudeCliProvider(binary=str(fake.path), timeout=0.3)
    run_turn(provider, collector, conversation)
    [error] = collector.of_type("error")
    assert error["error"] == "Claude process exited with code -15"
    assert not conversation.is_thinking


def test_timed_out_attempt_with_pending_fresh_retry_is_retried(fake_cli, collector, conversation):
    fake = fake_cli(
        emit_lines(result("", session_id="sess-old")) + "\nexec sleep 5",
        emit_lines(result("Fresh after timeout", 4, 4, session_id="sess-2")),
    )
    conversation.messages = [Message("user", "earlier"), Message("assistant", "reply")]
    conversation.claude_session_id = "sess-old"
    provider = ClaudeCliProvider(binary=str(fake.path), timeout=0.5)
    run_turn(provider, collector, conversation)

    assert fake.calls == 2
    assert "--resume" in fake.argv(1)
    assert "--resume" not in fake.argv(2)
    assert collector.of_type("result")[0]["text"] == "Fresh after timeout"
    assert not collector.of_type("error")
    assert conversation.claude_session_id == "sess-2"


# ---------------------------------------------------------------------------
# Codex
# ---------------------------------------------------------------------------

def test_codex_turn_reports_cached_token_breakdown(fake_cli, collector, conversation):
    fake = fake_cli(emit_lines(
        {"type": "thread.started", "thread_id": "th-9"},
        {"type": "item.completed", "item": {"type": "reasoning", "text": "thinking"}},
        {"type": "item.completed", "item": {"type": "agent_message", "text": "Patched."}},
        {"type": "turn.completed", "usage": {
            "input_tokens": 1200, "input_tokens_details": {"cached_tokens": 200}, "output_tokens": 50,
        }},
    ))
    conversation.provider = "codex"
    provider = CodexCliProvider(binary=str(fake.path))
    run_turn(provider, collector, conversation, text="fix the bug")

    [res] = collector.of_type("result")
    assert res["text"] == "Patched."
    assert res["inputTokens"] == 1000
    assert res["rawInputTokens"] == 1200
    assert res["cachedInputTokens"] == 200
    assert res["displayInputTokens"] == 3
    assert res["cost"] == 1000 / 1e6 * 10 + 50 / 1e6 * 30
    assert conversation.codex_session_id == "th-9"
    assert conversation.messages[-1].display_input_tokens == 3
    assert collector.of_type("thinking")[0]["text"] == "thinking"
    argv = fake.argv(1)
    assert argv[:2] == ["exec", "--json"]
    assert argv[-1] == "fix the bug"


def test_slash_only_detection():
    assert is_slash_only_prompt("/review")
    assert is_slash_only_prompt("  /review  ")
    assert not is_slash_only_prompt("/review my changes")
    assert not is_slash_only_prompt("hello")


def test_retry_marker_values_are_stable():
    assert RetryMode.FRESH_SESSION.value == "fresh-session"
    assert RetryMode.COMPACT_HISTORY.value == "compact-history"


def test_check_available_resolves_binary(fake_cli):
    fake = fake_cli(emit_lines(result("ok", 1, 1)))
    assert claude(fake).check_available() == str(fake.path)
    with pytest.raises(ProviderNotConfiguredError, match="not found on PATH"):
        ClaudeCliProvider(binary="/nonexistent/claude").check_available()
