"""
Tests for the Ollama provider's request building and failure handling.

Connection failures point at a closed port; streaming tests run against a
small aiohttp app that speaks the /api/chat and /api/tags shapes.
"""

import asyncio
import json
import socket

import pytest
from aiohttp import test_utils, web

from conftest import run_async

from agentrelay.core.ai.base import build_summary_prompt
from agentrelay.core.ai.ollama_provider import (
    ATTACHMENTS_UNSUPPORTED,
    DEFAULT_MODELS,
    OllamaProvider,
    build_chat_messages,
    build_system_prompt,
    estimate_context,
)
from agentrelay.core.errors import ProviderNotConfiguredError
from agentrelay.core.models import Attachment, MemoryNote, Message


def closed_port_host():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        port = s.getsockname()[1]
    return f"http://127.0.0.1:{port}"


def test_estimate_context_from_parameter_size():
    assert estimate_context("70B") == 32000
    assert estimate_context("33B") == 4096
    assert estimate_context("34B") == 16000
    assert estimate_context("13B") == 8192
    assert estimate_context("8.0B") == 4096
    assert estimate_context("8B") == 8192
    assert estimate_context(None) == 4096


def test_chat_messages_skip_system_summarized_and_duplicate_prompt(conversation):
    conversation.messages = [
        Message("system", "summary", compression_meta={"compressedCount": 2}),
        Message("user", "old", summarized=True),
        Message("assistant", "old reply", summarized=True),
        Message("user", "recent"),
        Message("assistant", "recent reply"),
        Message("user", "now"),
    ]
    messages = build_chat_messages(conversation, "now")
    assert [m["role"] for m in messages] == ["system", "user", "assistant", "user"]
    assert [m["content"] for m in messages[1:]] == ["recent", "recent reply", "now"]
    assert "[COMPRESSED CONVERSATION CONTEXT]" in messages[0]["content"]
    assert "summary" in messages[0]["content"]


def test_system_prompt_lists_enabled_memories(conversation):
    prompt = build_system_prompt(conversation, [
        MemoryNote("use tabs"),
        MemoryNote("repo uses poetry", scope="project"),
        MemoryNote("hidden", enabled=False),
    ])
    assert "## Global\n- use tabs" in prompt
    assert "## Project-specific\n- repo uses poetry" in prompt
    assert "hidden" not in prompt


def test_attachments_are_rejected(collector, conversation):
    provider = OllamaProvider(host=closed_port_host())
    conversation.provider = "ollama"
    conversation.mark_thinking()
    request = collector.request(conversation, "look", attachments=[Attachment("/tmp/a.png")])
    run_async(provider.chat(request))
    assert [e["error"] for e in collector.of_type("error")] == [ATTACHMENTS_UNSUPPORTED]
    assert not conversation.is_thinking
    assert not provider.is_active(conversation.id)


def test_unreachable_server_reports_hint(collector, conversation):
    host = closed_port_host()
    provider = OllamaProvider(host=host)
    conversation.mark_thinking()
    run_async(provider.chat(collector.request(conversation, "hi")))
    [error] = collector.of_type("error")
    assert error["error"] == f"Cannot connect to Ollama at {host}. Is Ollama running? Try: ollama serve"
    assert collector.statuses[-1] == ("conv-1", "idle")
    assert not conversation.is_thinking
    assert not provider.is_active("conv-1")


def test_models_fall_back_to_defaults_when_unreachable():
    provider = OllamaProvider(host=closed_port_host())
    assert run_async(provider.get_models()) == DEFAULT_MODELS


def test_busy_conversation(collector, conversation):
    provider = OllamaProvider(host=closed_port_host())
    provider.registry.reserve("conv-1")
    conversation.mark_thinking()
    run_async(provider.chat(collector.request(conversation, "hi")))
    assert [e["error"] for e in collector.of_type("error")] == ["Conversation is busy"]


def test_cancel_without_turn():
    assert OllamaProvider().cancel("nope") is False


def test_summary_prompt_truncates_long_messages():
    prompt = build_summary_prompt([
        Message("user", "x" * 2500),
        Message("assistant", "short"),
    ], assistant_label="Claude")
    assert "[User]: " + "x" * 2000 + "\n[... truncated ...]" in prompt
    assert "[Claude]: short" in prompt
    assert "x" * 2001 not in prompt


CHAT_LINES = [
    {"message": {"role": "assistant", "content": "Hel"}, "done": False},
    {"message": {"role": "assistant", "content": "lo"}, "done": False},
    {"message": {"role": "assistant", "content": ""}, "done": True, "prompt_eval_count": 7, "eval_count": 2},
]

TAGS = {"models": [{"name": "llama3.1:8b", "details": {"parameter_size": "8.0B"}}]}


def ollama_app():
    async def chat(request):
        resp = web.StreamResponse()
        resp.content_type = "application/x-ndjson"
        await resp.prepare(request)
        for line in CHAT_LINES:
            await resp.write((json.dumps(line) + "\n").encode("utf-8"))
        await resp.write_eof()
        return resp

    async def tags(request):
        return web.json_response(TAGS)

    app = web.Application()
    app.router.add_post("/api/chat", chat)
    app.router.add_get("/api/tags", tags)
    return app


async def with_server(scenario):
    server = test_utils.TestServer(ollama_app())
    await server.start_server()
    try:
        return await scenario(f"http://{server.host}:{server.port}")
    finally:
        await server.close()


def test_streamed_chat_becomes_one_result(collector, conversation):
    async def scenario(host):
        provider = OllamaProvider(host=host)
        conversation.add_message("user", "hi")
        conversation.mark_thinking()
        await provider.chat(collector.request(conversation, "hi"))
        return provider

    provider = run_async(with_server(scenario))
    assert [e["text"] for e in collector.of_type("delta")] == ["Hel", "lo"]
    [res] = collector.of_type("result")
    assert res["text"] == "Hello"
    assert res["inputTokens"] == 7 and res["outputTokens"] == 2
    assert res["cost"] == 0
    assert conversation.messages[-1].text == "Hello"
    assert collector.statuses[-1] == ("conv-1", "idle")
    assert not provider.is_active("conv-1")


def test_transport_failure_mid_stream_ends_turn(collector, conversation):
    def send(payload):
        if json.loads(payload)["type"] == "delta":
            raise ValueError("socket went away")
        return collector.send(payload)

    async def scenario(host):
        provider = OllamaProvider(host=host)
        request = collector.request(conversation, "hi")
        request.send = send
        conversation.add_message("user", "hi")
        conversation.mark_thinking()
        await provider.chat(request)
        return provider

    provider = run_async(with_server(scenario))
    assert [e["error"] for e in collector.of_type("error")] == ["Ollama turn failed: socket went away"]
    assert collector.statuses[-1] == ("conv-1", "idle")
    assert not conversation.is_thinking
    assert not provider.is_active("conv-1")


def test_models_and_availability_from_tags():
    async def scenario(host):
        provider = OllamaProvider(host=host)
        models = await provider.get_models()
        location = await asyncio.to_thread(provider.check_available)
        return models, location, host

    models, location, host = run_async(with_server(scenario))
    assert [(m.id, m.name, m.context) for m in models] == [("llama3.1:8b", "llama3.1", 4096)]
    assert location == host


def test_unreachable_server_is_not_configured():
    with pytest.raises(ProviderNotConfiguredError, match="Ollama not reachable"):
        OllamaProvider(host=closed_port_host()).check_available()
