"""
Tests for the output relay.
"""

import asyncio
import json

import pytest

from conftest import run_async

from agentrelay.core.relay import OutputRelay


def test_events_carry_type_and_conversation_id():
    sent = []
    relay = OutputRelay(sent.append)
    relay.delta("c1", "hi")
    relay.tool_start("c1", "Bash", "t1")
    relay.tool_result("c1", "t1", False)
    relay.result("c1", "done", cost=0.01, sessionId=None)

    decoded = [json.loads(s) for s in sent]
    assert decoded[0] == {"type": "delta", "conversationId": "c1", "text": "hi"}
    assert decoded[1] == {"type": "tool_start", "conversationId": "c1", "tool": "Bash", "id": "t1"}
    assert decoded[2] == {"type": "tool_result", "conversationId": "c1", "toolUseId": "t1", "isError": False}
    assert "sessionId" not in decoded[3]
    assert relay.sent_count == 4


def test_closed_transport_does_not_raise():
    def closed(_payload):
        raise ConnectionError("socket closed")

    relay = OutputRelay(closed)
    assert relay.error("c1", "boom") is False
    assert relay.sent_count == 0


def test_send_returning_false_counts_as_dropped():
    relay = OutputRelay(lambda _payload: False)
    assert relay.delta("c1", "x") is False
    assert relay.sent_count == 0


def test_no_transport():
    assert OutputRelay(None).delta("c1", "x") is False


def test_status_uses_broadcast_when_available():
    sent, statuses = [], []
    relay = OutputRelay(sent.append, lambda cid, status: statuses.append((cid, status)))
    relay.status("c1", "thinking")
    assert statuses == [("c1", "thinking")]
    assert sent == []


def test_status_falls_back_to_transport():
    sent = []
    OutputRelay(sent.append).status("c1", "idle")
    assert json.loads(sent[0]) == {"type": "status", "conversationId": "c1", "status": "idle"}


def test_async_sends_are_awaited_in_order_on_flush():
    sent = []

    async def send(payload):
        await asyncio.sleep(0)
        sent.append(json.loads(payload)["type"])

    relay = OutputRelay(send)
    relay.delta("c1", "a")
    relay.delta("c1", "b")
    relay.result("c1", "ab")
    assert relay.pending == 3
    assert sent == []

    run_async(relay.flush())
    assert sent == ["delta", "delta", "result"]
    assert relay.pending == 0
    assert relay.sent_count == 3
    assert relay.terminal_sent


def test_async_send_to_closed_transport_is_dropped_on_flush():
    async def send(payload):
        if json.loads(payload)["type"] == "delta":
            raise ConnectionResetError("peer gone")

    relay = OutputRelay(send)
    relay.delta("c1", "a")
    relay.error("c1", "boom")
    run_async(relay.flush())
    assert relay.sent_count == 1
    assert relay.pending == 0


def test_async_send_failure_propagates_and_clears_queue():
    async def send(payload):
        raise ValueError("bad frame")

    relay = OutputRelay(send)
    relay.delta("c1", "a")
    relay.delta("c1", "b")
    with pytest.raises(ValueError, match="bad frame"):
        run_async(relay.flush())
    assert relay.pending == 0
    assert relay.sent_count == 0


def test_discard_drops_queued_sends():
    sent = []

    async def send(payload):
        sent.append(payload)

    relay = OutputRelay(send)
    relay.delta("c1", "a")
    relay.discard()
    assert relay.pending == 0
    run_async(relay.flush())
    assert sent == []


def test_async_broadcast_is_queued():
    statuses = []

    async def broadcast(cid, status):
        statuses.append((cid, status))

    relay = OutputRelay(None, broadcast)
    relay.status("c1", "idle")
    assert statuses == []
    run_async(relay.flush())
    assert statuses == [("c1", "idle")]
