"""
Shared fixtures: an event collector standing in for the transport, and
fake agent CLIs written as shell scripts so the real supervisor runs.
"""

import asyncio
import json
import stat
from pathlib import Path
from typing import Any, Dict, List, Sequence

import pytest

from agentrelay.core.models import Conversation, TurnRequest


def run_async(coro):
    """Run an async coroutine in tests."""
    return asyncio.run(coro)


class EventCollector:
    """Transport + persistence double that records everything it receives."""

    def __init__(self) -> None:
        self.events: List[Dict[str, Any]] = []
        self.statuses: List[tuple] = []
        self.saves: List[str] = []

    def send(self, payload: str) -> bool:
        self.events.append(json.loads(payload))
        return True

    def broadcast_status(self, conversation_id: str, status: str) -> None:
        self.statuses.append((conversation_id, status))

    def on_save(self, conversation_id: str) -> None:
        self.saves.append(conversation_id)

    def of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [e for e in self.events if e["type"] == event_type]

    def types(self) -> List[str]:
        return [e["type"] for e in self.events]

    def request(self, conv: Conversation, text: str, **kwargs) -> TurnRequest:
        return TurnRequest(
            conversation=conv,
            text=text,
            send=self.send,
            on_save=self.on_save,
            broadcast_status=self.broadcast_status,
            **kwargs,
        )


@pytest.fixture
def collector() -> EventCollector:
    return EventCollector()


class FakeCli:
    """
    Executable shell script standing in for an agent CLI.

    Every invocation bumps a counter file and records its argv (NUL
    separated) so tests can assert on retries and arguments.
    """

    def __init__(self, root: Path, attempts: Sequence[str]):
        self.root = root
        self.path = root / "fake-agent"
        self.counter = root / "count"
        lines = [
            "#!/bin/sh",
            f'n=$(cat "{self.counter}" 2>/dev/null || echo 0)',
            "n=$((n+1))",
            f'echo "$n" > "{self.counter}"',
            f'for a in "$@"; do printf \'%s\\0\' "$a"; done > "{root}/argv_$n"',
        ]
        for index, body in enumerate(attempts, start=1):
            keyword = "if" if index == 1 else "elif"
            lines.append(f'{keyword} [ "$n" -eq {index} ]; then')
            lines.append(body)
        if attempts:
            lines.append("fi")
        self.path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        self.path.chmod(self.path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    @property
    def calls(self) -> int:
        if not self.counter.exists():
            return 0
        return int(self.counter.read_text().strip())

    def argv(self, attempt: int) -> List[str]:
        raw = (self.root / f"argv_{attempt}").read_bytes()
        return [part.decode("utf-8") for part in raw.split(b"\0")[:-1]]


def emit_lines(*events: Dict[str, Any]) -> str:
    """Shell snippet printing one JSON object per line on stdout."""
    body = "\n".join(json.dumps(e) for e in events)
    return f"cat <<'JSONL'\n{body}\nJSONL"


@pytest.fixture
def fake_cli(tmp_path):
    def _make(*attempts: str) -> FakeCli:
        return FakeCli(tmp_path, attempts)
    return _make


@pytest.fixture
def conversation(tmp_path) -> Conversation:
    conv = Conversation(id="conv-1", cwd=str(tmp_path))
    return conv
