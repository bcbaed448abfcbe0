# agentrelay/core/stream_parser.py
"""
Incremental newline-delimited JSON parser.

Agent CLIs write one JSON object per line on stdout, but pipe reads return
arbitrary byte chunks. The parser keeps the trailing partial line between
feeds and silently drops lines that are not valid JSON objects so a corrupt
line never aborts a turn.
"""

import json
import logging
from typing import Any, Dict, Iterator, Optional

logger = logging.getLogger(__name__)


class JsonLineParser:
    """
    Owns the carry-over buffer for one stream.

    Usage:
        parser = JsonLineParser()
        for event in parser.feed(chunk):
            ...
        for event in parser.flush():
            ...
    """

    def __init__(self) -> None:
        self._buffer = b""
        self.dropped_lines = 0

    @property
    def pending(self) -> bytes:
        return self._buffer

    def feed(self, chunk: bytes) -> Iterator[Dict[str, Any]]:
        """Append a chunk and yield every complete line that parses."""
        if not chunk:
            return
        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")
        self._buffer += chunk
        # Split on bytes so multibyte characters cut across chunks survive.
        while b"\n" in self._buffer:
            line, self._buffer = self._buffer.split(b"\n", 1)
            event = self._parse_line(line)
            if event is not None:
                yield event

    def flush(self) -> Iterator[Dict[str, Any]]:
        """Give whatever is left in the buffer one final parse attempt."""
        remainder, self._buffer = self._buffer, b""
        event = self._parse_line(remainder)
        if event is not None:
            yield event

    def _parse_line(self, line: bytes) -> Optional[Dict[str, Any]]:
        if not line.strip():
            return None
        try:
            event = json.loads(line.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            self.dropped_lines += 1
            logger.debug(f"Dropping malformed event line: {e}, line: {line[:100]!r}")
            return None
        if not isinstance(event, dict):
            self.dropped_lines += 1
            return None
        return event
