"""Newline framing for the app-server stdout stream."""

from __future__ import annotations

import json
from typing import Any

from .protocol import make_parse_error_message


class LineFramer:
    """Accumulate raw bytes and hand back whole lines.

    A trailing partial line stays buffered until the newline that completes it
    arrives in a later chunk.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()

    @property
    def pending(self) -> bytes:
        """Bytes received after the last newline."""
        return bytes(self._buffer)

    def feed(self, data: bytes) -> list[str]:
        self._buffer.extend(data)
        lines: list[str] = []
        while True:
            index = self._buffer.find(b"\n")
            if index == -1:
                break
            raw = bytes(self._buffer[:index])
            del self._buffer[: index + 1]
            lines.append(raw.decode("utf-8", errors="replace").rstrip("\r"))
        return lines

    def reset(self) -> None:
        self._buffer.clear()


def parse_line(line: str) -> dict[str, Any] | None:
    """Decode one protocol line.

    Returns None for blank lines. Lines that are not a JSON object come back as
    a synthetic parse-error message so that subscribers can react to them.
    """
    if not line.strip():
        return None
    try:
        payload = json.loads(line)
    except json.JSONDecodeError as exc:
        return make_parse_error_message(line, f"invalid JSON: {exc.msg}")
    if not isinstance(payload, dict):
        return make_parse_error_message(line, "expected a JSON object")
    return payload
