from __future__ import annotations

from typing import Callable


class LineBuffer:
    """Accumulate stream chunks and emit complete lines only."""

    def __init__(self, emit_line: Callable[[str], None]) -> None:
        self._emit_line = emit_line
        self._buffer = ""

    def write(self, text: str) -> None:
        if not text:
            return
        self._buffer += text
        *lines, self._buffer = self._buffer.split("\n")
        for line in lines:
            self._emit_line(f"{line}\n")

    def flush(self) -> None:
        if not self._buffer:
            return
        pending = self._buffer
        self._buffer = ""
        self._emit_line(f"{pending}\n")

    @property
    def pending(self) -> str:
        return self._buffer
