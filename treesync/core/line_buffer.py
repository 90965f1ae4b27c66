"""Chunk → line reassembly for the text stream.

Network chunks split lines at arbitrary points.  ``LineBuffer`` keeps the
trailing fragment of each chunk as carry-over and only ever returns
complete ``\\n``-terminated lines, so feeding a stream in any chunking
yields the same lines as feeding it whole.
"""

from __future__ import annotations

import codecs
from typing import Optional


class LineBuffer:
    """Carry-over buffer that turns arbitrary text chunks into complete lines.

    One instance per stream.  Lines are returned without their ``\\n``;
    the final unterminated fragment stays buffered until ``flush()``.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def add(self, chunk: str) -> list[str]:
        """Append ``chunk`` and return every line it completed."""
        if not chunk:
            return []
        self._buffer += chunk
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return lines

    def add_bytes(self, data: bytes) -> list[str]:
        """Like ``add`` for raw bytes; a multi-byte character split across chunks is held back."""
        return self.add(self._decoder.decode(data))

    def flush(self) -> Optional[str]:
        """Return and clear the carry-over, or ``None`` when nothing is left."""
        tail = self._decoder.decode(b"", final=True)
        self._decoder.reset()
        remaining = self._buffer + tail
        self._buffer = ""
        return remaining or None

    @property
    def pending(self) -> str:
        """Carry-over text not yet terminated by a newline."""
        return self._buffer
