"""Incremental Server-Sent Events decoder for chat completion streams."""

from __future__ import annotations

import codecs

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


class SSEDecoder:
    """Turns arbitrarily chunked bytes into ``data:`` payload strings.

    UTF-8 sequences and lines that straddle chunk boundaries are buffered
    until complete. Records other than ``data:`` (comments, ``event:``,
    blank separators) are ignored. A ``data: [DONE]`` record marks the end
    of the stream; everything after it is discarded.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.done = False

    def feed(self, chunk: bytes) -> list[str]:
        """Decode *chunk* and return the payloads it completes."""
        if self.done:
            return []
        self._buffer += self._decoder.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        return self._payloads(lines)

    def flush(self) -> list[str]:
        """Return payloads held back when the byte stream ends."""
        if self.done:
            return []
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return self._payloads([tail])

    def _payloads(self, lines: list[str]) -> list[str]:
        payloads = []
        for line in lines:
            line = line.rstrip("\r")
            if not line.startswith(DATA_PREFIX):
                continue
            data = line[len(DATA_PREFIX):]
            if data.startswith(" "):
                data = data[1:]
            if data.strip() == DONE_SENTINEL:
                self.done = True
                break
            payloads.append(data)
        return payloads
