"""Line framing and sudo prompt detection for remote output streams.

Remote output arrives in chunks that have nothing to do with line
boundaries. ``LineFramer`` turns those chunks back into complete lines,
keeping the unterminated tail in ``keep`` until the rest of it shows up.
``PromptDetector`` looks at that tail: a sudo prompt is never followed by a
newline, so it can only ever be seen there.
"""

from __future__ import annotations

import re

CHUNK_SIZE = 64 * 1024

_TERMINATOR = re.compile(rb"\r?\n")


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace")


class LineFramer:
    """Re-assemble arbitrarily chunked bytes into text lines."""

    def __init__(self, chunk_size: int = CHUNK_SIZE) -> None:
        self.chunk_size = chunk_size
        self.keep = b""

    def feed(self, chunk: bytes) -> list[str]:
        """Consume one chunk and return the lines it completed."""
        if not chunk:
            return []

        data = self.keep + chunk
        pieces = _TERMINATOR.split(data)
        if len(pieces) == 1:
            self.keep = data
            lines = []
        else:
            self.keep = pieces.pop()
            lines = [_decode(piece) for piece in pieces]

        # "\r" may be the first half of a "\r\n" split across two reads
        if len(self.keep) > self.chunk_size and not self.keep.endswith(b"\r"):
            lines.append(_decode(self.keep))
            self.keep = b""
        return lines

    def flush(self) -> list[str]:
        """Emit whatever is left at end of stream."""
        if not self.keep:
            return []
        tail = self.keep
        self.keep = b""
        if tail.endswith(b"\r"):
            tail = tail[:-1]
        return [_decode(tail)]

    def pending(self) -> str:
        """The unterminated tail, decoded."""
        return _decode(self.keep)

    def discard(self) -> None:
        self.keep = b""


def prompt_marker(prog: str) -> str:
    """The prompt sudo is told to print, via ``SUDO_PROMPT``."""
    return f"[{prog}] sudo password: "


class PromptDetector:
    """Recognize a pending sudo password prompt in unflushed output."""

    def __init__(self, marker: str) -> None:
        self.marker = marker
        self._marker_bytes = marker.encode("utf-8")

    def check(self, framer: LineFramer) -> str | None:
        """Return the prompt text and clear ``keep`` if it ends with the marker.

        Only the unterminated tail is inspected. The marker followed by a
        newline is an ordinary output line and never counts as a prompt.
        """
        if framer.keep.endswith(self._marker_bytes):
            prompt = framer.pending()
            framer.discard()
            return prompt
        return None
