from __future__ import annotations
from typing import Iterator


class LineFramer:
    """Reassemble arbitrarily chunked UART notifications into text lines.

    The timer terminates lines with CR (sometimes CRLF). A line is only
    emitted once its terminator has arrived; the tail is kept for the next
    ``feed`` call. Blank lines (e.g. the LF half of a CRLF) are dropped.
    """

    def __init__(self, encoding: str = "ascii"):
        self.encoding = encoding
        self._buf = ""

    def feed(self, chunk: bytes) -> Iterator[str]:
        # chunk is buffered immediately; only line extraction is lazy
        self._buf += chunk.decode(self.encoding, errors="replace")
        return self._drain()

    def _drain(self) -> Iterator[str]:
        while True:
            i_cr = self._buf.find("\r")
            i_lf = self._buf.find("\n")
            if i_cr < 0 and i_lf < 0:
                return
            if i_cr >= 0 and i_lf >= 0:
                sep = min(i_cr, i_lf)
            else:
                sep = max(i_cr, i_lf)
            line = self._buf[:sep].strip()
            self._buf = self._buf[sep + 1:]
            if line:
                yield line

    @property
    def pending(self) -> str:
        """Partial line waiting for its terminator."""
        return self._buf

    def clear(self):
        self._buf = ""
