"""Output sink shared by concurrent builds.

Builds running in parallel write their progress to the same stream. Each
build gets a `LineWriter` that buffers partial output and only hands whole
lines to the sink, so lines from different builds never interleave.
"""

import sys
import threading
from typing import TextIO

__all__ = [
    "OutputSink",
    "LineWriter",
]


class OutputSink:
    """A text stream that accepts whole lines from many writers."""

    def __init__(self, stream: TextIO | None = None) -> None:
        """Initialize OutputSink."""
        self._stream = stream if stream is not None else sys.stdout
        self._lock = threading.Lock()

    def write_line(self, line: str) -> None:
        """Write a single line to the stream."""
        line = line.rstrip("\r\n")
        with self._lock:
            self._stream.write(line + "\n")
            self._stream.flush()

    def prefixed(self, prefix: str = "") -> "LineWriter":
        """Return a writer that tags every line with the prefix."""
        return LineWriter(self, prefix)


class LineWriter:
    """Buffers chunks of output and emits complete lines to a sink."""

    def __init__(self, sink: OutputSink, prefix: str = "") -> None:
        """Initialize LineWriter."""
        self._sink = sink
        self._prefix = prefix
        self._buffer = ""

    def write(self, data: bytes | str) -> None:
        """Write a chunk of output, which may contain partial lines."""
        if isinstance(data, bytes):
            data = data.decode("utf-8", errors="replace")
        self._buffer += data
        *lines, self._buffer = self._buffer.split("\n")
        for line in lines:
            self._sink.write_line(f"{self._prefix}{line}")

    def flush(self) -> None:
        """Emit any buffered partial line."""
        if self._buffer:
            self._sink.write_line(f"{self._prefix}{self._buffer}")
            self._buffer = ""

    def println(self, message: str) -> None:
        """Write a complete message."""
        self.flush()
        for line in message.splitlines() or [""]:
            self._sink.write_line(f"{self._prefix}{line}")
