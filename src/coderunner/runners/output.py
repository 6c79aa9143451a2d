"""
Concurrent, bounded capture of a running program's stdout and stderr.

Each output source is drained on its own daemon thread while the program runs,
so neither pipe can fill up and stall the child. Captured bytes are capped per
stream. Past the cap the readers keep consuming and discarding data, and the
buffer is only marked as truncated.
"""

from __future__ import annotations

import threading
import time
from typing import IO, Iterable, Iterator

from coderunner.config.logging_config import get_logger

log = get_logger(__name__)

STDOUT = "stdout"
STDERR = "stderr"
CHUNK_SIZE = 64 * 1024

OutputSource = Iterable[tuple[str, bytes]]


def _cut_at_char_boundary(data: bytes) -> bytes:
    """Drop a UTF-8 sequence left incomplete at the end of ``data``."""
    end = len(data)
    start = end - 1
    # A sequence is at most 4 bytes: one lead byte and up to 3 continuation bytes
    while start >= 0 and end - start < 4 and data[start] & 0xC0 == 0x80:
        start -= 1
    if start < 0 or data[start] < 0xC0:
        return data
    lead = data[start]
    needed = 2 if lead < 0xE0 else 3 if lead < 0xF0 else 4
    if end - start < needed:
        return data[:start]
    return data


class BoundedOutputBuffer:
    """Byte buffer that keeps at most ``limit`` bytes and records overflow."""

    def __init__(self, limit: int) -> None:
        if limit < 0:
            raise ValueError("limit must not be negative")
        self.limit = limit
        self.total_bytes = 0
        self.truncated = False
        self._chunks: list[bytes] = []
        self._size = 0

    def append(self, data: bytes) -> None:
        if not data:
            return
        self.total_bytes += len(data)
        if self.truncated:
            return
        room = self.limit - self._size
        if room <= 0:
            self.truncated = True
            return
        if len(data) > room:
            data = _cut_at_char_boundary(data[:room])
            self.truncated = True
        if data:
            self._chunks.append(data)
            self._size += len(data)

    def __len__(self) -> int:
        return self._size

    def getvalue(self) -> str:
        return b"".join(self._chunks).decode("utf-8", errors="replace")


def pipe_source(pipe: IO[bytes], slot: str) -> Iterator[tuple[str, bytes]]:
    """Yield ``(slot, chunk)`` pairs from an unbuffered pipe until EOF.

    Reads fixed-size chunks rather than lines so that output without newlines
    cannot grow an unbounded line buffer.
    """
    try:
        while True:
            chunk = pipe.read(CHUNK_SIZE)
            if not chunk:
                break
            yield slot, chunk
    finally:
        try:
            pipe.close()
        except OSError as e:
            log.debug("closing %s pipe failed: %s", slot, e)


class OutputCollector:
    """Drains output sources into per-stream bounded buffers.

    State belongs to a single execution; nothing here is shared between runs.
    """

    def __init__(self, max_bytes: int) -> None:
        self.stdout = BoundedOutputBuffer(max_bytes)
        self.stderr = BoundedOutputBuffer(max_bytes)
        self._lock = threading.Lock()
        self._accepting = True
        self._threads: list[threading.Thread] = []

    def start(self, sources: Iterable[OutputSource]) -> None:
        """Start one reader thread per source."""
        for index, source in enumerate(sources):
            thread = threading.Thread(
                target=self._reader_thread,
                args=(source,),
                name=f"coderunner-reader-{index}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

    def close(self) -> None:
        """Stop accepting output. Readers keep draining their sources and drop the data."""
        with self._lock:
            self._accepting = False

    def join(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for all readers; return True if they all finished."""
        end = time.monotonic() + max(0.0, timeout)
        for thread in self._threads:
            thread.join(max(0.0, end - time.monotonic()))
        alive = [t.name for t in self._threads if t.is_alive()]
        if alive:
            log.debug("output readers still running: %s", alive)
        return not alive

    def _reader_thread(self, source: OutputSource) -> None:
        try:
            for slot, chunk in source:
                self._accept(slot, chunk)
        except Exception as e:
            # Sources end abruptly when the sandbox is torn down underneath them
            log.debug("reader ended: %s", e)

    def _accept(self, slot: str, chunk: bytes) -> None:
        with self._lock:
            if not self._accepting:
                return
            if slot == STDOUT:
                self.stdout.append(chunk)
            elif slot == STDERR:
                self.stderr.append(chunk)
            else:
                log.debug("ignoring output for unknown slot %r", slot)
