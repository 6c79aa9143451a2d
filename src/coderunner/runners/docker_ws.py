from __future__ import annotations

import socket
from typing import Iterator

from coderunner.config.logging_config import get_logger
from coderunner.runners.output import STDERR, STDOUT

log = get_logger(__name__)

_HEADER_SIZE = 8
_SLOTS = {1: STDOUT, 2: STDERR}


class DockerStreamDemuxer:
    """
    Demultiplex the raw attach socket of a container started without a TTY.

    Frame layout::

        [1 byte stream][3 bytes 0][4 bytes big-endian length][payload]

    Stream 1 is stdout and stream 2 is stderr. Frames for any other stream
    are skipped.
    """

    def __init__(self, sock: socket.socket, recv_size: int = 64 * 1024) -> None:
        self._sock = sock
        self._recv_size = recv_size
        self._buffer = bytearray()

    def recv(self) -> bytes:
        return self._sock.recv(self._recv_size)

    def iter_messages(self) -> Iterator[tuple[str, bytes]]:
        while True:
            chunk = self.recv()
            if not chunk:
                break
            self._buffer += chunk
            while len(self._buffer) >= _HEADER_SIZE:
                stream_type = self._buffer[0]
                length = int.from_bytes(self._buffer[4:8], "big")
                end = _HEADER_SIZE + length
                if len(self._buffer) < end:
                    break
                payload = bytes(self._buffer[_HEADER_SIZE:end])
                del self._buffer[:end]
                slot = _SLOTS.get(stream_type)
                if slot is not None and payload:
                    yield slot, payload
        if self._buffer:
            log.debug("discarding %d bytes of incomplete frame", len(self._buffer))
            self._buffer.clear()

    def close(self) -> None:
        try:
            self._sock.close()
        except OSError as e:
            log.debug("closing attach socket failed: %s", e)
