"""Multiplexer settings and a stream that folds stream-control frames into data writes."""

from __future__ import annotations

import logging
import queue
import random
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

NAME = "MUX"
_MAX_PADDING = 512
_QUEUE_SIZE = 128
_PADDING = b"ABCDEF".ljust(_MAX_PADDING + 8, b"\x00")
_CMD_SYN = 0
_CMD_FIN = 1


@dataclass(frozen=True)
class MuxConfig:
    enabled: bool = False
    idle_timeout: int = 30
    concurrency: int = 8


def _drain(frames: queue.Queue) -> bytes:
    parts = []
    while True:
        try:
            parts.append(frames.get_nowait())
        except queue.Empty:
            return b"".join(parts)


class StickyConn:
    """Holds bare SYN and FIN frames back and sends them together with the next payload."""

    def __init__(self, conn: Any) -> None:
        self.conn = conn
        self._syn: queue.Queue = queue.Queue(maxsize=_QUEUE_SIZE)
        self._fin: queue.Queue = queue.Queue(maxsize=_QUEUE_SIZE)

    def __enter__(self) -> "StickyConn":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _stick(self, payload: bytes) -> bytes:
        head = _drain(self._syn)
        return head + payload + _drain(self._fin)

    def read(self, n: int = 8192) -> bytes:
        return self.conn.read(n)

    def write(self, data: bytes) -> int:
        """Queue an 8-byte SYN or FIN frame, or send data with any queued frames."""
        data = bytes(data)
        if len(data) == 8:
            if data[0] in (1, 2):
                if data[1] == _CMD_SYN:
                    self._syn.put(data)
                    return 8
                if data[1] == _CMD_FIN:
                    self._fin.put(data)
                    return 8
            else:
                logger.debug("other 8 bytes header")
        self.conn.write(self._stick(data))
        return len(data)

    def close(self) -> None:
        """Flush queued frames with random padding, then close the stream."""
        padding = _PADDING[: random.randrange(_MAX_PADDING)]
        try:
            self.write(self._stick(b"") + padding)
        except OSError as exc:
            logger.debug("sticky conn final write failed: %s", exc)
        finally:
            self.conn.close()