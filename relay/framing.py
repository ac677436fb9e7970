"""
probeshell Stream Framing (Shared)
Splits a raw TCP byte stream into discrete JSON message frames.

Two framings are supported:
- "brace": a frame is a brace-balanced JSON object, optionally followed by
  a newline. Depth is counted per '{' / '}' byte, so braces inside JSON
  strings are counted too. This is the default and what existing agents
  speak.
- "length": <4-byte big-endian length><payload>, same 1 MiB ceiling.
"""

import logging
from typing import Any, Dict, Iterator, Union

from . import protocol

logger = logging.getLogger(__name__)

MAX_BUFFER = 1024 * 1024  # 1 MiB
HEADER_SIZE = 4

BRACE = "brace"
LENGTH = "length"
FRAMINGS = (BRACE, LENGTH)

_OPEN = ord('{')
_CLOSE = ord('}')


class BraceFramer:
    """Incremental brace-depth framer over an append-only buffer."""

    def __init__(self, max_buffer: int = MAX_BUFFER):
        self.max_buffer = max_buffer
        self._buffer = bytearray()
        self._depth = 0
        self._in_message = False
        self._start = 0
        self._scan = 0

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def reset(self) -> None:
        self._buffer.clear()
        self._depth = 0
        self._in_message = False
        self._start = 0
        self._scan = 0

    def feed(self, chunk: bytes) -> Iterator[bytes]:
        """Append a chunk and lazily yield every frame it completes."""
        self._buffer.extend(chunk)
        return self._frames()

    def _frames(self) -> Iterator[bytes]:
        buf = self._buffer
        while self._scan < len(buf):
            byte = buf[self._scan]
            if byte == _OPEN:
                if not self._in_message:
                    self._in_message = True
                    self._start = self._scan
                self._depth += 1
            elif byte == _CLOSE and self._in_message:
                self._depth -= 1
                if self._depth == 0:
                    frame = bytes(buf[self._start:self._scan + 1])
                    del buf[:self._scan + 1]
                    self._scan = 0
                    self._in_message = False
                    yield frame
                    continue
            self._scan += 1

        if not self._in_message:
            # Nothing but inter-frame bytes left
            self.reset()
        elif len(buf) > self.max_buffer:
            logger.warning("Buffer overflow (%d bytes without a complete message), clearing", len(buf))
            self.reset()


class LengthPrefixFramer:
    """Length-prefixed framer: <4-byte big-endian length><payload>."""

    def __init__(self, max_buffer: int = MAX_BUFFER):
        self.max_buffer = max_buffer
        self._buffer = bytearray()

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def reset(self) -> None:
        self._buffer.clear()

    def feed(self, chunk: bytes) -> Iterator[bytes]:
        self._buffer.extend(chunk)
        return self._frames()

    def _frames(self) -> Iterator[bytes]:
        buf = self._buffer
        while len(buf) >= HEADER_SIZE:
            msg_len = int.from_bytes(buf[:HEADER_SIZE], 'big')
            if msg_len > self.max_buffer:
                self.reset()
                raise ValueError("Message too large")
            end = HEADER_SIZE + msg_len
            if len(buf) < end:
                return
            frame = bytes(buf[HEADER_SIZE:end])
            del buf[:end]
            yield frame


Framer = Union[BraceFramer, LengthPrefixFramer]


def make_framer(mode: str = BRACE) -> Framer:
    if mode == BRACE:
        return BraceFramer()
    if mode == LENGTH:
        return LengthPrefixFramer()
    raise ValueError(f"Unknown framing: {mode}")


def encode_message(msg: Dict[str, Any], mode: str = BRACE) -> bytes:
    """Serialize a message into one frame for the given framing."""
    payload = protocol.dumps(msg).encode('utf-8')
    if mode == BRACE:
        return payload + b"\n"
    if mode == LENGTH:
        if len(payload) > MAX_BUFFER:
            raise ValueError("Message too large")
        return len(payload).to_bytes(HEADER_SIZE, 'big') + payload
    raise ValueError(f"Unknown framing: {mode}")
