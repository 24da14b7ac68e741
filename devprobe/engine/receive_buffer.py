"""
Receive Buffer - fixed-capacity byte accumulator shared by both transports.

Reader threads append incoming bytes; the sequencer renders the current
contents as hex or text. Rendering never consumes data: only clear() resets
the buffer, so repeated polls return the same snapshot until more bytes
arrive or the buffer is cleared.

Overflow policy: an append that does not fit is rejected and the whole
buffer is discarded. The buffer never grows or wraps.
"""
from __future__ import annotations

import threading

import structlog

logger = structlog.get_logger()


class ReceiveBuffer:
    """
    Thread-safe append-only byte region with a length cursor.

    Invariant: ``0 <= length <= capacity``.
    """

    def __init__(self, capacity: int, name: str = "rx"):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.name = name
        self._capacity = capacity
        self._data = bytearray(capacity)
        self._length = 0
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def length(self) -> int:
        with self._lock:
            return self._length

    def append(self, data: bytes) -> bool:
        """
        Append bytes after the current contents.

        Returns:
            False when the data does not fit; the buffer is then empty.
        """
        if not data:
            return True

        with self._lock:
            end = self._length + len(data)
            if end > self._capacity:
                dropped = self._length
                self._length = 0
                overflow = True
            else:
                self._data[self._length:end] = data
                self._length = end
                overflow = False

        if overflow:
            logger.warning(
                "receive_buffer_overflow",
                buffer=self.name,
                capacity=self._capacity,
                buffered=dropped,
                incoming=len(data),
            )
            return False
        return True

    def snapshot(self) -> bytes:
        """Copy of the buffered bytes"""
        with self._lock:
            return bytes(self._data[:self._length])

    def render(self, as_hex: bool) -> str:
        """
        Render the buffered bytes without consuming them.

        Hex rendering is uppercase byte pairs separated by single spaces;
        text rendering decodes UTF-8, replacing undecodable bytes.
        """
        data = self.snapshot()
        if not data:
            return ""
        if as_hex:
            return " ".join(f"{byte:02X}" for byte in data)
        return data.decode("utf-8", errors="replace")

    def clear(self) -> None:
        with self._lock:
            self._length = 0

    def __len__(self) -> int:
        return self.length
