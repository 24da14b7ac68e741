"""
Transport Abstraction Layer

Common contract for the media a device under test can be reached over.
The step sequencer only depends on this capability set, so a serial line and
a TCP client are interchangeable behind it.

Both implementations share the same reception model: a background reader
appends into a fixed-capacity ReceiveBuffer, poll() renders the buffer
without consuming it, and clear() empties it.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, Optional, Protocol

import structlog

from devprobe.engine.receive_buffer import ReceiveBuffer

logger = structlog.get_logger()


class TransportListener(Protocol):
    """Receives connection lifecycle and error notifications from a transport."""

    def on_connected(self) -> None:
        ...

    def on_disconnected(self) -> None:
        ...

    def on_error(self, message: str) -> None:
        ...


class NullTransportListener:
    """Listener that ignores every notification."""

    def on_connected(self) -> None:
        pass

    def on_disconnected(self) -> None:
        pass

    def on_error(self, message: str) -> None:
        pass


class CallbackTransportListener:
    """Adapts plain callables to the TransportListener interface."""

    def __init__(
        self,
        on_connected: Optional[Callable[[], None]] = None,
        on_disconnected: Optional[Callable[[], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
    ):
        self._on_connected = on_connected
        self._on_disconnected = on_disconnected
        self._on_error = on_error

    def on_connected(self) -> None:
        if self._on_connected:
            self._on_connected()

    def on_disconnected(self) -> None:
        if self._on_disconnected:
            self._on_disconnected()

    def on_error(self, message: str) -> None:
        if self._on_error:
            self._on_error(message)


class Transport(ABC):
    """
    Abstract base class for device transports.

    Public methods never raise for I/O problems: failures are reported as a
    False return value plus an ``on_error`` notification to the listener.
    """

    def __init__(
        self,
        buffer: ReceiveBuffer,
        listener: Optional[TransportListener] = None,
    ):
        self.buffer = buffer
        self.listener: TransportListener = listener or NullTransportListener()

    @abstractmethod
    def send(self, data: bytes) -> bool:
        """
        Write one payload to the device.

        Returns:
            True when the whole payload was written
        """

    @abstractmethod
    def is_connected(self) -> bool:
        """Whether the link is currently usable."""

    @abstractmethod
    def close(self) -> None:
        """Tear the link down and stop background work. Idempotent."""

    def poll(self, as_hex: bool = False) -> str:
        """Render the receive buffer without consuming it."""
        return self.buffer.render(as_hex)

    def clear(self) -> None:
        """Discard everything received so far."""
        self.buffer.clear()

    def _store_received(self, data: bytes) -> None:
        if not self.buffer.append(data):
            logger.warning(
                "receive_data_discarded",
                transport=type(self).__name__,
                incoming=len(data),
            )

    # Listener exceptions never propagate into reader or supervisor threads.

    def _notify_connected(self) -> None:
        try:
            self.listener.on_connected()
        except Exception as e:
            logger.warning("listener_callback_failed", notification="connected", error=str(e))

    def _notify_disconnected(self) -> None:
        try:
            self.listener.on_disconnected()
        except Exception as e:
            logger.warning("listener_callback_failed", notification="disconnected", error=str(e))

    def _notify_error(self, message: str) -> None:
        try:
            self.listener.on_error(message)
        except Exception as e:
            logger.warning("listener_callback_failed", notification="error", error=str(e))
