"""
Socket Transport - TCP client with automatic reconnection.

One connection-supervisor thread establishes the connection and re-establishes
it after any failure; one reader thread moves incoming bytes into the
ReceiveBuffer while the link is up. First connection and recovery go through
the same supervisor loop:

    idle -> connecting -> connected -> connecting -> ... -> closed

The supervisor retries every ``reconnect_delay_sec`` until it succeeds or
disconnect() is called. Reader failures, peer closes and send failures all
drop the link and restart the supervisor.

Locking: ``_lock`` guards the socket handle and supervisor bookkeeping, and
serializes reception with poll(), clear() and send(). The ReceiveBuffer has
its own lock as well. The supervisor never holds ``_lock`` while a connect
attempt is in flight.
"""
from __future__ import annotations

import select
import socket
import threading
import time
from typing import Callable, Optional, Tuple

import pydantic
import structlog

from devprobe.config import settings
from devprobe.engine.receive_buffer import ReceiveBuffer
from devprobe.engine.transport import Transport, TransportListener
from devprobe.exceptions import (
    ConfigurationError,
    ConnectionTimeoutError,
    ReceiveError,
    SendError,
    TransportConnectError,
)
from devprobe.models import ConnectionState, SocketConfig

logger = structlog.get_logger()

Connector = Callable[[Tuple[str, int], float], socket.socket]


def validate_endpoint(host: str, port: int) -> SocketConfig:
    """
    Check a TCP target syntactically.

    Raises:
        ConfigurationError: host is neither an IP address nor ``localhost``,
            or port is outside 1-65535
    """
    try:
        return SocketConfig(host=host, port=port)
    except pydantic.ValidationError as e:
        fields = sorted({str(err["loc"][0]) for err in e.errors() if err.get("loc")})
        if "host" in fields:
            message = f"Invalid IP address: {host}"
        else:
            message = f"Invalid port: {port}"
        raise ConfigurationError(message, details={"host": host, "port": port, "fields": fields})


class SocketTransport(Transport):
    """
    TCP client transport.

    Example usage:
        transport = SocketTransport(listener=my_listener)
        transport.connect("192.168.1.50", 502)
        ...
        transport.send(b"PING")
        reply = transport.poll()
        transport.disconnect()

    connect() returns as soon as the supervisor is started; ``on_connected``
    fires once the link is actually up.
    """

    def __init__(
        self,
        listener: Optional[TransportListener] = None,
        buffer_capacity: Optional[int] = None,
        connector: Optional[Connector] = None,
        connect_timeout_sec: Optional[float] = None,
        send_timeout_sec: Optional[float] = None,
        reconnect_delay_sec: Optional[float] = None,
        idle_sec: Optional[float] = None,
        join_timeout_sec: Optional[float] = None,
    ):
        if buffer_capacity is None:
            buffer_capacity = settings.socket_buffer_capacity
        super().__init__(ReceiveBuffer(buffer_capacity, name="socket"), listener)
        self._connector: Connector = connector or socket.create_connection
        self.connect_timeout_sec = (
            settings.socket_connect_timeout_sec if connect_timeout_sec is None else connect_timeout_sec
        )
        self.send_timeout_sec = (
            settings.socket_send_timeout_sec if send_timeout_sec is None else send_timeout_sec
        )
        self.reconnect_delay_sec = (
            settings.reconnect_delay_sec if reconnect_delay_sec is None else reconnect_delay_sec
        )
        self.idle_sec = settings.reader_idle_sec if idle_sec is None else idle_sec
        self.join_timeout_sec = (
            settings.thread_join_timeout_sec if join_timeout_sec is None else join_timeout_sec
        )

        self.host: Optional[str] = None
        self.port: Optional[int] = None

        self._sock: Optional[socket.socket] = None
        self._state = ConnectionState.IDLE
        self._lock = threading.Lock()
        self._running = False
        self._reconnect_enabled = False
        self._wake = threading.Event()
        self._supervising = False
        self._supervisor_thread: Optional[threading.Thread] = None
        self._reader_thread: Optional[threading.Thread] = None

        # Statistics
        self.connect_attempts = 0
        self.connect_count = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    def connect(self, host: str, port: int) -> bool:
        """
        Start connecting to ``host:port`` in the background.

        Returns:
            False if the address is syntactically invalid (nothing is
            started); True once the supervisor is running.
        """
        try:
            config = validate_endpoint(host, port)
        except ConfigurationError as e:
            logger.error("socket_endpoint_invalid", **e.details)
            self._notify_error(e.message)
            return False

        if self.is_connected():
            self.disconnect()

        self.host = config.host
        self.port = config.port
        self._running = True
        self._reconnect_enabled = True
        self._wake.clear()
        self._state = ConnectionState.CONNECTING

        logger.info("socket_connect_requested", host=self.host, port=self.port)
        self._start_supervisor()
        return True

    def connect_config(self, config: SocketConfig) -> bool:
        return self.connect(config.host, config.port)

    def disconnect(self) -> None:
        """
        Stop the supervisor and reader and release the socket.

        Thread joins are bounded by ``join_timeout_sec`` each. Safe to call
        repeatedly and when never connected.
        """
        self._running = False
        self._reconnect_enabled = False
        self._wake.set()

        current = threading.current_thread()
        for thread in (self._supervisor_thread, self._reader_thread):
            if thread is not None and thread is not current and thread.is_alive():
                thread.join(timeout=self.join_timeout_sec)
                if thread.is_alive():
                    logger.warning("socket_thread_join_timeout", thread=thread.name)

        with self._lock:
            sock = self._sock
            self._sock = None
            self._state = ConnectionState.CLOSED
        if sock is not None:
            self._close_socket(sock)

        logger.info("socket_disconnected", host=self.host, port=self.port)
        self._notify_disconnected()

    def close(self) -> None:
        self.disconnect()

    def wait_until_connected(self, timeout_sec: float) -> bool:
        """Block until the link is up or the timeout expires."""
        deadline = time.monotonic() + timeout_sec
        while time.monotonic() < deadline:
            if self.is_connected():
                return True
            if not self._running:
                return False
            time.sleep(0.05)
        return self.is_connected()

    # ------------------------------------------------------------------
    # Connection state
    # ------------------------------------------------------------------

    def is_connected(self) -> bool:
        """
        Whether the peer is still there.

        A socket that selects readable with nothing to read has a pending
        close (half-closed by the peer) and does not count as connected.
        """
        with self._lock:
            sock = self._sock
            if sock is None:
                return False
            return self._probe(sock)

    @staticmethod
    def _probe(sock: socket.socket) -> bool:
        try:
            if sock.fileno() < 0:
                return False
            readable, _, _ = select.select([sock], [], [], 0)
            if not readable:
                return True
            return len(sock.recv(1, socket.MSG_PEEK)) > 0
        except BlockingIOError:
            return True
        except (OSError, ValueError):
            return False

    # ------------------------------------------------------------------
    # Supervisor
    # ------------------------------------------------------------------

    def _start_supervisor(self) -> None:
        """Start the supervisor unless one is already active."""
        with self._lock:
            if self._supervising or not self._running:
                return
            self._supervising = True
            thread = threading.Thread(
                target=self._supervisor_loop,
                name="SocketConnectSupervisor",
                daemon=True,
            )
            self._supervisor_thread = thread
        thread.start()

    def _supervisor_loop(self) -> None:
        try:
            while self._running and self._reconnect_enabled:
                if self.is_connected():
                    return

                self._release_socket()
                self._state = ConnectionState.CONNECTING
                self.connect_attempts += 1

                try:
                    sock = self._open_socket()
                except TransportConnectError as e:
                    logger.warning(
                        "socket_connect_failed",
                        attempt=self.connect_attempts,
                        **e.details,
                    )
                    self._notify_error(e.message)
                else:
                    if self._install_socket(sock):
                        self.connect_count += 1
                        logger.info(
                            "socket_connected",
                            host=self.host,
                            port=self.port,
                            attempt=self.connect_attempts,
                        )
                        self._notify_connected()
                    return

                if self._wake.wait(self.reconnect_delay_sec):
                    break
                logger.info(
                    "socket_reconnecting",
                    host=self.host,
                    port=self.port,
                    delay_sec=self.reconnect_delay_sec,
                )
        finally:
            with self._lock:
                if self._supervisor_thread is threading.current_thread():
                    self._supervising = False

    def _open_socket(self) -> socket.socket:
        address = (self.host, self.port)
        try:
            sock = self._connector(address, self.connect_timeout_sec)
        except (socket.timeout, TimeoutError) as e:
            raise ConnectionTimeoutError(
                f"Connection timeout to {self.host}:{self.port}",
                details={"host": self.host, "port": self.port, "timeout_sec": self.connect_timeout_sec},
            ) from e
        except OSError as e:
            raise TransportConnectError(
                f"Connection to {self.host}:{self.port} failed: {e}",
                details={"host": self.host, "port": self.port, "error": str(e)},
            ) from e

        try:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
            sock.settimeout(self.send_timeout_sec)
        except OSError as e:
            logger.warning("socket_option_failed", error=str(e))
        return sock

    def _install_socket(self, sock: socket.socket) -> bool:
        """Publish a freshly connected socket and start its reader."""
        with self._lock:
            if not self._running:
                stale = True
            else:
                stale = False
                self._sock = sock
                self._state = ConnectionState.CONNECTED
                # Hand supervision back before the reader can fail.
                self._supervising = False
        if stale:
            self._close_socket(sock)
            return False

        self._reader_thread = threading.Thread(
            target=self._reader_loop,
            args=(sock,),
            name="SocketReader",
            daemon=True,
        )
        self._reader_thread.start()
        return True

    def _release_socket(self) -> None:
        with self._lock:
            sock = self._sock
            self._sock = None
        if sock is not None:
            self._close_socket(sock)

    def _drop_link(self, sock: socket.socket) -> None:
        """Forget ``sock`` if it is still the current link."""
        with self._lock:
            if self._sock is not sock:
                return
            self._sock = None
            if self._running:
                self._state = ConnectionState.CONNECTING
        self._close_socket(sock)

    @staticmethod
    def _close_socket(sock: socket.socket) -> None:
        try:
            sock.close()
        except OSError as e:
            logger.warning("socket_close_failed", error=str(e))

    # ------------------------------------------------------------------
    # Reader
    # ------------------------------------------------------------------

    def _reader_loop(self, sock: socket.socket) -> None:
        while self._running:
            try:
                data = self._read_available(sock)
            except ReceiveError as e:
                if not self._running:
                    break
                if e.details.get("reason") == "replaced":
                    # Link already dropped elsewhere; no second disconnect notification
                    logger.debug("socket_reader_superseded", host=self.host, port=self.port)
                    self._start_supervisor()
                    break
                logger.warning("socket_reader_failed", host=self.host, port=self.port, **e.details)
                self._drop_link(sock)
                self._notify_disconnected()
                self._notify_error(e.message)
                self._start_supervisor()
                break

            if data is None:
                self._wake.wait(self.idle_sec)
                continue
            with self._lock:
                self._store_received(data)

        logger.debug("socket_reader_stopped", host=self.host, port=self.port)

    def _read_available(self, sock: socket.socket) -> Optional[bytes]:
        """
        Read whatever is waiting on ``sock``.

        Returns:
            None when nothing is available yet

        Raises:
            ReceiveError: the peer closed the connection or the read failed
        """
        with self._lock:
            if self._sock is not sock:
                raise ReceiveError("Connection lost", details={"reason": "replaced"})
            try:
                readable, _, _ = select.select([sock], [], [], 0)
                if not readable:
                    return None
                data = sock.recv(self.buffer.capacity)
            except BlockingIOError:
                return None
            except (OSError, ValueError) as e:
                raise ReceiveError(
                    f"Receive failed: {e}",
                    details={"reason": "io_error", "error": str(e)},
                ) from e
        if not data:
            raise ReceiveError("Server closed the connection", details={"reason": "peer_closed"})
        return data

    def poll(self, as_hex: bool = False) -> str:
        with self._lock:
            return super().poll(as_hex)

    def clear(self) -> None:
        with self._lock:
            super().clear()

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    def send(self, data: bytes) -> bool:
        """
        Write one payload.

        A write failure drops the link and restarts the supervisor.
        """
        if not self._running or not data or not self.is_connected():
            return False

        with self._lock:
            sock = self._sock
        if sock is None:
            return False

        try:
            self._write(sock, data)
            return True
        except SendError as e:
            logger.error("socket_send_failed", host=self.host, port=self.port, **e.details)
            self._notify_error(e.message)
            self._drop_link(sock)
            self._start_supervisor()
            return False

    def _write(self, sock: socket.socket, data: bytes) -> None:
        with self._lock:
            if self._sock is not sock:
                raise SendError("Connection lost", details={"data_size": len(data)})
            try:
                sock.sendall(data)
            except (OSError, ValueError) as e:
                raise SendError(
                    f"Send failed: {e}",
                    details={"error": str(e), "data_size": len(data)},
                ) from e
