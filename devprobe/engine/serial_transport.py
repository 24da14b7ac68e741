"""
Serial Transport - one serial line with a background reader.

The line is opened with fixed 500 ms read/write timeouts and no flow control.
A daemon reader thread wakes whenever bytes are waiting on the line and
appends them into the transport's ReceiveBuffer.
"""
from __future__ import annotations

import re
import threading
from typing import List, Optional

import pydantic
import serial
import serial.tools.list_ports
import structlog

from devprobe.config import settings
from devprobe.engine.receive_buffer import ReceiveBuffer
from devprobe.engine.transport import Transport, TransportListener
from devprobe.exceptions import ReceiveError, SendError, TransportConnectError
from devprobe.models import SerialConfig

logger = structlog.get_logger()

# Map script parity strings to pyserial constants
PARITY_MAP = {
    "none": serial.PARITY_NONE,
    "odd": serial.PARITY_ODD,
    "even": serial.PARITY_EVEN,
}

# Map script stop-bit strings to pyserial constants
STOPBITS_MAP = {
    "1": serial.STOPBITS_ONE,
    "1.5": serial.STOPBITS_ONE_POINT_FIVE,
    "2": serial.STOPBITS_TWO,
}


def resolve_parity(parity: Optional[str]) -> str:
    """Map a parity name to pyserial, falling back to no parity."""
    key = (parity or "").strip().lower()
    if key not in PARITY_MAP:
        logger.warning("serial_parity_unknown", parity=parity, fallback="none")
        return serial.PARITY_NONE
    return PARITY_MAP[key]


def resolve_stop_bits(stop_bits) -> float:
    """Map a stop-bit name to pyserial, falling back to one stop bit."""
    key = str(stop_bits).strip() if stop_bits is not None else ""
    if key not in STOPBITS_MAP:
        logger.warning("serial_stop_bits_unknown", stop_bits=stop_bits, fallback="1")
        return serial.STOPBITS_ONE
    return STOPBITS_MAP[key]


def _natural_key(name: str):
    return [int(part) if part.isdigit() else part.lower() for part in re.split(r"(\d+)", name)]


def list_serial_ports() -> List[str]:
    """
    Names of the serial ports present on this machine.

    Sorted so that numbered ports come in numeric order (COM2 before COM10,
    /dev/ttyUSB2 before /dev/ttyUSB10).
    """
    try:
        ports = [info.device for info in serial.tools.list_ports.comports()]
    except Exception as e:
        logger.error("serial_port_enumeration_failed", error=str(e))
        return []
    ports.sort(key=_natural_key)
    logger.debug("serial_ports_found", count=len(ports), ports=ports)
    return ports


def probe_serial_port(port_name: str) -> bool:
    """Check that a port can be opened, then close it again."""
    try:
        with serial.Serial(port=port_name):
            return True
    except (serial.SerialException, OSError, ValueError) as e:
        logger.debug("serial_probe_failed", port=port_name, error=str(e))
        return False


class SerialTransport(Transport):
    """
    Serial line transport.

    Example usage:
        transport = SerialTransport()
        if transport.open("/dev/ttyUSB0", 115200):
            transport.send(b"\\xAA\\xBB")
            reply = transport.poll(as_hex=True)
            transport.close()
    """

    def __init__(
        self,
        listener: Optional[TransportListener] = None,
        buffer_capacity: Optional[int] = None,
        read_timeout_ms: Optional[int] = None,
        write_timeout_ms: Optional[int] = None,
        idle_sec: Optional[float] = None,
    ):
        if buffer_capacity is None:
            buffer_capacity = settings.serial_buffer_capacity
        super().__init__(ReceiveBuffer(buffer_capacity, name="serial"), listener)
        self.read_timeout_sec = (
            settings.serial_read_timeout_ms if read_timeout_ms is None else read_timeout_ms
        ) / 1000.0
        self.write_timeout_sec = (
            settings.serial_write_timeout_ms if write_timeout_ms is None else write_timeout_ms
        ) / 1000.0
        self.idle_sec = settings.serial_reader_idle_sec if idle_sec is None else idle_sec
        self.config: Optional[SerialConfig] = None

        self._port: Optional[serial.Serial] = None
        self._lock = threading.Lock()
        self._reader_thread: Optional[threading.Thread] = None
        self._stop_reader = threading.Event()

    @property
    def is_open(self) -> bool:
        port = self._port
        return port is not None and port.is_open

    def is_connected(self) -> bool:
        return self.is_open

    def open(
        self,
        port_name: str,
        baud_rate: int,
        data_bits: int = 8,
        parity: str = "none",
        stop_bits: str = "1",
    ) -> bool:
        """
        Open the serial line, replacing any line that is already open.

        Returns:
            True when the line is open and the reader is running
        """
        if self.is_open or self._reader_thread is not None:
            self.close()

        try:
            config = SerialConfig(
                port_name=port_name,
                baud_rate=baud_rate,
                data_bits=data_bits,
                parity=parity,
                stop_bits=str(stop_bits),
            )
        except pydantic.ValidationError as e:
            fields = sorted({str(err["loc"][0]) for err in e.errors() if err.get("loc")})
            logger.error("serial_settings_invalid", port=port_name, fields=fields)
            self._notify_error(f"Invalid serial settings for {port_name}: {', '.join(fields)}")
            return False

        try:
            self._port = self._open_port(config)
        except TransportConnectError as e:
            logger.error("serial_open_failed", port=port_name, **e.details)
            self._notify_error(e.message)
            return False

        self.config = config
        self.buffer.clear()
        self._start_reader()
        logger.info(
            "serial_opened",
            port=port_name,
            baud_rate=baud_rate,
            data_bits=data_bits,
            parity=config.parity,
            stop_bits=config.stop_bits,
        )
        self._notify_connected()
        return True

    def open_config(self, config: SerialConfig) -> bool:
        return self.open(
            config.port_name,
            config.baud_rate,
            config.data_bits,
            config.parity,
            config.stop_bits,
        )

    def _open_port(self, config: SerialConfig) -> serial.Serial:
        try:
            return serial.Serial(
                port=config.port_name,
                baudrate=config.baud_rate,
                bytesize=config.data_bits,
                parity=resolve_parity(config.parity),
                stopbits=resolve_stop_bits(config.stop_bits),
                timeout=self.read_timeout_sec,
                write_timeout=self.write_timeout_sec,
                xonxoff=False,
                rtscts=False,
                dsrdtr=False,
            )
        except (serial.SerialException, OSError, ValueError) as e:
            raise TransportConnectError(
                f"Failed to open serial port {config.port_name}: {e}",
                details={"error": str(e), "baud_rate": config.baud_rate},
            )

    def close(self) -> None:
        """Stop the reader, close the line and empty the buffer."""
        self._stop_reader.set()
        thread = self._reader_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=settings.thread_join_timeout_sec)
        self._reader_thread = None

        was_open = False
        with self._lock:
            if self._port is not None:
                was_open = self._port.is_open
                try:
                    self._port.close()
                except (serial.SerialException, OSError) as e:
                    logger.warning("serial_close_failed", error=str(e))
                self._port = None

        self.buffer.clear()
        if was_open:
            logger.info("serial_closed", port=self.config.port_name if self.config else None)
            self._notify_disconnected()

    def send(self, data: bytes) -> bool:
        if not self.is_open or not data:
            return False

        try:
            self._write(data)
            return True
        except SendError as e:
            logger.error("serial_send_failed", **e.details)
            self._notify_error(e.message)
            return False

    def _write(self, data: bytes) -> None:
        with self._lock:
            port = self._port
            if port is None:
                raise SendError("Serial port is not open", details={"data_size": len(data)})
            try:
                written = port.write(data)
            except (serial.SerialException, OSError) as e:
                raise SendError(
                    f"Serial write failed: {e}",
                    details={"error": str(e), "data_size": len(data)},
                )
        if written is not None and written != len(data):
            raise SendError(
                "Serial write incomplete",
                details={"written": written, "data_size": len(data)},
            )

    def clear(self) -> None:
        with self._lock:
            if self._port is not None and self._port.is_open:
                try:
                    self._port.reset_input_buffer()
                except (serial.SerialException, OSError) as e:
                    logger.warning("serial_reset_input_failed", error=str(e))
        super().clear()

    def _start_reader(self) -> None:
        self._stop_reader = threading.Event()
        self._reader_thread = threading.Thread(
            target=self._reader_loop,
            args=(self._stop_reader,),
            name="SerialReader",
            daemon=True,
        )
        self._reader_thread.start()

    def _reader_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                chunk = self._read_available()
            except ReceiveError as e:
                if stop_event.is_set():
                    break
                logger.error("serial_reader_failed", **e.details)
                self._notify_error(e.message)
                break

            if chunk:
                self._store_received(chunk)
            else:
                stop_event.wait(self.idle_sec)

        logger.debug("serial_reader_stopped")

    def _read_available(self) -> bytes:
        with self._lock:
            port = self._port
            if port is None or not port.is_open:
                return b""
            try:
                waiting = port.in_waiting
                if waiting <= 0:
                    return b""
                return port.read(waiting)
            except (serial.SerialException, OSError, TypeError) as e:
                raise ReceiveError(f"Serial read failed: {e}", details={"error": str(e)})
