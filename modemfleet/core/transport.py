"""
Serial transport used by the command entry point.

The fleet never keeps command ports open: a transport is opened for one
command and closed right after, so a scan and a manual command can run side
by side without fighting over a long-lived handle.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Optional

import serial
from serial import SerialException

from ..exceptions import TransportError, DeviceDisconnectedError

logger = logging.getLogger(__name__)

# pyserial error texts that mean the device is gone rather than busy
_DISCONNECT_PHRASES = (
    "device disconnected",
    "device reports readiness to read but returned no data",
    "no such device",
    "device not configured",
    "input/output error",
)


class Transport(ABC):
    """Line-oriented byte transport to one modem interface."""

    @abstractmethod
    def write(self, data: bytes) -> int:
        """
        Write data to the transport.

        Returns:
            Number of bytes written

        Raises:
            TransportError: If write fails
        """

    @abstractmethod
    def read_line(self, timeout: Optional[float] = None) -> bytes:
        """
        Read one CRLF-terminated line.

        Returns:
            The line including its terminator, or b"" if nothing arrived
            before the timeout

        Raises:
            TransportError: If read fails
        """

    @abstractmethod
    def reset_input_buffer(self) -> None:
        """Discard anything already received."""

    @abstractmethod
    def is_open(self) -> bool:
        """Check if transport is open."""

    @abstractmethod
    def close(self) -> None:
        """Close the transport."""

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class SerialTransport(Transport):
    """pyserial-backed transport for a /dev/ttyUSB* command port."""

    def __init__(
        self,
        port: str,
        baudrate: int = 115200,
        timeout: float = 1.0
    ) -> None:
        """
        Open the serial port.

        Args:
            port: Serial port path (e.g., /dev/ttyUSB2)
            baudrate: Baud rate for serial communication
            timeout: Default read timeout in seconds

        Raises:
            TransportError: If the port cannot be opened
        """
        self.port = port
        self.baudrate = baudrate
        self.timeout = timeout

        try:
            self._serial = serial.Serial(port=port, baudrate=baudrate, timeout=timeout)
            logger.debug(f"Opened serial port {port} at {baudrate} baud")
        except SerialException as e:
            raise TransportError(f"Failed to open serial port {port}", detail=str(e)) from e

    def write(self, data: bytes) -> int:
        try:
            written = self._serial.write(data)
            logger.debug(f"{self.port}: wrote {written} bytes: {data!r}")
            return written
        except SerialException as e:
            raise self._translate(e, "write") from e

    def read_line(self, timeout: Optional[float] = None) -> bytes:
        original_timeout = self._serial.timeout
        try:
            if timeout is not None:
                self._serial.timeout = timeout
            data = self._serial.read_until(b"\r\n")
        except SerialException as e:
            raise self._translate(e, "read") from e
        finally:
            self._serial.timeout = original_timeout

        if data:
            logger.debug(f"{self.port}: read {data!r}")
        return data

    def reset_input_buffer(self) -> None:
        try:
            self._serial.reset_input_buffer()
        except SerialException as e:
            raise self._translate(e, "reset") from e

    def is_open(self) -> bool:
        return bool(self._serial and self._serial.is_open)

    def close(self) -> None:
        if self._serial and self._serial.is_open:
            self._serial.close()
            logger.debug(f"Closed serial port {self.port}")

    def _translate(self, error: SerialException, operation: str) -> TransportError:
        text = str(error).lower()
        if any(phrase in text for phrase in _DISCONNECT_PHRASES):
            logger.error(f"{self.port}: device disconnected during {operation}")
            return DeviceDisconnectedError(f"Serial device {self.port} disconnected", detail=str(error))
        return TransportError(f"Serial {operation} failed on {self.port}", detail=str(error))


class MockTransport(Transport):
    """
    Scripted transport for tests.

    Each add_response() call queues the lines the "modem" sends back for one
    command; everything written is kept in ``written``.
    """

    def __init__(self, port: str = "/dev/ttyUSB-mock") -> None:
        self.port = port
        self.written: list[bytes] = []
        self._open = True
        self._responses: list[list[str]] = []
        self._lock = threading.Lock()

    def add_response(self, lines: list[str]) -> None:
        """Queue the reply to the next command (e.g., ["+CSQ: 24,99", "OK"])."""
        with self._lock:
            self._responses.append(list(lines))

    def clear_responses(self) -> None:
        with self._lock:
            self._responses.clear()

    def open(self) -> None:
        """Reopen after close(), as a fresh per-command handle would be."""
        self._open = True

    def write(self, data: bytes) -> int:
        if not self._open:
            raise DeviceDisconnectedError(f"Mock transport {self.port} is closed")
        with self._lock:
            self.written.append(data)
        return len(data)

    def read_line(self, timeout: Optional[float] = None) -> bytes:
        if not self._open:
            raise DeviceDisconnectedError(f"Mock transport {self.port} is closed")

        with self._lock:
            while self._responses and not self._responses[0]:
                self._responses.pop(0)
            if not self._responses:
                line = None
            else:
                line = self._responses[0].pop(0)
                if not self._responses[0]:
                    self._responses.pop(0)

        if line is None:
            # Silent modem: block like a serial read would
            if timeout:
                time.sleep(timeout)
            return b""
        return (line + "\r\n").encode("utf-8")

    def reset_input_buffer(self) -> None:
        pass

    def is_open(self) -> bool:
        return self._open

    def close(self) -> None:
        self._open = False
