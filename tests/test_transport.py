"""
Tests for transport layer.
"""

import time

import pytest
import serial

from modemfleet.core import MockTransport, SerialTransport
from modemfleet.exceptions import DeviceDisconnectedError, FleetError, TransportError


def test_mock_transport_write():
    """Test MockTransport write operation."""
    transport = MockTransport()

    written = transport.write(b"AT\r\n")
    assert written == 4  # AT\r\n is 4 bytes
    assert transport.written == [b"AT\r\n"]

    transport.close()


def test_mock_transport_multiple_lines():
    """Test MockTransport with multiple response lines."""
    transport = MockTransport()

    # Add multi-line response
    transport.add_response(["+CSQ: 24,99", "OK"])

    # Read lines
    assert transport.read_line() == b"+CSQ: 24,99\r\n"
    assert transport.read_line() == b"OK\r\n"
    assert transport.read_line() == b""

    transport.close()


def test_mock_transport_responses_in_order():
    """Test queued replies are returned one command after another."""
    transport = MockTransport()

    transport.add_response(["Line 1"])
    transport.add_response(["Line 2"])

    assert transport.read_line() == b"Line 1\r\n"
    assert transport.read_line() == b"Line 2\r\n"

    transport.close()


def test_mock_transport_clear_responses():
    """Test MockTransport clear_responses."""
    transport = MockTransport()

    # Add responses
    transport.add_response(["Line 1"])
    transport.add_response(["Line 2"])

    # Clear
    transport.clear_responses()

    # Should return empty now
    assert transport.read_line() == b""

    transport.close()


def test_mock_transport_read_waits_for_timeout():
    """Test an empty MockTransport blocks for the read timeout like a silent port."""
    transport = MockTransport()

    started = time.monotonic()
    assert transport.read_line(timeout=0.1) == b""
    assert time.monotonic() - started >= 0.09

    transport.close()


def test_mock_transport_is_open():
    """Test MockTransport is_open status."""
    transport = MockTransport()

    assert transport.is_open() is True

    transport.close()
    assert transport.is_open() is False


def test_mock_transport_closed_raises_disconnected():
    """Test MockTransport raises DeviceDisconnectedError once closed."""
    transport = MockTransport()
    transport.close()

    with pytest.raises(DeviceDisconnectedError):
        transport.write(b"AT\r\n")

    with pytest.raises(FleetError):
        transport.read_line()


def test_mock_transport_context_manager():
    """Test transports close on context exit."""
    with MockTransport() as transport:
        assert transport.is_open()

    assert transport.is_open() is False


def test_serial_transport_open_failure(monkeypatch):
    """Test a port that cannot be opened raises TransportError."""
    # Setup
    def refuse(**kwargs):
        raise serial.SerialException("[Errno 2] could not open port /dev/ttyUSB99")

    monkeypatch.setattr(serial, "Serial", refuse)

    # Verify
    with pytest.raises(TransportError) as exc_info:
        SerialTransport("/dev/ttyUSB99")

    assert "/dev/ttyUSB99" in str(exc_info.value)
    assert not isinstance(exc_info.value, DeviceDisconnectedError)


class _UnpluggedSerial:
    """pyserial stand-in whose device vanished."""

    def __init__(self, **kwargs):
        self.timeout = kwargs.get("timeout")
        self.is_open = True

    def write(self, data):
        raise serial.SerialException("write failed: [Errno 19] No such device")

    def read_until(self, terminator=b"\n"):
        raise serial.SerialException(
            "device reports readiness to read but returned no data "
            "(device disconnected or multiple access on port?)"
        )

    def reset_input_buffer(self):
        pass

    def close(self):
        self.is_open = False


def test_serial_transport_translates_disconnect(monkeypatch):
    """Test pyserial disconnect errors become DeviceDisconnectedError."""
    # Setup
    monkeypatch.setattr(serial, "Serial", _UnpluggedSerial)
    transport = SerialTransport("/dev/ttyUSB2", timeout=0.5)

    # Verify
    with pytest.raises(DeviceDisconnectedError):
        transport.write(b"AT\r\n")

    with pytest.raises(DeviceDisconnectedError):
        transport.read_line(timeout=0.1)

    # Read timeout is restored after a failed read
    assert transport._serial.timeout == 0.5

    transport.close()
    assert transport.is_open() is False
