"""
Exceptions for modemfleet.

Every error carries the serial of the modem involved (when there is one) so
that log lines and API responses can point at the right device.
"""

from typing import Optional


class FleetError(Exception):
    """
    Base exception for fleet management errors.

    All modemfleet exceptions inherit from this class.
    """

    def __init__(
        self,
        message: str,
        serial: Optional[str] = None,
        detail: Optional[str] = None
    ) -> None:
        """
        Initialize exception with context.

        Args:
            message: Error description
            serial: Serial of the modem involved (if applicable)
            detail: Raw tool output or underlying error text (if applicable)
        """
        self.serial = serial
        self.detail = detail
        super().__init__(message)

    def __str__(self) -> str:
        """Format error message with context."""
        parts = [super().__str__()]

        if self.serial:
            parts.append(f"Modem: {self.serial}")

        if self.detail:
            parts.append(f"Detail: {self.detail}")

        return " | ".join(parts)


class EnumerationUnavailable(FleetError):
    """
    Raised when the OS-level mechanism for a scan step is missing.

    Fatal to the current scan cycle only; the next cycle retries.
    """
    pass


class PoolExhausted(FleetError):
    """
    Raised when no proxy port is left in the configured pool.

    The modem that asked for a port stays unassigned; other modems are not
    affected.
    """
    pass


class PersistenceUnavailable(FleetError):
    """
    Raised when the durable backend cannot be reached.

    At start-up this triggers the fallback to the in-process store.
    """
    pass


class ModemNotFoundError(FleetError):
    """Raised when an operation names a serial the store does not know."""
    pass


class TransportError(FleetError):
    """
    Raised when the serial transport fails.

    This indicates:
    - Serial port cannot be opened
    - Write or read failure
    """
    pass


class DeviceDisconnectedError(TransportError):
    """
    Raised when the device disappears while a command is in flight.
    """
    pass


class CommandTimeoutError(FleetError):
    """Raised when a command produces no final result before its timeout."""
    pass


class ResponseParseError(FleetError):
    """Raised when a command reply does not have the expected shape."""

    def __init__(self, message: str, command: Optional[str] = None, **kwargs) -> None:
        self.command = command
        super().__init__(message, **kwargs)


class BringUpFailed(FleetError):
    """
    Raised when a fatal bring-up phase fails.

    Component initialization and detection are fatal; per-modem start
    failures and unhealthy probes are not.
    """

    def __init__(self, message: str, phase: Optional[str] = None, **kwargs) -> None:
        self.phase = phase
        super().__init__(message, **kwargs)
