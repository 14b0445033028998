"""
Command entry point.

Sends one command to one modem, records it in the audit log and folds any
telemetry in the reply back into the modem's record.
"""

import logging
import shlex
import subprocess
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from .config import CommandConfig
from .core.transport import SerialTransport, Transport
from .detection.scanner import Runner, run_process
from .exceptions import CommandTimeoutError, ModemNotFoundError, TransportError
from .store.base import StateStore
from .telemetry import extract_telemetry
from .types import CommandLogEntry, CommandResult, InterfaceKind, Modem

logger = logging.getLogger(__name__)

# Type alias for transport factories: factory(port, baudrate, timeout) -> Transport
TransportFactory = Callable[[str, int, float], Transport]

FINAL_OK = "OK"
FINAL_ERRORS = ("ERROR", "+CME ERROR", "+CMS ERROR")


def open_serial_transport(port: str, baudrate: int, timeout: float) -> Transport:
    return SerialTransport(port=port, baudrate=baudrate, timeout=timeout)


def _normalize_at(command: str) -> str:
    command = command.strip()
    if not command.upper().startswith("AT"):
        command = "AT" + command
    return command + "\r\n"


def _is_final(line: str) -> bool:
    return line == FINAL_OK or any(line.startswith(code) for code in FINAL_ERRORS)


class CommandExecutor:
    """
    Executes AT and QMI commands on behalf of the API surface.

    Command ports are opened per command and closed right after.
    """

    def __init__(
        self,
        store: StateStore,
        config: Optional[CommandConfig] = None,
        transport_factory: TransportFactory = open_serial_transport,
        runner: Runner = run_process
    ) -> None:
        """
        Initialize executor.

        Args:
            store: State store used for lookups, audit and telemetry
            config: Baud rate and timeout
            transport_factory: Opens the AT transport for a command port
            runner: Runs qmicli
        """
        self.store = store
        self.config = config or CommandConfig()
        self._transport_factory = transport_factory
        self._runner = runner

    def execute(
        self,
        serial: str,
        command_text: str,
        interface: InterfaceKind = InterfaceKind.AT
    ) -> CommandResult:
        """
        Send a command to a modem.

        Args:
            serial: Modem serial
            command_text: AT command (e.g. "AT+CSQ") or qmicli arguments
                          (e.g. "--nas-get-signal-strength")
            interface: AT or QMI

        Returns:
            CommandResult with the reply text and success flag. Transport
            failures and timeouts come back as failed results.

        Raises:
            ModemNotFoundError: If the serial is unknown
        """
        modem = self.store.get(serial)
        if modem is None:
            raise ModemNotFoundError("Unknown modem", serial=serial)

        started = time.monotonic()

        if interface is InterfaceKind.AT:
            lines, success = self._execute_at(modem, command_text)
        else:
            lines, success = self._execute_qmi(modem, command_text)

        duration_ms = int((time.monotonic() - started) * 1000)
        response = "\n".join(lines)

        result = CommandResult(
            serial=serial,
            command=command_text,
            interface=interface,
            response=response,
            success=success,
            duration_ms=duration_ms
        )

        self.store.log_command(CommandLogEntry(
            serial=serial,
            command=command_text,
            interface=interface,
            response=response,
            success=success,
            duration_ms=duration_ms,
            timestamp=datetime.now(timezone.utc)
        ))

        level = logging.INFO if success else logging.WARNING
        logger.log(level, f"{serial}: {interface.value} {command_text!r} -> "
                          f"{'OK' if success else 'FAILED'} ({duration_ms} ms)")

        if success and interface is InterfaceKind.AT:
            self._fold_telemetry(serial, command_text, lines)

        return result

    def _execute_at(self, modem: Modem, command_text: str) -> tuple[list[str], bool]:
        if not modem.command_port:
            return [f"{modem.serial} has no command port mapped"], False

        cfg = self.config
        try:
            with self._transport_factory(modem.command_port, cfg.baudrate, cfg.timeout) as transport:
                lines = self._exchange(transport, command_text, cfg.timeout)
        except CommandTimeoutError as e:
            return [str(e)], False
        except TransportError as e:
            logger.error(f"{modem.serial}: {e}")
            return [str(e)], False

        return lines, bool(lines) and lines[-1] == FINAL_OK

    def _exchange(self, transport: Transport, command_text: str, timeout: float) -> list[str]:
        """
        Write one AT command and collect its reply up to the final result code.

        Raises:
            CommandTimeoutError: If no final result arrives in time
            TransportError: If the port fails
        """
        command = _normalize_at(command_text)
        sent = command.strip()

        transport.reset_input_buffer()
        transport.write(command.encode("utf-8"))

        lines: list[str] = []
        deadline = time.monotonic() + timeout

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise CommandTimeoutError(f"No final result for {sent} within {timeout}s")

            raw = transport.read_line(timeout=remaining)
            if not raw:
                continue

            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue

            # Echo
            if not lines and line == sent:
                continue

            lines.append(line)
            if _is_final(line):
                return lines

    def _execute_qmi(self, modem: Modem, command_text: str) -> tuple[list[str], bool]:
        if not modem.data_session_port:
            return [f"{modem.serial} has no diagnostic interface mapped"], False

        args = ["qmicli", "-d", modem.data_session_port, *shlex.split(command_text)]
        timeout = self.config.timeout

        try:
            result = self._runner(args, timeout)
        except subprocess.TimeoutExpired:
            return [f"qmicli did not finish within {timeout}s"], False
        except FileNotFoundError:
            return ["qmicli not available - install libqmi-utils"], False
        except OSError as e:
            return [f"qmicli could not be started: {e}"], False

        output = (result.stdout or "").strip() or (result.stderr or "").strip()
        return output.splitlines(), result.returncode == 0

    def _fold_telemetry(self, serial: str, command_text: str, lines: list[str]) -> None:
        values = extract_telemetry(command_text, lines)
        if not values:
            return

        try:
            self.store.record_telemetry(serial, **values)
            logger.debug(f"{serial}: telemetry updated {values}")
        except ModemNotFoundError:
            logger.debug(f"{serial}: removed before telemetry could be recorded")
