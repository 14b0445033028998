"""
Telemetry parsers.

Extracts the values folded back into a modem's record from the replies to
AT+CSQ, AT+COPS? and AT+CGPADDR.
"""

import logging
from abc import ABC, abstractmethod
from typing import Generic, Optional, TypeVar

from .exceptions import ResponseParseError

logger = logging.getLogger(__name__)

T = TypeVar('T')

NO_SIGNAL = 99


class ResponseParser(ABC, Generic[T]):
    """
    Abstract base class for reply parsers.

    Parsers receive the reply lines without the final result code.
    """

    #: Reply prefix the parser looks for (e.g. "+CSQ:")
    prefix: str = ""

    @abstractmethod
    def parse(self, response: list[str]) -> T:
        """
        Parse a command reply.

        Raises:
            ResponseParseError: If the reply cannot be parsed
        """

    def _payload(self, response: list[str]) -> str:
        for line in response:
            if line.startswith(self.prefix):
                return line[len(self.prefix):].strip()
        raise ResponseParseError(
            f"No {self.prefix} line in reply",
            command=self.prefix.rstrip(":"),
            detail=" / ".join(response)
        )


class SignalLevelParser(ResponseParser[Optional[int]]):
    """Parser for AT+CSQ. Returns the RSSI index (0-31), None when unknown."""

    prefix = "+CSQ:"

    def parse(self, response: list[str]) -> Optional[int]:
        payload = self._payload(response)
        try:
            rssi = int(payload.split(",")[0])
        except ValueError as e:
            raise ResponseParseError(
                f"Failed to parse signal quality: {payload}",
                command="+CSQ"
            ) from e
        return None if rssi == NO_SIGNAL else rssi


class OperatorNameParser(ResponseParser[Optional[str]]):
    """Parser for AT+COPS?. Expected payload: 0,0,"Vodafone",7"""

    prefix = "+COPS:"

    def parse(self, response: list[str]) -> Optional[str]:
        payload = self._payload(response)
        parts = payload.split(",", 3)
        if len(parts) < 3:
            # "+COPS: 0" means not registered
            return None
        return parts[2].strip().strip('"') or None


class NetworkAddressParser(ResponseParser[Optional[str]]):
    """Parser for AT+CGPADDR. Expected payload: 1,"10.64.12.7\""""

    prefix = "+CGPADDR:"

    def parse(self, response: list[str]) -> Optional[str]:
        payload = self._payload(response)
        parts = [part.strip().strip('"') for part in payload.split(",")]
        if len(parts) < 2 or not parts[1] or parts[1] == "0.0.0.0":
            return None
        return parts[1]


# Normalized command prefix -> (record field, parser)
TELEMETRY_PARSERS: dict[str, tuple[str, ResponseParser]] = {
    "+CSQ": ("signal_level", SignalLevelParser()),
    "+COPS?": ("operator_name", OperatorNameParser()),
    "+CGPADDR": ("network_address", NetworkAddressParser()),
}


def normalize_command(command: str) -> str:
    """Command without the AT prefix, terminators and set/test arguments ("AT+CSQ\\r\\n" -> "+CSQ")."""
    raw = command.strip().replace("\r", "").replace("\n", "")
    if raw.upper().startswith("AT"):
        raw = raw[2:]
    raw = raw.upper()
    if raw.endswith("?"):
        return raw
    return raw.split("=")[0]


def extract_telemetry(command: str, response: list[str]) -> dict[str, object]:
    """
    Telemetry values carried by a successful reply.

    Args:
        command: Command as sent
        response: Reply lines

    Returns:
        Mapping of Modem field name to value; empty when the command carries
        no telemetry or its reply could not be parsed
    """
    entry = TELEMETRY_PARSERS.get(normalize_command(command))
    if entry is None:
        return {}

    field_name, parser = entry
    try:
        value = parser.parse(response)
    except ResponseParseError as e:
        logger.debug(f"No telemetry from {command.strip()}: {e}")
        return {}

    if value is None:
        return {}
    return {field_name: value}
