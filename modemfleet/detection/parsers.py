"""
Parsers for OS enumeration output.

Turns raw tool output and device names into typed inventory records.
"""

import logging
import re
from abc import ABC, abstractmethod
from typing import Generic, Optional, TypeVar

from ..types import RawBusDevice

logger = logging.getLogger(__name__)

T = TypeVar('T')

# "Bus 001 Device 003: ID 2c7c:0125 Quectel Wireless Solutions Co., Ltd. EC25 LTE modem"
_BUS_LINE = re.compile(
    r"^Bus\s+(\d+)\s+Device\s+(\d+):\s+ID\s+([0-9a-fA-F]{4}:[0-9a-fA-F]{4})\s*(.*)$"
)


class ListingParser(ABC, Generic[T]):
    """
    Abstract base class for enumeration output parsers.
    """

    @abstractmethod
    def parse(self, lines: list[str]) -> T:
        """
        Parse the lines printed by an enumeration tool.

        Args:
            lines: Output lines, in the order the tool printed them

        Returns:
            Parsed data structure
        """


class BusListingParser(ListingParser[list[RawBusDevice]]):
    """Parser for ``lsusb`` output, filtered to one vendor:product signature."""

    def __init__(self, vendor_product: str) -> None:
        self.vendor_product = vendor_product.lower()

    def parse(self, lines: list[str]) -> list[RawBusDevice]:
        """
        Keep matching devices and number them in listing order.

        Lines that do not look like a bus listing entry are skipped.
        """
        devices: list[RawBusDevice] = []

        for line in lines:
            match = _BUS_LINE.match(line.strip())
            if not match:
                if line.strip():
                    logger.debug(f"Skipping unrecognised bus listing line: {line!r}")
                continue

            bus_id, slot_id, tag, description = match.groups()
            if tag.lower() != self.vendor_product:
                continue

            devices.append(RawBusDevice(
                bus_id=bus_id,
                slot_id=slot_id,
                vendor_product_tag=tag.lower(),
                description=description.strip(),
                discovery_order=len(devices) + 1
            ))

        return devices


def extract_ordinal(device_path: str, pattern: str) -> Optional[int]:
    """
    Extract the numeric suffix of a device name.

    Args:
        device_path: Device path or bare name (e.g., "/dev/ttyUSB6")
        pattern: Regex with one group capturing the digits

    Returns:
        The ordinal, or None when the name does not match
    """
    name = device_path.rsplit("/", 1)[-1]
    match = re.search(pattern, name)
    if not match:
        return None
    return int(match.group(1))


def is_live_probe_output(returncode: int, stdout: str) -> bool:
    """
    Decide whether a diagnostic liveness probe answered.

    The probe is live when it exited cleanly and printed something that is
    not an error report.
    """
    output = stdout.strip()
    return returncode == 0 and bool(output) and "error" not in output.lower()
