"""
Detection and mapping engine.

- scanner: Raw OS-level enumeration (bus, serial, diagnostic)
- parsers: Listing and probe output parsing
- mapper: Positional identity mapping
- detector: One full scan + map pass with statistics
"""

from .detector import DetectionStats, ModemDetector
from .mapper import (
    ModemMapping,
    command_ordinal,
    describe_mapping,
    map_modems,
    modem_serial,
    modems_from_mappings,
)
from .parsers import BusListingParser, extract_ordinal, is_live_probe_output
from .scanner import DeviceScanner, run_process

__all__ = [
    "DetectionStats",
    "ModemDetector",
    "ModemMapping",
    "command_ordinal",
    "describe_mapping",
    "map_modems",
    "modem_serial",
    "modems_from_mappings",
    "BusListingParser",
    "extract_ordinal",
    "is_live_probe_output",
    "DeviceScanner",
    "run_process",
]
