"""
Modem detector.

Runs one full scanner + mapper pass and keeps running statistics about
detection cycles.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Deque, Optional

from ..config import DetectionConfig
from ..exceptions import EnumerationUnavailable
from ..types import DetectionResult
from .mapper import ModemMapping, describe_mapping, modems_from_mappings
from .scanner import DeviceScanner

logger = logging.getLogger(__name__)

RECENT_ERRORS = 5


@dataclass
class DetectionStats:
    """Counters over every detection cycle run by one detector."""
    total_scans: int = 0
    successful: int = 0
    failed: int = 0
    average_scan_time: float = 0.0          # Seconds, over successful scans
    last_scan_at: Optional[datetime] = None
    last_modem_count: int = 0
    recent_errors: Deque[str] = field(default_factory=lambda: deque(maxlen=RECENT_ERRORS))

    def to_dict(self) -> dict:
        return {
            "total_scans": self.total_scans,
            "successful": self.successful,
            "failed": self.failed,
            "average_scan_time": round(self.average_scan_time, 3),
            "last_scan_at": self.last_scan_at.isoformat() if self.last_scan_at else None,
            "last_modem_count": self.last_modem_count,
            "recent_errors": list(self.recent_errors),
        }


class ModemDetector:
    """
    Combines the device scanner and the identity mapper.

    Example:

    .. code-block:: python

        detector = ModemDetector(DeviceScanner())
        result = detector.detect()
        for serial, modem in result.modems.items():
            print(serial, modem.command_port, modem.mapping_status.value)
    """

    def __init__(
        self,
        scanner: Optional[DeviceScanner] = None,
        config: Optional[DetectionConfig] = None
    ) -> None:
        self.config = config or (scanner.config if scanner else DetectionConfig())
        self.scanner = scanner or DeviceScanner(self.config)
        self._stats = DetectionStats()
        self._stats_lock = threading.Lock()
        self._last_mappings: list[ModemMapping] = []

    def detect(self) -> DetectionResult:
        """
        Scan all three sources and map them to modem records.

        Returns:
            DetectionResult keyed by serial

        Raises:
            EnumerationUnavailable: If any enumeration mechanism is missing;
                the failure is recorded in the statistics first
        """
        started = time.monotonic()

        try:
            bus_devices = self.scanner.scan_bus_devices()
            serial_ports = self.scanner.scan_serial_ports()
            diagnostic_ports = self.scanner.scan_diagnostic_interfaces()
        except EnumerationUnavailable as e:
            self._record_failure(str(e))
            raise

        cfg = self.config
        self._last_mappings = describe_mapping(
            bus_devices,
            serial_ports,
            diagnostic_ports,
            pattern=cfg.pattern,
            serial_prefix=cfg.serial_prefix,
            diagnostic_stride=cfg.diagnostic_stride,
            diagnostic_offset=cfg.diagnostic_offset
        )
        modems = modems_from_mappings(self._last_mappings)

        elapsed = time.monotonic() - started
        self._record_success(elapsed, len(modems))

        logger.info(
            f"Detected {len(modems)} modems "
            f"({len(serial_ports)} serial ports, {len(diagnostic_ports)} diagnostic interfaces) "
            f"in {elapsed:.2f}s"
        )

        return DetectionResult(
            modems=modems,
            bus_devices=len(bus_devices),
            serial_ports=len(serial_ports),
            diagnostic_ports=len(diagnostic_ports),
            scan_time=elapsed
        )

    @property
    def last_mappings(self) -> list[ModemMapping]:
        """Per-modem mapping details of the last successful detection."""
        return list(self._last_mappings)

    def statistics(self) -> dict:
        with self._stats_lock:
            return self._stats.to_dict()

    def _record_success(self, elapsed: float, modem_count: int) -> None:
        with self._stats_lock:
            stats = self._stats
            stats.total_scans += 1
            stats.successful += 1
            stats.average_scan_time += (elapsed - stats.average_scan_time) / stats.successful
            stats.last_scan_at = datetime.now(timezone.utc)
            stats.last_modem_count = modem_count

    def _record_failure(self, error: str) -> None:
        logger.warning(f"Detection failed: {error}")
        with self._stats_lock:
            stats = self._stats
            stats.total_scans += 1
            stats.failed += 1
            stats.last_scan_at = datetime.now(timezone.utc)
            stats.recent_errors.append(error)
