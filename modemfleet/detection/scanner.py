"""
Device scanner.

Queries the three OS-level enumeration sources and returns raw, unmapped
inventories. "No devices" is always an empty list; only a missing
enumeration mechanism is an error.
"""

import glob
import logging
import os
import subprocess
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional, Sequence

from serial.tools import list_ports

from ..config import DetectionConfig
from ..exceptions import EnumerationUnavailable
from ..types import RawBusDevice, RawCharacterDevice
from .parsers import BusListingParser, extract_ordinal, is_live_probe_output

logger = logging.getLogger(__name__)

# Type alias for the process runner: runner(args, timeout) -> CompletedProcess
Runner = Callable[[Sequence[str], Optional[float]], subprocess.CompletedProcess]

LISTING_TIMEOUT = 10.0


def run_process(args: Sequence[str], timeout: Optional[float] = None) -> subprocess.CompletedProcess:
    """Run a tool and capture its text output without raising on exit code."""
    return subprocess.run(
        list(args),
        capture_output=True,
        text=True,
        timeout=timeout,
        check=False
    )


def list_serial_devices() -> list[str]:
    """Device paths of every serial port pyserial can see."""
    return [port.device for port in list_ports.comports()]


def has_rw_access(path: str) -> bool:
    return os.access(path, os.R_OK | os.W_OK)


class DeviceScanner:
    """
    Enumerates bus devices, serial ports and diagnostic interfaces.

    Every OS touchpoint is injectable so the scanner can be driven without
    hardware.
    """

    def __init__(
        self,
        config: Optional[DetectionConfig] = None,
        runner: Runner = run_process,
        port_lister: Callable[[], list[str]] = list_serial_devices,
        path_globber: Callable[[str], list[str]] = glob.glob,
        access_checker: Callable[[str], bool] = has_rw_access
    ) -> None:
        """
        Initialize scanner.

        Args:
            config: Detection settings (defaults to the EC25 reference values)
            runner: Executes lsusb and qmicli
            port_lister: Returns serial device paths
            path_globber: Expands the diagnostic device glob
            access_checker: Read/write access probe for serial ports
        """
        self.config = config or DetectionConfig()
        self._runner = runner
        self._port_lister = port_lister
        self._globber = path_globber
        self._access_checker = access_checker
        self._bus_parser = BusListingParser(self.config.vendor_product)
        self._probe_tool_missing = False

    def scan_bus_devices(self) -> list[RawBusDevice]:
        """
        List attached bus devices matching the vendor:product signature.

        Returns:
            Matching devices with discovery_order 1..N in listing order

        Raises:
            EnumerationUnavailable: If lsusb is missing or fails
        """
        try:
            result = self._runner(["lsusb"], LISTING_TIMEOUT)
        except FileNotFoundError as e:
            raise EnumerationUnavailable(
                "lsusb command not available - install usbutils package"
            ) from e
        except subprocess.TimeoutExpired as e:
            raise EnumerationUnavailable(f"lsusb did not finish within {LISTING_TIMEOUT}s") from e
        except OSError as e:
            raise EnumerationUnavailable("lsusb could not be started", detail=str(e)) from e

        if result.returncode != 0:
            raise EnumerationUnavailable(
                f"lsusb exited with status {result.returncode}",
                detail=(result.stderr or "").strip() or None
            )

        devices = self._bus_parser.parse(result.stdout.splitlines())
        logger.debug(f"Bus scan: {len(devices)} devices match {self.config.vendor_product}")
        return devices

    def scan_serial_ports(self) -> list[RawCharacterDevice]:
        """
        List serial character devices with their ordinals and access.

        Returns:
            Ports sorted by ordinal ascending

        Raises:
            EnumerationUnavailable: If the serial port listing fails
        """
        try:
            paths = self._port_lister()
        except OSError as e:
            raise EnumerationUnavailable("Serial port listing failed", detail=str(e)) from e

        ports = []
        for path in paths:
            ordinal = extract_ordinal(path, self.config.serial_name_pattern)
            if ordinal is None:
                continue
            ports.append(RawCharacterDevice(
                device_path=path,
                ordinal_index=ordinal,
                is_accessible=self._access_checker(path)
            ))

        ports.sort(key=lambda port: port.ordinal_index)
        logger.debug(f"Serial scan: {[port.name for port in ports]}")
        return ports

    def scan_diagnostic_interfaces(self) -> list[RawCharacterDevice]:
        """
        List diagnostic/data-session interfaces and probe their liveness.

        Probes run in parallel, each under a hard timeout; a probe that does
        not answer marks its interface inaccessible.

        Returns:
            Interfaces sorted by ordinal ascending
        """
        candidates = []
        for path in self._globber(self.config.diagnostic_glob):
            ordinal = extract_ordinal(path, self.config.diagnostic_name_pattern)
            if ordinal is not None:
                candidates.append((ordinal, path))

        if not candidates:
            logger.debug("Diagnostic scan: no interfaces present")
            return []

        workers = max(1, min(self.config.max_concurrent_probes, len(candidates)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="DiagProbe") as pool:
            liveness = list(pool.map(self.probe_diagnostic, [path for _, path in candidates]))

        interfaces = [
            RawCharacterDevice(device_path=path, ordinal_index=ordinal, is_accessible=live)
            for (ordinal, path), live in zip(candidates, liveness)
        ]
        interfaces.sort(key=lambda interface: interface.ordinal_index)
        states = ["active" if i.is_accessible else "inactive" for i in interfaces]
        logger.debug(f"Diagnostic scan: {[f'{i.name}({s})' for i, s in zip(interfaces, states)]}")
        return interfaces

    def probe_diagnostic(self, path: str) -> bool:
        """
        Ask a diagnostic interface for its service versions.

        Returns:
            True if the interface answered within the probe timeout
        """
        timeout = self.config.probe_timeout
        try:
            result = self._runner(["qmicli", "-d", path, "--get-service-version-info"], timeout)
        except subprocess.TimeoutExpired:
            logger.debug(f"{path}: no answer within {timeout}s")
            return False
        except FileNotFoundError:
            if not self._probe_tool_missing:
                logger.warning("qmicli not available - diagnostic interfaces will be reported inactive")
                self._probe_tool_missing = True
            return False
        except OSError as e:
            logger.warning(f"{path}: probe could not be started: {e}")
            return False

        return is_live_probe_output(result.returncode, result.stdout or "")
