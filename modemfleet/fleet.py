"""
Main ModemFleet class.

User-facing API that coordinates the detector, the state store, the change
bus and the command executor.
"""

import logging
import threading
from dataclasses import replace
from typing import Optional, Union

from .commands import CommandExecutor, TransportFactory, open_serial_transport
from .config import FleetConfig
from .core.bus import ChangeBus, EventCallback, Subscription
from .detection.detector import ModemDetector
from .detection.scanner import DeviceScanner, Runner, run_process
from .exceptions import EnumerationUnavailable, FleetError, PoolExhausted
from .store import StateStore, open_store
from .types import CommandResult, HealthStatus, InterfaceKind, Modem, ScanReport

logger = logging.getLogger(__name__)


class ModemFleet:
    """
    Fleet of USB-attached modems on this host.

    Example usage with context manager:

    .. code-block:: python

        with ModemFleet() as fleet:
            report = fleet.trigger_scan()
            for modem in fleet.list_modems():
                print(modem.serial, modem.mapping_status.value, modem.proxy_port)

            subscription = fleet.subscribe(lambda e: print(e.operation.value, e.serial))
            fleet.start_detection_loop()

    Example usage with manual lifecycle management:

    .. code-block:: python

        fleet = ModemFleet(FleetConfig.from_env())
        fleet.quick_start()
        # ... serve the API ...
        fleet.close()
    """

    def __init__(
        self,
        config: Optional[FleetConfig] = None,
        store: Optional[StateStore] = None,
        detector: Optional[ModemDetector] = None,
        bus: Optional[ChangeBus] = None,
        transport_factory: TransportFactory = open_serial_transport,
        runner: Runner = run_process
    ) -> None:
        """
        Initialize ModemFleet.

        Nothing is opened here; call open(), quick_start() or use the
        context manager.

        Args:
            config: Fleet configuration (defaults apply if None)
            store: Pre-built state store (skips backend selection)
            detector: Pre-built detector (for testing)
            bus: Pre-built change bus
            transport_factory: Opens AT transports for commands
            runner: Process runner shared by the scanner and QMI commands
        """
        self.config = config or FleetConfig()
        self.detector = detector or ModemDetector(
            DeviceScanner(self.config.detection, runner=runner),
            self.config.detection
        )
        self.bus = bus or ChangeBus()
        self.store: Optional[StateStore] = store
        self.executor: Optional[CommandExecutor] = None

        self._transport_factory = transport_factory
        self._runner = runner
        self._opened = False

        # Scan coalescing
        self._scan_cond = threading.Condition()
        self._scan_in_flight = False
        self._scan_generation = 0
        self._last_report: Optional[ScanReport] = None

        # Detection loop
        self._loop_thread: Optional[threading.Thread] = None
        self._loop_stop = threading.Event()

    def open(self) -> None:
        """
        Select the store backend and wire it to the change bus.

        Safe to call more than once.
        """
        if self._opened:
            return

        if self.store is None:
            self.store = open_store(self.config)

        self.store.add_listener(self.bus.publish)
        self.executor = CommandExecutor(
            self.store,
            self.config.commands,
            transport_factory=self._transport_factory,
            runner=self._runner
        )
        self._opened = True
        logger.info(f"Fleet opened (mode={self.store.mode.value})")

    def quick_start(self) -> ScanReport:
        """
        Open, scan once and start the detection loop, without bring-up delays.

        Returns:
            Report of the initial scan
        """
        self.open()
        report = self.trigger_scan()
        self.start_detection_loop()
        return report

    def close(self) -> None:
        """Stop the detection loop and release the bus and the store."""
        self.stop_detection_loop()
        self.bus.close()
        if self.store is not None:
            self.store.remove_listener(self.bus.publish)
            self.store.close()
        self._opened = False
        logger.info("Fleet closed")

    def _require_open(self) -> StateStore:
        if not self._opened or self.store is None:
            raise FleetError("Fleet is not open - call open() first")
        return self.store

    # ------------------------------------------------------------------
    # Scanning

    def trigger_scan(self) -> ScanReport:
        """
        Run one detection cycle and apply it to the store.

        Scans never overlap: a call made while a scan is in flight waits
        for that scan and returns its report with ``coalesced`` set.

        Returns:
            ScanReport; ``success`` is False when enumeration was
            unavailable, in which case nothing is marked absent
        """
        store = self._require_open()

        with self._scan_cond:
            if self._scan_in_flight:
                generation = self._scan_generation
                logger.debug("Scan already in flight, waiting for it")
                self._scan_cond.wait_for(lambda: self._scan_generation != generation)
                return replace(self._last_report, coalesced=True)
            self._scan_in_flight = True

        report = ScanReport(success=False, error="Scan aborted")
        try:
            report = self._run_scan(store)
        finally:
            with self._scan_cond:
                self._last_report = report
                self._scan_in_flight = False
                self._scan_generation += 1
                self._scan_cond.notify_all()

        return report

    def _run_scan(self, store: StateStore) -> ScanReport:
        try:
            result = self.detector.detect()
        except EnumerationUnavailable as e:
            return ScanReport(success=False, error=str(e))

        failures = []
        store_failures = []
        for serial, modem in result.modems.items():
            try:
                store.upsert(modem)
            except PoolExhausted:
                failures.append(serial)
            except FleetError as e:
                logger.warning(f"Failed to store {serial}: {e}")
                store_failures.append(serial)

        present = set(result.modems)
        try:
            absent = [m.serial for m in store.list_modems() if m.serial not in present]
        except FleetError as e:
            logger.warning(f"Skipping absence check: {e}")
            absent = []

        for serial in absent:
            try:
                store.mark_absent(serial)
            except FleetError as e:
                logger.warning(f"Failed to mark {serial} absent: {e}")
                store_failures.append(serial)

        return ScanReport(
            success=True,
            modems_found=len(result.modems),
            scan_time=result.scan_time,
            allocation_failures=failures,
            store_failures=store_failures
        )

    def start_detection_loop(self, interval: Optional[float] = None) -> None:
        """
        Start periodic scanning on a daemon thread.

        Args:
            interval: Seconds between scans (default: config scan_interval)
        """
        self._require_open()

        if self._loop_thread and self._loop_thread.is_alive():
            logger.warning("Detection loop already running")
            return

        period = self.config.detection.scan_interval if interval is None else interval
        self._loop_stop.clear()
        self._loop_thread = threading.Thread(
            target=self._detection_loop,
            args=(period,),
            daemon=True,
            name="FleetDetection"
        )
        self._loop_thread.start()
        logger.info(f"Detection loop started (every {period}s)")

    def stop_detection_loop(self) -> None:
        if not self._loop_thread:
            return

        self._loop_stop.set()
        self._loop_thread.join(timeout=5.0)
        if self._loop_thread.is_alive():
            logger.warning("Detection loop did not stop within 5s")
        else:
            logger.info("Detection loop stopped")
        self._loop_thread = None

    @property
    def is_running(self) -> bool:
        return bool(self._loop_thread and self._loop_thread.is_alive())

    def _detection_loop(self, interval: float) -> None:
        while not self._loop_stop.is_set():
            try:
                report = self.trigger_scan()
                if not report.success:
                    logger.warning(f"Scan failed, retrying next cycle: {report.error}")
            except Exception as e:
                logger.error(f"Detection cycle failed: {e}", exc_info=True)

            self._loop_stop.wait(interval)

    # ------------------------------------------------------------------
    # API surface

    def list_modems(self) -> list[Modem]:
        return self._require_open().list_modems()

    def get_modem(self, serial: str) -> Optional[Modem]:
        return self._require_open().get(serial)

    def execute_command(
        self,
        serial: str,
        command_text: str,
        interface: Union[InterfaceKind, str] = InterfaceKind.AT
    ) -> CommandResult:
        """
        Send a command to one modem.

        Args:
            serial: Modem serial
            command_text: AT command or qmicli arguments
            interface: InterfaceKind or its value ("AT", "QMI")

        Raises:
            ModemNotFoundError: If the serial is unknown
        """
        self._require_open()
        kind = interface if isinstance(interface, InterfaceKind) else InterfaceKind(interface.upper())
        return self.executor.execute(serial, command_text, kind)

    def subscribe(
        self,
        callback: Optional[EventCallback] = None,
        max_queue_size: Optional[int] = None,
        name: Optional[str] = None
    ) -> Subscription:
        """Subscribe to change events (see ChangeBus.subscribe)."""
        return self.bus.subscribe(callback, max_queue_size=max_queue_size, name=name)

    def unsubscribe(self, subscription: Subscription) -> bool:
        return self.bus.unsubscribe(subscription)

    def health_check(self) -> HealthStatus:
        """
        Lightweight fleet health probe.

        Unhealthy when the store cannot be read, when ready modems are
        still waiting for a proxy port, or when modems went missing.
        """
        try:
            modems = self._require_open().list_modems()
        except FleetError as e:
            return HealthStatus(healthy=False, issue=f"State store unavailable: {e}")

        issues = []
        unassigned = [m.serial for m in modems if m.is_ready and m.proxy_port is None]
        if unassigned:
            issues.append(f"{len(unassigned)} ready modems without proxy port: {', '.join(unassigned)}")

        stale = [m.serial for m in modems if m.is_stale]
        if stale:
            issues.append(f"{len(stale)} modems missing from last scan: {', '.join(stale)}")

        if issues:
            return HealthStatus(healthy=False, issue="; ".join(issues))
        return HealthStatus(healthy=True)

    def status(self) -> dict:
        """
        Fleet status for the API surface.

        Returns:
            Dictionary with mode ("database" or "standalone"), modem counts,
            allocated ports, detection statistics and the last scan report
        """
        store = self._require_open()
        modems = store.list_modems()
        report = self._last_report

        return {
            "mode": store.mode.value,
            "detection_running": self.is_running,
            "modems": len(modems),
            "ready": sum(1 for m in modems if m.is_ready),
            "partial": sum(1 for m in modems if not m.is_ready),
            "stale": sum(1 for m in modems if m.is_stale),
            "allocated_ports": sorted(store.current_assigned_ports()),
            "port_range": [self.config.proxy.port_start, self.config.proxy.port_end],
            "subscribers": self.bus.subscriber_count(),
            "statistics": self.detector.statistics(),
            "last_scan": {
                "success": report.success,
                "modems_found": report.modems_found,
                "scan_time": round(report.scan_time, 3),
                "error": report.error,
                "allocation_failures": list(report.allocation_failures),
                "store_failures": list(report.store_failures),
            } if report else None,
        }

    def __enter__(self):
        """Context manager entry. Opens the fleet."""
        self.open()
        return self

    def __exit__(self, *exc):
        """Context manager exit. Closes the fleet."""
        self.close()

    def __repr__(self) -> str:
        mode = self.store.mode.value if self._opened and self.store else "closed"
        return f"<ModemFleet mode={mode} running={self.is_running}>"
