"""
Staggered fleet bring-up.

Brings a large fleet online gradually in five strictly sequential phases:
settling, component init, detection, staggered start and grace period.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Optional, Sequence

from .config import BringUpConfig
from .exceptions import BringUpFailed, EnumerationUnavailable, PoolExhausted
from .fleet import ModemFleet
from .types import HealthStatus, Modem, RawBusDevice

logger = logging.getLogger(__name__)

# Hook signatures
InitHook = Callable[[ModemFleet], None]
StartHook = Callable[[Modem], None]


class BringUpPhase(Enum):
    SETTLING = "settling"
    COMPONENT_INIT = "component_init"
    DETECTION = "detection"
    STAGGERED_START = "staggered_start"
    GRACE_PERIOD = "grace_period"
    COMPLETE = "complete"
    CANCELLED = "cancelled"


@dataclass
class BringUpResult:
    """Outcome of one bring-up run."""
    phase: BringUpPhase
    settled: bool = False
    modems_detected: int = 0
    started: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)     # serial -> error
    health_issues: list[str] = field(default_factory=list)
    cancelled: bool = False
    elapsed: float = 0.0


def batches(items: Sequence, size: int) -> Iterable[Sequence]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class BringUpOrchestrator:
    """
    Runs the five bring-up phases against one fleet.

    All waits go through one stop event: stop() makes every pending and
    future wait return at once. Cancellation is checked at phase and batch
    boundaries and before each modem start, never in the middle of one.
    """

    def __init__(
        self,
        fleet: ModemFleet,
        config: Optional[BringUpConfig] = None,
        init_hooks: Sequence[InitHook] = (),
        start_hooks: Sequence[StartHook] = (),
        settle_probe: Optional[Callable[[], list[RawBusDevice]]] = None,
        health_check: Optional[Callable[[], HealthStatus]] = None
    ) -> None:
        """
        Initialize orchestrator.

        Args:
            fleet: Fleet to bring up (opened during component init)
            config: Phase timings (default: fleet config)
            init_hooks: Called with the fleet after it opened; any exception
                        is fatal
            start_hooks: Called with each modem after its upsert (e.g. start
                         its proxy); exceptions fail that modem only
            settle_probe: Bus listing used to tell whether devices settled
                          (default: the fleet scanner's bus listing)
            health_check: Probe run after each grace step
                          (default: fleet.health_check)
        """
        self.fleet = fleet
        self.config = config or fleet.config.bringup
        self.init_hooks = list(init_hooks)
        self.start_hooks = list(start_hooks)
        self._settle_probe = settle_probe or fleet.detector.scanner.scan_bus_devices
        self._health_check = health_check or fleet.health_check
        self._stop = threading.Event()
        self.phase: Optional[BringUpPhase] = None

    def stop(self) -> None:
        """Request cancellation."""
        logger.info("Bring-up stop requested")
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def _wait(self, seconds: float) -> bool:
        """Wait unless stopped. Returns True if a stop was requested."""
        if seconds <= 0:
            return self._stop.is_set()
        return self._stop.wait(seconds)

    def _enter(self, result: BringUpResult, phase: BringUpPhase) -> bool:
        """Phase boundary. Returns False when the run is cancelled here."""
        if self._stop.is_set():
            logger.warning(f"Bring-up cancelled before {phase.value}")
            result.phase = BringUpPhase.CANCELLED
            result.cancelled = True
            return False

        self.phase = phase
        result.phase = phase
        logger.info(f"Bring-up phase: {phase.value}")
        return True

    def run(self) -> BringUpResult:
        """
        Run all phases.

        Returns:
            BringUpResult; phase is COMPLETE, or CANCELLED after stop()

        Raises:
            BringUpFailed: If component init or detection fails
        """
        started = time.monotonic()
        result = BringUpResult(phase=BringUpPhase.SETTLING)

        try:
            self._run_phases(result)
        finally:
            result.elapsed = time.monotonic() - started

        logger.info(
            f"Bring-up {result.phase.value}: {len(result.started)} started, "
            f"{len(result.failed)} failed, {len(result.health_issues)} health issues "
            f"in {result.elapsed:.1f}s"
        )
        return result

    def _run_phases(self, result: BringUpResult) -> None:
        if not self._enter(result, BringUpPhase.SETTLING):
            return
        result.settled = self._settle()

        if not self._enter(result, BringUpPhase.COMPONENT_INIT):
            return
        self._init_components()

        if not self._enter(result, BringUpPhase.DETECTION):
            return
        modems = self._detect()
        result.modems_detected = len(modems)

        if not self._enter(result, BringUpPhase.STAGGERED_START):
            return
        if not self._staggered_start(modems, result):
            result.phase = BringUpPhase.CANCELLED
            result.cancelled = True
            return

        if not self._enter(result, BringUpPhase.GRACE_PERIOD):
            return
        self._grace_period(result)

        result.phase = BringUpPhase.COMPLETE
        self.phase = BringUpPhase.COMPLETE

    # ------------------------------------------------------------------
    # Phases

    def _bus_signature(self) -> Optional[list[str]]:
        try:
            return [device.identity for device in self._settle_probe()]
        except EnumerationUnavailable as e:
            logger.warning(f"Settlement probe failed: {e}")
            return None

    def _settle(self) -> bool:
        cfg = self.config
        before = self._bus_signature()
        logger.info(f"Waiting {cfg.settle_delay}s for devices to settle ({len(before or [])} seen)")

        if self._wait(cfg.settle_delay):
            return False

        after = self._bus_signature()
        settled = before is not None and before == after
        if settled:
            return True

        logger.warning(f"Devices not settled, waiting another {cfg.settle_extension}s")
        self._wait(cfg.settle_extension)
        return False

    def _init_components(self) -> None:
        try:
            self.fleet.open()
            for hook in self.init_hooks:
                hook(self.fleet)
        except Exception as e:
            raise BringUpFailed(
                f"Component initialization failed: {e}",
                phase=BringUpPhase.COMPONENT_INIT.value
            ) from e

    def _detect(self) -> list[Modem]:
        try:
            detection = self.fleet.detector.detect()
        except EnumerationUnavailable as e:
            raise BringUpFailed(
                f"Initial detection failed: {e}",
                phase=BringUpPhase.DETECTION.value
            ) from e

        if not detection.modems:
            logger.warning("No modems detected, fleet starts empty")
        return list(detection.modems.values())

    def _staggered_start(self, modems: list[Modem], result: BringUpResult) -> bool:
        """Start modems batch by batch. Returns False if cancelled."""
        cfg = self.config
        groups = list(batches(modems, cfg.batch_size))

        for index, batch in enumerate(groups, start=1):
            if index > 1:
                logger.info(f"Waiting {cfg.batch_delay}s before batch {index}/{len(groups)}")
                if self._wait(cfg.batch_delay):
                    return False

            if self._stop.is_set():
                return False

            logger.info(f"Starting batch {index}/{len(groups)} ({len(batch)} modems)")
            for position, modem in enumerate(batch):
                if position > 0 and self._wait(cfg.instance_delay):
                    return False
                if self._stop.is_set():
                    return False
                self._start_modem(modem, result)

        return True

    def _start_modem(self, modem: Modem, result: BringUpResult) -> None:
        try:
            stored = self.fleet.store.upsert(modem)
            for hook in self.start_hooks:
                hook(stored)
        except PoolExhausted as e:
            result.failed[modem.serial] = str(e)
            return
        except Exception as e:
            logger.error(f"Failed to start {modem.serial}: {e}")
            result.failed[modem.serial] = str(e)
            return

        result.started.append(modem.serial)
        logger.info(f"Started {modem.serial} (proxy port {stored.proxy_port})")

    def _grace_period(self, result: BringUpResult) -> None:
        cfg = self.config
        step = cfg.grace_period / cfg.grace_steps

        for number in range(1, cfg.grace_steps + 1):
            self._wait(step)
            try:
                health = self._health_check()
            except Exception as e:
                health = HealthStatus(healthy=False, issue=f"Health check failed: {e}")
            if not health.healthy:
                issue = health.issue or "unhealthy"
                logger.warning(f"Health check {number}/{cfg.grace_steps}: {issue}")
                result.health_issues.append(issue)
            else:
                logger.info(f"Health check {number}/{cfg.grace_steps}: OK")
