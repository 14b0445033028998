"""
Command-line interface for modemfleet.

Sub-commands:
- auto-start: Full staggered bring-up, then periodic detection (default)
- quick-start: Immediate scan, then periodic detection
- detect: One scan, print the mapping table
- status: One scan, print fleet status as JSON
"""

import argparse
import json
import logging
import sys
import threading
from dataclasses import replace
from typing import Optional

from .bringup import BringUpOrchestrator, BringUpPhase
from .config import FleetConfig
from .detection import ModemDetector
from .exceptions import BringUpFailed, EnumerationUnavailable, FleetError
from .fleet import ModemFleet
from .version import __version__

logger = logging.getLogger(__name__)


class FleetCLI:
    """Runs one CLI sub-command against a fleet."""

    def __init__(self, config: FleetConfig):
        self.config = config
        self._shutdown = threading.Event()

    def auto_start(self) -> int:
        """Five-phase bring-up followed by the detection loop until Ctrl+C."""
        bringup = self.config.bringup
        print(f"modemfleet v{__version__} - auto-start")
        print(f"Settling {bringup.settle_delay:.0f}s, batches of {bringup.batch_size}, "
              f"grace period {bringup.grace_period:.0f}s\n")

        fleet = ModemFleet(self.config)
        orchestrator = BringUpOrchestrator(fleet)

        try:
            try:
                result = orchestrator.run()
            except KeyboardInterrupt:
                orchestrator.stop()
                print("\nBring-up interrupted")
                return 130

            if result.phase is BringUpPhase.CANCELLED:
                print("Bring-up cancelled")
                return 1

            print(f"Bring-up complete: {result.modems_detected} detected, "
                  f"{len(result.started)} started, {len(result.failed)} failed "
                  f"({result.elapsed:.0f}s)")
            for serial, error in result.failed.items():
                print(f"  FAILED {serial}: {error}")
            for issue in result.health_issues:
                print(f"  WARNING {issue}")

            fleet.start_detection_loop()
            return self._serve(fleet)

        except BringUpFailed as e:
            print(f"\nBring-up failed in {e.phase}: {e}")
            return 1
        finally:
            fleet.close()

    def quick_start(self) -> int:
        """Immediate scan and detection loop, no delays."""
        print(f"modemfleet v{__version__} - quick-start\n")

        fleet = ModemFleet(self.config)
        try:
            report = fleet.quick_start()
            if report.success:
                print(f"Initial scan: {report.modems_found} modems ({report.scan_time:.2f}s)")
            else:
                print(f"Initial scan failed: {report.error}")
            self._print_modems(fleet)
            return self._serve(fleet)
        except FleetError as e:
            print(f"\nError: {e}")
            return 1
        finally:
            fleet.close()

    def detect(self) -> int:
        """One scan; print how every device was mapped."""
        detector = ModemDetector(config=self.config.detection)

        try:
            result = detector.detect()
        except EnumerationUnavailable as e:
            print(f"Detection unavailable: {e}")
            return 1

        print(f"Bus devices: {result.bus_devices}  Serial ports: {result.serial_ports}  "
              f"Diagnostic interfaces: {result.diagnostic_ports}  ({result.scan_time:.2f}s)\n")

        if not result.modems:
            print("No modems detected")
            return 0

        for mapping in detector.last_mappings:
            print(f"Modem {mapping.modem_number}: {mapping.serial} "
                  f"[{mapping.bus_device.identity}] {mapping.status.value.upper()}")
            print(f"  formula:     {mapping.formula}")
            for name, path in mapping.sub_ports.items():
                print(f"  {name + ':':<12} {path or '-'}")
            diagnostic = mapping.diagnostic_interface or "-"
            suffix = " (fallback)" if mapping.diagnostic_fallback else ""
            print(f"  {'interface:':<12} {diagnostic}{suffix}\n")

        return 0

    def status(self) -> int:
        """One scan against the configured store; print the fleet status."""
        fleet = ModemFleet(self.config)
        try:
            fleet.open()
            fleet.trigger_scan()
            print(json.dumps(fleet.status(), indent=2))
            return 0
        except FleetError as e:
            print(f"Error: {e}")
            return 1
        finally:
            fleet.close()

    def _print_modems(self, fleet: ModemFleet) -> None:
        for modem in fleet.list_modems():
            port = modem.proxy_port if modem.proxy_port is not None else "-"
            print(f"  {modem.serial:<20} {modem.mapping_status.value:<8} "
                  f"cmd={modem.command_port or '-':<14} proxy={port}")

    def _serve(self, fleet: ModemFleet) -> int:
        print("\nDetection running. Press Ctrl+C to stop.")
        try:
            while not self._shutdown.wait(1.0):
                pass
        except KeyboardInterrupt:
            print("\nShutting down...")
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="modemfleet",
        description="modemfleet - USB cellular modem fleet manager",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  modemfleet                          # auto-start with staggered bring-up
  modemfleet quick-start --standalone
  modemfleet detect -v
  modemfleet status --database-url postgresql://fleet@localhost/fleet
        """
    )

    parser.add_argument(
        "command",
        nargs="?",
        default="auto-start",
        choices=["auto-start", "quick-start", "detect", "status"],
        help="What to run (default: auto-start)"
    )
    parser.add_argument(
        "--database-url",
        help="SQLAlchemy database URL (default: $MODEMFLEET_DATABASE_URL)"
    )
    parser.add_argument(
        "--standalone",
        action="store_true",
        help="Do not use a database; keep state in memory"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for CLI."""
    args = build_parser().parse_args(argv)

    # Setup logging
    if args.verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
    else:
        logging.basicConfig(
            level=logging.WARNING,
            format='%(levelname)s: %(message)s'
        )

    config = FleetConfig.from_env()
    if args.standalone:
        config.store = replace(config.store, database_url=None)
    elif args.database_url:
        config.store = replace(config.store, database_url=args.database_url)

    cli = FleetCLI(config)
    handlers = {
        "auto-start": cli.auto_start,
        "quick-start": cli.quick_start,
        "detect": cli.detect,
        "status": cli.status,
    }
    return handlers[args.command]()


if __name__ == "__main__":
    sys.exit(main())
