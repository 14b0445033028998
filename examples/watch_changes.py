"""
Change subscription example.

Demonstrates receiving modem insert/update/delete events while the
detection loop runs. Plug and unplug modems to see events arrive.
"""

import time
from modemfleet import ChangeEvent, FleetConfig, ModemFleet

# Replace with your database URL, or None for standalone mode
DATABASE_URL = "sqlite:///modemfleet.db"


def on_change(event: ChangeEvent):
    """Handle one change event."""
    port = event.proxy_port if event.proxy_port is not None else "-"
    print(f"[{event.operation.value}] {event.serial}: "
          f"{event.before_status or '-'} -> {event.after_status or '-'} (proxy {port})")


def main():
    """Main function."""
    print("modemfleet - Change Watcher\n")

    config = FleetConfig()
    config.store.database_url = DATABASE_URL

    with ModemFleet(config) as fleet:
        subscription = fleet.subscribe(on_change, name="example")

        print(f"{len(subscription.snapshot)} modem(s) known at start")
        print(f"Store mode: {fleet.status()['mode']}")
        print("Watching for changes (Ctrl+C to stop)...\n")

        fleet.start_detection_loop(interval=5.0)

        try:
            while True:
                time.sleep(1)

        except KeyboardInterrupt:
            print("\nStopping...")

        if subscription.dropped:
            print(f"{subscription.dropped} event(s) dropped by a full queue")


if __name__ == "__main__":
    main()
