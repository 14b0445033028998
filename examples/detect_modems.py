"""
Modem detection example.

Runs one scan in standalone mode and prints every modem with its ports.
"""

from modemfleet import FleetConfig, ModemFleet, StoreConfig


def main():
    """Main function."""
    print("modemfleet - Modem Detection\n")

    # Keep state in memory; no database needed
    config = FleetConfig(store=StoreConfig(database_url=None))

    with ModemFleet(config) as fleet:
        report = fleet.trigger_scan()

        if not report.success:
            print(f"Scan failed: {report.error}")
            return

        print(f"Found {report.modems_found} modem(s) in {report.scan_time:.2f}s\n")

        for modem in fleet.list_modems():
            print(f"{modem.serial} ({modem.bus_identity})")
            print(f"  Status:      {modem.mapping_status.value}")
            print(f"  AT port:     {modem.command_port or '-'}")
            print(f"  QMI device:  {modem.data_session_port or '-'}")
            print(f"  Proxy port:  {modem.proxy_port if modem.proxy_port is not None else '-'}")
            print()

        for serial in report.allocation_failures:
            print(f"WARNING: no proxy port left for {serial}")

        # Ask every ready modem for its signal level
        for modem in fleet.list_modems():
            if modem.command_port:
                result = fleet.execute_command(modem.serial, "AT+CSQ")
                print(f"{modem.serial}: {result.response.splitlines()[0] if result.response else '-'}")


if __name__ == "__main__":
    main()
