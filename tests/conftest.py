"""
Pytest configuration and fixtures.

Provides shared test fixtures for modemfleet tests. Nothing here touches
real hardware: the process runner, the serial port lister, the diagnostic
glob and the access check are all replaced by fakes.
"""

import logging
import subprocess
from datetime import datetime, timezone
from typing import Iterable, Optional

import pytest

from modemfleet.config import DetectionConfig, FleetConfig, ProxyConfig, StoreConfig
from modemfleet.core import ChangeBus, MockTransport
from modemfleet.detection import DeviceScanner, ModemDetector
from modemfleet.fleet import ModemFleet
from modemfleet.store import DatabaseStore, InMemoryStore
from modemfleet.types import Modem


# Enable logging for tests
logging.basicConfig(
    level=logging.DEBUG,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


EC25_LINE = "Bus {bus} Device {dev}: ID 2c7c:0125 Quectel Wireless Solutions Co., Ltd. EC25 LTE modem"
ROOT_HUB = "Bus 001 Device 001: ID 1d6b:0002 Linux Foundation 2.0 root hub"

FIXED_NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def lsusb_output(*devices: tuple[str, str], extra: Iterable[str] = (ROOT_HUB,)) -> str:
    """Build lsusb output with one EC25 line per (bus, device) pair."""
    lines = list(extra) + [EC25_LINE.format(bus=bus, dev=dev) for bus, dev in devices]
    return "\n".join(lines) + "\n"


class FakeRunner:
    """
    Scripted stand-in for subprocess.run.

    - lsusb prints ``lsusb_output`` with ``lsusb_returncode``
    - qmicli --get-service-version-info answers for paths in ``live``,
      times out for paths in ``hanging`` and errors for everything else
    - any other qmicli invocation returns ``qmi_reply``
    - tools listed in ``missing`` raise FileNotFoundError
    """

    def __init__(
        self,
        lsusb_output: str = "",
        lsusb_returncode: int = 0,
        live: Iterable[str] = (),
        hanging: Iterable[str] = (),
        missing: Iterable[str] = (),
        qmi_reply: Optional[subprocess.CompletedProcess] = None
    ):
        self.lsusb_output = lsusb_output
        self.lsusb_returncode = lsusb_returncode
        self.live = set(live)
        self.hanging = set(hanging)
        self.missing = set(missing)
        self.qmi_reply = qmi_reply
        self.calls: list[list[str]] = []

    def __call__(self, args, timeout=None):
        args = list(args)
        self.calls.append(args)
        tool = args[0]

        if tool in self.missing:
            raise FileNotFoundError(tool)

        if tool == "lsusb":
            return subprocess.CompletedProcess(args, self.lsusb_returncode, stdout=self.lsusb_output, stderr="")

        if tool == "qmicli" and args[3] == "--get-service-version-info":
            path = args[2]
            if path in self.hanging:
                raise subprocess.TimeoutExpired(args, timeout)
            if path in self.live:
                return subprocess.CompletedProcess(
                    args, 0, stdout=f"[{path}] Supported versions:\n\tctl (1.5)\n\tnas (1.25)\n", stderr=""
                )
            return subprocess.CompletedProcess(args, 1, stdout="", stderr="error: couldn't open the QmiDevice")

        if tool == "qmicli" and self.qmi_reply is not None:
            return self.qmi_reply

        return subprocess.CompletedProcess(args, 1, stdout="", stderr="error: unexpected call")


def make_scanner(
    runner: FakeRunner,
    serial_ordinals: Iterable[int] = (),
    diagnostic_ordinals: Iterable[int] = (),
    inaccessible: Iterable[str] = (),
    config: Optional[DetectionConfig] = None
) -> DeviceScanner:
    """DeviceScanner wired to fakes. The serial/diagnostic lists are read on every scan."""
    serial_paths = [f"/dev/ttyUSB{n}" for n in serial_ordinals]
    diagnostic_paths = [f"/dev/cdc-wdm{n}" for n in diagnostic_ordinals]
    blocked = set(inaccessible)

    scanner = DeviceScanner(
        config or DetectionConfig(),
        runner=runner,
        port_lister=lambda: list(serial_paths),
        path_globber=lambda pattern: list(diagnostic_paths),
        access_checker=lambda path: path not in blocked
    )
    scanner.serial_paths = serial_paths
    scanner.diagnostic_paths = diagnostic_paths
    return scanner


def make_modem(serial: str = "EC25_1_1_3", ready: bool = True, **kwargs) -> Modem:
    """Modem as the mapper would produce it."""
    modem = Modem(
        serial=serial,
        bus_identity=kwargs.pop("bus_identity", "001-003"),
        command_port=kwargs.pop("command_port", "/dev/ttyUSB2"),
        data_session_port=kwargs.pop("data_session_port", "/dev/cdc-wdm0" if ready else None),
        last_seen_at=kwargs.pop("last_seen_at", FIXED_NOW),
        **kwargs
    )
    modem.refresh_status()
    return modem


@pytest.fixture
def scenario_runner():
    """
    Runner for the three-modem reference scenario.

    Devices A, B, C on bus 001 (devices 003, 004, 005); diagnostic
    interfaces cdc-wdm0 and cdc-wdm1 answer the liveness probe.
    """
    return FakeRunner(
        lsusb_output=lsusb_output(("001", "003"), ("001", "004"), ("001", "005")),
        live=["/dev/cdc-wdm0", "/dev/cdc-wdm1"]
    )


@pytest.fixture
def scenario_scanner(scenario_runner):
    """Scanner for the reference scenario: serial ports 2, 6, 10; diagnostic 0, 1."""
    return make_scanner(scenario_runner, serial_ordinals=[2, 6, 10], diagnostic_ordinals=[0, 1])


@pytest.fixture
def memory_store():
    """
    Create an InMemoryStore with the default port pool.

    Example:
        def test_something(memory_store):
            stored = memory_store.upsert(make_modem())
            assert stored.proxy_port == 3128
    """
    store = InMemoryStore(proxy=ProxyConfig())
    yield store
    store.close()


@pytest.fixture
def sqlite_store():
    """Create a DatabaseStore on a private in-memory SQLite database."""
    store = DatabaseStore("sqlite:///:memory:", proxy=ProxyConfig())
    yield store
    store.close()


@pytest.fixture(params=["memory", "sqlite"])
def store(request):
    """Run the test once against each backend."""
    if request.param == "memory":
        instance = InMemoryStore(proxy=ProxyConfig())
    else:
        instance = DatabaseStore("sqlite:///:memory:", proxy=ProxyConfig())
    yield instance
    instance.close()


@pytest.fixture
def bus():
    """Create a ChangeBus and close it after the test."""
    instance = ChangeBus(max_queue_size=100)
    yield instance
    instance.close()


@pytest.fixture
def fleet_config():
    """FleetConfig in standalone mode."""
    return FleetConfig(store=StoreConfig(database_url=None))


@pytest.fixture
def fleet(fleet_config, scenario_scanner):
    """
    Create an opened ModemFleet on the reference scenario.

    Example:
        def test_scan(fleet):
            report = fleet.trigger_scan()
            assert report.modems_found == 3
    """
    instance = ModemFleet(
        fleet_config,
        store=InMemoryStore(proxy=fleet_config.proxy),
        detector=ModemDetector(scenario_scanner, fleet_config.detection)
    )
    instance.open()
    yield instance
    instance.close()


@pytest.fixture
def mock_transport():
    """
    Create a MockTransport instance for testing.

    Example:
        def test_something(mock_transport):
            mock_transport.add_response(["OK"])
            # ... test code ...
    """
    transport = MockTransport("/dev/ttyUSB2")
    yield transport
    transport.close()


@pytest.fixture
def mock_signal_response():
    """Mock response for AT+CSQ command."""
    return ["+CSQ: 24,99", "OK"]


@pytest.fixture
def mock_operator_response():
    """Mock response for AT+COPS? command."""
    return ['+COPS: 0,0,"Vodafone",7', "OK"]
