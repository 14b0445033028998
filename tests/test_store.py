"""
Tests for the state store backends.

Most tests run against both the in-memory and the SQLite-backed store.
"""

import threading
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from modemfleet.config import FleetConfig, ProxyConfig, StoreConfig
from modemfleet.exceptions import ModemNotFoundError, PoolExhausted
from modemfleet.store import DatabaseStore, InMemoryStore, open_store
from modemfleet.types import ChangeOperation, CommandLogEntry, InterfaceKind, MappingStatus, StoreMode

from conftest import make_modem


def small_pool_store(kind: str, lo: int, hi: int, reserved=frozenset()):
    proxy = ProxyConfig(port_start=lo, port_end=hi, reserved_ports=frozenset(reserved))
    if kind == "memory":
        return InMemoryStore(proxy=proxy)
    return DatabaseStore("sqlite:///:memory:", proxy=proxy)


def test_upsert_ready_allocates_port(store):
    """Test a ready modem gets the first pool port."""
    stored = store.upsert(make_modem())

    assert stored.proxy_port == 3128
    assert stored.mapping_status is MappingStatus.READY
    assert stored.created_at is not None
    assert store.current_assigned_ports() == {3128}


def test_upsert_partial_gets_no_port(store):
    """Test a partial modem stays without a port."""
    stored = store.upsert(make_modem(ready=False))

    assert stored.proxy_port is None
    assert stored.mapping_status is MappingStatus.PARTIAL
    assert store.current_assigned_ports() == set()


def test_port_assigned_when_modem_becomes_ready(store):
    """Test allocation happens on the upsert that makes the modem ready."""
    store.upsert(make_modem(ready=False))
    stored = store.upsert(make_modem(ready=True))

    assert stored.proxy_port == 3128


def test_proxy_port_never_overwritten(store):
    """Test a stored port survives re-observation, partial flips and caller input."""
    # Setup
    store.upsert(make_modem("EC25_1_1_3"))
    store.upsert(make_modem("EC25_2_1_4", command_port="/dev/ttyUSB6", data_session_port="/dev/cdc-wdm1"))

    # Caller-supplied port is ignored
    stored = store.upsert(make_modem("EC25_1_1_3", proxy_port=9999))
    assert stored.proxy_port == 3128

    # Losing the diagnostic interface flips status but keeps the port
    stored = store.upsert(make_modem("EC25_1_1_3", ready=False))
    assert stored.mapping_status is MappingStatus.PARTIAL
    assert stored.proxy_port == 3128

    # Becoming ready again does not allocate a second port
    stored = store.upsert(make_modem("EC25_1_1_3"))
    assert stored.proxy_port == 3128
    assert store.current_assigned_ports() == {3128, 3129}


def test_upsert_keeps_telemetry(store):
    """Test re-observation does not wipe telemetry fields."""
    store.upsert(make_modem())
    store.record_telemetry("EC25_1_1_3", signal_level=24, operator_name="Vodafone")

    stored = store.upsert(make_modem())

    assert stored.signal_level == 24
    assert stored.operator_name == "Vodafone"


def test_list_and_get(store):
    """Test listing is ordered by serial and returns copies."""
    store.upsert(make_modem("EC25_2_1_4"))
    store.upsert(make_modem("EC25_1_1_3"))

    modems = store.list_modems()
    assert [m.serial for m in modems] == ["EC25_1_1_3", "EC25_2_1_4"]
    assert store.list() == modems

    modems[0].proxy_port = 1
    assert store.get("EC25_1_1_3").proxy_port != 1
    assert store.get("EC25_9_9_9") is None


def test_mode(memory_store, sqlite_store):
    """Test each backend reports its mode."""
    assert memory_store.mode is StoreMode.STANDALONE
    assert sqlite_store.mode is StoreMode.DATABASE


@pytest.mark.parametrize("kind", ["memory", "sqlite"])
def test_pool_exhausted_still_writes_record(kind):
    """Test exhaustion leaves the modem stored without a port."""
    store = small_pool_store(kind, 3128, 3128)

    store.upsert(make_modem("EC25_1_1_3"))
    with pytest.raises(PoolExhausted) as exc_info:
        store.upsert(make_modem("EC25_2_1_4", data_session_port="/dev/cdc-wdm1"))

    assert exc_info.value.serial == "EC25_2_1_4"
    second = store.get("EC25_2_1_4")
    assert second is not None
    assert second.mapping_status is MappingStatus.READY
    assert second.proxy_port is None
    store.close()


@pytest.mark.parametrize("kind", ["memory", "sqlite"])
def test_released_port_returns_to_pool(kind):
    """Test a deleted modem's port is reused."""
    store = small_pool_store(kind, 3128, 3128)
    store.upsert(make_modem("EC25_1_1_3"))

    for _ in range(store.absence_threshold):
        store.mark_absent("EC25_1_1_3")

    stored = store.upsert(make_modem("EC25_2_1_4"))
    assert stored.proxy_port == 3128
    store.close()


@pytest.mark.parametrize("kind", ["memory", "sqlite"])
def test_reserved_ports_skipped(kind):
    """Test reserved ports in the pool are never allocated."""
    store = small_pool_store(kind, 3000, 3002, reserved={3000, 3001})

    assert store.upsert(make_modem()).proxy_port == 3002
    store.close()


@pytest.mark.timeout(10)
@pytest.mark.parametrize("kind", ["memory", "sqlite"])
def test_concurrent_allocation_is_conflict_free(kind):
    """Test two modems becoming ready at once get 3128 and 3129."""
    store = small_pool_store(kind, 3128, 3130)
    barrier = threading.Barrier(2)
    results = {}

    def become_ready(serial, data_port):
        barrier.wait()
        results[serial] = store.upsert(make_modem(serial, data_session_port=data_port)).proxy_port

    threads = [
        threading.Thread(target=become_ready, args=("EC25_1_1_3", "/dev/cdc-wdm0")),
        threading.Thread(target=become_ready, args=("EC25_2_1_4", "/dev/cdc-wdm1")),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(results.values()) == [3128, 3129]
    assert store.current_assigned_ports() == {3128, 3129}
    store.close()


def test_mark_absent_threshold(store):
    """Test a modem is stale first and deleted after the threshold."""
    store.upsert(make_modem())

    store.mark_absent("EC25_1_1_3")
    stale = store.get("EC25_1_1_3")
    assert stale.is_stale
    assert stale.missed_scans == 1

    store.mark_absent("EC25_1_1_3")
    assert store.get("EC25_1_1_3").missed_scans == 2

    store.mark_absent("EC25_1_1_3")
    assert store.get("EC25_1_1_3") is None


def test_reobservation_resets_absence(store):
    """Test an upsert clears the stale counter."""
    store.upsert(make_modem())
    store.mark_absent("EC25_1_1_3")
    store.mark_absent("EC25_1_1_3")

    stored = store.upsert(make_modem())
    assert stored.missed_scans == 0

    store.mark_absent("EC25_1_1_3")
    assert store.get("EC25_1_1_3") is not None


def test_mark_absent_unknown_serial_ignored(store):
    """Test marking an unknown serial is a no-op."""
    store.mark_absent("EC25_9_9_9")
    assert store.list_modems() == []


def test_absence_threshold_must_allow_one_miss():
    """Test a single missed scan can never delete a modem."""
    with pytest.raises(ValueError):
        InMemoryStore(absence_threshold=1)


def test_events_for_lifecycle(store):
    """Test insert, update and delete each emit one event in order."""
    # Setup
    events = []
    store.add_listener(events.append)

    # Insert partial, then ready
    store.upsert(make_modem(ready=False))
    store.upsert(make_modem(ready=True))
    for _ in range(store.absence_threshold):
        store.mark_absent("EC25_1_1_3")

    # Verify
    operations = [e.operation for e in events]
    assert operations == [
        ChangeOperation.INSERT,
        ChangeOperation.UPDATE,
        ChangeOperation.UPDATE,
        ChangeOperation.UPDATE,
        ChangeOperation.DELETE,
    ]

    insert, ready = events[0], events[1]
    assert insert.serial == "EC25_1_1_3"
    assert insert.after_status == "partial"
    assert insert.proxy_port is None
    assert ready.before_status == "partial"
    assert ready.after_status == "ready"
    assert ready.proxy_port == 3128
    assert ready.command_port == "/dev/ttyUSB2"

    delete = events[-1]
    assert delete.before_status == "ready"
    assert delete.after_status is None


def test_listener_failure_does_not_break_writes(store):
    """Test a failing listener is logged and other listeners still run."""
    received = []

    def broken(event):
        raise RuntimeError("listener bug")

    store.add_listener(broken)
    store.add_listener(received.append)

    store.upsert(make_modem())

    assert len(received) == 1
    assert store.remove_listener(broken) is True
    assert store.remove_listener(broken) is False


def test_record_telemetry(store):
    """Test telemetry only changes the given fields."""
    store.upsert(make_modem())

    stored = store.record_telemetry("EC25_1_1_3", signal_level=18)
    assert stored.signal_level == 18
    assert stored.operator_name is None

    stored = store.record_telemetry("EC25_1_1_3", network_address="10.64.12.7")
    assert stored.signal_level == 18
    assert stored.network_address == "10.64.12.7"

    with pytest.raises(ModemNotFoundError):
        store.record_telemetry("EC25_9_9_9", signal_level=1)


def test_command_log(store):
    """Test audit entries are returned newest first and filtered by serial."""
    base = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    entry = CommandLogEntry(
        serial="EC25_1_1_3",
        command="AT+CSQ",
        interface=InterfaceKind.AT,
        response="+CSQ: 24,99\nOK",
        success=True,
        duration_ms=42,
        timestamp=base
    )

    store.log_command(entry)
    store.log_command(replace(entry, command="AT+COPS?", timestamp=base.replace(minute=1)))
    store.log_command(replace(entry, serial="EC25_2_1_4", timestamp=base.replace(minute=2)))

    log = store.command_log("EC25_1_1_3")
    assert [e.command for e in log] == ["AT+COPS?", "AT+CSQ"]
    assert log[1] == entry

    assert len(store.command_log()) == 3
    assert len(store.command_log(limit=1)) == 1


def test_database_store_persists_across_instances(tmp_path):
    """Test a file-backed store keeps modems and ports across restarts."""
    url = f"sqlite:///{tmp_path / 'fleet.db'}"

    first = DatabaseStore(url)
    first.upsert(make_modem())
    first.close()

    second = DatabaseStore(url)
    stored = second.get("EC25_1_1_3")
    assert stored.proxy_port == 3128
    assert stored.last_seen_at.tzinfo is not None

    # Port is still unavailable to other modems
    assert second.upsert(make_modem("EC25_2_1_4", data_session_port="/dev/cdc-wdm1")).proxy_port == 3129
    second.close()


def test_database_channel_decodes_payloads(sqlite_store):
    """Test foreign payloads on the change channel reach listeners; malformed ones do not."""
    events = []
    sqlite_store.add_listener(events.append)

    sqlite_store.channel.notify('{"operation": "UPDATE", "serial": "EC25_7_2_9", "new_status": "ready", "extra": 1}')
    sqlite_store.channel.notify("not json")
    sqlite_store.channel.notify('{"serial": "EC25_7_2_9"}')

    assert len(events) == 1
    assert events[0].serial == "EC25_7_2_9"
    assert events[0].after_status == "ready"


def test_open_store_falls_back_to_standalone(tmp_path):
    """Test an unreachable database selects the in-memory store."""
    url = f"sqlite:///{tmp_path / 'missing-dir' / 'nested' / 'fleet.db'}"
    config = FleetConfig(store=StoreConfig(database_url=url))

    store = open_store(config)

    assert isinstance(store, InMemoryStore)
    assert store.mode is StoreMode.STANDALONE
    assert store.upsert(make_modem()).proxy_port == 3128
    store.close()


def test_open_store_database(tmp_path):
    """Test a reachable database selects the durable store and registers the listener."""
    events = []
    config = FleetConfig(store=StoreConfig(database_url=f"sqlite:///{tmp_path / 'fleet.db'}"))

    store = open_store(config, on_change=events.append)
    store.upsert(make_modem())

    assert store.mode is StoreMode.DATABASE
    assert [e.operation for e in events] == [ChangeOperation.INSERT]
    store.close()


def test_open_store_without_url():
    """Test no database URL selects standalone mode directly."""
    store = open_store(FleetConfig(store=StoreConfig(database_url=None)))

    assert store.mode is StoreMode.STANDALONE
    store.close()
