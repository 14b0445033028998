"""
Tests for change event encoding and the modem record type.
"""

import json

import pytest

from modemfleet.types import ChangeEvent, ChangeOperation, MappingStatus, Modem

from conftest import FIXED_NOW


def test_payload_uses_snake_case_and_upper_operation():
    """Test the JSON wire form."""
    change = ChangeEvent(
        operation=ChangeOperation.UPDATE,
        serial="EC25_1_1_3",
        before_status="partial",
        after_status="ready",
        proxy_port=3128,
        command_port="/dev/ttyUSB2"
    )

    data = json.loads(change.to_payload())

    assert data == {
        "operation": "UPDATE",
        "serial": "EC25_1_1_3",
        "before_status": "partial",
        "after_status": "ready",
        "proxy_port": 3128,
        "command_port": "/dev/ttyUSB2",
    }
    assert ChangeEvent.from_payload(change.to_payload()) == change


def test_decode_accepts_aliases_and_extra_fields():
    """Test older producer field names and unknown keys."""
    payload = json.dumps({
        "operation": "update",
        "serial": "EC25_2_1_4",
        "old_status": "partial",
        "new_status": "ready",
        "proxy_port": "3129",
        "at_port": "/dev/ttyUSB6",
        "timestamp": "2024-05-01T12:00:00Z",
    })

    change = ChangeEvent.from_payload(payload)

    assert change.operation is ChangeOperation.UPDATE
    assert change.before_status == "partial"
    assert change.after_status == "ready"
    assert change.proxy_port == 3129
    assert change.command_port == "/dev/ttyUSB6"


def test_decode_status_alias_for_insert():
    """Test a bare status field is read as the new status."""
    change = ChangeEvent.from_payload('{"operation": "INSERT", "serial": "EC25_1_1_3", "status": "partial"}')

    assert change.operation is ChangeOperation.INSERT
    assert change.after_status == "partial"
    assert change.before_status is None
    assert change.proxy_port is None


@pytest.mark.parametrize("payload", [
    "not json",
    "[1, 2]",
    '{"serial": "EC25_1_1_3"}',
    '{"operation": "UPSERT", "serial": "EC25_1_1_3"}',
    '{"operation": "DELETE"}',
])
def test_decode_rejects_malformed(payload):
    """Test malformed payloads raise ValueError."""
    with pytest.raises(ValueError):
        ChangeEvent.from_payload(payload)


def test_mapping_status_derivation():
    """Test ready iff both primary interfaces are known."""
    assert MappingStatus.derive("/dev/ttyUSB2", "/dev/cdc-wdm0") is MappingStatus.READY
    assert MappingStatus.derive("/dev/ttyUSB2", None) is MappingStatus.PARTIAL
    assert MappingStatus.derive(None, "/dev/cdc-wdm0") is MappingStatus.PARTIAL


def test_modem_to_dict():
    """Test the JSON-friendly modem representation."""
    modem = Modem(
        serial="EC25_1_1_3",
        bus_identity="001-003",
        command_port="/dev/ttyUSB2",
        data_session_port="/dev/cdc-wdm0",
        proxy_port=3128,
        last_seen_at=FIXED_NOW
    )
    modem.refresh_status()

    data = modem.to_dict()

    assert data["mapping_status"] == "ready"
    assert data["last_seen_at"] == "2024-05-01T12:00:00+00:00"
    assert data["created_at"] is None
    json.dumps(data)
