"""
Data types and structures for modemfleet.

Provides type-safe representations of scan inventories, modem records and
change events.
"""

import json
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class MappingStatus(Enum):
    """Whether a modem has both of its primary interfaces identified."""
    READY = "ready"
    PARTIAL = "partial"

    @classmethod
    def derive(cls, command_port: Optional[str], data_session_port: Optional[str]) -> "MappingStatus":
        """Ready iff both the command port and the data-session interface are known."""
        if command_port and data_session_port:
            return cls.READY
        return cls.PARTIAL


class ChangeOperation(Enum):
    """Kind of mutation a change event describes."""
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class InterfaceKind(Enum):
    """Interface a command is sent through."""
    AT = "AT"
    QMI = "QMI"


class StoreMode(Enum):
    """Which state store backend is active."""
    DATABASE = "database"
    STANDALONE = "standalone"


@dataclass(frozen=True)
class RawBusDevice:
    """One line of the bus listing that matched the vendor:product signature."""
    bus_id: str                 # Zero-padded bus number as listed (e.g., "001")
    slot_id: str                # Zero-padded device number as listed (e.g., "003")
    vendor_product_tag: str     # e.g., "2c7c:0125"
    description: str            # Remainder of the listing line
    discovery_order: int        # 1-based position in the listing

    @property
    def bus_number(self) -> int:
        return int(self.bus_id)

    @property
    def slot_number(self) -> int:
        return int(self.slot_id)

    @property
    def identity(self) -> str:
        """Bus identity as shown to operators (e.g., "001-003")."""
        return f"{self.bus_id}-{self.slot_id}"


@dataclass(frozen=True)
class RawCharacterDevice:
    """
    An exposed character device (serial port or diagnostic interface).

    ordinal_index is the numeric suffix of the device name
    (/dev/ttyUSB6 -> 6, /dev/cdc-wdm1 -> 1).
    """
    device_path: str
    ordinal_index: int
    is_accessible: bool

    @property
    def name(self) -> str:
        return self.device_path.rsplit("/", 1)[-1]


@dataclass
class Modem:
    """
    Logical modem record.

    The State Store is the only component that mutates stored records;
    everything else works on copies.
    """
    serial: str
    bus_identity: str
    command_port: Optional[str] = None
    data_session_port: Optional[str] = None
    proxy_port: Optional[int] = None
    mapping_status: MappingStatus = MappingStatus.PARTIAL
    network_address: Optional[str] = None
    signal_level: Optional[int] = None
    operator_name: Optional[str] = None
    last_seen_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    missed_scans: int = 0       # Consecutive detection cycles without this modem

    @property
    def is_ready(self) -> bool:
        return self.mapping_status is MappingStatus.READY

    @property
    def is_stale(self) -> bool:
        """True when the last scan(s) did not re-observe this modem."""
        return self.missed_scans > 0

    def refresh_status(self) -> MappingStatus:
        """Re-derive mapping_status from the ports and return it."""
        self.mapping_status = MappingStatus.derive(self.command_port, self.data_session_port)
        return self.mapping_status

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly representation (enums as values, datetimes as ISO strings)."""
        data = asdict(self)
        data["mapping_status"] = self.mapping_status.value
        for key in ("last_seen_at", "created_at", "updated_at"):
            value = data[key]
            data[key] = value.isoformat() if value else None
        return data


@dataclass(frozen=True)
class ChangeEvent:
    """
    One mutation of a modem record.

    Wire format (JSON) uses the field names below with the operation in
    upper case, e.g.::

        {"operation": "UPDATE", "serial": "EC25_1_1_3",
         "before_status": "partial", "after_status": "ready",
         "proxy_port": 3128, "command_port": "/dev/ttyUSB2"}
    """
    operation: ChangeOperation
    serial: str
    before_status: Optional[str] = None
    after_status: Optional[str] = None
    proxy_port: Optional[int] = None
    command_port: Optional[str] = None

    def to_payload(self) -> str:
        """Encode as the JSON payload sent on the change channel."""
        return json.dumps({
            "operation": self.operation.value,
            "serial": self.serial,
            "before_status": self.before_status,
            "after_status": self.after_status,
            "proxy_port": self.proxy_port,
            "command_port": self.command_port,
        })

    @classmethod
    def from_payload(cls, payload: str) -> "ChangeEvent":
        """
        Decode a JSON change payload.

        Unknown keys are ignored. The aliases used by older producers
        (old_status, new_status, status, at_port) are accepted as well.

        Raises:
            ValueError: If the payload is not a JSON object or lacks
                operation/serial
        """
        data = json.loads(payload)
        if not isinstance(data, dict):
            raise ValueError(f"Change payload is not an object: {payload!r}")

        try:
            operation = ChangeOperation(str(data["operation"]).upper())
            serial = str(data["serial"])
        except (KeyError, ValueError) as e:
            raise ValueError(f"Malformed change payload: {payload!r}") from e

        before = data.get("before_status", data.get("old_status"))
        after = data.get("after_status", data.get("new_status", data.get("status")))
        proxy_port = data.get("proxy_port")

        return cls(
            operation=operation,
            serial=serial,
            before_status=before,
            after_status=after,
            proxy_port=int(proxy_port) if proxy_port is not None else None,
            command_port=data.get("command_port", data.get("at_port")),
        )


@dataclass(frozen=True)
class ModemSnapshot:
    """Last known state of one modem as mirrored by the change bus."""
    serial: str
    status: Optional[str]
    proxy_port: Optional[int]
    command_port: Optional[str]
    updated_at: datetime


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one command sent to a modem."""
    serial: str
    command: str
    interface: InterfaceKind
    response: str
    success: bool
    duration_ms: int


@dataclass(frozen=True)
class CommandLogEntry:
    """Audit record of an executed command."""
    serial: str
    command: str
    interface: InterfaceKind
    response: str
    success: bool
    duration_ms: int
    timestamp: datetime


@dataclass(frozen=True)
class HealthStatus:
    """Result of a lightweight fleet health probe."""
    healthy: bool
    issue: Optional[str] = None


@dataclass
class DetectionResult:
    """Output of one scanner + mapper pass."""
    modems: dict[str, Modem]
    bus_devices: int
    serial_ports: int
    diagnostic_ports: int
    scan_time: float            # Seconds


@dataclass
class ScanReport:
    """What a triggered scan did to the store."""
    success: bool
    modems_found: int = 0
    scan_time: float = 0.0
    error: Optional[str] = None
    allocation_failures: list[str] = field(default_factory=list)
    store_failures: list[str] = field(default_factory=list)     # Serials whose write or absence mark failed
    coalesced: bool = False     # True when this caller joined an in-flight scan
