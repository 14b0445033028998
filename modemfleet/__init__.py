"""
modemfleet - Detection, port allocation and bring-up for USB cellular modem fleets.
"""

from .version import __version__
from .fleet import ModemFleet
from .bringup import BringUpOrchestrator, BringUpPhase, BringUpResult
from .commands import CommandExecutor
from .config import (
    FleetConfig,
    DetectionConfig,
    ProxyConfig,
    StoreConfig,
    BringUpConfig,
    CommandConfig,
    PortPattern,
)
from .store import open_store, StateStore, DatabaseStore, InMemoryStore

from .types import (
    MappingStatus,
    ChangeOperation,
    InterfaceKind,
    StoreMode,
    RawBusDevice,
    RawCharacterDevice,
    Modem,
    ChangeEvent,
    ModemSnapshot,
    CommandResult,
    CommandLogEntry,
    HealthStatus,
    DetectionResult,
    ScanReport,
)

from .exceptions import (
    FleetError,
    EnumerationUnavailable,
    PoolExhausted,
    PersistenceUnavailable,
    ModemNotFoundError,
    TransportError,
    DeviceDisconnectedError,
    CommandTimeoutError,
    ResponseParseError,
    BringUpFailed,
)

__all__ = [
    "__version__",
    "ModemFleet",
    "BringUpOrchestrator",
    "BringUpPhase",
    "BringUpResult",
    "CommandExecutor",
    "FleetConfig",
    "DetectionConfig",
    "ProxyConfig",
    "StoreConfig",
    "BringUpConfig",
    "CommandConfig",
    "PortPattern",
    "open_store",
    "StateStore",
    "DatabaseStore",
    "InMemoryStore",
    "MappingStatus",
    "ChangeOperation",
    "InterfaceKind",
    "StoreMode",
    "RawBusDevice",
    "RawCharacterDevice",
    "Modem",
    "ChangeEvent",
    "ModemSnapshot",
    "CommandResult",
    "CommandLogEntry",
    "HealthStatus",
    "DetectionResult",
    "ScanReport",
    "FleetError",
    "EnumerationUnavailable",
    "PoolExhausted",
    "PersistenceUnavailable",
    "ModemNotFoundError",
    "TransportError",
    "DeviceDisconnectedError",
    "CommandTimeoutError",
    "ResponseParseError",
    "BringUpFailed",
]
