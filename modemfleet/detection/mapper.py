"""
Identity mapper.

Combines the three raw inventories into logical modem records.

Serial ports are mapped with a fixed positional formula. Modem n (numbered
1..N in bus discovery order) owns the serial ordinals
``(n - 1) * group_size .. (n - 1) * group_size + group_size - 1``, so its
command port is always ``command + (n - 1) * group_size``
(2, 6, 10, 14, ... on EC25 hardware).

Diagnostic interfaces do not follow a guaranteed one-to-one numbering. The
mapper tries the positional candidate first and otherwise takes the first
accessible interface still unassigned. That fallback can hand modem n an
interface that physically belongs to another device: when the interface
count does not match the modem count the result is "some diagnostic
capability", not necessarily the right one. This is a known gap and is kept
on purpose until the hardware offers a reliable correlation.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Sequence

from ..config import PortPattern
from ..types import MappingStatus, Modem, RawBusDevice, RawCharacterDevice

logger = logging.getLogger(__name__)

DEFAULT_PATTERN = PortPattern()


@dataclass(frozen=True)
class ModemMapping:
    """How one bus device was mapped; used for logging and reporting."""
    modem_number: int
    serial: str
    bus_device: RawBusDevice
    pattern: PortPattern
    sub_ports: dict[str, Optional[str]]     # sub-port name -> device path (None if absent)
    diagnostic_candidate: int
    diagnostic_interface: Optional[str]
    diagnostic_fallback: bool               # True when the candidate was not used

    @property
    def base_ordinal(self) -> int:
        return (self.modem_number - 1) * self.pattern.group_size

    @property
    def command_ordinal(self) -> int:
        return command_ordinal(self.modem_number, self.pattern)

    @property
    def formula(self) -> str:
        return (
            f"{self.pattern.command} + ({self.modem_number} - 1) × "
            f"{self.pattern.group_size} = {self.command_ordinal}"
        )

    @property
    def command_port(self) -> Optional[str]:
        return self.sub_ports["command"]

    @property
    def status(self) -> MappingStatus:
        return MappingStatus.derive(self.command_port, self.diagnostic_interface)


def command_ordinal(modem_number: int, pattern: PortPattern = DEFAULT_PATTERN) -> int:
    """Serial ordinal of modem n's command port: command + (n - 1) * group_size."""
    if modem_number < 1:
        raise ValueError(f"Modem numbers start at 1, got {modem_number}")
    return pattern.command + (modem_number - 1) * pattern.group_size


def modem_serial(device: RawBusDevice, modem_number: int, prefix: str = "EC25") -> str:
    """Stable logical identifier, e.g. EC25_1_1_3 for modem 1 on bus 1 device 3."""
    return f"{prefix}_{modem_number}_{device.bus_number}_{device.slot_number}"


def describe_mapping(
    bus_devices: Sequence[RawBusDevice],
    serial_ports: Sequence[RawCharacterDevice],
    diagnostic_ports: Sequence[RawCharacterDevice],
    pattern: PortPattern = DEFAULT_PATTERN,
    serial_prefix: str = "EC25",
    diagnostic_stride: Optional[int] = None,
    diagnostic_offset: Optional[int] = None
) -> list[ModemMapping]:
    """
    Work out every modem's ports.

    Args:
        bus_devices: Bus listing (any order; sorted by discovery_order here)
        serial_ports: Serial inventory
        diagnostic_ports: Diagnostic interface inventory
        pattern: Sub-port layout of one modem
        serial_prefix: Prefix of generated serials
        diagnostic_stride: Ordinal step between modems' diagnostic candidates
                           (default: pattern.group_size)
        diagnostic_offset: Candidate offset inside the step
                           (default: pattern.diagnostics)

    Returns:
        One mapping per bus device, in modem-number order
    """
    stride = pattern.group_size if diagnostic_stride is None else diagnostic_stride
    offset = pattern.diagnostics if diagnostic_offset is None else diagnostic_offset

    serial_by_ordinal = {port.ordinal_index: port for port in serial_ports}

    # Unassigned diagnostic interfaces, in ordinal order
    diagnostic_pool = {
        port.ordinal_index: port
        for port in sorted(diagnostic_ports, key=lambda p: p.ordinal_index)
    }

    mappings = []
    ordered = sorted(bus_devices, key=lambda device: device.discovery_order)

    for modem_number, device in enumerate(ordered, start=1):
        base = (modem_number - 1) * pattern.group_size

        sub_ports: dict[str, Optional[str]] = {}
        for name, sub_offset in pattern.offsets().items():
            port = serial_by_ordinal.get(base + sub_offset)
            sub_ports[name] = port.device_path if port else None

        candidate = (modem_number - 1) * stride + offset
        chosen = diagnostic_pool.get(candidate)
        fallback = False

        if chosen is None or not chosen.is_accessible:
            fallback = True
            chosen = next((port for port in diagnostic_pool.values() if port.is_accessible), None)

        if chosen is not None:
            del diagnostic_pool[chosen.ordinal_index]

        mapping = ModemMapping(
            modem_number=modem_number,
            serial=modem_serial(device, modem_number, serial_prefix),
            bus_device=device,
            pattern=pattern,
            sub_ports=sub_ports,
            diagnostic_candidate=candidate,
            diagnostic_interface=chosen.device_path if chosen else None,
            diagnostic_fallback=fallback and chosen is not None
        )
        mappings.append(mapping)

        if mapping.diagnostic_fallback:
            logger.warning(
                f"{mapping.serial}: diagnostic candidate #{candidate} unavailable, "
                f"using {mapping.diagnostic_interface} (may belong to another device)"
            )
        logger.info(
            f"Mapped {mapping.serial}: command={mapping.command_port} "
            f"diagnostic={mapping.diagnostic_interface} formula={mapping.formula} "
            f"status={mapping.status.value}"
        )

    return mappings


def map_modems(
    bus_devices: Sequence[RawBusDevice],
    serial_ports: Sequence[RawCharacterDevice],
    diagnostic_ports: Sequence[RawCharacterDevice],
    pattern: PortPattern = DEFAULT_PATTERN,
    serial_prefix: str = "EC25",
    diagnostic_stride: Optional[int] = None,
    diagnostic_offset: Optional[int] = None,
    now: Optional[datetime] = None
) -> dict[str, Modem]:
    """
    Map raw inventories to modem records keyed by serial.

    Never raises for a device that maps only partially: such a modem comes
    back with mapping_status PARTIAL.

    Args:
        now: Timestamp written to last_seen_at (default: current UTC time)

    Returns:
        Modem records in modem-number order
    """
    mappings = describe_mapping(
        bus_devices,
        serial_ports,
        diagnostic_ports,
        pattern=pattern,
        serial_prefix=serial_prefix,
        diagnostic_stride=diagnostic_stride,
        diagnostic_offset=diagnostic_offset
    )
    return modems_from_mappings(mappings, now)


def modems_from_mappings(
    mappings: Sequence[ModemMapping],
    now: Optional[datetime] = None
) -> dict[str, Modem]:
    """Modem records for already computed mappings, keyed by serial."""
    seen_at = now or datetime.now(timezone.utc)

    modems: dict[str, Modem] = {}
    for mapping in mappings:
        modem = Modem(
            serial=mapping.serial,
            bus_identity=mapping.bus_device.identity,
            command_port=mapping.command_port,
            data_session_port=mapping.diagnostic_interface,
            last_seen_at=seen_at
        )
        modem.refresh_status()
        modems[modem.serial] = modem

    return modems
