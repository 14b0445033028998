"""
Configuration for modemfleet.

All values have production defaults taken from the reference EC25-EUX
deployment and can be overridden through MODEMFLEET_* environment variables.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)

ENV_PREFIX = "MODEMFLEET_"

# Well-known ports that must never become proxy ports.
DEFAULT_RESERVED_PORTS = frozenset({22, 80, 443, 3000, 3001, 3002, 5432, 8080})


@dataclass(frozen=True)
class PortPattern:
    """
    Position of each serial sub-port inside one modem's ordinal group.

    One EC25 exposes four consecutive ttyUSB devices:
    diagnostics (+0), location/NMEA (+1), AT command (+2), data (+3).
    """
    diagnostics: int = 0
    location: int = 1
    command: int = 2
    data: int = 3
    group_size: int = 4

    def __post_init__(self) -> None:
        offsets = (self.diagnostics, self.location, self.command, self.data)
        if self.group_size < 1:
            raise ValueError(f"group_size must be positive, got {self.group_size}")
        if any(offset < 0 or offset >= self.group_size for offset in offsets):
            raise ValueError(f"Sub-port offsets {offsets} must lie in [0, {self.group_size})")

    def offsets(self) -> dict[str, int]:
        return {
            "diagnostics": self.diagnostics,
            "location": self.location,
            "command": self.command,
            "data": self.data,
        }


@dataclass
class DetectionConfig:
    """Scanner and mapper settings."""
    vendor_product: str = "2c7c:0125"
    serial_name_pattern: str = r"ttyUSB(\d+)$"
    diagnostic_glob: str = "/dev/cdc-wdm*"
    diagnostic_name_pattern: str = r"cdc-wdm(\d+)$"
    pattern: PortPattern = field(default_factory=PortPattern)
    # Direct diagnostic candidate is (n - 1) * stride + offset; None means
    # "same as the serial group" (group_size / pattern.diagnostics).
    diagnostic_stride: Optional[int] = None
    diagnostic_offset: Optional[int] = None
    serial_prefix: str = "EC25"
    probe_timeout: float = 2.0
    max_concurrent_probes: int = 10
    scan_interval: float = 5.0
    absence_threshold: int = 3


@dataclass
class ProxyConfig:
    """Proxy port pool."""
    port_start: int = 3128
    port_end: int = 4127
    reserved_ports: frozenset[int] = DEFAULT_RESERVED_PORTS

    def __post_init__(self) -> None:
        if self.port_start > self.port_end:
            raise ValueError(f"Empty proxy port range [{self.port_start}, {self.port_end}]")


@dataclass
class StoreConfig:
    """State store backend selection."""
    # None selects the in-process store directly.
    database_url: Optional[str] = "sqlite:///modemfleet.db"
    connect_timeout: float = 5.0


@dataclass
class BringUpConfig:
    """Staggered fleet bring-up timings (seconds)."""
    settle_delay: float = 45.0
    settle_extension: float = 15.0
    batch_size: int = 5
    instance_delay: float = 2.5
    batch_delay: float = 5.0
    grace_period: float = 150.0
    grace_steps: int = 5

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")
        if self.grace_steps < 1:
            raise ValueError(f"grace_steps must be positive, got {self.grace_steps}")


@dataclass
class CommandConfig:
    """Command execution settings."""
    baudrate: int = 115200
    timeout: float = 5.0


@dataclass
class FleetConfig:
    """Top-level configuration."""
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    bringup: BringUpConfig = field(default_factory=BringUpConfig)
    commands: CommandConfig = field(default_factory=CommandConfig)

    @classmethod
    def from_env(cls, environ: Optional[dict[str, str]] = None) -> FleetConfig:
        """
        Load configuration from environment variables.

        Malformed numeric values are logged and replaced by the default.
        An empty MODEMFLEET_DATABASE_URL selects standalone mode.
        """
        env = os.environ if environ is None else environ

        def _str(key: str, default: Optional[str]) -> Optional[str]:
            return env.get(ENV_PREFIX + key, default)

        def _int(key: str, default: int) -> int:
            raw = env.get(ENV_PREFIX + key)
            if raw is None:
                return default
            try:
                return int(raw)
            except ValueError:
                logger.warning(f"Ignoring invalid {ENV_PREFIX}{key}={raw!r}, using {default}")
                return default

        def _float(key: str, default: float) -> float:
            raw = env.get(ENV_PREFIX + key)
            if raw is None:
                return default
            try:
                return float(raw)
            except ValueError:
                logger.warning(f"Ignoring invalid {ENV_PREFIX}{key}={raw!r}, using {default}")
                return default

        detection = DetectionConfig(
            vendor_product=_str("VENDOR_PRODUCT", DetectionConfig.vendor_product),
            serial_prefix=_str("SERIAL_PREFIX", DetectionConfig.serial_prefix),
            probe_timeout=_float("PROBE_TIMEOUT", DetectionConfig.probe_timeout),
            scan_interval=_float("SCAN_INTERVAL", DetectionConfig.scan_interval),
            absence_threshold=_int("ABSENCE_THRESHOLD", DetectionConfig.absence_threshold),
        )
        proxy = ProxyConfig(
            port_start=_int("PROXY_PORT_START", ProxyConfig.port_start),
            port_end=_int("PROXY_PORT_END", ProxyConfig.port_end),
        )
        store = StoreConfig(
            database_url=_str("DATABASE_URL", StoreConfig.database_url) or None,
        )
        bringup = BringUpConfig(
            settle_delay=_float("BOOT_DELAY", BringUpConfig.settle_delay),
            batch_size=_int("BATCH_SIZE", BringUpConfig.batch_size),
            instance_delay=_float("INSTANCE_DELAY", BringUpConfig.instance_delay),
            batch_delay=_float("BATCH_DELAY", BringUpConfig.batch_delay),
            grace_period=_float("GRACE_PERIOD", BringUpConfig.grace_period),
        )
        commands = CommandConfig(
            timeout=_float("COMMAND_TIMEOUT", CommandConfig.timeout),
        )
        return cls(
            detection=detection,
            proxy=proxy,
            store=store,
            bringup=bringup,
            commands=commands,
        )
