"""
State store contract.

The store is the only component that mutates modem records. Both backends
share the upsert/absence/telemetry logic defined here and differ only in
where records live and how change events are produced.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Optional

from ..config import ProxyConfig
from ..core.allocator import PortRange, allocate_port
from ..exceptions import ModemNotFoundError, PoolExhausted
from ..types import ChangeEvent, ChangeOperation, CommandLogEntry, Modem, StoreMode

logger = logging.getLogger(__name__)

# Type alias for change listeners
ChangeListener = Callable[[ChangeEvent], None]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StateStore(ABC):
    """
    Abstract state store.

    Every mutation runs under the instance's single mutation lock, so port
    allocation and the write that records it are one serialized step.
    """

    mode: StoreMode

    def __init__(
        self,
        proxy: Optional[ProxyConfig] = None,
        absence_threshold: int = 3
    ) -> None:
        """
        Initialize shared store state.

        Args:
            proxy: Proxy port pool settings
            absence_threshold: Consecutive missed scans before a modem is
                               deleted (at least 2)

        Raises:
            ValueError: If absence_threshold is below 2
        """
        if absence_threshold < 2:
            raise ValueError(f"absence_threshold must be at least 2, got {absence_threshold}")

        self.proxy = proxy or ProxyConfig()
        self.port_range = PortRange(self.proxy.port_start, self.proxy.port_end)
        self.absence_threshold = absence_threshold

        self._lock = threading.RLock()
        self._listeners: list[ChangeListener] = []
        self._listeners_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Backend primitives

    @abstractmethod
    def _load(self, serial: str) -> Optional[Modem]:
        """Stored record for serial, or None."""

    @abstractmethod
    def _load_all(self) -> list[Modem]:
        """Every stored record, ordered by serial."""

    @abstractmethod
    def _write(self, record: Modem, before: Optional[Modem]) -> None:
        """Persist record (insert when before is None) and emit its event."""

    @abstractmethod
    def _remove(self, record: Modem) -> None:
        """Delete record and emit its event."""

    @abstractmethod
    def _append_log(self, entry: CommandLogEntry) -> None:
        """Persist one audit entry."""

    @abstractmethod
    def _read_log(self, serial: Optional[str], limit: int) -> list[CommandLogEntry]:
        """Newest-first audit entries."""

    @abstractmethod
    def close(self) -> None:
        """Release backend resources."""

    def _assigned_ports(self) -> set[int]:
        return {m.proxy_port for m in self._load_all() if m.proxy_port is not None}

    # ------------------------------------------------------------------
    # Listeners

    def add_listener(self, callback: ChangeListener) -> None:
        """
        Register a change listener.

        Args:
            callback: Called with every ChangeEvent, in emission order, on
                      the thread that performed the mutation
        """
        with self._listeners_lock:
            self._listeners.append(callback)

    def remove_listener(self, callback: ChangeListener) -> bool:
        with self._listeners_lock:
            try:
                self._listeners.remove(callback)
                return True
            except ValueError:
                return False

    def _emit(self, event: ChangeEvent) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)

        for callback in listeners:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Change listener failed for {event.serial}: {e}", exc_info=True)

    @staticmethod
    def _event(operation: ChangeOperation, record: Modem, before: Optional[Modem]) -> ChangeEvent:
        return ChangeEvent(
            operation=operation,
            serial=record.serial,
            before_status=before.mapping_status.value if before else None,
            after_status=None if operation is ChangeOperation.DELETE else record.mapping_status.value,
            proxy_port=record.proxy_port,
            command_port=record.command_port
        )

    # ------------------------------------------------------------------
    # Operations

    def upsert(self, modem: Modem) -> Modem:
        """
        Insert or update a modem by serial.

        Ports are re-observed from ``modem``; telemetry fields keep their
        stored value unless ``modem`` carries a new one. A stored proxy port
        is never replaced, and the proxy_port of ``modem`` itself is
        ignored: ports are only handed out here.

        Args:
            modem: Freshly mapped record

        Returns:
            Copy of the stored record

        Raises:
            PoolExhausted: If the modem is ready but no port is left. The
                record is still written, with proxy_port unset.
        """
        exhausted: Optional[PoolExhausted] = None

        with self._lock:
            before = self._load(modem.serial)
            record = self._merge(before, modem, utcnow())

            if record.is_ready and record.proxy_port is None:
                try:
                    record.proxy_port = allocate_port(
                        self._assigned_ports(),
                        self.proxy.reserved_ports,
                        self.port_range
                    )
                    logger.info(f"Allocated proxy port {record.proxy_port} to {record.serial}")
                except PoolExhausted as e:
                    exhausted = PoolExhausted(str(e), serial=record.serial)

            self._write(record, before)

        if exhausted is not None:
            logger.warning(f"{record.serial} is ready but stays without a proxy port: {exhausted}")
            raise exhausted

        return replace(record)

    @staticmethod
    def _merge(before: Optional[Modem], modem: Modem, now: datetime) -> Modem:
        if before is None:
            record = replace(modem, proxy_port=None, created_at=now)
        else:
            record = replace(
                before,
                bus_identity=modem.bus_identity,
                command_port=modem.command_port,
                data_session_port=modem.data_session_port,
                network_address=modem.network_address or before.network_address,
                signal_level=modem.signal_level if modem.signal_level is not None else before.signal_level,
                operator_name=modem.operator_name or before.operator_name
            )

        record.last_seen_at = modem.last_seen_at or now
        record.updated_at = now
        record.missed_scans = 0
        record.refresh_status()
        return record

    def list_modems(self) -> list[Modem]:
        """Copies of every stored modem, ordered by serial."""
        with self._lock:
            return [replace(m) for m in self._load_all()]

    def get(self, serial: str) -> Optional[Modem]:
        with self._lock:
            record = self._load(serial)
            return replace(record) if record else None

    def mark_absent(self, serial: str) -> None:
        """
        Record that a successful scan did not see this modem.

        The modem is marked stale; it is deleted once it has been missed
        ``absence_threshold`` times in a row. Unknown serials are ignored.
        """
        with self._lock:
            before = self._load(serial)
            if before is None:
                return

            record = replace(before, missed_scans=before.missed_scans + 1, updated_at=utcnow())

            if record.missed_scans >= self.absence_threshold:
                logger.info(f"Removing {serial} after {record.missed_scans} missed scans")
                self._remove(record)
                return

            logger.warning(f"{serial} not seen in last scan ({record.missed_scans}/{self.absence_threshold})")
            self._write(record, before)

    def current_assigned_ports(self) -> set[int]:
        with self._lock:
            return self._assigned_ports()

    def record_telemetry(
        self,
        serial: str,
        network_address: Optional[str] = None,
        signal_level: Optional[int] = None,
        operator_name: Optional[str] = None
    ) -> Modem:
        """
        Fold command results into a modem's state.

        Only the values given are changed.

        Raises:
            ModemNotFoundError: If the serial is unknown
        """
        with self._lock:
            before = self._load(serial)
            if before is None:
                raise ModemNotFoundError("Unknown modem", serial=serial)

            record = replace(before, updated_at=utcnow())
            if network_address is not None:
                record.network_address = network_address
            if signal_level is not None:
                record.signal_level = signal_level
            if operator_name is not None:
                record.operator_name = operator_name

            self._write(record, before)
            return replace(record)

    def log_command(self, entry: CommandLogEntry) -> None:
        with self._lock:
            self._append_log(entry)

    def command_log(self, serial: Optional[str] = None, limit: int = 50) -> list[CommandLogEntry]:
        """
        Audit entries, newest first.

        Args:
            serial: Only this modem's entries (default: all modems)
            limit: Maximum number of entries
        """
        with self._lock:
            return self._read_log(serial, limit)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    list = list_modems
