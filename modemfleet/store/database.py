"""
Durable state store backed by SQLAlchemy.

Change events are produced by the ORM itself: a ``before_flush`` hook turns
every inserted, updated or deleted ``modems`` row into a JSON payload,
``after_commit`` sends the payloads on the ``modem_change`` channel and
``after_rollback`` discards them. The store listens on that channel and
decodes the payloads like any other consumer would.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import Boolean, DateTime, Integer, String, Text, create_engine, event, inspect, select
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from ..config import ProxyConfig
from ..exceptions import PersistenceUnavailable
from ..types import (
    ChangeEvent,
    ChangeOperation,
    CommandLogEntry,
    InterfaceKind,
    MappingStatus,
    Modem,
    StoreMode,
)
from .base import StateStore

logger = logging.getLogger(__name__)

CHANGE_CHANNEL = "modem_change"

_PENDING_KEY = "modemfleet_pending_changes"


class Base(DeclarativeBase):
    pass


class ModemRecord(Base):
    __tablename__ = "modems"

    serial: Mapped[str] = mapped_column(String(64), primary_key=True)
    bus_identity: Mapped[str] = mapped_column(String(32))
    command_port: Mapped[Optional[str]] = mapped_column(String(64))
    data_session_port: Mapped[Optional[str]] = mapped_column(String(64))
    proxy_port: Mapped[Optional[int]] = mapped_column(Integer, unique=True)
    status: Mapped[str] = mapped_column(String(16), default=MappingStatus.PARTIAL.value)
    network_address: Mapped[Optional[str]] = mapped_column(String(64))
    signal_level: Mapped[Optional[int]] = mapped_column(Integer)
    operator_name: Mapped[Optional[str]] = mapped_column(String(64))
    last_seen_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    missed_scans: Mapped[int] = mapped_column(Integer, default=0)


class CommandLogRecord(Base):
    __tablename__ = "modem_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    serial: Mapped[str] = mapped_column(String(64), index=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    command: Mapped[str] = mapped_column(Text)
    interface: Mapped[str] = mapped_column(String(8))
    response: Mapped[str] = mapped_column(Text)
    success: Mapped[bool] = mapped_column(Boolean)
    duration_ms: Mapped[int] = mapped_column(Integer)


class NotificationChannel:
    """Named channel carrying JSON payloads to in-process listeners."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._listeners: list[Callable[[str], None]] = []
        self._lock = threading.Lock()

    def listen(self, callback: Callable[[str], None]) -> None:
        with self._lock:
            self._listeners.append(callback)

    def notify(self, payload: str) -> None:
        with self._lock:
            listeners = list(self._listeners)
        logger.debug(f"NOTIFY {self.name}: {payload}")
        for callback in listeners:
            callback(payload)


def _row_payload(operation: ChangeOperation, row: ModemRecord, before_status: Optional[str]) -> str:
    return ChangeEvent(
        operation=operation,
        serial=row.serial,
        before_status=before_status,
        after_status=None if operation is ChangeOperation.DELETE else row.status,
        proxy_port=row.proxy_port,
        command_port=row.command_port
    ).to_payload()


def _collect_changes(session: Session, flush_context, instances) -> None:
    pending = session.info.setdefault(_PENDING_KEY, [])

    for row in session.new:
        if isinstance(row, ModemRecord):
            pending.append(_row_payload(ChangeOperation.INSERT, row, None))

    for row in session.dirty:
        if isinstance(row, ModemRecord) and session.is_modified(row):
            history = inspect(row).attrs.status.history
            before = history.deleted[0] if history.deleted else row.status
            pending.append(_row_payload(ChangeOperation.UPDATE, row, before))

    for row in session.deleted:
        if isinstance(row, ModemRecord):
            pending.append(_row_payload(ChangeOperation.DELETE, row, row.status))


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_modem(row: ModemRecord) -> Modem:
    return Modem(
        serial=row.serial,
        bus_identity=row.bus_identity,
        command_port=row.command_port,
        data_session_port=row.data_session_port,
        proxy_port=row.proxy_port,
        mapping_status=MappingStatus(row.status),
        network_address=row.network_address,
        signal_level=row.signal_level,
        operator_name=row.operator_name,
        last_seen_at=_aware(row.last_seen_at),
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        missed_scans=row.missed_scans or 0
    )


def _copy_into(row: ModemRecord, modem: Modem) -> None:
    row.bus_identity = modem.bus_identity
    row.command_port = modem.command_port
    row.data_session_port = modem.data_session_port
    row.proxy_port = modem.proxy_port
    row.status = modem.mapping_status.value
    row.network_address = modem.network_address
    row.signal_level = modem.signal_level
    row.operator_name = modem.operator_name
    row.last_seen_at = modem.last_seen_at
    row.created_at = modem.created_at
    row.updated_at = modem.updated_at
    row.missed_scans = modem.missed_scans


def build_engine(url: str, connect_timeout: float = 5.0) -> Engine:
    """
    Create an engine suited to multi-threaded use of the store.

    SQLite connections are shared across threads; an in-memory SQLite
    database uses a single static connection so every session sees it.
    """
    backend = make_url(url).get_backend_name()
    if backend == "sqlite":
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url.rstrip("/") == "sqlite:":
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)

    if backend in ("postgresql", "mysql"):
        return create_engine(
            url,
            pool_pre_ping=True,
            connect_args={"connect_timeout": int(connect_timeout)}
        )

    return create_engine(url, pool_pre_ping=True)


class DatabaseStore(StateStore):
    """
    SQL-backed state store.

    Example:

    .. code-block:: python

        store = DatabaseStore("sqlite:///modemfleet.db")
        store.add_listener(lambda e: print(e.operation.value, e.serial))
        store.upsert(modem)
    """

    mode = StoreMode.DATABASE

    def __init__(
        self,
        url: str,
        proxy: Optional[ProxyConfig] = None,
        absence_threshold: int = 3,
        connect_timeout: float = 5.0,
        engine: Optional[Engine] = None
    ) -> None:
        """
        Connect and make sure the schema exists.

        Args:
            url: SQLAlchemy database URL
            proxy: Proxy port pool settings
            absence_threshold: Consecutive missed scans before deletion
            connect_timeout: Connection timeout in seconds (server databases)
            engine: Pre-built engine (overrides url)

        Raises:
            PersistenceUnavailable: If the database cannot be reached
        """
        super().__init__(proxy=proxy, absence_threshold=absence_threshold)
        self.url = url

        try:
            self._engine = engine or build_engine(url, connect_timeout)
            Base.metadata.create_all(self._engine)
        except (SQLAlchemyError, OSError) as e:
            raise PersistenceUnavailable("Database unavailable", detail=str(e)) from e

        self._sessions = sessionmaker(bind=self._engine, expire_on_commit=False)
        self.channel = NotificationChannel(CHANGE_CHANNEL)

        event.listen(self._sessions, "before_flush", _collect_changes)
        event.listen(self._sessions, "after_commit", self._publish_pending)
        event.listen(self._sessions, "after_rollback", self._discard_pending)

        self.channel.listen(self._on_notification)

        logger.info(f"Connected database store ({self._engine.dialect.name})")

    def _publish_pending(self, session: Session) -> None:
        for payload in session.info.pop(_PENDING_KEY, []):
            self.channel.notify(payload)

    @staticmethod
    def _discard_pending(session: Session) -> None:
        dropped = session.info.pop(_PENDING_KEY, [])
        if dropped:
            logger.debug(f"Rollback discarded {len(dropped)} change notifications")

    def _on_notification(self, payload: str) -> None:
        try:
            change = ChangeEvent.from_payload(payload)
        except ValueError as e:
            logger.warning(f"Ignoring malformed {CHANGE_CHANNEL} payload: {e}")
            return
        self._emit(change)

    def _fail(self, action: str, error: SQLAlchemyError, serial: Optional[str] = None) -> PersistenceUnavailable:
        logger.error(f"Database {action} failed: {error}")
        return PersistenceUnavailable(f"Database {action} failed", serial=serial, detail=str(error))

    def _load(self, serial: str) -> Optional[Modem]:
        try:
            with self._sessions() as session:
                row = session.get(ModemRecord, serial)
                return _to_modem(row) if row else None
        except SQLAlchemyError as e:
            raise self._fail("read", e, serial) from e

    def _load_all(self) -> list[Modem]:
        try:
            with self._sessions() as session:
                rows = session.scalars(select(ModemRecord).order_by(ModemRecord.serial)).all()
                return [_to_modem(row) for row in rows]
        except SQLAlchemyError as e:
            raise self._fail("read", e) from e

    def _assigned_ports(self) -> set[int]:
        try:
            with self._sessions() as session:
                ports = session.scalars(
                    select(ModemRecord.proxy_port).where(ModemRecord.proxy_port.is_not(None))
                ).all()
                return set(ports)
        except SQLAlchemyError as e:
            raise self._fail("read", e) from e

    def _write(self, record: Modem, before: Optional[Modem]) -> None:
        try:
            with self._sessions() as session:
                row = session.get(ModemRecord, record.serial)
                if row is None:
                    row = ModemRecord(serial=record.serial)
                    session.add(row)
                _copy_into(row, record)
                session.commit()
        except SQLAlchemyError as e:
            raise self._fail("write", e, record.serial) from e

    def _remove(self, record: Modem) -> None:
        try:
            with self._sessions() as session:
                row = session.get(ModemRecord, record.serial)
                if row is not None:
                    session.delete(row)
                    session.commit()
        except SQLAlchemyError as e:
            raise self._fail("delete", e, record.serial) from e

    def _append_log(self, entry: CommandLogEntry) -> None:
        try:
            with self._sessions() as session:
                session.add(CommandLogRecord(
                    serial=entry.serial,
                    timestamp=entry.timestamp,
                    command=entry.command,
                    interface=entry.interface.value,
                    response=entry.response,
                    success=entry.success,
                    duration_ms=entry.duration_ms
                ))
                session.commit()
        except SQLAlchemyError as e:
            raise self._fail("audit write", e, entry.serial) from e

    def _read_log(self, serial: Optional[str], limit: int) -> list[CommandLogEntry]:
        query = select(CommandLogRecord).order_by(
            CommandLogRecord.timestamp.desc(), CommandLogRecord.id.desc()
        )
        if serial is not None:
            query = query.where(CommandLogRecord.serial == serial)

        try:
            with self._sessions() as session:
                rows = session.scalars(query.limit(limit)).all()
        except SQLAlchemyError as e:
            raise self._fail("audit read", e, serial) from e

        return [
            CommandLogEntry(
                serial=row.serial,
                command=row.command,
                interface=InterfaceKind(row.interface),
                response=row.response,
                success=row.success,
                duration_ms=row.duration_ms,
                timestamp=_aware(row.timestamp)
            )
            for row in rows
        ]

    def close(self) -> None:
        self._engine.dispose()
        logger.info("Closed database store")
