"""
In-process state store.

Used when no durable backend is configured or reachable. Records live in a
dict owned by the store; change events are synthesized after each write.
"""

import logging
from collections import deque
from dataclasses import replace
from typing import Deque, Optional

from ..config import ProxyConfig
from ..types import ChangeOperation, CommandLogEntry, Modem, StoreMode
from .base import StateStore

logger = logging.getLogger(__name__)

DEFAULT_LOG_SIZE = 10000


class InMemoryStore(StateStore):
    """Single-writer dict store with the same contract as the durable one."""

    mode = StoreMode.STANDALONE

    def __init__(
        self,
        proxy: Optional[ProxyConfig] = None,
        absence_threshold: int = 3,
        max_log_entries: int = DEFAULT_LOG_SIZE
    ) -> None:
        super().__init__(proxy=proxy, absence_threshold=absence_threshold)
        self._modems: dict[str, Modem] = {}
        self._log: Deque[CommandLogEntry] = deque(maxlen=max_log_entries)
        logger.info("Initialized in-memory state store")

    def _load(self, serial: str) -> Optional[Modem]:
        return self._modems.get(serial)

    def _load_all(self) -> list[Modem]:
        return [self._modems[serial] for serial in sorted(self._modems)]

    def _write(self, record: Modem, before: Optional[Modem]) -> None:
        self._modems[record.serial] = replace(record)
        operation = ChangeOperation.INSERT if before is None else ChangeOperation.UPDATE
        self._emit(self._event(operation, record, before))

    def _remove(self, record: Modem) -> None:
        before = self._modems.pop(record.serial, None)
        if before is not None:
            self._emit(self._event(ChangeOperation.DELETE, record, before))

    def _append_log(self, entry: CommandLogEntry) -> None:
        self._log.append(entry)

    def _read_log(self, serial: Optional[str], limit: int) -> list[CommandLogEntry]:
        entries = [e for e in reversed(self._log) if serial is None or e.serial == serial]
        return entries[:limit]

    def close(self) -> None:
        logger.debug(f"Closing in-memory store ({len(self._modems)} modems)")
