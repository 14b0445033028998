"""
State store facade.

Two backends with the same contract:
- DatabaseStore: SQLAlchemy, durable, events from ORM session hooks
- InMemoryStore: in-process fallback (standalone mode)
"""

import logging
from typing import Optional

from ..config import FleetConfig
from ..exceptions import PersistenceUnavailable
from .base import ChangeListener, StateStore
from .database import CHANGE_CHANNEL, DatabaseStore
from .memory import InMemoryStore

logger = logging.getLogger(__name__)


def open_store(
    config: Optional[FleetConfig] = None,
    on_change: Optional[ChangeListener] = None
) -> StateStore:
    """
    Select the state store backend once at start-up.

    Tries the configured database first; an unreachable database is logged
    and replaced by the in-process store.

    Args:
        config: Fleet configuration (defaults apply if None)
        on_change: Listener registered on the chosen backend

    Returns:
        The active store; check ``store.mode`` to see which one
    """
    config = config or FleetConfig()
    threshold = config.detection.absence_threshold
    store: StateStore

    if config.store.database_url:
        try:
            store = DatabaseStore(
                config.store.database_url,
                proxy=config.proxy,
                absence_threshold=threshold,
                connect_timeout=config.store.connect_timeout
            )
        except PersistenceUnavailable as e:
            logger.warning(f"Falling back to standalone mode: {e}")
            store = InMemoryStore(proxy=config.proxy, absence_threshold=threshold)
    else:
        logger.info("No database configured, running standalone")
        store = InMemoryStore(proxy=config.proxy, absence_threshold=threshold)

    if on_change is not None:
        store.add_listener(on_change)

    return store


__all__ = [
    "open_store",
    "StateStore",
    "ChangeListener",
    "DatabaseStore",
    "InMemoryStore",
    "CHANGE_CHANNEL",
]
