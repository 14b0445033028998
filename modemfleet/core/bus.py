"""
Change notification bus.

Fans change events out to subscribers and keeps the authoritative in-memory
mirror of the last known state of every modem.
"""

import itertools
import logging
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, Optional

from ..types import ChangeEvent, ChangeOperation, ModemSnapshot

logger = logging.getLogger(__name__)

# Type alias for subscriber callbacks
EventCallback = Callable[[ChangeEvent], None]

DEFAULT_QUEUE_SIZE = 1000


class Subscription:
    """
    One subscriber's delivery path.

    Events wait in a bounded FIFO. When the FIFO is full the oldest event is
    dropped (and counted in ``dropped``) so that publishing never waits for
    a slow consumer. Events of the same serial keep their relative order.

    Without a callback the owner pulls events with get()/drain(). With a
    callback a dedicated daemon thread delivers them.
    """

    def __init__(
        self,
        subscription_id: int,
        snapshot: Dict[str, ModemSnapshot],
        max_queue_size: int = DEFAULT_QUEUE_SIZE,
        callback: Optional[EventCallback] = None,
        name: Optional[str] = None
    ) -> None:
        self.id = subscription_id
        self.name = name or f"subscriber-{subscription_id}"
        self.snapshot = snapshot
        self.dropped = 0

        self._queue: Deque[ChangeEvent] = deque(maxlen=max_queue_size)
        self._cond = threading.Condition()
        self._closed = False
        self._callback = callback
        self._thread: Optional[threading.Thread] = None

    def _start(self) -> None:
        if self._callback is None:
            return
        self._thread = threading.Thread(
            target=self._delivery_loop,
            daemon=True,
            name=f"ChangeBus-{self.name}"
        )
        self._thread.start()

    def _offer(self, event: ChangeEvent) -> None:
        """Queue an event without ever waiting on the consumer."""
        with self._cond:
            if self._closed:
                return
            if len(self._queue) == self._queue.maxlen:
                self.dropped += 1
                logger.debug(f"{self.name}: queue full, dropping oldest event")
            self._queue.append(event)
            self._cond.notify()

    def get(self, timeout: Optional[float] = None) -> Optional[ChangeEvent]:
        """
        Pop the oldest pending event.

        Args:
            timeout: Seconds to wait for an event (None waits forever)

        Returns:
            The event, or None on timeout or after close()
        """
        with self._cond:
            self._cond.wait_for(lambda: self._queue or self._closed, timeout=timeout)
            if self._queue:
                return self._queue.popleft()
            return None

    def drain(self) -> list[ChangeEvent]:
        """Pop every pending event (oldest first)."""
        with self._cond:
            events = list(self._queue)
            self._queue.clear()
            return events

    def pending(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Stop delivery. Pending events are discarded."""
        with self._cond:
            self._closed = True
            self._queue.clear()
            self._cond.notify_all()

        thread = self._thread
        if thread and thread is not threading.current_thread():
            thread.join(timeout=1.0)
            if thread.is_alive():
                logger.warning(f"{self.name}: delivery thread did not stop in time")

    def _delivery_loop(self) -> None:
        logger.debug(f"{self.name}: delivery thread started")

        while True:
            event = self.get()
            if event is None:
                break

            try:
                self._callback(event)
            except Exception as e:
                logger.error(f"{self.name}: callback failed for {event.serial}: {e}", exc_info=True)

        logger.debug(f"{self.name}: delivery thread stopped")


class ChangeBus:
    """
    Publish/subscribe hub for modem change events.

    Features:
    - Bounded per-subscriber queues, drop-oldest on overflow
    - Non-blocking publish
    - Mirror of the last known state per serial, handed to new subscribers
      as a snapshot taken atomically with their registration
    """

    def __init__(self, max_queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._max_queue_size = max_queue_size
        self._lock = threading.Lock()
        self._subscriptions: Dict[int, Subscription] = {}
        self._mirror: Dict[str, ModemSnapshot] = {}
        self._ids = itertools.count(1)
        self._published = 0

        logger.info(f"Initialized change bus (max_queue_size={max_queue_size})")

    def subscribe(
        self,
        callback: Optional[EventCallback] = None,
        max_queue_size: Optional[int] = None,
        name: Optional[str] = None
    ) -> Subscription:
        """
        Register a subscriber.

        Args:
            callback: Called for every event on a dedicated thread.
                      Signature: callback(event: ChangeEvent) -> None.
                      Omit it to pull events with Subscription.get().
            max_queue_size: Per-subscriber queue bound (default: bus setting)
            name: Label used in logs

        Returns:
            Subscription handle; its ``snapshot`` holds the mirror as of
            registration, and every later event is queued on it
        """
        with self._lock:
            subscription = Subscription(
                subscription_id=next(self._ids),
                snapshot=dict(self._mirror),
                max_queue_size=max_queue_size or self._max_queue_size,
                callback=callback,
                name=name
            )
            self._subscriptions[subscription.id] = subscription

        subscription._start()
        logger.info(f"Subscribed {subscription.name} ({len(subscription.snapshot)} modems in snapshot)")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        """
        Remove a subscriber and stop its delivery.

        Returns:
            True if the subscription was registered
        """
        with self._lock:
            removed = self._subscriptions.pop(subscription.id, None)

        subscription.close()

        if removed is None:
            return False
        logger.info(f"Unsubscribed {subscription.name} (dropped={subscription.dropped})")
        return True

    def publish(self, event: ChangeEvent) -> None:
        """
        Update the mirror and queue the event for every subscriber.

        Never waits on a subscriber.
        """
        logger.debug(f"Publishing {event.operation.value} for {event.serial}")

        with self._lock:
            self._apply_to_mirror(event)
            self._published += 1
            for subscription in self._subscriptions.values():
                subscription._offer(event)

    def _apply_to_mirror(self, event: ChangeEvent) -> None:
        if event.operation is ChangeOperation.DELETE:
            self._mirror.pop(event.serial, None)
            return

        self._mirror[event.serial] = ModemSnapshot(
            serial=event.serial,
            status=event.after_status,
            proxy_port=event.proxy_port,
            command_port=event.command_port,
            updated_at=datetime.now(timezone.utc)
        )

    def snapshot(self) -> Dict[str, ModemSnapshot]:
        """Copy of the mirror."""
        with self._lock:
            return dict(self._mirror)

    def get(self, serial: str) -> Optional[ModemSnapshot]:
        with self._lock:
            return self._mirror.get(serial)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    @property
    def published_count(self) -> int:
        return self._published

    def close(self) -> None:
        """Unsubscribe everybody."""
        with self._lock:
            subscriptions = list(self._subscriptions.values())
            self._subscriptions.clear()

        for subscription in subscriptions:
            subscription.close()
        logger.info(f"Closed change bus ({len(subscriptions)} subscribers)")
