"""In-process publish/subscribe hub.

This module provides:
- BusEvent: Value delivered to subscribers
- EventBus: Topic based hub with a background dispatcher thread
- Topic constants used by the pools, the import engine and the poller

Publishing never blocks the publisher: events are queued and delivered
by a dispatcher thread. Progress topics are coalesced per key, so a slow
subscriber only sees the latest progress of each job.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

UPLOAD_PROGRESS = "upload.progress"
UPLOAD_QUEUE = "upload.queue"
DOWNLOAD_PROGRESS = "download.progress"
DOWNLOAD_QUEUE = "download.queue"
DOWNLOAD_HWM = "download.hwm"
IMPORT_PROGRESS = "import.progress"
IMPORT_LOG = "import.log"
IMPORT_COMPLETED = "import.completed"
IMPORT_ERROR = "import.error"
IMPORT_CANCELLED = "import.cancelled"
SERVICE_TEST = "service.test"
AUTH_INVALID = "auth.invalid"
AUTH_REFRESHED = "auth.refreshed"

ALL_TOPICS = "*"

COALESCED_TOPICS = frozenset({UPLOAD_PROGRESS, DOWNLOAD_PROGRESS, IMPORT_PROGRESS})


@dataclass(frozen=True)
class BusEvent:
    """An event as seen by subscribers.

    Attributes:
        topic: Topic the event was published on.
        data: Event payload (each subscriber gets its own copy).
        timestamp: Unix timestamp of the publication.
    """

    topic: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def copy(self) -> BusEvent:
        """Get an independent copy of this event."""
        return BusEvent(self.topic, copy.deepcopy(self.data), self.timestamp)


Subscriber = Callable[[BusEvent], None]


@dataclass
class _Slot:
    event: BusEvent
    key: tuple[str, str] | None = None


class EventBus:
    """Publish/subscribe hub.

    Usage:
        bus = EventBus()
        unsubscribe = bus.subscribe("upload.progress", on_progress)
        bus.publish("upload.progress", coalesce_key=job_id, bytes_done=10, bytes_total=20)
        ...
        unsubscribe()
        bus.close()

    With ``synchronous=True`` events are delivered inline by publish(),
    which keeps command-line runs deterministic.
    """

    def __init__(self, synchronous: bool = False, max_pending: int = 10_000) -> None:
        """Initialize the bus.

        Args:
            synchronous: Deliver events from the publishing thread.
            max_pending: Queue bound; beyond it the oldest progress events are dropped.
        """
        self._synchronous = synchronous
        self._max_pending = max_pending
        self._lock = threading.RLock()
        self._not_empty = threading.Condition(self._lock)
        self._idle = threading.Condition(self._lock)
        self._subscribers: dict[str, list[Subscriber]] = {}
        self._pending: deque[_Slot] = deque()
        self._coalesced: dict[tuple[str, str], _Slot] = {}
        self._dispatching = False
        self._thread: threading.Thread | None = None
        self._closed = False
        self._dropped = 0

    def subscribe(self, topic: str, callback: Subscriber) -> Callable[[], None]:
        """Register a subscriber.

        Args:
            topic: Topic name, or "*" for every topic.
            callback: Called with a copy of each event.

        Returns:
            Function that removes the subscription.
        """
        with self._lock:
            self._subscribers.setdefault(topic, []).append(callback)

        def unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(topic, [])
                if callback in callbacks:
                    callbacks.remove(callback)

        return unsubscribe

    def publish(self, topic: str, coalesce_key: str | None = None, **data: Any) -> None:
        """Publish an event without blocking.

        Args:
            topic: Topic name.
            coalesce_key: Coalescing key for progress topics (e.g., a job id).
            **data: Event payload.
        """
        event = BusEvent(topic=topic, data=data)

        if self._synchronous:
            self._deliver(event)
            return

        with self._lock:
            if self._closed:
                return

            lossy = topic in COALESCED_TOPICS
            slot_key = (topic, coalesce_key) if coalesce_key is not None and lossy else None
            if slot_key is not None and slot_key in self._coalesced:
                # Replace the payload in place; its position in the queue is kept
                self._coalesced[slot_key].event = event
                return

            if len(self._pending) >= self._max_pending and not self._drop_oldest_progress():
                if lossy:
                    self._note_dropped()
                    return
                # Only progress may be lost; other topics are queued past the bound

            slot = _Slot(event=event, key=slot_key)
            self._pending.append(slot)
            if slot_key is not None:
                self._coalesced[slot_key] = slot

            self._ensure_dispatcher()
            self._not_empty.notify()

    def _drop_oldest_progress(self) -> bool:
        """Discard the oldest queued progress event (lock held).

        Returns:
            False if no progress event is queued.
        """
        for index, slot in enumerate(self._pending):
            if slot.event.topic in COALESCED_TOPICS:
                del self._pending[index]
                if slot.key is not None:
                    self._coalesced.pop(slot.key, None)
                self._note_dropped()
                return True
        return False

    def _note_dropped(self) -> None:
        self._dropped += 1
        if self._dropped % 1000 == 1:
            logger.warning("Event bus overloaded, dropped %d progress events", self._dropped)

    def flush(self, timeout: float | None = 5.0) -> bool:
        """Wait until every queued event has been delivered.

        Args:
            timeout: Maximum seconds to wait (None = wait forever).

        Returns:
            True if the queue drained, False on timeout.
        """
        if self._synchronous:
            return True
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._idle:
            while self._pending or self._dispatching:
                if deadline is None:
                    self._idle.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._idle.wait(timeout=remaining)
            return True

    def close(self, timeout: float = 2.0) -> None:
        """Deliver what is queued and stop the dispatcher thread."""
        self.flush(timeout=timeout)
        with self._lock:
            self._closed = True
            self._not_empty.notify_all()
            thread = self._thread
        if thread is not None:
            thread.join(timeout=timeout)
        logger.debug("Event bus closed")

    def _ensure_dispatcher(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(
            target=self._dispatch_loop,
            name="EventBus",
            daemon=True,
        )
        self._thread.start()

    def _dispatch_loop(self) -> None:
        while True:
            with self._not_empty:
                while not self._pending and not self._closed:
                    self._not_empty.wait()
                if not self._pending:
                    return
                slot = self._pending.popleft()
                if slot.key is not None:
                    self._coalesced.pop(slot.key, None)
                self._dispatching = True

            try:
                self._deliver(slot.event)
            finally:
                with self._lock:
                    self._dispatching = False
                    if not self._pending:
                        self._idle.notify_all()

    def _deliver(self, event: BusEvent) -> None:
        with self._lock:
            callbacks = [
                *self._subscribers.get(event.topic, []),
                *self._subscribers.get(ALL_TOPICS, []),
            ]
        for callback in callbacks:
            try:
                callback(event.copy())
            except Exception:
                logger.exception("Subscriber failed for %s", event.topic)
