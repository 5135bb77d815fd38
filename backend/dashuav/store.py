"""Bounded in-memory event store.

Three independently capped collections (all events, telemetry, detections)
with append-and-evict-oldest semantics. The store is the single writer for its
collections; every ingest runs to completion, fan-out included, under one lock.
"""

import logging
import threading
from collections import deque
from typing import Any, Callable, Deque, Iterator, List, Optional, Union

from .config import Settings
from .models import Event, StoreSummary, StoreTotals
from .normalize import normalize_many

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = 200

AcceptCallback = Callable[[Event], None]


def clamp_limit(limit: Optional[int], capacity: int, default: int) -> int:
    """Resolve a caller-supplied window size to ``[1, capacity]``."""
    if limit is None:
        return max(1, min(default, capacity))
    return min(max(int(limit), 1), capacity)


class BoundedList:
    """Ordered collection that drops its oldest entries past ``capacity``."""

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError("capacity must be a positive integer")
        self.capacity = capacity
        self._items: Deque[Event] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Event]:
        return iter(list(self._items))

    def append(self, item: Event) -> None:
        self._items.append(item)

    def tail(self, count: int) -> List[Event]:
        """Return the newest ``count`` entries, oldest first."""
        if count <= 0:
            return []
        size = len(self._items)
        if count >= size:
            return list(self._items)
        return [self._items[i] for i in range(size - count, size)]

    def latest(self) -> Optional[Event]:
        return self._items[-1] if self._items else None

    def snapshot(self) -> List[Event]:
        return list(self._items)

    def clear(self) -> None:
        self._items.clear()


class EventStore:
    """Server-side authority for recently accepted events."""

    def __init__(self, settings: Settings, on_accept: Optional[AcceptCallback] = None):
        self.settings = settings
        self.events = BoundedList(settings.max_events)
        self.telemetry = BoundedList(settings.max_telemetry)
        self.detections = BoundedList(settings.max_detections)
        self._on_accept = on_accept
        self._lock = threading.RLock()

    @property
    def lock(self):
        """Writer lock; hold it to pair a read with registration of a new reader."""
        return self._lock

    def set_on_accept(self, callback: Optional[AcceptCallback]) -> None:
        with self._lock:
            self._on_accept = callback

    def ingest(self, event: Optional[Event]) -> bool:
        """Store a normalized event and hand it to the broadcast hook."""
        if event is None:
            return False

        with self._lock:
            self.events.append(event)
            if event.is_telemetry:
                self.telemetry.append(event)
            elif event.is_detection:
                self.detections.append(event)

            if self._on_accept is not None:
                try:
                    self._on_accept(event)
                except Exception:
                    logger.exception("[Store] broadcast hook failed for event %s", event.id)
        return True

    def ingest_many(self, raw: Any, fallback_type: Optional[str] = None) -> int:
        """Normalize a raw record or list of records and ingest what survives."""
        accepted = 0
        for event in normalize_many(raw, fallback_type):
            if self.ingest(event):
                accepted += 1
        return accepted

    def list_events(
        self,
        since: Optional[Union[int, float]] = None,
        limit: Optional[int] = None,
    ) -> List[Event]:
        """
        Most recent events, oldest first.

        ``since`` keeps only events strictly newer than the given timestamp.
        """
        effective = clamp_limit(limit, self.settings.max_events, self.settings.default_event_limit)
        with self._lock:
            events = self.events.snapshot()
        if since is not None:
            events = [event for event in events if event.ts > since]
        return events[-effective:]

    def list_telemetry(self, limit: Optional[int] = None) -> List[Event]:
        effective = clamp_limit(limit, self.telemetry.capacity, DEFAULT_WINDOW)
        with self._lock:
            return self.telemetry.tail(effective)

    def list_detections(self, limit: Optional[int] = None) -> List[Event]:
        effective = clamp_limit(limit, self.detections.capacity, DEFAULT_WINDOW)
        with self._lock:
            return self.detections.tail(effective)

    def recent(self, count: int) -> List[Event]:
        """Catch-up window for a newly connected subscriber."""
        with self._lock:
            return self.events.tail(count)

    def summary(self) -> StoreSummary:
        with self._lock:
            return StoreSummary(
                totals=StoreTotals(
                    events=len(self.events),
                    telemetry=len(self.telemetry),
                    detections=len(self.detections),
                ),
                latest_telemetry=self.telemetry.latest(),
                latest_detection=self.detections.latest(),
            )

    def clear(self) -> None:
        with self._lock:
            self.events.clear()
            self.telemetry.clear()
            self.detections.clear()
