"""Deduplication logic for inbound events.

Events describing the same logical entity share an identity key. The
:class:`EventBuffer` keeps at most one visible entry per key in a capped feed.
"""

import math
import threading
from collections import OrderedDict
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from .models import Event
from .normalize import normalize_event

TIME_BUCKET_MS = 250
DEFAULT_FEED_CAPACITY = 400
DEFAULT_INDEX_CAPACITY = 2000

SIGNATURE_FIELDS = ("lat", "lon", "alt", "heading", "speed", "battery", "status")


def compute_time_bucket(ts: Union[int, float], bucket_ms: int = TIME_BUCKET_MS) -> int:
    """Compute the coarse time bucket a timestamp falls into."""
    return int(math.floor(ts / bucket_ms))


def event_key(event: Event, bucket_ms: int = TIME_BUCKET_MS) -> str:
    """
    Compute the logical identity key of an event.

    Detections key on ``detection_id``. Telemetry keys on ``drone_id`` plus a
    time bucket, so near-simultaneous updates from one vehicle share a slot.
    Anything else keys on the event id.
    """
    payload = event.payload
    if event.is_detection and payload.get("detection_id"):
        return f"det:{payload['detection_id']}"
    if event.is_telemetry and payload.get("drone_id"):
        bucket = compute_time_bucket(event.ts, bucket_ms)
        return f"tel:{payload['drone_id']}:{bucket}"
    if event.id:
        return f"evt:{event.id}"
    return f"evt:{event.type}:{event.ts}"


def telemetry_signature(event: Event) -> str:
    """Rounded signature of the fields that make a telemetry state visibly different."""
    parts = []
    for name in SIGNATURE_FIELDS:
        value = event.payload.get(name)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            parts.append(str(round(value * 1e6)) if math.isfinite(value) else str(value))
        elif value is None:
            parts.append("0")
        else:
            parts.append(str(value))
    return "|".join(parts)


class LRUIndex:
    """Key -> latest Event map that forgets its oldest key past capacity."""

    def __init__(self, capacity: int = DEFAULT_INDEX_CAPACITY):
        self.capacity = max(1, int(capacity))
        self._items: "OrderedDict[str, Event]" = OrderedDict()

    def __contains__(self, key: str) -> bool:
        return key in self._items

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)

    def get(self, key: str) -> Optional[Event]:
        return self._items.get(key)

    def set(self, key: str, value: Event) -> None:
        # Overwriting keeps the key's original position
        self._items[key] = value
        while len(self._items) > self.capacity:
            self._items.popitem(last=False)

    def clear(self) -> None:
        self._items.clear()


class EventBuffer:
    """
    Consumer-side buffer pairing an identity index with a capped feed.

    ``push`` may be called at any cadence (e.g. from a network callback);
    ``snapshot`` is meant to be polled on a fixed period so that bursts of
    pushes collapse into one downstream recomputation.
    """

    def __init__(
        self,
        cap_feed: int = DEFAULT_FEED_CAPACITY,
        cap_index: int = DEFAULT_INDEX_CAPACITY,
        bucket_ms: int = TIME_BUCKET_MS,
        fallback_type: Optional[str] = None,
    ):
        self.cap_feed = max(1, int(cap_feed))
        self.bucket_ms = bucket_ms
        self.fallback_type = fallback_type
        self._index = LRUIndex(cap_index)
        self._feed: List[Event] = []
        self._signatures: Dict[str, str] = {}
        self._lock = threading.Lock()
        self.version = 0

    def __len__(self) -> int:
        return len(self._feed)

    def key_of(self, event: Event) -> str:
        return event_key(event, self.bucket_ms)

    def _normalize(self, raw: Any) -> Optional[Event]:
        return normalize_event(raw, self.fallback_type)

    def _insert(self, event: Event) -> bool:
        key = self.key_of(event)
        with self._lock:
            self.version += 1
            if key in self._index:
                self._index.set(key, event)
                return False
            self._index.set(key, event)
            self._feed.append(event)
            overflow = len(self._feed) - self.cap_feed
            if overflow > 0:
                del self._feed[:overflow]
            return True

    def push(self, raw: Any) -> bool:
        """
        Add a record to the buffer.

        Returns True when the record took a new feed slot, False when it only
        refreshed an existing key or was rejected as malformed.
        """
        event = self._normalize(raw)
        if event is None:
            return False
        return self._insert(event)

    def push_telemetry(self, raw: Any) -> bool:
        """
        Push a telemetry record like :meth:`push`.

        The record is always keyed into the buffer, so a hovering drone keeps
        one slot per time bucket. The return value reports whether the drone's
        rounded state changed since its previous record; an exact repeat
        returns False so callers can leave their position trail untouched.
        """
        event = self._normalize(raw)
        if event is None:
            return False
        drone_id = event.payload.get("drone_id")
        if not drone_id:
            return False

        signature = telemetry_signature(event)
        with self._lock:
            repeated = self._signatures.get(drone_id) == signature
            self._signatures[drone_id] = signature
        self._insert(event)
        return not repeated

    def latest(self, key: str) -> Optional[Event]:
        with self._lock:
            return self._index.get(key)

    def _dedupe(self, feed: List[Event]) -> List[Event]:
        seen = set()
        out = []
        for event in reversed(feed):
            key = self.key_of(event)
            if key in seen:
                continue
            seen.add(key)
            out.append(event)
        out.reverse()
        return out

    def snapshot(self) -> List[Event]:
        """Feed contents with at most one (the newest) entry per key, oldest first."""
        with self._lock:
            feed = list(self._feed)
        return self._dedupe(feed)

    def snapshot_with_version(self) -> Tuple[int, List[Event]]:
        with self._lock:
            version, feed = self.version, list(self._feed)
        return version, self._dedupe(feed)

    def clear(self) -> None:
        with self._lock:
            self._index.clear()
            self._feed.clear()
            self._signatures.clear()
            self.version += 1
