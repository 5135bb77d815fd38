"""DashUAV event core: ingestion, bounded storage, fan-out and analytics."""

from .config import Settings
from .dedup import EventBuffer, event_key
from .models import DetectionCluster, Event
from .normalize import normalize_event, normalize_many
from .store import EventStore

__version__ = "1.0.0"

__all__ = [
    "DetectionCluster",
    "Event",
    "EventBuffer",
    "EventStore",
    "Settings",
    "event_key",
    "normalize_event",
    "normalize_many",
]
