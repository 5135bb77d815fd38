"""Pydantic models for events and the views derived from them."""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

TELEMETRY_PREFIX = "telemetry"
DETECTION_PREFIX = "detection"


class Event(BaseModel):
    """Canonical event flowing through the system.

    Events are immutable once normalized. A newer state of the same logical
    entity arrives as a new Event that shares its identity key.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    type: str
    ts: Union[int, float]
    payload: Dict[str, Any] = Field(default_factory=dict)
    meta: Optional[Dict[str, Any]] = None

    @property
    def timestamp(self) -> Union[int, float]:
        return self.ts

    @property
    def is_telemetry(self) -> bool:
        return self.type.startswith(TELEMETRY_PREFIX)

    @property
    def is_detection(self) -> bool:
        return self.type.startswith(DETECTION_PREFIX)

    def to_dict(self) -> dict:
        """Convert event to dictionary for JSON serialization."""
        data = {
            "id": self.id,
            "type": self.type,
            "ts": self.ts,
            "payload": self.payload,
        }
        if self.meta is not None:
            data["meta"] = self.meta
        return data


class StoreTotals(BaseModel):
    events: int = 0
    telemetry: int = 0
    detections: int = 0


class StoreSummary(BaseModel):
    """Aggregate counts plus the newest telemetry and detection."""

    totals: StoreTotals
    latest_telemetry: Optional[Event] = None
    latest_detection: Optional[Event] = None

    def to_dict(self) -> dict:
        return {
            "totals": self.totals.model_dump(),
            "latestTelemetry": self.latest_telemetry.to_dict() if self.latest_telemetry else None,
            "latestDetection": self.latest_detection.to_dict() if self.latest_detection else None,
        }


class DetectionCluster(BaseModel):
    """Two or more co-located detections."""

    count: int
    lat: float
    lon: float
    categories: Dict[str, int]
    latest_ts: Union[int, float]
    primary: Event
    members: List[Event]

    def to_dict(self) -> dict:
        return {
            "count": self.count,
            "lat": self.lat,
            "lon": self.lon,
            "categories": dict(self.categories),
            "latestTs": self.latest_ts,
            "primary": self.primary.to_dict(),
            "members": [member.to_dict() for member in self.members],
        }


class AnalyticsReport(BaseModel):
    total_telemetry: int
    total_detections: int
    unique_drones: int
    avg_speed: float
    has_speed_samples: bool
    detection_categories: Dict[str, int]
    clusters: List[DetectionCluster]

    def to_dict(self) -> dict:
        return {
            "summary": {
                "totalTelemetry": self.total_telemetry,
                "totalDetections": self.total_detections,
                "uniqueDrones": self.unique_drones,
                "avgSpeed": self.avg_speed,
                "hasSpeedSamples": self.has_speed_samples,
            },
            "detectionCategories": dict(self.detection_categories),
            "overlaps": [cluster.to_dict() for cluster in self.clusters],
        }
