"""Derived views over event snapshots: detection clusters and fleet state.

Everything here is recomputed from a snapshot on demand. Inputs are read only;
results are new structures.
"""

import math
from collections import deque
from typing import Dict, Iterable, List, Optional, Sequence, Union

from .models import AnalyticsReport, DetectionCluster, Event

EARTH_RADIUS_M = 6371000.0
DEFAULT_THRESHOLD_M = 150.0
UNKNOWN_CATEGORY = "UNKNOWN"


def _finite(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def haversine_distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters on a spherical Earth."""
    if not all(_finite(v) for v in (lat1, lon1, lat2, lon2)):
        return math.inf
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(max(0.0, 1 - a)))
    return EARTH_RADIUS_M * c


def is_locatable(event: Event) -> bool:
    return _finite(event.payload.get("lat")) and _finite(event.payload.get("lon"))


def _category(event: Event) -> str:
    category = event.payload.get("category")
    return str(category) if category else UNKNOWN_CATEGORY


def summarize_cluster(members: Sequence[Event]) -> DetectionCluster:
    """
    Summarize a group of co-located detections.

    The centroid is the plain mean of member coordinates, which is close
    enough at cluster scale. ``primary`` is the newest member; the first one
    seen wins a timestamp tie.
    """
    if not members:
        raise ValueError("cannot summarize an empty cluster")

    lat_sum = 0.0
    lon_sum = 0.0
    categories: Dict[str, int] = {}
    primary = members[0]
    latest_ts: Union[int, float] = primary.ts

    for det in members:
        lat_sum += det.payload["lat"]
        lon_sum += det.payload["lon"]
        cat = _category(det)
        categories[cat] = categories.get(cat, 0) + 1
        if det.ts > latest_ts:
            latest_ts = det.ts
            primary = det

    return DetectionCluster(
        count=len(members),
        lat=lat_sum / len(members),
        lon=lon_sum / len(members),
        categories=categories,
        latest_ts=latest_ts,
        primary=primary,
        members=list(members),
    )


def cluster_detections(
    detections: Iterable[Event],
    threshold_m: float = DEFAULT_THRESHOLD_M,
) -> List[DetectionCluster]:
    """
    Group detections into connected components of the threshold graph.

    Two detections are linked when their haversine distance is at most
    ``threshold_m``. Membership is transitive: A-B and B-C close enough puts
    A, B and C in one cluster even if A and C are farther apart than the
    threshold. Unlocatable detections are ignored and components with a
    single member are not reported. Clusters come back largest first; equal
    sizes keep discovery order.
    """
    nodes = [det for det in detections if is_locatable(det)]
    coords = [(det.payload["lat"], det.payload["lon"]) for det in nodes]
    visited = [False] * len(nodes)
    clusters = []

    for seed in range(len(nodes)):
        if visited[seed]:
            continue
        visited[seed] = True
        component = []
        pending = deque([seed])
        while pending:
            idx = pending.popleft()
            component.append(idx)
            lat, lon = coords[idx]
            for other in range(len(nodes)):
                if visited[other]:
                    continue
                if haversine_distance_m(lat, lon, *coords[other]) <= threshold_m:
                    visited[other] = True
                    pending.append(other)

        if len(component) > 1:
            component.sort()
            clusters.append(summarize_cluster([nodes[i] for i in component]))

    clusters.sort(key=lambda cluster: cluster.count, reverse=True)
    return clusters


def latest_by_entity(
    telemetry: Iterable[Event],
    entity_field: str = "drone_id",
) -> Dict[str, Event]:
    """
    Fold a telemetry snapshot into the newest event per entity id.

    On an exact timestamp tie the event later in the input wins.
    """
    latest: Dict[str, Event] = {}
    for event in telemetry:
        entity_id = event.payload.get(entity_field)
        if not entity_id:
            continue
        key = str(entity_id)
        current = latest.get(key)
        if current is None or event.ts >= current.ts:
            latest[key] = event
    return latest


def analyze(
    telemetry: Sequence[Event],
    detections: Sequence[Event],
    threshold_m: Optional[float] = None,
) -> AnalyticsReport:
    """Aggregate counts, mean speed, category histogram and overlap clusters."""
    drones = set()
    speed_sum = 0.0
    speed_count = 0
    for event in telemetry:
        drone_id = event.payload.get("drone_id")
        if drone_id:
            drones.add(str(drone_id))
        speed = event.payload.get("speed")
        if _finite(speed):
            speed_sum += speed
            speed_count += 1

    categories: Dict[str, int] = {}
    for det in detections:
        cat = _category(det)
        categories[cat] = categories.get(cat, 0) + 1

    return AnalyticsReport(
        total_telemetry=len(telemetry),
        total_detections=len(detections),
        unique_drones=len(drones),
        avg_speed=speed_sum / speed_count if speed_count else 0.0,
        has_speed_samples=speed_count > 0,
        detection_categories=categories,
        clusters=cluster_detections(
            detections,
            DEFAULT_THRESHOLD_M if threshold_m is None else threshold_m,
        ),
    )
