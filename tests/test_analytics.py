"""Tests for spatial clustering and latest-state tracking."""

import math

import pytest

from dashuav.analytics import (
    analyze,
    cluster_detections,
    haversine_distance_m,
    is_locatable,
    latest_by_entity,
    summarize_cluster,
)
from dashuav.models import Event


def det(event_id, lat, lon, ts=0, category=None):
    payload = {"detection_id": event_id, "lat": lat, "lon": lon}
    if category is not None:
        payload["category"] = category
    return Event(id=event_id, type="detection:new", ts=ts, payload=payload)


def tel(event_id, drone_id, ts, **extra):
    return Event(id=event_id, type="telemetry:update", ts=ts, payload={"drone_id": drone_id, **extra})


class TestHaversine:
    """Great-circle distance."""

    def test_zero_distance(self):
        assert haversine_distance_m(10, 20, 10, 20) == 0

    def test_one_degree_of_latitude(self):
        assert haversine_distance_m(0, 0, 1, 0) == pytest.approx(111_195, rel=1e-3)

    def test_close_points(self):
        assert haversine_distance_m(10, 20, 10.0005, 20.0004) == pytest.approx(70, abs=10)

    def test_non_finite_is_infinite(self):
        assert haversine_distance_m(float("nan"), 0, 0, 0) == math.inf
        assert haversine_distance_m(None, 0, 0, 0) == math.inf


class TestClusterDetections:
    """Connected components over the threshold graph."""

    def test_two_close_points_and_one_far(self):
        detections = [
            det("d1", 10, 20, ts=1000),
            det("d2", 10.0005, 20.0004, ts=2000),
            det("d3", 11, 21, ts=3000),
        ]
        clusters = cluster_detections(detections, 200)
        assert len(clusters) == 1
        assert clusters[0].count == 2
        assert [m.id for m in clusters[0].members] == ["d1", "d2"]

    def test_chaining_joins_transitively(self):
        # ~111m steps along a meridian: A-B and B-C within 150m, A-C ~222m
        a = det("a", 0.0, 0.0)
        b = det("b", 0.001, 0.0)
        c = det("c", 0.002, 0.0)
        assert haversine_distance_m(0.0, 0.0, 0.002, 0.0) > 150

        clusters = cluster_detections([a, c, b], 150)
        assert len(clusters) == 1
        assert clusters[0].count == 3

    def test_unlocatable_entries_are_excluded(self):
        detections = [
            det("d1", 10, 20),
            det("nan", float("nan"), 20),
            Event(id="missing", type="detection:new", ts=0, payload={"detection_id": "missing"}),
            det("d2", 10.0001, 20.0001),
        ]
        clusters = cluster_detections(detections)
        assert len(clusters) == 1
        assert {m.id for m in clusters[0].members} == {"d1", "d2"}

    def test_singletons_are_not_reported(self):
        assert cluster_detections([det("d1", 0, 0), det("d2", 5, 5)]) == []

    def test_empty_input(self):
        assert cluster_detections([]) == []

    def test_sorted_by_size_descending(self):
        detections = [
            det("p1", 0, 0),
            det("p2", 0, 0.0001),
            det("q1", 5, 5),
            det("q2", 5, 5.0001),
            det("q3", 5, 5.0002),
        ]
        clusters = cluster_detections(detections)
        assert [c.count for c in clusters] == [3, 2]

    def test_equal_sizes_keep_discovery_order(self):
        detections = [
            det("p1", 0, 0),
            det("q1", 5, 5),
            det("p2", 0, 0.0001),
            det("q2", 5, 5.0001),
        ]
        clusters = cluster_detections(detections)
        assert [c.members[0].id for c in clusters] == ["p1", "q1"]

    def test_input_is_not_mutated(self):
        detections = [det("d1", 0, 0), det("d2", 0, 0.0001)]
        before = [d.to_dict() for d in detections]
        cluster_detections(detections)
        assert [d.to_dict() for d in detections] == before


class TestSummarizeCluster:
    """Cluster summary fields."""

    def test_centroid_categories_and_primary(self):
        members = [
            det("d1", 10, 20, ts=5, category="UAV"),
            det("d2", 12, 22, ts=9),
            det("d3", 14, 24, ts=7, category="UAV"),
        ]
        summary = summarize_cluster(members)
        assert summary.count == 3
        assert summary.lat == pytest.approx(12)
        assert summary.lon == pytest.approx(22)
        assert summary.categories == {"UAV": 2, "UNKNOWN": 1}
        assert summary.latest_ts == 9
        assert summary.primary.id == "d2"

    def test_primary_tie_keeps_first_seen(self):
        summary = summarize_cluster([det("d1", 0, 0, ts=5), det("d2", 0, 0, ts=5)])
        assert summary.primary.id == "d1"

    def test_empty_cluster_raises(self):
        with pytest.raises(ValueError):
            summarize_cluster([])

    def test_to_dict_shape(self):
        data = summarize_cluster([det("d1", 0, 0, ts=1), det("d2", 0, 0, ts=2)]).to_dict()
        assert set(data) == {"count", "lat", "lon", "categories", "latestTs", "primary", "members"}


class TestLatestByEntity:
    """Per-drone latest state."""

    def test_keeps_newest_per_drone(self):
        events = [
            tel("1", "A", 100),
            tel("2", "B", 50),
            tel("3", "A", 300),
            tel("4", "A", 200),
        ]
        latest = latest_by_entity(events)
        assert set(latest) == {"A", "B"}
        assert latest["A"].id == "3"
        assert latest["B"].id == "2"

    def test_exact_tie_keeps_a_single_winner(self):
        latest = latest_by_entity([tel("1", "A", 100), tel("2", "A", 100)])
        assert len(latest) == 1
        assert latest["A"].id == "2"

    def test_events_without_entity_are_ignored(self):
        events = [Event(id="x", type="telemetry:update", ts=1, payload={})]
        assert latest_by_entity(events) == {}


class TestAnalyze:
    """Aggregate report."""

    def test_handles_empty(self):
        report = analyze([], [])
        assert report.total_telemetry == 0
        assert report.has_speed_samples is False
        assert report.avg_speed == 0
        assert report.clusters == []

    def test_counts_and_speed(self):
        telemetry = [tel("1", "A", 1, speed=10), tel("2", "B", 2, speed=14), tel("3", "A", 3)]
        detections = [det("d1", 0, 0, category="UAV"), det("d2", 0, 0.0001), det("d3", 9, 9, category="UAV")]
        report = analyze(telemetry, detections)

        assert report.unique_drones == 2
        assert report.avg_speed == 12
        assert report.has_speed_samples is True
        assert report.detection_categories == {"UAV": 2, "UNKNOWN": 1}
        assert len(report.clusters) == 1
        assert report.to_dict()["summary"]["totalDetections"] == 3


def test_is_locatable_rejects_booleans():
    assert is_locatable(det("d", True, 0)) is False
