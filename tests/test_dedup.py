"""Tests for identity keys and the deduplicating buffer."""

import random

import pytest

from dashuav.dedup import EventBuffer, LRUIndex, compute_time_bucket, event_key, telemetry_signature
from dashuav.models import Event


def telemetry(drone_id, ts, event_id=None, **extra):
    payload = {"drone_id": drone_id, **extra}
    return {"id": event_id or f"{drone_id}-{ts}", "type": "telemetry:update", "ts": ts, "payload": payload}


def detection(detection_id, ts, event_id=None, **extra):
    payload = {"detection_id": detection_id, **extra}
    return {"id": event_id or f"{detection_id}-{ts}", "type": "detection:new", "ts": ts, "payload": payload}


class TestEventKey:
    """Logical identity keys."""

    def test_detection_uses_detection_id(self):
        event = Event(id="x", ts=1, type="detection:new", payload={"detection_id": "D1"})
        assert event_key(event) == "det:D1"

    def test_telemetry_is_bucketed(self):
        event = Event(id="y", ts=1000, type="telemetry:update", payload={"drone_id": "B"})
        assert event_key(event) == "tel:B:4"

    def test_telemetry_within_bucket_shares_key(self):
        first = Event(id="1", ts=1000, type="telemetry:update", payload={"drone_id": "B"})
        second = Event(id="2", ts=1249, type="telemetry:update", payload={"drone_id": "B"})
        third = Event(id="3", ts=1250, type="telemetry:update", payload={"drone_id": "B"})
        assert event_key(first) == event_key(second)
        assert event_key(first) != event_key(third)

    def test_custom_bucket_width(self):
        event = Event(id="y", ts=1000, type="telemetry:update", payload={"drone_id": "B"})
        assert event_key(event, bucket_ms=1000) == "tel:B:1"

    def test_fallback_to_id(self):
        event = Event(id="z", ts=5, type="system:ready")
        assert event_key(event) == "evt:z"

    def test_fallback_to_type_and_ts(self):
        event = Event(id="", ts=5, type="system:ready")
        assert event_key(event) == "evt:system:ready:5"

    def test_detection_without_id_falls_back(self):
        event = Event(id="q", ts=5, type="detection:new", payload={})
        assert event_key(event) == "evt:q"

    def test_time_bucket_floors(self):
        assert compute_time_bucket(249) == 0
        assert compute_time_bucket(250) == 1
        assert compute_time_bucket(-1) == -1


class TestLRUIndex:
    """Capacity-bounded identity index."""

    def test_evicts_oldest_key(self):
        index = LRUIndex(2)
        a, b, c = (Event(id=i, type="t", ts=1) for i in "abc")
        index.set("a", a)
        index.set("b", b)
        index.set("c", c)
        assert "a" not in index
        assert list(index) == ["b", "c"]

    def test_overwrite_keeps_position(self):
        index = LRUIndex(2)
        index.set("a", Event(id="1", type="t", ts=1))
        index.set("b", Event(id="2", type="t", ts=1))
        index.set("a", Event(id="3", type="t", ts=1))
        index.set("c", Event(id="4", type="t", ts=1))
        assert "a" not in index
        assert list(index) == ["b", "c"]


class TestEventBuffer:
    """Push/snapshot semantics."""

    def test_rejects_malformed(self):
        buffer = EventBuffer()
        assert buffer.push(None) is False
        assert buffer.push({"payload": {}}) is False
        assert len(buffer) == 0

    def test_fallback_type_lets_untyped_records_in(self):
        buffer = EventBuffer(fallback_type="detection:new")
        assert buffer.push({"payload": {"detection_id": "D1"}}) is True

    def test_repeat_key_does_not_grow_feed(self):
        buffer = EventBuffer()
        assert buffer.push(detection("D1", 1000)) is True
        assert buffer.push(detection("D1", 2000, event_id="other")) is False
        assert len(buffer) == 1

    def test_repeat_key_refreshes_index(self):
        buffer = EventBuffer()
        buffer.push(detection("D1", 1000, confidence=0.5))
        buffer.push(detection("D1", 2000, confidence=0.9))
        assert buffer.latest("det:D1").payload["confidence"] == 0.9

    def test_feed_is_capped(self):
        buffer = EventBuffer(cap_feed=3)
        for i in range(10):
            buffer.push(detection(f"D{i}", i))
        assert len(buffer) == 3
        assert [e.payload["detection_id"] for e in buffer.snapshot()] == ["D7", "D8", "D9"]

    def test_snapshot_drops_shadow_entries_after_index_eviction(self):
        buffer = EventBuffer(cap_feed=10, cap_index=1)
        buffer.push(detection("D1", 1))
        buffer.push(detection("D2", 2))  # evicts det:D1 from the index
        buffer.push(detection("D1", 3))  # re-enters the feed as a new slot

        assert len(buffer) == 3
        snapshot = buffer.snapshot()
        assert [e.payload["detection_id"] for e in snapshot] == ["D2", "D1"]
        assert snapshot[-1].ts == 3

    def test_snapshot_is_chronological(self):
        buffer = EventBuffer()
        buffer.push(telemetry("A", 0))
        buffer.push(detection("D1", 100))
        buffer.push(telemetry("A", 1000))
        assert [e.ts for e in buffer.snapshot()] == [0, 100, 1000]

    def test_snapshot_never_has_duplicate_keys(self):
        rng = random.Random(7)
        buffer = EventBuffer(cap_feed=25, cap_index=15)
        for step in range(2000):
            if rng.random() < 0.5:
                buffer.push(detection(f"D{rng.randint(0, 40)}", step))
            else:
                buffer.push(telemetry(f"T{rng.randint(0, 3)}", step * 37))
            keys = [buffer.key_of(e) for e in buffer.snapshot()]
            assert len(keys) == len(set(keys))
            assert len(buffer) <= 25

    def test_version_changes_on_push(self):
        buffer = EventBuffer()
        before, _ = buffer.snapshot_with_version()
        buffer.push(detection("D1", 1))
        after, events = buffer.snapshot_with_version()
        assert after > before
        assert len(events) == 1

    def test_clear(self):
        buffer = EventBuffer()
        buffer.push(detection("D1", 1))
        buffer.clear()
        assert len(buffer) == 0
        assert buffer.latest("det:D1") is None


class TestTelemetrySignature:
    """Suppression of visually identical telemetry."""

    def test_signature_rounds_small_noise(self):
        a = Event(id="1", type="telemetry:update", ts=1, payload={"lat": 1.00000001, "lon": 2})
        b = Event(id="2", type="telemetry:update", ts=2, payload={"lat": 1.00000002, "lon": 2})
        assert telemetry_signature(a) == telemetry_signature(b)

    def test_identical_state_reports_no_change(self):
        buffer = EventBuffer()
        assert buffer.push_telemetry(telemetry("A", 0, lat=1, lon=2)) is True
        assert buffer.push_telemetry(telemetry("A", 100, lat=1, lon=2)) is False
        assert len(buffer) == 1
        assert buffer.latest("tel:A:0").ts == 100

    def test_hovering_drone_keeps_one_slot_per_bucket(self):
        """A stationary drone crossing a bucket boundary is still recorded."""
        buffer = EventBuffer()
        buffer.push_telemetry(telemetry("A", 1000, lat=1, lon=2))
        assert buffer.push_telemetry(telemetry("A", 5000, lat=1, lon=2)) is False

        assert buffer.latest("tel:A:20").ts == 5000
        assert [e.ts for e in buffer.snapshot()] == [1000, 5000]

    def test_changed_state_is_appended(self):
        buffer = EventBuffer()
        buffer.push_telemetry(telemetry("A", 0, lat=1, lon=2))
        assert buffer.push_telemetry(telemetry("A", 5000, lat=1.1, lon=2)) is True
        assert len(buffer) == 2

    @pytest.mark.parametrize("raw", [None, {"type": "telemetry:update", "payload": {}}])
    def test_records_without_drone_are_ignored(self, raw):
        assert EventBuffer().push_telemetry(raw) is False
