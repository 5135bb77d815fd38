#!/usr/bin/env python3
"""
Simulator for generating mock drone telemetry and sensor detections.

Generates:
- telemetry:update events for one drone flying along a route
  (lat/lon linearly interpolated from route.json, or a default loop)
- detection:new events near the drone, at a configurable rate
"""

import argparse
import json
import math
import os
import random
import sys
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import requests

from .poller import create_session_with_retry

# Bangkok city center, default operating area
DEFAULT_CENTER = {"lat": 13.7563, "lon": 100.5018}
DETECTION_SPREAD = 0.008  # degrees, roughly 900m
CATEGORIES = ["UAV", "UNKNOWN", "BIRD", "VEHICLE"]
SOURCES = ["CAM-A1", "CAM-B2", "RADAR-1"]


def generate_default_route(
    center: Optional[Dict[str, float]] = None,
    num_points: int = 100,
) -> List[Dict[str, float]]:
    """Generate a default circular route around the operating area center."""
    center = center or DEFAULT_CENTER
    radius = 0.01  # roughly 1km

    route = []
    for i in range(num_points):
        angle = 2 * math.pi * i / num_points
        lat = center["lat"] + radius * math.sin(angle)
        lon = center["lon"] + radius * math.cos(angle)
        route.append({"lat": lat, "lon": lon})

    return route


def load_route(route_path: Optional[Path]) -> List[Dict[str, float]]:
    """Load route from JSON file."""
    if route_path is not None and route_path.exists():
        with open(route_path, "r", encoding="utf-8") as f:
            return json.load(f)
    print(f"Route file not found at {route_path}, generating default route...")
    return generate_default_route()


def interpolate_position(
    route: List[Dict[str, float]],
    progress: float,
) -> Tuple[float, float]:
    """
    Interpolate position along the route based on progress (0.0 to 1.0).
    """
    if not route:
        return DEFAULT_CENTER["lat"], DEFAULT_CENTER["lon"]

    progress = max(0.0, min(1.0, progress))

    total_segments = len(route) - 1
    if total_segments <= 0:
        return route[0]["lat"], route[0]["lon"]

    exact_position = progress * total_segments
    segment_index = int(exact_position)
    segment_progress = exact_position - segment_index

    if segment_index >= total_segments:
        return route[-1]["lat"], route[-1]["lon"]

    p1 = route[segment_index]
    p2 = route[segment_index + 1]

    lat = p1["lat"] + (p2["lat"] - p1["lat"]) * segment_progress
    lon = p1["lon"] + (p2["lon"] - p1["lon"]) * segment_progress

    return lat, lon


def make_telemetry(
    drone_id: str,
    lat: float,
    lon: float,
    t: int,
    ts: Optional[int] = None,
) -> Dict[str, Any]:
    """Create a telemetry:update event for a drone at step ``t``."""
    return {
        "id": str(uuid.uuid4()),
        "ts": ts if ts is not None else int(time.time() * 1000),
        "type": "telemetry:update",
        "payload": {
            "drone_id": drone_id,
            "lat": round(lat, 6),
            "lon": round(lon, 6),
            "alt": round(120 + math.sin(t / 10) * 5, 2),
            "heading": (t * 12) % 360,
            "speed": round(12 + math.cos(t / 15) * 2, 2),
            "battery": max(0, 86 - t // 30),
            "status": "in-flight",
        },
    }


def make_detection(
    lat: float,
    lon: float,
    spread: float = DETECTION_SPREAD,
    ts: Optional[int] = None,
) -> Dict[str, Any]:
    """Create a detection:new event somewhere near (lat, lon)."""
    detection_id = str(uuid.uuid4())
    return {
        "id": str(uuid.uuid4()),
        "ts": ts if ts is not None else int(time.time() * 1000),
        "type": "detection:new",
        "payload": {
            "detection_id": detection_id,
            "source": random.choice(SOURCES),
            "lat": round(lat + random.uniform(-spread, spread), 6),
            "lon": round(lon + random.uniform(-spread, spread), 6),
            "category": random.choice(CATEGORIES),
            "confidence": round(random.uniform(0.75, 0.95), 2),
            "snapshot_url": f"https://placehold.co/640x360?text=Detection+{detection_id[:8]}",
        },
    }


def send_events(
    session: requests.Session,
    backend_url: str,
    kind: str,
    events: List[Dict[str, Any]],
) -> int:
    """POST a batch to ``/api/<kind>``; returns the accepted count (0 on failure)."""
    url = f"{backend_url}/api/{kind}"

    try:
        response = session.post(url, json=events, timeout=10)
        response.raise_for_status()
        body = response.json()
        return int(body.get("accepted", 0)) if isinstance(body, dict) else 0
    except (requests.exceptions.RequestException, ValueError) as e:
        print(f"[ERROR] Failed to send {kind}: {e}")
        return 0


def wait_for_backend(backend_url: str, max_retries: int = 30, delay: float = 2.0) -> bool:
    """Wait for backend to be available."""
    print(f"Waiting for backend at {backend_url}...")

    for attempt in range(max_retries):
        try:
            response = requests.get(f"{backend_url}/healthz", timeout=5)
            if response.status_code == 200:
                print("Backend is ready!")
                return True
        except requests.exceptions.RequestException:
            pass

        print(f"  Attempt {attempt + 1}/{max_retries} - Backend not ready, waiting...")
        time.sleep(delay)

    print("Backend did not become available in time.")
    return False


def run_simulation(
    backend_url: str,
    drone_id: str,
    speed: float,
    duration_minutes: float,
    route: List[Dict[str, float]],
    detection_probability: float = 0.5,
    session: Optional[requests.Session] = None,
    sleep=time.sleep,
) -> Dict[str, int]:
    """Run the simulation; one step per simulated second."""
    print(f"\n{'='*60}")
    print("DashUAV Event Simulator")
    print(f"{'='*60}")
    print(f"Backend URL: {backend_url}")
    print(f"Drone ID: {drone_id}")
    print(f"Speed: {speed}x")
    print(f"Duration: {duration_minutes} minutes")
    print(f"Route points: {len(route)}")
    print(f"{'='*60}\n")

    session = session or create_session_with_retry()

    total_steps = max(1, int(duration_minutes * 60))
    step_interval = 1.0 / speed
    stats = {"telemetry": 0, "detections": 0}

    for step in range(total_steps):
        lat, lon = interpolate_position(route, step / total_steps)

        stats["telemetry"] += send_events(
            session, backend_url, "telemetry", [make_telemetry(drone_id, lat, lon, step)]
        )

        if random.random() < detection_probability:
            detection = make_detection(lat, lon)
            accepted = send_events(session, backend_url, "detections", [detection])
            stats["detections"] += accepted
            if accepted:
                payload = detection["payload"]
                print(f"[Step {step:4d}] detection {payload['category']} at "
                      f"({payload['lat']:.4f}, {payload['lon']:.4f})")

        sleep(step_interval)

        if step > 0 and step % 30 == 0:
            print(f"[Progress] Step {step}/{total_steps} "
                  f"({step/total_steps*100:.0f}%) - "
                  f"telemetry: {stats['telemetry']}, detections: {stats['detections']}")

    print()
    print(f"{'='*60}")
    print("Simulation Complete!")
    print(f"{'='*60}")
    print(f"Telemetry accepted: {stats['telemetry']}")
    print(f"Detections accepted: {stats['detections']}")
    print(f"{'='*60}")
    return stats


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(
        description="DashUAV Event Simulator"
    )
    parser.add_argument(
        "--drone-id",
        type=str,
        default="BLUE-1",
        help="Drone ID (default: BLUE-1)",
    )
    parser.add_argument(
        "--speed",
        type=float,
        default=1.0,
        help="Simulation speed multiplier (default: 1.0)",
    )
    parser.add_argument(
        "--minutes",
        type=float,
        default=3.0,
        help="Simulation duration in minutes (default: 3)",
    )
    parser.add_argument(
        "--detection-rate",
        type=float,
        default=0.5,
        help="Probability of a detection per step (default: 0.5)",
    )
    parser.add_argument(
        "--route",
        type=str,
        default=None,
        help="Path to route.json file",
    )

    args = parser.parse_args(argv)

    backend_url = os.environ.get("BACKEND_URL", "http://localhost:8080").rstrip("/")

    if not wait_for_backend(backend_url):
        sys.exit(1)

    route = load_route(Path(args.route)) if args.route else generate_default_route()

    try:
        run_simulation(
            backend_url=backend_url,
            drone_id=args.drone_id,
            speed=args.speed,
            duration_minutes=args.minutes,
            route=route,
            detection_probability=args.detection_rate,
        )
    except KeyboardInterrupt:
        print("\nSimulation interrupted by user.")
        sys.exit(0)


if __name__ == "__main__":
    main()
