"""Shared fixtures for the event core tests."""

import pytest
from fastapi.testclient import TestClient

from dashuav.config import Settings
from dashuav.main import create_app
from dashuav.models import Event
from dashuav.store import EventStore


@pytest.fixture
def settings():
    """Small capacities so eviction is easy to exercise."""
    return Settings(
        max_events=20,
        max_telemetry=10,
        max_detections=10,
        default_event_limit=5,
        cors_origins="*",
    )


@pytest.fixture
def store(settings):
    return EventStore(settings)


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def make_event():
    """Factory for already-normalized events."""
    counter = {"n": 0}

    def _make(type_="telemetry:update", ts=None, event_id=None, **payload):
        counter["n"] += 1
        return Event(
            id=event_id or f"evt-{counter['n']}",
            type=type_,
            ts=ts if ts is not None else 1_700_000_000_000 + counter["n"],
            payload=payload,
        )

    return _make
