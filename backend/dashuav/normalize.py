"""Validation and canonicalization of raw inbound records."""

import logging
import math
import random
import string
import time
import uuid
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional, Union

from pydantic import ValidationError

from .models import Event

logger = logging.getLogger(__name__)

Clock = Callable[[], Union[int, float]]
IdFactory = Callable[[], str]

_TOKEN_ALPHABET = string.digits + string.ascii_lowercase
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def safe_id() -> str:
    """Generate an event id, falling back to a short random token."""
    try:
        return str(uuid.uuid4())
    except Exception:
        token = "".join(random.choice(_TOKEN_ALPHABET) for _ in range(8))
        return f"evt_{token}"


def parse_date_ms(value: str) -> Optional[int]:
    """Parse an ISO-8601 date/time string into epoch milliseconds."""
    text = value.strip()
    if not text:
        return None
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    # Naive values are read as UTC
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    try:
        return (parsed - _EPOCH) // timedelta(milliseconds=1)
    except OverflowError:
        return None


def to_timestamp(value: Any, clock: Clock = now_ms) -> Union[int, float]:
    """Coerce a raw timestamp: finite number, then date string, then now."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if math.isfinite(value):
            return value
        return clock()
    if isinstance(value, str):
        parsed = parse_date_ms(value)
        if parsed is not None:
            return parsed
    return clock()


def _resolve_type(raw: Mapping, fallback_type: Optional[str]) -> Optional[str]:
    candidate = raw.get("type")
    if isinstance(candidate, str) and candidate.strip():
        return candidate.strip()
    if isinstance(fallback_type, str) and fallback_type.strip():
        return fallback_type.strip()
    return None


def normalize_event(
    raw: Any,
    fallback_type: Optional[str] = None,
    *,
    clock: Clock = now_ms,
    id_factory: IdFactory = safe_id,
) -> Optional[Event]:
    """
    Turn a raw record into an Event.

    Returns None when the record is not a mapping or no type can be resolved.
    Never raises for malformed input.
    """
    if isinstance(raw, Event):
        return raw
    if not isinstance(raw, Mapping):
        return None

    event_type = _resolve_type(raw, fallback_type)
    if event_type is None:
        return None

    raw_ts = raw.get("ts") if "ts" in raw else raw.get("timestamp")
    ts = to_timestamp(raw_ts, clock)

    raw_id = raw.get("id")
    event_id = str(raw_id) if raw_id else id_factory()

    payload = raw.get("payload")
    meta = raw.get("meta")

    try:
        return Event(
            id=event_id,
            type=event_type,
            ts=ts,
            payload=dict(payload) if isinstance(payload, Mapping) else {},
            meta=dict(meta) if isinstance(meta, Mapping) else None,
        )
    except ValidationError as exc:
        logger.debug("Dropping record that failed validation: %s", exc)
        return None


def normalize_many(
    raw: Any,
    fallback_type: Optional[str] = None,
    *,
    clock: Clock = now_ms,
    id_factory: IdFactory = safe_id,
) -> List[Event]:
    """Normalize a batch; a single non-list record counts as a batch of one."""
    records = raw if isinstance(raw, list) else [raw]
    events = []
    for record in records:
        event = normalize_event(record, fallback_type, clock=clock, id_factory=id_factory)
        if event is None:
            logger.debug("Rejected malformed record of type %s", type(record).__name__)
            continue
        events.append(event)
    return events
