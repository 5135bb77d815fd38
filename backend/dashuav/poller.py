"""Pull-based consumers: HTTP event polling and periodic buffer flushing.

Both run as cancellable periodic tasks. A failing cycle is logged and the next
tick runs as scheduled.
"""

import logging
import threading
from typing import Any, Callable, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .dedup import EventBuffer
from .models import Event

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_S = 1.5
DEFAULT_FLUSH_INTERVAL_S = 0.12


def create_session_with_retry(total: int = 3, backoff_factor: float = 0.5) -> requests.Session:
    """Create a requests session with retry logic."""
    session = requests.Session()

    retry_strategy = Retry(
        total=total,
        backoff_factor=backoff_factor,
        status_forcelist=[500, 502, 503, 504],
        allowed_methods=["GET", "POST"],
    )

    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)

    return session


class PeriodicTask:
    """Run ``run_once`` every ``interval_s`` seconds on a daemon thread until stopped."""

    name = "periodic-task"

    def __init__(self, interval_s: float):
        self.interval_s = interval_s
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> None:
        raise NotImplementedError

    def tick(self) -> None:
        """Run one cycle; errors are logged and never end the loop."""
        try:
            self.run_once()
        except Exception:
            logger.exception("[%s] cycle failed, retrying next tick", self.name)

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.tick()
            self._stop.wait(self.interval_s)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None


class EventPoller(PeriodicTask):
    """
    Poll ``GET <url>`` and hand every returned event record to ``on_event``.

    By default each cycle re-fetches the newest window (``limit`` records)
    and relies on the consumer's :class:`EventBuffer` to fold the overlap.
    Timestamps come from the senders, so they are not an arrival order;
    ``incremental=True`` sends ``since=<newest ts seen>`` instead and will
    miss a record accepted late with an older timestamp. Network errors, bad
    status codes and unparseable bodies skip the cycle.
    """

    name = "EventPoller"

    def __init__(
        self,
        url: str,
        on_event: Callable[[Any], Any],
        interval_s: float = DEFAULT_POLL_INTERVAL_S,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
        limit: Optional[int] = None,
        incremental: bool = False,
    ):
        super().__init__(interval_s)
        self.url = url
        self.on_event = on_event
        self.session = session or create_session_with_retry()
        self.timeout = timeout
        self.limit = limit
        self.incremental = incremental
        self.last_ts: Optional[float] = None
        self.failures = 0

    def fetch(self) -> List[Any]:
        params = {}
        if self.limit is not None:
            params["limit"] = self.limit
        if self.incremental and self.last_ts is not None:
            params["since"] = int(self.last_ts)
        response = self.session.get(self.url, params=params or None, timeout=self.timeout)
        response.raise_for_status()
        body = response.json()
        return body if isinstance(body, list) else []

    def run_once(self) -> None:
        try:
            records = self.fetch()
        except (requests.exceptions.RequestException, ValueError) as exc:
            self.failures += 1
            logger.warning("[EventPoller] poll of %s failed: %s", self.url, exc)
            return

        for record in records:
            if not isinstance(record, dict):
                continue
            ts = record.get("ts")
            if isinstance(ts, (int, float)) and not isinstance(ts, bool):
                self.last_ts = ts if self.last_ts is None else max(self.last_ts, ts)
            self.on_event(record)


class BufferFlusher(PeriodicTask):
    """Publish an :class:`EventBuffer` snapshot on a fixed period, only when it changed."""

    name = "BufferFlusher"

    def __init__(
        self,
        buffer: EventBuffer,
        on_flush: Callable[[List[Event]], Any],
        interval_s: float = DEFAULT_FLUSH_INTERVAL_S,
    ):
        super().__init__(interval_s)
        self.buffer = buffer
        self.on_flush = on_flush
        self._flushed_version: Optional[int] = None

    def run_once(self) -> None:
        version, events = self.buffer.snapshot_with_version()
        if version == self._flushed_version:
            return
        self._flushed_version = version
        self.on_flush(events)


def route_event(
    record: Any,
    on_telemetry: Optional[Callable[[Any], Any]] = None,
    on_detection: Optional[Callable[[Any], Any]] = None,
) -> None:
    """Dispatch a raw record by its type prefix; other types are ignored."""
    if not isinstance(record, dict):
        return
    event_type = record.get("type")
    if not isinstance(event_type, str):
        return
    if event_type.startswith("telemetry") and on_telemetry is not None:
        on_telemetry(record)
    elif event_type.startswith("detection") and on_detection is not None:
        on_detection(record)
