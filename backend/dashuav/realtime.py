"""Real-time fan-out of accepted events to SSE and WebSocket subscribers."""

import asyncio
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Dict, Iterable, List, Optional, Set

from .models import Event

logger = logging.getLogger(__name__)

GREETING = "DashUAV stream ready"
DEFAULT_QUEUE_SIZE = 1000


def serialize(message: Dict[str, Any]) -> str:
    return json.dumps(message, ensure_ascii=False)


def hello_message() -> Dict[str, Any]:
    return {"kind": "hello", "message": GREETING}


def snapshot_message(events: Iterable[Event]) -> Dict[str, Any]:
    return {"kind": "snapshot", "events": [event.to_dict() for event in events]}


def event_message(event: Event) -> Dict[str, Any]:
    return {"kind": "event", "event": event.to_dict()}


@dataclass(eq=False)
class Subscription:
    """One subscriber: a bounded queue of serialized frames owned by an event loop."""

    queue: asyncio.Queue
    loop: Optional[asyncio.AbstractEventLoop] = None
    open: bool = True
    dropped: int = 0

    def offer(self, data: str) -> bool:
        """Enqueue a frame without waiting; a full queue drops it."""
        if not self.open:
            return False
        try:
            self.queue.put_nowait(data)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.debug("[Broadcaster] subscriber queue full, frame dropped")
            return False
        return True

    def close(self) -> None:
        self.open = False


@dataclass
class Broadcaster:
    """Fan-out hub using one asyncio queue per subscriber."""

    queue_size: int = DEFAULT_QUEUE_SIZE
    subscribers: Set[Subscription] = field(default_factory=set)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return sum(1 for sub in self.subscribers if sub.open)

    def subscribe(
        self,
        greeting: bool = True,
        snapshot: Optional[List[Event]] = None,
    ) -> Subscription:
        """
        Register a new subscriber.

        Its queue is primed with a greeting and, when ``snapshot`` is
        non-empty, the catch-up snapshot, ahead of any live event.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        sub = Subscription(queue=asyncio.Queue(maxsize=self.queue_size), loop=loop)
        if greeting:
            sub.offer(serialize(hello_message()))
        if snapshot:
            sub.offer(serialize(snapshot_message(snapshot)))
        with self._lock:
            self.subscribers.add(sub)
        logger.info("[Broadcaster] subscriber connected (%d total)", self.subscriber_count)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        sub.close()
        with self._lock:
            self.subscribers.discard(sub)
        logger.info("[Broadcaster] subscriber disconnected (%d remaining)", self.subscriber_count)

    def _deliver(self, sub: Subscription, data: str) -> None:
        if sub.loop is None or sub.loop.is_closed():
            sub.offer(data)
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is sub.loop:
            sub.offer(data)
        else:
            sub.loop.call_soon_threadsafe(sub.offer, data)

    def broadcast(self, event: Event) -> int:
        """
        Send an event to every open subscriber; returns how many were targeted.

        The message is serialized once. Closed subscribers are skipped and a
        full queue only affects its own subscriber.
        """
        with self._lock:
            targets = [sub for sub in self.subscribers if sub.open]
        if not targets:
            return 0
        data = serialize(event_message(event))
        for sub in targets:
            try:
                self._deliver(sub, data)
            except RuntimeError as exc:
                # Owner loop shut down between the snapshot and the send
                logger.debug("[Broadcaster] skipping subscriber: %s", exc)
                sub.close()
        return len(targets)

    async def stream(self, sub: Subscription) -> AsyncGenerator[str, None]:
        """Generate SSE messages from a subscription queue."""
        try:
            while sub.open:
                data = await sub.queue.get()
                yield f"data: {data}\n\n"
        except asyncio.CancelledError:
            pass

    async def frames(self, sub: Subscription) -> AsyncGenerator[str, None]:
        """Raw serialized frames, for transports that do their own framing."""
        while sub.open:
            yield await sub.queue.get()

    def close_all(self) -> None:
        with self._lock:
            subs = list(self.subscribers)
            self.subscribers.clear()
        for sub in subs:
            sub.close()
