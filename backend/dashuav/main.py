"""FastAPI backend for the DashUAV event core."""

import asyncio
import json
import logging
import math
import random
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Union

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from .analytics import analyze, cluster_detections, latest_by_entity
from .config import Settings, configure_logging
from .realtime import Broadcaster
from .simulator import DEFAULT_CENTER, make_detection, make_telemetry
from .store import EventStore

logger = logging.getLogger(__name__)

TELEMETRY_TYPE = "telemetry:update"
DETECTION_TYPE = "detection:new"


class AcceptedResponse(BaseModel):
    """Response model for accepted submissions."""
    accepted: int


class HealthResponse(BaseModel):
    """Response model for the health check."""
    status: str
    uptime: float


def parse_query_number(value: Optional[str]) -> Optional[Union[int, float]]:
    """Lenient query number parsing; anything unparseable counts as absent."""
    if value is None:
        return None
    text = value.strip()
    try:
        return int(text)
    except ValueError:
        pass
    try:
        number = float(text)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def parse_limit(value: Optional[str]) -> Optional[int]:
    number = parse_query_number(value)
    return int(number) if number is not None else None


def parse_threshold(value: Optional[str], default: float) -> float:
    number = parse_query_number(value)
    return float(number) if number is not None and number > 0 else default


async def auto_simulation_task(app: FastAPI):
    """Background task that feeds mock telemetry and detections into the store."""
    settings: Settings = app.state.settings
    store: EventStore = app.state.store
    step = 0
    while True:
        try:
            interval = random.uniform(settings.auto_sim_interval_min, settings.auto_sim_interval_max)
            await asyncio.sleep(interval)

            lat = DEFAULT_CENTER["lat"] + math.sin(step / 30) * 0.01
            lon = DEFAULT_CENTER["lon"] + math.cos(step / 30) * 0.01
            store.ingest_many(make_telemetry("BLUE-1", lat, lon, step), TELEMETRY_TYPE)

            if step % 2 == 0:
                detection = make_detection(lat, lon)
                store.ingest_many(detection, DETECTION_TYPE)
                payload = detection["payload"]
                logger.info(
                    "[Auto-Sim] Generated detection %s... at (%s, %s)",
                    payload["detection_id"][:8],
                    payload["lat"],
                    payload["lon"],
                )
            step += 1
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[Auto-Sim] Error")
            await asyncio.sleep(5)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown."""
    settings: Settings = app.state.settings
    task = None

    # Startup
    if settings.auto_sim_enabled:
        logger.info("[Auto-Sim] Starting background simulation...")
        task = asyncio.create_task(auto_simulation_task(app))

    yield

    # Shutdown
    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    app.state.broadcaster.close_all()
    app.state.store.clear()


def _events_json(events) -> List[Dict[str, Any]]:
    return [event.to_dict() for event in events]


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-finite number {name} is not valid JSON")


async def _read_json(request: Request) -> Any:
    body = await request.body()
    try:
        # NaN and Infinity are not JSON
        return json.loads(body, parse_constant=_reject_constant)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the application with its own store and broadcaster."""
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    broadcaster = Broadcaster(queue_size=settings.subscriber_queue_size)
    store = EventStore(settings, on_accept=broadcaster.broadcast)
    started_at = time.monotonic()

    app = FastAPI(
        title="DashUAV Event Core",
        description="Telemetry and detection ingestion with bounded storage and live fan-out",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.broadcaster = broadcaster

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.allow_all_origins else settings.cors_origins,
        allow_credentials=not settings.allow_all_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def reject_foreign_origins(request: Request, call_next):
        origin = request.headers.get("origin")
        if origin and not settings.allow_all_origins and origin not in settings.cors_origins:
            return JSONResponse(status_code=403, content={"error": "Origin not allowed by CORS policy"})
        return await call_next(request)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    def open_subscription():
        # Snapshot and registration happen under the store lock so no event
        # lands between the catch-up window and the live feed.
        with store.lock:
            return broadcaster.subscribe(snapshot=store.recent(settings.snapshot_limit))

    def ingest_body(body: Any, fallback_type: Optional[str], error: str) -> AcceptedResponse:
        accepted = store.ingest_many(body, fallback_type)
        if not accepted:
            raise HTTPException(status_code=400, detail=error)
        return AcceptedResponse(accepted=accepted)

    @app.get("/healthz", response_model=HealthResponse)
    async def health_check():
        """Health check endpoint."""
        return HealthResponse(status="ok", uptime=time.monotonic() - started_at)

    @app.get("/api/events")
    async def list_events(
        limit: Optional[str] = Query(default=None),
        since: Optional[str] = Query(default=None),
    ):
        """List the most recent events, optionally only those newer than ``since``."""
        events = store.list_events(since=parse_query_number(since), limit=parse_limit(limit))
        return _events_json(events)

    @app.get("/api/telemetry")
    async def list_telemetry(limit: Optional[str] = Query(default=None)):
        return _events_json(store.list_telemetry(parse_limit(limit)))

    @app.get("/api/detections")
    async def list_detections(limit: Optional[str] = Query(default=None)):
        return _events_json(store.list_detections(parse_limit(limit)))

    @app.get("/api/summary")
    async def summary():
        return store.summary().to_dict()

    @app.post("/api/telemetry", status_code=202, response_model=AcceptedResponse)
    async def post_telemetry(request: Request):
        body = await _read_json(request)
        return ingest_body(body, TELEMETRY_TYPE, "No valid telemetry payloads accepted")

    @app.post("/api/detections", status_code=202, response_model=AcceptedResponse)
    async def post_detections(request: Request):
        body = await _read_json(request)
        return ingest_body(body, DETECTION_TYPE, "No valid detection payloads accepted")

    @app.post("/api/events", status_code=202, response_model=AcceptedResponse)
    async def post_events(request: Request):
        """Accept events of any type; each record must carry its own ``type``."""
        body = await _read_json(request)
        return ingest_body(body, None, "No valid events accepted")

    @app.get("/api/analytics")
    async def analytics(threshold: Optional[str] = Query(default=None)):
        """Counts, speed stats, category histogram and detection clusters."""
        threshold_m = parse_threshold(threshold, settings.cluster_threshold_m)
        report = analyze(store.list_telemetry(), store.list_detections(), threshold_m)
        return report.to_dict()

    @app.get("/api/analytics/clusters")
    async def clusters(
        threshold: Optional[str] = Query(default=None),
        limit: Optional[str] = Query(default=None),
    ):
        threshold_m = parse_threshold(threshold, settings.cluster_threshold_m)
        detections = store.list_detections(parse_limit(limit))
        return [cluster.to_dict() for cluster in cluster_detections(detections, threshold_m)]

    @app.get("/api/fleet")
    async def fleet(limit: Optional[str] = Query(default=None)):
        """Latest known state per drone."""
        latest = latest_by_entity(store.list_telemetry(parse_limit(limit)))
        return {drone_id: event.to_dict() for drone_id, event in latest.items()}

    @app.get("/stream")
    async def stream_events():
        """
        SSE endpoint for real-time event updates.
        """
        sub = open_subscription()

        async def event_generator():
            try:
                async for message in broadcaster.stream(sub):
                    yield message
            finally:
                broadcaster.unsubscribe(sub)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    @app.websocket("/ws")
    async def websocket_events(websocket: WebSocket):
        """WebSocket endpoint: greeting, catch-up snapshot, then live events."""
        await websocket.accept()
        sub = open_subscription()

        async def sender():
            async for frame in broadcaster.frames(sub):
                await websocket.send_text(frame)

        send_task = asyncio.create_task(sender())
        try:
            while True:
                # Inbound frames, text or binary, are ignored
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
        except WebSocketDisconnect:
            pass
        finally:
            broadcaster.unsubscribe(sub)
            send_task.cancel()
            try:
                await send_task
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                logger.debug("[WebSocket] sender stopped: %s", exc)

    return app
