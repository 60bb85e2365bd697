"""
BusMate Trip Service: school bus tracking core (FastAPI wrapper)

Purpose
=======
Track school buses in real time, keep per-stop arrival estimates current and
notify parents shortly before the bus reaches their stop.

Key features
------------
- GPS ingestion fires the location-write trigger (stop arrival, ETA refresh,
  arrival pushes).
- A background ticker advances every bus once per interval (stale GPS, trip
  start/end, ETA decrement, arrival pushes).
- Driver tracking toggle, bus state read, schedule cache refresh and rider
  notification diagnostics.

Run
---
$ uvicorn app:app --reload --port 8080

Environment
-----------
- PYTHON >= 3.10
- pip install fastapi uvicorn httpx pywebpush
"""

from __future__ import annotations
from typing import Any, Dict, Optional
import asyncio, os, time
from datetime import datetime, timezone
from pathlib import Path

from fastapi import Body, FastAPI, HTTPException

from bus_tracker import BusTripTracker
from document_store import DocumentStore
from eta_engine import EtaEngine
from location_store import LocationTreeStore, bus_location_path
from notification_dispatcher import NotificationDispatcher
from push_delivery import ChannelPushSender, FcmPushSender, WebPushSender
from routing_client import DirectionsClient
from schedule_resolver import ScheduleResolver
from tracking_config import DATA_DIRS, TrackingConfig, load_tracking_config
from trip_lifecycle import TripLifecycleManager

PRIMARY_DATA_DIR = DATA_DIRS[0]
DOCUMENT_STORE_PATH = Path(
    os.getenv("DOCUMENT_STORE_PATH", str(PRIMARY_DATA_DIR / "busmate_documents.json"))
)
LOCATION_STORE_PATH = Path(
    os.getenv("LOCATION_STORE_PATH", str(PRIMARY_DATA_DIR / "busmate_locations.json"))
)
TICKER_ENABLED = os.getenv("TICKER_ENABLED", "1") != "0"


def build_tracker(
    config: TrackingConfig,
    documents: DocumentStore,
    locations: LocationTreeStore,
    routing: DirectionsClient,
    sender,
) -> BusTripTracker:
    """Wire every collaborator once; nothing below holds module-level state."""
    resolver = ScheduleResolver(documents, locations, config)
    lifecycle = TripLifecycleManager(documents, locations, config)
    eta = EtaEngine(locations, routing, config)
    dispatcher = NotificationDispatcher(documents, locations, sender, config)
    return BusTripTracker(locations, resolver, lifecycle, eta, dispatcher)


# ---------------------------
# App & state
# ---------------------------
app = FastAPI(title="BusMate Trip Service")


@app.on_event("startup")
async def init_tracker() -> None:
    config = load_tracking_config()
    documents = DocumentStore(DOCUMENT_STORE_PATH)
    locations = LocationTreeStore(LOCATION_STORE_PATH)
    routing = DirectionsClient(timeout_s=config.provider_timeout_s)
    sender = ChannelPushSender(fcm=FcmPushSender(), web=WebPushSender())
    app.state.config = config
    app.state.documents = documents
    app.state.locations = locations
    app.state.routing = routing
    app.state.tracker = build_tracker(config, documents, locations, routing, sender)
    app.state.last_tick_ts = None
    app.state.last_error = None
    app.state.last_error_ts = None
    print(f"[startup] tracker ready (tz={config.timezone}, tick={config.tick_interval_s}s)")


@app.on_event("startup")
async def start_ticker() -> None:
    if not TICKER_ENABLED:
        print("[ticker] disabled")
        return

    async def ticker():
        await asyncio.sleep(1)  # Let other startup tasks complete
        while True:
            tracker: Optional[BusTripTracker] = getattr(app.state, "tracker", None)
            interval_s = app.state.config.tick_interval_s if tracker is not None else 5
            try:
                if tracker is not None:
                    await tracker.handle_clock_tick()
                    app.state.last_tick_ts = time.time()
            except Exception as exc:
                app.state.last_error = str(exc)
                app.state.last_error_ts = time.time()
                print(f"[ticker] error: {exc}")
            await asyncio.sleep(interval_s)

    asyncio.create_task(ticker())


@app.on_event("shutdown")
async def shutdown_clients() -> None:
    routing = getattr(app.state, "routing", None)
    if routing is not None:
        await routing.aclose()


def _get_tracker() -> BusTripTracker:
    tracker = getattr(app.state, "tracker", None)
    if tracker is None:
        raise HTTPException(status_code=503, detail="tracker not ready")
    return tracker


def _parse_float(payload: Dict[str, Any], key: str, *, required: bool = True) -> Optional[float]:
    value = payload.get(key)
    if value is None:
        if required:
            raise HTTPException(status_code=400, detail=f"{key} is required")
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f"invalid {key}") from exc


# ---------------------------
# Health
# ---------------------------
@app.get("/v1/health")
async def health():
    last_error = getattr(app.state, "last_error", None)
    return {
        "ok": not bool(last_error),
        "last_error": last_error,
        "last_error_ts": getattr(app.state, "last_error_ts", None),
        "last_tick_ts": getattr(app.state, "last_tick_ts", None),
    }


# ---------------------------
# REST: Buses
# ---------------------------
@app.post("/v1/schools/{school_id}/buses/{bus_id}/location")
async def post_location(school_id: str, bus_id: str, payload: Dict[str, Any] = Body(...)):
    tracker = _get_tracker()
    lat = _parse_float(payload, "latitude")
    lng = _parse_float(payload, "longitude")
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
        raise HTTPException(status_code=400, detail="coordinates out of range")
    speed = _parse_float(payload, "speed", required=False)
    timestamp = payload.get("timestamp")
    if timestamp is not None and not isinstance(timestamp, int):
        raise HTTPException(status_code=400, detail="timestamp must be epoch milliseconds")
    source = payload.get("source")
    outcome = await tracker.ingest_gps(
        school_id,
        bus_id,
        lat,
        lng,
        speed_mps=speed,
        source=str(source) if source else None,
        timestamp_ms=timestamp,
    )
    return {"ok": True, "outcome": outcome}


@app.put("/v1/schools/{school_id}/buses/{bus_id}/tracking")
async def put_tracking(school_id: str, bus_id: str, payload: Dict[str, Any] = Body(...)):
    tracker = _get_tracker()
    active = payload.get("active")
    if not isinstance(active, bool):
        raise HTTPException(status_code=400, detail="active must be a boolean")
    bus = await tracker.set_tracking(school_id, bus_id, active)
    return {"ok": True, "isActive": bus.is_active}


@app.get("/v1/schools/{school_id}/buses/{bus_id}")
async def get_bus(school_id: str, bus_id: str):
    tracker = _get_tracker()
    raw = await tracker.locations.get(bus_location_path(school_id, bus_id))
    if raw is None:
        raise HTTPException(status_code=404, detail="bus not found")
    return raw


@app.post("/v1/schools/{school_id}/buses/{bus_id}/schedules/refresh")
async def refresh_schedules(school_id: str, bus_id: str):
    tracker = _get_tracker()
    schedules = await tracker.resolver.refresh_cache(school_id, bus_id)
    return {"ok": True, "schedules": sorted(schedules)}


# ---------------------------
# REST: Riders
# ---------------------------
@app.get("/v1/schools/{school_id}/riders/{rider_id}/diagnostics")
async def rider_diagnostics(school_id: str, rider_id: str):
    tracker = _get_tracker()
    report = await tracker.dispatcher.diagnose_rider(school_id, rider_id)
    if not report.get("found"):
        raise HTTPException(status_code=404, detail="rider not found")
    return report


# ---------------------------
# REST: Ticks
# ---------------------------
@app.post("/v1/tick")
async def manual_tick():
    tracker = _get_tracker()
    summary = await tracker.handle_clock_tick(datetime.now(timezone.utc))
    app.state.last_tick_ts = time.time()
    return {"ok": True, "buses": summary}
