"""
Entry points that drive the trip state machine.

Two triggers move a bus forward:

- ``handle_location_write(before, after)`` runs for every GPS write. It
  detects stop arrivals, refreshes estimates when due and dispatches pushes.
- ``handle_clock_tick()`` runs on a fixed interval for every known bus. It
  marks buses with stale GPS inactive, ends expired trips, starts due trips,
  decrements estimates and dispatches pushes.

Buses are processed concurrently; work for a single bus is serialised by a
per-bus lock and always starts from the latest persisted state.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple

from bus_models import BusLocation, to_epoch_ms
from eta_engine import EtaEngine
from location_store import BUS_LOCATIONS_ROOT, LocationTreeStore, bus_location_path
from notification_dispatcher import NotificationDispatcher
from schedule_resolver import RouteSelection, ScheduleResolver, is_within_window
from trip_lifecycle import TripLifecycleManager, build_trip_id

# Keys that change on every GPS write without changing what the bus is doing
FRESHNESS_KEYS = frozenset({"timestamp", "lastUpdateTimestamp", "speed", "source"})

STALE_GPS_REASON = "stale_gps"


def _meaningful(snapshot: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    if not isinstance(snapshot, Mapping):
        return {}
    return {k: v for k, v in snapshot.items() if k not in FRESHNESS_KEYS}


class BusTripTracker:
    def __init__(
        self,
        locations: LocationTreeStore,
        resolver: ScheduleResolver,
        lifecycle: TripLifecycleManager,
        eta: EtaEngine,
        dispatcher: NotificationDispatcher,
    ):
        self.locations = locations
        self.resolver = resolver
        self.lifecycle = lifecycle
        self.eta = eta
        self.dispatcher = dispatcher
        self.config = eta.config
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = defaultdict(asyncio.Lock)

    def _lock(self, school_id: str, bus_id: str) -> asyncio.Lock:
        return self._locks[(school_id, bus_id)]

    async def ingest_gps(
        self,
        school_id: str,
        bus_id: str,
        latitude: float,
        longitude: float,
        *,
        speed_mps: Optional[float] = None,
        source: Optional[str] = None,
        timestamp_ms: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> str:
        """Persist a GPS fix and fire the location-write trigger for it."""
        now = now or datetime.now(timezone.utc)
        now_ms = to_epoch_ms(now)
        path = bus_location_path(school_id, bus_id)
        before = await self.locations.get(path)
        fields: Dict[str, Any] = {
            "latitude": float(latitude),
            "longitude": float(longitude),
            "speed": speed_mps,
            "source": source,
            "timestamp": timestamp_ms or now_ms,
            "lastUpdateTimestamp": now_ms,
        }
        if isinstance(before, dict) and before.get("inactiveReason") == STALE_GPS_REASON:
            # GPS is back after a stale period
            fields["isActive"] = True
            fields["inactiveReason"] = None
        after = await self.locations.update(path, fields)
        return await self.handle_location_write(school_id, bus_id, before, after, now)

    async def set_tracking(
        self,
        school_id: str,
        bus_id: str,
        active: bool,
        now: Optional[datetime] = None,
    ) -> BusLocation:
        """Driver toggle. Trip state is left to the next trigger."""
        now = now or datetime.now(timezone.utc)
        async with self._lock(school_id, bus_id):
            node = await self.locations.update(
                bus_location_path(school_id, bus_id),
                {
                    "isActive": bool(active),
                    "inactiveReason": None if active else "driver_stopped",
                    "trackingChangedAt": to_epoch_ms(now),
                },
            )
        print(f"[tracker] bus {bus_id}: tracking {'on' if active else 'off'}")
        return BusLocation.from_dict(school_id, bus_id, node)

    async def _with_schedule(
        self,
        school_id: str,
        bus_id: str,
        bus: BusLocation,
        selection: RouteSelection,
        now: datetime,
    ) -> RouteSelection:
        trip_id = build_trip_id(selection.route_id, selection.service_date, selection.start_time)
        if selection.schedule is None and trip_id not in (bus.current_trip_id, bus.completed_trip_id):
            selection.schedule = await self.resolver.find_schedule(
                school_id, bus_id, selection.route_id, now
            )
        return selection

    async def _ensure_trip(
        self, school_id: str, bus_id: str, bus: BusLocation, now: datetime
    ) -> Optional[BusLocation]:
        """Resolve the active route and start its trip if needed; None means stand down."""
        selection = await self.resolver.determine_active_route(school_id, bus_id, bus, now)
        if selection is None:
            if bus.has_active_trip():
                await self.lifecycle.end_trip(school_id, bus_id, bus, "no_active_route", now)
            return None
        if selection.switched and bus.has_active_trip():
            ended = await self.lifecycle.end_trip(school_id, bus_id, bus, "route_switched", now)
            bus = ended or bus
        selection = await self._with_schedule(school_id, bus_id, bus, selection, now)
        started = await self.lifecycle.start_trip(school_id, bus_id, bus, selection, now)
        if started is not None:
            return started
        bus = await self.locations.load_bus(school_id, bus_id)
        return bus if bus.has_active_trip() else None

    async def handle_location_write(
        self,
        school_id: str,
        bus_id: str,
        before: Optional[Mapping[str, Any]],
        after: Optional[Mapping[str, Any]],
        now: Optional[datetime] = None,
    ) -> str:
        """React to one write of ``bus_locations/{school}/{bus}``; returns the outcome."""
        if after is None:
            return "deleted"
        if before is not None and _meaningful(before) == _meaningful(after):
            return "unchanged"
        now = now or datetime.now(timezone.utc)
        async with self._lock(school_id, bus_id):
            bus = await self.locations.load_bus(school_id, bus_id)
            if not bus.is_active:
                return "inactive"
            if bus.position is None:
                return "no_position"

            if not bus.has_active_trip():
                started = await self._ensure_trip(school_id, bus_id, bus, now)
                if started is None:
                    return "no_trip"
                bus = started

            arrival = await self.eta.detect_stop_arrival(school_id, bus_id, bus, now)
            if arrival is not None:
                bus = arrival.bus
                if arrival.trip_complete:
                    await self.lifecycle.end_trip(school_id, bus_id, bus, "completed", now)
                    return "trip_complete"

            if self.eta.should_call_provider(bus, now):
                refreshed = await self.eta.refresh_etas(school_id, bus_id, bus, now)
                bus = refreshed or bus

            await self.dispatcher.process_notifications(school_id, bus_id, bus, now)
            return "processed"

    def _is_stale(self, bus: BusLocation, now_ms: int) -> bool:
        if not bus.is_active or not bus.last_update_timestamp:
            return False
        return (now_ms - bus.last_update_timestamp) / 1000.0 > self.config.stale_gps_s

    async def _tick_bus(self, school_id: str, bus_id: str, now: datetime) -> str:
        now_ms = to_epoch_ms(now)
        async with self._lock(school_id, bus_id):
            bus = await self.locations.load_bus(school_id, bus_id)

            if self._is_stale(bus, now_ms):
                age_s = (now_ms - bus.last_update_timestamp) // 1000
                node = await self.locations.update(
                    bus_location_path(school_id, bus_id),
                    {"isActive": False, "inactiveReason": STALE_GPS_REASON, "staleSince": now_ms},
                )
                bus = BusLocation.from_dict(school_id, bus_id, node)
                print(f"[tracker] bus {bus_id}: no GPS for {age_s}s; marked inactive")

            # End before start so a back-to-back trip is not overwritten. Window
            # ends are inclusive: with A 07:00-08:00 and B 08:00-09:00, A still
            # runs at 08:00 and B starts on the 08:01 tick.
            # A route left behind by a completed trip is cleared here too.
            if (
                (bus.has_active_trip() or bus.active_route_id)
                and bus.schedule_start_time
                and bus.schedule_end_time
            ):
                hhmm = self.resolver.local_now(now).strftime("%H:%M")
                if not is_within_window(hhmm, bus.schedule_start_time, bus.schedule_end_time):
                    ended = await self.lifecycle.end_trip(school_id, bus_id, bus, "window_closed", now)
                    bus = ended or bus

            if not bus.is_active:
                return "inactive"

            current = await self._ensure_trip(school_id, bus_id, bus, now)
            if current is None:
                return "no_trip"
            bus = current

            decremented = await self.eta.decrement_etas(school_id, bus_id, bus, now)
            bus = decremented or bus
            await self.dispatcher.process_notifications(school_id, bus_id, bus, now)
            return "processed"

    async def _tick_bus_safely(self, school_id: str, bus_id: str, now: datetime) -> str:
        try:
            return await self._tick_bus(school_id, bus_id, now)
        except Exception as exc:
            print(f"[tracker] tick failed for bus {bus_id} (school {school_id}): {exc!r}")
            return "error"

    async def handle_clock_tick(self, now: Optional[datetime] = None) -> Dict[str, str]:
        """Advance every known bus; returns ``{"school/bus": outcome}``."""
        now = now or datetime.now(timezone.utc)
        tree = await self.locations.snapshot(BUS_LOCATIONS_ROOT)
        keys = [
            (school_id, bus_id)
            for school_id, buses in tree.items()
            if isinstance(buses, dict)
            for bus_id in buses
        ]
        outcomes = await asyncio.gather(
            *(self._tick_bus_safely(school_id, bus_id, now) for school_id, bus_id in keys)
        )
        summary = {f"{school_id}/{bus_id}": outcome for (school_id, bus_id), outcome in zip(keys, outcomes)}
        processed = sum(1 for outcome in outcomes if outcome == "processed")
        print(f"[tracker] tick: {len(keys)} buses, {processed} with active trips")
        return summary


__all__ = ["BusTripTracker", "FRESHNESS_KEYS", "STALE_GPS_REASON"]
