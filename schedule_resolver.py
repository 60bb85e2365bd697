"""Decides which route direction a bus should be running right now."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Optional, Tuple
from zoneinfo import ZoneInfo

from bus_models import BusLocation, Direction, RouteSchedule, Weekday, to_epoch_ms
from document_store import DocumentStore, schedules_collection
from location_store import LocationTreeStore, bus_location_path, schedule_cache_path
from tracking_config import TrackingConfig


def parse_hhmm(value: Optional[str]) -> Optional[int]:
    """Minutes after midnight for ``HH:MM`` (seconds are ignored)."""
    if not value:
        return None
    parts = str(value).strip().split(":")
    if len(parts) < 2:
        return None
    try:
        hours = int(parts[0])
        minutes = int(parts[1])
    except ValueError:
        return None
    if not (0 <= hours <= 23 and 0 <= minutes <= 59):
        return None
    return hours * 60 + minutes


def is_within_window(now_hhmm: str, start: str, end: str) -> bool:
    """Inclusive window test; ``end < start`` means the window wraps past midnight."""
    now_m = parse_hhmm(now_hhmm)
    start_m = parse_hhmm(start)
    end_m = parse_hhmm(end)
    if now_m is None or start_m is None or end_m is None:
        return False
    if end_m < start_m:
        return now_m >= start_m or now_m <= end_m
    return start_m <= now_m <= end_m


def service_date(local_now: datetime, start: str, end: str) -> date:
    """Date the trip belongs to; the after-midnight tail of a wrapping window is yesterday's."""
    now_m = local_now.hour * 60 + local_now.minute
    start_m = parse_hhmm(start)
    end_m = parse_hhmm(end)
    if start_m is not None and end_m is not None and end_m < start_m and now_m <= end_m:
        return local_now.date() - timedelta(days=1)
    return local_now.date()


@dataclass
class RouteSelection:
    route_id: str  # schedule id; recorded as activeRouteId
    direction: Direction
    start_time: str
    end_time: str
    service_date: date
    route_name: Optional[str] = None
    route_scope: Optional[str] = None
    schedule: Optional[RouteSchedule] = None  # None when served from the bus's own record
    switched: bool = False


class ScheduleResolver:
    def __init__(
        self,
        documents: DocumentStore,
        locations: LocationTreeStore,
        config: TrackingConfig,
    ):
        self.documents = documents
        self.locations = locations
        self.config = config
        self.tz = ZoneInfo(config.timezone)

    def local_now(self, now: Optional[datetime] = None) -> datetime:
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now.astimezone(self.tz)

    async def refresh_cache(
        self, school_id: str, bus_id: str, now: Optional[datetime] = None
    ) -> Dict[str, RouteSchedule]:
        """Re-read the bus's schedules from the document store into the tree cache."""
        now = now or datetime.now(timezone.utc)
        docs = await self.documents.query(schedules_collection(school_id), {"busId": bus_id})
        await self.locations.set(
            schedule_cache_path(school_id, bus_id),
            {"schedules": {doc_id: doc for doc_id, doc in docs}, "cachedAt": to_epoch_ms(now)},
        )
        print(f"[schedule] cached {len(docs)} schedules for bus {bus_id} (school {school_id})")
        return self._parse_cache({doc_id: doc for doc_id, doc in docs})

    async def load_schedules(
        self, school_id: str, bus_id: str, now: Optional[datetime] = None
    ) -> Dict[str, RouteSchedule]:
        now = now or datetime.now(timezone.utc)
        cached = await self.locations.get(schedule_cache_path(school_id, bus_id))
        if isinstance(cached, dict) and isinstance(cached.get("schedules"), dict):
            cached_at = cached.get("cachedAt") or 0
            age_s = (to_epoch_ms(now) - int(cached_at)) / 1000.0
            if age_s <= self.config.schedule_cache_ttl_s:
                return self._parse_cache(cached["schedules"])
        return await self.refresh_cache(school_id, bus_id, now)

    def _parse_cache(self, raw: Dict[str, dict]) -> Dict[str, RouteSchedule]:
        schedules: Dict[str, RouteSchedule] = {}
        for schedule_id, doc in raw.items():
            schedule = RouteSchedule.from_dict(schedule_id, doc)
            if schedule is None:
                print(f"[schedule] skipping malformed schedule {schedule_id}")
                continue
            schedules[schedule.schedule_id] = schedule
        return schedules

    def match_schedule(
        self, schedules: Dict[str, RouteSchedule], local_now: datetime
    ) -> Optional[Tuple[RouteSchedule, date]]:
        """First active schedule whose day and time window contain ``local_now``."""
        hhmm = local_now.strftime("%H:%M")
        for schedule in schedules.values():
            if not schedule.is_active:
                continue
            if not is_within_window(hhmm, schedule.start_time, schedule.end_time):
                continue
            trip_date = service_date(local_now, schedule.start_time, schedule.end_time)
            # No day list means the schedule runs every day
            if schedule.days_of_week and Weekday.from_date(trip_date) not in schedule.days_of_week:
                continue
            return schedule, trip_date
        return None

    async def find_schedule(
        self, school_id: str, bus_id: str, schedule_id: str, now: Optional[datetime] = None
    ) -> Optional[RouteSchedule]:
        schedules = await self.load_schedules(school_id, bus_id, now)
        schedule = schedules.get(schedule_id)
        if schedule is None:
            schedules = await self.refresh_cache(school_id, bus_id, now)
            schedule = schedules.get(schedule_id)
        return schedule

    async def determine_active_route(
        self,
        school_id: str,
        bus_id: str,
        bus: BusLocation,
        now: Optional[datetime] = None,
    ) -> Optional[RouteSelection]:
        """
        Return the route direction that should be active, or None to stand the bus down.

        While a trip is running, the route recorded on the bus is reused without
        any store read as long as its window still holds. Otherwise every cached
        schedule is scanned, so day and isActive rules apply again; a newly
        chosen route is persisted immediately and the short-circuit flags are
        cleared.
        """
        local = self.local_now(now)
        hhmm = local.strftime("%H:%M")

        if (
            bus.has_active_trip()
            and bus.active_route_id
            and bus.schedule_start_time
            and bus.schedule_end_time
        ):
            if is_within_window(hhmm, bus.schedule_start_time, bus.schedule_end_time):
                return RouteSelection(
                    route_id=bus.active_route_id,
                    direction=bus.trip_direction or Direction.PICKUP,
                    start_time=bus.schedule_start_time,
                    end_time=bus.schedule_end_time,
                    service_date=service_date(local, bus.schedule_start_time, bus.schedule_end_time),
                    route_name=bus.route_name,
                    route_scope=bus.route_scope,
                )

        schedules = await self.load_schedules(school_id, bus_id, now)
        if not schedules:
            print(f"[schedule] bus {bus_id}: no schedules found")
            return None
        match = self.match_schedule(schedules, local)
        if match is None:
            print(f"[schedule] bus {bus_id}: no active route at {hhmm} {local.strftime('%a')}")
            return None

        schedule, trip_date = match
        # Riders carry assignedRouteId only on buses that serve several routes
        route_ids = {s.route_id for s in schedules.values() if s.route_id}
        multi_route = len(route_ids) > 1 and schedule.route_id is not None
        selection = RouteSelection(
            route_id=schedule.schedule_id,
            direction=schedule.direction,
            start_time=schedule.start_time,
            end_time=schedule.end_time,
            service_date=trip_date,
            route_name=schedule.route_name,
            route_scope=schedule.route_id if multi_route else None,
            schedule=schedule,
        )

        if schedule.schedule_id != bus.active_route_id:
            await self.locations.update(
                bus_location_path(school_id, bus_id),
                {
                    "activeRouteId": selection.route_id,
                    "tripDirection": selection.direction.value,
                    "routeName": selection.route_name,
                    "routeScope": selection.route_scope,
                    "scheduleStartTime": selection.start_time,
                    "scheduleEndTime": selection.end_time,
                    "allStudentsNotified": False,
                    "noPendingStudents": False,
                },
            )
            selection.switched = True
            print(
                f"[schedule] bus {bus_id}: switched route {bus.active_route_id} -> "
                f"{selection.route_id} ({selection.direction.value} {selection.start_time}-{selection.end_time})"
            )
        return selection


__all__ = [
    "RouteSelection",
    "ScheduleResolver",
    "is_within_window",
    "parse_hhmm",
    "service_date",
]
