"""
Trip boundaries for one (school, bus).

States:

    Idle --start--> TripActive(direction, trip_id) --end--> TripEnded --start--> ...

Starting a trip re-arms every rider on the bus for the new trip id and writes
a fresh stop list in traversal order (drop trips reverse the authored list).
Ending a trip clears the route fields but leaves riders alone: anyone still
``notified=False`` is simply re-armed by the next start.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bus_models import BusLocation, Direction, Stop, to_epoch_ms
from document_store import DocumentStore, riders_collection
from location_store import LocationTreeStore, bus_location_path
from schedule_resolver import RouteSelection
from tracking_config import TrackingConfig


def build_trip_id(route_id: str, trip_date: date, start_time: str) -> str:
    return f"{route_id}_{trip_date.isoformat()}_{start_time}"


def traversal_order(stops: List[Stop], direction: Direction) -> List[Stop]:
    """Stops in the order the bus reaches them, with every estimate cleared."""
    ordered = [stop.without_estimates() for stop in stops]
    if direction == Direction.DROP:
        ordered.reverse()
    return ordered


class TripLifecycleManager:
    def __init__(
        self,
        documents: DocumentStore,
        locations: LocationTreeStore,
        config: TrackingConfig,
    ):
        self.documents = documents
        self.locations = locations
        self.config = config

    def needs_reset(self, bus: BusLocation, trip_id: str) -> bool:
        return bus.students_reset_trip_id != trip_id

    async def reset_riders(
        self,
        school_id: str,
        bus_id: str,
        trip_id: str,
        route_scope: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[int, bool]:
        """
        Re-arm the bus's riders for ``trip_id``.

        Only riders on ``route_scope`` are touched when one is given. Writes go
        out in batches of ``batch_limit``; a failed batch is logged and left for
        the next tick. Returns ``(riders_reset, all_batches_committed)``.
        """
        now = now or datetime.now(timezone.utc)
        filters: Dict[str, Any] = {"assignedBusId": bus_id}
        if route_scope:
            filters["assignedRouteId"] = route_scope
        collection = riders_collection(school_id)
        docs = await self.documents.query(collection, filters)
        fields = {
            "notified": False,
            "currentTripId": trip_id,
            "lastNotifiedAt": None,
            "lastNotifiedTripId": None,
            "tripStartedAt": to_epoch_ms(now),
        }

        reset = 0
        ok = True
        limit = self.config.batch_limit
        for offset in range(0, len(docs), limit):
            chunk = docs[offset:offset + limit]
            batch = self.documents.batch()
            for doc_id, _ in chunk:
                batch.update(collection, doc_id, fields)
            try:
                reset += await batch.commit()
            except Exception as exc:
                ok = False
                print(
                    f"[trip] bus {bus_id}: rider reset batch {offset // limit + 1} "
                    f"failed ({len(chunk)} riders): {exc}"
                )
        scope_label = f" route {route_scope}" if route_scope else ""
        print(f"[trip] bus {bus_id}{scope_label}: reset {reset}/{len(docs)} riders for trip {trip_id}")
        return reset, ok

    async def start_trip(
        self,
        school_id: str,
        bus_id: str,
        bus: BusLocation,
        selection: RouteSelection,
        now: Optional[datetime] = None,
    ) -> Optional[BusLocation]:
        """
        Start the trip described by ``selection``; returns the new bus state.

        Idempotent: returns None when the trip is already running (after
        retrying an incomplete rider reset) or was already completed today.
        """
        now = now or datetime.now(timezone.utc)
        trip_id = build_trip_id(selection.route_id, selection.service_date, selection.start_time)
        path = bus_location_path(school_id, bus_id)

        if bus.current_trip_id == trip_id:
            if self.needs_reset(bus, trip_id):
                _, ok = await self.reset_riders(school_id, bus_id, trip_id, selection.route_scope, now)
                if ok:
                    # Flags latched while riders still carried the old trip id
                    await self.locations.update(
                        path,
                        {
                            "studentsResetTripId": trip_id,
                            "allStudentsNotified": False,
                            "noPendingStudents": False,
                        },
                    )
            return None
        if bus.completed_trip_id == trip_id:
            return None

        schedule = selection.schedule
        if schedule is None or schedule.schedule_id != selection.route_id:
            print(f"[trip] bus {bus_id}: schedule {selection.route_id} not loaded; cannot start {trip_id}")
            return None
        if not schedule.stops:
            print(f"[trip] bus {bus_id}: schedule {schedule.schedule_id} has no stops; skipping start")
            return None

        _, ok = await self.reset_riders(school_id, bus_id, trip_id, selection.route_scope, now)

        stops = traversal_order(schedule.stops, selection.direction)
        now_ms = to_epoch_ms(now)
        fields: Dict[str, Any] = {
            "activeRouteId": selection.route_id,
            "tripDirection": selection.direction.value,
            "routeName": selection.route_name,
            "routeScope": selection.route_scope,
            "scheduleStartTime": selection.start_time,
            "scheduleEndTime": selection.end_time,
            "currentTripId": trip_id,
            "isWithinTripWindow": True,
            "remainingStops": [stop.to_dict() for stop in stops],
            "totalStops": len(stops),
            "stopsPassedCount": 0,
            # Zeroed so the ETA engine treats the next update as the initial one
            "lastOlaAPICall": 0,
            "lastETACalculation": 0,
            "lastETAUpdate": None,
            "etaCalculationMethod": None,
            "lastStopPassed": None,
            "lastStopPassedAt": None,
            "tripStartedAt": now_ms,
            "tripEndedAt": None,
            "tripEndReason": None,
            "studentsResetTripId": trip_id if ok else None,
            "allStudentsNotified": False,
            "noPendingStudents": False,
        }
        node = await self.locations.update(path, fields)
        print(
            f"[trip] bus {bus_id}: started {selection.direction.value} trip {trip_id} "
            f"with {len(stops)} stops"
        )
        return BusLocation.from_dict(school_id, bus_id, node)

    async def end_trip(
        self,
        school_id: str,
        bus_id: str,
        bus: BusLocation,
        reason: str,
        now: Optional[datetime] = None,
    ) -> Optional[BusLocation]:
        """Clear trip and route fields. Driver tracking (``isActive``) is left as is."""
        if not (bus.current_trip_id or bus.active_route_id or bus.is_within_trip_window):
            return None
        now = now or datetime.now(timezone.utc)
        fields: Dict[str, Any] = {
            "isWithinTripWindow": False,
            "currentTripId": None,
            "remainingStops": None,
            "totalStops": 0,
            "activeRouteId": None,
            "tripDirection": None,
            "routeName": None,
            "routeScope": None,
            "scheduleStartTime": None,
            "scheduleEndTime": None,
            "lastOlaAPICall": None,
            "lastETAUpdate": None,
        }
        if bus.current_trip_id:
            fields["lastCompletedTripId"] = bus.current_trip_id
            fields["tripEndedAt"] = to_epoch_ms(now)
            fields["tripEndReason"] = reason
        node = await self.locations.update(bus_location_path(school_id, bus_id), fields)
        print(f"[trip] bus {bus_id}: ended trip {bus.current_trip_id or '-'} ({reason})")
        return BusLocation.from_dict(school_id, bus_id, node)


__all__ = ["TripLifecycleManager", "build_trip_id", "traversal_order"]
