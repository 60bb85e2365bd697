"""
Arrival notifications for riders on the current trip.

A rider is a candidate when ``assignedBusId`` matches, ``notified`` is false and
``currentTripId`` equals the bus's trip. Riders are marked notified only after
their push is accepted; failed sends stay armed and are retried on the next
trigger.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from bus_models import BusLocation, Rider, Stop, to_epoch_ms
from document_store import DocumentStore, riders_collection
from geo import haversine_m, nearest_within
from location_store import LocationTreeStore, bus_location_path
from push_delivery import PushDeliveryError, PushMessage, PushSender
from tracking_config import TrackingConfig

NOTIFICATION_TITLE = "Bus Approaching!"
VOICE_TYPE = "voice notification"


def match_rider_stop(
    rider: Rider, stops: Sequence[Stop], radius_m: float
) -> Optional[Tuple[int, Stop]]:
    """Rider's stop by case-insensitive name, else the nearest stop within ``radius_m``."""
    if rider.stopping:
        wanted = rider.stopping.strip().lower()
        for index, stop in enumerate(stops):
            if stop.name.strip().lower() == wanted:
                return index, stop
    if rider.has_stop_location():
        index = nearest_within(
            rider.stop_lat,
            rider.stop_lng,
            [(stop.latitude, stop.longitude) for stop in stops],
            radius_m,
        )
        if index is not None:
            return index, stops[index]
    return None


def build_push(rider: Rider, bus: BusLocation, stop: Stop) -> PushMessage:
    minutes = stop.estimated_minutes_of_arrival or 0.0
    body = f"Bus will arrive at {stop.name} in approximately {minutes:.0f} minutes."
    voice = (rider.notification_type or "").strip().lower() == VOICE_TYPE
    language = rider.language_preference or "english"
    return PushMessage(
        token=rider.fcm_token or "",
        title=NOTIFICATION_TITLE,
        body=body,
        data={
            "type": "bus_arrival",
            "title": NOTIFICATION_TITLE,
            "body": body,
            "studentId": rider.rider_id,
            "busId": bus.bus_id,
            "tripId": bus.current_trip_id or "",
            "stopName": stop.name,
            "eta": f"{minutes:.0f}",
            "notificationType": "Voice Notification" if voice else "Text Notification",
            "selectedLanguage": language,
        },
        voice=voice,
        language=language,
    )


@dataclass
class DispatchResult:
    candidates: int = 0
    sent: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)
    waiting: int = 0


class NotificationDispatcher:
    def __init__(
        self,
        documents: DocumentStore,
        locations: LocationTreeStore,
        sender: PushSender,
        config: TrackingConfig,
    ):
        self.documents = documents
        self.locations = locations
        self.sender = sender
        self.config = config

    def should_process(self, bus: BusLocation) -> bool:
        return bool(
            bus.remaining_stops
            and bus.current_trip_id
            and not bus.all_students_notified
            and not bus.no_pending_students
        )

    async def _candidates(self, school_id: str, bus: BusLocation) -> List[Rider]:
        filters: Dict[str, Any] = {
            "assignedBusId": bus.bus_id,
            "notified": False,
            "currentTripId": bus.current_trip_id,
        }
        if bus.route_scope:
            filters["assignedRouteId"] = bus.route_scope
        docs = await self.documents.query(riders_collection(school_id), filters)
        return [Rider.from_dict(doc_id, doc) for doc_id, doc in docs]

    def _skip_reason(self, rider: Rider, bus: BusLocation) -> Optional[str]:
        if rider.already_notified_for(bus.current_trip_id):
            return "already notified for this trip"
        if not rider.fcm_token:
            return "no push token"
        if rider.notification_preference_by_time is None:
            return "no notification threshold"
        if not rider.stopping and not rider.has_stop_location():
            return "no stop name or location"
        return None

    async def _send(self, rider: Rider, message: PushMessage) -> str:
        try:
            return await self.sender.send(message)
        except PushDeliveryError as exc:
            hint = " (token invalid)" if exc.invalid_token else ""
            print(f"[notify] push to {rider.label} failed{hint}: {exc}")
            raise

    async def _mark_notified(
        self, school_id: str, trip_id: str, rider_ids: Sequence[str], now_ms: int
    ) -> int:
        collection = riders_collection(school_id)
        fields = {"notified": True, "lastNotifiedTripId": trip_id, "lastNotifiedAt": now_ms}
        marked = 0
        limit = self.config.batch_limit
        for offset in range(0, len(rider_ids), limit):
            batch = self.documents.batch()
            for rider_id in rider_ids[offset:offset + limit]:
                batch.update(collection, rider_id, fields)
            try:
                marked += await batch.commit()
            except Exception as exc:
                print(f"[notify] failed to mark {len(rider_ids[offset:offset + limit])} riders notified: {exc}")
        return marked

    async def process_notifications(
        self,
        school_id: str,
        bus_id: str,
        bus: BusLocation,
        now: Optional[datetime] = None,
    ) -> DispatchResult:
        """Send arrival pushes to riders whose stop is within their threshold."""
        result = DispatchResult()
        if not self.should_process(bus):
            return result
        now = now or datetime.now(timezone.utc)
        now_ms = to_epoch_ms(now)
        trip_id = bus.current_trip_id

        riders = await self._candidates(school_id, bus)
        result.candidates = len(riders)

        queued: List[Tuple[Rider, PushMessage]] = []
        for rider in riders:
            reason = self._skip_reason(rider, bus)
            if reason is None:
                match = match_rider_stop(rider, bus.remaining_stops, self.config.rider_stop_match_m)
                if match is None:
                    reason = "stop not on remaining route"
                elif match[1].estimated_minutes_of_arrival is None:
                    reason = "stop has no estimate yet"
            if reason is not None:
                result.skipped[rider.rider_id] = reason
                print(f"[notify] bus {bus_id}: skipping {rider.label}: {reason}")
                continue
            _, stop = match
            if stop.estimated_minutes_of_arrival <= rider.notification_preference_by_time:
                queued.append((rider, build_push(rider, bus, stop)))
            else:
                result.waiting += 1

        if queued:
            outcomes = await asyncio.gather(
                *(self._send(rider, message) for rider, message in queued),
                return_exceptions=True,
            )
            for (rider, _), outcome in zip(queued, outcomes):
                if isinstance(outcome, BaseException):
                    if not isinstance(outcome, PushDeliveryError):
                        print(f"[notify] push to {rider.label} raised {outcome!r}")
                    result.failed.append(rider.rider_id)
                else:
                    result.sent.append(rider.rider_id)
            if result.sent:
                await self._mark_notified(school_id, trip_id, result.sent, now_ms)
            print(
                f"[notify] bus {bus_id}: sent {len(result.sent)}/{len(queued)} pushes "
                f"for trip {trip_id}"
            )

        await self._update_flags(school_id, bus_id, bus, result, now_ms)
        return result

    async def _update_flags(
        self,
        school_id: str,
        bus_id: str,
        bus: BusLocation,
        result: DispatchResult,
        now_ms: int,
    ) -> None:
        # Right after a trip starts the reset may still be in flight
        started = bus.trip_started_at or 0
        if not started or (now_ms - started) / 1000.0 <= self.config.no_pending_grace_s:
            return
        fields: Dict[str, Any] = {}
        reset_done = bus.students_reset_trip_id == bus.current_trip_id
        if result.candidates == 0 and reset_done:
            fields["noPendingStudents"] = True
        elif (
            result.sent
            and not result.failed
            and not result.waiting
            and not result.skipped
            and len(result.sent) == result.candidates
        ):
            fields["allStudentsNotified"] = True
        if fields:
            await self.locations.update(bus_location_path(school_id, bus_id), fields)
            print(f"[notify] bus {bus_id}: no riders left to notify for trip {bus.current_trip_id}")

    async def diagnose_rider(self, school_id: str, rider_id: str) -> Dict[str, Any]:
        """Report every precondition for one rider's arrival push."""
        doc = await self.documents.get(riders_collection(school_id), rider_id)
        if doc is None:
            return {"riderId": rider_id, "found": False, "wouldNotify": False, "issues": ["rider not found"]}
        rider = Rider.from_dict(rider_id, doc)
        issues: List[str] = []
        report: Dict[str, Any] = {
            "riderId": rider_id,
            "found": True,
            "name": rider.name,
            "assignedBusId": rider.assigned_bus_id,
            "hasToken": bool(rider.fcm_token),
            "threshold": rider.notification_preference_by_time,
            "notified": rider.notified,
            "riderTripId": rider.current_trip_id,
        }
        if not rider.fcm_token:
            issues.append("no push token")
        if rider.notification_preference_by_time is None:
            issues.append("no notification threshold")
        if rider.notified:
            issues.append("already notified")
        if not rider.assigned_bus_id:
            issues.append("no assigned bus")
            report.update({"issues": issues, "wouldNotify": False})
            return report

        bus = await self.locations.load_bus(school_id, rider.assigned_bus_id)
        report.update(
            {
                "busTripId": bus.current_trip_id,
                "busActive": bus.is_active,
                "withinTripWindow": bus.is_within_trip_window,
                "tripMatches": bool(bus.current_trip_id) and rider.current_trip_id == bus.current_trip_id,
                "etaCalculationMethod": bus.eta_calculation_method,
            }
        )
        if not bus.current_trip_id:
            issues.append("bus has no active trip")
        elif rider.current_trip_id != bus.current_trip_id:
            issues.append("rider not reset for the current trip")
        if bus.route_scope and rider.assigned_route_id != bus.route_scope:
            issues.append(f"rider is not on route {bus.route_scope}")
        if rider.already_notified_for(bus.current_trip_id):
            issues.append("already notified for this trip")

        match = match_rider_stop(rider, bus.remaining_stops, self.config.rider_stop_match_m)
        if match is None:
            issues.append("stop not on remaining route")
            report["stop"] = None
        else:
            _, stop = match
            entry: Dict[str, Any] = {
                "name": stop.name,
                "eta": stop.estimated_minutes_of_arrival,
            }
            if rider.has_stop_location():
                entry["distanceFromRiderM"] = round(
                    haversine_m(rider.stop_lat, rider.stop_lng, stop.latitude, stop.longitude)
                )
            report["stop"] = entry
            if stop.estimated_minutes_of_arrival is None:
                issues.append("stop has no estimate yet")
            elif (
                rider.notification_preference_by_time is not None
                and stop.estimated_minutes_of_arrival > rider.notification_preference_by_time
            ):
                issues.append("bus not yet within threshold")

        report["issues"] = issues
        report["wouldNotify"] = not issues
        return report


__all__ = ["DispatchResult", "NotificationDispatcher", "build_push", "match_rider_stop"]
