import asyncio
import math
import sys
from datetime import datetime, timedelta
from pathlib import Path
from zoneinfo import ZoneInfo

import httpx

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from bus_tracker import BusTripTracker
from document_store import DocumentStore, riders_collection, schedules_collection
from eta_engine import EtaEngine
from geo import R_EARTH_M
from location_store import LocationTreeStore, bus_location_path
from notification_dispatcher import NotificationDispatcher
from push_delivery import PushSender
from routing_client import DirectionsClient
from schedule_resolver import ScheduleResolver
from tracking_config import TrackingConfig
from trip_lifecycle import TripLifecycleManager

IST = ZoneInfo("Asia/Kolkata")
MONDAY_0730 = datetime(2024, 5, 6, 7, 30, tzinfo=IST)
TRIP = "am_2024-05-06_07:00"
BASE_LAT = 12.9
BASE_LNG = 77.6


def _north(meters: float) -> float:
    return BASE_LAT + math.degrees(meters / R_EARTH_M)


class RecordingSender(PushSender):
    def __init__(self):
        self.sent = []

    async def send(self, message):
        self.sent.append(message)
        return f"msg-{len(self.sent)}"


def _legs_handler(request: httpx.Request) -> httpx.Response:
    waypoints = request.url.params.get("waypoints")
    count = (waypoints.count("|") + 2) if waypoints else 1
    legs = [{"duration": 300, "distance": 2000} for _ in range(count)]
    return httpx.Response(200, json={"status": "SUCCESS", "routes": [{"legs": legs}]})


def _build(handler=_legs_handler):
    config = TrackingConfig(timezone="Asia/Kolkata")
    documents = DocumentStore()
    locations = LocationTreeStore()
    routing = DirectionsClient(
        url="https://routing.test/directions",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    sender = RecordingSender()
    tracker = BusTripTracker(
        locations,
        ScheduleResolver(documents, locations, config),
        TripLifecycleManager(documents, locations, config),
        EtaEngine(locations, routing, config),
        NotificationDispatcher(documents, locations, sender, config),
    )
    return tracker, documents, locations, sender


async def _seed(documents, locations, **schedule_fields):
    schedule = {
        "busId": "bus1",
        "direction": "pickup",
        "daysOfWeek": [1, 2, 3, 4, 5],
        "startTime": "07:00",
        "endTime": "09:00",
        "stops": [
            {"name": "Gate", "latitude": _north(0), "longitude": BASE_LNG},
            {"name": "Park", "latitude": _north(2000), "longitude": BASE_LNG},
            {"name": "Lake", "latitude": _north(4000), "longitude": BASE_LNG},
        ],
        "isActive": True,
    }
    schedule.update(schedule_fields)
    await documents.set(schedules_collection("s1"), "am", schedule)
    await documents.set(
        riders_collection("s1"),
        "r1",
        {
            "name": "Asha",
            "assignedBusId": "bus1",
            "stopping": "Lake",
            "notificationPreferenceByTime": 10,
            "fcmToken": "tok-1",
            "notified": True,
        },
    )
    await locations.set(bus_location_path("s1", "bus1"), {"isActive": True})


def test_first_gps_starts_trip_and_computes_etas():
    tracker, documents, locations, sender = _build()

    async def run():
        await _seed(documents, locations)
        outcome = await tracker.ingest_gps("s1", "bus1", _north(-3000), BASE_LNG, now=MONDAY_0730)
        bus = await locations.load_bus("s1", "bus1")
        rider = await documents.get(riders_collection("s1"), "r1")
        return outcome, bus, rider

    outcome, bus, rider = asyncio.run(run())
    assert outcome == "processed"
    assert bus.current_trip_id == TRIP
    assert bus.is_within_trip_window
    assert [s.name for s in bus.remaining_stops] == ["Gate", "Park", "Lake"]
    assert [s.estimated_minutes_of_arrival for s in bus.remaining_stops] == [5.0, 10.0, 15.0]
    assert bus.eta_calculation_method == "routing_provider"
    assert rider["notified"] is False
    assert rider["currentTripId"] == TRIP
    assert sender.sent == []


def test_tick_decrements_and_notifies_once():
    tracker, documents, locations, sender = _build()

    async def run():
        await _seed(documents, locations)
        await tracker.ingest_gps("s1", "bus1", _north(-3000), BASE_LNG, now=MONDAY_0730)
        first = await tracker.handle_clock_tick(MONDAY_0730 + timedelta(minutes=3))
        after_first = len(sender.sent)
        second = await tracker.handle_clock_tick(MONDAY_0730 + timedelta(minutes=6))
        after_second = len(sender.sent)
        await tracker.handle_clock_tick(MONDAY_0730 + timedelta(minutes=7))
        bus = await locations.load_bus("s1", "bus1")
        rider = await documents.get(riders_collection("s1"), "r1")
        return first, after_first, second, after_second, bus, rider

    first, after_first, second, after_second, bus, rider = asyncio.run(run())
    assert first == {"s1/bus1": "processed"}
    assert after_first == 0
    assert after_second == 1
    assert len(sender.sent) == 1
    assert sender.sent[0].data["stopName"] == "Lake"
    assert rider["notified"] is True
    assert rider["lastNotifiedTripId"] == TRIP
    # baseline is untouched by ticks
    assert bus.remaining_stops[2].original_eta == 15.0
    assert bus.remaining_stops[2].estimated_minutes_of_arrival == 8.0


def test_replayed_gps_is_ignored():
    tracker, documents, locations, sender = _build()

    async def run():
        await _seed(documents, locations)
        first = await tracker.ingest_gps("s1", "bus1", _north(-3000), BASE_LNG, now=MONDAY_0730)
        replay = await tracker.ingest_gps(
            "s1", "bus1", _north(-3000), BASE_LNG, now=MONDAY_0730 + timedelta(seconds=5)
        )
        return first, replay

    assert asyncio.run(run()) == ("processed", "unchanged")


def test_gps_at_final_stop_completes_trip_without_restart():
    tracker, documents, locations, sender = _build()

    async def run():
        await _seed(documents, locations)
        await tracker.ingest_gps("s1", "bus1", _north(-3000), BASE_LNG, now=MONDAY_0730)
        # jumps straight to the last stop: Gate and Park are skipped
        at_lake = await tracker.ingest_gps("s1", "bus1", _north(4010), BASE_LNG, now=MONDAY_0730 + timedelta(minutes=2))
        ended = await locations.load_bus("s1", "bus1")
        again = await tracker.ingest_gps("s1", "bus1", _north(4020), BASE_LNG, now=MONDAY_0730 + timedelta(minutes=3))
        still = await locations.load_bus("s1", "bus1")
        return at_lake, ended, again, still

    at_lake, ended, again, still = asyncio.run(run())
    assert at_lake == "trip_complete"
    assert ended.current_trip_id is None
    assert ended.completed_trip_id == TRIP
    assert ended.is_active
    assert not ended.is_within_trip_window
    assert again == "no_trip"
    assert still.current_trip_id is None


def test_stale_gps_marks_bus_inactive_and_fresh_gps_reactivates():
    tracker, documents, locations, sender = _build()

    async def run():
        await _seed(documents, locations)
        await tracker.ingest_gps("s1", "bus1", _north(-3000), BASE_LNG, now=MONDAY_0730)
        summary = await tracker.handle_clock_tick(MONDAY_0730 + timedelta(minutes=11))
        stale = await locations.load_bus("s1", "bus1")
        outcome = await tracker.ingest_gps("s1", "bus1", _north(-2500), BASE_LNG, now=MONDAY_0730 + timedelta(minutes=12))
        revived = await locations.load_bus("s1", "bus1")
        return summary, stale, outcome, revived

    summary, stale, outcome, revived = asyncio.run(run())
    assert summary == {"s1/bus1": "inactive"}
    assert not stale.is_active
    assert stale.inactive_reason == "stale_gps"
    # trip state survives a GPS gap
    assert stale.current_trip_id == TRIP
    assert outcome == "processed"
    assert revived.is_active
    assert revived.inactive_reason is None


def test_tick_ends_trip_after_window_closes():
    tracker, documents, locations, sender = _build()

    async def run():
        await _seed(documents, locations)
        await tracker.ingest_gps("s1", "bus1", _north(-3000), BASE_LNG, now=MONDAY_0730)
        after_window = datetime(2024, 5, 6, 9, 5, tzinfo=IST)
        # keep GPS fresh so the bus is not marked stale first
        await tracker.ingest_gps("s1", "bus1", _north(-2900), BASE_LNG, now=after_window - timedelta(minutes=1))
        summary = await tracker.handle_clock_tick(after_window)
        return summary, await locations.load_bus("s1", "bus1")

    summary, bus = asyncio.run(run())
    assert summary == {"s1/bus1": "no_trip"}
    assert bus.current_trip_id is None
    assert bus.completed_trip_id == TRIP
    assert bus.is_active


def test_inactive_bus_is_left_alone():
    tracker, documents, locations, sender = _build()

    async def run():
        await _seed(documents, locations)
        await tracker.set_tracking("s1", "bus1", False, now=MONDAY_0730)
        outcome = await tracker.ingest_gps("s1", "bus1", _north(-3000), BASE_LNG, now=MONDAY_0730)
        summary = await tracker.handle_clock_tick(MONDAY_0730)
        return outcome, summary, await locations.load_bus("s1", "bus1")

    outcome, summary, bus = asyncio.run(run())
    assert outcome == "inactive"
    assert summary == {"s1/bus1": "inactive"}
    assert bus.current_trip_id is None
    assert bus.inactive_reason == "driver_stopped"


def test_one_failing_bus_does_not_stop_the_tick():
    tracker, documents, locations, sender = _build()

    async def run():
        await _seed(documents, locations)
        await locations.set(bus_location_path("s1", "bus2"), {"isActive": True})
        original = tracker.resolver.determine_active_route

        async def flaky(school_id, bus_id, bus, now=None):
            if bus_id == "bus2":
                raise RuntimeError("cache corrupted")
            return await original(school_id, bus_id, bus, now)

        tracker.resolver.determine_active_route = flaky
        return await tracker.handle_clock_tick(MONDAY_0730)

    summary = asyncio.run(run())
    assert summary["s1/bus2"] == "error"
    assert summary["s1/bus1"] == "processed"


def test_provider_outage_falls_back_and_still_notifies():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    tracker, documents, locations, sender = _build(handler)

    async def run():
        await _seed(documents, locations)
        # 1 km short of Gate, so Lake is 5 km out
        await tracker.ingest_gps("s1", "bus1", _north(-1000), BASE_LNG, now=MONDAY_0730)
        return await locations.load_bus("s1", "bus1")

    bus = asyncio.run(run())
    assert bus.eta_calculation_method == "fallback_distance"
    # 5 km at 8.33 m/s
    assert bus.remaining_stops[-1].estimated_minutes_of_arrival == 10.0
    assert len(sender.sent) == 1


def test_completed_trip_does_not_run_on_a_non_service_day():
    tracker, documents, locations, sender = _build()
    friday_0730 = datetime(2024, 5, 10, 7, 30, tzinfo=IST)

    async def run():
        await _seed(documents, locations)
        done = await tracker.ingest_gps("s1", "bus1", _north(4010), BASE_LNG, now=friday_0730)
        await tracker.handle_clock_tick(friday_0730 + timedelta(minutes=5))
        await tracker.handle_clock_tick(datetime(2024, 5, 10, 9, 30, tzinfo=IST))
        closed = await locations.get(bus_location_path("s1", "bus1"))
        saturday = await tracker.ingest_gps(
            "s1", "bus1", _north(-3000), BASE_LNG, now=datetime(2024, 5, 11, 7, 30, tzinfo=IST)
        )
        return done, closed, saturday, await locations.load_bus("s1", "bus1")

    done, closed, saturday, bus = asyncio.run(run())
    assert done == "trip_complete"
    assert "activeRouteId" not in closed
    assert closed["tripEndReason"] == "completed"
    assert saturday == "no_trip"
    assert bus.current_trip_id is None
    assert bus.completed_trip_id == "am_2024-05-10_07:00"


def test_failed_rider_reset_is_retried_and_rider_still_notified():
    tracker, documents, locations, sender = _build()

    async def run():
        await _seed(documents, locations)
        calls = {"n": 0}
        original_batch = documents.batch

        def flaky_batch():
            batch = original_batch()
            calls["n"] += 1
            if calls["n"] == 1:
                async def boom():
                    raise RuntimeError("store unavailable")
                batch.commit = boom
            return batch

        documents.batch = flaky_batch
        await tracker.ingest_gps("s1", "bus1", _north(-3000), BASE_LNG, now=MONDAY_0730)
        # past the grace period while the rider still carries no trip id
        await tracker.ingest_gps(
            "s1", "bus1", _north(-2900), BASE_LNG, now=MONDAY_0730 + timedelta(seconds=150)
        )
        pending = await locations.load_bus("s1", "bus1")
        await tracker.handle_clock_tick(MONDAY_0730 + timedelta(minutes=3))
        await tracker.handle_clock_tick(MONDAY_0730 + timedelta(minutes=6))
        rider = await documents.get(riders_collection("s1"), "r1")
        return pending, rider

    pending, rider = asyncio.run(run())
    assert pending.students_reset_trip_id is None
    assert not pending.no_pending_students
    assert len(sender.sent) == 1
    assert rider["currentTripId"] == TRIP
    assert rider["notified"] is True


def test_back_to_back_trips_end_before_the_next_starts():
    tracker, documents, locations, sender = _build()

    async def run():
        await _seed(documents, locations, endTime="08:00")
        later = await documents.get(schedules_collection("s1"), "am")
        await documents.set(schedules_collection("s1"), "mid", dict(later, startTime="08:00", endTime="09:00"))
        await tracker.ingest_gps("s1", "bus1", _north(-3000), BASE_LNG, now=MONDAY_0730)
        await tracker.ingest_gps(
            "s1", "bus1", _north(-2900), BASE_LNG, now=datetime(2024, 5, 6, 7, 59, tzinfo=IST)
        )
        at_boundary = await tracker.handle_clock_tick(datetime(2024, 5, 6, 8, 0, tzinfo=IST))
        still_first = await locations.load_bus("s1", "bus1")
        after = await tracker.handle_clock_tick(datetime(2024, 5, 6, 8, 1, tzinfo=IST))
        bus = await locations.load_bus("s1", "bus1")
        rider = await documents.get(riders_collection("s1"), "r1")
        return at_boundary, still_first, after, bus, rider

    at_boundary, still_first, after, bus, rider = asyncio.run(run())
    assert at_boundary == {"s1/bus1": "processed"}
    assert still_first.current_trip_id == TRIP
    assert after == {"s1/bus1": "processed"}
    assert bus.current_trip_id == "mid_2024-05-06_08:00"
    assert bus.completed_trip_id == TRIP
    assert bus.schedule_start_time == "08:00"
    assert [s.name for s in bus.remaining_stops] == ["Gate", "Park", "Lake"]
    assert rider["currentTripId"] == "mid_2024-05-06_08:00"
