import asyncio
import sys
from datetime import date, datetime
from pathlib import Path
from zoneinfo import ZoneInfo

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from bus_models import BusLocation, Direction
from document_store import DocumentStore, schedules_collection
from location_store import LocationTreeStore, bus_location_path, schedule_cache_path
from schedule_resolver import ScheduleResolver, is_within_window, parse_hhmm, service_date
from tracking_config import TrackingConfig

IST = ZoneInfo("Asia/Kolkata")


def _resolver():
    documents = DocumentStore()
    locations = LocationTreeStore()
    return ScheduleResolver(documents, locations, TrackingConfig(timezone="Asia/Kolkata")), documents, locations


async def _add_schedule(documents, schedule_id, **fields):
    doc = {
        "busId": "bus1",
        "direction": "pickup",
        "daysOfWeek": [1, 2, 3, 4, 5],
        "startTime": "07:00",
        "endTime": "09:00",
        "stops": [{"name": "A", "latitude": 12.9, "longitude": 77.6}],
        "isActive": True,
    }
    doc.update(fields)
    await documents.set(schedules_collection("s1"), schedule_id, doc)


def test_overnight_window_membership():
    assert is_within_window("23:50", "23:00", "01:00")
    assert not is_within_window("02:00", "23:00", "01:00")
    assert is_within_window("00:30", "23:00", "01:00")


def test_same_day_window_is_inclusive():
    assert is_within_window("07:00", "07:00", "09:00")
    assert is_within_window("09:00", "07:00", "09:00")
    assert not is_within_window("09:01", "07:00", "09:00")
    assert not is_within_window("bad", "07:00", "09:00")


def test_parse_hhmm_ignores_seconds_and_rejects_garbage():
    assert parse_hhmm("07:30:59") == 450
    assert parse_hhmm("24:00") is None
    assert parse_hhmm("") is None


def test_after_midnight_tail_belongs_to_previous_day():
    late = datetime(2024, 5, 7, 0, 30, tzinfo=IST)
    assert service_date(late, "23:00", "01:00") == date(2024, 5, 6)
    assert service_date(late, "00:00", "02:00") == date(2024, 5, 7)


def test_scan_picks_schedule_for_weekday_and_persists_switch():
    resolver, documents, locations = _resolver()

    async def run():
        await _add_schedule(documents, "am", startTime="07:00", endTime="09:00")
        await _add_schedule(documents, "pm", direction="drop", startTime="15:00", endTime="17:00")
        await locations.set(bus_location_path("s1", "bus1"), {"isActive": True, "noPendingStudents": True})
        bus = await locations.load_bus("s1", "bus1")
        monday_afternoon = datetime(2024, 5, 6, 15, 30, tzinfo=IST)
        selection = await resolver.determine_active_route("s1", "bus1", bus, monday_afternoon)
        stored = await locations.get(bus_location_path("s1", "bus1"))
        return selection, stored

    selection, stored = asyncio.run(run())
    assert selection.route_id == "pm"
    assert selection.direction is Direction.DROP
    assert selection.switched
    assert selection.schedule is not None
    assert selection.service_date == date(2024, 5, 6)
    assert stored["activeRouteId"] == "pm"
    assert stored["tripDirection"] == "drop"
    assert stored["scheduleStartTime"] == "15:00"
    assert stored["noPendingStudents"] is False


def test_no_route_on_weekend_or_outside_windows():
    resolver, documents, locations = _resolver()

    async def run():
        await _add_schedule(documents, "am")
        bus = BusLocation(school_id="s1", bus_id="bus1", is_active=True)
        saturday = await resolver.determine_active_route(
            "s1", "bus1", bus, datetime(2024, 5, 11, 7, 30, tzinfo=IST)
        )
        monday_noon = await resolver.determine_active_route(
            "s1", "bus1", bus, datetime(2024, 5, 6, 12, 0, tzinfo=IST)
        )
        return saturday, monday_noon

    assert asyncio.run(run()) == (None, None)


def test_recorded_route_inside_window_needs_no_store_read():
    resolver, _, locations = _resolver()
    bus = BusLocation(
        school_id="s1",
        bus_id="bus1",
        active_route_id="am",
        current_trip_id="am_2024-05-06_07:00",
        trip_direction=Direction.PICKUP,
        schedule_start_time="07:00",
        schedule_end_time="09:00",
    )

    async def run():
        selection = await resolver.determine_active_route(
            "s1", "bus1", bus, datetime(2024, 5, 6, 8, 0, tzinfo=IST)
        )
        cache = await locations.get(schedule_cache_path("s1", "bus1"))
        return selection, cache

    selection, cache = asyncio.run(run())
    assert selection.route_id == "am"
    assert selection.schedule is None
    assert not selection.switched
    # schedules were never loaded, so nothing was cached
    assert cache is None


def test_recorded_route_without_trip_is_checked_against_schedule_days():
    resolver, documents, _ = _resolver()
    bus = BusLocation(
        school_id="s1",
        bus_id="bus1",
        is_active=True,
        active_route_id="am",
        trip_direction=Direction.PICKUP,
        schedule_start_time="07:00",
        schedule_end_time="09:00",
    )

    async def run():
        await _add_schedule(documents, "am")
        return await resolver.determine_active_route(
            "s1", "bus1", bus, datetime(2024, 5, 11, 7, 30, tzinfo=IST)
        )

    assert asyncio.run(run()) is None


def test_overnight_schedule_matches_on_service_day():
    resolver, documents, locations = _resolver()

    async def run():
        await _add_schedule(documents, "night", startTime="23:00", endTime="01:00", daysOfWeek=["Monday"])
        bus = BusLocation(school_id="s1", bus_id="bus1")
        tuesday_early = await resolver.determine_active_route(
            "s1", "bus1", bus, datetime(2024, 5, 7, 0, 30, tzinfo=IST)
        )
        tuesday_late = await resolver.determine_active_route(
            "s1", "bus1", BusLocation(school_id="s1", bus_id="bus1"), datetime(2024, 5, 7, 23, 30, tzinfo=IST)
        )
        return tuesday_early, tuesday_late

    early, late = asyncio.run(run())
    assert early.route_id == "night"
    assert early.service_date == date(2024, 5, 6)
    assert late is None


def test_route_scope_only_for_multi_route_buses():
    resolver, documents, locations = _resolver()

    async def run():
        await _add_schedule(documents, "r1-am", routeId="R1")
        await _add_schedule(documents, "r2-pm", routeId="R2", startTime="15:00", endTime="17:00")
        bus = BusLocation(school_id="s1", bus_id="bus1")
        return await resolver.determine_active_route(
            "s1", "bus1", bus, datetime(2024, 5, 6, 7, 30, tzinfo=IST)
        )

    selection = asyncio.run(run())
    assert selection.route_id == "r1-am"
    assert selection.route_scope == "R1"


def test_inactive_schedules_and_cache_refresh():
    resolver, documents, locations = _resolver()

    async def run():
        await _add_schedule(documents, "am", isActive=False)
        now = datetime(2024, 5, 6, 7, 30, tzinfo=IST)
        first = await resolver.determine_active_route("s1", "bus1", BusLocation(school_id="s1", bus_id="bus1"), now)
        await _add_schedule(documents, "am", isActive=True)
        # still served from the cache until refreshed
        cached = await resolver.determine_active_route("s1", "bus1", BusLocation(school_id="s1", bus_id="bus1"), now)
        await resolver.refresh_cache("s1", "bus1", now)
        refreshed = await resolver.determine_active_route("s1", "bus1", BusLocation(school_id="s1", bus_id="bus1"), now)
        return first, cached, refreshed

    first, cached, refreshed = asyncio.run(run())
    assert first is None
    assert cached is None
    assert refreshed.route_id == "am"
