"""
Bus, stop, schedule and rider records.

Records are persisted with the camelCase keys the driver and parent apps read
(``remainingStops``, ``estimatedMinutesOfArrival`` ...). The dataclasses here
use snake_case attributes and convert at the store boundary with
``from_dict``/``to_dict``. Timestamps are epoch milliseconds throughout.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional


def to_epoch_ms(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def _parse_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _parse_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _clean_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class Weekday(IntEnum):
    """ISO weekday numbers; Sunday is 7."""
    MON = 1
    TUE = 2
    WED = 3
    THU = 4
    FRI = 5
    SAT = 6
    SUN = 7

    @classmethod
    def from_date(cls, value: date) -> "Weekday":
        return cls(value.isoweekday())


_WEEKDAY_NAMES: Dict[str, Weekday] = {
    "mon": Weekday.MON,
    "tue": Weekday.TUE,
    "wed": Weekday.WED,
    "thu": Weekday.THU,
    "fri": Weekday.FRI,
    "sat": Weekday.SAT,
    "sun": Weekday.SUN,
}


def parse_weekday(value: Any) -> Optional[Weekday]:
    """Parse one legacy day value: 1-7 (0 also means Sunday) or a weekday name."""
    if isinstance(value, Weekday):
        return value
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = int(value)
        if number == 0:
            return Weekday.SUN
        if 1 <= number <= 7:
            return Weekday(number)
        return None
    text = _clean_str(value)
    if text is None:
        return None
    if text.isdigit():
        return parse_weekday(int(text))
    return _WEEKDAY_NAMES.get(text[:3].lower())


def parse_days(raw: Any) -> FrozenSet[Weekday]:
    """
    Normalize the day-of-week shapes found in stored schedules.

    Accepts a list of numbers or names, a single comma separated string, or a
    mapping used as a set (``{"Monday": true, "Tuesday": false}``).
    """
    if raw is None:
        return frozenset()
    items: Iterable[Any]
    if isinstance(raw, Mapping):
        items = [key for key, enabled in raw.items() if enabled]
    elif isinstance(raw, str):
        items = [part for part in raw.split(",")]
    elif isinstance(raw, (list, tuple, set, frozenset)):
        items = raw
    else:
        items = [raw]
    days = set()
    for item in items:
        day = parse_weekday(item)
        if day is not None:
            days.add(day)
    return frozenset(days)


class Direction(str, Enum):
    PICKUP = "pickup"
    DROP = "drop"

    @classmethod
    def parse(cls, value: Any) -> "Direction":
        text = (_clean_str(value) or "").lower()
        if text in ("drop", "dropoff", "drop-off", "evening"):
            return cls.DROP
        return cls.PICKUP


@dataclass
class Position:
    """A single GPS fix reported by the driver app."""
    lat: float
    lng: float
    timestamp: int  # epoch ms of the fix
    speed_mps: Optional[float] = None
    source: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> Optional["Position"]:
        if not isinstance(raw, Mapping):
            return None
        lat = _parse_float(raw.get("latitude", raw.get("lat")))
        lng = _parse_float(raw.get("longitude", raw.get("lng")))
        if lat is None or lng is None:
            return None
        return cls(
            lat=lat,
            lng=lng,
            timestamp=_parse_int(raw.get("timestamp")) or 0,
            speed_mps=_parse_float(raw.get("speed")),
            source=_clean_str(raw.get("source")),
        )


@dataclass
class Stop:
    name: str
    latitude: float
    longitude: float
    estimated_minutes_of_arrival: Optional[float] = None
    original_eta: Optional[float] = None  # baseline from the last provider call
    distance_meters: Optional[float] = None
    eta: Optional[int] = None  # absolute arrival estimate, epoch ms
    decremented: bool = False

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> Optional["Stop"]:
        if not isinstance(raw, Mapping):
            return None
        lat = _parse_float(raw.get("latitude", raw.get("lat")))
        lng = _parse_float(raw.get("longitude", raw.get("lng")))
        if lat is None or lng is None:
            return None
        return cls(
            name=_clean_str(raw.get("name")) or "",
            latitude=lat,
            longitude=lng,
            estimated_minutes_of_arrival=_parse_float(raw.get("estimatedMinutesOfArrival")),
            original_eta=_parse_float(raw.get("originalETA")),
            distance_meters=_parse_float(raw.get("distanceMeters")),
            eta=_parse_int(raw.get("eta")),
            decremented=bool(raw.get("decremented", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "estimatedMinutesOfArrival": self.estimated_minutes_of_arrival,
            "originalETA": self.original_eta,
            "distanceMeters": self.distance_meters,
            "eta": self.eta,
            "decremented": self.decremented,
        }

    def without_estimates(self) -> "Stop":
        return Stop(name=self.name, latitude=self.latitude, longitude=self.longitude)


def parse_stops(raw: Any) -> List[Stop]:
    """Parse a stored stop list; the tree store may hand back an index-keyed dict."""
    if isinstance(raw, Mapping):
        try:
            raw = [raw[key] for key in sorted(raw, key=lambda k: int(k))]
        except (TypeError, ValueError):
            raw = list(raw.values())
    if not isinstance(raw, (list, tuple)):
        return []
    stops: List[Stop] = []
    for entry in raw:
        stop = Stop.from_dict(entry) if entry is not None else None
        if stop is not None:
            stops.append(stop)
    return stops


@dataclass
class BusLocation:
    """Live state of one bus, stored under ``bus_locations/{school}/{bus}``."""
    school_id: str
    bus_id: str
    position: Optional[Position] = None
    is_active: bool = False
    is_within_trip_window: bool = False
    active_route_id: Optional[str] = None
    trip_direction: Optional[Direction] = None
    route_name: Optional[str] = None
    route_scope: Optional[str] = None  # assignedRouteId filter on multi-route buses
    current_trip_id: Optional[str] = None
    schedule_start_time: Optional[str] = None
    schedule_end_time: Optional[str] = None
    remaining_stops: List[Stop] = field(default_factory=list)
    total_stops: int = 0
    stops_passed_count: int = 0
    last_provider_call: Optional[int] = None
    last_eta_update: Optional[int] = None
    last_update_timestamp: Optional[int] = None
    eta_calculation_method: Optional[str] = None
    trip_started_at: Optional[int] = None
    students_reset_trip_id: Optional[str] = None
    completed_trip_id: Optional[str] = None
    all_students_notified: bool = False
    no_pending_students: bool = False
    inactive_reason: Optional[str] = None

    @classmethod
    def from_dict(cls, school_id: str, bus_id: str, raw: Optional[Mapping[str, Any]]) -> "BusLocation":
        raw = raw if isinstance(raw, Mapping) else {}
        direction = raw.get("tripDirection")
        return cls(
            school_id=school_id,
            bus_id=bus_id,
            position=Position.from_dict(raw),
            is_active=bool(raw.get("isActive", False)),
            is_within_trip_window=bool(raw.get("isWithinTripWindow", False)),
            active_route_id=_clean_str(raw.get("activeRouteId")),
            trip_direction=Direction.parse(direction) if direction else None,
            route_name=_clean_str(raw.get("routeName")),
            route_scope=_clean_str(raw.get("routeScope")),
            current_trip_id=_clean_str(raw.get("currentTripId")),
            schedule_start_time=_clean_str(raw.get("scheduleStartTime")),
            schedule_end_time=_clean_str(raw.get("scheduleEndTime")),
            remaining_stops=parse_stops(raw.get("remainingStops")),
            total_stops=_parse_int(raw.get("totalStops")) or 0,
            stops_passed_count=_parse_int(raw.get("stopsPassedCount")) or 0,
            last_provider_call=_parse_int(raw.get("lastOlaAPICall")) or None,
            last_eta_update=_parse_int(raw.get("lastETAUpdate")) or None,
            last_update_timestamp=_parse_int(raw.get("lastUpdateTimestamp")),
            eta_calculation_method=_clean_str(raw.get("etaCalculationMethod")),
            trip_started_at=_parse_int(raw.get("tripStartedAt")),
            students_reset_trip_id=_clean_str(raw.get("studentsResetTripId")),
            completed_trip_id=_clean_str(raw.get("lastCompletedTripId")),
            all_students_notified=bool(raw.get("allStudentsNotified", False)),
            no_pending_students=bool(raw.get("noPendingStudents", False)),
            inactive_reason=_clean_str(raw.get("inactiveReason")),
        )

    def has_active_trip(self) -> bool:
        return bool(self.current_trip_id)


@dataclass
class RouteSchedule:
    """Admin-authored timetable for one route direction of a bus."""
    schedule_id: str
    bus_id: str
    direction: Direction
    days_of_week: FrozenSet[Weekday]
    start_time: str
    end_time: str
    stops: List[Stop] = field(default_factory=list)  # pickup order as authored
    is_active: bool = True
    route_id: Optional[str] = None
    route_name: Optional[str] = None

    @classmethod
    def from_dict(cls, schedule_id: str, raw: Mapping[str, Any]) -> Optional["RouteSchedule"]:
        if not isinstance(raw, Mapping):
            return None
        start = _clean_str(raw.get("startTime"))
        end = _clean_str(raw.get("endTime"))
        if start is None or end is None:
            return None
        return cls(
            schedule_id=str(schedule_id),
            bus_id=_clean_str(raw.get("busId")) or "",
            direction=Direction.parse(raw.get("direction")),
            days_of_week=parse_days(raw.get("daysOfWeek")),
            start_time=start,
            end_time=end,
            stops=parse_stops(raw.get("stops")),
            is_active=bool(raw.get("isActive", True)),
            route_id=_clean_str(raw.get("routeId")),
            route_name=_clean_str(raw.get("routeName")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "busId": self.bus_id,
            "direction": self.direction.value,
            "daysOfWeek": sorted(int(day) for day in self.days_of_week),
            "startTime": self.start_time,
            "endTime": self.end_time,
            "stops": [
                {"name": s.name, "latitude": s.latitude, "longitude": s.longitude}
                for s in self.stops
            ],
            "isActive": self.is_active,
            "routeId": self.route_id,
            "routeName": self.route_name,
        }


@dataclass
class Rider:
    rider_id: str
    assigned_bus_id: Optional[str] = None
    assigned_route_id: Optional[str] = None
    name: Optional[str] = None
    stopping: Optional[str] = None
    stop_lat: Optional[float] = None
    stop_lng: Optional[float] = None
    notification_preference_by_time: Optional[float] = None
    notified: bool = False
    current_trip_id: Optional[str] = None
    last_notified_trip_id: Optional[str] = None
    last_notified_at: Optional[int] = None
    fcm_token: Optional[str] = None
    notification_type: Optional[str] = None
    language_preference: Optional[str] = None

    @classmethod
    def from_dict(cls, rider_id: str, raw: Mapping[str, Any]) -> "Rider":
        location = raw.get("stopLocation")
        stop_lat = stop_lng = None
        if isinstance(location, Mapping):
            stop_lat = _parse_float(location.get("latitude", location.get("lat")))
            stop_lng = _parse_float(location.get("longitude", location.get("lng")))
        return cls(
            rider_id=str(rider_id),
            assigned_bus_id=_clean_str(raw.get("assignedBusId")),
            assigned_route_id=_clean_str(raw.get("assignedRouteId")),
            name=_clean_str(raw.get("name")),
            stopping=_clean_str(raw.get("stopping")),
            stop_lat=stop_lat,
            stop_lng=stop_lng,
            notification_preference_by_time=_parse_float(raw.get("notificationPreferenceByTime")),
            notified=bool(raw.get("notified", False)),
            current_trip_id=_clean_str(raw.get("currentTripId")),
            last_notified_trip_id=_clean_str(raw.get("lastNotifiedTripId")),
            last_notified_at=_parse_int(raw.get("lastNotifiedAt")),
            fcm_token=_clean_str(raw.get("fcmToken")),
            notification_type=_clean_str(raw.get("notificationType")),
            language_preference=_clean_str(raw.get("languagePreference")),
        )

    @property
    def label(self) -> str:
        return self.name or self.rider_id

    def has_stop_location(self) -> bool:
        return self.stop_lat is not None and self.stop_lng is not None

    def already_notified_for(self, trip_id: Optional[str]) -> bool:
        return (
            trip_id is not None
            and self.last_notified_trip_id == trip_id
            and self.last_notified_at is not None
        )


__all__ = [
    "BusLocation",
    "Direction",
    "Position",
    "Rider",
    "RouteSchedule",
    "Stop",
    "Weekday",
    "parse_days",
    "parse_stops",
    "parse_weekday",
    "to_epoch_ms",
]
