"""
Per-stop arrival estimates for an active trip.

Three clocks live on the bus record:

    lastOlaAPICall       when estimates were last computed (provider or fallback);
                         the decrement baseline
    lastETAUpdate        when remainingStops estimates were last written
    lastUpdateTimestamp  when the driver app last reported GPS

Fresh estimates are written to both ``estimatedMinutesOfArrival`` and
``originalETA``. Between computations only the clock tick decrements, and it
always subtracts whole elapsed minutes from ``originalETA`` so repeated ticks
never compound truncation error.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

from bus_models import BusLocation, Position, Stop, to_epoch_ms
from geo import haversine_m, is_within_radius
from location_store import LocationTreeStore, bus_location_path
from routing_client import DirectionsClient, RouteLeg, RoutingProviderError
from tracking_config import TrackingConfig

METHOD_PROVIDER = "routing_provider"
METHOD_FALLBACK = "fallback_distance"


def _round_minutes(value: float) -> float:
    return round(max(0.0, value), 1)


def accumulate_legs(stops: Sequence[Stop], legs: Sequence[RouteLeg], now_ms: int) -> List[Stop]:
    """Turn per-leg durations into cumulative minutes to each stop."""
    if len(legs) != len(stops):
        raise ValueError(f"{len(legs)} legs for {len(stops)} stops")
    total_s = 0.0
    total_m = 0.0
    estimated: List[Stop] = []
    for stop, leg in zip(stops, legs):
        total_s += leg.duration_s
        total_m += leg.distance_m
        minutes = _round_minutes(total_s / 60.0)
        estimated.append(
            replace(
                stop,
                estimated_minutes_of_arrival=minutes,
                original_eta=minutes,
                distance_meters=round(total_m),
                eta=now_ms + int(total_s * 1000),
                decremented=False,
            )
        )
    return estimated


def fallback_estimates(
    position: Position, stops: Sequence[Stop], speed_mps: float, now_ms: int
) -> List[Stop]:
    """Straight-line distance at a constant speed, chained stop to stop."""
    total_m = 0.0
    prev_lat, prev_lng = position.lat, position.lng
    estimated: List[Stop] = []
    for stop in stops:
        total_m += haversine_m(prev_lat, prev_lng, stop.latitude, stop.longitude)
        prev_lat, prev_lng = stop.latitude, stop.longitude
        seconds = total_m / speed_mps
        minutes = _round_minutes(seconds / 60.0)
        estimated.append(
            replace(
                stop,
                estimated_minutes_of_arrival=minutes,
                original_eta=minutes,
                distance_meters=round(total_m),
                eta=now_ms + int(seconds * 1000),
                decremented=False,
            )
        )
    return estimated


def elapsed_whole_minutes(since_ms: Optional[int], now_ms: int) -> int:
    if not since_ms or now_ms <= since_ms:
        return 0
    return int((now_ms - since_ms) // 60000)


def decremented_stops(stops: Sequence[Stop], elapsed_minutes: int) -> List[Stop]:
    """
    Estimates ``elapsed_minutes`` after the baseline was computed.

    Stops without an ``original_eta`` are returned unchanged.
    """
    updated: List[Stop] = []
    for stop in stops:
        if stop.original_eta is None:
            updated.append(stop)
            continue
        updated.append(
            replace(
                stop,
                estimated_minutes_of_arrival=_round_minutes(stop.original_eta - elapsed_minutes),
                decremented=elapsed_minutes > 0,
            )
        )
    return updated


def find_arrival_index(
    position: Position, stops: Sequence[Stop], radius_m: float, probe_depth: int
) -> Optional[int]:
    """
    Index of the stop the bus is at, or None.

    Only the front stop and the next ``probe_depth`` stops are considered; a
    hit beyond index 0 means every earlier stop was skipped.
    """
    if not stops:
        return None
    window = stops[: probe_depth + 1]
    for index, stop in enumerate(window):
        if is_within_radius(position.lat, position.lng, stop.latitude, stop.longitude, radius_m):
            return index
    return None


@dataclass
class StopArrival:
    passed: List[Stop]
    bus: BusLocation
    skipped: List[Stop] = field(default_factory=list)

    @property
    def trip_complete(self) -> bool:
        return not self.bus.remaining_stops


class EtaEngine:
    def __init__(
        self,
        locations: LocationTreeStore,
        routing: DirectionsClient,
        config: TrackingConfig,
    ):
        self.locations = locations
        self.routing = routing
        self.config = config

    def should_call_provider(self, bus: BusLocation, now: Optional[datetime] = None) -> bool:
        """True when estimates are missing or the last computation is old enough."""
        if not bus.remaining_stops or bus.position is None:
            return False
        if not bus.last_provider_call:
            return True
        if any(stop.original_eta is None for stop in bus.remaining_stops):
            return True
        now = now or datetime.now(timezone.utc)
        age_s = (to_epoch_ms(now) - bus.last_provider_call) / 1000.0
        if bus.eta_calculation_method == METHOD_FALLBACK:
            return age_s >= self.config.provider_retry_s
        return age_s >= self.config.provider_refresh_s

    async def compute_estimates(
        self, bus_id: str, position: Position, stops: Sequence[Stop], now_ms: int
    ) -> Tuple[List[Stop], str]:
        origin = (position.lat, position.lng)
        points = [(stop.latitude, stop.longitude) for stop in stops]
        try:
            legs = await self.routing.directions(origin, points[-1], points[:-1])
            return accumulate_legs(stops, legs, now_ms), METHOD_PROVIDER
        except RoutingProviderError as exc:
            print(f"[eta] bus {bus_id}: routing provider failed, using distance fallback: {exc}")
        return fallback_estimates(position, stops, self.config.fallback_speed_mps, now_ms), METHOD_FALLBACK

    async def refresh_etas(
        self,
        school_id: str,
        bus_id: str,
        bus: BusLocation,
        now: Optional[datetime] = None,
    ) -> Optional[BusLocation]:
        """Recompute every remaining stop's estimate from the current position."""
        if bus.position is None:
            print(f"[eta] bus {bus_id}: no position; skipping refresh")
            return None
        if not bus.remaining_stops:
            return None
        now = now or datetime.now(timezone.utc)
        now_ms = to_epoch_ms(now)
        stops, method = await self.compute_estimates(bus_id, bus.position, bus.remaining_stops, now_ms)
        node = await self.locations.update(
            bus_location_path(school_id, bus_id),
            {
                "remainingStops": [stop.to_dict() for stop in stops],
                "lastOlaAPICall": now_ms,
                "lastETAUpdate": now_ms,
                "lastETACalculation": now_ms,
                "etaCalculationMethod": method,
            },
        )
        first = stops[0].estimated_minutes_of_arrival
        print(f"[eta] bus {bus_id}: {len(stops)} stops via {method}, next stop in {first} min")
        return BusLocation.from_dict(school_id, bus_id, node)

    async def decrement_etas(
        self,
        school_id: str,
        bus_id: str,
        bus: BusLocation,
        now: Optional[datetime] = None,
    ) -> Optional[BusLocation]:
        """Clock-tick decrement from the stored baseline. Not called on GPS writes."""
        if not bus.remaining_stops or not bus.last_provider_call:
            return None
        now = now or datetime.now(timezone.utc)
        now_ms = to_epoch_ms(now)
        elapsed = elapsed_whole_minutes(bus.last_provider_call, now_ms)
        stops = decremented_stops(bus.remaining_stops, elapsed)
        before = [s.estimated_minutes_of_arrival for s in bus.remaining_stops]
        after = [s.estimated_minutes_of_arrival for s in stops]
        if before == after:
            return None
        node = await self.locations.update(
            bus_location_path(school_id, bus_id),
            {
                "remainingStops": [stop.to_dict() for stop in stops],
                "lastETAUpdate": now_ms,
            },
        )
        print(f"[eta] bus {bus_id}: decremented {elapsed} min since last calculation")
        return BusLocation.from_dict(school_id, bus_id, node)

    async def detect_stop_arrival(
        self,
        school_id: str,
        bus_id: str,
        bus: BusLocation,
        now: Optional[datetime] = None,
    ) -> Optional[StopArrival]:
        """Drop the reached stop (and any it skipped past) from the front of the list."""
        if bus.position is None or not bus.remaining_stops:
            return None
        index = find_arrival_index(
            bus.position,
            bus.remaining_stops,
            self.config.stop_proximity_m,
            self.config.skip_probe_depth,
        )
        if index is None:
            return None
        now = now or datetime.now(timezone.utc)
        passed = bus.remaining_stops[: index + 1]
        remaining = bus.remaining_stops[index + 1:]
        node = await self.locations.update(
            bus_location_path(school_id, bus_id),
            {
                "remainingStops": [stop.to_dict() for stop in remaining],
                "stopsPassedCount": bus.stops_passed_count + len(passed),
                "lastStopPassed": passed[-1].name,
                "lastStopPassedAt": to_epoch_ms(now),
            },
        )
        if index:
            skipped_names = ", ".join(stop.name for stop in passed[:-1])
            print(f"[eta] bus {bus_id}: reached {passed[-1].name}, skipped {skipped_names}")
        else:
            print(f"[eta] bus {bus_id}: reached {passed[-1].name}, {len(remaining)} stops left")
        return StopArrival(
            passed=passed,
            bus=BusLocation.from_dict(school_id, bus_id, node),
            skipped=passed[:-1],
        )


__all__ = [
    "EtaEngine",
    "METHOD_FALLBACK",
    "METHOD_PROVIDER",
    "StopArrival",
    "accumulate_legs",
    "decremented_stops",
    "elapsed_whole_minutes",
    "fallback_estimates",
    "find_arrival_index",
]
