"""Directions API client used for per-stop travel times.

Submits the bus position as origin, the final stop as destination and every
stop in between as a waypoint, and returns one leg per stop.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

import httpx

DIRECTIONS_URL = os.getenv(
    "DIRECTIONS_URL", "https://api.olamaps.io/routing/v1/directions"
).strip()
DIRECTIONS_API_KEY = (os.getenv("DIRECTIONS_API_KEY") or "").strip()
DIRECTIONS_TIMEOUT_S = float(os.getenv("PROVIDER_TIMEOUT_S", "15"))

_SUCCESS_STATUSES = {"SUCCESS", "OK"}

LatLng = Tuple[float, float]


class RoutingProviderError(RuntimeError):
    """The directions provider timed out, failed, or returned an unusable body."""


@dataclass
class RouteLeg:
    duration_s: float
    distance_m: float


def _fmt(point: LatLng) -> str:
    return f"{point[0]},{point[1]}"


def _parse_number(value: Any) -> Optional[float]:
    # Some providers wrap values as {"value": 123, "text": "2 mins"}
    if isinstance(value, dict):
        value = value.get("value")
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_directions_legs(payload: Any, expected_legs: int) -> List[RouteLeg]:
    if not isinstance(payload, dict):
        raise RoutingProviderError("directions response is not an object")
    status = payload.get("status")
    if status is not None and str(status).upper() not in _SUCCESS_STATUSES:
        raise RoutingProviderError(f"directions status {status}")
    routes = payload.get("routes")
    if not isinstance(routes, list) or not routes or not isinstance(routes[0], dict):
        raise RoutingProviderError("directions response has no routes")
    raw_legs = routes[0].get("legs")
    if not isinstance(raw_legs, list):
        raise RoutingProviderError("directions route has no legs")
    legs: List[RouteLeg] = []
    for raw in raw_legs:
        if not isinstance(raw, dict):
            raise RoutingProviderError("malformed leg")
        duration = _parse_number(raw.get("duration"))
        distance = _parse_number(raw.get("distance"))
        if duration is None or duration < 0:
            raise RoutingProviderError("leg without duration")
        legs.append(RouteLeg(duration_s=duration, distance_m=distance or 0.0))
    if len(legs) != expected_legs:
        raise RoutingProviderError(
            f"expected {expected_legs} legs, provider returned {len(legs)}"
        )
    return legs


class DirectionsClient:
    """Thin async wrapper around the provider's directions endpoint."""

    def __init__(
        self,
        *,
        url: str = DIRECTIONS_URL,
        api_key: str = DIRECTIONS_API_KEY,
        timeout_s: float = DIRECTIONS_TIMEOUT_S,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.api_key = api_key
        self.timeout_s = timeout_s
        self._client = client

    async def directions(
        self,
        origin: LatLng,
        destination: LatLng,
        waypoints: Sequence[LatLng] = (),
        mode: str = "driving",
    ) -> List[RouteLeg]:
        params = {
            "origin": _fmt(origin),
            "destination": _fmt(destination),
            "mode": mode,
        }
        if waypoints:
            params["waypoints"] = "|".join(_fmt(p) for p in waypoints)
        if self.api_key:
            params["api_key"] = self.api_key

        try:
            if self._client is not None:
                response = await self._client.post(self.url, params=params, timeout=self.timeout_s)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_s) as client:
                    response = await client.post(self.url, params=params)
            response.raise_for_status()
            payload = response.json()
        except httpx.TimeoutException as exc:
            raise RoutingProviderError(f"directions timed out after {self.timeout_s}s") from exc
        except httpx.HTTPStatusError as exc:
            raise RoutingProviderError(
                f"directions returned HTTP {exc.response.status_code}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise RoutingProviderError(f"directions request failed: {exc}") from exc

        return parse_directions_legs(payload, expected_legs=len(waypoints) + 1)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()


__all__ = ["DirectionsClient", "RouteLeg", "RoutingProviderError", "parse_directions_legs"]
