import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx


DIRECTIONS_API_URL = "https://maps.googleapis.com/maps/api/directions/json"


@dataclass
class RouteResult:
    distance_meters: float
    duration_seconds: float


def sum_route_legs(data: Dict[str, Any]) -> Optional[RouteResult]:
    """Total distance/duration over every leg of the first route, or None."""
    if not data or data.get("status") != "OK":
        return None
    routes = data.get("routes") or []
    if not routes:
        return None
    distance = 0.0
    duration = 0.0
    for leg in routes[0].get("legs") or []:
        distance += (leg.get("distance") or {}).get("value") or 0
        duration += (leg.get("duration") or {}).get("value") or 0
    return RouteResult(distance_meters=distance, duration_seconds=duration)


class GoogleDirectionsClient:
    """Driving-route lookups used to fill in a trip's distance before upload."""

    def __init__(self, api_key: Optional[str] = None, timeout: float = 15.0,
                 client: Optional[httpx.AsyncClient] = None):
        key = api_key or os.getenv("GOOGLE_MAPS_API_KEY", "")
        if not key:
            raise RuntimeError("GOOGLE_MAPS_API_KEY is not configured")
        self._key = key
        self._timeout = timeout
        self._client = client

    async def _request(self, params: Dict[str, Any]) -> Dict[str, Any]:
        params = dict(params, key=self._key)
        try:
            if self._client is not None:
                response = await self._client.get(DIRECTIONS_API_URL, params=params)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.get(DIRECTIONS_API_URL, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = exc.response.text if exc.response is not None else str(exc)
            raise RuntimeError(f"Directions API error: {detail}") from exc
        except httpx.HTTPError as exc:
            raise RuntimeError(f"Directions request failed: {exc}") from exc

        try:
            return response.json()
        except ValueError:
            return {}

    async def route(self, origin: str, destination: str, waypoints: Optional[List[str]] = None) -> Optional[RouteResult]:
        params: Dict[str, Any] = {
            "origin": origin,
            "destination": destination,
            "mode": "driving",
        }
        stops = [w for w in (waypoints or []) if w]
        if stops:
            params["waypoints"] = "|".join(stops)
        return sum_route_legs(await self._request(params))
