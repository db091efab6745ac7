"""
Route geometry providers
"""
import logging
from collections.abc import Sequence
from typing import Optional, Protocol

import httpx

from exceptions import RouteFetchFailed
from models import GeoPoint

logger = logging.getLogger(__name__)

ORS_BASE_URL = "https://api.openrouteservice.org"


class RouteProvider(Protocol):
    """Resolves a start/end pair into an ordered waypoint sequence"""

    async def fetch(self, start: GeoPoint, end: GeoPoint) -> Sequence[GeoPoint]:
        ...


class OpenRouteServiceProvider:
    """Route provider backed by the OpenRouteService directions API"""

    def __init__(
        self,
        api_key: str,
        client: Optional[httpx.AsyncClient] = None,
        base_url: str = ORS_BASE_URL,
        profile: str = "driving-car",
        timeout: float = 5.0,
    ):
        self._api_key = api_key
        self._url = f"{base_url.rstrip('/')}/v2/directions/{profile}/geojson"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def fetch(self, start: GeoPoint, end: GeoPoint) -> tuple[GeoPoint, ...]:
        """
        Fetch the driving geometry between two points

        Args:
            start: Route start
            end: Route end

        Returns:
            Waypoints ordered from start to end; empty if no route was found

        Raises:
            RouteFetchFailed: On network errors, timeouts, non-2xx responses
                or malformed bodies
        """
        body = {"coordinates": [[start.lng, start.lat], [end.lng, end.lat]]}
        headers = {"Authorization": self._api_key}

        logger.debug(f"POST {self._url}")
        try:
            response = await self._client.post(self._url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise RouteFetchFailed(f"Route request failed: {exc!r}") from exc

        if response.status_code != 200:
            raise RouteFetchFailed(
                f"HTTP {response.status_code} from route provider: {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            features = response.json().get("features") or []
            if not features:
                return ()
            coordinates = features[0]["geometry"]["coordinates"]
            return tuple(GeoPoint(lat=lat, lng=lng) for lng, lat, *_ in coordinates)
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise RouteFetchFailed(f"Malformed route response: {exc!r}") from exc

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
