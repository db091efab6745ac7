"""
Static catalog mapping vehicle numbers to directional routes
"""
import logging
from typing import Optional

from pydantic import BaseModel, ConfigDict

from exceptions import UnknownRoute
from models import GeoPoint, RouteDefinition

logger = logging.getLogger(__name__)

JUJA = GeoPoint(lat=-1.1278, lng=36.9707)
NAIROBI = GeoPoint(lat=-1.286389, lng=36.817223)


class _DirectionalPair(BaseModel):
    model_config = ConfigDict(frozen=True)

    origin_marker: str
    forward: RouteDefinition
    reverse: RouteDefinition
    reverse_marker: Optional[str] = None
    fallback: bool = False


class RouteCatalog:
    """Resolves a vehicle number to one of the registered routes"""

    def __init__(self):
        self._pairs: list[_DirectionalPair] = []
        self._routes: dict[str, RouteDefinition] = {}

    @classmethod
    def default(cls) -> "RouteCatalog":
        """
        Build the base two-route catalog

        Numbers containing "Juja" start in Juja; every other number runs
        the reverse direction from Nairobi.
        """
        catalog = cls()
        catalog.register_pair(
            "Juja",
            RouteDefinition(key="Juja-Nairobi", start=JUJA, end=NAIROBI),
            RouteDefinition(key="Nairobi-Juja", start=NAIROBI, end=JUJA),
            fallback=True,
        )
        return catalog

    def register_pair(
        self,
        origin_marker: str,
        forward: RouteDefinition,
        reverse: RouteDefinition,
        reverse_marker: Optional[str] = None,
        fallback: bool = False,
    ) -> None:
        """
        Register a directional route pair

        Args:
            origin_marker: Token that, when contained in a vehicle number,
                selects the forward route
            forward: Route starting at the marked origin
            reverse: Route in the opposite direction
            reverse_marker: Optional token selecting the reverse route
            fallback: Send numbers matching no pair to this pair's reverse route

        Raises:
            ValueError: On an empty marker, a duplicate route key or a second fallback pair
        """
        if not origin_marker:
            raise ValueError("origin_marker must be non-empty")
        for route in (forward, reverse):
            if route.key in self._routes:
                raise ValueError(f"Duplicate route key: {route.key}")
        if forward.key == reverse.key:
            raise ValueError(f"Duplicate route key: {forward.key}")
        if fallback and any(p.fallback for p in self._pairs):
            raise ValueError("Only one fallback pair can be registered")

        self._pairs.append(_DirectionalPair(
            origin_marker=origin_marker,
            forward=forward,
            reverse=reverse,
            reverse_marker=reverse_marker,
            fallback=fallback,
        ))
        self._routes[forward.key] = forward
        self._routes[reverse.key] = reverse
        logger.debug(f"Registered routes {forward.key} / {reverse.key} (marker={origin_marker!r})")

    def resolve(self, vehicle_number: str) -> RouteDefinition:
        """
        Classify a vehicle number into a route

        Args:
            vehicle_number: Vehicle number as stored

        Returns:
            The matching RouteDefinition

        Raises:
            UnknownRoute: If no registered pair claims the number
        """
        for pair in self._pairs:
            if pair.origin_marker in vehicle_number:
                return pair.forward
        for pair in self._pairs:
            if pair.reverse_marker and pair.reverse_marker in vehicle_number:
                return pair.reverse
        for pair in self._pairs:
            if pair.fallback:
                return pair.reverse
        raise UnknownRoute(vehicle_number)

    def get(self, key: str) -> Optional[RouteDefinition]:
        return self._routes.get(key)

    def routes(self) -> list[RouteDefinition]:
        return list(self._routes.values())
