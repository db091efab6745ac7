"""
Shared fixtures and test doubles
"""
from collections.abc import Sequence
from typing import Optional

import pytest

from broadcast_hub import BroadcastHub
from models import GeoPoint, Vehicle, VehicleStatus
from query_service import QueryService
from route_catalog import JUJA, NAIROBI, RouteCatalog
from simulation_engine import SimulationEngine
from vehicle_store import InMemoryVehicleStore

MIDWAY = GeoPoint(lat=-1.2, lng=36.9)


class FakeRouteProvider:
    """Route provider returning scripted geometries"""

    def __init__(self, routes: Optional[dict] = None, default: Sequence[GeoPoint] = ()):
        # (start, end) -> list of responses; the last one repeats
        self.routes: dict[tuple[GeoPoint, GeoPoint], list] = routes or {}
        self.default = tuple(default)
        self.calls: list[tuple[GeoPoint, GeoPoint]] = []

    def script(self, start: GeoPoint, end: GeoPoint, *responses) -> None:
        self.routes[(start, end)] = list(responses)

    async def fetch(self, start: GeoPoint, end: GeoPoint) -> Sequence[GeoPoint]:
        self.calls.append((start, end))
        responses = self.routes.get((start, end))
        if not responses:
            return self.default
        response = responses.pop(0) if len(responses) > 1 else responses[0]
        if isinstance(response, Exception):
            raise response
        return tuple(response)


class RecordingHub(BroadcastHub):
    """BroadcastHub that also keeps every published update"""

    def __init__(self, snapshot_source, max_queue: int = 1000):
        super().__init__(snapshot_source, max_queue=max_queue)
        self.published = []

    def publish(self, update):
        self.published.append(update)
        return super().publish(update)


@pytest.fixture
def catalog() -> RouteCatalog:
    return RouteCatalog.default()


@pytest.fixture
def store() -> InMemoryVehicleStore:
    return InMemoryVehicleStore([
        Vehicle(id=1, number="Juja-42", step_index=0, status=VehicleStatus.ACTIVE),
    ])


@pytest.fixture
def provider() -> FakeRouteProvider:
    fake = FakeRouteProvider()
    fake.script(JUJA, NAIROBI, [JUJA, MIDWAY, NAIROBI])
    fake.script(NAIROBI, JUJA, [NAIROBI, MIDWAY, JUJA])
    return fake


@pytest.fixture
def hub(store) -> RecordingHub:
    return RecordingHub(QueryService(store).active_vehicles)


@pytest.fixture
def engine(store, catalog, provider, hub) -> SimulationEngine:
    return SimulationEngine(store, catalog, provider, hub, tick_period=3600)
