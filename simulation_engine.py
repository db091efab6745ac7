"""
Position simulation engine

Every tick the engine reads the active vehicles from the store and
moves each one a single waypoint along its cached route geometry.
"""
import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from typing import Optional

from broadcast_hub import BroadcastHub
from exceptions import RouteFetchFailed, StoreUnavailable, UnknownRoute
from models import (
    GeoPoint, RouteDefinition, TripPhase, Vehicle, VehicleRuntimeState, VehicleStatus, VehicleUpdate
)
from route_catalog import RouteCatalog
from route_provider import RouteProvider
from vehicle_store import VehicleStateStore

logger = logging.getLogger(__name__)


class SimulationEngine:
    """Owns per-vehicle route caches and advances vehicles on a fixed period"""

    def __init__(
        self,
        store: VehicleStateStore,
        catalog: RouteCatalog,
        provider: RouteProvider,
        hub: BroadcastHub,
        tick_period: float = 5.0,
        backoff_base: float = 0.0,
        backoff_max: float = 60.0,
        fetch_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._catalog = catalog
        self._provider = provider
        self._hub = hub
        self.tick_period = tick_period
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._fetch_timeout = fetch_timeout
        self._clock = clock

        # Keyed by vehicle id; only touched by the engine
        self._runtime: dict[int, VehicleRuntimeState] = {}
        self._locks: dict[int, asyncio.Lock] = {}
        self._unroutable: dict[int, str] = {}

        self._tick_running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None
        self.ticks_completed = 0
        self.ticks_skipped = 0

    # Lifecycle

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self) -> None:
        """Start the periodic tick loop on the running event loop"""
        if self.running:
            return
        self._loop_task = asyncio.create_task(self._run(), name="simulation-loop")
        logger.info(f"Simulation loop started (period={self.tick_period}s)")

    async def stop(self) -> None:
        """Stop the tick loop, abandoning any in-flight tick"""
        for task in (self._loop_task, self._tick_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._loop_task = None
        self._tick_task = None
        logger.info("Simulation loop stopped")

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        next_at = loop.time()
        while True:
            next_at += self.tick_period
            await asyncio.sleep(max(0.0, next_at - loop.time()))
            if self._tick_running:
                self.ticks_skipped += 1
                logger.warning("Previous tick still running, skipping this one")
                continue
            self._tick_task = asyncio.create_task(self._safe_tick())

    async def _safe_tick(self) -> None:
        try:
            await self.tick()
        except Exception:
            logger.exception("Unexpected error during tick")

    # Tick

    async def tick(self) -> int:
        """
        Advance every active vehicle by one step

        Returns:
            Number of update events published during this tick
        """
        if self._tick_running:
            self.ticks_skipped += 1
            logger.warning("Tick requested while another is running, skipped")
            return 0

        self._tick_running = True
        try:
            try:
                vehicles = await self._store.query_active()
            except StoreUnavailable as exc:
                logger.warning(f"Tick aborted, store unavailable: {exc}")
                return 0

            self._forget_inactive({v.id for v in vehicles})
            results = await asyncio.gather(*(self._advance_serialized(v) for v in vehicles))
            published = sum(results)
            self.ticks_completed += 1
            logger.debug(f"Tick {self.ticks_completed}: {len(vehicles)} active, {published} updates")
            return published
        finally:
            self._tick_running = False

    def _forget_inactive(self, active_ids: set[int]) -> None:
        """Drop runtime state and locks of vehicles that left the active set"""
        # Called before the tick starts advancing, so no lock is held
        for vehicle_id in list(self._runtime):
            if vehicle_id not in active_ids:
                del self._runtime[vehicle_id]
                logger.info(f"Vehicle {vehicle_id} no longer active, route cache dropped")
        for vehicle_id in list(self._locks):
            if vehicle_id not in active_ids:
                del self._locks[vehicle_id]
        for vehicle_id in list(self._unroutable):
            if vehicle_id not in active_ids:
                del self._unroutable[vehicle_id]

    async def _advance_serialized(self, vehicle: Vehicle) -> int:
        async with self._locks.setdefault(vehicle.id, asyncio.Lock()):
            try:
                return await self._advance(vehicle)
            except StoreUnavailable as exc:
                logger.warning(f"Vehicle {vehicle.id} not advanced, store write failed: {exc}")
            except Exception:
                logger.exception(f"Vehicle {vehicle.id} could not be advanced")
            return 0

    async def _advance(self, vehicle: Vehicle) -> int:
        state = self._runtime.get(vehicle.id)

        if state is None:
            route = self._resolve_route(vehicle)
            if route is None:
                return 0
            state = VehicleRuntimeState(route=route, cursor=vehicle.step_index)
            self._runtime[vehicle.id] = state
            await self._load_route(vehicle, state)
            state.phase = TripPhase.TRAVELING
            logger.info(
                f"Vehicle {vehicle.number} ({vehicle.id}) on {route.key}, "
                f"{len(state.cached_route)} waypoints, resuming at {state.cursor}"
            )
        elif not state.cached_route:
            if self._clock() < state.retry_at:
                return 0
            await self._load_route(vehicle, state)

        if not state.cached_route:
            return 0

        if state.cursor < state.last_index:
            cursor = state.cursor + 1
            point = state.cached_route[cursor]
            await self._store.update_position(vehicle.id, point.lat, point.lng, cursor)
            state.cursor = cursor
            self._publish(vehicle, point, cursor)
            logger.debug(f"Vehicle {vehicle.number} moved to step {cursor}/{state.last_index}")
            return 1

        return await self._arrive(vehicle, state)

    async def _arrive(self, vehicle: Vehicle, state: VehicleRuntimeState) -> int:
        """Send the vehicle back to its route start and refetch the geometry"""
        state.phase = TripPhase.ARRIVED
        route = self._resolve_route(vehicle)
        start = (route or state.route).start
        await self._store.update_position(vehicle.id, start.lat, start.lng, 0)
        state.cursor = 0
        state.cached_route = ()
        logger.info(f"Vehicle {vehicle.number} arrived at end of {state.route.key}, restarting")

        if route is None:
            del self._runtime[vehicle.id]
        else:
            state.route = route
            await self._load_route(vehicle, state)
            state.phase = TripPhase.TRAVELING

        self._publish(vehicle, start, 0)
        return 1

    def _resolve_route(self, vehicle: Vehicle) -> Optional[RouteDefinition]:
        try:
            route = self._catalog.resolve(vehicle.number)
        except UnknownRoute as exc:
            if self._unroutable.get(vehicle.id) != vehicle.number:
                self._unroutable[vehicle.id] = vehicle.number
                logger.warning(f"Vehicle {vehicle.id} skipped: {exc}")
            return None
        self._unroutable.pop(vehicle.id, None)
        return route

    async def _load_route(self, vehicle: Vehicle, state: VehicleRuntimeState) -> None:
        route = state.route
        try:
            fetch = self._provider.fetch(route.start, route.end)
            if self._fetch_timeout is not None:
                waypoints = tuple(await asyncio.wait_for(fetch, self._fetch_timeout))
            else:
                waypoints = tuple(await fetch)
        except asyncio.TimeoutError:
            logger.warning(f"Route fetch for vehicle {vehicle.id} timed out after {self._fetch_timeout}s")
            waypoints = ()
        except RouteFetchFailed as exc:
            logger.warning(f"Route fetch for vehicle {vehicle.id} failed: {exc}")
            waypoints = ()
        except Exception:
            logger.exception(f"Route provider raised for vehicle {vehicle.id}")
            waypoints = ()

        state.cached_route = waypoints
        if waypoints:
            state.failed_fetches = 0
            state.retry_at = 0.0
            return

        state.failed_fetches += 1
        delay = 0.0
        if self._backoff_base > 0:
            delay = min(self._backoff_base * 2 ** (state.failed_fetches - 1), self._backoff_max)
        state.retry_at = self._clock() + delay
        logger.warning(
            f"No route for vehicle {vehicle.id} on {route.key} "
            f"(attempt {state.failed_fetches}, next try in {delay:.0f}s)"
        )

    def _publish(self, vehicle: Vehicle, position: GeoPoint, step_index: int) -> None:
        self._hub.publish(VehicleUpdate(
            id=vehicle.id,
            bus_number=vehicle.number,
            status=VehicleStatus.ACTIVE,
            current_lat=position.lat,
            current_lng=position.lng,
            step_index=step_index,
        ))

    # Introspection

    def runtime_state(self, vehicle_id: int) -> Optional[VehicleRuntimeState]:
        """Copy of a vehicle's runtime state, or None if not tracked"""
        state = self._runtime.get(vehicle_id)
        return state.model_copy() if state else None

    @property
    def tracked_vehicles(self) -> int:
        return len(self._runtime)
