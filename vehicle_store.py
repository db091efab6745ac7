"""
Vehicle state stores

The engine only needs two operations from a store: listing active
vehicles and writing back a position. Writes are last-value-wins per
field, so a repeated or dropped write never corrupts a record.
"""
import logging
from typing import Optional, Protocol, Union

from sqlalchemy import Column, Float, Integer, MetaData, String, Table, insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from exceptions import StoreUnavailable
from models import GeoPoint, Vehicle, VehicleStatus

logger = logging.getLogger(__name__)


class VehicleStateStore(Protocol):
    """Record store for vehicles"""

    async def query_active(self) -> list[Vehicle]:
        ...

    async def update_position(self, vehicle_id: int, lat: float, lng: float, step_index: int) -> None:
        ...


class InMemoryVehicleStore:
    """Dict-backed store, used for local runs and tests"""

    def __init__(self, vehicles: Optional[list[Vehicle]] = None):
        self._vehicles: dict[int, Vehicle] = {}
        self._available = True
        for vehicle in vehicles or []:
            self.add(vehicle)

    def add(self, vehicle: Vehicle) -> None:
        self._vehicles[vehicle.id] = vehicle.model_copy()

    def get(self, vehicle_id: int) -> Optional[Vehicle]:
        vehicle = self._vehicles.get(vehicle_id)
        return vehicle.model_copy() if vehicle else None

    def set_status(self, vehicle_id: int, status: VehicleStatus) -> None:
        self._vehicles[vehicle_id].status = status

    def set_available(self, available: bool) -> None:
        """Simulate a store outage"""
        self._available = available

    def _check(self) -> None:
        if not self._available:
            raise StoreUnavailable("In-memory store is marked unavailable")

    async def query_active(self) -> list[Vehicle]:
        self._check()
        return [v.model_copy() for v in self._vehicles.values() if v.status == VehicleStatus.ACTIVE]

    async def update_position(self, vehicle_id: int, lat: float, lng: float, step_index: int) -> None:
        self._check()
        vehicle = self._vehicles.get(vehicle_id)
        if vehicle is None:
            logger.warning(f"Position update for unknown vehicle {vehicle_id} ignored")
            return
        vehicle.current = GeoPoint(lat=lat, lng=lng)
        vehicle.step_index = step_index


metadata = MetaData()

buses = Table(
    "buses",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("bus_number", String(64), nullable=False),
    Column("status", String(16), nullable=False, default=VehicleStatus.ACTIVE.value),
    Column("current_lat", Float, nullable=True),
    Column("current_lng", Float, nullable=True),
    Column("step_index", Integer, nullable=False, default=0),
)


class SqlVehicleStore:
    """Store over the `buses` table using SQLAlchemy asyncio"""

    def __init__(self, url_or_engine: Union[str, AsyncEngine]):
        if isinstance(url_or_engine, AsyncEngine):
            self._engine = url_or_engine
        else:
            self._engine = create_async_engine(url_or_engine, pool_pre_ping=True)

    async def create_schema(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def add_vehicle(
        self,
        number: str,
        status: VehicleStatus = VehicleStatus.ACTIVE,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
    ) -> int:
        """
        Insert a vehicle row

        Returns:
            The new vehicle id
        """
        stmt = insert(buses).values(
            bus_number=number, status=status.value, current_lat=lat, current_lng=lng, step_index=0
        )
        try:
            async with self._engine.begin() as conn:
                result = await conn.execute(stmt)
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailable(f"Insert failed: {exc}") from exc
        return result.inserted_primary_key[0]

    async def query_active(self) -> list[Vehicle]:
        stmt = select(buses).where(buses.c.status == VehicleStatus.ACTIVE.value).order_by(buses.c.id)
        try:
            async with self._engine.connect() as conn:
                rows = (await conn.execute(stmt)).mappings().all()
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailable(f"Active vehicle query failed: {exc}") from exc
        return [self._to_vehicle(row) for row in rows]

    async def update_position(self, vehicle_id: int, lat: float, lng: float, step_index: int) -> None:
        stmt = (
            update(buses)
            .where(buses.c.id == vehicle_id)
            .values(current_lat=lat, current_lng=lng, step_index=step_index)
        )
        try:
            async with self._engine.begin() as conn:
                await conn.execute(stmt)
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailable(f"Position update for vehicle {vehicle_id} failed: {exc}") from exc

    async def dispose(self) -> None:
        await self._engine.dispose()

    @staticmethod
    def _to_vehicle(row) -> Vehicle:
        current = None
        if row["current_lat"] is not None and row["current_lng"] is not None:
            current = GeoPoint(lat=row["current_lat"], lng=row["current_lng"])
        return Vehicle(
            id=row["id"],
            number=row["bus_number"],
            status=VehicleStatus(row["status"]),
            current=current,
            step_index=row["step_index"] or 0,
        )
