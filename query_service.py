"""
Read-only access to the current vehicle snapshot
"""
from models import VehicleUpdate
from vehicle_store import VehicleStateStore


class QueryService:
    """Serves the active-vehicle snapshot to the HTTP layer and new observers"""

    def __init__(self, store: VehicleStateStore):
        self._store = store

    async def active_vehicles(self) -> list[VehicleUpdate]:
        """
        Current snapshot of active vehicles

        Raises:
            StoreUnavailable: If the store cannot be queried
        """
        vehicles = await self._store.query_active()
        return [VehicleUpdate.from_vehicle(v) for v in vehicles]
