"""
Data models for the bus tracking simulation server
"""
from enum import Enum
from typing import Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field


class VehicleStatus(str, Enum):
    """Vehicle status states"""
    ACTIVE = "active"
    INACTIVE = "inactive"


class TripPhase(str, Enum):
    """Per-vehicle simulation phases"""
    UNINITIALIZED = "uninitialized"
    TRAVELING = "traveling"
    ARRIVED = "arrived"


# Geography

class GeoPoint(BaseModel):
    """A single geographic coordinate"""
    model_config = ConfigDict(frozen=True)

    lat: float
    lng: float


class RouteDefinition(BaseModel):
    """Named route between two endpoints"""
    model_config = ConfigDict(frozen=True)

    key: str = Field(..., min_length=1, description="Globally unique route key")
    start: GeoPoint
    end: GeoPoint


# Persistent entity

class Vehicle(BaseModel):
    """Vehicle record as held by the state store"""
    id: int
    number: str
    status: VehicleStatus = VehicleStatus.ACTIVE
    current: Optional[GeoPoint] = None
    step_index: int = Field(0, ge=0, description="Index of the last reached waypoint")


# In-memory engine state

class VehicleRuntimeState(BaseModel):
    """Route cache and cursor kept by the engine for one vehicle"""
    route: RouteDefinition
    cached_route: tuple[GeoPoint, ...] = ()
    cursor: int = Field(0, ge=0)
    phase: TripPhase = TripPhase.UNINITIALIZED
    failed_fetches: int = 0
    retry_at: float = 0.0

    @property
    def last_index(self) -> int:
        return len(self.cached_route) - 1


# Wire models

class VehicleUpdate(BaseModel):
    """Vehicle record sent over HTTP and the real-time channel"""
    id: int
    bus_number: str
    status: VehicleStatus
    current_lat: Optional[float] = None
    current_lng: Optional[float] = None
    step_index: int = 0

    @classmethod
    def from_vehicle(cls, vehicle: Vehicle) -> "VehicleUpdate":
        return cls(
            id=vehicle.id,
            bus_number=vehicle.number,
            status=vehicle.status,
            current_lat=vehicle.current.lat if vehicle.current else None,
            current_lng=vehicle.current.lng if vehicle.current else None,
            step_index=vehicle.step_index,
        )


class ChannelMessage(BaseModel):
    """Message pushed to real-time observers"""
    event: Literal["snapshot", "busUpdate"]
    data: Union[list[VehicleUpdate], VehicleUpdate]
