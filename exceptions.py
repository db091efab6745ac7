"""
Error taxonomy for the bus tracking server
"""
from typing import Optional


class BusTrackerError(Exception):
    """Base exception for all bus tracker errors"""


class ConfigError(BusTrackerError):
    """Invalid or missing configuration. Fatal at startup."""


class StoreUnavailable(BusTrackerError):
    """The vehicle state store could not be queried or written"""


class RouteFetchFailed(BusTrackerError):
    """The route provider failed to return a geometry"""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class UnknownRoute(BusTrackerError):
    """No route definition matches a vehicle number"""

    def __init__(self, vehicle_number: str) -> None:
        self.vehicle_number = vehicle_number
        super().__init__(f"No route matches vehicle number {vehicle_number!r}")
