# fleet_trip_analytics/models/parking.py
"""Parking sessions and the brief ignition cycles recorded inside them."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from fleet_trip_analytics.models.samples import Location

__all__: list[str] = ['CyclePurpose', 'IgnitionCycle', 'ParkingSession']


class CyclePurpose(str, Enum):
    """Inferred reason for an ignition cycle during parking."""

    BREAK = 'break'
    LOADING = 'loading'
    UNKNOWN = 'unknown'


class IgnitionCycle(BaseModel):
    """An ignition on/off cycle that did not leave the parking location."""

    model_config = ConfigDict(extra='forbid')

    cycle_number: int = Field(ge=1)
    ignition_on_time: datetime
    ignition_off_time: datetime | None = None
    duration_minutes: float | None = None
    purpose: CyclePurpose = CyclePurpose.UNKNOWN
    battery_used: float | None = None
    max_location_change_meters: float = 0.0


class ParkingSession(BaseModel):
    """
    Time a vehicle spent parked between two real trips.

    Attributes:
        vehicle_id: Vehicle identifier.
        vehicle_name: Display name.
        ignition_off_time: When the preceding trip ended.
        parking_start_time: ignition_off_time plus the grace period.
        parking_end_time: Ignition-on time of the departing trip.
        parking_location: Where the preceding trip ended.
        total_parking_minutes: parking_end_time - parking_start_time.
        ignition_cycles: Brief cycles that stayed near the parking location.
        is_currently_parked: True when no departure has been seen yet.
        previous_trip_id: Trip that led to this parking session.
        next_trip_id: Trip that ended it.
    """

    model_config = ConfigDict(extra='forbid')

    vehicle_id: str
    vehicle_name: str = ''
    ignition_off_time: datetime
    parking_start_time: datetime
    parking_end_time: datetime | None = None
    parking_location: Location
    total_parking_minutes: float | None = None
    ignition_cycles: list[IgnitionCycle] = Field(default_factory=list)
    is_currently_parked: bool = True
    previous_trip_id: str | None = None
    next_trip_id: str | None = None
