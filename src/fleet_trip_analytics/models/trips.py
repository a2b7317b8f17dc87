# fleet_trip_analytics/models/trips.py
"""
Trip and stop records.

A `Trip` is bounded by ignition transitions and exclusively owns its route
points. It is mutable while active (the segmenter appends points to it) and
finalized once ignition turns off. A `Stop` is derived from a trip's route
points and is never persisted on its own.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from fleet_trip_analytics.models.samples import Location, RoutePoint, ensure_utc

__all__: list[str] = [
    'Stop',
    'StopClassification',
    'Trip',
    'WindowClassification',
    'make_trip_id',
]


def make_trip_id(vehicle_id: str, ignition_on_time: datetime) -> str:
    """Natural key of a trip: vehicle plus ignition-on time."""
    return f'{vehicle_id}:{ensure_utc(ignition_on_time).isoformat()}'


class Trip(BaseModel):
    """
    An ignition trip.

    Distances:
        `distance_traveled` is the odometer delta and is the figure to trust
        when present. `gps_distance_miles` integrates the GPS path and tends to
        overestimate; both are kept so consumers can choose.

    Attributes:
        vehicle_id: Vehicle identifier.
        vehicle_name: Display name of the vehicle.
        ignition_on_time: When ignition turned on (UTC).
        ignition_off_time: When ignition turned off, None while active.
        is_active: True until the trip is closed.
        start_location: First position fix of the trip.
        end_location: Position when ignition turned off.
        route_points: Positioned samples recorded during the trip, in order.
        start_odometer: Odometer (miles) when the trip started.
        end_odometer: Odometer (miles) when the trip ended.
        distance_traveled: Odometer delta in miles.
        gps_distance_miles: GPS path length in miles.
        start_battery: State of charge at start (percent).
        end_battery: State of charge at end (percent).
        battery_used: start_battery - end_battery.
        total_run_time: Minutes from ignition on to ignition off.
        consolidated_from: Ids of the raw trips merged into this one.
    """

    model_config = ConfigDict(extra='forbid')

    vehicle_id: str = Field(min_length=1)
    vehicle_name: str = ''
    ignition_on_time: datetime
    ignition_off_time: datetime | None = None
    is_active: bool = True
    start_location: Location
    end_location: Location | None = None
    route_points: list[RoutePoint] = Field(default_factory=list)
    start_odometer: float | None = None
    end_odometer: float | None = None
    distance_traveled: float | None = None
    gps_distance_miles: float = 0.0
    start_battery: float | None = None
    end_battery: float | None = None
    battery_used: float | None = None
    total_run_time: float = 0.0
    consolidated_from: list[str] = Field(default_factory=list)

    @field_validator('ignition_on_time', 'ignition_off_time')
    @classmethod
    def normalize_times(cls, timestamp: datetime | None) -> datetime | None:
        """Store trip boundaries as UTC."""
        return ensure_utc(timestamp) if timestamp is not None else None

    @property
    def trip_id(self) -> str:
        """Natural key: '<vehicle_id>:<ignition_on_time ISO>'."""
        return make_trip_id(self.vehicle_id, self.ignition_on_time)

    @property
    def route_point_count(self) -> int:
        return len(self.route_points)

    @property
    def effective_end_time(self) -> datetime:
        """Ignition-off time, or the on time for a trip that is still open."""
        return self.ignition_off_time or self.ignition_on_time


class StopClassification(str, Enum):
    """Outcome of a windowed parked/moving test."""

    PARKED = 'parked'
    MOVING = 'moving'
    INDETERMINATE = 'indeterminate'


class WindowClassification(BaseModel):
    """
    Parked/moving verdict for one anchor sample, with the window statistics.

    INDETERMINATE (too few samples) is treated as not parked.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    classification: StopClassification
    max_movement_meters: float = 0.0
    avg_movement_meters: float = 0.0
    time_span_minutes: float = 0.0
    points_analyzed: int = 0

    @property
    def is_parked(self) -> bool:
        return self.classification is StopClassification.PARKED


class Stop(BaseModel):
    """
    A contiguous stationary window within a trip.

    Attributes:
        vehicle_id: Vehicle identifier.
        start_time: Timestamp of the first stationary route point.
        end_time: Timestamp of the last stationary route point.
        location: Position of the first stationary route point.
        route_points_in_window: Number of route points in the stop.
        engine_on_minutes: Minutes with ignition On/Run inside the stop.
        engine_off_minutes: Minutes with ignition not running inside the stop.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    vehicle_id: str
    start_time: datetime
    end_time: datetime
    location: Location
    route_points_in_window: int = Field(ge=1)
    engine_on_minutes: float = Field(default=0.0, ge=0.0)
    engine_off_minutes: float = Field(default=0.0, ge=0.0)

    @property
    def duration_minutes(self) -> float:
        return (self.end_time - self.start_time).total_seconds() / 60.0
