# fleet_trip_analytics/models/samples.py
"""
Canonical telemetry records.

A `Sample` is the vendor-neutral form of one telemetry observation after
normalization: distances are always in miles and timestamps are always
timezone-aware UTC. A `RoutePoint` is a Sample with a position fix and the
movement flag assigned at ingestion.

Both are frozen: telemetry is immutable once recorded.
"""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

__all__: list[str] = [
    'DistanceUnit',
    'IgnitionState',
    'Location',
    'RoutePoint',
    'Sample',
    'ensure_utc',
]


# =============================================================================
# Enumerations
# =============================================================================


class IgnitionState(str, Enum):
    """Normalized ignition state."""

    ON = 'On'
    OFF = 'Off'
    RUN = 'Run'
    UNKNOWN = 'Unknown'

    @property
    def is_running(self) -> bool:
        """True for On and Run, the states that open or extend a trip."""
        return self in (IgnitionState.ON, IgnitionState.RUN)


class DistanceUnit(str, Enum):
    """Distance unit reported by the telemetry source."""

    KILOMETERS = 'km'
    MILES = 'mi'


# =============================================================================
# Records
# =============================================================================


def ensure_utc(timestamp: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=UTC)
    return timestamp.astimezone(UTC)


class Sample(BaseModel):
    """
    One normalized telemetry observation for a vehicle.

    Attributes:
        vehicle_id: Vehicle identifier.
        timestamp: Observation time (UTC).
        latitude: Latitude in degrees, None without a position fix.
        longitude: Longitude in degrees, None without a position fix.
        ignition_state: Normalized ignition state.
        speed: Reported speed in mph, if any.
        odometer: Odometer in miles.
        battery_soc: Battery state of charge (percent).
        battery_range: Remaining range in miles.
        plug_connected: Charger plug status.
        source_distance_unit: Unit the source used before conversion.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    vehicle_id: str = Field(min_length=1)
    timestamp: datetime
    latitude: float | None = Field(default=None, ge=-90.0, le=90.0)
    longitude: float | None = Field(default=None, ge=-180.0, le=180.0)
    ignition_state: IgnitionState = IgnitionState.UNKNOWN
    speed: float | None = None
    odometer: float | None = None
    battery_soc: float | None = None
    battery_range: float | None = None
    plug_connected: bool | None = None
    source_distance_unit: DistanceUnit = DistanceUnit.MILES

    @field_validator('timestamp')
    @classmethod
    def normalize_timestamp(cls, timestamp: datetime) -> datetime:
        """Store every timestamp as timezone-aware UTC."""
        return ensure_utc(timestamp)

    @property
    def has_position(self) -> bool:
        """Whether the sample carries a complete position fix."""
        return self.latitude is not None and self.longitude is not None


class RoutePoint(Sample):
    """
    A positioned Sample attached to a trip.

    Attributes:
        latitude: Latitude in degrees (required).
        longitude: Longitude in degrees (required).
        is_moving: Movement flag assigned at ingestion.
        address: Resolved street address, if any.
    """

    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)
    is_moving: bool = False
    address: str | None = None

    @classmethod
    def from_sample(cls, sample: Sample, is_moving: bool) -> 'RoutePoint':
        """
        Promote a positioned Sample to a RoutePoint.

        Raises:
            ValueError: If the sample has no position fix.
        """
        if not sample.has_position:
            raise ValueError(
                f'Sample at {sample.timestamp.isoformat()} for vehicle '
                f'{sample.vehicle_id!r} has no position fix'
            )
        return cls(**sample.model_dump(exclude={'is_moving'}), is_moving=is_moving)


class Location(BaseModel):
    """A point of interest on a trip: start, end or stop centroid."""

    model_config = ConfigDict(extra='forbid')

    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)
    address: str | None = None
    client_name: str | None = None

    @classmethod
    def from_sample(cls, sample: Sample) -> 'Location':
        """Location of a positioned sample (address carried over for route points)."""
        if sample.latitude is None or sample.longitude is None:
            raise ValueError('Cannot build a Location from a sample without position')
        address: str | None = sample.address if isinstance(sample, RoutePoint) else None
        return cls(latitude=sample.latitude, longitude=sample.longitude, address=address)
