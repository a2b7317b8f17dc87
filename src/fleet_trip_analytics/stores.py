# fleet_trip_analytics/stores.py
"""
Boundary interfaces and in-memory reference implementations.

The engine reads telemetry and writes trips, route points and productivity
periods through the Protocols below. Storage technology is the caller's
choice; the in-memory classes here make the engine runnable end to end and
back the test suite. A Parquet-backed productivity store lives in
`common.partitioned_file_io`.

Natural keys:
    Trip                (vehicle_id, ignition_on_time)
    RoutePoint          (vehicle_id, timestamp), append-only
    ProductivityPeriod  (vehicle_id, date), upsert replaces

All in-memory stores guard their state with a lock so vehicles can be
processed on worker threads against one store instance.
"""

import logging
import threading
from collections import defaultdict
from collections.abc import Iterable, Mapping
from datetime import date, datetime
from typing import Any, Protocol, runtime_checkable

import pandas as pd

from fleet_trip_analytics.models import (
    GeocodeResult,
    ProductivityPeriod,
    RoutePoint,
    Trip,
    ensure_utc,
)
from fleet_trip_analytics.normalizer import SignalNormalizer
from fleet_trip_analytics.schema import route_points_to_dataframe

__all__: list[str] = [
    'Geocoder',
    'InMemoryProductivityStore',
    'InMemoryRoutePointStore',
    'InMemoryTelemetrySource',
    'InMemoryTripStore',
    'ProductivityStore',
    'RoutePointStore',
    'TelemetrySource',
    'TripStore',
]

logger: logging.Logger = logging.getLogger(__name__)


# =============================================================================
# Protocols
# =============================================================================


@runtime_checkable
class TelemetrySource(Protocol):
    """Raw vendor samples for one vehicle, ordered by time, in [start, end)."""

    def fetch_samples(
        self,
        vehicle_id: str,
        start: datetime,
        end: datetime,
    ) -> Iterable[Mapping[str, Any]]: ...


@runtime_checkable
class TripStore(Protocol):
    """Trip persistence keyed by (vehicle_id, ignition_on_time)."""

    def find_active_trip(self, vehicle_id: str) -> Trip | None: ...

    def find_trips_overlapping(
        self,
        vehicle_id: str,
        start: datetime,
        end: datetime,
    ) -> list[Trip]: ...

    def upsert(self, trip: Trip) -> None: ...


@runtime_checkable
class RoutePointStore(Protocol):
    """Append-only route point log, queryable by vehicle and time range."""

    def append(self, points: Iterable[RoutePoint]) -> None: ...

    def query(self, vehicle_id: str, start: datetime, end: datetime) -> list[RoutePoint]: ...


@runtime_checkable
class ProductivityStore(Protocol):
    """Productivity periods keyed by (vehicle_id, date); upsert replaces."""

    def get(self, vehicle_id: str, day: date) -> ProductivityPeriod | None: ...

    def upsert(self, period: ProductivityPeriod) -> None: ...


@runtime_checkable
class Geocoder(Protocol):
    """Coordinate -> address. May raise GeocodingError; None means no address."""

    def reverse(self, latitude: float, longitude: float) -> GeocodeResult | None: ...


# =============================================================================
# In-Memory Implementations
# =============================================================================


class InMemoryTelemetrySource:
    """Telemetry source over raw documents held in memory."""

    def __init__(
        self,
        samples_by_vehicle: Mapping[str, Iterable[Mapping[str, Any]]] | None = None,
    ) -> None:
        self._normalizer: SignalNormalizer = SignalNormalizer()
        self._samples: dict[str, list[tuple[datetime, Mapping[str, Any]]]] = defaultdict(list)
        self._lock: threading.Lock = threading.Lock()
        for vehicle_id, raw_samples in (samples_by_vehicle or {}).items():
            self.add(vehicle_id, raw_samples)

    def add(self, vehicle_id: str, raw_samples: Iterable[Mapping[str, Any]]) -> None:
        """Add raw documents; undatable documents are dropped."""
        with self._lock:
            bucket: list[tuple[datetime, Mapping[str, Any]]] = self._samples[vehicle_id]
            for raw_sample in raw_samples:
                normalized = self._normalizer.normalize(vehicle_id, raw_sample)
                if normalized is not None:
                    bucket.append((normalized.timestamp, raw_sample))
            bucket.sort(key=lambda entry: entry[0])

    def fetch_samples(
        self,
        vehicle_id: str,
        start: datetime,
        end: datetime,
    ) -> list[Mapping[str, Any]]:
        start_utc: datetime = ensure_utc(start)
        end_utc: datetime = ensure_utc(end)
        with self._lock:
            return [
                raw_sample
                for timestamp, raw_sample in self._samples.get(vehicle_id, [])
                if start_utc <= timestamp < end_utc
            ]


class InMemoryTripStore:
    """Trip store backed by a dict keyed on the trip's natural key."""

    def __init__(self) -> None:
        self._trips: dict[str, Trip] = {}
        self._lock: threading.Lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._trips)

    def find_active_trip(self, vehicle_id: str) -> Trip | None:
        """Most recent active trip of the vehicle, if any."""
        with self._lock:
            active: list[Trip] = [
                trip
                for trip in self._trips.values()
                if trip.vehicle_id == vehicle_id and trip.is_active
            ]
        if not active:
            return None
        return max(active, key=lambda trip: trip.ignition_on_time).model_copy(deep=True)

    def find_trips_overlapping(
        self,
        vehicle_id: str,
        start: datetime,
        end: datetime,
    ) -> list[Trip]:
        """Trips whose [on, off] interval intersects [start, end), oldest first."""
        start_utc: datetime = ensure_utc(start)
        end_utc: datetime = ensure_utc(end)
        with self._lock:
            matches: list[Trip] = [
                trip.model_copy(deep=True)
                for trip in self._trips.values()
                if trip.vehicle_id == vehicle_id
                and trip.ignition_on_time < end_utc
                and (trip.ignition_off_time is None or trip.ignition_off_time >= start_utc)
            ]
        return sorted(matches, key=lambda trip: trip.ignition_on_time)

    def upsert(self, trip: Trip) -> None:
        with self._lock:
            self._trips[trip.trip_id] = trip.model_copy(deep=True)

    def all_trips(self, vehicle_id: str | None = None) -> list[Trip]:
        with self._lock:
            trips: list[Trip] = [
                trip.model_copy(deep=True)
                for trip in self._trips.values()
                if vehicle_id is None or trip.vehicle_id == vehicle_id
            ]
        return sorted(trips, key=lambda trip: (trip.vehicle_id, trip.ignition_on_time))


class InMemoryRoutePointStore:
    """Append-only route point log. Re-appending a (vehicle, timestamp) is ignored."""

    def __init__(self) -> None:
        self._points: dict[str, dict[datetime, RoutePoint]] = defaultdict(dict)
        self._lock: threading.Lock = threading.Lock()

    def append(self, points: Iterable[RoutePoint]) -> None:
        added: int = 0
        with self._lock:
            for point in points:
                vehicle_points: dict[datetime, RoutePoint] = self._points[point.vehicle_id]
                if point.timestamp not in vehicle_points:
                    vehicle_points[point.timestamp] = point
                    added += 1
        logger.debug('Appended %d route points', added)

    def query(self, vehicle_id: str, start: datetime, end: datetime) -> list[RoutePoint]:
        start_utc: datetime = ensure_utc(start)
        end_utc: datetime = ensure_utc(end)
        with self._lock:
            points: list[RoutePoint] = [
                point
                for timestamp, point in self._points.get(vehicle_id, {}).items()
                if start_utc <= timestamp < end_utc
            ]
        return sorted(points, key=lambda point: point.timestamp)

    def to_dataframe(self, vehicle_id: str | None = None) -> pd.DataFrame:
        """Stored points in the canonical route point schema, optionally for one vehicle."""
        with self._lock:
            points: list[RoutePoint] = [
                point
                for stored_vehicle_id, vehicle_points in self._points.items()
                if vehicle_id is None or stored_vehicle_id == vehicle_id
                for point in vehicle_points.values()
            ]
        return route_points_to_dataframe(points)


class InMemoryProductivityStore:
    """Productivity periods keyed by (vehicle_id, date)."""

    def __init__(self) -> None:
        self._periods: dict[tuple[str, date], ProductivityPeriod] = {}
        self._lock: threading.Lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._periods)

    def get(self, vehicle_id: str, day: date) -> ProductivityPeriod | None:
        with self._lock:
            period: ProductivityPeriod | None = self._periods.get((vehicle_id, day))
        return period.model_copy(deep=True) if period is not None else None

    def upsert(self, period: ProductivityPeriod) -> None:
        with self._lock:
            self._periods[(period.vehicle_id, period.date)] = period.model_copy(deep=True)
