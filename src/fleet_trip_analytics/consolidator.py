# fleet_trip_analytics/consolidator.py
"""
Trip consolidation.

Ignition telemetry fragments real journeys: a driver stopping at a gate,
idling at a light with auto-stop, or cycling ignition while loading produces
several short trips where one happened. The consolidator repairs that in one
pass over a vehicle's trips in time order:

1. Trips with at most `parking_noise_max_points` route points are parking
   noise. They are removed from the trip list and returned separately, since
   the parking analyzer still wants them as ignition cycles.
2. A trip whose ignition-on time is within `merge_gap_minutes` of the
   current consolidated trip's end (ignition-off, or ignition-on while still
   open) is merged into it. The gap is compared by magnitude, so a small
   overlap also merges.
3. Otherwise the current consolidated trip is closed and a new one starts.

An unmerged trip keeps `consolidated_from == [trip_id]`, and merged trips
keep the full list, so running the consolidator over its own output returns
the same trips.
"""

import logging
from collections.abc import Iterable
from datetime import timedelta

from pydantic import BaseModel, ConfigDict, Field

from fleet_trip_analytics.config import ConsolidationConfig
from fleet_trip_analytics.models import (
    DataQualityIssue,
    DataQualityWarning,
    Trip,
    log_warnings,
)

__all__: list[str] = ['ConsolidationResult', 'TripConsolidator']

logger: logging.Logger = logging.getLogger(__name__)


class ConsolidationResult(BaseModel):
    """Consolidated trips plus the fragments classified as parking noise."""

    model_config = ConfigDict(extra='forbid')

    trips: list[Trip] = Field(default_factory=list)
    parking_noise: list[Trip] = Field(default_factory=list)
    warnings: list[DataQualityWarning] = Field(default_factory=list)


def _sum_optional(first: float | None, second: float | None) -> float | None:
    if first is None and second is None:
        return None
    return (first or 0.0) + (second or 0.0)


class TripConsolidator:
    """Merges fragmented trips and filters parking noise for one vehicle."""

    def __init__(self, config: ConsolidationConfig | None = None) -> None:
        self._config: ConsolidationConfig = config or ConsolidationConfig()

    def is_parking_noise(self, trip: Trip) -> bool:
        return trip.route_point_count <= self._config.parking_noise_max_points

    def consolidate(self, trips: Iterable[Trip]) -> ConsolidationResult:
        """
        Consolidate one vehicle's trips.

        Input trips are not modified; merged trips are new objects.

        Args:
            trips: Trips of a single vehicle, in any order.

        Returns:
            ConsolidationResult with trips in time order.

        Raises:
            ValueError: If the trips belong to more than one vehicle.
        """
        ordered: list[Trip] = sorted(trips, key=lambda trip: trip.ignition_on_time)
        vehicle_ids: set[str] = {trip.vehicle_id for trip in ordered}
        if len(vehicle_ids) > 1:
            raise ValueError(
                f'consolidate() expects one vehicle, got {sorted(vehicle_ids)}'
            )

        merge_gap: timedelta = timedelta(minutes=self._config.merge_gap_minutes)
        consolidated: list[Trip] = []
        parking_noise: list[Trip] = []
        warnings: list[DataQualityWarning] = []
        current: Trip | None = None

        for trip in ordered:
            if self.is_parking_noise(trip):
                parking_noise.append(trip)
                continue

            if current is None:
                current = self._as_consolidated(trip)
                continue

            gap: timedelta = trip.ignition_on_time - current.effective_end_time
            if gap < timedelta(0):
                warnings.append(
                    DataQualityWarning(
                        issue=DataQualityIssue.OVERLAPPING_TRIPS,
                        vehicle_id=trip.vehicle_id,
                        trip_id=trip.trip_id,
                        timestamp=trip.ignition_on_time,
                        message=(
                            f'trip starts {abs(gap.total_seconds()) / 60.0:.1f} min '
                            f'before {current.trip_id} ends'
                        ),
                    )
                )

            if abs(gap) <= merge_gap:
                current = self._merge(current, trip)
            else:
                consolidated.append(current)
                current = self._as_consolidated(trip)

        if current is not None:
            consolidated.append(current)

        log_warnings(warnings)

        logger.info(
            'Consolidated %d trips into %d (%d parking noise) for %s',
            len(ordered),
            len(consolidated),
            len(parking_noise),
            next(iter(vehicle_ids), '<none>'),
        )

        return ConsolidationResult(
            trips=consolidated,
            parking_noise=parking_noise,
            warnings=warnings,
        )

    @staticmethod
    def _as_consolidated(trip: Trip) -> Trip:
        """Copy a trip, defaulting its lineage to its own id."""
        return trip.model_copy(
            update={
                'route_points': list(trip.route_points),
                'consolidated_from': list(trip.consolidated_from or [trip.trip_id]),
            }
        )

    @staticmethod
    def _merge(current: Trip, following: Trip) -> Trip:
        """Append `following` to `current`, returning a new trip."""
        merged: Trip = current.model_copy(
            update={
                'route_points': [*current.route_points, *following.route_points],
                'consolidated_from': [
                    *current.consolidated_from,
                    *(following.consolidated_from or [following.trip_id]),
                ],
                'ignition_off_time': following.ignition_off_time,
                'is_active': following.is_active,
                'end_location': following.end_location or current.end_location,
                'end_odometer': (
                    following.end_odometer
                    if following.end_odometer is not None
                    else current.end_odometer
                ),
                'end_battery': (
                    following.end_battery
                    if following.end_battery is not None
                    else current.end_battery
                ),
                'distance_traveled': _sum_optional(
                    current.distance_traveled, following.distance_traveled
                ),
                'gps_distance_miles': current.gps_distance_miles
                + following.gps_distance_miles,
            }
        )

        if merged.ignition_off_time is not None:
            merged.total_run_time = (
                merged.ignition_off_time - merged.ignition_on_time
            ).total_seconds() / 60.0
        else:
            merged.total_run_time = (
                following.ignition_on_time - merged.ignition_on_time
            ).total_seconds() / 60.0 + following.total_run_time

        if merged.start_battery is not None and merged.end_battery is not None:
            merged.battery_used = merged.start_battery - merged.end_battery
        else:
            merged.battery_used = _sum_optional(current.battery_used, following.battery_used)

        logger.debug(
            'Merged %s into %s (%d route points)',
            following.trip_id,
            merged.trip_id,
            merged.route_point_count,
        )
        return merged
