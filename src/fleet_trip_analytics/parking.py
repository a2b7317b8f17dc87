# fleet_trip_analytics/parking.py
"""
Parking session analysis.

A parking session is the time between a trip ending and the vehicle really
leaving. Drivers often turn the ignition on briefly while parked (climate
control, loading the bed, a phone call), and those cycles should not end the
session.

Rules:
------
- A session starts `grace_period_minutes` after ignition off. A trip that
  starts inside the grace period cancels the session; the vehicle never
  parked.
- A later trip that stays within `departure_distance_meters` of the parking
  location is recorded as an ignition cycle of the session, as is every
  parking-noise fragment that starts while the session is open.
- The first trip that moves beyond the departure distance ends the session.
  Without one, the session is still open (`is_currently_parked`).

Cycle purpose is a guess from the local hour and the cycle count; see
`infer_cycle_purpose`.
"""

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from fleet_trip_analytics.common.geo import haversine_meters
from fleet_trip_analytics.config import ParkingConfig
from fleet_trip_analytics.models import (
    CyclePurpose,
    IgnitionCycle,
    Location,
    ParkingSession,
    Trip,
)

__all__: list[str] = ['ParkingAnalyzer', 'infer_cycle_purpose', 'max_distance_from']

logger: logging.Logger = logging.getLogger(__name__)

BREAK_HOURS: frozenset[int] = frozenset({11, 12, 13, 15, 16})


def infer_cycle_purpose(cycle_number: int, local_hour: int) -> CyclePurpose:
    """Lunch and afternoon hours read as breaks; repeat cycles as loading."""
    if local_hour in BREAK_HOURS:
        return CyclePurpose.BREAK
    if cycle_number > 1:
        return CyclePurpose.LOADING
    return CyclePurpose.UNKNOWN


def max_distance_from(origin: Location, trip: Trip) -> float:
    """Largest distance in meters between `origin` and any known position of a trip."""
    positions: list[tuple[float, float]] = [
        (trip.start_location.latitude, trip.start_location.longitude),
        *((point.latitude, point.longitude) for point in trip.route_points),
    ]
    if trip.end_location is not None:
        positions.append((trip.end_location.latitude, trip.end_location.longitude))

    return max(
        haversine_meters(origin.latitude, origin.longitude, latitude, longitude)
        for latitude, longitude in positions
    )


class ParkingAnalyzer:
    """Derives parking sessions from one vehicle's consolidated trips."""

    def __init__(self, config: ParkingConfig | None = None, timezone: str = 'UTC') -> None:
        self._config: ParkingConfig = config or ParkingConfig()
        self._timezone: ZoneInfo = ZoneInfo(timezone)

    def analyze(
        self,
        trips: Iterable[Trip],
        parking_noise: Iterable[Trip] = (),
    ) -> list[ParkingSession]:
        """
        Build parking sessions.

        Args:
            trips: Consolidated trips of one vehicle, in any order.
            parking_noise: Fragments dropped by the consolidator.

        Returns:
            Sessions in chronological order.

        Raises:
            ValueError: If the trips belong to more than one vehicle.
        """
        ordered: list[Trip] = sorted(trips, key=lambda trip: trip.ignition_on_time)
        noise: list[Trip] = sorted(parking_noise, key=lambda trip: trip.ignition_on_time)

        vehicle_ids: set[str] = {trip.vehicle_id for trip in (*ordered, *noise)}
        if len(vehicle_ids) > 1:
            raise ValueError(f'analyze() expects one vehicle, got {sorted(vehicle_ids)}')

        grace: timedelta = timedelta(minutes=self._config.grace_period_minutes)
        sessions: list[ParkingSession] = []
        index: int = 0

        while index < len(ordered):
            trip: Trip = ordered[index]
            index += 1
            if trip.ignition_off_time is None:
                continue

            parking_location: Location = trip.end_location or trip.start_location
            parking_start: datetime = trip.ignition_off_time + grace

            if index < len(ordered) and ordered[index].ignition_on_time < parking_start:
                logger.debug(
                    'Parking after %s cancelled: next trip started within grace period',
                    trip.trip_id,
                )
                continue

            cycle_trips: list[Trip] = []
            departure: Trip | None = None
            while index < len(ordered):
                candidate: Trip = ordered[index]
                if max_distance_from(parking_location, candidate) > (
                    self._config.departure_distance_meters
                ):
                    departure = candidate
                    break
                cycle_trips.append(candidate)
                index += 1
                if candidate.ignition_off_time is None:
                    break

            parking_end: datetime | None = (
                departure.ignition_on_time if departure is not None else None
            )
            cycle_trips.extend(
                fragment
                for fragment in noise
                if fragment.ignition_on_time >= parking_start
                and (parking_end is None or fragment.ignition_on_time < parking_end)
            )
            sessions.append(
                self._build_session(
                    trip, parking_location, parking_start, departure, cycle_trips
                )
            )

        logger.info(
            'Found %d parking sessions for %s',
            len(sessions),
            next(iter(vehicle_ids), '<none>'),
        )
        return sessions

    def _build_session(
        self,
        trip: Trip,
        parking_location: Location,
        parking_start: datetime,
        departure: Trip | None,
        cycle_trips: Sequence[Trip],
    ) -> ParkingSession:
        cycles: list[IgnitionCycle] = []
        for cycle_number, cycle_trip in enumerate(
            sorted(cycle_trips, key=lambda item: item.ignition_on_time), start=1
        ):
            local_hour: int = cycle_trip.ignition_on_time.astimezone(self._timezone).hour
            cycles.append(
                IgnitionCycle(
                    cycle_number=cycle_number,
                    ignition_on_time=cycle_trip.ignition_on_time,
                    ignition_off_time=cycle_trip.ignition_off_time,
                    duration_minutes=(
                        cycle_trip.total_run_time
                        if cycle_trip.ignition_off_time is not None
                        else None
                    ),
                    purpose=infer_cycle_purpose(cycle_number, local_hour),
                    battery_used=cycle_trip.battery_used,
                    max_location_change_meters=max_distance_from(parking_location, cycle_trip),
                )
            )

        parking_end: datetime | None = (
            departure.ignition_on_time if departure is not None else None
        )
        return ParkingSession(
            vehicle_id=trip.vehicle_id,
            vehicle_name=trip.vehicle_name,
            ignition_off_time=trip.ignition_off_time or trip.ignition_on_time,
            parking_start_time=parking_start,
            parking_end_time=parking_end,
            parking_location=parking_location,
            total_parking_minutes=(
                max(0.0, (parking_end - parking_start).total_seconds() / 60.0)
                if parking_end is not None
                else None
            ),
            ignition_cycles=cycles,
            is_currently_parked=departure is None,
            previous_trip_id=trip.trip_id,
            next_trip_id=departure.trip_id if departure is not None else None,
        )
