# fleet_trip_analytics/segmenter.py
"""
Trip segmentation as an explicit finite-state machine.

One `TripSegmenter` follows one vehicle's time-ordered samples and cuts them
into ignition trips.

States:
-------
    NO_ACTIVE_TRIP     Ignition off (or never seen running).
    AWAITING_POSITION  Ignition turned on but no position fix has arrived.
                       The ignition-on time is held; the start location is
                       taken from the next fix.
    TRIP_IN_PROGRESS   A trip is open. Every positioned sample becomes a
                       RoutePoint of that trip.

Transitions:
------------
    NO_ACTIVE_TRIP    --on/run, fix-->    TRIP_IN_PROGRESS
    NO_ACTIVE_TRIP    --on/run, no fix--> AWAITING_POSITION
    AWAITING_POSITION --any fix-->        TRIP_IN_PROGRESS (on time kept)
    AWAITING_POSITION --off-->            NO_ACTIVE_TRIP (pending trip discarded,
                                          MISSING_POSITION warning)
    TRIP_IN_PROGRESS  --off-->            NO_ACTIVE_TRIP (trip closed and emitted)

A trip is started only by a transition into a running state: the previous
ignition must have been Off or Unknown. Unknown ignition while a trip is open
keeps the trip open.

Design Decisions:
-----------------
- Samples are never reordered. A sample older than its predecessor raises an
  OUT_OF_ORDER_SAMPLE warning and is processed where it arrived, so the
  resulting trip can be checked by `validate_trip()` rather than silently
  repaired.
- Distance is reported twice: `distance_traveled` from the odometer delta and
  `gps_distance_miles` from the GPS path with sub-buffer hops ignored.
- The optional GPS parking override needs samples on both sides of each
  anchor, so it is only applied by `segment()`, which sees the whole batch.
"""

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from fleet_trip_analytics.common.geo import METERS_TO_MILES, path_length_meters
from fleet_trip_analytics.config import SegmentationConfig, StopDetectionConfig
from fleet_trip_analytics.models import (
    DataQualityIssue,
    DataQualityWarning,
    IgnitionState,
    Location,
    RoutePoint,
    Sample,
    Trip,
    log_warnings,
)
from fleet_trip_analytics.normalizer import MovementTracker
from fleet_trip_analytics.stops import StopDetector

__all__: list[str] = [
    'SegmentationResult',
    'SegmenterState',
    'TripSegmenter',
    'compute_gps_distance_miles',
    'validate_trip',
]

logger: logging.Logger = logging.getLogger(__name__)


class SegmenterState(str, Enum):
    """States of the per-vehicle trip state machine."""

    NO_ACTIVE_TRIP = 'no_active_trip'
    AWAITING_POSITION = 'awaiting_position'
    TRIP_IN_PROGRESS = 'trip_in_progress'


class SegmentationResult(BaseModel):
    """Output of segmenting one batch of samples."""

    model_config = ConfigDict(extra='forbid')

    completed_trips: list[Trip] = Field(default_factory=list)
    active_trip: Trip | None = None
    warnings: list[DataQualityWarning] = Field(default_factory=list)

    @property
    def all_trips(self) -> list[Trip]:
        """Completed trips followed by the active one, if any."""
        if self.active_trip is None:
            return list(self.completed_trips)
        return [*self.completed_trips, self.active_trip]


# =============================================================================
# Trip Checks and Metrics
# =============================================================================


def validate_trip(trip: Trip) -> list[DataQualityWarning]:
    """
    Check a trip's time invariants.

    Checks that the trip does not end before it starts, that route points are
    in time order, and that every route point lies inside
    [ignition_on_time, ignition_off_time] (open-ended while active).

    Returns:
        One warning per violated invariant; empty when the trip is sound.
    """
    warnings: list[DataQualityWarning] = []
    trip_id: str = trip.trip_id

    if trip.ignition_off_time is not None and trip.ignition_off_time < trip.ignition_on_time:
        warnings.append(
            DataQualityWarning(
                issue=DataQualityIssue.TRIP_ENDS_BEFORE_START,
                vehicle_id=trip.vehicle_id,
                trip_id=trip_id,
                timestamp=trip.ignition_off_time,
                message=(
                    f'ignition_off_time {trip.ignition_off_time.isoformat()} precedes '
                    f'ignition_on_time {trip.ignition_on_time.isoformat()}'
                ),
            )
        )

    timestamps: list[datetime] = [point.timestamp for point in trip.route_points]
    if any(later < earlier for earlier, later in zip(timestamps, timestamps[1:], strict=False)):
        warnings.append(
            DataQualityWarning(
                issue=DataQualityIssue.ROUTE_POINTS_UNORDERED,
                vehicle_id=trip.vehicle_id,
                trip_id=trip_id,
                message='route points are not in timestamp order',
            )
        )

    outside: list[datetime] = [
        timestamp
        for timestamp in timestamps
        if timestamp < trip.ignition_on_time
        or (trip.ignition_off_time is not None and timestamp > trip.ignition_off_time)
    ]
    if outside:
        warnings.append(
            DataQualityWarning(
                issue=DataQualityIssue.ROUTE_POINT_OUTSIDE_TRIP,
                vehicle_id=trip.vehicle_id,
                trip_id=trip_id,
                timestamp=outside[0],
                message=f'{len(outside)} route point(s) fall outside the trip window',
            )
        )

    if trip.distance_traveled is not None and trip.distance_traveled < 0:
        warnings.append(
            DataQualityWarning(
                issue=DataQualityIssue.NEGATIVE_DISTANCE,
                vehicle_id=trip.vehicle_id,
                trip_id=trip_id,
                message=f'odometer delta is negative ({trip.distance_traveled:.2f} mi)',
            )
        )

    return warnings


def compute_gps_distance_miles(
    route_points: Sequence[RoutePoint],
    gps_accuracy_buffer_meters: float,
) -> float:
    """GPS path length in miles, ignoring hops shorter than the accuracy buffer."""
    meters: float = path_length_meters(
        ((point.latitude, point.longitude) for point in route_points),
        min_segment_meters=gps_accuracy_buffer_meters,
    )
    return meters * METERS_TO_MILES


# =============================================================================
# State Machine
# =============================================================================


class TripSegmenter:
    """
    Per-vehicle trip state machine.

    Feed samples one at a time with `process()`, or a whole batch with
    `segment()`. Instances are not thread-safe; use one per vehicle.

    Example:
        >>> segmenter = TripSegmenter('VAN-1', vehicle_name='Van 1')
        >>> result = segmenter.segment(samples)
        >>> result.completed_trips, result.active_trip
    """

    def __init__(
        self,
        vehicle_id: str,
        vehicle_name: str = '',
        config: SegmentationConfig | None = None,
        stop_config: StopDetectionConfig | None = None,
        active_trip: Trip | None = None,
    ) -> None:
        """
        Args:
            vehicle_id: Vehicle whose samples will be processed.
            vehicle_name: Display name stamped on new trips.
            config: Segmentation settings.
            stop_config: Thresholds for the movement flag and the GPS parking
                override window.
            active_trip: An open trip to resume, typically loaded from the
                trip store after a restart.

        Raises:
            ValueError: If active_trip belongs to another vehicle or is closed.
        """
        self._vehicle_id: str = vehicle_id
        self._vehicle_name: str = vehicle_name
        self._config: SegmentationConfig = config or SegmentationConfig()
        self._stop_detector: StopDetector = StopDetector(stop_config)
        self._movement: MovementTracker = MovementTracker(stop_config)

        self._state: SegmenterState = SegmenterState.NO_ACTIVE_TRIP
        self._trip: Trip | None = None
        self._pending_start: Sample | None = None
        self._last_ignition: IgnitionState = IgnitionState.UNKNOWN
        self._last_timestamp: datetime | None = None
        self._last_odometer: float | None = None
        self._last_battery: float | None = None
        self._warnings: list[DataQualityWarning] = []

        if active_trip is not None:
            self._resume(active_trip)

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def state(self) -> SegmenterState:
        return self._state

    @property
    def active_trip(self) -> Trip | None:
        """The open trip, if the machine is in TRIP_IN_PROGRESS."""
        return self._trip

    def drain_warnings(self) -> list[DataQualityWarning]:
        """Return and clear the warnings collected so far."""
        warnings: list[DataQualityWarning] = self._warnings
        self._warnings = []
        return warnings

    # -------------------------------------------------------------------------
    # Batch Entry Point
    # -------------------------------------------------------------------------

    def segment(self, samples: Sequence[Sample]) -> SegmentationResult:
        """
        Run a batch of time-ordered samples through the state machine.

        When `gps_parking_override` is enabled, running-ignition samples whose
        surrounding window classifies as PARKED are treated as ignition Off.

        Args:
            samples: One vehicle's samples in arrival order.

        Returns:
            Trips closed during the batch, the trip still open at the end (if
            any), and the data-quality warnings raised.
        """
        completed: list[Trip] = []
        overridden: int = 0

        for index, sample in enumerate(samples):
            ignition: IgnitionState = sample.ignition_state

            if (
                self._config.gps_parking_override
                and ignition.is_running
                and sample.has_position
                and self._stop_detector.classify_window(samples, index).is_parked
            ):
                ignition = IgnitionState.OFF
                overridden += 1

            closed: Trip | None = self._step(sample, ignition)
            if closed is not None:
                completed.append(closed)

        if overridden:
            logger.debug(
                'GPS parking override treated %d running samples as Off for %s',
                overridden,
                self._vehicle_id,
            )

        if self._trip is not None:
            self._refresh_active_metrics(self._trip)

        logger.info(
            'Segmented %d samples for %s: %d completed trips, active=%s',
            len(samples),
            self._vehicle_id,
            len(completed),
            self._trip is not None,
        )

        return SegmentationResult(
            completed_trips=completed,
            active_trip=self._trip,
            warnings=self.drain_warnings(),
        )

    def process(self, sample: Sample) -> Trip | None:
        """
        Feed one sample.

        Returns:
            The trip closed by this sample, or None.
        """
        return self._step(sample, sample.ignition_state)

    def process_all(self, samples: Iterable[Sample]) -> list[Trip]:
        """Feed samples one by one and collect the trips they close."""
        closed_trips: list[Trip] = []
        for sample in samples:
            closed: Trip | None = self.process(sample)
            if closed is not None:
                closed_trips.append(closed)
        return closed_trips

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def _step(self, sample: Sample, ignition: IgnitionState) -> Trip | None:
        if sample.vehicle_id != self._vehicle_id:
            raise ValueError(
                f'Sample for vehicle {sample.vehicle_id!r} fed to segmenter '
                f'for {self._vehicle_id!r}'
            )

        self._check_order(sample)

        turned_on: bool = ignition.is_running and not self._last_ignition.is_running
        closed_trip: Trip | None = None

        match self._state:
            case SegmenterState.NO_ACTIVE_TRIP:
                if turned_on:
                    self._begin(sample)
                else:
                    self._movement.observe(sample)

            case SegmenterState.AWAITING_POSITION:
                if ignition is IgnitionState.OFF:
                    self._discard_pending(sample)
                elif sample.has_position:
                    self._start_trip_from_pending(sample)

            case SegmenterState.TRIP_IN_PROGRESS:
                if ignition is IgnitionState.OFF:
                    closed_trip = self._close_trip(sample)
                else:
                    self._extend_trip(sample)

        self._last_ignition = ignition
        self._last_timestamp = sample.timestamp
        return closed_trip

    def _begin(self, sample: Sample) -> None:
        if sample.has_position:
            self._open_trip(sample, start_sample=sample)
            return

        self._pending_start = sample
        self._state = SegmenterState.AWAITING_POSITION
        logger.debug(
            'Ignition on for %s at %s without position; awaiting fix',
            self._vehicle_id,
            sample.timestamp.isoformat(),
        )

    def _start_trip_from_pending(self, sample: Sample) -> None:
        pending: Sample | None = self._pending_start
        self._pending_start = None
        self._open_trip(sample, start_sample=pending or sample)

    def _open_trip(self, position_sample: Sample, start_sample: Sample) -> None:
        """Open a trip dated by `start_sample` and located by `position_sample`."""
        first_point: RoutePoint = self._movement.mark(position_sample)

        start_odometer: float | None = start_sample.odometer
        if start_odometer is None:
            start_odometer = position_sample.odometer
        start_battery: float | None = start_sample.battery_soc
        if start_battery is None:
            start_battery = position_sample.battery_soc

        trip = Trip(
            vehicle_id=self._vehicle_id,
            vehicle_name=self._vehicle_name,
            ignition_on_time=start_sample.timestamp,
            is_active=True,
            start_location=Location.from_sample(position_sample),
            route_points=[first_point],
            start_odometer=start_odometer,
            start_battery=start_battery,
        )
        trip.consolidated_from = [trip.trip_id]

        self._trip = trip
        self._last_odometer = start_odometer
        self._last_battery = start_battery
        self._state = SegmenterState.TRIP_IN_PROGRESS

        logger.info(
            'Trip started for %s at %s',
            self._vehicle_id,
            trip.ignition_on_time.isoformat(),
        )

    def _extend_trip(self, sample: Sample) -> None:
        trip: Trip | None = self._trip
        if trip is None:
            return

        if sample.odometer is not None:
            if trip.start_odometer is None:
                trip.start_odometer = sample.odometer
            self._last_odometer = sample.odometer
        if sample.battery_soc is not None:
            if trip.start_battery is None:
                trip.start_battery = sample.battery_soc
            self._last_battery = sample.battery_soc

        if sample.has_position:
            trip.route_points.append(self._movement.mark(sample))

    def _close_trip(self, sample: Sample) -> Trip | None:
        trip: Trip | None = self._trip
        if trip is None:
            return None

        self._extend_trip(sample)

        if sample.has_position:
            trip.end_location = Location.from_sample(sample)
        elif trip.route_points:
            trip.end_location = Location.from_sample(trip.route_points[-1])
        else:
            trip.end_location = trip.start_location.model_copy()

        trip.ignition_off_time = sample.timestamp
        trip.is_active = False
        trip.end_odometer = self._last_odometer
        trip.end_battery = self._last_battery
        self._apply_metrics(trip)

        warnings: list[DataQualityWarning] = validate_trip(trip)
        self._record_warnings(warnings)

        logger.info(
            'Trip closed for %s: %.1f min, %d route points, odometer=%s mi, gps=%.2f mi',
            self._vehicle_id,
            trip.total_run_time,
            trip.route_point_count,
            f'{trip.distance_traveled:.2f}' if trip.distance_traveled is not None else 'n/a',
            trip.gps_distance_miles,
        )

        self._trip = None
        self._state = SegmenterState.NO_ACTIVE_TRIP
        return trip

    def _discard_pending(self, sample: Sample) -> None:
        pending: Sample | None = self._pending_start
        self._pending_start = None
        self._state = SegmenterState.NO_ACTIVE_TRIP

        on_time: datetime = pending.timestamp if pending else sample.timestamp
        self._record_warnings(
            [
                DataQualityWarning(
                    issue=DataQualityIssue.MISSING_POSITION,
                    vehicle_id=self._vehicle_id,
                    timestamp=on_time,
                    message=(
                        f'ignition cycle {on_time.isoformat()} -> '
                        f'{sample.timestamp.isoformat()} had no position fix; discarded'
                    ),
                )
            ]
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _resume(self, trip: Trip) -> None:
        if trip.vehicle_id != self._vehicle_id:
            raise ValueError(
                f'Cannot resume trip of vehicle {trip.vehicle_id!r} '
                f'in segmenter for {self._vehicle_id!r}'
            )
        if not trip.is_active:
            raise ValueError(f'Cannot resume closed trip {trip.trip_id}')

        self._trip = trip
        self._state = SegmenterState.TRIP_IN_PROGRESS
        self._last_ignition = IgnitionState.RUN
        self._last_odometer = (
            trip.end_odometer if trip.end_odometer is not None else trip.start_odometer
        )
        self._last_battery = (
            trip.end_battery if trip.end_battery is not None else trip.start_battery
        )
        if not trip.consolidated_from:
            trip.consolidated_from = [trip.trip_id]
        if trip.route_points:
            last_point: RoutePoint = trip.route_points[-1]
            self._movement.observe(last_point)
            self._last_timestamp = last_point.timestamp
            for point in reversed(trip.route_points):
                if point.odometer is not None:
                    self._last_odometer = point.odometer
                    break

        logger.info('Resumed active trip %s', trip.trip_id)

    def _check_order(self, sample: Sample) -> None:
        if self._last_timestamp is None or sample.timestamp >= self._last_timestamp:
            return
        self._record_warnings(
            [
                DataQualityWarning(
                    issue=DataQualityIssue.OUT_OF_ORDER_SAMPLE,
                    vehicle_id=self._vehicle_id,
                    trip_id=self._trip.trip_id if self._trip else None,
                    timestamp=sample.timestamp,
                    message=(
                        f'sample at {sample.timestamp.isoformat()} arrived after '
                        f'{self._last_timestamp.isoformat()}'
                    ),
                )
            ]
        )

    def _record_warnings(self, warnings: list[DataQualityWarning]) -> None:
        if not warnings:
            return
        log_warnings(warnings)
        self._warnings.extend(warnings)

    def _apply_metrics(self, trip: Trip) -> None:
        """Derive duration, distances and battery use for a closed trip."""
        end_time: datetime = trip.effective_end_time
        trip.total_run_time = (end_time - trip.ignition_on_time).total_seconds() / 60.0

        if trip.start_odometer is not None and trip.end_odometer is not None:
            trip.distance_traveled = trip.end_odometer - trip.start_odometer
        else:
            trip.distance_traveled = None

        trip.gps_distance_miles = compute_gps_distance_miles(
            trip.route_points,
            self._config.gps_accuracy_buffer_meters,
        )

        if trip.start_battery is not None and trip.end_battery is not None:
            trip.battery_used = trip.start_battery - trip.end_battery
        else:
            trip.battery_used = None

    def _refresh_active_metrics(self, trip: Trip) -> None:
        """Running figures for an open trip, measured up to its latest sample."""
        latest: datetime = self._last_timestamp or trip.ignition_on_time
        trip.total_run_time = max(
            0.0, (latest - trip.ignition_on_time).total_seconds() / 60.0
        )
        trip.gps_distance_miles = compute_gps_distance_miles(
            trip.route_points,
            self._config.gps_accuracy_buffer_meters,
        )
        if trip.start_odometer is not None and self._last_odometer is not None:
            trip.distance_traveled = self._last_odometer - trip.start_odometer
