# fleet_trip_analytics/stops.py
"""
Stop detection.

Two views of "the vehicle is not moving" are provided:

1. Windowed classification (`StopDetector.classify_window`): a statistical
   verdict for one anchor sample from the raw GPS hops around it. Used by the
   segmenter's optional GPS parking override.

2. Stop extraction (`StopDetector.extract_stops`): maximal runs of route
   points whose ingestion-time `is_moving` flag is False, kept when they last
   at least `min_stop_minutes`. Used by the productivity aggregator.

Windowed Classification:
------------------------
All samples with a position within `window_half_width_minutes` of the anchor
(inclusive on both sides) form the window. With fewer than
`min_window_samples` the result is INDETERMINATE. Otherwise the consecutive
haversine hops give `max_movement_meters` and `avg_movement_meters`, and the
window is PARKED only when

    time_span >= half_width
    and max_hop < max_movement_meters
    and avg_hop < avg_movement_meters

Both distance comparisons are strict: a hop of exactly the threshold is
movement. Overlapping windows of neighbouring anchors share most of their
samples, which keeps the verdict from flickering on single-point jitter.
"""

import logging
from collections.abc import Sequence
from datetime import datetime, timedelta

from fleet_trip_analytics.common.geo import haversine_meters
from fleet_trip_analytics.config import StopDetectionConfig
from fleet_trip_analytics.models import (
    Location,
    RoutePoint,
    Sample,
    Stop,
    StopClassification,
    WindowClassification,
)

__all__: list[str] = ['StopDetector']

logger: logging.Logger = logging.getLogger(__name__)


class StopDetector:
    """
    Parked/moving classification and stop extraction for one vehicle's samples.

    Stateless apart from its configuration; safe to share between threads.
    """

    def __init__(self, config: StopDetectionConfig | None = None) -> None:
        self._config: StopDetectionConfig = config or StopDetectionConfig()

    @property
    def config(self) -> StopDetectionConfig:
        return self._config

    # -------------------------------------------------------------------------
    # Windowed Classification
    # -------------------------------------------------------------------------

    def classify_window(
        self,
        samples: Sequence[Sample],
        anchor_index: int,
    ) -> WindowClassification:
        """
        Classify the sample at `anchor_index` as parked or moving.

        Args:
            samples: Time-ordered samples for one vehicle. Samples without a
                position are ignored.
            anchor_index: Index of the candidate sample in `samples`.

        Returns:
            WindowClassification with the window statistics.

        Raises:
            IndexError: If anchor_index is out of range.
        """
        if not 0 <= anchor_index < len(samples):
            raise IndexError(
                f'anchor_index {anchor_index} out of range for {len(samples)} samples'
            )
        anchor: Sample = samples[anchor_index]
        half_width: timedelta = timedelta(minutes=self._config.window_half_width_minutes)
        window_start: datetime = anchor.timestamp - half_width
        window_end: datetime = anchor.timestamp + half_width

        # Walk outward from the anchor; the input is time-ordered.
        first_index: int = anchor_index
        while first_index > 0 and samples[first_index - 1].timestamp >= window_start:
            first_index -= 1
        last_index: int = anchor_index
        while (
            last_index < len(samples) - 1
            and samples[last_index + 1].timestamp <= window_end
        ):
            last_index += 1

        window: list[Sample] = [
            sample
            for sample in samples[first_index : last_index + 1]
            if sample.has_position
        ]

        if len(window) < self._config.min_window_samples:
            return WindowClassification(
                classification=StopClassification.INDETERMINATE,
                points_analyzed=len(window),
            )

        hops: list[float] = [
            haversine_meters(
                previous.latitude,  # type: ignore[arg-type]
                previous.longitude,  # type: ignore[arg-type]
                current.latitude,  # type: ignore[arg-type]
                current.longitude,  # type: ignore[arg-type]
            )
            for previous, current in zip(window, window[1:], strict=False)
        ]
        max_movement: float = max(hops)
        avg_movement: float = sum(hops) / len(hops)
        time_span_minutes: float = (
            window[-1].timestamp - window[0].timestamp
        ).total_seconds() / 60.0

        is_parked: bool = (
            time_span_minutes >= self._config.window_half_width_minutes
            and max_movement < self._config.max_movement_meters
            and avg_movement < self._config.avg_movement_meters
        )

        return WindowClassification(
            classification=(
                StopClassification.PARKED if is_parked else StopClassification.MOVING
            ),
            max_movement_meters=max_movement,
            avg_movement_meters=avg_movement,
            time_span_minutes=time_span_minutes,
            points_analyzed=len(window),
        )

    # -------------------------------------------------------------------------
    # Stop Extraction
    # -------------------------------------------------------------------------

    def extract_stops(
        self,
        route_points: Sequence[RoutePoint],
        min_stop_minutes: float | None = None,
    ) -> list[Stop]:
        """
        Find stationary runs in a trip's route points.

        A run is a maximal sequence of consecutive points with
        `is_moving == False`. It starts at its first point and ends at its
        last point. Engine minutes split each interval between consecutive
        points of the run by the earlier point's ignition state.

        Args:
            route_points: Time-ordered route points of one trip.
            min_stop_minutes: Override for the configured minimum duration.
                Pass 0 to get every run.

        Returns:
            Stops in chronological order.
        """
        minimum: float = (
            self._config.min_stop_minutes if min_stop_minutes is None else min_stop_minutes
        )
        stops: list[Stop] = []
        run: list[RoutePoint] = []

        for point in route_points:
            if point.is_moving:
                self._close_run(run, minimum, stops)
                run = []
            else:
                run.append(point)
        self._close_run(run, minimum, stops)

        logger.debug(
            'Extracted %d stops from %d route points (minimum %.1f min)',
            len(stops),
            len(route_points),
            minimum,
        )
        return stops

    @staticmethod
    def _close_run(
        run: list[RoutePoint],
        minimum_minutes: float,
        stops: list[Stop],
    ) -> None:
        if not run:
            return

        first: RoutePoint = run[0]
        last: RoutePoint = run[-1]
        duration_minutes: float = (last.timestamp - first.timestamp).total_seconds() / 60.0
        if duration_minutes < minimum_minutes:
            return

        engine_on_minutes: float = 0.0
        engine_off_minutes: float = 0.0
        for previous, current in zip(run, run[1:], strict=False):
            interval: float = max(
                0.0, (current.timestamp - previous.timestamp).total_seconds() / 60.0
            )
            if previous.ignition_state.is_running:
                engine_on_minutes += interval
            else:
                engine_off_minutes += interval

        stops.append(
            Stop(
                vehicle_id=first.vehicle_id,
                start_time=first.timestamp,
                end_time=last.timestamp,
                location=Location.from_sample(first),
                route_points_in_window=len(run),
                engine_on_minutes=engine_on_minutes,
                engine_off_minutes=engine_off_minutes,
            )
        )
