"""
Tests for fleet_trip_analytics.segmenter module.

Tests the trip state machine transitions, trip metrics, resumption of an
active trip across batches, data-quality warnings and validate_trip().
"""

# pyright: reportPrivateUsage=false

from collections.abc import Callable
from datetime import timedelta

import pytest

from fleet_trip_analytics.config import SegmentationConfig
from fleet_trip_analytics.models import (
    DataQualityIssue,
    DataQualityWarning,
    IgnitionState,
    Sample,
    Trip,
)
from fleet_trip_analytics.segmenter import (
    SegmentationResult,
    SegmenterState,
    TripSegmenter,
    validate_trip,
)

VEHICLE_ID: str = 'VAN-1'

RUN: IgnitionState = IgnitionState.RUN
OFF: IgnitionState = IgnitionState.OFF


@pytest.fixture
def simple_trip_samples(make_sample: Callable[..., Sample]) -> list[Sample]:
    """Parked, three running fixes 100 m apart, then ignition off 300 m north."""
    return [
        make_sample(0, ignition=OFF, meters_north=0.0, odometer=10.0, battery_soc=81.0),
        make_sample(1, ignition=RUN, meters_north=0.0, odometer=10.0, battery_soc=80.0),
        make_sample(2, ignition=RUN, meters_north=100.0, odometer=10.1),
        make_sample(3, ignition=RUN, meters_north=200.0, odometer=10.2),
        make_sample(4, ignition=OFF, meters_north=300.0, odometer=10.3, battery_soc=78.0),
    ]


class TestTripLifecycle:
    """Test opening, extending and closing trips."""

    def test_single_trip(self, simple_trip_samples: list[Sample]) -> None:
        """Should produce one closed trip bounded by the ignition transitions."""

        result: SegmentationResult = TripSegmenter(VEHICLE_ID).segment(simple_trip_samples)

        assert len(result.completed_trips) == 1
        assert result.active_trip is None
        trip: Trip = result.completed_trips[0]
        assert trip.ignition_on_time == simple_trip_samples[1].timestamp
        assert trip.ignition_off_time == simple_trip_samples[4].timestamp
        assert trip.is_active is False

    def test_trip_metrics(self, simple_trip_samples: list[Sample]) -> None:
        """Should derive run time, distances and battery use on close."""

        trip: Trip = TripSegmenter(VEHICLE_ID).segment(simple_trip_samples).completed_trips[0]

        assert trip.total_run_time == pytest.approx(3.0)
        assert trip.start_odometer == pytest.approx(10.0)
        assert trip.end_odometer == pytest.approx(10.3)
        assert trip.distance_traveled == pytest.approx(0.3)
        assert trip.gps_distance_miles == pytest.approx(300.0 / 1609.344, rel=1e-3)
        assert trip.start_battery == pytest.approx(80.0)
        assert trip.end_battery == pytest.approx(78.0)
        assert trip.battery_used == pytest.approx(2.0)

    def test_route_points_include_start_and_off_samples(
        self,
        simple_trip_samples: list[Sample],
    ) -> None:
        """Should record the starting fix and the positioned ignition-off fix."""

        trip: Trip = TripSegmenter(VEHICLE_ID).segment(simple_trip_samples).completed_trips[0]

        assert trip.route_point_count == 4  # noqa: PLR2004
        assert trip.route_points[0].timestamp == trip.ignition_on_time
        assert trip.route_points[-1].timestamp == trip.ignition_off_time
        assert trip.end_location is not None
        assert trip.end_location.latitude == simple_trip_samples[4].latitude

    def test_movement_flag_assigned_at_ingestion(
        self,
        simple_trip_samples: list[Sample],
    ) -> None:
        """Should flag 100 m/min hops as moving and the first point as stationary."""

        trip: Trip = TripSegmenter(VEHICLE_ID).segment(simple_trip_samples).completed_trips[0]

        assert [point.is_moving for point in trip.route_points] == [False, True, True, True]

    def test_consolidated_from_defaults_to_own_id(
        self,
        simple_trip_samples: list[Sample],
    ) -> None:
        """Should seed the trip lineage with its own natural key."""

        trip: Trip = TripSegmenter(VEHICLE_ID).segment(simple_trip_samples).completed_trips[0]

        assert trip.consolidated_from == [trip.trip_id]
        assert trip.trip_id.startswith(f'{VEHICLE_ID}:')

    def test_first_running_sample_starts_trip(self, make_sample: Callable[..., Sample]) -> None:
        """Should treat the initial ignition as unknown, so On starts a trip."""

        segmenter = TripSegmenter(VEHICLE_ID)
        segmenter.process(make_sample(0, ignition=IgnitionState.ON))

        assert segmenter.state is SegmenterState.TRIP_IN_PROGRESS

    def test_run_after_on_does_not_start_new_trip(
        self,
        make_sample: Callable[..., Sample],
    ) -> None:
        """Should keep one trip across On -> Run."""

        samples: list[Sample] = [
            make_sample(0, ignition=IgnitionState.ON),
            make_sample(1, ignition=RUN, meters_north=100.0),
            make_sample(2, ignition=OFF, meters_north=200.0),
        ]

        result: SegmentationResult = TripSegmenter(VEHICLE_ID).segment(samples)

        assert len(result.completed_trips) == 1
        assert result.completed_trips[0].route_point_count == 3  # noqa: PLR2004

    def test_unknown_ignition_keeps_trip_open(self, make_sample: Callable[..., Sample]) -> None:
        """Should not close a trip on Unknown ignition."""

        samples: list[Sample] = [
            make_sample(0, ignition=RUN),
            make_sample(1, ignition=IgnitionState.UNKNOWN, meters_north=100.0),
            make_sample(2, ignition=RUN, meters_north=200.0),
        ]

        result: SegmentationResult = TripSegmenter(VEHICLE_ID).segment(samples)

        assert result.completed_trips == []
        assert result.active_trip is not None
        assert result.active_trip.route_point_count == 3  # noqa: PLR2004

    def test_off_samples_without_trip_are_ignored(
        self,
        make_sample: Callable[..., Sample],
    ) -> None:
        """Should stay idle while ignition is off."""

        samples: list[Sample] = [make_sample(minute, ignition=OFF) for minute in range(5)]

        result: SegmentationResult = TripSegmenter(VEHICLE_ID).segment(samples)

        assert result.all_trips == []

    def test_two_trips(
        self,
        make_sample: Callable[..., Sample],
        simple_trip_samples: list[Sample],
    ) -> None:
        """Should cut separate trips for separate ignition cycles."""

        second_trip: list[Sample] = [
            make_sample(30, ignition=RUN, meters_north=300.0),
            make_sample(31, ignition=RUN, meters_north=400.0),
            make_sample(32, ignition=OFF, meters_north=500.0),
        ]

        result: SegmentationResult = TripSegmenter(VEHICLE_ID).segment(
            [*simple_trip_samples, *second_trip]
        )

        assert len(result.completed_trips) == 2  # noqa: PLR2004
        assert (
            result.completed_trips[0].ignition_off_time
            < result.completed_trips[1].ignition_on_time
        )

    def test_process_all_returns_closed_trips(
        self,
        simple_trip_samples: list[Sample],
    ) -> None:
        """Should return the trips closed while feeding samples one by one."""

        segmenter = TripSegmenter(VEHICLE_ID)

        closed: list[Trip] = segmenter.process_all(simple_trip_samples)

        assert len(closed) == 1
        assert segmenter.active_trip is None

    def test_sample_for_other_vehicle_raises(self, make_sample: Callable[..., Sample]) -> None:
        """Should refuse samples belonging to another vehicle."""

        with pytest.raises(ValueError, match='VAN-2'):
            TripSegmenter(VEHICLE_ID).process(make_sample(0, vehicle_id='VAN-2'))


class TestAwaitingPosition:
    """Test trips whose ignition-on sample has no position fix."""

    def test_start_location_taken_from_next_fix(
        self,
        make_sample: Callable[..., Sample],
    ) -> None:
        """Should keep the ignition-on time and locate the trip at the next fix."""

        segmenter = TripSegmenter(VEHICLE_ID)
        on_sample: Sample = make_sample(0, ignition=RUN, meters_north=None, odometer=5.0)
        fix_sample: Sample = make_sample(1, ignition=RUN, meters_north=50.0, odometer=5.1)

        segmenter.process(on_sample)

        assert segmenter.state is SegmenterState.AWAITING_POSITION

        segmenter.process(fix_sample)

        assert segmenter.state is SegmenterState.TRIP_IN_PROGRESS
        trip: Trip | None = segmenter.active_trip
        assert trip is not None
        assert trip.ignition_on_time == on_sample.timestamp
        assert trip.start_location.latitude == fix_sample.latitude
        assert trip.start_odometer == pytest.approx(5.0)

    def test_ignition_off_before_fix_discards_trip(
        self,
        make_sample: Callable[..., Sample],
    ) -> None:
        """Should drop the pending trip and warn about the missing position."""

        samples: list[Sample] = [
            make_sample(0, ignition=RUN, meters_north=None),
            make_sample(1, ignition=RUN, meters_north=None),
            make_sample(2, ignition=OFF, meters_north=None),
        ]

        result: SegmentationResult = TripSegmenter(VEHICLE_ID).segment(samples)

        assert result.all_trips == []
        assert [warning.issue for warning in result.warnings] == [
            DataQualityIssue.MISSING_POSITION
        ]
        assert result.warnings[0].timestamp == samples[0].timestamp


class TestActiveTripAndResume:
    """Test open trips at batch end and resuming them."""

    def test_open_trip_reported_as_active(self, make_sample: Callable[..., Sample]) -> None:
        """Should return the unfinished trip with running metrics."""

        samples: list[Sample] = [
            make_sample(0, ignition=RUN, meters_north=0.0, odometer=1.0),
            make_sample(1, ignition=RUN, meters_north=100.0, odometer=1.1),
            make_sample(5, ignition=RUN, meters_north=200.0, odometer=1.2),
        ]

        result: SegmentationResult = TripSegmenter(VEHICLE_ID).segment(samples)

        trip: Trip | None = result.active_trip
        assert trip is not None
        assert trip.is_active
        assert trip.ignition_off_time is None
        assert trip.total_run_time == pytest.approx(5.0)
        assert trip.distance_traveled == pytest.approx(0.2)
        assert result.all_trips == [trip]

    def test_resume_matches_single_pass(self, simple_trip_samples: list[Sample]) -> None:
        """Should produce the same trip whether the samples arrive in one or two batches."""

        single_pass: Trip = (
            TripSegmenter(VEHICLE_ID).segment(simple_trip_samples).completed_trips[0]
        )

        first_batch: SegmentationResult = TripSegmenter(VEHICLE_ID).segment(
            simple_trip_samples[:3]
        )
        assert first_batch.active_trip is not None

        resumed = TripSegmenter(VEHICLE_ID, active_trip=first_batch.active_trip)
        second_batch: SegmentationResult = resumed.segment(simple_trip_samples[3:])

        assert len(second_batch.completed_trips) == 1
        trip: Trip = second_batch.completed_trips[0]
        assert trip.trip_id == single_pass.trip_id
        assert trip.ignition_off_time == single_pass.ignition_off_time
        assert trip.route_point_count == single_pass.route_point_count
        assert trip.distance_traveled == pytest.approx(single_pass.distance_traveled)
        assert [point.is_moving for point in trip.route_points] == [
            point.is_moving for point in single_pass.route_points
        ]

    def test_resume_does_not_restart_on_running_sample(
        self,
        make_sample: Callable[..., Sample],
        make_trip: Callable[..., Trip],
    ) -> None:
        """Should extend, not replace, the resumed trip on a running sample."""

        active: Trip = make_trip(0, None, point_count=1)
        segmenter = TripSegmenter(VEHICLE_ID, active_trip=active)

        segmenter.process(make_sample(2, ignition=RUN, meters_north=100.0))

        assert segmenter.active_trip is not None
        assert segmenter.active_trip.trip_id == active.trip_id
        assert segmenter.active_trip.route_point_count == 2  # noqa: PLR2004

    def test_resume_closed_trip_raises(self, make_trip: Callable[..., Trip]) -> None:
        """Should refuse to resume a closed trip."""

        with pytest.raises(ValueError, match='closed trip'):
            TripSegmenter(VEHICLE_ID, active_trip=make_trip(0, 10))

    def test_resume_other_vehicle_raises(self, make_trip: Callable[..., Trip]) -> None:
        """Should refuse to resume another vehicle's trip."""

        with pytest.raises(ValueError, match='VAN-2'):
            TripSegmenter(VEHICLE_ID, active_trip=make_trip(0, None, vehicle_id='VAN-2'))


class TestDataQuality:
    """Test ordering warnings and trip invariants."""

    def test_out_of_order_sample_warns(self, make_sample: Callable[..., Sample]) -> None:
        """Should warn about, not reorder, a sample older than its predecessor."""

        samples: list[Sample] = [
            make_sample(0, ignition=RUN),
            make_sample(2, ignition=RUN, meters_north=100.0),
            make_sample(1, ignition=RUN, meters_north=50.0),
            make_sample(3, ignition=OFF, meters_north=150.0),
        ]

        result: SegmentationResult = TripSegmenter(VEHICLE_ID).segment(samples)

        issues: list[DataQualityIssue] = [warning.issue for warning in result.warnings]
        assert DataQualityIssue.OUT_OF_ORDER_SAMPLE in issues
        assert DataQualityIssue.ROUTE_POINTS_UNORDERED in issues
        assert result.completed_trips[0].route_point_count == 4  # noqa: PLR2004

    def test_route_points_within_trip_window(self, simple_trip_samples: list[Sample]) -> None:
        """Should keep every route point inside [ignition_on_time, ignition_off_time]."""

        result: SegmentationResult = TripSegmenter(VEHICLE_ID).segment(simple_trip_samples)

        trip: Trip = result.completed_trips[0]
        assert trip.ignition_off_time is not None
        assert all(
            trip.ignition_on_time <= point.timestamp <= trip.ignition_off_time
            for point in trip.route_points
        )
        assert result.warnings == []

    def test_validate_trip_reports_end_before_start(
        self,
        make_trip: Callable[..., Trip],
    ) -> None:
        """Should report a trip whose off time precedes its on time."""

        trip: Trip = make_trip(10, 20)
        trip.ignition_off_time = trip.ignition_on_time - timedelta(minutes=1)

        warnings: list[DataQualityWarning] = validate_trip(trip)

        issues: list[DataQualityIssue] = [warning.issue for warning in warnings]
        assert DataQualityIssue.TRIP_ENDS_BEFORE_START in issues
        assert DataQualityIssue.ROUTE_POINT_OUTSIDE_TRIP in issues

    def test_validate_trip_reports_negative_distance(
        self,
        make_trip: Callable[..., Trip],
    ) -> None:
        """Should report a negative odometer delta."""

        trip: Trip = make_trip(0, 10)
        trip.distance_traveled = -1.5

        issues: list[DataQualityIssue] = [warning.issue for warning in validate_trip(trip)]

        assert issues == [DataQualityIssue.NEGATIVE_DISTANCE]

    def test_validate_sound_trip(self, make_trip: Callable[..., Trip]) -> None:
        """Should return no warnings for a consistent trip."""

        assert validate_trip(make_trip(0, 10)) == []


class TestGpsParkingOverride:
    """Test the optional GPS parking override."""

    @pytest.fixture
    def drive_then_sit(self, make_sample: Callable[..., Sample]) -> list[Sample]:
        """Three minutes driving 50 m per 30 s, then ten minutes stationary, ignition running."""
        samples: list[Sample] = [
            make_sample(index * 0.5, ignition=RUN, meters_north=index * 50.0)
            for index in range(7)
        ]
        samples.extend(
            make_sample(3.0 + index * 0.5, ignition=RUN, meters_north=300.0)
            for index in range(1, 21)
        )
        return samples

    def test_override_disabled_keeps_trip_open(self, drive_then_sit: list[Sample]) -> None:
        """Should trust the ignition by default."""

        result: SegmentationResult = TripSegmenter(VEHICLE_ID).segment(drive_then_sit)

        assert result.completed_trips == []
        assert result.active_trip is not None

    def test_override_closes_trip_when_parked(self, drive_then_sit: list[Sample]) -> None:
        """Should treat running-but-parked samples as ignition off."""

        segmenter = TripSegmenter(
            VEHICLE_ID,
            config=SegmentationConfig(gps_parking_override=True),
        )

        result: SegmentationResult = segmenter.segment(drive_then_sit)

        assert len(result.completed_trips) >= 1
        first: Trip = result.completed_trips[0]
        assert first.ignition_on_time == drive_then_sit[0].timestamp
        assert first.ignition_off_time is not None
        assert first.ignition_off_time > drive_then_sit[6].timestamp
