"""
Shared pytest fixtures for fleet_trip_analytics tests.

This module provides reusable fixtures for common test scenarios across
all test modules. Fixtures are automatically discovered by pytest.

Positions are built by moving due north from a fixed origin, so distances
between them are exact multiples of the requested meters under the
haversine formula.
"""

import math
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import Mock

import httpx
import pytest

from fleet_trip_analytics.client_matcher import ClientGazetteer, ClientMatcher
from fleet_trip_analytics.common.geo import EARTH_RADIUS_METERS
from fleet_trip_analytics.config import (
    AnalyticsConfig,
    ClientMatchingConfig,
    GeocoderConfig,
    LoggingConfig,
    StopDetectionConfig,
    StorageConfig,
)
from fleet_trip_analytics.geocoder import GeocodingError
from fleet_trip_analytics.models import (
    ClientLocation,
    ClientType,
    GeocodeResult,
    IgnitionState,
    Location,
    RoutePoint,
    Sample,
    Trip,
)

VEHICLE_ID: str = 'VAN-1'
ORIGIN_LATITUDE: float = 36.1873
ORIGIN_LONGITUDE: float = -94.1312

# 14:00 UTC is 08:00 in America/Chicago during January.
BASE_TIME: datetime = datetime(2024, 1, 15, 14, 0, tzinfo=UTC)

CLIENT_DISTANCE_METERS: float = 2_000.0
HOSPITAL_DISTANCE_METERS: float = 5_000.0


def latitude_north_of_origin(meters: float) -> float:
    """Latitude `meters` due north of the origin."""
    return ORIGIN_LATITUDE + math.degrees(meters / EARTH_RADIUS_METERS)


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """
    Provide a temporary directory for test files.

    Args:
        tmp_path: pytest built-in fixture providing unique temp directory.

    Returns:
        Path to temporary directory that is automatically cleaned up.
    """
    return tmp_path


@pytest.fixture
def analytics_config() -> AnalyticsConfig:
    """Default configuration; runs entirely in memory."""
    return AnalyticsConfig()


@pytest.fixture
def stop_config() -> StopDetectionConfig:
    return StopDetectionConfig()


@pytest.fixture
def storage_config(temp_dir: Path) -> StorageConfig:
    """StorageConfig pointing at a temporary productivity directory."""
    return StorageConfig(
        productivity_path=temp_dir / 'productivity',
        parquet_compression='snappy',
    )


@pytest.fixture
def logging_config(temp_dir: Path) -> LoggingConfig:
    return LoggingConfig(
        file_path=temp_dir / 'analytics.log',
        console_level='WARNING',
        file_level='DEBUG',
    )


@pytest.fixture
def geocoder_config() -> GeocoderConfig:
    """Geocoder settings with throttling off and no cache file."""
    return GeocoderConfig(
        base_url='https://nominatim.test',
        user_agent='fleet-trip-analytics-tests/1.0',
        max_retries=3,
        retry_backoff_factor=1.0,
        retry_backoff_max_seconds=8.0,
        min_request_interval_seconds=0.0,
        cache_path=None,
    )


# =============================================================================
# Telemetry Factories
# =============================================================================


@pytest.fixture
def latitude_north() -> Callable[[float], float]:
    """Callable mapping meters north of the origin to a latitude."""
    return latitude_north_of_origin


@pytest.fixture
def make_raw_sample() -> Callable[..., dict[str, Any]]:
    """
    Factory for vendor status documents.

    Every signal carries the same timestamp unless overridden through
    `signal_timestamps`.
    """

    def _make(
        timestamp: datetime | None = BASE_TIME,
        latitude: float | None = ORIGIN_LATITUDE,
        longitude: float | None = ORIGIN_LONGITUDE,
        ignition: str | None = 'RUN',
        odometer_km: float | None = None,
        speed_kph: float | None = None,
        battery_soc: float | None = None,
        battery_range_km: float | None = None,
        plug_status: str | None = None,
        signal_timestamps: dict[str, str] | None = None,
        list_form: bool = False,
    ) -> dict[str, Any]:
        stamp: str | None = timestamp.isoformat().replace('+00:00', 'Z') if timestamp else None
        signals: dict[str, Any] = {}

        def _add(name: str, value: Any) -> None:
            if value is None:
                return
            signal_stamp: str | None = (signal_timestamps or {}).get(name, stamp)
            signals[name] = {'value': value, 'timestamp': signal_stamp}

        if latitude is not None and longitude is not None:
            _add('position', {'latitude': latitude, 'longitude': longitude})
        _add('ignition_status', ignition)
        _add('odometer', odometer_km)
        _add('speed', speed_kph)
        _add('xev_battery_state_of_charge', battery_soc)
        _add('xev_battery_range', battery_range_km)
        _add('xev_plug_charger_status', plug_status)

        return {'signals': [signals] if list_form else signals}

    return _make


@pytest.fixture
def make_sample() -> Callable[..., Sample]:
    """Factory for canonical samples placed `minutes` after BASE_TIME."""

    def _make(
        minutes: float,
        ignition: IgnitionState = IgnitionState.RUN,
        meters_north: float | None = 0.0,
        odometer: float | None = None,
        battery_soc: float | None = None,
        speed: float | None = None,
        vehicle_id: str = VEHICLE_ID,
    ) -> Sample:
        has_position: bool = meters_north is not None
        return Sample(
            vehicle_id=vehicle_id,
            timestamp=BASE_TIME + timedelta(minutes=minutes),
            latitude=latitude_north_of_origin(meters_north) if has_position else None,
            longitude=ORIGIN_LONGITUDE if has_position else None,
            ignition_state=ignition,
            odometer=odometer,
            battery_soc=battery_soc,
            speed=speed,
        )

    return _make


@pytest.fixture
def make_route_point() -> Callable[..., RoutePoint]:
    """Factory for route points placed `minutes` after BASE_TIME."""

    def _make(
        minutes: float,
        meters_north: float = 0.0,
        is_moving: bool = False,
        ignition: IgnitionState = IgnitionState.RUN,
        vehicle_id: str = VEHICLE_ID,
        address: str | None = None,
    ) -> RoutePoint:
        return RoutePoint(
            vehicle_id=vehicle_id,
            timestamp=BASE_TIME + timedelta(minutes=minutes),
            latitude=latitude_north_of_origin(meters_north),
            longitude=ORIGIN_LONGITUDE,
            ignition_state=ignition,
            is_moving=is_moving,
            address=address,
        )

    return _make


@pytest.fixture
def make_trip(
    make_route_point: Callable[..., RoutePoint],
) -> Callable[..., Trip]:
    """
    Factory for closed trips between `on_minutes` and `off_minutes`.

    `point_count` evenly spaced, stationary route points are placed at the
    start location unless explicit `route_points` are given. Pass
    `off_minutes=None` for an active trip.
    """

    def _make(
        on_minutes: float,
        off_minutes: float | None,
        point_count: int = 3,
        route_points: list[RoutePoint] | None = None,
        start_meters_north: float = 0.0,
        end_meters_north: float | None = None,
        vehicle_id: str = VEHICLE_ID,
        vehicle_name: str = 'Van 1',
        start_battery: float | None = None,
        end_battery: float | None = None,
    ) -> Trip:
        points: list[RoutePoint]
        if route_points is not None:
            points = route_points
        else:
            span: float = (off_minutes if off_minutes is not None else on_minutes) - on_minutes
            step: float = span / max(1, point_count - 1)
            points = [
                make_route_point(
                    on_minutes + index * step,
                    meters_north=start_meters_north,
                    vehicle_id=vehicle_id,
                )
                for index in range(point_count)
            ]

        is_active: bool = off_minutes is None
        end_location: Location | None = None
        if not is_active:
            end_location = Location(
                latitude=latitude_north_of_origin(
                    end_meters_north if end_meters_north is not None else start_meters_north
                ),
                longitude=ORIGIN_LONGITUDE,
            )

        trip = Trip(
            vehicle_id=vehicle_id,
            vehicle_name=vehicle_name,
            ignition_on_time=BASE_TIME + timedelta(minutes=on_minutes),
            ignition_off_time=(
                BASE_TIME + timedelta(minutes=off_minutes) if off_minutes is not None else None
            ),
            is_active=is_active,
            start_location=Location(
                latitude=latitude_north_of_origin(start_meters_north),
                longitude=ORIGIN_LONGITUDE,
            ),
            end_location=end_location,
            route_points=points,
            total_run_time=(off_minutes - on_minutes) if off_minutes is not None else 0.0,
            start_battery=start_battery,
            end_battery=end_battery,
            battery_used=(
                start_battery - end_battery
                if start_battery is not None and end_battery is not None
                else None
            ),
        )
        trip.consolidated_from = [trip.trip_id]
        return trip

    return _make


# =============================================================================
# Client Matching Fixtures
# =============================================================================


@pytest.fixture
def client_locations() -> list[ClientLocation]:
    """
    Home base at the origin, a residential client 2 km north with an
    explicit 100 m radius, and a hospital 5 km north with an inferred radius.
    """
    return [
        ClientLocation(
            address='100 Depot Road, Springdale, Arkansas',
            client_name='Green Acres HQ',
            lat=ORIGIN_LATITUDE,
            lng=ORIGIN_LONGITUDE,
            client_type=ClientType.HOME_BASE,
        ),
        ClientLocation(
            address='123 Oak Street, Springdale, Arkansas',
            client_name='Smith Residence',
            lat=latitude_north_of_origin(CLIENT_DISTANCE_METERS),
            lng=ORIGIN_LONGITUDE,
            radius_meters=100.0,
        ),
        ClientLocation(
            address='2000 Medical Parkway, Springdale, Arkansas',
            client_name='Mercy Hospital',
            lat=latitude_north_of_origin(HOSPITAL_DISTANCE_METERS),
            lng=ORIGIN_LONGITUDE,
            client_type=ClientType.INSTITUTIONAL,
        ),
    ]


@pytest.fixture
def gazetteer(client_locations: list[ClientLocation]) -> ClientGazetteer:
    return ClientGazetteer(client_locations, ClientMatchingConfig())


@pytest.fixture
def matcher(gazetteer: ClientGazetteer) -> ClientMatcher:
    """Gazetteer-only matcher (no reverse geocoding)."""
    return ClientMatcher(gazetteer)


class FakeGeocoder:
    """
    In-memory geocoder returning one fixed address for every point.

    Attributes:
        calls: Coordinates passed to reverse(), in call order.
    """

    def __init__(self, address: str | None = None, error: Exception | None = None) -> None:
        self.address: str | None = address
        self.error: Exception | None = error
        self.calls: list[tuple[float, float]] = []

    def reverse(self, latitude: float, longitude: float) -> GeocodeResult | None:
        self.calls.append((latitude, longitude))
        if self.error is not None:
            raise self.error
        if self.address is None:
            return None
        return GeocodeResult(latitude=latitude, longitude=longitude, address=self.address)


@pytest.fixture
def fake_geocoder() -> FakeGeocoder:
    """Geocoder that resolves every point to a residential street address."""
    return FakeGeocoder(address='742 Maple Avenue, Springdale, Arkansas')


@pytest.fixture
def failing_geocoder() -> FakeGeocoder:
    return FakeGeocoder(error=GeocodingError('Client error: HTTP 403', status_code=403))


# =============================================================================
# HTTP Fixtures
# =============================================================================


@pytest.fixture
def make_mock_response() -> Callable[..., Mock]:
    """Factory for mocked httpx responses."""

    def _make(
        status_code: int = 200,
        json_body: Any = None,
        headers: dict[str, str] | None = None,
        text: str = '',
    ) -> Mock:
        mock_response = Mock(spec=httpx.Response)
        mock_response.status_code = status_code
        mock_response.is_success = 200 <= status_code < 300  # noqa: PLR2004
        mock_response.headers = httpx.Headers(headers or {})
        mock_response.text = text
        mock_response.json.return_value = json_body
        return mock_response

    return _make


@pytest.fixture
def nominatim_payload() -> dict[str, Any]:
    """A typical Nominatim /reverse body for a house."""
    return {
        'place_id': 123456,
        'licence': 'Data © OpenStreetMap contributors, ODbL 1.0.',
        'display_name': '742, Maple Avenue, Springdale, Washington County, Arkansas, 72764, United States',
        'address': {
            'house_number': '742',
            'road': 'Maple Avenue',
            'city': 'Springdale',
            'county': 'Washington County',
            'state': 'Arkansas',
            'postcode': '72764',
            'country': 'United States',
        },
    }
