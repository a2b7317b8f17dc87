"""
Tests for fleet_trip_analytics.geocoder module.

Tests the Nominatim client (response mapping, retry and backoff, Retry-After
handling, throttling), the caching wrapper and build_geocoder().
"""

# pyright: reportPrivateUsage=false

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from email.utils import format_datetime
from pathlib import Path
from typing import Any
from unittest.mock import Mock, patch

import httpx
import pytest

from fleet_trip_analytics.common.cache import ReadThroughCache
from fleet_trip_analytics.config import GeocoderConfig
from fleet_trip_analytics.geocoder import (
    CachedGeocoder,
    GeocodingError,
    GeocodingRateLimitError,
    NominatimGeocoder,
    TransientGeocodingError,
    build_geocoder,
    parse_retry_after,
)
from fleet_trip_analytics.models import GeocodeResult

LATITUDE: float = 36.1873
LONGITUDE: float = -94.1312


@pytest.fixture
def sleeps() -> list[float]:
    """Records every wait requested by the geocoder."""
    return []


@pytest.fixture
def geocoder(geocoder_config: GeocoderConfig, sleeps: list[float]) -> NominatimGeocoder:
    return NominatimGeocoder(geocoder_config, sleep=sleeps.append)


class TestParseRetryAfter:
    """Test parse_retry_after."""

    @pytest.mark.parametrize(
        ('header', 'expected'),
        [('5', 5.0), ('0.5', 0.5), ('-3', 0.0), (None, 1.0), ('', 1.0), ('soon', 1.0)],
    )
    def test_seconds_and_fallbacks(self, header: str | None, expected: float) -> None:
        """Should parse delta-seconds and fall back to 1 s for bad values."""

        assert parse_retry_after(header) == expected

    def test_http_date(self) -> None:
        """Should convert an HTTP date into seconds from now."""

        retry_at: datetime = datetime.now(UTC) + timedelta(seconds=30)

        seconds: float = parse_retry_after(format_datetime(retry_at, usegmt=True))

        assert 25.0 <= seconds <= 30.0  # noqa: PLR2004

    def test_http_date_in_past_is_zero(self) -> None:
        """Should never return a negative wait."""

        retry_at: datetime = datetime.now(UTC) - timedelta(minutes=5)

        assert parse_retry_after(format_datetime(retry_at, usegmt=True)) == 0.0


class TestNominatimGeocoderResponses:
    """Test mapping of successful and failed responses."""

    def test_successful_reverse(
        self,
        geocoder: NominatimGeocoder,
        make_mock_response: Callable[..., Mock],
        nominatim_payload: dict[str, Any],
    ) -> None:
        """Should return a compact street address for a house."""

        with patch.object(
            geocoder._http_client,
            'request',
            return_value=make_mock_response(json_body=nominatim_payload),
        ) as mock_request:
            result: GeocodeResult | None = geocoder.reverse(LATITUDE, LONGITUDE)

        assert result is not None
        assert result.address == '742 Maple Avenue, Springdale, Arkansas'
        assert result.display_name == nominatim_payload['display_name']
        assert result.latitude == LATITUDE

        call_kwargs: dict[str, Any] = mock_request.call_args.kwargs
        assert call_kwargs['method'] == 'GET'
        assert call_kwargs['url'] == '/reverse'
        assert call_kwargs['params']['format'] == 'json'
        assert call_kwargs['params']['lat'] == '36.1873000'
        assert call_kwargs['params']['zoom'] == 18  # noqa: PLR2004

    def test_display_name_fallback(
        self,
        geocoder: NominatimGeocoder,
        make_mock_response: Callable[..., Mock],
    ) -> None:
        """Should use the leading display_name parts without an address block."""

        payload: dict[str, Any] = {
            'display_name': 'Lake Fayetteville Park, Fayetteville, Washington County, Arkansas'
        }

        with patch.object(
            geocoder._http_client,
            'request',
            return_value=make_mock_response(json_body=payload),
        ):
            result: GeocodeResult | None = geocoder.reverse(LATITUDE, LONGITUDE)

        assert result is not None
        assert result.address == 'Lake Fayetteville Park, Fayetteville, Washington County'

    def test_unable_to_geocode_returns_none(
        self,
        geocoder: NominatimGeocoder,
        make_mock_response: Callable[..., Mock],
    ) -> None:
        """Should return None when the service reports no address."""

        with patch.object(
            geocoder._http_client,
            'request',
            return_value=make_mock_response(json_body={'error': 'Unable to geocode'}),
        ):
            assert geocoder.reverse(0.0, -140.0) is None

    def test_client_error_not_retried(
        self,
        geocoder: NominatimGeocoder,
        make_mock_response: Callable[..., Mock],
        sleeps: list[float],
    ) -> None:
        """Should raise GeocodingError immediately for a 4xx response."""

        with (
            patch.object(
                geocoder._http_client,
                'request',
                return_value=make_mock_response(status_code=403, text='Access blocked'),
            ) as mock_request,
            pytest.raises(GeocodingError) as exc_info,
        ):
            geocoder.reverse(LATITUDE, LONGITUDE)

        assert not isinstance(exc_info.value, TransientGeocodingError)
        assert exc_info.value.status_code == 403  # noqa: PLR2004
        assert exc_info.value.response_body == 'Access blocked'
        assert mock_request.call_count == 1
        assert sleeps == []

    def test_invalid_json_raises(
        self,
        geocoder: NominatimGeocoder,
        make_mock_response: Callable[..., Mock],
    ) -> None:
        """Should raise GeocodingError for an unparsable body."""

        response: Mock = make_mock_response(text='<html>')
        response.json.side_effect = ValueError('Expecting value')

        with (
            patch.object(geocoder._http_client, 'request', return_value=response),
            pytest.raises(GeocodingError, match='Invalid JSON'),
        ):
            geocoder.reverse(LATITUDE, LONGITUDE)

    def test_non_object_json_raises(
        self,
        geocoder: NominatimGeocoder,
        make_mock_response: Callable[..., Mock],
    ) -> None:
        """Should raise GeocodingError when the body is not a JSON object."""

        with (
            patch.object(
                geocoder._http_client,
                'request',
                return_value=make_mock_response(json_body=[1, 2, 3]),
            ),
            pytest.raises(GeocodingError, match='Expected JSON object'),
        ):
            geocoder.reverse(LATITUDE, LONGITUDE)


class TestNominatimGeocoderRetries:
    """Test retry, backoff and rate limit handling."""

    def test_server_error_retried_then_succeeds(
        self,
        geocoder: NominatimGeocoder,
        make_mock_response: Callable[..., Mock],
        nominatim_payload: dict[str, Any],
        sleeps: list[float],
    ) -> None:
        """Should retry a 5xx response with exponential backoff."""

        responses: list[Mock] = [
            make_mock_response(status_code=503, text='Service Unavailable'),
            make_mock_response(json_body=nominatim_payload),
        ]

        with patch.object(geocoder._http_client, 'request', side_effect=responses):
            result: GeocodeResult | None = geocoder.reverse(LATITUDE, LONGITUDE)

        assert result is not None
        assert sleeps == [1.0]

    def test_server_error_exhausts_retries(
        self,
        geocoder: NominatimGeocoder,
        make_mock_response: Callable[..., Mock],
        sleeps: list[float],
    ) -> None:
        """Should raise TransientGeocodingError after max_retries attempts."""

        with (
            patch.object(
                geocoder._http_client,
                'request',
                return_value=make_mock_response(status_code=500, text='oops'),
            ) as mock_request,
            pytest.raises(TransientGeocodingError) as exc_info,
        ):
            geocoder.reverse(LATITUDE, LONGITUDE)

        assert exc_info.value.status_code == 500  # noqa: PLR2004
        assert mock_request.call_count == 3  # noqa: PLR2004
        assert sleeps == [1.0, 2.0]

    def test_backoff_is_capped(
        self,
        geocoder_config: GeocoderConfig,
        make_mock_response: Callable[..., Mock],
        sleeps: list[float],
    ) -> None:
        """Should never wait longer than retry_backoff_max_seconds."""

        config: GeocoderConfig = geocoder_config.model_copy(
            update={'max_retries': 5, 'retry_backoff_max_seconds': 3.0}
        )
        capped_geocoder = NominatimGeocoder(config, sleep=sleeps.append)

        with (
            patch.object(
                capped_geocoder._http_client,
                'request',
                return_value=make_mock_response(status_code=502),
            ),
            pytest.raises(TransientGeocodingError),
        ):
            capped_geocoder.reverse(LATITUDE, LONGITUDE)

        assert sleeps == [1.0, 2.0, 3.0, 3.0]

    def test_rate_limit_honors_retry_after(
        self,
        geocoder: NominatimGeocoder,
        make_mock_response: Callable[..., Mock],
        nominatim_payload: dict[str, Any],
        sleeps: list[float],
    ) -> None:
        """Should wait Retry-After plus a small buffer after a 429."""

        responses: list[Mock] = [
            make_mock_response(status_code=429, headers={'Retry-After': '2'}),
            make_mock_response(json_body=nominatim_payload),
        ]

        with patch.object(geocoder._http_client, 'request', side_effect=responses):
            result: GeocodeResult | None = geocoder.reverse(LATITUDE, LONGITUDE)

        assert result is not None
        assert sleeps == [2.5]

    def test_rate_limit_exhausts_retries(
        self,
        geocoder: NominatimGeocoder,
        make_mock_response: Callable[..., Mock],
    ) -> None:
        """Should raise GeocodingRateLimitError when every attempt is throttled."""

        with (
            patch.object(
                geocoder._http_client,
                'request',
                return_value=make_mock_response(status_code=429, headers={'Retry-After': '1'}),
            ),
            pytest.raises(GeocodingRateLimitError) as exc_info,
        ):
            geocoder.reverse(LATITUDE, LONGITUDE)

        assert exc_info.value.retry_after_seconds == 1.0
        assert exc_info.value.status_code == 429  # noqa: PLR2004

    def test_timeout_is_retried(
        self,
        geocoder: NominatimGeocoder,
        make_mock_response: Callable[..., Mock],
        nominatim_payload: dict[str, Any],
    ) -> None:
        """Should treat timeouts as transient."""

        side_effects: list[Any] = [
            httpx.ReadTimeout('timed out'),
            make_mock_response(json_body=nominatim_payload),
        ]

        with patch.object(geocoder._http_client, 'request', side_effect=side_effects):
            result: GeocodeResult | None = geocoder.reverse(LATITUDE, LONGITUDE)

        assert result is not None

    def test_connection_error_exhausts_retries(self, geocoder: NominatimGeocoder) -> None:
        """Should wrap connection errors in TransientGeocodingError."""

        with (
            patch.object(
                geocoder._http_client,
                'request',
                side_effect=httpx.ConnectError('connection refused'),
            ),
            pytest.raises(TransientGeocodingError, match='Connection error'),
        ):
            geocoder.reverse(LATITUDE, LONGITUDE)


class TestNominatimGeocoderLifecycle:
    """Test throttling and the context manager."""

    def test_throttle_spaces_requests(
        self,
        geocoder_config: GeocoderConfig,
        make_mock_response: Callable[..., Mock],
        nominatim_payload: dict[str, Any],
        sleeps: list[float],
    ) -> None:
        """Should sleep between back-to-back requests."""

        config: GeocoderConfig = geocoder_config.model_copy(
            update={'min_request_interval_seconds': 1.0}
        )
        throttled = NominatimGeocoder(config, sleep=sleeps.append)

        with patch.object(
            throttled._http_client,
            'request',
            return_value=make_mock_response(json_body=nominatim_payload),
        ):
            throttled.reverse(LATITUDE, LONGITUDE)
            throttled.reverse(LATITUDE, LONGITUDE)

        assert len(sleeps) == 1
        assert 0.0 < sleeps[0] <= 1.0

    def test_context_manager_closes_client(self, geocoder_config: GeocoderConfig) -> None:
        """Should close the HTTP client on exit."""

        with NominatimGeocoder(geocoder_config) as geocoder:
            http_client: httpx.Client = geocoder._http_client

        assert http_client.is_closed


class TestCachedGeocoder:
    """Test the read-through caching wrapper."""

    @pytest.fixture
    def inner(self) -> Mock:
        inner_geocoder = Mock(spec=NominatimGeocoder)
        inner_geocoder.reverse.side_effect = lambda latitude, longitude: GeocodeResult(
            latitude=latitude,
            longitude=longitude,
            address='742 Maple Avenue, Springdale, Arkansas',
        )
        return inner_geocoder

    def test_nearby_points_share_a_cache_entry(self, inner: Mock) -> None:
        """Should serve points that round to the same key from the cache."""

        cached = CachedGeocoder(inner, ReadThroughCache(GeocodeResult), precision=4)

        first: GeocodeResult | None = cached.reverse(36.18731, -94.13121)
        second: GeocodeResult | None = cached.reverse(36.18733, -94.13122)

        assert first == second
        assert inner.reverse.call_count == 1
        assert cached.cache.hits == 1
        assert cached.cache.misses == 1

    def test_none_results_are_not_cached(self, inner: Mock) -> None:
        """Should ask again for points that had no address."""

        inner.reverse.side_effect = None
        inner.reverse.return_value = None
        cached = CachedGeocoder(inner, ReadThroughCache(GeocodeResult))

        assert cached.reverse(LATITUDE, LONGITUDE) is None
        assert cached.reverse(LATITUDE, LONGITUDE) is None
        assert inner.reverse.call_count == 2  # noqa: PLR2004

    def test_errors_propagate_and_are_not_cached(self, inner: Mock) -> None:
        """Should re-raise geocoding errors without storing anything."""

        inner.reverse.side_effect = TransientGeocodingError('Server error: HTTP 503', 503)
        cached = CachedGeocoder(inner, ReadThroughCache(GeocodeResult))

        with pytest.raises(TransientGeocodingError):
            cached.reverse(LATITUDE, LONGITUDE)

        assert len(cached.cache) == 0

    def test_close_closes_inner(self, inner: Mock) -> None:
        """Should close the wrapped geocoder."""

        with CachedGeocoder(inner, ReadThroughCache(GeocodeResult)):
            pass

        inner.close.assert_called_once()


class TestBuildGeocoder:
    """Test build_geocoder."""

    def test_disabled_returns_none(self, geocoder_config: GeocoderConfig) -> None:
        """Should return None when geocoding is disabled."""

        config: GeocoderConfig = geocoder_config.model_copy(update={'enabled': False})

        assert build_geocoder(config) is None

    def test_cache_persists_between_builds(
        self,
        geocoder_config: GeocoderConfig,
        temp_dir: Path,
    ) -> None:
        """Should load entries saved by a previous geocoder."""

        config: GeocoderConfig = geocoder_config.model_copy(
            update={'cache_path': temp_dir / 'geocode_cache.parquet'}
        )

        first: CachedGeocoder | None = build_geocoder(config)
        assert first is not None
        first.cache.put(
            '36.1873,-94.1312',
            GeocodeResult(
                latitude=LATITUDE,
                longitude=LONGITUDE,
                address='742 Maple Avenue, Springdale, Arkansas',
            ),
        )
        first.save()
        first.close()

        second: CachedGeocoder | None = build_geocoder(config)
        assert second is not None
        with second:
            result: GeocodeResult | None = second.reverse(LATITUDE, LONGITUDE)

        assert result is not None
        assert result.address == '742 Maple Avenue, Springdale, Arkansas'
        assert second.cache.hits == 1
