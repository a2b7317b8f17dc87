# fleet_trip_analytics/geocoder.py
"""
Reverse geocoding client for Nominatim-compatible services.

The client turns a coordinate into a compact street address. It is the only
network boundary the engine crosses on its own, so it carries all the
resilience: explicit connect/read timeouts, retry with exponential backoff,
Retry-After handling for rate limits, and a client-side throttle for the
public Nominatim usage policy (one request per second).

Retry Behavior:
---------------
- Rate limits (429): Respects Retry-After header, falls back to exponential backoff
- Server errors (5xx): Exponential backoff
- Timeouts and connection errors: Exponential backoff

Other 4xx responses fail immediately with GeocodingError. Callers (the client
matcher) catch GeocodingError and treat the point as "no address".

Caching:
--------
`CachedGeocoder` wraps any geocoder with an injected `ReadThroughCache`
keyed on coordinates rounded to `cache_precision` decimals. Only successful
lookups are cached.
"""

import logging
import threading
import time
from collections.abc import Callable
from email.utils import parsedate_to_datetime
from ssl import SSLContext
from types import TracebackType
from typing import Any, Final, Self, cast

import httpx
from pydantic import ValidationError
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
)

from fleet_trip_analytics.common.cache import ReadThroughCache
from fleet_trip_analytics.common.file_io import ParquetFileHandler
from fleet_trip_analytics.common.geo import coord_key
from fleet_trip_analytics.common.truststore_context import resolve_ssl_verify
from fleet_trip_analytics.config import GeocoderConfig
from fleet_trip_analytics.models import GeocodeResult, NominatimReverseResponse

__all__: list[str] = [
    'CachedGeocoder',
    'GeocodingError',
    'GeocodingRateLimitError',
    'NominatimGeocoder',
    'TransientGeocodingError',
    'build_geocoder',
]

logger: logging.Logger = logging.getLogger(__name__)

# HTTP status codes
HTTP_STATUS_RATE_LIMITED: Final[int] = 429
HTTP_STATUS_SERVER_ERROR_MIN: Final[int] = 500
HTTP_STATUS_SERVER_ERROR_MAX: Final[int] = 599

REVERSE_PATH: Final[str] = '/reverse'
REVERSE_ZOOM: Final[int] = 18
DEFAULT_RETRY_AFTER_SECONDS: Final[float] = 1.0
RATE_LIMIT_BUFFER_SECONDS: Final[float] = 0.5


# =============================================================================
# Exception Hierarchy
# =============================================================================


class GeocodingError(Exception):
    """
    Base exception for reverse geocoding failures.

    Attributes:
        status_code: HTTP status code if available, None for transport errors.
        response_body: Raw response body for debugging, None if unavailable.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code: int | None = status_code
        self.response_body: str | None = response_body


class TransientGeocodingError(GeocodingError):
    """Timeouts, connection errors and 5xx responses. Retried."""


class GeocodingRateLimitError(TransientGeocodingError):
    """
    HTTP 429 from the geocoding service.

    Attributes:
        retry_after_seconds: Server-suggested wait before the next attempt.
    """

    def __init__(self, retry_after_seconds: float) -> None:
        super().__init__(
            f'Geocoder rate limit exceeded, retry after {retry_after_seconds}s',
            status_code=HTTP_STATUS_RATE_LIMITED,
        )
        self.retry_after_seconds: float = retry_after_seconds


def parse_retry_after(header_value: str | None) -> float:
    """
    Parse a Retry-After header given as seconds or as an HTTP date.

    Returns:
        Seconds to wait, never negative; DEFAULT_RETRY_AFTER_SECONDS when the
        header is missing or unparsable.
    """
    if not header_value:
        return DEFAULT_RETRY_AFTER_SECONDS
    try:
        return max(0.0, float(header_value))
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(header_value)
    except (TypeError, ValueError):
        return DEFAULT_RETRY_AFTER_SECONDS
    return max(0.0, retry_at.timestamp() - time.time())


# =============================================================================
# HTTP Client
# =============================================================================


class NominatimGeocoder:
    """
    Reverse geocoder for the Nominatim `/reverse` endpoint.

    Thread Safety:
        The underlying httpx.Client is thread-safe, and the request throttle
        is guarded by a lock, so one instance can serve all backfill workers.

    Example:
        >>> with NominatimGeocoder(GeocoderConfig(user_agent='my-fleet/1.0')) as geocoder:
        ...     result = geocoder.reverse(36.1873, -94.13121)
    """

    def __init__(
        self,
        config: GeocoderConfig,
        pool_connections: int = 2,
        pool_maxsize: int = 4,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Initialize the geocoding client.

        Args:
            config: Geocoder settings (URL, timeouts, retries, SSL).
            pool_connections: Keepalive connections in the pool.
            pool_maxsize: Maximum total connections in the pool.
            sleep: Sleep function used for throttling and backoff.

        Raises:
            RuntimeError: If use_truststore=True and truststore is missing.
        """
        self._config: GeocoderConfig = config
        self._sleep: Callable[[float], None] = sleep
        self._throttle_lock: threading.Lock = threading.Lock()
        self._last_request_at: float | None = None

        ssl_verify: SSLContext | bool | str = resolve_ssl_verify(config)

        connect_timeout: int
        read_timeout: int
        connect_timeout, read_timeout = config.request_timeout
        self._http_client: httpx.Client = httpx.Client(
            base_url=config.base_url,
            timeout=httpx.Timeout(
                connect=connect_timeout,
                read=read_timeout,
                write=connect_timeout,
                pool=connect_timeout,
            ),
            verify=ssl_verify,
            headers={'User-Agent': config.user_agent},
            limits=httpx.Limits(
                max_keepalive_connections=pool_connections,
                max_connections=pool_maxsize,
            ),
        )

        self._retrying: Retrying = Retrying(
            retry=retry_if_exception_type(TransientGeocodingError),
            wait=self._wait_for_rate_limit_or_exponential,
            stop=stop_after_attempt(config.max_retries),
            sleep=sleep,
            reraise=True,
        )

        logger.info(
            'Initialized NominatimGeocoder: base_url=%r, max_retries=%d',
            config.base_url,
            config.max_retries,
        )

    # -------------------------------------------------------------------------
    # Context Manager Protocol
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the HTTP client. Safe to call more than once."""
        self._http_client.close()
        logger.debug('NominatimGeocoder closed')

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def reverse(self, latitude: float, longitude: float) -> GeocodeResult | None:
        """
        Resolve a coordinate to an address.

        Args:
            latitude: Latitude in degrees.
            longitude: Longitude in degrees.

        Returns:
            GeocodeResult, or None when the service has no address for the point.

        Raises:
            GeocodingError: For non-retryable errors (4xx except 429, bad JSON).
            TransientGeocodingError: After exhausting retries.
            GeocodingRateLimitError: After exhausting retries on rate limits.
        """
        payload: dict[str, Any] = self._retrying(self._request_once, latitude, longitude)

        try:
            response: NominatimReverseResponse = NominatimReverseResponse.model_validate(
                payload
            )
        except ValidationError as validation_error:
            raise GeocodingError(
                f'Unexpected reverse geocoding payload: {validation_error}'
            ) from validation_error

        if response.error:
            logger.debug(
                'No address for (%.5f, %.5f): %s', latitude, longitude, response.error
            )
            return None

        address: str | None = response.format_address()
        if address is None:
            return None

        return GeocodeResult(
            latitude=latitude,
            longitude=longitude,
            address=address,
            display_name=response.display_name,
        )

    # -------------------------------------------------------------------------
    # HTTP Execution Layer
    # -------------------------------------------------------------------------

    def _wait_for_rate_limit_or_exponential(self, retry_state: RetryCallState) -> float:
        """Retry-After for rate limits, capped exponential backoff otherwise."""
        exception: BaseException | None = (
            retry_state.outcome.exception() if retry_state.outcome else None
        )

        if isinstance(exception, GeocodingRateLimitError):
            return exception.retry_after_seconds + RATE_LIMIT_BUFFER_SECONDS

        exponential_wait: float = self._config.retry_backoff_factor * (
            2 ** (retry_state.attempt_number - 1)
        )
        return min(exponential_wait, self._config.retry_backoff_max_seconds)

    def _throttle(self) -> None:
        """Keep at least min_request_interval_seconds between requests."""
        interval: float = self._config.min_request_interval_seconds
        if interval <= 0:
            return
        with self._throttle_lock:
            now: float = time.monotonic()
            if self._last_request_at is not None:
                remaining: float = interval - (now - self._last_request_at)
                if remaining > 0:
                    self._sleep(remaining)
            self._last_request_at = time.monotonic()

    def _request_once(self, latitude: float, longitude: float) -> dict[str, Any]:
        self._throttle()

        params: dict[str, str | int] = {
            'format': 'json',
            'lat': f'{latitude:.7f}',
            'lon': f'{longitude:.7f}',
            'zoom': REVERSE_ZOOM,
            'addressdetails': 1,
        }

        try:
            response: httpx.Response = self._http_client.request(
                method='GET',
                url=REVERSE_PATH,
                params=params,
            )
        except httpx.TimeoutException as error:
            logger.warning('Geocoder timeout (will retry): (%.5f, %.5f)', latitude, longitude)
            raise TransientGeocodingError(f'Request timeout: {error}') from error
        except httpx.RequestError as error:
            logger.warning('Geocoder connection error (will retry): %s', error)
            raise TransientGeocodingError(f'Connection error: {error}') from error

        return self._handle_response(response)

    def _handle_response(self, response: httpx.Response) -> dict[str, Any]:
        """
        Map an HTTP response to a JSON object or a GeocodingError.

        Raises:
            GeocodingRateLimitError: On HTTP 429 (retryable).
            TransientGeocodingError: On 5xx (retryable).
            GeocodingError: On other 4xx or malformed bodies.
        """
        status_code: int = response.status_code

        if status_code == HTTP_STATUS_RATE_LIMITED:
            retry_after: float = parse_retry_after(response.headers.get('retry-after'))
            logger.warning('Geocoder rate limited (will retry after %.1fs)', retry_after)
            raise GeocodingRateLimitError(retry_after)

        if HTTP_STATUS_SERVER_ERROR_MIN <= status_code <= HTTP_STATUS_SERVER_ERROR_MAX:
            logger.warning(
                'Geocoder server error %d (will retry): %s',
                status_code,
                response.text[:200],
            )
            raise TransientGeocodingError(
                message=f'Server error: HTTP {status_code}',
                status_code=status_code,
                response_body=response.text,
            )

        if not response.is_success:
            logger.error(
                'Geocoder client error %d (not retryable): %s',
                status_code,
                response.text[:500],
            )
            raise GeocodingError(
                message=f'Client error: HTTP {status_code}',
                status_code=status_code,
                response_body=response.text,
            )

        try:
            json_body: Any = response.json()
        except ValueError as parse_error:
            raise GeocodingError(
                message=f'Invalid JSON in response: {parse_error}',
                status_code=status_code,
                response_body=response.text[:500],
            ) from parse_error

        if not isinstance(json_body, dict):
            raise GeocodingError(
                message=f'Expected JSON object in response, got {type(json_body).__name__}',
                status_code=status_code,
                response_body=response.text[:500],
            )

        return cast(dict[str, Any], json_body)


# =============================================================================
# Caching Wrapper
# =============================================================================


class CachedGeocoder:
    """
    Read-through cache in front of a geocoder.

    Errors from the wrapped geocoder propagate unchanged and nothing is cached
    for that key.
    """

    def __init__(
        self,
        geocoder: NominatimGeocoder,
        cache: ReadThroughCache[GeocodeResult],
        precision: int = 4,
    ) -> None:
        self._geocoder: NominatimGeocoder = geocoder
        self._cache: ReadThroughCache[GeocodeResult] = cache
        self._precision: int = precision

    @property
    def cache(self) -> ReadThroughCache[GeocodeResult]:
        return self._cache

    def reverse(self, latitude: float, longitude: float) -> GeocodeResult | None:
        key: str = coord_key(latitude, longitude, self._precision)
        return self._cache.get_or_fetch(
            key,
            lambda: self._geocoder.reverse(latitude, longitude),
        )

    def save(self) -> None:
        """Persist the cache (no-op for an in-memory cache)."""
        self._cache.save()

    def close(self) -> None:
        self._geocoder.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()


def build_geocoder(config: GeocoderConfig) -> CachedGeocoder | None:
    """
    Build the configured geocoder with its cache loaded.

    Returns:
        A CachedGeocoder, or None when geocoding is disabled.
    """
    if not config.enabled:
        logger.info('Reverse geocoding disabled by configuration')
        return None

    file_handler: ParquetFileHandler | None = (
        ParquetFileHandler(config.cache_path) if config.cache_path is not None else None
    )
    cache: ReadThroughCache[GeocodeResult] = ReadThroughCache(GeocodeResult, file_handler)
    cache.load()

    return CachedGeocoder(NominatimGeocoder(config), cache, precision=config.cache_precision)
