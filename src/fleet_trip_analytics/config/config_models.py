# fleet_trip_analytics/config/config_models.py
"""
Configuration management for Fleet Trip Analytics.

This module provides the Pydantic models for the master configuration file
that controls trip segmentation, stop detection, client matching, productivity
analysis and historical backfill.

Design Decisions:
-----------------
- All models use `extra='forbid'` to catch typos and invalid fields in YAML
  configuration files early, preventing silent misconfiguration.

- Every heuristic threshold (movement limits, merge gap, minimum stop length)
  is a named field with a default. The defaults were tuned empirically against
  real fleet data and are expected to be retuned, so none of them appear as
  literals in the algorithm modules.

- No logging occurs within this module because the logging configuration itself
  is defined here. Logging must be configured by the caller after loading config.

- SSL verification for the geocoder supports three modes:
  1. `True` - Standard verification using system CA bundle
  2. `False` - Disabled verification (use with caution)
  3. String path - Custom CA bundle

Usage:
------
    import yaml
    from fleet_trip_analytics.config.config_models import AnalyticsConfig

    with open('config.yaml', 'r') as config_file:
        raw_config = yaml.safe_load(config_file)

    config = AnalyticsConfig.model_validate(raw_config)
"""

from pathlib import Path
from typing import Literal, Self
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

# =============================================================================
# Public API
# =============================================================================

__all__: list[str] = [
    'AnalyticsConfig',
    'BackfillConfig',
    'ClientMatchingConfig',
    'CompressionType',
    'ConsolidationConfig',
    'GeocoderConfig',
    'LogLevelName',
    'LoggingConfig',
    'ParkingConfig',
    'ProductivityConfig',
    'SegmentationConfig',
    'StopDetectionConfig',
    'StorageConfig',
]

# =============================================================================
# Type Aliases
# =============================================================================

# Valid logging level names recognized by Python's logging module.
LogLevelName = Literal['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']

# Numeric equivalents of log level names for validation purposes.
LOG_LEVEL_VALUES: frozenset[int] = frozenset({10, 20, 30, 40, 50})

# Mapping from level name to numeric value, avoiding import of logging module
# in the model layer.
LOG_LEVEL_NAME_TO_INT: dict[LogLevelName, int] = {
    'DEBUG': 10,
    'INFO': 20,
    'WARNING': 30,
    'ERROR': 40,
    'CRITICAL': 50,
}

# Valid compression algorithms supported by pandas.to_parquet() and pyarrow.
CompressionType = Literal['snappy', 'gzip', 'brotli', 'lz4', 'zstd'] | None

# Keyword -> radius (meters) used when a client location has no configured
# radius. Matched case-insensitively against client name and address; the
# first keyword found wins, so more specific keywords come first.
DEFAULT_RADIUS_KEYWORDS: dict[str, float] = {
    'hospital': 200.0,
    'hospice': 200.0,
    'school': 200.0,
    'mall': 200.0,
    'retirement': 200.0,
    'park': 150.0,
    'museum': 150.0,
    'center': 150.0,
    'bank': 150.0,
    'church': 150.0,
}


# =============================================================================
# Algorithm Policy Configuration
# =============================================================================


class StopDetectionConfig(BaseModel):
    """Thresholds for windowed parking classification and stop extraction.

    Windowed Classification:
        A symmetric window of `window_half_width_minutes` is built around a
        candidate sample. The window is PARKED when it spans at least the
        half-width, the largest hop between consecutive samples is below
        `max_movement_meters`, and the mean hop is below `avg_movement_meters`.
        Both comparisons are strict.

    Movement Flag:
        At ingestion a position fix is flagged as moving when it is more than
        `movement_threshold_meters` from the previous fix and the implied speed
        reaches `min_moving_speed_mph`.

    Attributes:
        window_half_width_minutes: Half-width of the classification window.
        min_window_samples: Minimum samples needed for a determinate result.
        max_movement_meters: Upper bound (exclusive) on the largest hop.
        avg_movement_meters: Upper bound (exclusive) on the mean hop.
        min_stop_minutes: Minimum stationary run length to emit a Stop.
        movement_threshold_meters: GPS accuracy buffer for the moving flag.
        min_moving_speed_mph: Minimum implied speed for the moving flag.
    """

    model_config = ConfigDict(extra='forbid')

    window_half_width_minutes: float = Field(
        default=2.5,
        gt=0.0,
        le=60.0,
        description='Half-width of the symmetric classification window (minutes)',
    )
    min_window_samples: int = Field(
        default=3,
        ge=2,
        description='Samples required in the window for a determinate result',
    )
    max_movement_meters: float = Field(
        default=50.0,
        gt=0.0,
        description='Largest consecutive hop must be strictly below this (meters)',
    )
    avg_movement_meters: float = Field(
        default=15.0,
        gt=0.0,
        description='Mean consecutive hop must be strictly below this (meters)',
    )
    min_stop_minutes: float = Field(
        default=5.0,
        ge=0.0,
        description='Minimum stationary run length emitted as a Stop (minutes)',
    )
    movement_threshold_meters: float = Field(
        default=15.0,
        ge=0.0,
        description='Distance from previous fix beyond which a point may be moving',
    )
    min_moving_speed_mph: float = Field(
        default=3.0,
        ge=0.0,
        description='Implied or reported speed at which a point counts as moving',
    )


class SegmentationConfig(BaseModel):
    """Trip segmenter behavior.

    Attributes:
        gps_accuracy_buffer_meters: Path segments shorter than this are treated
            as GPS noise when integrating the GPS trip distance.
        gps_parking_override: When True, a running-ignition sample whose
            surrounding window classifies as PARKED is treated as ignition Off.
    """

    model_config = ConfigDict(extra='forbid')

    gps_accuracy_buffer_meters: float = Field(
        default=15.0,
        ge=0.0,
        description='Ignore GPS path segments shorter than this (meters)',
    )
    gps_parking_override: bool = Field(
        default=False,
        description='Force ignition Off when the GPS window says the vehicle is parked',
    )


class ConsolidationConfig(BaseModel):
    """Trip consolidation policy.

    Attributes:
        merge_gap_minutes: Trips separated by at most this gap are merged.
        parking_noise_max_points: Trips with this many route points or fewer
            are reclassified as parking noise.
    """

    model_config = ConfigDict(extra='forbid')

    merge_gap_minutes: float = Field(
        default=10.0,
        ge=0.0,
        description='Maximum off-to-on gap merged into one logical trip (minutes)',
    )
    parking_noise_max_points: int = Field(
        default=2,
        ge=0,
        description='Trips with at most this many route points are parking noise',
    )


class ClientMatchingConfig(BaseModel):
    """Client gazetteer and residential fallback settings.

    Attributes:
        gazetteer_path: Optional CSV file with client locations. Columns:
            address, client_name, lat, lng, radius_meters, client_type, is_active.
        default_radius_meters: Radius used when no keyword matches.
        home_base_radius_meters: Radius used for home base locations.
        radius_keywords: Keyword -> radius table for inferring radii.
        enable_geocode_fallback: Whether to reverse-geocode unmatched stops.
    """

    model_config = ConfigDict(extra='forbid')

    gazetteer_path: Path | None = Field(
        default=None,
        description='CSV file of client locations (None for an empty gazetteer)',
    )
    default_radius_meters: float = Field(
        default=100.0,
        gt=0.0,
        description='Radius for residential and unclassified locations (meters)',
    )
    home_base_radius_meters: float = Field(
        default=200.0,
        gt=0.0,
        description='Radius for home base locations (meters)',
    )
    radius_keywords: dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_RADIUS_KEYWORDS),
        description='Name/address keyword to radius table (meters)',
    )
    enable_geocode_fallback: bool = Field(
        default=True,
        description='Reverse-geocode stops that miss the gazetteer',
    )

    @field_validator('radius_keywords')
    @classmethod
    def validate_radius_keywords(cls, keywords: dict[str, float]) -> dict[str, float]:
        """Lowercase keywords and reject non-positive radii.

        Args:
            keywords: Keyword to radius mapping from configuration.

        Returns:
            Mapping with lowercase keys, insertion order preserved.

        Raises:
            ValueError: If any radius is not positive.
        """
        normalized: dict[str, float] = {}
        for keyword, radius in keywords.items():
            if radius <= 0:
                raise ValueError(
                    f'radius for keyword {keyword!r} must be positive, got: {radius}'
                )
            normalized[keyword.lower()] = radius
        return normalized


class ParkingConfig(BaseModel):
    """Parking session analysis policy.

    Attributes:
        grace_period_minutes: Time after ignition off before a parking session
            is confirmed. A restart inside the grace period cancels it.
        departure_distance_meters: Movement from the parking location that
            ends a session (0.5 mile by default).
    """

    model_config = ConfigDict(extra='forbid')

    grace_period_minutes: float = Field(default=1.0, ge=0.0)
    departure_distance_meters: float = Field(default=804.67, gt=0.0)


class ProductivityConfig(BaseModel):
    """Productivity aggregation and report insight thresholds.

    Attributes:
        timezone: IANA zone used to cut vehicle-days.
        freshness_minutes: Stored periods older than this are recomputed.
        low_productivity_threshold: Average ratio below which route planning
            is recommended.
        min_clients_per_day: Average unique clients per day below which more
            visits are recommended.
        idle_minutes_threshold: Daily idle minutes counted as a long-idle day.
        long_idle_day_fraction: Fraction of long-idle days that triggers the
            idle recommendation.
    """

    model_config = ConfigDict(extra='forbid')

    timezone: str = Field(default='UTC', description='IANA timezone for day boundaries')
    freshness_minutes: float = Field(default=60.0, gt=0.0)
    low_productivity_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    min_clients_per_day: float = Field(default=3.0, ge=0.0)
    idle_minutes_threshold: float = Field(default=60.0, ge=0.0)
    long_idle_day_fraction: float = Field(default=0.3, ge=0.0, le=1.0)

    @field_validator('timezone')
    @classmethod
    def validate_timezone(cls, timezone_name: str) -> str:
        """Ensure the timezone name resolves to an IANA zone.

        Raises:
            ValueError: If the zone is unknown.
        """
        try:
            ZoneInfo(timezone_name)
        except (ZoneInfoNotFoundError, ValueError) as zone_error:
            raise ValueError(f'Unknown timezone: {timezone_name!r}') from zone_error
        return timezone_name


# =============================================================================
# External Service Configuration
# =============================================================================


class GeocoderConfig(BaseModel):
    """Reverse geocoding service configuration.

    Network Resilience:
        Transient failures are retried with exponential backoff:
        `delay = retry_backoff_factor * (2 ** (attempt - 1))`, capped at
        `retry_backoff_max_seconds`. HTTP 429 responses honor Retry-After.

    Attributes:
        enabled: When False no geocoder is built and the fallback is skipped.
        base_url: Root URL of a Nominatim-compatible service.
        user_agent: Descriptive User-Agent required by public Nominatim.
        request_timeout: [connect, read] timeout in seconds.
        max_retries: Maximum attempts per lookup.
        retry_backoff_factor: Exponential backoff multiplier.
        retry_backoff_max_seconds: Cap on a single backoff wait.
        min_request_interval_seconds: Client-side throttle between requests.
        verify_ssl: SSL verification mode.
        use_truststore: Build the SSL context from the OS trust store.
        cache_path: Optional Parquet file persisting the geocode cache.
        cache_precision: Decimal places used for cache keys (4 ≈ 11 m).
    """

    model_config = ConfigDict(extra='forbid')

    enabled: bool = Field(default=True)
    base_url: str = Field(default='https://nominatim.openstreetmap.org')
    user_agent: str = Field(default='fleet-trip-analytics/0.1')
    request_timeout: tuple[int, int] = Field(default=(5, 15))
    max_retries: int = Field(default=3, ge=1, le=10)
    retry_backoff_factor: float = Field(default=1.0, gt=0.0, le=60.0)
    retry_backoff_max_seconds: float = Field(default=30.0, gt=0.0)
    min_request_interval_seconds: float = Field(default=1.0, ge=0.0, le=30.0)
    verify_ssl: bool | str = Field(default=True)
    use_truststore: bool = Field(default=False)
    cache_path: Path | None = Field(default=None)
    cache_precision: int = Field(default=4, ge=0, le=8)

    @field_validator('base_url')
    @classmethod
    def validate_base_url(cls, base_url: str) -> str:
        """Validate and normalize the geocoder base URL.

        Raises:
            ValueError: If URL is empty or missing http/https scheme.
        """
        if not base_url:
            raise ValueError('base_url cannot be empty')

        if not base_url.startswith(('http://', 'https://')):
            raise ValueError(
                f"base_url must start with 'http://' or 'https://', got: {base_url!r}"
            )

        return base_url.rstrip('/')

    @field_validator('request_timeout')
    @classmethod
    def validate_timeout_values_positive(
        cls, timeout: tuple[int, int]
    ) -> tuple[int, int]:
        """Ensure both timeout values are positive integers.

        Raises:
            ValueError: If either timeout value is non-positive.
        """
        connect_timeout, read_timeout = timeout

        if connect_timeout <= 0:
            raise ValueError(
                f'connect_timeout must be positive, got: {connect_timeout}'
            )
        if read_timeout <= 0:
            raise ValueError(f'read_timeout must be positive, got: {read_timeout}')

        return timeout

    @field_validator('verify_ssl')
    @classmethod
    def validate_ssl_configuration(cls, verify_ssl: bool | str) -> bool | str:
        """Verify a custom CA bundle path points at an existing file.

        Raises:
            ValueError: If string path does not exist or is not a file.
        """
        if isinstance(verify_ssl, str):
            cert_path = Path(verify_ssl)

            if not cert_path.exists():
                raise ValueError(f'SSL certificate bundle file not found: {verify_ssl}')
            if not cert_path.is_file():
                raise ValueError(
                    f'SSL certificate path must be a file, not directory: {verify_ssl}'
                )

        return verify_ssl


# =============================================================================
# Backfill Configuration
# =============================================================================


class BackfillConfig(BaseModel):
    """Historical replay settings.

    Telemetry history is fetched in fixed windows per vehicle. Windows for one
    vehicle are processed sequentially with a delay between them to respect
    the telemetry vendor's rate limit; vehicles are independent and run in
    parallel.

    Attributes:
        chunk_days: Size of each replay window in days.
        inter_chunk_delay_seconds: Pause between windows of one vehicle.
        max_workers: Vehicles processed concurrently.
    """

    model_config = ConfigDict(extra='forbid')

    chunk_days: float = Field(default=3.0, ge=0.25, le=31.0)
    inter_chunk_delay_seconds: float = Field(default=3.0, ge=0.0, le=300.0)
    max_workers: int = Field(default=4, ge=1, le=64)


# =============================================================================
# Storage Configuration
# =============================================================================


class StorageConfig(BaseModel):
    """Configuration for Parquet-backed productivity storage.

    Attributes:
        productivity_path: Root directory of date-partitioned productivity
            periods (Hive-style `date=YYYY-MM-DD/`).
        parquet_compression: Compression codec for Parquet writer.
    """

    model_config = ConfigDict(extra='forbid')

    productivity_path: Path | None = Field(
        default=None,
        description='Root directory for productivity partitions (None for in-memory)',
    )
    parquet_compression: CompressionType = Field(
        default='snappy',
        description="Compression codec: 'snappy', 'gzip', 'brotli', 'lz4', 'zstd', or None",
    )


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Configuration for application logging output.

    Supports dual-destination logging: console (always enabled) and optional
    file output.

    Attributes:
        file_path: Path to log file. None disables file logging.
            Extension .log is appended automatically if missing.
        console_level: Minimum log level for console output.
        file_level: Minimum log level for file output. Defaults to DEBUG if
            file_path is provided.
        data_quality_file_path: Separate file that receives only data-quality
            warnings, for auditing telemetry feeds. None disables it.
    """

    model_config = ConfigDict(extra='forbid')

    file_path: Path | None = Field(
        default=None,
        description='Log file path (.log extension auto-added). None disables file logging.',
    )
    console_level: LogLevelName | int = Field(
        default='INFO',
        description="Console log level: 'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL', or int",
    )
    file_level: LogLevelName | int | None = Field(
        default=None,
        description='File log level. None disables file logging.',
    )
    data_quality_file_path: Path | None = Field(
        default=None,
        description='Data-quality warning log (.log extension auto-added). None disables it.',
    )

    @field_validator('file_path', 'data_quality_file_path', mode='before')
    @classmethod
    def normalize_log_file_path(cls, path_value: str | Path | None) -> Path | None:
        """Normalize path and ensure .log extension."""
        if path_value is None:
            return None

        path_string: str = str(path_value)

        if not path_string.lower().endswith('.log'):
            path_string = f'{path_string}.log'

        return Path(path_string)

    @field_validator('console_level', 'file_level', mode='after')
    @classmethod
    def validate_numeric_log_level(
        cls, level_value: LogLevelName | int | None
    ) -> LogLevelName | int | None:
        """Validate numeric log levels are standard Python logging values.

        Raises:
            ValueError: If numeric level is not a standard logging value.
        """
        if level_value is None or isinstance(level_value, str):
            return level_value

        if level_value not in LOG_LEVEL_VALUES:
            raise ValueError(
                f'Numeric log level must be one of {sorted(LOG_LEVEL_VALUES)}, '
                f'got: {level_value}'
            )

        return level_value

    @model_validator(mode='after')
    def ensure_file_logging_configuration_consistency(self) -> Self:
        """Ensure file_path and file_level are consistently configured.

        Raises:
            ValueError: If file_level is set but file_path is missing.
        """
        has_file_path: bool = self.file_path is not None
        has_file_level: bool = self.file_level is not None

        if has_file_path and not has_file_level:
            self.file_level = 'DEBUG'

        if has_file_level and not has_file_path:
            raise ValueError(
                'file_level is specified but file_path is missing. '
                'Provide file_path to enable file logging, or remove file_level.'
            )

        return self

    def get_console_level_int(self) -> int:
        """Convert console_level to numeric value for logging module."""
        if isinstance(self.console_level, int):
            return self.console_level
        return LOG_LEVEL_NAME_TO_INT[self.console_level]

    def get_file_level_int(self) -> int | None:
        """Convert file_level to numeric value, or None if file logging is off."""
        if self.file_level is None:
            return None
        if isinstance(self.file_level, int):
            return self.file_level
        return LOG_LEVEL_NAME_TO_INT[self.file_level]


# =============================================================================
# Root Configuration
# =============================================================================


class AnalyticsConfig(BaseModel):
    """Root configuration model for Fleet Trip Analytics.

    Every section has defaults, so `AnalyticsConfig()` is a valid configuration
    that runs entirely in memory with the empirically tuned thresholds.

    Attributes:
        stop_detection: Windowed parking and stop extraction thresholds.
        segmentation: Trip segmenter behavior.
        consolidation: Trip merge and parking-noise policy.
        client_matching: Gazetteer and residential fallback settings.
        parking: Parking session analysis policy.
        productivity: Day boundaries, freshness and insight thresholds.
        geocoder: Reverse geocoding service settings.
        backfill: Historical replay chunking and concurrency.
        storage: Productivity storage location.
        logging: Application logging configuration.
    """

    model_config = ConfigDict(extra='forbid')

    stop_detection: StopDetectionConfig = Field(default_factory=StopDetectionConfig)
    segmentation: SegmentationConfig = Field(default_factory=SegmentationConfig)
    consolidation: ConsolidationConfig = Field(default_factory=ConsolidationConfig)
    client_matching: ClientMatchingConfig = Field(default_factory=ClientMatchingConfig)
    parking: ParkingConfig = Field(default_factory=ParkingConfig)
    productivity: ProductivityConfig = Field(default_factory=ProductivityConfig)
    geocoder: GeocoderConfig = Field(default_factory=GeocoderConfig)
    backfill: BackfillConfig = Field(default_factory=BackfillConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode='after')
    def validate_stop_thresholds_consistent(self) -> Self:
        """Ensure the mean-hop limit does not exceed the max-hop limit.

        A mean above the largest hop is impossible, so such a configuration
        would silently disable the mean check.

        Raises:
            ValueError: If avg_movement_meters > max_movement_meters.
        """
        stops: StopDetectionConfig = self.stop_detection
        if stops.avg_movement_meters > stops.max_movement_meters:
            raise ValueError(
                'stop_detection.avg_movement_meters '
                f'({stops.avg_movement_meters}) cannot exceed max_movement_meters '
                f'({stops.max_movement_meters})'
            )
        return self
