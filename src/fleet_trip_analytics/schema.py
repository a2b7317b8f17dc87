# fleet_trip_analytics/schema.py
"""
Tabular schema definitions for route points and productivity periods.

This module provides the canonical column definitions and DataFrame schema
enforcement for everything the engine exports as a table. Any code that
builds a route point or productivity DataFrame should go through these
definitions so Parquet files written at different times stay compatible.

Design Rationale:
-----------------
Route points are flat by nature. Productivity periods own nested lists (job
site visits and the client breakdown); those are stored as JSON text columns
so the table stays flat for Parquet and BI tools while still round-tripping
losslessly through the pydantic models.
"""

import logging
from collections.abc import Iterable
from typing import Any, Final

import numpy as np
import pandas as pd
from pydantic import TypeAdapter

from fleet_trip_analytics.models import (
    ClientTimeBreakdown,
    JobSiteVisit,
    ProductivityPeriod,
    RoutePoint,
)

logger: logging.Logger = logging.getLogger(__name__)

__all__: list[str] = [
    'PRODUCTIVITY_COLUMNS',
    'PRODUCTIVITY_DEDUP_COLUMNS',
    'ROUTE_POINT_COLUMNS',
    'ROUTE_POINT_DEDUP_COLUMNS',
    'dataframe_to_periods',
    'enforce_productivity_schema',
    'enforce_route_point_schema',
    'periods_to_dataframe',
    'route_points_to_dataframe',
]

# =============================================================================
# Schema Constants
# =============================================================================

# Canonical column order for route point exports.
ROUTE_POINT_COLUMNS: Final[list[str]] = [
    'vehicle_id',  # Vehicle identifier
    'timestamp',  # Observation time (UTC, timezone-aware)
    'latitude',  # GPS latitude (decimal degrees, WGS84)
    'longitude',  # GPS longitude (decimal degrees, WGS84)
    'ignition_state',  # 'On', 'Off', 'Run' or 'Unknown'
    'speed',  # Reported speed in mph
    'odometer',  # Odometer in miles
    'battery_soc',  # State of charge, percent
    'battery_range',  # Remaining range in miles
    'plug_connected',  # Charger plugged in
    'is_moving',  # Movement flag assigned at ingestion
    'address',  # Reverse-geocoded address, if known
]

# A route point is identified by its vehicle and timestamp.
ROUTE_POINT_DEDUP_COLUMNS: Final[list[str]] = ['vehicle_id', 'timestamp']

# Canonical column order for productivity period rows.
PRODUCTIVITY_COLUMNS: Final[list[str]] = [
    'vehicle_id',
    'vehicle_name',
    'date',  # Local calendar day, ISO string
    'total_on_job_time',  # Minutes
    'total_off_job_time',
    'total_idle_time',
    'total_driving_time',
    'productivity_ratio',
    'efficiency',
    'total_working_minutes',
    'unique_clients',
    'top_client',
    'job_sites',  # JSON array of JobSiteVisit
    'client_hours',  # JSON array of ClientTimeBreakdown
    'source_fingerprint',
    'last_updated',  # UTC, timezone-aware
]

# One period per vehicle and day; upserts keep the last row.
PRODUCTIVITY_DEDUP_COLUMNS: Final[list[str]] = ['vehicle_id', 'date']

_ROUTE_POINT_FLOAT_COLUMNS: Final[list[str]] = [
    'latitude',
    'longitude',
    'speed',
    'odometer',
    'battery_soc',
    'battery_range',
]

_PRODUCTIVITY_FLOAT_COLUMNS: Final[list[str]] = [
    'total_on_job_time',
    'total_off_job_time',
    'total_idle_time',
    'total_driving_time',
    'productivity_ratio',
    'efficiency',
    'total_working_minutes',
]

_JOB_SITES_ADAPTER: TypeAdapter[list[JobSiteVisit]] = TypeAdapter(list[JobSiteVisit])
_CLIENT_HOURS_ADAPTER: TypeAdapter[list[ClientTimeBreakdown]] = TypeAdapter(
    list[ClientTimeBreakdown]
)


# =============================================================================
# Route Points
# =============================================================================


def enforce_route_point_schema(dataframe: pd.DataFrame) -> pd.DataFrame:
    """
    Enforce correct column types on a route point DataFrame.

    This function is idempotent.

    Args:
        dataframe: DataFrame with route point columns, possibly loosely typed.

    Returns:
        DataFrame with enforced types:
            - timestamp: datetime64[ns, UTC]
            - latitude/longitude/speed/odometer/battery_*: float64 (NaN for missing)
            - ignition_state: category
            - is_moving: bool
            - plug_connected: nullable boolean
            - vehicle_id/address: object (string)

    Raises:
        ValueError: If required columns are missing from the input DataFrame.
    """
    missing_columns: set[str] = set(ROUTE_POINT_COLUMNS) - set(dataframe.columns)
    if missing_columns:
        raise ValueError(
            f'DataFrame missing required columns: {sorted(missing_columns)}'
        )

    result: pd.DataFrame = dataframe.copy()

    result['timestamp'] = pd.to_datetime(result['timestamp'], utc=True, errors='coerce')

    for column_name in _ROUTE_POINT_FLOAT_COLUMNS:
        result[column_name] = pd.to_numeric(
            result[column_name], errors='coerce'
        ).astype(np.float64)

    result['ignition_state'] = result['ignition_state'].astype('category')
    result['is_moving'] = result['is_moving'].fillna(False).astype(bool)
    result['plug_connected'] = result['plug_connected'].astype('boolean')

    for column_name in ('vehicle_id', 'address'):
        valid_mask: pd.Series[bool] = result[column_name].notna()
        result.loc[valid_mask, column_name] = result.loc[valid_mask, column_name].astype(str)

    result = result[ROUTE_POINT_COLUMNS]

    unparsable_timestamps: int = int(result['timestamp'].isna().sum())
    if unparsable_timestamps > 0:
        logger.warning('Found %d route points with unparsable timestamps', unparsable_timestamps)

    return result


def route_points_to_dataframe(route_points: Iterable[RoutePoint]) -> pd.DataFrame:
    """
    Export route points as a DataFrame in the canonical schema.

    Duplicate (vehicle_id, timestamp) rows keep the first occurrence, and the
    result is sorted by vehicle and time.
    """
    records: list[dict[str, Any]] = [
        {
            'vehicle_id': point.vehicle_id,
            'timestamp': point.timestamp,
            'latitude': point.latitude,
            'longitude': point.longitude,
            'ignition_state': point.ignition_state.value,
            'speed': point.speed,
            'odometer': point.odometer,
            'battery_soc': point.battery_soc,
            'battery_range': point.battery_range,
            'plug_connected': point.plug_connected,
            'is_moving': point.is_moving,
            'address': point.address,
        }
        for point in route_points
    ]
    dataframe: pd.DataFrame = pd.DataFrame.from_records(records, columns=ROUTE_POINT_COLUMNS)
    dataframe = enforce_route_point_schema(dataframe)
    dataframe = dataframe.drop_duplicates(subset=ROUTE_POINT_DEDUP_COLUMNS, keep='first')
    return dataframe.sort_values(ROUTE_POINT_DEDUP_COLUMNS).reset_index(drop=True)


# =============================================================================
# Productivity Periods
# =============================================================================


def enforce_productivity_schema(dataframe: pd.DataFrame) -> pd.DataFrame:
    """
    Enforce correct column types on a productivity DataFrame.

    Raises:
        ValueError: If required columns are missing from the input DataFrame.
    """
    missing_columns: set[str] = set(PRODUCTIVITY_COLUMNS) - set(dataframe.columns)
    if missing_columns:
        raise ValueError(
            f'DataFrame missing required columns: {sorted(missing_columns)}'
        )

    result: pd.DataFrame = dataframe.copy()

    result['last_updated'] = pd.to_datetime(result['last_updated'], utc=True, errors='coerce')
    for column_name in _PRODUCTIVITY_FLOAT_COLUMNS:
        result[column_name] = pd.to_numeric(
            result[column_name], errors='coerce'
        ).astype(np.float64)
    result['unique_clients'] = (
        pd.to_numeric(result['unique_clients'], errors='coerce').fillna(0).astype(np.int64)
    )

    for column_name in (
        'vehicle_id',
        'vehicle_name',
        'date',
        'top_client',
        'job_sites',
        'client_hours',
        'source_fingerprint',
    ):
        result[column_name] = result[column_name].fillna('').astype(str)

    return result[PRODUCTIVITY_COLUMNS]


def periods_to_dataframe(periods: Iterable[ProductivityPeriod]) -> pd.DataFrame:
    """Flatten productivity periods into canonical rows."""
    records: list[dict[str, Any]] = []
    for period in periods:
        record: dict[str, Any] = period.model_dump(
            mode='json', exclude={'job_sites', 'client_hours'}
        )
        record['last_updated'] = period.last_updated
        record['job_sites'] = _JOB_SITES_ADAPTER.dump_json(period.job_sites).decode()
        record['client_hours'] = _CLIENT_HOURS_ADAPTER.dump_json(period.client_hours).decode()
        records.append(record)

    dataframe: pd.DataFrame = pd.DataFrame.from_records(records, columns=PRODUCTIVITY_COLUMNS)
    return enforce_productivity_schema(dataframe)


def dataframe_to_periods(dataframe: pd.DataFrame) -> list[ProductivityPeriod]:
    """
    Rebuild productivity periods from canonical rows.

    Rows that fail validation are skipped with a warning.
    """
    periods: list[ProductivityPeriod] = []
    for row in enforce_productivity_schema(dataframe).to_dict(orient='records'):
        try:
            row['job_sites'] = _JOB_SITES_ADAPTER.validate_json(row['job_sites'] or '[]')
            row['client_hours'] = _CLIENT_HOURS_ADAPTER.validate_json(
                row['client_hours'] or '[]'
            )
            row['last_updated'] = row['last_updated'].to_pydatetime()
            periods.append(ProductivityPeriod.model_validate(row))
        except ValueError as validation_error:
            logger.warning(
                'Skipping invalid productivity row for %s on %s: %s',
                row.get('vehicle_id'),
                row.get('date'),
                validation_error,
            )
    return periods
