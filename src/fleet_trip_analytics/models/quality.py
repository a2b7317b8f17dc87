# fleet_trip_analytics/models/quality.py
"""
Data-quality warnings.

Invariant violations in telemetry (clock skew, out-of-order delivery, trips
that end before they start) are reported, never silently corrected. Each
warning is also logged at WARNING level on the `fleet_trip_analytics.data_quality`
logger.
"""

import logging
from collections.abc import Iterable
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict

__all__: list[str] = [
    'DATA_QUALITY_LOGGER_NAME',
    'DataQualityIssue',
    'DataQualityWarning',
    'log_warnings',
]

DATA_QUALITY_LOGGER_NAME: str = 'fleet_trip_analytics.data_quality'

data_quality_logger: logging.Logger = logging.getLogger(DATA_QUALITY_LOGGER_NAME)


class DataQualityIssue(str, Enum):
    """Category of a data-quality warning."""

    TRIP_ENDS_BEFORE_START = 'trip_ends_before_start'
    ROUTE_POINT_OUTSIDE_TRIP = 'route_point_outside_trip'
    ROUTE_POINTS_UNORDERED = 'route_points_unordered'
    OUT_OF_ORDER_SAMPLE = 'out_of_order_sample'
    MISSING_POSITION = 'missing_position'
    OVERLAPPING_TRIPS = 'overlapping_trips'
    NEGATIVE_DISTANCE = 'negative_distance'


class DataQualityWarning(BaseModel):
    """A single surfaced invariant violation."""

    model_config = ConfigDict(extra='forbid', frozen=True)

    issue: DataQualityIssue
    vehicle_id: str
    message: str
    trip_id: str | None = None
    timestamp: datetime | None = None


def log_warnings(warnings: Iterable[DataQualityWarning]) -> None:
    """
    Emit each warning on the data-quality logger at WARNING level.

    The logger is a child of the package logger, so warnings reach the regular
    handlers as well as the optional data-quality file set up by `setup_logger`.
    """
    for warning in warnings:
        data_quality_logger.warning(
            'Data quality [%s] vehicle=%s trip=%s: %s',
            warning.issue.value,
            warning.vehicle_id,
            warning.trip_id,
            warning.message,
        )
