# fleet_trip_analytics/__init__.py
"""
Fleet Trip Analytics - trips, stops and productivity from EV fleet telemetry.

The package turns periodic GPS and ignition samples into:

1. **Trips**: ignition-bounded journeys with route points, odometer and GPS
   distances and battery use (`TripSegmenter`), repaired for ignition
   flapping (`TripConsolidator`).
2. **Stops and parking**: windowed parked/moving classification
   (`StopDetector`) and parking sessions with brief ignition cycles
   (`ParkingAnalyzer`).
3. **Productivity**: stops matched to client locations (`ClientMatcher`) and
   rolled up into daily periods and weekly or monthly reports
   (`ProductivityService`).

Quick Start:
    >>> from fleet_trip_analytics import FleetAnalyticsPipeline, InMemoryTelemetrySource
    >>>
    >>> source = InMemoryTelemetrySource({'vehicle-1': raw_documents})
    >>> pipeline = FleetAnalyticsPipeline.from_config('config/analytics_config.yaml', source)
    >>> pipeline.run_backfill(['vehicle-1'], start, end)
    >>> report = pipeline.productivity.get_weekly_report('vehicle-1', week_start)

Storage is pluggable: anything satisfying the Protocols in
`fleet_trip_analytics.stores` can be passed to the pipeline. In-memory stores
and a date-partitioned Parquet productivity store are included.
"""

__version__ = '0.1.0'

from fleet_trip_analytics.client_matcher import ClientGazetteer, ClientMatcher
from fleet_trip_analytics.common import (
    PartitionedProductivityStore,
    ReadThroughCache,
    setup_logger,
)
from fleet_trip_analytics.config import AnalyticsConfig, load_config
from fleet_trip_analytics.consolidator import ConsolidationResult, TripConsolidator
from fleet_trip_analytics.geocoder import (
    CachedGeocoder,
    GeocodingError,
    GeocodingRateLimitError,
    NominatimGeocoder,
    TransientGeocodingError,
)
from fleet_trip_analytics.normalizer import MovementTracker, SignalNormalizer
from fleet_trip_analytics.parking import ParkingAnalyzer
from fleet_trip_analytics.pipeline import (
    BackfillSummary,
    FleetAnalyticsPipeline,
    PipelineError,
)
from fleet_trip_analytics.productivity import (
    ProductivityAggregator,
    ProductivityService,
)
from fleet_trip_analytics.segmenter import TripSegmenter
from fleet_trip_analytics.stops import StopDetector
from fleet_trip_analytics.stores import (
    InMemoryProductivityStore,
    InMemoryRoutePointStore,
    InMemoryTelemetrySource,
    InMemoryTripStore,
)

__all__: list[str] = [
    'AnalyticsConfig',
    'BackfillSummary',
    'CachedGeocoder',
    'ClientGazetteer',
    'ClientMatcher',
    'ConsolidationResult',
    'FleetAnalyticsPipeline',
    'GeocodingError',
    'GeocodingRateLimitError',
    'InMemoryProductivityStore',
    'InMemoryRoutePointStore',
    'InMemoryTelemetrySource',
    'InMemoryTripStore',
    'MovementTracker',
    'NominatimGeocoder',
    'ParkingAnalyzer',
    'PartitionedProductivityStore',
    'PipelineError',
    'ProductivityAggregator',
    'ProductivityService',
    'ReadThroughCache',
    'SignalNormalizer',
    'StopDetector',
    'TransientGeocodingError',
    'TripConsolidator',
    'TripSegmenter',
    '__version__',
    'load_config',
    'setup_logger',
]
