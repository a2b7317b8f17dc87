"""
Configuration Package for Fleet Trip Analytics.

Exposes the configuration models and the loader function.
"""

from fleet_trip_analytics.config.config_models import (
    AnalyticsConfig,
    BackfillConfig,
    ClientMatchingConfig,
    CompressionType,
    ConsolidationConfig,
    GeocoderConfig,
    LoggingConfig,
    ParkingConfig,
    ProductivityConfig,
    SegmentationConfig,
    StopDetectionConfig,
    StorageConfig,
)
from fleet_trip_analytics.config.loader import load_config

__all__: list[str] = [
    'AnalyticsConfig',
    'BackfillConfig',
    'ClientMatchingConfig',
    'CompressionType',
    'ConsolidationConfig',
    'GeocoderConfig',
    'LoggingConfig',
    'ParkingConfig',
    'ProductivityConfig',
    'SegmentationConfig',
    'StopDetectionConfig',
    'StorageConfig',
    'load_config',
]
