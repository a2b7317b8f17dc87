# fleet_trip_analytics/common/__init__.py

from fleet_trip_analytics.common.cache import ReadThroughCache
from fleet_trip_analytics.common.file_io import ParquetFileHandler
from fleet_trip_analytics.common.logger import setup_logger
from fleet_trip_analytics.common.partitioned_file_io import PartitionedProductivityStore
from fleet_trip_analytics.common.truststore_context import build_truststore_ssl_context

__all__: list[str] = [
    'ParquetFileHandler',
    'PartitionedProductivityStore',
    'ReadThroughCache',
    'build_truststore_ssl_context',
    'setup_logger',
]
