# fleet_trip_analytics/common/partitioned_file_io.py
"""
Date-partitioned Parquet storage for productivity periods.

Periods are keyed by (vehicle_id, date), so the local day doubles as the
partition key. Each day lives in a Hive-style directory (date=YYYY-MM-DD/)
holding one Parquet file with one row per vehicle.

Design Philosophy:
------------------
- Each date partition is an independent Parquet file
- An upsert only reads and rewrites the one partition it touches
- Atomic writes at the partition level (temp file + rename)
- Deduplication on (vehicle_id, date), keeping the last row

Directory Structure:
--------------------
    base_path/
    ├── date=2024-01-15/
    │   └── data.parquet
    └── date=2024-01-16/
        └── data.parquet

Thread Safety:
--------------
Backfill workers for different vehicles upsert into the same day partition,
so every read-modify-write cycle runs under one store-wide lock.

Usage:
------
    from fleet_trip_analytics.config import StorageConfig
    from fleet_trip_analytics.common.partitioned_file_io import PartitionedProductivityStore

    store = PartitionedProductivityStore(StorageConfig(productivity_path='data/productivity'))
    store.upsert(period)
    period = store.get('vehicle-1', date(2024, 1, 15))
"""

import logging
import tempfile
import threading
from contextlib import suppress
from datetime import date
from pathlib import Path

import pandas as pd

from fleet_trip_analytics.common.file_io import ArrowInvalid, ArrowIOError
from fleet_trip_analytics.config import StorageConfig
from fleet_trip_analytics.models import ProductivityPeriod
from fleet_trip_analytics.schema import (
    PRODUCTIVITY_COLUMNS,
    PRODUCTIVITY_DEDUP_COLUMNS,
    dataframe_to_periods,
    enforce_productivity_schema,
    periods_to_dataframe,
)

__all__: list[str] = ['PartitionedProductivityStore']

logger: logging.Logger = logging.getLogger(__name__)

# Hive-style partition directory format
PARTITION_DIR_FORMAT: str = 'date={date}'
PARTITION_DIR_PREFIX: str = 'date='
PARTITION_FILE_NAME: str = 'data.parquet'


class PartitionedProductivityStore:
    """
    ProductivityStore backed by a directory of date-partitioned Parquet files.

    Attributes:
        base_path: Root directory containing all partitions (read-only).
        partition_count: Number of partition directories present (read-only).
    """

    def __init__(self, storage_config: StorageConfig) -> None:
        """
        Initialize the store and create the base directory.

        Args:
            storage_config: Storage settings. `productivity_path` must be set.

        Raises:
            ValueError: If storage_config.productivity_path is None.
            OSError: If the base directory cannot be created.
        """
        if storage_config.productivity_path is None:
            raise ValueError('storage.productivity_path must be set for Parquet storage')

        self._config: StorageConfig = storage_config
        self._base_path: Path = storage_config.productivity_path
        self._lock: threading.Lock = threading.Lock()

        self._base_path.mkdir(parents=True, exist_ok=True)

        logger.info(
            'Initialized PartitionedProductivityStore: base_path=%r, compression=%r',
            self._base_path,
            self._config.parquet_compression,
        )

    @property
    def base_path(self) -> Path:
        return self._base_path

    @property
    def partition_count(self) -> int:
        return len(self._list_partition_directories())

    # -------------------------------------------------------------------------
    # ProductivityStore protocol
    # -------------------------------------------------------------------------

    def get(self, vehicle_id: str, day: date) -> ProductivityPeriod | None:
        """Stored period for a vehicle-day, or None if missing or unreadable."""
        with self._lock:
            partition_df: pd.DataFrame | None = self.load_partition(day)

        if partition_df is None or partition_df.empty:
            return None

        vehicle_rows: pd.DataFrame = partition_df[partition_df['vehicle_id'] == vehicle_id]
        if vehicle_rows.empty:
            return None

        periods: list[ProductivityPeriod] = dataframe_to_periods(vehicle_rows.tail(1))
        return periods[0] if periods else None

    def upsert(self, period: ProductivityPeriod) -> None:
        """
        Insert or replace the period for (vehicle_id, date).

        Raises:
            OSError: File system errors.
            ArrowInvalid: Row cannot be serialized.
            ArrowIOError: I/O errors during write.
        """
        new_rows: pd.DataFrame = periods_to_dataframe([period])

        with self._lock:
            existing: pd.DataFrame | None = self.load_partition(period.date)
            combined: pd.DataFrame = (
                new_rows
                if existing is None or existing.empty
                else pd.concat([existing, new_rows], ignore_index=True)
            )
            combined = enforce_productivity_schema(combined)
            combined = combined.drop_duplicates(subset=PRODUCTIVITY_DEDUP_COLUMNS, keep='last')
            combined = combined.sort_values('vehicle_id').reset_index(drop=True)
            self._save_partition(combined, period.date)

    # -------------------------------------------------------------------------
    # Partition access
    # -------------------------------------------------------------------------

    def list_partition_dates(self) -> list[date]:
        """All partition dates, oldest first."""
        dates: list[date] = []
        for partition_dir in self._list_partition_directories():
            partition_date: date | None = self._parse_partition_date(partition_dir)
            if partition_date is not None:
                dates.append(partition_date)
        return dates

    def load_partition(self, partition_date: date) -> pd.DataFrame | None:
        """
        Load one day's rows.

        Returns None for missing or corrupt partitions rather than raising,
        so callers treat them as "no data for this date".
        """
        partition_path: Path = self._get_partition_path(partition_date)

        if not partition_path.exists():
            return None

        try:
            dataframe: pd.DataFrame = pd.read_parquet(partition_path)
        except (OSError, ArrowInvalid, ArrowIOError) as read_error:
            logger.exception(
                'Failed to read partition %s from %r: %s',
                partition_date.isoformat(),
                partition_path,
                read_error,
            )
            return None

        logger.debug(
            'Loaded partition %s: %d records',
            partition_date.isoformat(),
            len(dataframe),
        )
        return dataframe

    def load_date_range(self, start_date: date, end_date: date) -> pd.DataFrame | None:
        """
        Load all partitions within a date range (inclusive).

        Returns:
            Combined rows in the canonical schema, or None if no partition in
            the range exists.
        """
        if start_date > end_date:
            logger.warning(
                'start_date %s is after end_date %s. Returning None.',
                start_date.isoformat(),
                end_date.isoformat(),
            )
            return None

        dataframes: list[pd.DataFrame] = []
        for partition_date in self.list_partition_dates():
            if not start_date <= partition_date <= end_date:
                continue
            partition_df: pd.DataFrame | None = self.load_partition(partition_date)
            if partition_df is not None and not partition_df.empty:
                dataframes.append(partition_df)

        if not dataframes:
            return None

        combined: pd.DataFrame = pd.concat(dataframes, ignore_index=True)
        logger.info(
            'Loaded %d productivity rows from %s to %s',
            len(combined),
            start_date.isoformat(),
            end_date.isoformat(),
        )
        return combined[PRODUCTIVITY_COLUMNS]

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _list_partition_directories(self) -> list[Path]:
        if not self._base_path.exists():
            return []
        return sorted(
            path
            for path in self._base_path.iterdir()
            if path.is_dir() and path.name.startswith(PARTITION_DIR_PREFIX)
        )

    def _get_partition_path(self, partition_date: date) -> Path:
        partition_dir_name: str = PARTITION_DIR_FORMAT.format(
            date=partition_date.isoformat()
        )
        return self._base_path / partition_dir_name / PARTITION_FILE_NAME

    @staticmethod
    def _parse_partition_date(partition_dir: Path) -> date | None:
        try:
            return date.fromisoformat(partition_dir.name.removeprefix(PARTITION_DIR_PREFIX))
        except ValueError:
            logger.warning(
                'Invalid partition directory name (cannot parse date): %r',
                partition_dir,
            )
            return None

    def _save_partition(self, dataframe: pd.DataFrame, partition_date: date) -> None:
        """Write one partition atomically (temp file + rename)."""
        partition_path: Path = self._get_partition_path(partition_date)
        partition_dir: Path = partition_path.parent
        partition_dir.mkdir(parents=True, exist_ok=True)

        temp_path: Path | None = None
        try:
            with tempfile.NamedTemporaryFile(
                mode='wb',
                suffix='.parquet.tmp',
                dir=partition_dir,
                delete=False,
            ) as temp_file:
                temp_path = Path(temp_file.name)

            dataframe.to_parquet(
                temp_path,
                index=False,
                compression=self._config.parquet_compression,
            )
            temp_path.replace(partition_path)

        except (OSError, ArrowInvalid, ArrowIOError) as write_error:
            logger.exception(
                'Failed to save partition %s (%d records): %s',
                partition_date.isoformat(),
                len(dataframe),
                write_error,
            )
            if temp_path is not None and temp_path.exists():
                with suppress(OSError):
                    temp_path.unlink()
            raise

        logger.info(
            'Saved productivity partition %s: %d records',
            partition_date.isoformat(),
            len(dataframe),
        )
