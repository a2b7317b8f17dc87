# fleet_trip_analytics/common/file_io.py
"""
Single-file Parquet persistence.

Used for small tables that live in one file, such as the persisted geocode
cache. Large, date-keyed tables use `partitioned_file_io` instead.

Design Philosophy:
------------------
- load() returns None on errors (missing or corrupt data is recoverable; a
  cold cache simply refills)
- save() raises on errors (filesystem issues require explicit handling)
- Writes are atomic (temp file + rename) to prevent corruption on crash

Thread Safety:
--------------
Not thread-safe. Callers that share a handler between threads must hold
their own lock around save().
"""

import logging
import tempfile
from contextlib import suppress
from pathlib import Path
from typing import cast

import pandas as pd
from pyarrow import (
    ArrowInvalid as _ArrowInvalid,  # pyright: ignore[reportUnknownVariableType]
    ArrowIOError as _ArrowIOError,  # pyright: ignore[reportUnknownVariableType]
)

from fleet_trip_analytics.config import CompressionType

# PyArrow exception types, cast because the stubs are incomplete.
ArrowInvalid: type[Exception] = cast(type[Exception], _ArrowInvalid)
ArrowIOError: type[Exception] = cast(type[Exception], _ArrowIOError)


__all__: list[str] = ['ArrowIOError', 'ArrowInvalid', 'ParquetFileHandler']

logger: logging.Logger = logging.getLogger(__name__)


class ParquetFileHandler:
    """
    Reads and writes exactly one Parquet file.

    Attributes:
        path: The Parquet file path (read-only property).
        exists: Whether the file currently exists (read-only property).
    """

    def __init__(
        self,
        path: Path | str,
        compression: CompressionType = 'snappy',
    ) -> None:
        """
        Initialize the handler and create the parent directory.

        Args:
            path: Target Parquet file.
            compression: Codec passed to pandas.to_parquet().

        Raises:
            OSError: If the parent directory cannot be created.
        """
        self._path: Path = Path(path)
        self._compression: CompressionType = compression

        self._path.parent.mkdir(parents=True, exist_ok=True)

        logger.debug(
            'Initialized ParquetFileHandler: path=%r, compression=%r',
            self._path,
            self._compression,
        )

    @property
    def path(self) -> Path:
        """The configured Parquet file path."""
        return self._path

    @property
    def exists(self) -> bool:
        """Whether the Parquet file currently exists on disk."""
        return self._path.exists()

    def load(self) -> pd.DataFrame | None:
        """
        Load the Parquet file into a DataFrame.

        Returns:
            The file contents, or None if the file is missing, unreadable or
            corrupt.
        """
        if not self._path.exists():
            return None

        try:
            dataframe: pd.DataFrame = pd.read_parquet(self._path)
        except (OSError, ArrowInvalid, ArrowIOError) as read_error:
            logger.exception('Failed to read Parquet file %r: %s', self._path, read_error)
            return None

        logger.debug('Loaded %d records from %r', len(dataframe), self._path)
        return dataframe

    def save(self, dataframe: pd.DataFrame) -> None:
        """
        Save a DataFrame atomically (temp file in the same directory, then rename).

        Args:
            dataframe: Data to persist.

        Raises:
            OSError: File system errors (permissions, disk full).
            ArrowInvalid: DataFrame contains types that cannot be serialized.
            ArrowIOError: I/O errors during write.
        """
        record_count: int = len(dataframe)
        temp_path: Path | None = None

        try:
            with tempfile.NamedTemporaryFile(
                mode='wb',
                suffix='.parquet.tmp',
                dir=self._path.parent,
                delete=False,
            ) as temp_file:
                temp_path = Path(temp_file.name)

            dataframe.to_parquet(temp_path, index=False, compression=self._compression)
            temp_path.replace(self._path)

        except (OSError, ArrowInvalid, ArrowIOError) as write_error:
            logger.exception(
                'Failed to save %d records to %r: %s',
                record_count,
                self._path,
                write_error,
            )
            if temp_path is not None and temp_path.exists():
                with suppress(OSError):
                    temp_path.unlink()
            raise

        logger.info('Saved %d records to %r', record_count, self._path)

    def delete(self) -> bool:
        """
        Delete the Parquet file if it exists.

        Returns:
            True if the file was deleted, False if it did not exist.
        """
        if not self._path.exists():
            return False

        self._path.unlink()
        logger.info('Deleted Parquet file: %r', self._path)
        return True
