# fleet_trip_analytics/common/cache.py
"""
Read-through cache with explicit persistence boundaries.

Caches are injected where they are used; nothing in the package keeps a
process-wide cache. Persistence is explicit: `load()` reads the backing
Parquet file into memory and `save()` writes the in-memory entries back.
Between those calls the cache is purely in-memory.

Values are Pydantic models with flat scalar fields. Each model becomes one
Parquet row, with the key stored in a `cache_key` column.

Thread Safety:
--------------
Entry access is guarded by a lock, so one cache can be shared by worker
threads during a backfill. The fetch function runs outside the lock; two
threads missing the same key may both fetch it, and the last write wins.
"""

import logging
import threading
from collections.abc import Callable
from typing import Any

import pandas as pd
from pydantic import BaseModel, ValidationError

from fleet_trip_analytics.common.file_io import ParquetFileHandler

__all__: list[str] = ['CACHE_KEY_COLUMN', 'ReadThroughCache']

logger: logging.Logger = logging.getLogger(__name__)

CACHE_KEY_COLUMN: str = 'cache_key'


class ReadThroughCache[ValueT: BaseModel]:
    """
    Key -> model cache that fills itself from a fetch function on a miss.

    Misses for which the fetch function returns None are not stored, so a
    failed lookup is retried on the next request.

    Example:
        >>> cache = ReadThroughCache(GeocodeResult, ParquetFileHandler('geo.parquet'))
        >>> cache.load()
        >>> result = cache.get_or_fetch('36.0800,-94.1700', lambda: geocoder.reverse(...))
        >>> cache.save()
    """

    def __init__(
        self,
        value_type: type[ValueT],
        file_handler: ParquetFileHandler | None = None,
    ) -> None:
        """
        Args:
            value_type: Model class used to rebuild values from stored rows.
            file_handler: Backing Parquet file. None keeps the cache in memory.
        """
        self._value_type: type[ValueT] = value_type
        self._file_handler: ParquetFileHandler | None = file_handler
        self._entries: dict[str, ValueT] = {}
        self._dirty: bool = False
        self._lock: threading.Lock = threading.Lock()
        self._hits: int = 0
        self._misses: int = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    @property
    def hits(self) -> int:
        return self._hits

    @property
    def misses(self) -> int:
        return self._misses

    @property
    def is_dirty(self) -> bool:
        """Whether entries changed since the last load() or save()."""
        return self._dirty

    def get(self, key: str) -> ValueT | None:
        with self._lock:
            return self._entries.get(key)

    def put(self, key: str, value: ValueT) -> None:
        with self._lock:
            self._entries[key] = value
            self._dirty = True

    def get_or_fetch(
        self,
        key: str,
        fetch: Callable[[], ValueT | None],
    ) -> ValueT | None:
        """
        Return the cached value, calling `fetch` and storing its result on a miss.

        Args:
            key: Cache key.
            fetch: Zero-argument callable producing the value, or None.

        Returns:
            The cached or freshly fetched value, or None.
        """
        with self._lock:
            cached: ValueT | None = self._entries.get(key)
            if cached is not None:
                self._hits += 1
                return cached
            self._misses += 1

        value: ValueT | None = fetch()
        if value is not None:
            self.put(key, value)
        return value

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._dirty = True

    def load(self) -> int:
        """
        Replace in-memory entries with the contents of the backing file.

        Rows that fail validation are skipped with a warning. A missing or
        unreadable file leaves the cache empty.

        Returns:
            Number of entries loaded.
        """
        if self._file_handler is None:
            return 0

        dataframe: pd.DataFrame | None = self._file_handler.load()
        loaded: dict[str, ValueT] = {}

        if dataframe is not None and CACHE_KEY_COLUMN in dataframe.columns:
            records: list[dict[str, Any]] = dataframe.to_dict(orient='records')
            for record in records:
                key: str = str(record.pop(CACHE_KEY_COLUMN))
                cleaned: dict[str, Any] = {
                    field: (None if pd.isna(value) else value)
                    for field, value in record.items()
                }
                try:
                    loaded[key] = self._value_type.model_validate(cleaned)
                except ValidationError as validation_error:
                    logger.warning(
                        'Skipping invalid cache row %r in %r: %s',
                        key,
                        self._file_handler.path,
                        validation_error,
                    )

        with self._lock:
            self._entries = loaded
            self._dirty = False

        logger.info('Loaded %d cache entries from %r', len(loaded), self._file_handler.path)
        return len(loaded)

    def save(self) -> None:
        """
        Write entries to the backing file if anything changed.

        The cache stays dirty when the write fails, so a later save() retries.

        Raises:
            OSError: Propagated from the file handler on write failure.
        """
        if self._file_handler is None or not self._dirty:
            return

        with self._lock:
            rows: list[dict[str, Any]] = [
                {CACHE_KEY_COLUMN: key, **value.model_dump(mode='json')}
                for key, value in self._entries.items()
            ]
            self._dirty = False

        columns: list[str] = [CACHE_KEY_COLUMN, *self._value_type.model_fields]
        try:
            self._file_handler.save(pd.DataFrame(rows, columns=columns))
        except Exception:
            with self._lock:
                self._dirty = True
            raise
