# fleet_trip_analytics/pipeline.py
"""
Fleet analytics pipeline: telemetry in, trips and productivity out.

Per vehicle and time window the pipeline runs:

    fetch raw samples -> normalize -> segment (resuming the stored active trip)
    -> upsert trips and route points

Consolidation, parking analysis and productivity read back from the trip
store, so they always see every window processed so far.

Historical Backfill:
--------------------
A backfill splits [start, end) into `chunk_days` windows. Windows of one
vehicle run sequentially, in order, with `inter_chunk_delay_seconds` between
them, because each window resumes the trip left open by the previous one.
Vehicles are independent and run in parallel on a thread pool. A failed
window is logged and skipped; the run only aborts when every window failed.

Usage:
------
    from fleet_trip_analytics.pipeline import FleetAnalyticsPipeline

    pipeline = FleetAnalyticsPipeline.from_config('config/analytics_config.yaml', source)
    summary = pipeline.run_backfill(['vehicle-1', 'vehicle-2'], start, end)
    report = pipeline.productivity.get_weekly_report('vehicle-1', date(2024, 1, 15))
"""

import logging
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import UTC, datetime, timedelta
from pathlib import Path
from types import TracebackType
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field

from fleet_trip_analytics.client_matcher import ClientGazetteer, ClientMatcher
from fleet_trip_analytics.common import PartitionedProductivityStore, setup_logger
from fleet_trip_analytics.config import AnalyticsConfig, load_config
from fleet_trip_analytics.consolidator import ConsolidationResult, TripConsolidator
from fleet_trip_analytics.geocoder import CachedGeocoder, build_geocoder
from fleet_trip_analytics.models import (
    DataQualityWarning,
    ParkingSession,
    Sample,
    Trip,
    ensure_utc,
)
from fleet_trip_analytics.normalizer import SignalNormalizer
from fleet_trip_analytics.parking import ParkingAnalyzer
from fleet_trip_analytics.productivity import ProductivityAggregator, ProductivityService
from fleet_trip_analytics.segmenter import SegmentationResult, TripSegmenter
from fleet_trip_analytics.stops import StopDetector
from fleet_trip_analytics.stores import (
    InMemoryProductivityStore,
    InMemoryRoutePointStore,
    InMemoryTripStore,
    ProductivityStore,
    RoutePointStore,
    TelemetrySource,
    TripStore,
)

__all__: list[str] = [
    'BackfillSummary',
    'ChunkFailure',
    'FleetAnalyticsPipeline',
    'PipelineError',
    'VehicleRunResult',
]

logger: logging.Logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """
    Raised when the pipeline encounters a fatal error.

    Attributes:
        message: Human-readable error description.
        vehicle_id: Vehicle being processed, if applicable.
        chunk_index: Which backfill window failed (1-indexed), if applicable.
    """

    def __init__(
        self,
        message: str,
        vehicle_id: str | None = None,
        chunk_index: int | None = None,
    ) -> None:
        super().__init__(message)
        self.vehicle_id: str | None = vehicle_id
        self.chunk_index: int | None = chunk_index


# =============================================================================
# Run Results
# =============================================================================


class VehicleRunResult(BaseModel):
    """Outcome of processing one vehicle over one time window."""

    model_config = ConfigDict(extra='forbid')

    vehicle_id: str
    start: datetime
    end: datetime
    samples_fetched: int = 0
    samples_normalized: int = 0
    completed_trips: int = 0
    active_trip_id: str | None = None
    route_points_written: int = 0
    warnings: list[DataQualityWarning] = Field(default_factory=list)


class ChunkFailure(BaseModel):
    """A backfill window that raised and was skipped."""

    model_config = ConfigDict(extra='forbid')

    vehicle_id: str
    chunk_index: int
    start: datetime
    end: datetime
    error: str


class BackfillSummary(BaseModel):
    """Totals of a backfill run across all vehicles."""

    model_config = ConfigDict(extra='forbid')

    vehicles: int = 0
    chunks_total: int = 0
    chunks_succeeded: int = 0
    completed_trips: int = 0
    results: list[VehicleRunResult] = Field(default_factory=list)
    failures: list[ChunkFailure] = Field(default_factory=list)


# =============================================================================
# Pipeline
# =============================================================================


class FleetAnalyticsPipeline:
    """
    Orchestrates segmentation, consolidation, parking and productivity.

    The pipeline owns no storage technology: it is handed a telemetry source
    and stores that satisfy the Protocols in `fleet_trip_analytics.stores`.

    Attributes:
        config: The AnalyticsConfig in use (read-only).
        trip_store: Trip persistence (read-only).
        route_point_store: Route point persistence (read-only).
        productivity: Productivity report service (read-only).
    """

    def __init__(
        self,
        config: AnalyticsConfig,
        telemetry_source: TelemetrySource,
        trip_store: TripStore | None = None,
        route_point_store: RoutePointStore | None = None,
        productivity_store: ProductivityStore | None = None,
        matcher: ClientMatcher | None = None,
        vehicle_names: Mapping[str, str] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Args:
            config: Analytics configuration.
            telemetry_source: Source of raw vendor samples.
            trip_store: Trip persistence; in-memory when omitted.
            route_point_store: Route point persistence; in-memory when omitted.
            productivity_store: Productivity persistence; in-memory when omitted.
            matcher: Client matcher; an empty gazetteer without geocoding when
                omitted.
            vehicle_names: Display names by vehicle id.
            sleep: Sleep function used between backfill windows.
        """
        self._config: AnalyticsConfig = config
        self._telemetry_source: TelemetrySource = telemetry_source
        self._trip_store: TripStore = trip_store or InMemoryTripStore()
        self._route_point_store: RoutePointStore = (
            route_point_store or InMemoryRoutePointStore()
        )
        self._matcher: ClientMatcher = matcher or ClientMatcher(
            ClientGazetteer([], config.client_matching),
            config=config.client_matching,
        )
        self._vehicle_names: dict[str, str] = dict(vehicle_names or {})
        self._sleep: Callable[[float], None] = sleep
        self._geocoder: CachedGeocoder | None = None

        self._normalizer: SignalNormalizer = SignalNormalizer()
        self._consolidator: TripConsolidator = TripConsolidator(config.consolidation)
        self._parking_analyzer: ParkingAnalyzer = ParkingAnalyzer(
            config.parking, timezone=config.productivity.timezone
        )
        self._productivity: ProductivityService = ProductivityService(
            ProductivityAggregator(
                self._matcher,
                StopDetector(config.stop_detection),
                config.productivity,
            ),
            self._trip_store,
            productivity_store or InMemoryProductivityStore(),
        )

    @classmethod
    def from_config(
        cls,
        config_path: Path | str,
        telemetry_source: TelemetrySource,
        vehicle_names: Mapping[str, str] | None = None,
    ) -> 'FleetAnalyticsPipeline':
        """
        Build a pipeline from a YAML configuration file.

        Sets up logging, loads the gazetteer and geocode cache, and picks the
        Parquet productivity store when `storage.productivity_path` is set.

        Raises:
            FileNotFoundError: If the config or gazetteer file does not exist.
            ValidationError: If the config file fails Pydantic validation.
        """
        config: AnalyticsConfig = load_config(config_path)
        setup_logger(config=config.logging)

        logger.info('Initializing FleetAnalyticsPipeline from config: %s', config_path)

        gazetteer: ClientGazetteer = (
            ClientGazetteer.from_csv(config.client_matching.gazetteer_path, config.client_matching)
            if config.client_matching.gazetteer_path is not None
            else ClientGazetteer([], config.client_matching)
        )
        geocoder: CachedGeocoder | None = build_geocoder(config.geocoder)
        matcher = ClientMatcher(gazetteer, geocoder, config.client_matching)

        productivity_store: ProductivityStore = (
            PartitionedProductivityStore(config.storage)
            if config.storage.productivity_path is not None
            else InMemoryProductivityStore()
        )

        pipeline = cls(
            config,
            telemetry_source,
            productivity_store=productivity_store,
            matcher=matcher,
            vehicle_names=vehicle_names,
        )
        pipeline._geocoder = geocoder
        return pipeline

    # -------------------------------------------------------------------------
    # Properties and lifecycle
    # -------------------------------------------------------------------------

    @property
    def config(self) -> AnalyticsConfig:
        return self._config

    @property
    def trip_store(self) -> TripStore:
        return self._trip_store

    @property
    def route_point_store(self) -> RoutePointStore:
        return self._route_point_store

    @property
    def productivity(self) -> ProductivityService:
        return self._productivity

    def close(self) -> None:
        """Persist the geocode cache and close the geocoder, if any."""
        if self._geocoder is not None:
            self._geocoder.save()
            self._geocoder.close()
            self._geocoder = None

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
    # Per-vehicle processing
    # -------------------------------------------------------------------------

    def process_vehicle(
        self,
        vehicle_id: str,
        start: datetime,
        end: datetime,
    ) -> VehicleRunResult:
        """
        Segment one vehicle's telemetry in [start, end) and persist the trips.

        The vehicle's stored active trip, if any, is resumed, so consecutive
        windows produce the same trips as one long window.
        """
        start_utc: datetime = ensure_utc(start)
        end_utc: datetime = ensure_utc(end)

        raw_samples: list[Mapping[str, Any]] = list(
            self._telemetry_source.fetch_samples(vehicle_id, start_utc, end_utc)
        )
        samples: list[Sample] = self._normalizer.normalize_many(vehicle_id, raw_samples)

        active_trip: Trip | None = self._trip_store.find_active_trip(vehicle_id)
        segmenter = TripSegmenter(
            vehicle_id,
            vehicle_name=self._vehicle_names.get(vehicle_id, vehicle_id),
            config=self._config.segmentation,
            stop_config=self._config.stop_detection,
            active_trip=active_trip,
        )
        segmentation: SegmentationResult = segmenter.segment(samples)

        route_points_written: int = 0
        for trip in segmentation.all_trips:
            self._trip_store.upsert(trip)
            self._route_point_store.append(trip.route_points)
            route_points_written += trip.route_point_count

        return VehicleRunResult(
            vehicle_id=vehicle_id,
            start=start_utc,
            end=end_utc,
            samples_fetched=len(raw_samples),
            samples_normalized=len(samples),
            completed_trips=len(segmentation.completed_trips),
            active_trip_id=(
                segmentation.active_trip.trip_id if segmentation.active_trip else None
            ),
            route_points_written=route_points_written,
            warnings=segmentation.warnings,
        )

    def consolidate_vehicle(
        self,
        vehicle_id: str,
        start: datetime,
        end: datetime,
    ) -> ConsolidationResult:
        """Consolidated view of the stored trips overlapping [start, end)."""
        trips: list[Trip] = self._trip_store.find_trips_overlapping(
            vehicle_id, ensure_utc(start), ensure_utc(end)
        )
        return self._consolidator.consolidate(trips)

    def analyze_parking(
        self,
        vehicle_id: str,
        start: datetime,
        end: datetime,
    ) -> list[ParkingSession]:
        """Parking sessions between the consolidated trips of [start, end)."""
        consolidation: ConsolidationResult = self.consolidate_vehicle(vehicle_id, start, end)
        return self._parking_analyzer.analyze(
            consolidation.trips, consolidation.parking_noise
        )

    # -------------------------------------------------------------------------
    # Backfill
    # -------------------------------------------------------------------------

    def _generate_chunks(
        self,
        start: datetime,
        end: datetime,
    ) -> list[tuple[datetime, datetime]]:
        """
        Split [start, end) into windows of `chunk_days`.

        The final window may be shorter. Empty when start >= end.
        """
        if start >= end:
            logger.warning(
                'Start datetime %s is not before end datetime %s.',
                start.isoformat(),
                end.isoformat(),
            )
            return []

        increment: timedelta = timedelta(days=self._config.backfill.chunk_days)
        chunks: list[tuple[datetime, datetime]] = []

        current_start: datetime = start
        while current_start < end:
            current_end: datetime = min(current_start + increment, end)
            chunks.append((current_start, current_end))
            current_start = current_end

        return chunks

    def backfill_vehicle(
        self,
        vehicle_id: str,
        chunks: Sequence[tuple[datetime, datetime]],
    ) -> tuple[list[VehicleRunResult], list[ChunkFailure]]:
        """Process one vehicle's windows in order, pausing between them."""
        results: list[VehicleRunResult] = []
        failures: list[ChunkFailure] = []

        for chunk_index, (chunk_start, chunk_end) in enumerate(chunks, start=1):
            if chunk_index > 1 and self._config.backfill.inter_chunk_delay_seconds > 0:
                self._sleep(self._config.backfill.inter_chunk_delay_seconds)

            logger.info(
                'Backfill %s chunk %d/%d: %s to %s',
                vehicle_id,
                chunk_index,
                len(chunks),
                chunk_start.isoformat(),
                chunk_end.isoformat(),
            )
            try:
                results.append(self.process_vehicle(vehicle_id, chunk_start, chunk_end))
            except Exception as chunk_error:
                logger.exception(
                    'Backfill %s chunk %d/%d failed (%s to %s), continuing',
                    vehicle_id,
                    chunk_index,
                    len(chunks),
                    chunk_start.isoformat(),
                    chunk_end.isoformat(),
                )
                failures.append(
                    ChunkFailure(
                        vehicle_id=vehicle_id,
                        chunk_index=chunk_index,
                        start=chunk_start,
                        end=chunk_end,
                        error=str(chunk_error),
                    )
                )

        return results, failures

    def run_backfill(
        self,
        vehicle_ids: Iterable[str],
        start: datetime,
        end: datetime,
    ) -> BackfillSummary:
        """
        Replay history for several vehicles.

        Returns:
            BackfillSummary with per-window results and failures.

        Raises:
            PipelineError: If there was work to do and every window failed.
        """
        run_start_time: datetime = datetime.now(UTC)
        vehicles: list[str] = list(dict.fromkeys(vehicle_ids))
        chunks: list[tuple[datetime, datetime]] = self._generate_chunks(
            ensure_utc(start), ensure_utc(end)
        )
        summary = BackfillSummary(vehicles=len(vehicles), chunks_total=len(chunks) * len(vehicles))

        if not vehicles or not chunks:
            logger.info('Nothing to backfill (%d vehicles, %d chunks)', len(vehicles), len(chunks))
            return summary

        logger.info(
            'Starting backfill: %d vehicles x %d chunks (%.2f days each), %d workers',
            len(vehicles),
            len(chunks),
            self._config.backfill.chunk_days,
            self._config.backfill.max_workers,
        )

        with ThreadPoolExecutor(max_workers=self._config.backfill.max_workers) as executor:
            futures: dict[str, Future[tuple[list[VehicleRunResult], list[ChunkFailure]]]] = {
                vehicle_id: executor.submit(self.backfill_vehicle, vehicle_id, chunks)
                for vehicle_id in vehicles
            }
            for vehicle_id in vehicles:
                results, failures = futures[vehicle_id].result()
                summary.results.extend(results)
                summary.failures.extend(failures)

        summary.chunks_succeeded = len(summary.results)
        summary.completed_trips = sum(result.completed_trips for result in summary.results)

        if self._geocoder is not None:
            self._geocoder.save()

        logger.info(
            'Backfill complete: %d/%d chunks succeeded, %d trips completed. Duration: %s',
            summary.chunks_succeeded,
            summary.chunks_total,
            summary.completed_trips,
            datetime.now(UTC) - run_start_time,
        )

        if summary.chunks_succeeded == 0:
            first_failure: ChunkFailure = summary.failures[0]
            raise PipelineError(
                f'All {summary.chunks_total} backfill chunks failed; '
                f'first error: {first_failure.error}',
                vehicle_id=first_failure.vehicle_id,
                chunk_index=first_failure.chunk_index,
            )

        return summary
