# fleet_trip_analytics/productivity.py
"""
Productivity analysis: where did each vehicle-day's time go.

Every completed trip of a local day is split into three buckets:

- on-job: stops of at least `min_stop_minutes` at a client location
- off-job: stops elsewhere, including the home base
- driving: trip time outside detected stops

Idle time is the engine-on share of the counted stops and overlaps the
buckets above; it is reported, not budgeted.

Trips without route points cannot be split. Their whole run time is on-job
when the start or end location is a known client, and off-job otherwise.

Design Decisions:
-----------------
- The aggregator is pure: it takes trips and returns periods and reports.
  `ProductivityService` adds the store lookups, freshness checks and upserts.
- A period carries a fingerprint of the trips it was computed from, so a
  stored period is recomputed as soon as its source trips change, not only
  when it ages past `freshness_minutes`.
- Day boundaries are local midnights in `ProductivityConfig.timezone`.
"""

import calendar
import hashlib
import logging
from collections.abc import Callable, Iterable, Sequence
from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict, Field

from fleet_trip_analytics.client_matcher import ClientMatcher
from fleet_trip_analytics.config import ProductivityConfig, StopDetectionConfig
from fleet_trip_analytics.models import (
    ClientMatch,
    ClientTimeBreakdown,
    EfficiencyTrendPoint,
    JobSiteVisit,
    Location,
    ProductivityPeriod,
    ProductivityReport,
    ReportInsights,
    ReportPeriod,
    Stop,
    Trip,
    WorkType,
)
from fleet_trip_analytics.models.productivity import NO_CLIENT_LABEL
from fleet_trip_analytics.stops import StopDetector
from fleet_trip_analytics.stores import ProductivityStore, TripStore

__all__: list[str] = [
    'ProductivityAggregator',
    'ProductivityService',
    'TripProductivity',
    'build_report',
    'calculate_client_breakdown',
    'day_bounds',
    'generate_recommendations',
    'infer_work_type',
    'is_client_name',
    'trip_fingerprint',
]

logger: logging.Logger = logging.getLogger(__name__)

PENDING_CLIENT_NAME: str = 'Pending Jobber'
DAYS_PER_WEEK: int = 7

RECOMMEND_ROUTE_PLANNING: str = (
    'Consider optimizing route planning to reduce travel time between job sites'
)
RECOMMEND_MORE_VISITS: str = (
    'Opportunity to increase daily client visits for better revenue optimization'
)
RECOMMEND_REDUCE_IDLE: str = (
    'High idle time detected - consider turning off equipment between jobs'
)

WORK_TYPE_KEYWORDS: tuple[tuple[WorkType, tuple[str, ...]], ...] = (
    (WorkType.LANDSCAPING, ('lawn', 'yard', 'garden')),
    (WorkType.MAINTENANCE, ('maintenance', 'repair')),
    (WorkType.CONSULTATION, ('office', 'consultation')),
)


def _utc_now() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# Helpers
# =============================================================================


def is_client_name(client_name: str | None) -> bool:
    """Whether a stored client label names a real client."""
    return (
        client_name is not None
        and client_name != PENDING_CLIENT_NAME
        and 'unknown' not in client_name.lower()
    )


def infer_work_type(address: str | None) -> WorkType:
    """Guess the work type from keywords in the address; landscaping by default."""
    if not address:
        return WorkType.UNKNOWN
    address_lower: str = address.lower()
    for work_type, keywords in WORK_TYPE_KEYWORDS:
        if any(keyword in address_lower for keyword in keywords):
            return work_type
    return WorkType.LANDSCAPING


def calculate_client_breakdown(job_sites: Iterable[JobSiteVisit]) -> list[ClientTimeBreakdown]:
    """Group visits by client name, most minutes first."""
    by_client: dict[str, ClientTimeBreakdown] = {}
    for visit in job_sites:
        breakdown: ClientTimeBreakdown | None = by_client.get(visit.client_name)
        if breakdown is None:
            by_client[visit.client_name] = ClientTimeBreakdown(
                client_name=visit.client_name,
                total_minutes=visit.duration_minutes,
                visits=1,
                avg_visit_duration=visit.duration_minutes,
                addresses=[visit.address],
            )
            continue
        breakdown.total_minutes += visit.duration_minutes
        breakdown.visits += 1
        breakdown.avg_visit_duration = breakdown.total_minutes / breakdown.visits
        if visit.address not in breakdown.addresses:
            breakdown.addresses.append(visit.address)

    # sorted() is stable, so equal totals keep first-visit order.
    return sorted(by_client.values(), key=lambda item: item.total_minutes, reverse=True)


def trip_fingerprint(trips: Iterable[Trip]) -> str:
    """Digest of the trip fields a productivity period depends on."""
    digest = hashlib.sha256()
    for trip in sorted(trips, key=lambda item: item.ignition_on_time):
        off_time: str = trip.ignition_off_time.isoformat() if trip.ignition_off_time else '-'
        digest.update(
            f'{trip.trip_id}|{off_time}|{trip.route_point_count}|'
            f'{trip.total_run_time:.3f}\n'.encode()
        )
    return digest.hexdigest()[:16]


def day_bounds(day: date, timezone_name: str) -> tuple[datetime, datetime]:
    """UTC instants of local midnight at the start and end of a day."""
    tz = ZoneInfo(timezone_name)
    start_local: datetime = datetime.combine(day, time.min, tzinfo=tz)
    end_local: datetime = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start_local.astimezone(UTC), end_local.astimezone(UTC)


def _minutes_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 60.0


# =============================================================================
# Trip and Day Analysis
# =============================================================================


class TripProductivity(BaseModel):
    """Time buckets and client visits of a single trip, in minutes."""

    model_config = ConfigDict(extra='forbid')

    job_sites: list[JobSiteVisit] = Field(default_factory=list)
    on_job_time: float = 0.0
    off_job_time: float = 0.0
    idle_time: float = 0.0
    driving_time: float = 0.0


class ProductivityAggregator:
    """
    Turns trips into daily productivity periods.

    Args:
        matcher: Client matcher used for stop locations.
        stop_detector: Stop extractor; built from defaults when omitted.
        config: Day boundaries and report thresholds.
        clock: Source of `last_updated` timestamps.
    """

    def __init__(
        self,
        matcher: ClientMatcher,
        stop_detector: StopDetector | None = None,
        config: ProductivityConfig | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._matcher: ClientMatcher = matcher
        self._stop_detector: StopDetector = stop_detector or StopDetector()
        self._config: ProductivityConfig = config or ProductivityConfig()
        self._clock: Callable[[], datetime] = clock

    @property
    def config(self) -> ProductivityConfig:
        return self._config

    @property
    def stop_config(self) -> StopDetectionConfig:
        return self._stop_detector.config

    def analyze_trip(self, trip: Trip) -> TripProductivity:
        """Split one trip into on-job, off-job, idle and driving minutes."""
        if not trip.route_points:
            return self._analyze_routeless_trip(trip)

        result = TripProductivity()
        # Every stationary run counts against driving time; only runs that
        # last min_stop_minutes are classified as on-job or off-job.
        stops: list[Stop] = self._stop_detector.extract_stops(
            trip.route_points, min_stop_minutes=0.0
        )
        minimum: float = self.stop_config.min_stop_minutes

        for stop in stops:
            duration: float = stop.duration_minutes
            if duration < minimum:
                continue

            result.idle_time += stop.engine_on_minutes
            match: ClientMatch | None = self._matcher.match(
                stop.location.latitude, stop.location.longitude
            )
            if match is None or match.is_home_base:
                result.off_job_time += duration
                continue

            address: str = match.address or stop.location.address or 'Unknown'
            result.on_job_time += duration
            result.job_sites.append(
                JobSiteVisit(
                    client_name=match.client_name,
                    address=address,
                    arrival_time=stop.start_time,
                    departure_time=stop.end_time,
                    duration_minutes=duration,
                    latitude=stop.location.latitude,
                    longitude=stop.location.longitude,
                    is_complete_visit=True,
                    engine_run_minutes=stop.engine_on_minutes,
                    engine_off_minutes=stop.engine_off_minutes,
                    work_type=infer_work_type(address),
                )
            )

        total_stop_minutes: float = sum(stop.duration_minutes for stop in stops)
        result.driving_time = max(0.0, trip.total_run_time - total_stop_minutes)
        return result

    def _analyze_routeless_trip(self, trip: Trip) -> TripProductivity:
        duration: float = trip.total_run_time
        start_client: tuple[str, str] | None = self._known_client_at(trip.start_location)
        end_client: tuple[str, str] | None = (
            self._known_client_at(trip.end_location) if trip.end_location else None
        )

        if start_client is None and end_client is None:
            return TripProductivity(off_job_time=duration)

        # The visit sits at whichever end of the trip matched, start first.
        client_name, address = start_client or end_client  # type: ignore[misc]
        visit_location: Location = trip.start_location
        if start_client is None and trip.end_location is not None:
            visit_location = trip.end_location

        result = TripProductivity(on_job_time=duration)
        result.job_sites.append(
            JobSiteVisit(
                client_name=client_name,
                address=address,
                arrival_time=trip.ignition_on_time,
                departure_time=trip.ignition_off_time,
                duration_minutes=duration,
                latitude=visit_location.latitude,
                longitude=visit_location.longitude,
                is_complete_visit=True,
                engine_run_minutes=duration,
                engine_off_minutes=0.0,
                work_type=infer_work_type(address),
            )
        )
        return result

    def _known_client_at(self, location: Location) -> tuple[str, str] | None:
        """(client name, address) of a known client at a location, if any."""
        if is_client_name(location.client_name):
            return location.client_name or '', location.address or 'Unknown'
        match: ClientMatch | None = self._matcher.match_known_client(
            location.latitude, location.longitude
        )
        if match is None:
            return None
        return match.client_name, match.address or location.address or 'Unknown'

    def select_day_trips(self, trips: Iterable[Trip], day: date) -> list[Trip]:
        """Completed trips whose ignition-on falls within the local day."""
        start, end = day_bounds(day, self._config.timezone)
        return sorted(
            (
                trip
                for trip in trips
                if not trip.is_active and start <= trip.ignition_on_time < end
            ),
            key=lambda trip: trip.ignition_on_time,
        )

    def analyze_day(
        self,
        vehicle_id: str,
        day: date,
        trips: Iterable[Trip],
    ) -> ProductivityPeriod:
        """
        Build the productivity period of one vehicle-day.

        Args:
            vehicle_id: Vehicle identifier.
            day: Local calendar day.
            trips: Candidate trips; those outside the day or still active are
                ignored.
        """
        day_trips: list[Trip] = [
            trip for trip in self.select_day_trips(trips, day) if trip.vehicle_id == vehicle_id
        ]
        fingerprint: str = trip_fingerprint(day_trips)

        if not day_trips:
            return ProductivityPeriod(
                vehicle_id=vehicle_id,
                vehicle_name=f'Vehicle {vehicle_id[:8]}',
                date=day,
                source_fingerprint=fingerprint,
                last_updated=self._clock(),
            )

        job_sites: list[JobSiteVisit] = []
        on_job: float = 0.0
        off_job: float = 0.0
        idle: float = 0.0
        driving: float = 0.0
        for trip in day_trips:
            trip_result: TripProductivity = self.analyze_trip(trip)
            job_sites.extend(trip_result.job_sites)
            on_job += trip_result.on_job_time
            off_job += trip_result.off_job_time
            idle += trip_result.idle_time
            driving += trip_result.driving_time

        client_hours: list[ClientTimeBreakdown] = calculate_client_breakdown(job_sites)
        working: float = on_job + off_job

        period = ProductivityPeriod(
            vehicle_id=vehicle_id,
            vehicle_name=day_trips[0].vehicle_name,
            date=day,
            total_on_job_time=on_job,
            total_off_job_time=off_job,
            total_idle_time=idle,
            total_driving_time=driving,
            job_sites=job_sites,
            productivity_ratio=on_job / working if working > 0 else 0.0,
            efficiency=(on_job + driving) / working if working > 0 else 0.0,
            total_working_minutes=working,
            unique_clients=len(client_hours),
            top_client=client_hours[0].client_name if client_hours else NO_CLIENT_LABEL,
            client_hours=client_hours,
            source_fingerprint=fingerprint,
            last_updated=self._clock(),
        )
        logger.info(
            'Productivity %s %s: %d trips, on=%.1f off=%.1f driving=%.1f min, %d clients',
            vehicle_id,
            day.isoformat(),
            len(day_trips),
            on_job,
            off_job,
            driving,
            period.unique_clients,
        )
        return period


# =============================================================================
# Reports
# =============================================================================


def generate_recommendations(
    daily_summaries: Sequence[ProductivityPeriod],
    config: ProductivityConfig,
) -> list[str]:
    if not daily_summaries:
        return []

    day_count: int = len(daily_summaries)
    recommendations: list[str] = []

    avg_productivity: float = sum(day.productivity_ratio for day in daily_summaries) / day_count
    if avg_productivity < config.low_productivity_threshold:
        recommendations.append(RECOMMEND_ROUTE_PLANNING)

    avg_clients_per_day: float = sum(day.unique_clients for day in daily_summaries) / day_count
    if avg_clients_per_day < config.min_clients_per_day:
        recommendations.append(RECOMMEND_MORE_VISITS)

    long_idle_days: int = sum(
        1 for day in daily_summaries if day.total_idle_time > config.idle_minutes_threshold
    )
    if long_idle_days > day_count * config.long_idle_day_fraction:
        recommendations.append(RECOMMEND_REDUCE_IDLE)

    return recommendations


def build_report(
    period: ReportPeriod,
    start_date: date,
    end_date: date,
    daily_summaries: Sequence[ProductivityPeriod],
    config: ProductivityConfig | None = None,
    vehicle_id: str | None = None,
) -> ProductivityReport:
    """
    Compose daily periods into a report.

    Client breakdowns are merged by name (visits and minutes summed, addresses
    unioned). The most productive day is the first day with the highest ratio.
    """
    settings: ProductivityConfig = config or ProductivityConfig()

    on_job_hours: float = sum(day.total_on_job_time for day in daily_summaries) / 60.0
    off_job_hours: float = sum(day.total_off_job_time for day in daily_summaries) / 60.0
    total_hours: float = on_job_hours + off_job_hours

    merged: dict[str, ClientTimeBreakdown] = {}
    for day in daily_summaries:
        for client in day.client_hours:
            existing: ClientTimeBreakdown | None = merged.get(client.client_name)
            if existing is None:
                merged[client.client_name] = client.model_copy(deep=True)
                continue
            existing.total_minutes += client.total_minutes
            existing.visits += client.visits
            existing.addresses.extend(
                address for address in client.addresses if address not in existing.addresses
            )

    client_analysis: list[ClientTimeBreakdown] = []
    for client in merged.values():
        client.avg_visit_duration = (
            client.total_minutes / client.visits if client.visits else 0.0
        )
        client_analysis.append(client)
    client_analysis.sort(key=lambda item: item.total_minutes, reverse=True)

    most_productive: ProductivityPeriod | None = None
    for day in daily_summaries:
        if most_productive is None or day.productivity_ratio > most_productive.productivity_ratio:
            most_productive = day

    visit_minutes: float = sum(
        visit.duration_minutes for day in daily_summaries for visit in day.job_sites
    )
    visit_count: int = sum(len(day.job_sites) for day in daily_summaries)

    insights = ReportInsights(
        most_productive_day=most_productive.date if most_productive else None,
        top_client=client_analysis[0].client_name if client_analysis else NO_CLIENT_LABEL,
        avg_job_site_duration=visit_minutes / max(1, visit_count),
        total_unique_clients=len(client_analysis),
        recommended_improvements=generate_recommendations(daily_summaries, settings),
    )

    return ProductivityReport(
        period=period,
        start_date=start_date,
        end_date=end_date,
        vehicle_id=vehicle_id,
        total_on_job_hours=on_job_hours,
        total_off_job_hours=off_job_hours,
        total_idle_hours=sum(day.total_idle_time for day in daily_summaries) / 60.0,
        total_driving_hours=sum(day.total_driving_time for day in daily_summaries) / 60.0,
        productivity_percentage=(on_job_hours / total_hours) * 100.0 if total_hours > 0 else 0.0,
        daily_summaries=list(daily_summaries),
        client_analysis=client_analysis,
        efficiency_trends=[
            EfficiencyTrendPoint(date=day.date, productivity=day.productivity_ratio * 100.0)
            for day in daily_summaries
        ],
        insights=insights,
    )


# =============================================================================
# Service
# =============================================================================


class ProductivityService:
    """
    Daily, weekly and monthly reports with stored-period reuse.

    A stored period is reused unless it is missing, older than
    `freshness_minutes`, or was computed from a different set of trips.
    Recomputed periods are upserted on (vehicle_id, date).
    """

    def __init__(
        self,
        aggregator: ProductivityAggregator,
        trip_store: TripStore,
        productivity_store: ProductivityStore,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._aggregator: ProductivityAggregator = aggregator
        self._trip_store: TripStore = trip_store
        self._productivity_store: ProductivityStore = productivity_store
        self._clock: Callable[[], datetime] = clock

    @property
    def config(self) -> ProductivityConfig:
        return self._aggregator.config

    def _day_trips(self, vehicle_id: str, day: date) -> list[Trip]:
        start, end = day_bounds(day, self.config.timezone)
        return self._aggregator.select_day_trips(
            self._trip_store.find_trips_overlapping(vehicle_id, start, end), day
        )

    def is_stale(self, period: ProductivityPeriod, fingerprint: str) -> bool:
        """Whether a stored period must be recomputed."""
        age: timedelta = self._clock() - period.last_updated
        if age > timedelta(minutes=self.config.freshness_minutes):
            return True
        return period.source_fingerprint != fingerprint

    def get_daily_report(
        self,
        vehicle_id: str,
        day: date,
        force: bool = False,
    ) -> ProductivityPeriod:
        """Stored period if still valid, else a freshly computed and stored one."""
        trips: list[Trip] = self._day_trips(vehicle_id, day)
        stored: ProductivityPeriod | None = self._productivity_store.get(vehicle_id, day)

        if not force and stored is not None and not self.is_stale(stored, trip_fingerprint(trips)):
            logger.debug('Reusing stored productivity for %s on %s', vehicle_id, day)
            return stored

        period: ProductivityPeriod = self._aggregator.analyze_day(vehicle_id, day, trips)
        self._productivity_store.upsert(period)
        return period

    def get_report(
        self,
        vehicle_id: str,
        period: ReportPeriod,
        start_date: date,
        end_date: date,
    ) -> ProductivityReport:
        """Report over an inclusive date range."""
        if start_date > end_date:
            raise ValueError(f'start_date {start_date} is after end_date {end_date}')

        daily_summaries: list[ProductivityPeriod] = []
        current: date = start_date
        while current <= end_date:
            daily_summaries.append(self.get_daily_report(vehicle_id, current))
            current += timedelta(days=1)

        return build_report(
            period,
            start_date,
            end_date,
            daily_summaries,
            config=self.config,
            vehicle_id=vehicle_id,
        )

    def get_weekly_report(self, vehicle_id: str, week_start: date) -> ProductivityReport:
        """Seven days starting at `week_start`."""
        return self.get_report(
            vehicle_id,
            ReportPeriod.WEEKLY,
            week_start,
            week_start + timedelta(days=DAYS_PER_WEEK - 1),
        )

    def get_monthly_report(self, vehicle_id: str, year: int, month: int) -> ProductivityReport:
        """Every day of a calendar month."""
        days_in_month: int = calendar.monthrange(year, month)[1]
        return self.get_report(
            vehicle_id,
            ReportPeriod.MONTHLY,
            date(year, month, 1),
            date(year, month, days_in_month),
        )
