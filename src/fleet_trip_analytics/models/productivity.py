# fleet_trip_analytics/models/productivity.py
"""
Productivity records.

A `ProductivityPeriod` summarizes one vehicle-day and owns its job site
visits. Reports compose daily periods into weekly or monthly views. All
durations are in minutes unless the field name says hours.
"""

from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from fleet_trip_analytics.models.clients import WorkType

__all__: list[str] = [
    'ClientTimeBreakdown',
    'EfficiencyTrendPoint',
    'JobSiteVisit',
    'ProductivityPeriod',
    'ProductivityReport',
    'ReportInsights',
    'ReportPeriod',
]

NO_CLIENT_LABEL: str = 'None'


class JobSiteVisit(BaseModel):
    """A stop (or a route-less trip) matched to a client."""

    model_config = ConfigDict(extra='forbid')

    client_name: str
    address: str = 'Unknown'
    arrival_time: datetime
    departure_time: datetime | None = None
    duration_minutes: float = Field(ge=0.0)
    latitude: float
    longitude: float
    is_complete_visit: bool = True
    engine_run_minutes: float = Field(default=0.0, ge=0.0)
    engine_off_minutes: float = Field(default=0.0, ge=0.0)
    work_type: WorkType = WorkType.UNKNOWN


class ClientTimeBreakdown(BaseModel):
    """Time spent with one client, summed over visits."""

    model_config = ConfigDict(extra='forbid')

    client_name: str
    total_minutes: float = 0.0
    visits: int = 0
    avg_visit_duration: float = 0.0
    addresses: list[str] = Field(default_factory=list)


class ProductivityPeriod(BaseModel):
    """
    Time budget of one vehicle for one local day.

    Attributes:
        vehicle_id: Vehicle identifier.
        vehicle_name: Display name taken from the day's trips.
        date: Local calendar day.
        total_on_job_time: Minutes stopped at client locations.
        total_off_job_time: Minutes stopped elsewhere, plus route-less trips
            that touched no client.
        total_idle_time: Minutes stopped with the engine running.
        total_driving_time: Trip minutes outside detected stops.
        job_sites: Client visits, in chronological order.
        productivity_ratio: on / (on + off), 0 when both are 0.
        efficiency: (on + driving) / (on + off), 0 when on + off is 0.
        total_working_minutes: on + off.
        unique_clients: Distinct client names visited.
        top_client: Client with the most minutes, 'None' if there were none.
        client_hours: Per-client breakdown, most minutes first.
        source_fingerprint: Digest of the trips the period was computed from.
        last_updated: When the period was computed (UTC).
    """

    model_config = ConfigDict(extra='forbid')

    vehicle_id: str
    vehicle_name: str = ''
    date: date
    total_on_job_time: float = 0.0
    total_off_job_time: float = 0.0
    total_idle_time: float = 0.0
    total_driving_time: float = 0.0
    job_sites: list[JobSiteVisit] = Field(default_factory=list)
    productivity_ratio: float = 0.0
    efficiency: float = 0.0
    total_working_minutes: float = 0.0
    unique_clients: int = 0
    top_client: str = NO_CLIENT_LABEL
    client_hours: list[ClientTimeBreakdown] = Field(default_factory=list)
    source_fingerprint: str = ''
    last_updated: datetime


class ReportPeriod(str, Enum):
    """Span covered by a productivity report."""

    DAILY = 'daily'
    WEEKLY = 'weekly'
    MONTHLY = 'monthly'


class EfficiencyTrendPoint(BaseModel):
    """Productivity of one day, as a percentage."""

    model_config = ConfigDict(extra='forbid', frozen=True)

    date: date
    productivity: float


class ReportInsights(BaseModel):
    """Derived highlights and recommendations for a report."""

    model_config = ConfigDict(extra='forbid')

    most_productive_day: date | None = None
    top_client: str = NO_CLIENT_LABEL
    avg_job_site_duration: float = 0.0
    total_unique_clients: int = 0
    recommended_improvements: list[str] = Field(default_factory=list)


class ProductivityReport(BaseModel):
    """Weekly or monthly composition of daily periods."""

    model_config = ConfigDict(extra='forbid')

    period: ReportPeriod
    start_date: date
    end_date: date
    vehicle_id: str | None = None
    total_on_job_hours: float = 0.0
    total_off_job_hours: float = 0.0
    total_idle_hours: float = 0.0
    total_driving_hours: float = 0.0
    productivity_percentage: float = 0.0
    daily_summaries: list[ProductivityPeriod] = Field(default_factory=list)
    client_analysis: list[ClientTimeBreakdown] = Field(default_factory=list)
    efficiency_trends: list[EfficiencyTrendPoint] = Field(default_factory=list)
    insights: ReportInsights = Field(default_factory=ReportInsights)
