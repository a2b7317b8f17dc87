# fleet_trip_analytics/models/__init__.py

from fleet_trip_analytics.models.clients import (
    ClientLocation,
    ClientMatch,
    ClientType,
    MatchSource,
    WorkType,
)
from fleet_trip_analytics.models.geocoding import (
    GeocodeResult,
    NominatimAddress,
    NominatimReverseResponse,
)
from fleet_trip_analytics.models.parking import (
    CyclePurpose,
    IgnitionCycle,
    ParkingSession,
)
from fleet_trip_analytics.models.productivity import (
    ClientTimeBreakdown,
    EfficiencyTrendPoint,
    JobSiteVisit,
    ProductivityPeriod,
    ProductivityReport,
    ReportInsights,
    ReportPeriod,
)
from fleet_trip_analytics.models.quality import (
    DataQualityIssue,
    DataQualityWarning,
    log_warnings,
)
from fleet_trip_analytics.models.samples import (
    DistanceUnit,
    IgnitionState,
    Location,
    RoutePoint,
    Sample,
    ensure_utc,
)
from fleet_trip_analytics.models.trips import (
    Stop,
    StopClassification,
    Trip,
    WindowClassification,
    make_trip_id,
)

__all__: list[str] = [
    'ClientLocation',
    'ClientMatch',
    'ClientTimeBreakdown',
    'ClientType',
    'CyclePurpose',
    'DataQualityIssue',
    'DataQualityWarning',
    'DistanceUnit',
    'EfficiencyTrendPoint',
    'GeocodeResult',
    'IgnitionCycle',
    'IgnitionState',
    'JobSiteVisit',
    'Location',
    'MatchSource',
    'NominatimAddress',
    'NominatimReverseResponse',
    'ParkingSession',
    'ProductivityPeriod',
    'ProductivityReport',
    'ReportInsights',
    'ReportPeriod',
    'RoutePoint',
    'Sample',
    'Stop',
    'StopClassification',
    'Trip',
    'WindowClassification',
    'WorkType',
    'ensure_utc',
    'log_warnings',
    'make_trip_id',
]
