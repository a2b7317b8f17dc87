# fleet_trip_analytics/models/clients.py
"""
Client gazetteer records and match results.

`ClientLocation` is read-only reference data keyed by address. A location
without a configured radius gets one inferred from its name and address by
the client matcher, so `radius_meters` is optional here.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

__all__: list[str] = [
    'ClientLocation',
    'ClientMatch',
    'ClientType',
    'MatchSource',
    'WorkType',
]


class ClientType(str, Enum):
    """Category of a gazetteer location."""

    RESIDENTIAL = 'residential'
    COMMERCIAL = 'commercial'
    INSTITUTIONAL = 'institutional'
    HOME_BASE = 'home_base'


class MatchSource(str, Enum):
    """How a client match was obtained."""

    GAZETTEER = 'gazetteer'
    RESIDENTIAL_PATTERN = 'residential_pattern'


class WorkType(str, Enum):
    """Work type inferred for a job site visit."""

    MAINTENANCE = 'maintenance'
    LANDSCAPING = 'landscaping'
    CONSULTATION = 'consultation'
    UNKNOWN = 'unknown'


class ClientLocation(BaseModel):
    """
    A known client or company location.

    Attributes:
        address: Street address, the gazetteer key.
        client_name: Display name used in reports.
        lat: Latitude in degrees.
        lng: Longitude in degrees.
        radius_meters: Match radius. None means infer from keywords.
        client_type: Location category.
        is_active: Inactive locations are never matched.
    """

    model_config = ConfigDict(extra='forbid', frozen=True, str_strip_whitespace=True)

    address: str = Field(min_length=1)
    client_name: str = Field(min_length=1)
    lat: float = Field(ge=-90.0, le=90.0)
    lng: float = Field(ge=-180.0, le=180.0)
    radius_meters: float | None = Field(default=None, gt=0.0)
    client_type: ClientType = ClientType.RESIDENTIAL
    is_active: bool = True

    @field_validator('client_type', mode='before')
    @classmethod
    def normalize_client_type(cls, value: object) -> object:
        """Accept case and spacing variants such as 'Home Base'."""
        if isinstance(value, str):
            return value.strip().lower().replace(' ', '_').replace('-', '_')
        return value

    @property
    def is_home_base(self) -> bool:
        return self.client_type is ClientType.HOME_BASE


class ClientMatch(BaseModel):
    """
    Result of resolving a coordinate to a client.

    Attributes:
        client_name: Gazetteer name or synthesized residential label.
        source: Gazetteer hit or residential address pattern.
        address: Gazetteer address or reverse-geocoded address.
        distance_meters: Distance to the gazetteer location (gazetteer only).
        client_type: Gazetteer location type (gazetteer only).
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    client_name: str
    source: MatchSource
    address: str | None = None
    distance_meters: float | None = None
    client_type: ClientType | None = None

    @property
    def is_home_base(self) -> bool:
        return self.client_type is ClientType.HOME_BASE

    @property
    def is_known_client(self) -> bool:
        """True only for gazetteer matches that are not the home base."""
        return self.source is MatchSource.GAZETTEER and not self.is_home_base
