# fleet_trip_analytics/models/geocoding.py
"""
Reverse geocoding response models.

Nominatim responses are parsed leniently (`extra='ignore'`): the service adds
fields over time and only a handful are used here. The result handed to the
rest of the package is the flat `GeocodeResult`, which is also the row shape
of the persisted geocode cache.
"""

from pydantic import BaseModel, ConfigDict, Field

__all__: list[str] = ['GeocodeResult', 'NominatimAddress', 'NominatimReverseResponse']

DISPLAY_NAME_FALLBACK_PARTS: int = 3


class NominatimModelBase(BaseModel):
    """
    Base class for Nominatim response models.

    Configuration:
        - extra='ignore': Silently ignore unknown fields from the service.
        - str_strip_whitespace=True: Trim whitespace from strings.
    """

    model_config = ConfigDict(extra='ignore', str_strip_whitespace=True)


class NominatimAddress(NominatimModelBase):
    """Structured address block of a reverse lookup."""

    house_number: str | None = None
    road: str | None = None
    city: str | None = None
    town: str | None = None
    village: str | None = None
    state: str | None = None
    postcode: str | None = None

    @property
    def locality(self) -> str | None:
        """City, falling back to town and village for rural results."""
        return self.city or self.town or self.village


class NominatimReverseResponse(NominatimModelBase):
    """
    Body of GET /reverse?format=json.

    A lookup over open water or an unmapped area returns HTTP 200 with only
    an `error` field.
    """

    display_name: str | None = None
    address: NominatimAddress | None = None
    error: str | None = None

    def format_address(self) -> str | None:
        """
        Build a compact street address.

        The house number and road are joined with a space ("123 Oak Street")
        so residential patterns can recognize them, followed by locality and
        state. Falls back to the first parts of `display_name`.

        Returns:
            The formatted address, or None if the response has neither an
            address block nor a display name.
        """
        parts: list[str] = []

        if self.address is not None:
            street: str = ' '.join(
                part
                for part in (self.address.house_number, self.address.road)
                if part
            )
            for part in (street, self.address.locality, self.address.state):
                if part:
                    parts.append(part)

        if parts:
            return ', '.join(parts)

        if self.display_name:
            display_parts: list[str] = [
                part.strip() for part in self.display_name.split(',')
            ]
            return ', '.join(display_parts[:DISPLAY_NAME_FALLBACK_PARTS])

        return None


class GeocodeResult(BaseModel):
    """A resolved address for a coordinate."""

    model_config = ConfigDict(extra='forbid', frozen=True)

    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)
    address: str
    display_name: str | None = None
