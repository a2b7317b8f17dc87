# fleet_trip_analytics/client_matcher.py
"""
Client matching: coordinate -> client name.

Lookup order, first hit wins:

1. Gazetteer. Every active location whose center is within its radius of the
   point (boundary inclusive) is a candidate. A home base candidate wins
   outright; otherwise the closest candidate wins, ties going to the
   location listed first.
2. Residential fallback. The point is reverse-geocoded and the address is
   tested against residential street patterns. A hit yields a synthesized
   label, "Unknown Client - <street>", or "Unknown Residential Client" when
   no street name can be pulled out.
3. No match (supplier, fuel stop, personal errand).

Radii:
------
A location without a configured radius gets one from the keyword table in
`ClientMatchingConfig.radius_keywords`, matched against its name and address
(first keyword wins), falling back to `default_radius_meters`. Home bases use
`home_base_radius_meters`. Radii are resolved once, when the gazetteer is
built.

Failure Semantics:
------------------
Geocoding errors are caught here, logged, and treated as "no match". They
never reach the productivity aggregator.
"""

import logging
import re
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any, Final

import pandas as pd
from pydantic import ValidationError

from fleet_trip_analytics.common.geo import haversine_meters
from fleet_trip_analytics.config import ClientMatchingConfig
from fleet_trip_analytics.geocoder import GeocodingError
from fleet_trip_analytics.models import (
    ClientLocation,
    ClientMatch,
    ClientType,
    GeocodeResult,
    MatchSource,
)
from fleet_trip_analytics.stores import Geocoder

__all__: list[str] = [
    'ClientGazetteer',
    'ClientMatcher',
    'is_residential_address',
    'residential_client_label',
]

logger: logging.Logger = logging.getLogger(__name__)

STREET_TYPES: Final[str] = (
    r'(?:st|street|ave|avenue|dr|drive|ln|lane|ct|court|blvd|boulevard|rd|road)\b'
)

RESIDENTIAL_PATTERNS: Final[tuple[re.Pattern[str], ...]] = (
    re.compile(rf'^\d+\s+\w+\s+{STREET_TYPES}', re.IGNORECASE),
    re.compile(rf'^\d+\s+\w+\s+\w+\s+{STREET_TYPES}', re.IGNORECASE),
    re.compile(r'^\d+\s+[nsew]\s+\w+', re.IGNORECASE),
    re.compile(r'^\d+\s+\w+\s+(?:circle|cir|place|pl|way|pkwy)\b', re.IGNORECASE),
    re.compile(r'residential', re.IGNORECASE),
    re.compile(r'house', re.IGNORECASE),
    re.compile(r'home', re.IGNORECASE),
)

STREET_NAME_PATTERN: Final[re.Pattern[str]] = re.compile(r'^\d+\s+(\w+\s+\w+)')

UNKNOWN_CLIENT_PREFIX: Final[str] = 'Unknown Client - '
UNKNOWN_RESIDENTIAL_CLIENT: Final[str] = 'Unknown Residential Client'

# CSV columns accepted by ClientGazetteer.from_csv(), mapped to model fields.
GAZETTEER_COLUMN_ALIASES: Final[dict[str, str]] = {
    'clientName': 'client_name',
    'client': 'client_name',
    'name': 'client_name',
    'latitude': 'lat',
    'longitude': 'lng',
    'lon': 'lng',
    'radius': 'radius_meters',
    'radiusMeters': 'radius_meters',
    'clientType': 'client_type',
    'type': 'client_type',
    'isActive': 'is_active',
}


# =============================================================================
# Residential Address Heuristics
# =============================================================================


def is_residential_address(address: str) -> bool:
    """Whether an address looks like a house on a residential street."""
    return any(pattern.search(address) for pattern in RESIDENTIAL_PATTERNS)


def residential_client_label(address: str) -> str | None:
    """
    Synthesize a client label for an unrecognized residential address.

    Returns:
        "Unknown Client - <street>" when the street can be extracted,
        "Unknown Residential Client" for other residential addresses, and
        None when the address does not look residential.

    Example:
        >>> residential_client_label('123 Oak Street, Springdale, Arkansas')
        'Unknown Client - Oak Street'
    """
    if not is_residential_address(address):
        return None
    street_match: re.Match[str] | None = STREET_NAME_PATTERN.match(address)
    if street_match:
        return f'{UNKNOWN_CLIENT_PREFIX}{street_match.group(1)}'
    return UNKNOWN_RESIDENTIAL_CLIENT


# =============================================================================
# Gazetteer
# =============================================================================


class ClientGazetteer:
    """
    Read-only set of client locations with resolved match radii.

    Example:
        >>> gazetteer = ClientGazetteer.from_csv('data/clients.csv')
        >>> match = gazetteer.lookup(36.1873, -94.13121)
    """

    def __init__(
        self,
        locations: Iterable[ClientLocation],
        config: ClientMatchingConfig | None = None,
    ) -> None:
        self._config: ClientMatchingConfig = config or ClientMatchingConfig()
        self._locations: list[ClientLocation] = []
        self._by_address: dict[str, ClientLocation] = {}

        for location in locations:
            resolved: ClientLocation = location.model_copy(
                update={'radius_meters': self.resolve_radius(location)}
            )
            if resolved.address in self._by_address:
                logger.warning(
                    'Duplicate gazetteer address %r; keeping the last entry',
                    resolved.address,
                )
                self._locations = [
                    existing
                    for existing in self._locations
                    if existing.address != resolved.address
                ]
            self._by_address[resolved.address] = resolved
            self._locations.append(resolved)

        logger.info(
            'Client gazetteer ready: %d locations (%d active)',
            len(self._locations),
            sum(1 for location in self._locations if location.is_active),
        )

    # -------------------------------------------------------------------------
    # Constructors
    # -------------------------------------------------------------------------

    @classmethod
    def from_records(
        cls,
        records: Iterable[Mapping[str, Any]],
        config: ClientMatchingConfig | None = None,
    ) -> 'ClientGazetteer':
        """
        Build from mappings. Column aliases such as `clientName` or `latitude`
        are accepted; invalid records are skipped with a warning.
        """
        locations: list[ClientLocation] = []
        for index, record in enumerate(records):
            normalized: dict[str, Any] = {}
            for key, value in record.items():
                if value is None or (not isinstance(value, str) and pd.isna(value)):
                    continue
                normalized[GAZETTEER_COLUMN_ALIASES.get(key, key)] = value
            try:
                locations.append(ClientLocation.model_validate(normalized))
            except ValidationError as validation_error:
                logger.warning(
                    'Skipping invalid gazetteer record %d: %s',
                    index,
                    validation_error,
                )
        return cls(locations, config)

    @classmethod
    def from_dataframe(
        cls,
        dataframe: pd.DataFrame,
        config: ClientMatchingConfig | None = None,
    ) -> 'ClientGazetteer':
        return cls.from_records(dataframe.to_dict(orient='records'), config)

    @classmethod
    def from_csv(
        cls,
        csv_path: Path | str,
        config: ClientMatchingConfig | None = None,
    ) -> 'ClientGazetteer':
        """
        Load a gazetteer CSV.

        Raises:
            FileNotFoundError: If the file does not exist.
        """
        path: Path = Path(csv_path)
        if not path.exists():
            raise FileNotFoundError(f'Gazetteer file not found: {path}')
        logger.info('Loading client gazetteer from %s', path)
        return cls.from_dataframe(pd.read_csv(path), config)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._locations)

    @property
    def locations(self) -> list[ClientLocation]:
        return list(self._locations)

    def get(self, address: str) -> ClientLocation | None:
        return self._by_address.get(address)

    def resolve_radius(self, location: ClientLocation) -> float:
        """Configured radius, else keyword radius, else the default."""
        if location.radius_meters is not None:
            return location.radius_meters
        if location.client_type is ClientType.HOME_BASE:
            return self._config.home_base_radius_meters

        haystack: str = f'{location.client_name} {location.address}'.lower()
        for keyword, radius in self._config.radius_keywords.items():
            if keyword in haystack:
                return radius
        return self._config.default_radius_meters

    def find_candidates(
        self,
        latitude: float,
        longitude: float,
    ) -> list[tuple[ClientLocation, float]]:
        """All active locations containing the point, with distances, in gazetteer order."""
        candidates: list[tuple[ClientLocation, float]] = []
        for location in self._locations:
            if not location.is_active:
                continue
            distance: float = haversine_meters(latitude, longitude, location.lat, location.lng)
            # radius_meters is always resolved in __init__.
            if distance <= (location.radius_meters or 0.0):
                candidates.append((location, distance))
        return candidates

    def lookup(self, latitude: float, longitude: float) -> ClientMatch | None:
        """Gazetteer match for a point: home base first, then the closest location."""
        candidates: list[tuple[ClientLocation, float]] = self.find_candidates(
            latitude, longitude
        )
        if not candidates:
            return None

        home_bases: list[tuple[ClientLocation, float]] = [
            candidate for candidate in candidates if candidate[0].is_home_base
        ]
        pool: list[tuple[ClientLocation, float]] = home_bases or candidates
        # min() keeps the first of equal distances, i.e. gazetteer order.
        location, distance = min(pool, key=lambda candidate: candidate[1])

        return ClientMatch(
            client_name=location.client_name,
            source=MatchSource.GAZETTEER,
            address=location.address,
            distance_meters=distance,
            client_type=location.client_type,
        )


# =============================================================================
# Matcher
# =============================================================================


class ClientMatcher:
    """
    Resolves coordinates to clients via the gazetteer, then the geocoder.

    Args:
        gazetteer: Known client locations.
        geocoder: Reverse geocoder for the residential fallback. None disables
            the fallback.
        config: Matching settings; `enable_geocode_fallback=False` also
            disables the fallback.
    """

    def __init__(
        self,
        gazetteer: ClientGazetteer,
        geocoder: Geocoder | None = None,
        config: ClientMatchingConfig | None = None,
    ) -> None:
        self._gazetteer: ClientGazetteer = gazetteer
        self._geocoder: Geocoder | None = geocoder
        self._config: ClientMatchingConfig = config or ClientMatchingConfig()

    @property
    def gazetteer(self) -> ClientGazetteer:
        return self._gazetteer

    @property
    def fallback_enabled(self) -> bool:
        return self._geocoder is not None and self._config.enable_geocode_fallback

    def match(self, latitude: float, longitude: float) -> ClientMatch | None:
        """
        Resolve a coordinate to a client.

        Returns:
            A gazetteer match, a residential-pattern match, or None.
        """
        gazetteer_match: ClientMatch | None = self._gazetteer.lookup(latitude, longitude)
        if gazetteer_match is not None:
            logger.debug(
                'Gazetteer match %r at (%.5f, %.5f), %.1f m',
                gazetteer_match.client_name,
                latitude,
                longitude,
                gazetteer_match.distance_meters or 0.0,
            )
            return gazetteer_match

        if not self.fallback_enabled:
            return None

        address: str | None = self.reverse_address(latitude, longitude)
        if address is None:
            return None

        label: str | None = residential_client_label(address)
        if label is None:
            logger.debug('Non-client location: %s', address)
            return None

        return ClientMatch(
            client_name=label,
            source=MatchSource.RESIDENTIAL_PATTERN,
            address=address,
        )

    def match_known_client(self, latitude: float, longitude: float) -> ClientMatch | None:
        """Gazetteer-only match, excluding the home base."""
        gazetteer_match: ClientMatch | None = self._gazetteer.lookup(latitude, longitude)
        if gazetteer_match is None or not gazetteer_match.is_known_client:
            return None
        return gazetteer_match

    def reverse_address(self, latitude: float, longitude: float) -> str | None:
        """Reverse-geocode a point, degrading any geocoding failure to None."""
        if self._geocoder is None:
            return None
        try:
            result: GeocodeResult | None = self._geocoder.reverse(latitude, longitude)
        except GeocodingError as geocoding_error:
            logger.warning(
                'Reverse geocoding failed for (%.5f, %.5f): %s',
                latitude,
                longitude,
                geocoding_error,
            )
            return None
        return result.address if result is not None else None
