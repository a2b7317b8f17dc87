"""
Tests for fleet_trip_analytics.client_matcher module.

Tests gazetteer construction and radius resolution, lookup precedence,
residential address heuristics and the reverse-geocoding fallback.
"""

from collections.abc import Callable
from pathlib import Path

import pandas as pd
import pytest

from fleet_trip_analytics.client_matcher import (
    ClientGazetteer,
    ClientMatcher,
    is_residential_address,
    residential_client_label,
)
from fleet_trip_analytics.common.geo import haversine_meters
from fleet_trip_analytics.config import ClientMatchingConfig
from fleet_trip_analytics.models import (
    ClientLocation,
    ClientMatch,
    ClientType,
    MatchSource,
)

from conftest import (
    CLIENT_DISTANCE_METERS,
    ORIGIN_LATITUDE,
    ORIGIN_LONGITUDE,
    FakeGeocoder,
)


class TestRadiusResolution:
    """Test ClientGazetteer.resolve_radius."""

    def test_explicit_radius_is_kept(self, gazetteer: ClientGazetteer) -> None:
        """Should keep a configured radius."""

        location: ClientLocation | None = gazetteer.get('123 Oak Street, Springdale, Arkansas')

        assert location is not None
        assert location.radius_meters == 100.0  # noqa: PLR2004

    def test_home_base_radius(self, gazetteer: ClientGazetteer) -> None:
        """Should use home_base_radius_meters for the home base."""

        location: ClientLocation | None = gazetteer.get('100 Depot Road, Springdale, Arkansas')

        assert location is not None
        assert location.radius_meters == 200.0  # noqa: PLR2004

    def test_keyword_radius(self, gazetteer: ClientGazetteer) -> None:
        """Should infer 200 m for a hospital from its name."""

        location: ClientLocation | None = gazetteer.get(
            '2000 Medical Parkway, Springdale, Arkansas'
        )

        assert location is not None
        assert location.radius_meters == 200.0  # noqa: PLR2004

    def test_default_radius_without_keyword(self) -> None:
        """Should fall back to default_radius_meters."""

        gazetteer = ClientGazetteer(
            [ClientLocation(address='9 Elm Street', client_name='Jones', lat=36.0, lng=-94.0)],
            ClientMatchingConfig(default_radius_meters=75.0),
        )

        location: ClientLocation | None = gazetteer.get('9 Elm Street')

        assert location is not None
        assert location.radius_meters == 75.0  # noqa: PLR2004

    def test_keywords_are_case_insensitive(self) -> None:
        """Should lowercase configured keywords."""

        config = ClientMatchingConfig(radius_keywords={'CHURCH': 180.0})
        gazetteer = ClientGazetteer(
            [
                ClientLocation(
                    address='1 First Street',
                    client_name='First Baptist Church',
                    lat=36.0,
                    lng=-94.0,
                )
            ],
            config,
        )

        location: ClientLocation | None = gazetteer.get('1 First Street')

        assert location is not None
        assert location.radius_meters == 180.0  # noqa: PLR2004

    def test_non_positive_keyword_radius_rejected(self) -> None:
        """Should reject keyword radii that are not positive."""

        with pytest.raises(ValueError, match='must be positive'):
            ClientMatchingConfig(radius_keywords={'park': 0.0})


class TestGazetteerLookup:
    """Test ClientGazetteer.lookup."""

    def test_point_inside_radius_matches(
        self,
        gazetteer: ClientGazetteer,
        latitude_north: Callable[[float], float],
    ) -> None:
        """Should match a point 99 m from a client with a 100 m radius."""

        match: ClientMatch | None = gazetteer.lookup(
            latitude_north(CLIENT_DISTANCE_METERS + 99.0), ORIGIN_LONGITUDE
        )

        assert match is not None
        assert match.client_name == 'Smith Residence'
        assert match.source is MatchSource.GAZETTEER
        assert match.distance_meters == pytest.approx(99.0, abs=0.01)
        assert match.is_known_client

    def test_point_outside_radius_does_not_match(
        self,
        gazetteer: ClientGazetteer,
        latitude_north: Callable[[float], float],
    ) -> None:
        """Should not match a point 101 m from a client with a 100 m radius."""

        match: ClientMatch | None = gazetteer.lookup(
            latitude_north(CLIENT_DISTANCE_METERS + 101.0), ORIGIN_LONGITUDE
        )

        assert match is None

    def test_radius_boundary_is_inclusive(self, latitude_north: Callable[[float], float]) -> None:
        """Should match a point lying exactly on the radius."""

        point_latitude: float = latitude_north(250.0)
        exact_radius: float = haversine_meters(
            point_latitude, ORIGIN_LONGITUDE, ORIGIN_LATITUDE, ORIGIN_LONGITUDE
        )
        gazetteer = ClientGazetteer(
            [
                ClientLocation(
                    address='5 Birch Lane',
                    client_name='Boundary Client',
                    lat=ORIGIN_LATITUDE,
                    lng=ORIGIN_LONGITUDE,
                    radius_meters=exact_radius,
                )
            ]
        )

        assert gazetteer.lookup(point_latitude, ORIGIN_LONGITUDE) is not None

    def test_home_base_wins_over_closer_client(
        self,
        latitude_north: Callable[[float], float],
    ) -> None:
        """Should prefer the home base even when another location is closer."""

        gazetteer = ClientGazetteer(
            [
                ClientLocation(
                    address='1 Yard Road',
                    client_name='Company Yard',
                    lat=ORIGIN_LATITUDE,
                    lng=ORIGIN_LONGITUDE,
                    client_type=ClientType.HOME_BASE,
                ),
                ClientLocation(
                    address='2 Yard Road',
                    client_name='Neighbor',
                    lat=latitude_north(40.0),
                    lng=ORIGIN_LONGITUDE,
                    radius_meters=100.0,
                ),
            ]
        )

        match: ClientMatch | None = gazetteer.lookup(latitude_north(38.0), ORIGIN_LONGITUDE)

        assert match is not None
        assert match.client_name == 'Company Yard'
        assert match.is_home_base
        assert not match.is_known_client

    def test_closest_client_wins(self, latitude_north: Callable[[float], float]) -> None:
        """Should pick the nearest of several containing locations."""

        gazetteer = ClientGazetteer(
            [
                ClientLocation(
                    address='10 Ash Court',
                    client_name='Far',
                    lat=ORIGIN_LATITUDE,
                    lng=ORIGIN_LONGITUDE,
                    radius_meters=300.0,
                ),
                ClientLocation(
                    address='11 Ash Court',
                    client_name='Near',
                    lat=latitude_north(100.0),
                    lng=ORIGIN_LONGITUDE,
                    radius_meters=300.0,
                ),
            ]
        )

        match: ClientMatch | None = gazetteer.lookup(latitude_north(90.0), ORIGIN_LONGITUDE)

        assert match is not None
        assert match.client_name == 'Near'

    def test_inactive_location_is_ignored(self) -> None:
        """Should never match inactive locations."""

        gazetteer = ClientGazetteer(
            [
                ClientLocation(
                    address='3 Pine Drive',
                    client_name='Former Client',
                    lat=ORIGIN_LATITUDE,
                    lng=ORIGIN_LONGITUDE,
                    is_active=False,
                )
            ]
        )

        assert gazetteer.lookup(ORIGIN_LATITUDE, ORIGIN_LONGITUDE) is None


class TestGazetteerLoading:
    """Test gazetteer constructors."""

    def test_from_records_accepts_aliases_and_skips_invalid(self) -> None:
        """Should map column aliases and skip records that fail validation."""

        gazetteer = ClientGazetteer.from_records(
            [
                {
                    'address': '12 Cedar Street',
                    'clientName': 'Cedar Client',
                    'latitude': 36.1,
                    'longitude': -94.1,
                    'clientType': 'Home Base',
                },
                {'address': '13 Cedar Street', 'clientName': 'Broken', 'latitude': 'x'},
            ]
        )

        assert len(gazetteer) == 1
        location: ClientLocation | None = gazetteer.get('12 Cedar Street')
        assert location is not None
        assert location.client_type is ClientType.HOME_BASE

    def test_duplicate_address_keeps_last(self) -> None:
        """Should keep the last entry for a repeated address."""

        gazetteer = ClientGazetteer(
            [
                ClientLocation(address='4 Main Street', client_name='Old', lat=36.0, lng=-94.0),
                ClientLocation(address='4 Main Street', client_name='New', lat=36.0, lng=-94.0),
            ]
        )

        assert len(gazetteer) == 1
        location: ClientLocation | None = gazetteer.get('4 Main Street')
        assert location is not None
        assert location.client_name == 'New'

    def test_from_csv(self, temp_dir: Path) -> None:
        """Should load a gazetteer CSV, treating empty cells as missing."""

        csv_path: Path = temp_dir / 'clients.csv'
        pd.DataFrame(
            [
                {
                    'address': '21 Willow Way',
                    'client_name': 'Willow',
                    'lat': 36.2,
                    'lng': -94.2,
                    'radius_meters': None,
                },
                {
                    'address': '22 Willow Way',
                    'client_name': 'Willow Two',
                    'lat': 36.3,
                    'lng': -94.3,
                    'radius_meters': 60.0,
                },
            ]
        ).to_csv(csv_path, index=False)

        gazetteer: ClientGazetteer = ClientGazetteer.from_csv(csv_path)

        assert len(gazetteer) == 2  # noqa: PLR2004
        first: ClientLocation | None = gazetteer.get('21 Willow Way')
        second: ClientLocation | None = gazetteer.get('22 Willow Way')
        assert first is not None
        assert second is not None
        assert first.radius_meters == 100.0  # noqa: PLR2004
        assert second.radius_meters == 60.0  # noqa: PLR2004

    def test_from_csv_missing_file(self, temp_dir: Path) -> None:
        """Should raise FileNotFoundError for a missing CSV."""

        with pytest.raises(FileNotFoundError):
            ClientGazetteer.from_csv(temp_dir / 'missing.csv')


class TestResidentialHeuristics:
    """Test residential address detection and labels."""

    @pytest.mark.parametrize(
        ('address', 'expected'),
        [
            ('123 Oak Street, Springdale, Arkansas', 'Unknown Client - Oak Street'),
            ('742 Maple Avenue, Springdale, Arkansas', 'Unknown Client - Maple Avenue'),
            ('8 N Thompson, Springdale', 'Unknown Client - N Thompson'),
            ('Lakeside Home, Rogers', 'Unknown Residential Client'),
            ('Walmart Supercenter, Springdale', None),
        ],
    )
    def test_residential_client_label(self, address: str, expected: str | None) -> None:
        """Should label residential addresses by street and ignore commercial ones."""

        assert residential_client_label(address) == expected

    def test_is_residential_address(self) -> None:
        """Should detect house-number-and-street addresses."""

        assert is_residential_address('55 Harbor Court')
        assert not is_residential_address('Downtown Plaza')


class TestClientMatcher:
    """Test ClientMatcher.match and the geocoding fallback."""

    def test_gazetteer_hit_skips_geocoder(
        self,
        gazetteer: ClientGazetteer,
        fake_geocoder: FakeGeocoder,
        latitude_north: Callable[[float], float],
    ) -> None:
        """Should not geocode points that match the gazetteer."""

        matcher = ClientMatcher(gazetteer, fake_geocoder)

        match: ClientMatch | None = matcher.match(
            latitude_north(CLIENT_DISTANCE_METERS), ORIGIN_LONGITUDE
        )

        assert match is not None
        assert match.client_name == 'Smith Residence'
        assert fake_geocoder.calls == []

    def test_residential_fallback(
        self,
        gazetteer: ClientGazetteer,
        fake_geocoder: FakeGeocoder,
        latitude_north: Callable[[float], float],
    ) -> None:
        """Should synthesize a residential client from the geocoded address."""

        matcher = ClientMatcher(gazetteer, fake_geocoder)

        match: ClientMatch | None = matcher.match(latitude_north(10_000.0), ORIGIN_LONGITUDE)

        assert match is not None
        assert match.client_name == 'Unknown Client - Maple Avenue'
        assert match.source is MatchSource.RESIDENTIAL_PATTERN
        assert match.address == '742 Maple Avenue, Springdale, Arkansas'
        assert not match.is_known_client
        assert len(fake_geocoder.calls) == 1

    def test_non_residential_address_is_no_match(
        self,
        gazetteer: ClientGazetteer,
        latitude_north: Callable[[float], float],
    ) -> None:
        """Should return None when the geocoded address is not residential."""

        matcher = ClientMatcher(gazetteer, FakeGeocoder(address='Walmart Supercenter'))

        assert matcher.match(latitude_north(10_000.0), ORIGIN_LONGITUDE) is None

    def test_geocoder_failure_degrades_to_none(
        self,
        gazetteer: ClientGazetteer,
        failing_geocoder: FakeGeocoder,
        latitude_north: Callable[[float], float],
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Should log a geocoding failure and treat the point as unmatched."""

        matcher = ClientMatcher(gazetteer, failing_geocoder)

        with caplog.at_level('WARNING', logger='fleet_trip_analytics.client_matcher'):
            match: ClientMatch | None = matcher.match(latitude_north(10_000.0), ORIGIN_LONGITUDE)

        assert match is None
        assert 'Reverse geocoding failed' in caplog.text

    def test_fallback_disabled_by_config(
        self,
        gazetteer: ClientGazetteer,
        fake_geocoder: FakeGeocoder,
        latitude_north: Callable[[float], float],
    ) -> None:
        """Should skip geocoding when enable_geocode_fallback is False."""

        matcher = ClientMatcher(
            gazetteer,
            fake_geocoder,
            ClientMatchingConfig(enable_geocode_fallback=False),
        )

        assert matcher.match(latitude_north(10_000.0), ORIGIN_LONGITUDE) is None
        assert fake_geocoder.calls == []
        assert not matcher.fallback_enabled

    def test_match_known_client_excludes_home_base(self, matcher: ClientMatcher) -> None:
        """Should return None for the home base from match_known_client."""

        assert matcher.match(ORIGIN_LATITUDE, ORIGIN_LONGITUDE) is not None
        assert matcher.match_known_client(ORIGIN_LATITUDE, ORIGIN_LONGITUDE) is None
