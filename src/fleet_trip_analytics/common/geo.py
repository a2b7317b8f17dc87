# fleet_trip_analytics/common/geo.py
"""Geospatial helpers shared by the stop detector, segmenter and client matcher."""

import math
from collections.abc import Iterable
from typing import Final

__all__: list[str] = [
    'EARTH_RADIUS_METERS',
    'KM_TO_MILES',
    'METERS_TO_MILES',
    'coord_key',
    'haversine_meters',
    'path_length_meters',
]

EARTH_RADIUS_METERS: Final[float] = 6_371_000.0
KM_TO_MILES: Final[float] = 0.621371
METERS_TO_MILES: Final[float] = 0.000621371


def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters between two lat/lon points (degrees)."""
    phi1: float = math.radians(lat1)
    phi2: float = math.radians(lat2)
    d_phi: float = math.radians(lat2 - lat1)
    d_lambda: float = math.radians(lon2 - lon1)

    a: float = (
        math.sin(d_phi / 2.0) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2.0) ** 2
    )
    c: float = 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))
    return EARTH_RADIUS_METERS * c


def path_length_meters(
    coordinates: Iterable[tuple[float, float]],
    min_segment_meters: float = 0.0,
) -> float:
    """
    Sum consecutive haversine hops along a path.

    Hops shorter than `min_segment_meters` are treated as GPS noise and skipped,
    but the path still advances to the new fix.

    Args:
        coordinates: (latitude, longitude) pairs in travel order.
        min_segment_meters: Noise floor for a single hop.

    Returns:
        Total path length in meters.
    """
    total: float = 0.0
    previous: tuple[float, float] | None = None

    for current in coordinates:
        if previous is not None:
            hop: float = haversine_meters(previous[0], previous[1], current[0], current[1])
            if hop >= min_segment_meters:
                total += hop
        previous = current

    return total


def coord_key(lat: float, lon: float, precision: int = 4) -> str:
    """
    Stable cache key from rounded coordinates ("lat,lon").

    Precision 4 corresponds to roughly 11 m of latitude.
    """
    return f'{round(lat, precision):.{precision}f},{round(lon, precision):.{precision}f}'
