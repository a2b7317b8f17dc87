# fleet_trip_analytics/normalizer.py
"""
Signal normalization: vendor telemetry -> canonical Sample -> RoutePoint.

The telematics vendor delivers one status document per poll. Its `signals`
member is either an object keyed by signal type or, after a format change,
a list whose first element is that object. Each signal is `{value, timestamp}`
and carries its own timestamp; the freshest one dates the whole sample.

Recognized signals:
    position                        value.latitude / value.longitude
    ignition_status                 free-form string, see normalize_ignition()
    odometer                        source distance unit
    speed                           source distance unit per hour
    xev_battery_state_of_charge     percent
    xev_battery_range               source distance unit
    xev_plug_charger_status         'CONNECTED' / 'DISCONNECTED'

Design Decisions:
-----------------
- Soft failure: any field that cannot be parsed is treated as absent. A
  sample without a position is still emitted if anything else is usable. A
  sample that cannot be dated at all is skipped, because every downstream
  stage orders by time.
- Distances are converted to miles exactly once, here, and unrounded. The
  source unit is recorded on the Sample so the conversion is auditable.
- Movement is decided at ingestion by `MovementTracker`, which compares each
  fix to the previous one. The stop detector consumes that flag rather than
  recomputing it.
"""

import logging
from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime
from typing import Any, Final

from pydantic import BaseModel, ConfigDict, field_validator

from fleet_trip_analytics.common.geo import KM_TO_MILES, METERS_TO_MILES, haversine_meters
from fleet_trip_analytics.config import StopDetectionConfig
from fleet_trip_analytics.models import (
    DistanceUnit,
    IgnitionState,
    RoutePoint,
    Sample,
    ensure_utc,
)

__all__: list[str] = [
    'MovementTracker',
    'SignalNormalizer',
    'choose_latest_timestamp',
    'normalize_ignition',
    'parse_number',
    'parse_timestamp',
    'to_miles',
]

logger: logging.Logger = logging.getLogger(__name__)

SIGNAL_POSITION: Final[str] = 'position'
SIGNAL_IGNITION: Final[str] = 'ignition_status'
SIGNAL_ODOMETER: Final[str] = 'odometer'
SIGNAL_SPEED: Final[str] = 'speed'
SIGNAL_BATTERY_SOC: Final[str] = 'xev_battery_state_of_charge'
SIGNAL_BATTERY_RANGE: Final[str] = 'xev_battery_range'
SIGNAL_PLUG_STATUS: Final[str] = 'xev_plug_charger_status'

IGNITION_RUN_VALUES: Final[frozenset[str]] = frozenset({'run', 'running', 'started'})
IGNITION_ON_VALUES: Final[frozenset[str]] = frozenset({'on'})
IGNITION_OFF_VALUES: Final[frozenset[str]] = frozenset({'off', 'stopped'})

PLUG_CONNECTED_VALUE: Final[str] = 'connected'
SECONDS_PER_HOUR: Final[float] = 3600.0


# =============================================================================
# Field Parsers
# =============================================================================


def parse_number(value: Any) -> float | None:
    """Parse a numeric field, returning None for anything unparsable or non-finite."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number: float = float(value)
    except (TypeError, ValueError):
        return None
    if number != number or number in (float('inf'), float('-inf')):
        return None
    return number


def parse_timestamp(value: Any) -> datetime | None:
    """
    Parse an ISO-8601 string or datetime into an aware UTC datetime.

    A trailing 'Z' is accepted. Naive values are taken as UTC.

    Returns:
        The parsed timestamp, or None if the value is missing or malformed.
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str) or not value.strip():
        return None
    text: str = value.strip()
    if text.endswith(('Z', 'z')):
        text = f'{text[:-1]}+00:00'
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def normalize_ignition(value: Any) -> IgnitionState:
    """
    Map a vendor ignition string to IgnitionState.

    'run', 'running', 'started' -> Run; 'on' -> On; 'off', 'stopped' -> Off;
    anything else, including None, -> Unknown. Matching ignores case and
    surrounding whitespace.
    """
    if value is None:
        return IgnitionState.UNKNOWN
    text: str = str(value).strip().lower()
    if text in IGNITION_RUN_VALUES:
        return IgnitionState.RUN
    if text in IGNITION_ON_VALUES:
        return IgnitionState.ON
    if text in IGNITION_OFF_VALUES:
        return IgnitionState.OFF
    return IgnitionState.UNKNOWN


def to_miles(value: float | None, unit: DistanceUnit) -> float | None:
    """Convert a distance from `unit` to miles (unrounded)."""
    if value is None:
        return None
    if unit is DistanceUnit.KILOMETERS:
        return value * KM_TO_MILES
    return value


def choose_latest_timestamp(
    candidates: Sequence[datetime | None],
) -> datetime | None:
    """
    Most recent timestamp among candidates.

    Ties keep the earliest candidate in sequence order. None entries are
    ignored.
    """
    latest: datetime | None = None
    for candidate in candidates:
        if candidate is None:
            continue
        if latest is None or candidate > latest:
            latest = candidate
    return latest


# =============================================================================
# Vendor Signal Model
# =============================================================================


class VendorSignal(BaseModel):
    """
    One `{value, timestamp}` signal entry.

    Parsed leniently: unknown keys are ignored and an unparsable timestamp
    becomes None instead of failing the whole sample.
    """

    model_config = ConfigDict(extra='ignore')

    value: Any = None
    timestamp: datetime | None = None

    @field_validator('timestamp', mode='before')
    @classmethod
    def parse_lenient_timestamp(cls, value: Any) -> datetime | None:
        return parse_timestamp(value)


def _extract_signal_map(raw_sample: Mapping[str, Any]) -> Mapping[str, Any]:
    """Return the signal object whether it arrived as an object or a list."""
    signals: Any = raw_sample.get('signals')
    if isinstance(signals, list):
        first: Any = signals[0] if signals else None
        return first if isinstance(first, Mapping) else {}
    if isinstance(signals, Mapping):
        return signals
    return {}


def _read_signal(signal_map: Mapping[str, Any], name: str) -> VendorSignal | None:
    entry: Any = signal_map.get(name)
    if not isinstance(entry, Mapping):
        return None
    return VendorSignal.model_validate(entry)


# =============================================================================
# Normalizer
# =============================================================================


class SignalNormalizer:
    """
    Converts raw vendor status documents into canonical Samples.

    Args:
        source_distance_unit: Unit the vendor reports distances in. The
            current vendor reports kilometers.

    Example:
        >>> normalizer = SignalNormalizer()
        >>> sample = normalizer.normalize('VAN-1', raw_status)
        >>> sample.odometer  # miles
    """

    def __init__(
        self,
        source_distance_unit: DistanceUnit = DistanceUnit.KILOMETERS,
    ) -> None:
        self._source_distance_unit: DistanceUnit = source_distance_unit

    @property
    def source_distance_unit(self) -> DistanceUnit:
        return self._source_distance_unit

    def normalize(
        self,
        vehicle_id: str,
        raw_sample: Mapping[str, Any],
    ) -> Sample | None:
        """
        Normalize one vendor status document.

        Args:
            vehicle_id: Vehicle the document belongs to.
            raw_sample: Vendor document with a `signals` member and an
                optional top-level `timestamp` fallback.

        Returns:
            The canonical Sample, or None if no valid timestamp exists.
        """
        signal_map: Mapping[str, Any] = _extract_signal_map(raw_sample)

        position: VendorSignal | None = _read_signal(signal_map, SIGNAL_POSITION)
        ignition: VendorSignal | None = _read_signal(signal_map, SIGNAL_IGNITION)
        odometer: VendorSignal | None = _read_signal(signal_map, SIGNAL_ODOMETER)
        speed: VendorSignal | None = _read_signal(signal_map, SIGNAL_SPEED)
        battery_soc: VendorSignal | None = _read_signal(signal_map, SIGNAL_BATTERY_SOC)
        battery_range: VendorSignal | None = _read_signal(signal_map, SIGNAL_BATTERY_RANGE)
        plug: VendorSignal | None = _read_signal(signal_map, SIGNAL_PLUG_STATUS)

        # Arrival order of the signals decides timestamp ties.
        signals_in_order: list[VendorSignal | None] = [
            ignition,
            position,
            odometer,
            speed,
            battery_soc,
            battery_range,
            plug,
        ]
        timestamp: datetime | None = choose_latest_timestamp(
            [signal.timestamp if signal is not None else None for signal in signals_in_order]
        )
        if timestamp is None:
            timestamp = parse_timestamp(raw_sample.get('timestamp'))
        if timestamp is None:
            logger.warning(
                'Skipping sample for vehicle %s: no valid timestamp in any signal',
                vehicle_id,
            )
            return None

        latitude, longitude = self._extract_position(position)

        return Sample(
            vehicle_id=vehicle_id,
            timestamp=timestamp,
            latitude=latitude,
            longitude=longitude,
            ignition_state=normalize_ignition(ignition.value if ignition else None),
            speed=to_miles(parse_number(speed.value) if speed else None, self._source_distance_unit),
            odometer=to_miles(
                parse_number(odometer.value) if odometer else None,
                self._source_distance_unit,
            ),
            battery_soc=parse_number(battery_soc.value) if battery_soc else None,
            battery_range=to_miles(
                parse_number(battery_range.value) if battery_range else None,
                self._source_distance_unit,
            ),
            plug_connected=self._extract_plug_status(plug),
            source_distance_unit=self._source_distance_unit,
        )

    def normalize_many(
        self,
        vehicle_id: str,
        raw_samples: Iterable[Mapping[str, Any]],
    ) -> list[Sample]:
        """Normalize a batch, dropping undatable documents. Input order is kept."""
        samples: list[Sample] = []
        skipped: int = 0
        for raw_sample in raw_samples:
            sample: Sample | None = self.normalize(vehicle_id, raw_sample)
            if sample is None:
                skipped += 1
                continue
            samples.append(sample)

        logger.debug(
            'Normalized %d samples for vehicle %s (%d skipped)',
            len(samples),
            vehicle_id,
            skipped,
        )
        return samples

    @staticmethod
    def _extract_position(
        position: VendorSignal | None,
    ) -> tuple[float | None, float | None]:
        if position is None or not isinstance(position.value, Mapping):
            return None, None
        latitude: float | None = parse_number(position.value.get('latitude'))
        longitude: float | None = parse_number(position.value.get('longitude'))
        if latitude is None or longitude is None:
            return None, None
        if not (-90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0):
            logger.debug('Discarding out-of-range position (%s, %s)', latitude, longitude)
            return None, None
        return latitude, longitude

    @staticmethod
    def _extract_plug_status(plug: VendorSignal | None) -> bool | None:
        if plug is None or plug.value is None:
            return None
        return str(plug.value).strip().lower() == PLUG_CONNECTED_VALUE


# =============================================================================
# Movement Flag
# =============================================================================


class MovementTracker:
    """
    Assigns `is_moving` to positioned samples in arrival order.

    A fix is moving when it is more than `movement_threshold_meters` from the
    previous fix and the implied speed is at least `min_moving_speed_mph`,
    or when the reported speed alone reaches that threshold. The first fix
    has nothing to compare with and is not moving.

    One tracker per vehicle; state is the previous fix only.
    """

    def __init__(self, config: StopDetectionConfig | None = None) -> None:
        self._config: StopDetectionConfig = config or StopDetectionConfig()
        self._previous: Sample | None = None

    def reset(self) -> None:
        self._previous = None

    def is_moving(self, sample: Sample) -> bool:
        """Decide the movement flag for `sample` without updating state."""
        if sample.speed is not None and sample.speed >= self._config.min_moving_speed_mph:
            return True

        previous: Sample | None = self._previous
        if previous is None or previous.latitude is None or previous.longitude is None:
            return False
        if sample.latitude is None or sample.longitude is None:
            return False

        distance_meters: float = haversine_meters(
            previous.latitude,
            previous.longitude,
            sample.latitude,
            sample.longitude,
        )
        if distance_meters <= self._config.movement_threshold_meters:
            return False

        elapsed_hours: float = (
            sample.timestamp - previous.timestamp
        ).total_seconds() / SECONDS_PER_HOUR
        if elapsed_hours <= 0:
            # Same timestamp, different place: a jump beyond the threshold is movement.
            return True

        implied_mph: float = distance_meters * METERS_TO_MILES / elapsed_hours
        return implied_mph >= self._config.min_moving_speed_mph

    def mark(self, sample: Sample) -> RoutePoint:
        """
        Build the RoutePoint for a positioned sample and remember it.

        Raises:
            ValueError: If the sample has no position fix.
        """
        route_point: RoutePoint = RoutePoint.from_sample(sample, is_moving=self.is_moving(sample))
        self._previous = sample
        return route_point

    def observe(self, sample: Sample) -> None:
        """Remember a positioned fix without producing a RoutePoint."""
        if sample.has_position:
            self._previous = sample
