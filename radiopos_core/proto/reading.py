"""
Reading and Fingerprint Schemas.

A reading is one measurement of the unknown point against one radio source:
- RangingReading: measured distance (m)
- RssiReading: received signal strength (dBm)
- RangingAndRssiReading: both at once

A fingerprint is the ordered collection of readings taken at a single
location. Order is kept as given so that sampling is reproducible.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import List, Optional, Sequence, Union
import math

from radiopos_core.errors import InvalidArgumentError


class ReadingType(IntEnum):
    """Kind of reading. Lower values are preferred when sorting."""

    RANGING = 0             # Distance only
    RANGING_AND_RSSI = 1    # Distance and received power
    RSSI = 2                # Received power only


def _check_std(name: str, value: Optional[float]):
    if value is not None and not value > 0:
        raise InvalidArgumentError(f"{name} must be positive: {value}")


def _check_distance(value: float):
    if not math.isfinite(value):
        raise InvalidArgumentError(f"Distance must be finite: {value}")
    if value < 0:
        raise InvalidArgumentError(f"Distance cannot be negative: {value}")


@dataclass
class RangingReading:
    """
    Measured distance to a radio source.

    Attributes:
        source_id: Source the distance was measured to
        distance_m: Distance (m), >= 0
        distance_std_m: Distance standard deviation (m); None if unknown
    """

    source_id: str
    distance_m: float
    distance_std_m: Optional[float] = None

    def __post_init__(self):
        _check_distance(self.distance_m)
        _check_std('distance_std_m', self.distance_std_m)

    @property
    def reading_type(self) -> ReadingType:
        return ReadingType.RANGING


@dataclass
class RssiReading:
    """
    Received signal strength from a radio source.

    Attributes:
        source_id: Source the signal was received from
        rssi_dbm: Received power (dBm)
        rssi_std_db: RSSI standard deviation (dB); None if unknown
    """

    source_id: str
    rssi_dbm: float
    rssi_std_db: Optional[float] = None

    def __post_init__(self):
        if not math.isfinite(self.rssi_dbm):
            raise InvalidArgumentError(f"RSSI must be finite: {self.rssi_dbm}")
        _check_std('rssi_std_db', self.rssi_std_db)

    @property
    def reading_type(self) -> ReadingType:
        return ReadingType.RSSI


@dataclass
class RangingAndRssiReading:
    """
    Distance and received power measured against the same source.

    Produces two observations: the measured distance and the distance
    derived from the RSSI (when the source has a transmitted power).
    """

    source_id: str
    distance_m: float
    rssi_dbm: float
    distance_std_m: Optional[float] = None
    rssi_std_db: Optional[float] = None

    def __post_init__(self):
        _check_distance(self.distance_m)
        if not math.isfinite(self.rssi_dbm):
            raise InvalidArgumentError(f"RSSI must be finite: {self.rssi_dbm}")
        _check_std('distance_std_m', self.distance_std_m)
        _check_std('rssi_std_db', self.rssi_std_db)

    @property
    def reading_type(self) -> ReadingType:
        return ReadingType.RANGING_AND_RSSI


Reading = Union[RangingReading, RssiReading, RangingAndRssiReading]


@dataclass
class Fingerprint:
    """
    Ordered readings taken at one location.

    Attributes:
        readings: Readings in acquisition order
    """

    readings: List[Reading] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.readings)

    def __iter__(self):
        return iter(self.readings)

    @property
    def source_ids(self) -> List[str]:
        """Distinct source ids in first-seen order."""
        seen = []
        for reading in self.readings:
            if reading.source_id not in seen:
                seen.append(reading.source_id)
        return seen

    def readings_for(self, source_id: str) -> List[Reading]:
        """Readings that refer to source_id, in fingerprint order."""
        return [r for r in self.readings if r.source_id == source_id]


def create_fingerprint(readings: Sequence[Reading]) -> Fingerprint:
    """Build a Fingerprint from any sequence of readings."""
    return Fingerprint(readings=list(readings))
