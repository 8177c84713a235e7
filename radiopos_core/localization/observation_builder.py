"""
Observation Builder.

Turns radio sources plus a fingerprint into the flat, parallel arrays the
lateration solvers consume: reference positions, distances, distance
standard deviations and (optionally) per-observation quality scores.

Expansion rules:
- RangingReading -> one observation (measured distance)
- RssiReading -> one observation (distance from path-loss model), only when
  the source has a transmitted power
- RangingAndRssiReading -> ranging observation first, then the RSSI-derived
  one (again only when the source has power)
- Readings whose source_id is not among the sources produce nothing

The ReadingSorter rewrites quality scores so that consecutive high-priority
observations come from different sources ("evenly distributed" readings).
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence, Tuple
import math

import numpy as np

from radiopos_core.errors import InvalidArgumentError
from radiopos_core.localization.propagation import rssi_to_distance, rssi_distance_std
from radiopos_core.metrics import get_metrics
from radiopos_core.proto.radio_source import RadioSource
from radiopos_core.proto.reading import (
    Fingerprint,
    RangingReading,
    RssiReading,
    RangingAndRssiReading,
    Reading,
    ReadingType,
)

logger = logging.getLogger(__name__)

FALLBACK_DISTANCE_STANDARD_DEVIATION = 1e-3  # m


@dataclass(frozen=True)
class Observation:
    """One distance-like observation against one source."""

    position: np.ndarray
    distance: float
    distance_std: float
    quality_score: Optional[float]
    source_index: int
    reading_index: int
    reading_type: ReadingType


class ObservationSet:
    """
    Immutable parallel arrays of observations.

    Attributes:
        positions: (n, D) reference positions (m)
        distances: (n,) distances (m), >= 0
        distance_stds: (n,) distance standard deviations (m), > 0
        quality_scores: (n,) quality scores or None
        source_indices: (n,) index into the source list
        reading_indices: (n,) index into the fingerprint readings
        reading_types: (n,) ReadingType values
    """

    def __init__(
        self,
        positions: np.ndarray,
        distances: np.ndarray,
        distance_stds: np.ndarray,
        source_indices: np.ndarray,
        reading_indices: np.ndarray,
        reading_types: np.ndarray,
        quality_scores: Optional[np.ndarray] = None,
    ):
        n = len(distances)
        for name, arr in (
            ('distance_stds', distance_stds),
            ('source_indices', source_indices),
            ('reading_indices', reading_indices),
            ('reading_types', reading_types),
        ):
            if len(arr) != n:
                raise InvalidArgumentError(f"{name} has {len(arr)} entries, expected {n}")
        if len(positions) != n:
            raise InvalidArgumentError(f"positions has {len(positions)} rows, expected {n}")
        if quality_scores is not None and len(quality_scores) != n:
            raise InvalidArgumentError(
                f"quality_scores has {len(quality_scores)} entries, expected {n}"
            )

        self.positions = self._frozen(np.asarray(positions, dtype=float))
        self.distances = self._frozen(np.asarray(distances, dtype=float))
        self.distance_stds = self._frozen(np.asarray(distance_stds, dtype=float))
        self.source_indices = self._frozen(np.asarray(source_indices, dtype=int))
        self.reading_indices = self._frozen(np.asarray(reading_indices, dtype=int))
        self.reading_types = self._frozen(np.asarray(reading_types, dtype=int))
        self.quality_scores = (
            None if quality_scores is None
            else self._frozen(np.asarray(quality_scores, dtype=float))
        )

    @staticmethod
    def _frozen(arr: np.ndarray) -> np.ndarray:
        arr = arr.copy()
        arr.setflags(write=False)
        return arr

    def __len__(self) -> int:
        return len(self.distances)

    def __iter__(self) -> Iterator[Observation]:
        for i in range(len(self)):
            yield self[i]

    def __getitem__(self, i: int) -> Observation:
        return Observation(
            position=self.positions[i],
            distance=float(self.distances[i]),
            distance_std=float(self.distance_stds[i]),
            quality_score=None if self.quality_scores is None else float(self.quality_scores[i]),
            source_index=int(self.source_indices[i]),
            reading_index=int(self.reading_indices[i]),
            reading_type=ReadingType(int(self.reading_types[i])),
        )

    @property
    def dimensions(self) -> int:
        if self.positions.ndim != 2 or len(self.positions) == 0:
            return 0
        return self.positions.shape[1]

    @property
    def num_distinct_sources(self) -> int:
        return len(np.unique(self.source_indices))

    def subset(self, indices: Sequence[int]) -> 'ObservationSet':
        """Observations at the given indices, in that order."""
        idx = np.asarray(indices, dtype=int)
        return ObservationSet(
            positions=self.positions[idx],
            distances=self.distances[idx],
            distance_stds=self.distance_stds[idx],
            source_indices=self.source_indices[idx],
            reading_indices=self.reading_indices[idx],
            reading_types=self.reading_types[idx],
            quality_scores=None if self.quality_scores is None else self.quality_scores[idx],
        )


def empty_observation_set(dimensions: int) -> ObservationSet:
    """ObservationSet with no rows."""
    return ObservationSet(
        positions=np.zeros((0, dimensions)),
        distances=np.zeros(0),
        distance_stds=np.zeros(0),
        source_indices=np.zeros(0, dtype=int),
        reading_indices=np.zeros(0, dtype=int),
        reading_types=np.zeros(0, dtype=int),
    )


# =============================================================================
# Reading sorter
# =============================================================================


@dataclass
class SortedSource:
    """A source and its readings, both in priority order."""

    source_index: int
    score: float
    reading_indices: List[int]


class ReadingSorter:
    """
    Ranks sources and, within each source, its readings.

    Sources are ordered by descending quality score. Readings of a source are
    ordered by reading type (ranging, ranging+RSSI, RSSI) and then by
    descending quality score. Sorting is stable, so ties keep input order.
    """

    def __init__(
        self,
        sources: Sequence[RadioSource],
        fingerprint: Fingerprint,
        source_quality_scores: np.ndarray,
        reading_quality_scores: np.ndarray,
    ):
        self.sources = sources
        self.fingerprint = fingerprint
        self.source_quality_scores = source_quality_scores
        self.reading_quality_scores = reading_quality_scores

    def sort(self) -> List[SortedSource]:
        source_index_by_id = _index_sources(self.sources)

        readings_by_source: Dict[int, List[int]] = {i: [] for i in range(len(self.sources))}
        for j, reading in enumerate(self.fingerprint.readings):
            i = source_index_by_id.get(reading.source_id)
            if i is not None:
                readings_by_source[i].append(j)

        readings = self.fingerprint.readings
        sorted_sources = []
        for i in range(len(self.sources)):
            ordered = sorted(
                readings_by_source[i],
                key=lambda j: (int(readings[j].reading_type), -self.reading_quality_scores[j]),
            )
            sorted_sources.append(SortedSource(i, float(self.source_quality_scores[i]), ordered))

        sorted_sources.sort(key=lambda s: -s.score)
        return sorted_sources

    def evenly_distributed_scores(self) -> Tuple[np.ndarray, np.ndarray]:
        """
        Replacement quality scores that interleave sources.

        Sources get 0, -1, -2, ... in rank order. Readings get 0, -1, -2, ...
        round by round: the best reading of every source (in source rank
        order), then the second best of every source, and so on. Readings of
        unknown sources keep their score.

        Returns:
            (source_scores, reading_scores), new arrays
        """
        source_scores = np.array(self.source_quality_scores, dtype=float)
        reading_scores = np.array(self.reading_quality_scores, dtype=float)

        sorted_sources = self.sort()
        for rank, sorted_source in enumerate(sorted_sources):
            source_scores[sorted_source.source_index] = -rank

        next_score = 0
        depth = 0
        while True:
            assigned = False
            for sorted_source in sorted_sources:
                if depth < len(sorted_source.reading_indices):
                    reading_scores[sorted_source.reading_indices[depth]] = next_score
                    next_score -= 1
                    assigned = True
            if not assigned:
                break
            depth += 1

        return source_scores, reading_scores


def _index_sources(sources: Sequence[RadioSource]) -> Dict[str, int]:
    """source_id -> index of its first occurrence."""
    index = {}
    for i, source in enumerate(sources):
        index.setdefault(source.source_id, i)
    return index


# =============================================================================
# Builder
# =============================================================================


def _score_array(scores: Optional[Sequence[float]], expected: int, name: str) -> Optional[np.ndarray]:
    if scores is None:
        return None
    if len(scores) != expected:
        logger.warning(
            f"Ignoring {name}: {len(scores)} entries for {expected} items"
        )
        return None
    return np.asarray(scores, dtype=float)


def _position_variance(source: RadioSource) -> float:
    """Trace of the source position covariance, 0 if absent or not finite."""
    if source.position_covariance is None:
        return 0.0
    trace = float(np.trace(source.position_covariance))
    if not math.isfinite(trace) or trace < 0:
        return 0.0
    return trace


def build_observations(
    sources: Sequence[RadioSource],
    fingerprint: Fingerprint,
    source_quality_scores: Optional[Sequence[float]] = None,
    reading_quality_scores: Optional[Sequence[float]] = None,
    use_position_covariance: bool = True,
    fallback_distance_std: float = FALLBACK_DISTANCE_STANDARD_DEVIATION,
    evenly_distribute: bool = False,
) -> ObservationSet:
    """
    Expand sources and fingerprint into an ObservationSet.

    Args:
        sources: Radio sources with known positions
        fingerprint: Readings at the unknown location
        source_quality_scores: One score per source (higher is better)
        reading_quality_scores: One score per fingerprint reading
        use_position_covariance: Add trace of source position covariance to
            each distance variance
        fallback_distance_std: Std used when a reading carries none
        evenly_distribute: Rewrite quality scores with ReadingSorter so that
            sources are interleaved

    Returns:
        ObservationSet. quality_scores is None when no score array applies.

    Raises:
        InvalidArgumentError: fallback_distance_std <= 0
    """
    if not fallback_distance_std > 0:
        raise InvalidArgumentError(
            f"Fallback distance std must be positive: {fallback_distance_std}"
        )

    metrics = get_metrics()
    readings: List[Reading] = list(fingerprint.readings)
    source_scores = _score_array(source_quality_scores, len(sources), 'source quality scores')
    reading_scores = _score_array(reading_quality_scores, len(readings), 'reading quality scores')

    if evenly_distribute:
        sorter = ReadingSorter(
            sources,
            fingerprint,
            source_scores if source_scores is not None else np.zeros(len(sources)),
            reading_scores if reading_scores is not None else np.zeros(len(readings)),
        )
        source_scores, reading_scores = sorter.evenly_distributed_scores()

    has_scores = source_scores is not None or reading_scores is not None
    dims = sources[0].dimensions if sources else 2
    if any(source.dimensions != dims for source in sources):
        raise InvalidArgumentError("All sources must have the same number of dimensions")
    source_index_by_id = _index_sources(sources)

    positions, distances, stds, qualities = [], [], [], []
    src_idx, rdg_idx, types = [], [], []

    def add(i: int, j: int, distance: float, std: Optional[float], reading_type: ReadingType):
        source = sources[i]
        std = std if std is not None else fallback_distance_std
        if use_position_covariance:
            std = math.sqrt(std ** 2 + _position_variance(source))
        if not math.isfinite(distance) or not math.isfinite(std) or std <= 0:
            metrics.increment_drop('invalid_std')
            return
        positions.append(source.position)
        distances.append(max(distance, 0.0))
        stds.append(std)
        quality = 0.0
        if source_scores is not None:
            quality += source_scores[i]
        if reading_scores is not None:
            quality += reading_scores[j]
        qualities.append(quality)
        src_idx.append(i)
        rdg_idx.append(j)
        types.append(int(reading_type))

    for j, reading in enumerate(readings):
        i = source_index_by_id.get(reading.source_id)
        if i is None:
            metrics.increment_drop('unknown_source')
            logger.debug(f"Reading {j}: unknown source '{reading.source_id}'")
            continue
        source = sources[i]

        if isinstance(reading, (RangingReading, RangingAndRssiReading)):
            add(i, j, reading.distance_m, reading.distance_std_m, reading.reading_type)

        if isinstance(reading, (RssiReading, RangingAndRssiReading)):
            if not source.has_power:
                metrics.increment_drop('rssi_without_power')
                logger.debug(f"Reading {j}: source '{source.source_id}' has no transmitted power")
                continue
            distance = rssi_to_distance(
                reading.rssi_dbm,
                source.transmitted_power_dbm,
                source.path_loss_exponent,
                source.frequency_hz,
            )
            std = rssi_distance_std(
                reading.rssi_dbm,
                source.transmitted_power_dbm,
                source.path_loss_exponent,
                source.frequency_hz,
                rssi_std_db=reading.rssi_std_db,
                transmitted_power_std_db=source.transmitted_power_std_db,
                path_loss_exponent_std=source.path_loss_exponent_std,
            )
            add(i, j, distance, std, reading.reading_type)

    metrics.increment('observations_built', len(distances))

    if not distances:
        return empty_observation_set(dims)

    return ObservationSet(
        positions=np.array(positions, dtype=float),
        distances=np.array(distances),
        distance_stds=np.array(stds),
        source_indices=np.array(src_idx, dtype=int),
        reading_indices=np.array(rdg_idx, dtype=int),
        reading_types=np.array(types, dtype=int),
        quality_scores=np.array(qualities) if has_scores else None,
    )
