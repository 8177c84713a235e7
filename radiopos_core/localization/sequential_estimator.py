"""
Sequential Position Estimator.

Two-stage estimation for fingerprints that carry both ranging and RSSI data.
A robust fit on the RSSI-derived distances gives a coarse position, which
seeds a robust fit on the measured distances:

    fingerprint -> RSSI readings    -> PositionEstimator -> coarse position
                -> ranging readings -> PositionEstimator(initial_position=coarse)

The RSSI stage is optional. When it is not ready (no RSSI readings, or no
source with a transmitted power) or it fails, the ranging stage runs
unseeded. The coarse position only seeds preliminary fits when the ranging
stage has its linear solver disabled.

Progress of the RSSI stage maps to [0, 0.5], the ranging stage to [0.5, 1].

Usage:
    estimator = SequentialPositionEstimator(sources=sources, fingerprint=fingerprint)
    position = estimator.estimate()
    print(estimator.coarse_position, position)
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np

from radiopos_core.errors import (
    InvalidArgumentError,
    LockedError,
    NotReadyError,
    RobustEstimationFailedError,
)
from radiopos_core.localization.observation_builder import FALLBACK_DISTANCE_STANDARD_DEVIATION
from radiopos_core.localization.position_estimator import (
    PositionEstimator,
    PositionEstimatorListener,
)
from radiopos_core.localization.robust_lateration import (
    RobustEstimatorConfig,
    RobustEstimatorMethod,
    uses_quality_scores,
)
from radiopos_core.metrics import get_metrics
from radiopos_core.proto.estimation_result import EstimationResult, InliersData
from radiopos_core.proto.radio_source import RadioSource
from radiopos_core.proto.reading import (
    Fingerprint,
    RangingAndRssiReading,
    RangingReading,
    RssiReading,
)

logger = logging.getLogger(__name__)

DEFAULT_RANGING_METHOD = RobustEstimatorMethod.PROMEDS
DEFAULT_RSSI_METHOD = RobustEstimatorMethod.PROMEDS


@dataclass
class SequentialEstimatorConfig:
    """
    Per-stage configuration of a SequentialPositionEstimator.

    Attributes:
        ranging_method: Robust method of the ranging stage
        rssi_method: Robust method of the RSSI stage
        ranging: Robust loop configuration of the ranging stage
        rssi: Robust loop configuration of the RSSI stage
        ranging_position_covariance_used: Inflate ranging stds with source
            position covariance
        rssi_position_covariance_used: Same for the RSSI stage
        evenly_distribute_ranging_readings: Interleave ranging readings by source
        evenly_distribute_rssi_readings: Interleave RSSI readings by source
        ranging_fallback_distance_std: Std for ranging readings without one (m)
        rssi_fallback_distance_std: Std for RSSI distances without one (m)
    """

    ranging_method: RobustEstimatorMethod = DEFAULT_RANGING_METHOD
    rssi_method: RobustEstimatorMethod = DEFAULT_RSSI_METHOD
    ranging: RobustEstimatorConfig = field(default_factory=RobustEstimatorConfig)
    rssi: RobustEstimatorConfig = field(default_factory=RobustEstimatorConfig)
    ranging_position_covariance_used: bool = True
    rssi_position_covariance_used: bool = True
    evenly_distribute_ranging_readings: bool = True
    evenly_distribute_rssi_readings: bool = True
    ranging_fallback_distance_std: float = FALLBACK_DISTANCE_STANDARD_DEVIATION
    rssi_fallback_distance_std: float = FALLBACK_DISTANCE_STANDARD_DEVIATION

    def __post_init__(self):
        """Validate configuration."""
        self.ranging_method = RobustEstimatorMethod(self.ranging_method)
        self.rssi_method = RobustEstimatorMethod(self.rssi_method)
        for name in ('ranging_fallback_distance_std', 'rssi_fallback_distance_std'):
            value = getattr(self, name)
            if not value > 0:
                raise InvalidArgumentError(f"{name} must be positive: {value}")

    @property
    def uses_quality_scores(self) -> bool:
        """Whether either stage samples by quality."""
        return uses_quality_scores(self.ranging_method) or uses_quality_scores(self.rssi_method)


def split_fingerprint(fingerprint: Fingerprint) -> Tuple[Fingerprint, List[int], Fingerprint, List[int]]:
    """
    Split readings into a ranging-only and an RSSI-only fingerprint.

    RangingAndRssiReading contributes to both.

    Returns:
        (ranging fingerprint, fingerprint indices of its readings,
         RSSI fingerprint, fingerprint indices of its readings)
    """
    ranging, ranging_indices = [], []
    rssi, rssi_indices = [], []
    for i, reading in enumerate(fingerprint.readings):
        if isinstance(reading, (RangingReading, RangingAndRssiReading)):
            ranging.append(RangingReading(reading.source_id, reading.distance_m, reading.distance_std_m))
            ranging_indices.append(i)
        if isinstance(reading, (RssiReading, RangingAndRssiReading)):
            rssi.append(RssiReading(reading.source_id, reading.rssi_dbm, reading.rssi_std_db))
            rssi_indices.append(i)
    return Fingerprint(ranging), ranging_indices, Fingerprint(rssi), rssi_indices


class SequentialPositionEstimatorListener:
    """Callbacks of a SequentialPositionEstimator, all run while LOCKED."""

    def on_estimate_start(self, estimator: 'SequentialPositionEstimator'):
        pass

    def on_estimate_end(self, estimator: 'SequentialPositionEstimator'):
        pass

    def on_estimate_progress_change(self, estimator: 'SequentialPositionEstimator', progress: float):
        pass


class _StageProgressRelay(PositionEstimatorListener):
    """Maps the progress of one stage onto half of the overall range."""

    def __init__(self, estimator: 'SequentialPositionEstimator', offset: float):
        self.estimator = estimator
        self.offset = offset

    def on_estimate_progress_change(self, stage, progress):
        listener = self.estimator.listener
        if listener is not None:
            listener.on_estimate_progress_change(self.estimator, self.offset + 0.5 * progress)


class SequentialPositionEstimator:
    """
    RSSI-then-ranging robust position estimator.

    Args:
        dimensions: 2 or 3
        sources: Radio sources (at least dimensions + 1)
        fingerprint: Ranging, RSSI and combined readings
        listener: Start / end / progress callbacks
        initial_position: Seed for both stages; the coarse position replaces
            it for the ranging stage when available
        source_quality_scores: One score per source
        fingerprint_readings_quality_scores: One score per fingerprint reading
        config: Per-stage configuration
    """

    def __init__(
        self,
        dimensions: int = 2,
        sources: Optional[Sequence[RadioSource]] = None,
        fingerprint: Optional[Fingerprint] = None,
        listener: Optional[SequentialPositionEstimatorListener] = None,
        initial_position=None,
        source_quality_scores=None,
        fingerprint_readings_quality_scores=None,
        config: Optional[SequentialEstimatorConfig] = None,
    ):
        if dimensions not in (2, 3):
            raise InvalidArgumentError(f"dimensions must be 2 or 3: {dimensions}")
        self._dimensions = dimensions
        self._config = config or SequentialEstimatorConfig()
        self.metrics = get_metrics()

        self._sources: Optional[Sequence[RadioSource]] = None
        self._fingerprint: Optional[Fingerprint] = None
        self._listener = listener
        self._initial_position = None
        self._source_quality_scores = None
        self._reading_quality_scores = None

        self._rssi_estimator: Optional[PositionEstimator] = None
        self._ranging_estimator: Optional[PositionEstimator] = None
        self._coarse_position: Optional[np.ndarray] = None
        self._locked = False

        if sources is not None:
            self.set_sources(sources)
        if fingerprint is not None:
            self.set_fingerprint(fingerprint)
        if initial_position is not None:
            self.set_initial_position(initial_position)
        if source_quality_scores is not None:
            self.set_source_quality_scores(source_quality_scores)
        if fingerprint_readings_quality_scores is not None:
            self.set_fingerprint_readings_quality_scores(fingerprint_readings_quality_scores)

    # =========================================================================
    # Queries
    # =========================================================================

    @property
    def config(self) -> SequentialEstimatorConfig:
        return self._config

    @property
    def number_of_dimensions(self) -> int:
        return self._dimensions

    @property
    def min_required_sources(self) -> int:
        return self._dimensions + 1

    @property
    def sources(self) -> Optional[Sequence[RadioSource]]:
        return self._sources

    @property
    def fingerprint(self) -> Optional[Fingerprint]:
        return self._fingerprint

    @property
    def listener(self) -> Optional[SequentialPositionEstimatorListener]:
        return self._listener

    @property
    def initial_position(self):
        return self._initial_position

    @property
    def source_quality_scores(self):
        """Source quality scores; None when neither stage is weighted."""
        return self._source_quality_scores

    @property
    def fingerprint_readings_quality_scores(self):
        """Reading quality scores; None when neither stage is weighted."""
        return self._reading_quality_scores

    @property
    def rssi_estimator(self) -> Optional[PositionEstimator]:
        return self._rssi_estimator

    @property
    def ranging_estimator(self) -> Optional[PositionEstimator]:
        return self._ranging_estimator

    @property
    def coarse_position(self) -> Optional[np.ndarray]:
        """RSSI stage position of the last estimate, None if it was skipped or failed."""
        return self._coarse_position

    @property
    def result(self) -> Optional[EstimationResult]:
        return None if self._ranging_estimator is None else self._ranging_estimator.result

    @property
    def estimated_position(self) -> Optional[np.ndarray]:
        return None if self.result is None else self.result.position

    @property
    def covariance(self) -> Optional[np.ndarray]:
        return None if self.result is None else self.result.covariance

    @property
    def inliers_data(self) -> Optional[InliersData]:
        return None if self.result is None else self.result.inliers_data

    def is_locked(self) -> bool:
        return self._locked

    def is_ready(self) -> bool:
        """The ranging stage has enough observations."""
        return self._ranging_estimator is not None and self._ranging_estimator.is_ready()

    # =========================================================================
    # Setters
    # =========================================================================

    def _check_unlocked(self):
        if self._locked:
            raise LockedError("Estimator is locked while estimating")

    def _check_quality_scores(self, scores, expected: Optional[int], name: str):
        if scores is None or len(scores) < self.min_required_sources:
            raise InvalidArgumentError(
                f"{name} must have at least {self.min_required_sources} entries"
            )
        if expected is not None and len(scores) != expected:
            raise InvalidArgumentError(
                f"{name} has {len(scores)} entries, expected {expected}"
            )

    def set_sources(self, sources: Sequence[RadioSource]):
        """
        Set the radio sources.

        Raises:
            LockedError: Estimating
            InvalidArgumentError: None, fewer than D+1 sources, or a source
                with the wrong number of dimensions

        Stored source quality scores of a different length are cleared.
        """
        self._check_unlocked()
        if sources is None or len(sources) < self.min_required_sources:
            raise InvalidArgumentError(
                f"At least {self.min_required_sources} sources are required"
            )
        for source in sources:
            if source.dimensions != self._dimensions:
                raise InvalidArgumentError(
                    f"Source '{source.source_id}' has {source.dimensions} dimensions, "
                    f"expected {self._dimensions}"
                )
        self._sources = sources
        scores = self._source_quality_scores
        if scores is not None and len(scores) != len(sources):
            logger.warning(
                f"Clearing {len(scores)} source quality scores that do not match "
                f"{len(sources)} sources"
            )
            self._source_quality_scores = None
        self._build_stages()

    def set_fingerprint(self, fingerprint: Fingerprint):
        """
        Set the fingerprint.

        Raises:
            LockedError: Estimating
            InvalidArgumentError: None or no readings

        Stored reading quality scores of a different length are cleared.
        """
        self._check_unlocked()
        if fingerprint is None or len(fingerprint.readings) == 0:
            raise InvalidArgumentError("Fingerprint must contain readings")
        self._fingerprint = fingerprint
        scores = self._reading_quality_scores
        if scores is not None and len(scores) != len(fingerprint.readings):
            logger.warning(
                f"Clearing {len(scores)} reading quality scores that do not match "
                f"{len(fingerprint.readings)} readings"
            )
            self._reading_quality_scores = None
        self._build_stages()

    def set_listener(self, listener: Optional[SequentialPositionEstimatorListener]):
        self._check_unlocked()
        self._listener = listener

    def set_initial_position(self, initial_position):
        self._check_unlocked()
        if initial_position is not None and len(initial_position) != self._dimensions:
            raise InvalidArgumentError(
                f"initial_position must have {self._dimensions} coordinates"
            )
        self._initial_position = initial_position
        self._build_stages()

    def set_config(self, config: SequentialEstimatorConfig):
        self._check_unlocked()
        if config is None:
            raise InvalidArgumentError("config must not be None")
        self._config = config
        if not config.uses_quality_scores:
            self._source_quality_scores = None
            self._reading_quality_scores = None
        self._build_stages()

    def set_source_quality_scores(self, scores):
        """
        One quality score per source, shared by both stages.

        Ignored when neither stage uses PROSAC / PROMedS.

        Raises:
            LockedError: Estimating
            InvalidArgumentError: None, fewer than D+1 entries, or length
                different from the sources
        """
        self._check_unlocked()
        if not self._config.uses_quality_scores:
            return
        expected = None if self._sources is None else len(self._sources)
        self._check_quality_scores(scores, expected, 'source quality scores')
        self._source_quality_scores = scores
        self._build_stages()

    def set_fingerprint_readings_quality_scores(self, scores):
        """
        One quality score per fingerprint reading.

        Each stage receives the scores of the readings it uses. Ignored when
        neither stage uses PROSAC / PROMedS.

        Raises:
            LockedError: Estimating
            InvalidArgumentError: None, fewer than D+1 entries, or length
                different from the readings
        """
        self._check_unlocked()
        if not self._config.uses_quality_scores:
            return
        expected = None if self._fingerprint is None else len(self._fingerprint.readings)
        self._check_quality_scores(scores, expected, 'reading quality scores')
        self._reading_quality_scores = scores
        self._build_stages()

    # =========================================================================
    # Estimation
    # =========================================================================

    def _build_stages(self):
        if self._sources is None or self._fingerprint is None:
            self._rssi_estimator = None
            self._ranging_estimator = None
            return

        cfg = self._config
        ranging_fp, ranging_indices, rssi_fp, rssi_indices = split_fingerprint(self._fingerprint)
        self._rssi_estimator = self._build_stage(
            cfg.rssi_method, cfg.rssi, rssi_fp, rssi_indices,
            cfg.rssi_position_covariance_used, cfg.rssi_fallback_distance_std,
            cfg.evenly_distribute_rssi_readings, progress_offset=0.0,
        )
        self._ranging_estimator = self._build_stage(
            cfg.ranging_method, cfg.ranging, ranging_fp, ranging_indices,
            cfg.ranging_position_covariance_used, cfg.ranging_fallback_distance_std,
            cfg.evenly_distribute_ranging_readings, progress_offset=0.5,
        )

    def _build_stage(self, method, robust_config, fingerprint, indices, covariance_used,
                     fallback_std, evenly, progress_offset) -> PositionEstimator:
        stage = PositionEstimator(
            self._dimensions,
            method,
            listener=_StageProgressRelay(self, progress_offset),
            initial_position=self._initial_position,
            config=robust_config,
        )
        stage.set_radio_source_position_covariance_used(covariance_used)
        stage.set_fallback_distance_standard_deviation(fallback_std)
        stage.set_evenly_distribute_readings(evenly)
        stage.set_sources(self._sources)
        if len(fingerprint) == 0:
            return stage

        stage.set_fingerprint(fingerprint)
        if self._source_quality_scores is not None:
            stage.set_source_quality_scores(self._source_quality_scores)
        if self._reading_quality_scores is not None and len(indices) >= self.min_required_sources:
            stage.set_fingerprint_readings_quality_scores(
                [self._reading_quality_scores[i] for i in indices]
            )
        return stage

    def estimate(self) -> np.ndarray:
        """
        Estimate the position: RSSI stage first, then the ranging stage.

        Returns:
            Ranging stage position (also available as estimated_position)

        Raises:
            LockedError: Already estimating
            NotReadyError: The ranging stage has too few observations
            RobustEstimationFailedError: The ranging stage found no model
        """
        self._check_unlocked()
        if not self.is_ready():
            self.metrics.increment_drop('not_ready')
            raise NotReadyError("Ranging readings do not provide enough observations")

        self._locked = True
        try:
            self._build_stages()
            self._coarse_position = None
            if self._listener is not None:
                self._listener.on_estimate_start(self)

            if self._rssi_estimator.is_ready():
                try:
                    self._coarse_position = self._rssi_estimator.estimate()
                except RobustEstimationFailedError as e:
                    self.metrics.increment_drop('coarse_estimate_failed')
                    logger.warning(f"RSSI stage failed ({e}), ranging stage runs unseeded")
            else:
                logger.debug("RSSI stage not ready, ranging stage runs unseeded")

            if self._coarse_position is not None:
                self._ranging_estimator.set_initial_position(self._coarse_position)
            position = self._ranging_estimator.estimate()

            if self._listener is not None:
                self._listener.on_estimate_end(self)
        finally:
            self._locked = False

        return position
