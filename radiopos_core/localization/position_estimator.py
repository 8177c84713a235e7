"""
Position Estimator.

Facade over observation building and robust lateration. Holds the radio
sources, the fingerprint, quality scores and all tuning parameters; keeps
the observation cache in sync with them; and runs one robust estimation per
estimate() call.

State:
    NOT_READY -> READY      sources and fingerprint yield enough observations
    READY -> LOCKED         estimate() running (listener callbacks included)
    LOCKED -> READY         estimate() returned or raised

While LOCKED every setter and estimate() raise LockedError.

Usage:
    estimator = create(sources=sources, fingerprint=fingerprint)
    position = estimator.estimate()
    print(position, estimator.covariance)
"""

import logging
from enum import IntEnum
from typing import List, Optional, Sequence

import numpy as np

from radiopos_core.errors import (
    InvalidArgumentError,
    LockedError,
    NotReadyError,
    PositioningError,
)
from radiopos_core.localization.observation_builder import (
    FALLBACK_DISTANCE_STANDARD_DEVIATION,
    ObservationSet,
    build_observations,
)
from radiopos_core.localization.robust_lateration import (
    RobustEstimatorConfig,
    RobustEstimatorMethod,
    RobustLaterationListener,
    RobustLaterationSolver,
    uses_quality_scores,
)
from radiopos_core.metrics import get_metrics
from radiopos_core.proto.estimation_result import EstimationResult, InliersData
from radiopos_core.proto.radio_source import RadioSource
from radiopos_core.proto.reading import Fingerprint

logger = logging.getLogger(__name__)

DEFAULT_METHOD = RobustEstimatorMethod.RANSAC
DEFAULT_QUALITY_METHOD = RobustEstimatorMethod.PROMEDS
DEFAULT_EVENLY_DISTRIBUTE_READINGS = True
DEFAULT_USE_RADIO_SOURCE_POSITION_COVARIANCE = True


class EstimatorState(IntEnum):
    """Lifecycle state of a PositionEstimator."""

    NOT_READY = 0
    READY = 1
    LOCKED = 2


class PositionEstimatorListener:
    """
    Callbacks of a PositionEstimator.

    All callbacks run while the estimator is LOCKED. Override what you need.
    """

    def on_estimate_start(self, estimator: 'PositionEstimator'):
        pass

    def on_estimate_end(self, estimator: 'PositionEstimator'):
        pass

    def on_estimate_next_iteration(self, estimator: 'PositionEstimator', iteration: int):
        pass

    def on_estimate_progress_change(self, estimator: 'PositionEstimator', progress: float):
        pass


class _RobustListenerAdapter(RobustLaterationListener):
    """Relays robust solver progress to the estimator's listener."""

    def __init__(self, estimator: 'PositionEstimator'):
        self.estimator = estimator

    def on_solve_next_iteration(self, solver, iteration):
        listener = self.estimator.listener
        if listener is not None:
            listener.on_estimate_next_iteration(self.estimator, iteration)

    def on_solve_progress_change(self, solver, progress):
        listener = self.estimator.listener
        if listener is not None:
            listener.on_estimate_progress_change(self.estimator, progress)


class PositionEstimator:
    """
    Robust position estimator for one fingerprint.

    Args:
        dimensions: 2 or 3
        method: Robust method
        sources: Radio sources (at least dimensions + 1)
        fingerprint: Readings at the unknown location
        listener: Progress callbacks
        initial_position: Seed used when the linear solver is disabled
        source_quality_scores: One score per source (PROSAC / PROMedS only)
        fingerprint_readings_quality_scores: One score per reading
            (PROSAC / PROMedS only)
        config: Robust loop configuration
    """

    def __init__(
        self,
        dimensions: int = 2,
        method: RobustEstimatorMethod = DEFAULT_METHOD,
        sources: Optional[Sequence[RadioSource]] = None,
        fingerprint: Optional[Fingerprint] = None,
        listener: Optional[PositionEstimatorListener] = None,
        initial_position=None,
        source_quality_scores=None,
        fingerprint_readings_quality_scores=None,
        config: Optional[RobustEstimatorConfig] = None,
    ):
        if dimensions not in (2, 3):
            raise InvalidArgumentError(f"dimensions must be 2 or 3: {dimensions}")
        self._dimensions = dimensions
        self._method = RobustEstimatorMethod(method)
        self.metrics = get_metrics()

        self._robust = RobustLaterationSolver(
            self._method, dimensions, config, listener=_RobustListenerAdapter(self)
        )

        self._sources: Optional[Sequence[RadioSource]] = None
        self._fingerprint: Optional[Fingerprint] = None
        self._listener = listener
        self._initial_position = None
        self._source_quality_scores = None
        self._reading_quality_scores = None
        self._position_covariance_used = DEFAULT_USE_RADIO_SOURCE_POSITION_COVARIANCE
        self._fallback_distance_std = FALLBACK_DISTANCE_STANDARD_DEVIATION
        self._evenly_distribute_readings = DEFAULT_EVENLY_DISTRIBUTE_READINGS

        self._observations: Optional[ObservationSet] = None
        self._result: Optional[EstimationResult] = None
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
    def method(self) -> RobustEstimatorMethod:
        return self._method

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
    def listener(self) -> Optional[PositionEstimatorListener]:
        return self._listener

    @property
    def initial_position(self):
        return self._initial_position

    @property
    def source_quality_scores(self):
        """Source quality scores; always None for unweighted methods."""
        return self._source_quality_scores

    @property
    def fingerprint_readings_quality_scores(self):
        """Reading quality scores; always None for unweighted methods."""
        return self._reading_quality_scores

    @property
    def radio_source_position_covariance_used(self) -> bool:
        return self._position_covariance_used

    @property
    def fallback_distance_standard_deviation(self) -> float:
        return self._fallback_distance_std

    @property
    def evenly_distribute_readings(self) -> bool:
        return self._evenly_distribute_readings

    @property
    def confidence(self) -> float:
        return self._robust.config.confidence

    @property
    def max_iterations(self) -> int:
        return self._robust.config.max_iterations

    @property
    def progress_delta(self) -> float:
        return self._robust.config.progress_delta

    @property
    def threshold(self) -> float:
        return self._robust.config.threshold

    @property
    def stop_threshold(self) -> float:
        return self._robust.config.stop_threshold

    @property
    def preliminary_subset_size(self) -> int:
        return self._robust.preliminary_subset_size

    @property
    def linear_solver_used(self) -> bool:
        return self._robust.config.linear_solver_used

    @property
    def homogeneous_linear_solver_used(self) -> bool:
        return self._robust.config.homogeneous_linear_solver_used

    @property
    def preliminary_solution_refined(self) -> bool:
        return self._robust.config.preliminary_solution_refined

    @property
    def result_refined(self) -> bool:
        return self._robust.config.result_refined

    @property
    def covariance_kept(self) -> bool:
        return self._robust.config.covariance_kept

    @property
    def random_seed(self) -> Optional[int]:
        return self._robust.config.random_seed

    @property
    def observations(self) -> Optional[ObservationSet]:
        return self._observations

    @property
    def result(self) -> Optional[EstimationResult]:
        return self._result

    @property
    def estimated_position(self) -> Optional[np.ndarray]:
        return None if self._result is None else self._result.position

    @property
    def covariance(self) -> Optional[np.ndarray]:
        return None if self._result is None else self._result.covariance

    @property
    def inliers_data(self) -> Optional[InliersData]:
        return None if self._result is None else self._result.inliers_data

    @property
    def state(self) -> EstimatorState:
        if self._locked:
            return EstimatorState.LOCKED
        return EstimatorState.READY if self.is_ready() else EstimatorState.NOT_READY

    def is_locked(self) -> bool:
        return self._locked

    def is_ready(self) -> bool:
        """Sources and fingerprint give enough observations from enough sources."""
        obs = self._observations
        if self._sources is None or self._fingerprint is None or obs is None:
            return False
        return (
            len(obs) >= self.preliminary_subset_size
            and obs.num_distinct_sources >= self.min_required_sources
        )

    # =========================================================================
    # Setters
    # =========================================================================

    def _check_unlocked(self):
        if self._locked:
            raise LockedError("Estimator is locked while estimating")

    @staticmethod
    def _stale(scores, expected: int) -> bool:
        return scores is not None and len(scores) != expected

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
        if self._stale(self._source_quality_scores, len(sources)):
            logger.warning(
                f"Clearing {len(self._source_quality_scores)} source quality scores "
                f"that do not match {len(sources)} sources"
            )
            self._source_quality_scores = None
        self._build_observations()

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
        num_readings = len(fingerprint.readings)
        if self._stale(self._reading_quality_scores, num_readings):
            logger.warning(
                f"Clearing {len(self._reading_quality_scores)} reading quality scores "
                f"that do not match {num_readings} readings"
            )
            self._reading_quality_scores = None
        self._build_observations()

    def set_listener(self, listener: Optional[PositionEstimatorListener]):
        self._check_unlocked()
        self._listener = listener

    def set_initial_position(self, initial_position):
        """Seed for preliminary fits when the linear solver is disabled. None clears."""
        self._check_unlocked()
        if initial_position is not None and len(initial_position) != self._dimensions:
            raise InvalidArgumentError(
                f"initial_position must have {self._dimensions} coordinates"
            )
        self._initial_position = initial_position

    def set_radio_source_position_covariance_used(self, used: bool):
        self._check_unlocked()
        self._position_covariance_used = used
        self._build_observations()

    def set_fallback_distance_standard_deviation(self, std: float):
        self._check_unlocked()
        if not std > 0:
            raise InvalidArgumentError(f"Fallback distance std must be positive: {std}")
        self._fallback_distance_std = std
        self._build_observations()

    def set_evenly_distribute_readings(self, evenly: bool):
        self._check_unlocked()
        self._evenly_distribute_readings = evenly
        self._build_observations()

    def set_confidence(self, confidence: float):
        self._check_unlocked()
        self._robust.set_confidence(confidence)

    def set_max_iterations(self, max_iterations: int):
        self._check_unlocked()
        self._robust.set_max_iterations(max_iterations)

    def set_progress_delta(self, progress_delta: float):
        self._check_unlocked()
        self._robust.set_progress_delta(progress_delta)

    def set_threshold(self, threshold: float):
        self._check_unlocked()
        self._robust.set_threshold(threshold)

    def set_stop_threshold(self, stop_threshold: float):
        self._check_unlocked()
        self._robust.set_stop_threshold(stop_threshold)

    def set_preliminary_subset_size(self, size: int):
        """
        Observations drawn per sample.

        Raises:
            LockedError: Estimating
            InvalidArgumentError: size < D+1
        """
        self._check_unlocked()
        self._robust.set_preliminary_subset_size(size)
        self._build_observations()

    def set_linear_solver_used(self, used: bool):
        self._check_unlocked()
        self._robust.set_linear_solver_used(used)

    def set_homogeneous_linear_solver_used(self, used: bool):
        self._check_unlocked()
        self._robust.set_homogeneous_linear_solver_used(used)

    def set_preliminary_solution_refined(self, refined: bool):
        self._check_unlocked()
        self._robust.set_preliminary_solution_refined(refined)

    def set_result_refined(self, refined: bool):
        self._check_unlocked()
        self._robust.set_result_refined(refined)

    def set_covariance_kept(self, kept: bool):
        self._check_unlocked()
        self._robust.set_covariance_kept(kept)

    def set_random_seed(self, seed: Optional[int]):
        self._check_unlocked()
        self._robust.set_random_seed(seed)

    def _check_quality_scores(self, scores, expected: Optional[int], name: str):
        if scores is None or len(scores) < self.min_required_sources:
            raise InvalidArgumentError(
                f"{name} must have at least {self.min_required_sources} entries"
            )
        if expected is not None and len(scores) != expected:
            raise InvalidArgumentError(
                f"{name} has {len(scores)} entries, expected {expected}"
            )

    def set_source_quality_scores(self, scores):
        """
        One quality score per source, higher is better.

        Ignored by RANSAC / LMedS / MSAC.

        Raises:
            LockedError: Estimating
            InvalidArgumentError: None, fewer than D+1 entries, or length
                different from the sources
        """
        self._check_unlocked()
        if not uses_quality_scores(self._method):
            return
        expected = None if self._sources is None else len(self._sources)
        self._check_quality_scores(scores, expected, 'source quality scores')
        self._source_quality_scores = scores
        self._build_observations()

    def set_fingerprint_readings_quality_scores(self, scores):
        """
        One quality score per fingerprint reading, higher is better.

        Ignored by RANSAC / LMedS / MSAC.

        Raises:
            LockedError: Estimating
            InvalidArgumentError: None, fewer than D+1 entries, or length
                different from the readings
        """
        self._check_unlocked()
        if not uses_quality_scores(self._method):
            return
        expected = None if self._fingerprint is None else len(self._fingerprint.readings)
        self._check_quality_scores(scores, expected, 'reading quality scores')
        self._reading_quality_scores = scores
        self._build_observations()

    # =========================================================================
    # Estimation
    # =========================================================================

    def build_observations(self):
        """
        Rebuild the observation cache from the current inputs.

        Raises:
            LockedError: Estimating
        """
        self._check_unlocked()
        self._build_observations()

    def _build_observations(self):
        if self._sources is None or self._fingerprint is None:
            self._observations = None
            return
        self.metrics.increment('cache_rebuilds')
        self._observations = build_observations(
            self._sources,
            self._fingerprint,
            source_quality_scores=self._source_quality_scores,
            reading_quality_scores=self._reading_quality_scores,
            use_position_covariance=self._position_covariance_used,
            fallback_distance_std=self._fallback_distance_std,
            evenly_distribute=self._evenly_distribute_readings,
        )

    def estimate(self) -> np.ndarray:
        """
        Estimate the position.

        Returns:
            Estimated position (also available as estimated_position)

        Raises:
            LockedError: Already estimating
            NotReadyError: Not enough observations
            RobustEstimationFailedError: No subset produced a model
        """
        self._check_unlocked()
        if not self.is_ready():
            self.metrics.increment_drop('not_ready')
            raise NotReadyError("Sources and fingerprint do not provide enough observations")

        self._locked = True
        try:
            self._result = None
            if self._listener is not None:
                self._listener.on_estimate_start(self)

            self._build_observations()
            initial = None
            if self._initial_position is not None:
                initial = np.asarray(self._initial_position, dtype=float)
            robust = self._robust.solve(self._observations, initial_position=initial)

            self._result = EstimationResult(
                position=robust.position,
                covariance=robust.covariance,
                inliers_data=robust.inliers_data,
                method=self._method,
                iterations=robust.iterations,
                refined=robust.refined,
            )
            self.metrics.increment('position_estimates')
            logger.debug(
                f"Estimated {self._result.position} with {self._method.name} "
                f"({robust.iterations} iterations)"
            )

            if self._listener is not None:
                self._listener.on_estimate_end(self)
        except PositioningError:
            self.metrics.increment('position_estimate_failures')
            raise
        finally:
            self._locked = False

        return self._result.position


def create(
    method: Optional[RobustEstimatorMethod] = None,
    dimensions: Optional[int] = None,
    sources: Optional[Sequence[RadioSource]] = None,
    fingerprint: Optional[Fingerprint] = None,
    listener: Optional[PositionEstimatorListener] = None,
    initial_position=None,
    source_quality_scores=None,
    fingerprint_readings_quality_scores=None,
    config: Optional[RobustEstimatorConfig] = None,
) -> PositionEstimator:
    """
    Create a PositionEstimator with default method selection.

    When method is None: PROMedS if any quality score array is given,
    otherwise RANSAC. When dimensions is None it is taken from the first
    source, or 2 without sources.
    """
    if method is None:
        has_scores = source_quality_scores is not None or fingerprint_readings_quality_scores is not None
        method = DEFAULT_QUALITY_METHOD if has_scores else DEFAULT_METHOD
    if dimensions is None:
        dimensions = sources[0].dimensions if sources else 2

    return PositionEstimator(
        dimensions=dimensions,
        method=method,
        sources=sources,
        fingerprint=fingerprint,
        listener=listener,
        initial_position=initial_position,
        source_quality_scores=source_quality_scores,
        fingerprint_readings_quality_scores=fingerprint_readings_quality_scores,
        config=config,
    )


def method_names() -> List[str]:
    """Names accepted by RobustEstimatorMethod[...]."""
    return [m.name for m in RobustEstimatorMethod]
