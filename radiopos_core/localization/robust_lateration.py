"""
Robust Lateration.

One consensus loop for five robust methods. Each iteration samples a
minimal (or preliminary-sized) subset of observations, fits it with the
lateration solver and scores the fit against every observation. The best
model is then refined over its inliers.

Methods differ only in how subsets are drawn and how fits are scored:

    method    sampling          score (lower is better)
    RANSAC    uniform           -(# residuals < threshold)
    LMEDS     uniform           median(residual^2)
    MSAC      uniform           sum(min(residual^2, threshold^2))
    PROSAC    quality-weighted  -(# residuals < threshold)
    PROMEDS   quality-weighted  median(residual^2)

After every improvement the number of iterations needed to reach the
requested confidence is recomputed from the inlier ratio:

    N = log(1 - confidence) / log(1 - ratio^s)

capped at max_iterations. For LMedS / PROMedS the ratio counts residuals
below the fixed threshold, not below the model's own robust scale.
"""

import logging
import math
from dataclasses import dataclass, replace
from enum import IntEnum
from typing import Dict, Optional, Tuple

import numpy as np

from radiopos_core.errors import (
    InvalidArgumentError,
    LaterationError,
    LockedError,
    RobustEstimationFailedError,
)
from radiopos_core.localization.lateration_solver import (
    LaterationSolver,
    LaterationSolverConfig,
)
from radiopos_core.localization.observation_builder import ObservationSet
from radiopos_core.metrics import get_metrics
from radiopos_core.proto.estimation_result import InliersData

logger = logging.getLogger(__name__)


class RobustEstimatorMethod(IntEnum):
    """Robust estimation method."""

    RANSAC = 0
    LMEDS = 1
    MSAC = 2
    PROSAC = 3
    PROMEDS = 4


class SolverState(IntEnum):
    """Phase of a RobustLaterationSolver."""

    IDLE = 0
    SAMPLING = 1
    SCORING = 2
    REFINING = 3
    DONE = 4


@dataclass(frozen=True)
class _Variant:
    weighted_sampling: bool
    score: str  # 'inlier_count' | 'median' | 'truncated'


VARIANTS: Dict[RobustEstimatorMethod, _Variant] = {
    RobustEstimatorMethod.RANSAC: _Variant(False, 'inlier_count'),
    RobustEstimatorMethod.LMEDS: _Variant(False, 'median'),
    RobustEstimatorMethod.MSAC: _Variant(False, 'truncated'),
    RobustEstimatorMethod.PROSAC: _Variant(True, 'inlier_count'),
    RobustEstimatorMethod.PROMEDS: _Variant(True, 'median'),
}

# LMedS robust scale: 1.4826 makes the median absolute residual a
# consistent estimator of sigma under Gaussian noise.
LMEDS_SCALE_FACTOR = 1.4826
LMEDS_INLIER_FACTOR = 2.5

# D+1 for the smallest supported dimension; solvers check D+1 per instance
MIN_SUBSET_SIZE = 3


def uses_quality_scores(method: RobustEstimatorMethod) -> bool:
    """Whether method samples according to observation quality scores."""
    return VARIANTS[RobustEstimatorMethod(method)].weighted_sampling


@dataclass
class RobustEstimatorConfig:
    """
    Configuration for the robust lateration loop.

    Attributes:
        confidence: Probability that at least one sample is outlier-free
        max_iterations: Hard cap on sampling iterations
        progress_delta: Minimum progress change between notifications
        threshold: Inlier residual cutoff for RANSAC / MSAC / PROSAC, and
            the cutoff LMedS / PROMedS use to estimate the inlier ratio (m)
        stop_threshold: Early-stop and minimum inlier cutoff for
            LMedS / PROMedS (m)
        preliminary_subset_size: Observations per sample; None means D+1
        result_refined: Refine the best model over its inliers
        covariance_kept: Compute covariance during refinement
        linear_solver_used: Seed preliminary fits with the linear solver
        homogeneous_linear_solver_used: Use the homogeneous linear form
        preliminary_solution_refined: Run LM on each preliminary fit
        random_seed: Seed for subset sampling; None for OS entropy
    """

    confidence: float = 0.99
    max_iterations: int = 5000
    progress_delta: float = 0.05
    threshold: float = 1e-2
    stop_threshold: float = 1e-4
    preliminary_subset_size: Optional[int] = None
    result_refined: bool = True
    covariance_kept: bool = True
    linear_solver_used: bool = True
    homogeneous_linear_solver_used: bool = False
    preliminary_solution_refined: bool = True
    random_seed: Optional[int] = None

    def __post_init__(self):
        """Validate configuration."""
        if not 0.0 < self.confidence < 1.0:
            raise InvalidArgumentError(f"confidence must be in (0, 1): {self.confidence}")
        if self.max_iterations < 1:
            raise InvalidArgumentError(f"max_iterations must be >= 1: {self.max_iterations}")
        if not 0.0 <= self.progress_delta <= 1.0:
            raise InvalidArgumentError(f"progress_delta must be in [0, 1]: {self.progress_delta}")
        if not self.threshold > 0:
            raise InvalidArgumentError(f"threshold must be positive: {self.threshold}")
        if not self.stop_threshold > 0:
            raise InvalidArgumentError(f"stop_threshold must be positive: {self.stop_threshold}")
        if (self.preliminary_subset_size is not None
                and self.preliminary_subset_size < MIN_SUBSET_SIZE):
            raise InvalidArgumentError(
                f"preliminary_subset_size must be >= {MIN_SUBSET_SIZE}: "
                f"{self.preliminary_subset_size}"
            )


class RobustLaterationListener:
    """Callbacks of a RobustLaterationSolver. All methods are no-ops."""

    def on_solve_start(self, solver: 'RobustLaterationSolver'):
        pass

    def on_solve_end(self, solver: 'RobustLaterationSolver'):
        pass

    def on_solve_next_iteration(self, solver: 'RobustLaterationSolver', iteration: int):
        pass

    def on_solve_progress_change(self, solver: 'RobustLaterationSolver', progress: float):
        pass


@dataclass
class RobustLaterationResult:
    """
    Output of RobustLaterationSolver.solve().

    Attributes:
        position: Estimated position
        covariance: D x D covariance, only set when the refinement succeeded
            and covariance is kept
        inliers_data: Consensus of the best preliminary model
        iterations: Sampling iterations executed
        refined: Whether the final refinement succeeded
    """

    position: np.ndarray
    covariance: Optional[np.ndarray]
    inliers_data: InliersData
    iterations: int
    refined: bool


@dataclass
class _Candidate:
    position: np.ndarray
    score: float
    inliers: np.ndarray
    residuals: np.ndarray
    cutoff: float


def required_iterations(inlier_ratio: float, subset_size: int, confidence: float,
                        max_iterations: int) -> int:
    """Iterations needed so an all-inlier subset is drawn with given confidence."""
    if inlier_ratio <= 0.0:
        return max_iterations
    outlier_free = inlier_ratio ** subset_size
    if outlier_free >= 1.0:
        return 1
    n = math.log(1.0 - confidence) / math.log(1.0 - outlier_free)
    if not math.isfinite(n):
        return max_iterations
    return int(min(max_iterations, max(1, math.ceil(n))))


def sampling_probabilities(quality_scores: Optional[np.ndarray]) -> Optional[np.ndarray]:
    """
    Sampling probabilities proportional to quality.

    Scores that are not all positive are shifted into a positive range that
    keeps their order. Returns None (uniform) when scores are absent or all
    equal.
    """
    if quality_scores is None or len(quality_scores) == 0:
        return None
    q = np.asarray(quality_scores, dtype=float)
    if not np.all(np.isfinite(q)):
        return None
    q_min, q_max = float(q.min()), float(q.max())
    if q_max == q_min:
        return None
    if q_min <= 0.0:
        q = q - q_min + (q_max - q_min) / len(q)
    return q / q.sum()


class RobustLaterationSolver:
    """
    Consensus-based lateration over an ObservationSet.

    While solve() runs the solver is locked: every set_* method raises
    LockedError, including when called from a listener callback.

    Usage:
        solver = RobustLaterationSolver(RobustEstimatorMethod.LMEDS, 2)
        result = solver.solve(observations)
    """

    def __init__(
        self,
        method: RobustEstimatorMethod,
        dimensions: int,
        config: Optional[RobustEstimatorConfig] = None,
        listener: Optional[RobustLaterationListener] = None,
    ):
        if dimensions not in (2, 3):
            raise InvalidArgumentError(f"dimensions must be 2 or 3: {dimensions}")
        self.method = RobustEstimatorMethod(method)
        self.dimensions = dimensions
        self.config = config or RobustEstimatorConfig()
        self._check_subset_size(self.config.preliminary_subset_size)
        self.listener = listener
        self.metrics = get_metrics()

        self._locked = False
        self._state = SolverState.IDLE

    # -------------------------------------------------------------------------
    # State and configuration
    # -------------------------------------------------------------------------

    @property
    def state(self) -> SolverState:
        return self._state

    def is_locked(self) -> bool:
        return self._locked

    @property
    def min_required_observations(self) -> int:
        return self.dimensions + 1

    @property
    def preliminary_subset_size(self) -> int:
        """Configured subset size, or D+1 when unset."""
        if self.config.preliminary_subset_size is None:
            return self.min_required_observations
        return self.config.preliminary_subset_size

    def _check_unlocked(self):
        if self._locked:
            raise LockedError("Robust solver is running")

    def _check_subset_size(self, size: Optional[int]):
        if size is not None and size < self.min_required_observations:
            raise InvalidArgumentError(
                f"preliminary_subset_size must be >= {self.min_required_observations}: {size}"
            )

    def _update_config(self, **changes):
        self._check_unlocked()
        self.config = replace(self.config, **changes)

    def set_listener(self, listener: Optional[RobustLaterationListener]):
        self._check_unlocked()
        self.listener = listener

    def set_confidence(self, confidence: float):
        self._update_config(confidence=confidence)

    def set_max_iterations(self, max_iterations: int):
        self._update_config(max_iterations=max_iterations)

    def set_progress_delta(self, progress_delta: float):
        self._update_config(progress_delta=progress_delta)

    def set_threshold(self, threshold: float):
        self._update_config(threshold=threshold)

    def set_stop_threshold(self, stop_threshold: float):
        self._update_config(stop_threshold=stop_threshold)

    def set_preliminary_subset_size(self, size: int):
        self._check_unlocked()
        self._check_subset_size(size)
        self._update_config(preliminary_subset_size=size)

    def set_result_refined(self, refined: bool):
        self._update_config(result_refined=refined)

    def set_covariance_kept(self, kept: bool):
        self._update_config(covariance_kept=kept)

    def set_linear_solver_used(self, used: bool):
        self._update_config(linear_solver_used=used)

    def set_homogeneous_linear_solver_used(self, used: bool):
        self._update_config(homogeneous_linear_solver_used=used)

    def set_preliminary_solution_refined(self, refined: bool):
        self._update_config(preliminary_solution_refined=refined)

    def set_random_seed(self, seed: Optional[int]):
        self._update_config(random_seed=seed)

    # -------------------------------------------------------------------------
    # Scoring
    # -------------------------------------------------------------------------

    def _score(self, residuals: np.ndarray, subset_size: int) -> Tuple[float, np.ndarray, float]:
        """
        Score a model from its absolute residuals.

        Returns:
            (score, inlier mask, inlier cutoff); lower scores are better
        """
        variant = VARIANTS[self.method]
        threshold = self.config.threshold

        if variant.score == 'inlier_count':
            inliers = residuals < threshold
            return -float(np.count_nonzero(inliers)), inliers, threshold

        if variant.score == 'truncated':
            inliers = residuals < threshold
            return float(np.sum(np.minimum(residuals ** 2, threshold ** 2))), inliers, threshold

        n = len(residuals)
        median = float(np.median(residuals ** 2))
        sigma = LMEDS_SCALE_FACTOR * (1.0 + 5.0 / max(n - subset_size, 1)) * math.sqrt(median)
        cutoff = max(LMEDS_INLIER_FACTOR * sigma, self.config.stop_threshold)
        return median, residuals <= cutoff, cutoff

    def _consensus_ratio(self, residuals: np.ndarray, inliers: np.ndarray) -> float:
        """Inlier ratio driving the adaptive iteration count."""
        if VARIANTS[self.method].score == 'median':
            return np.count_nonzero(residuals < self.config.threshold) / len(residuals)
        return np.count_nonzero(inliers) / len(residuals)

    def _stops_early(self, candidate: _Candidate) -> bool:
        if VARIANTS[self.method].score != 'median':
            return False
        return math.sqrt(candidate.score) <= self.config.stop_threshold

    # -------------------------------------------------------------------------
    # Solve
    # -------------------------------------------------------------------------

    def solve(
        self,
        observations: ObservationSet,
        initial_position: Optional[np.ndarray] = None,
    ) -> RobustLaterationResult:
        """
        Run the consensus loop and refine the best model.

        Args:
            observations: Observations to fit
            initial_position: Seed for preliminary fits when the linear
                solver is disabled

        Returns:
            RobustLaterationResult

        Raises:
            LockedError: Already solving
            RobustEstimationFailedError: Too few observations or no subset
                produced a model
        """
        self._check_unlocked()

        n = len(observations)
        subset_size = self.preliminary_subset_size
        if n < subset_size:
            self.metrics.increment_drop('estimation_failed')
            raise RobustEstimationFailedError(
                f"{n} observations, need at least {subset_size}"
            )

        self._locked = True
        try:
            if self.listener is not None:
                self.listener.on_solve_start(self)
            result = self._run(observations, subset_size, initial_position)
            self._state = SolverState.DONE
            if self.listener is not None:
                self.listener.on_solve_end(self)
            return result
        finally:
            self._locked = False
            if self._state != SolverState.DONE:
                self._state = SolverState.IDLE

    def _run(self, observations: ObservationSet, subset_size: int,
             initial_position: Optional[np.ndarray]) -> RobustLaterationResult:
        config = self.config
        n = len(observations)
        rng = np.random.default_rng(config.random_seed)
        probabilities = None
        if VARIANTS[self.method].weighted_sampling:
            probabilities = sampling_probabilities(observations.quality_scores)

        preliminary = LaterationSolver(self.dimensions, LaterationSolverConfig(
            linear_solver_used=config.linear_solver_used,
            homogeneous_linear_solver_used=config.homogeneous_linear_solver_used,
            nonlinear_solver_used=config.preliminary_solution_refined,
        ))

        best: Optional[_Candidate] = None
        required = config.max_iterations
        iteration = 0
        last_progress = 0.0

        while iteration < required:
            iteration += 1
            self._state = SolverState.SAMPLING
            subset = rng.choice(n, size=subset_size, replace=False, p=probabilities)

            stop = False
            try:
                fit = preliminary.solve(
                    observations.positions[subset],
                    observations.distances[subset],
                    observations.distance_stds[subset],
                    initial_position=initial_position,
                )
            except LaterationError as e:
                self.metrics.increment_drop('singular_subset')
                logger.debug(f"Iteration {iteration}: subset {subset.tolist()} skipped ({e})")
            else:
                self._state = SolverState.SCORING
                residuals = np.abs(
                    np.linalg.norm(observations.positions - fit.position, axis=1)
                    - observations.distances
                )
                score, inliers, cutoff = self._score(residuals, subset_size)
                if best is None or score < best.score:
                    best = _Candidate(fit.position, score, inliers, residuals, cutoff)
                    ratio = self._consensus_ratio(residuals, inliers)
                    required = required_iterations(
                        ratio, subset_size, config.confidence, config.max_iterations
                    )
                    stop = self._stops_early(best)

            if self.listener is not None:
                self.listener.on_solve_next_iteration(self, iteration)
                progress = min(1.0, iteration / required)
                if progress - last_progress >= config.progress_delta and progress > last_progress:
                    last_progress = progress
                    self.listener.on_solve_progress_change(self, progress)

            if stop:
                break

        self.metrics.increment('robust_iterations', iteration)
        self.metrics.record_histogram('robust_iterations_per_estimate', iteration)

        if best is None:
            self.metrics.increment_drop('estimation_failed')
            raise RobustEstimationFailedError(
                f"No usable subset in {iteration} iterations"
            )

        inliers_data = InliersData(
            inliers=best.inliers,
            residuals=best.residuals,
            best_score=best.score,
            inlier_threshold=best.cutoff,
        )
        self.metrics.record_histogram('inlier_ratio', inliers_data.inlier_ratio)

        position, covariance, refined = best.position, None, False
        if config.result_refined:
            position, covariance, refined = self._refine(observations, best)

        if self.listener is not None and last_progress < 1.0:
            self.listener.on_solve_progress_change(self, 1.0)

        logger.debug(
            f"{self.method.name}: {iteration} iterations, "
            f"{inliers_data.num_inliers}/{n} inliers, refined={refined}"
        )
        return RobustLaterationResult(
            position=position,
            covariance=covariance,
            inliers_data=inliers_data,
            iterations=iteration,
            refined=refined,
        )

    def _refine(self, observations: ObservationSet,
                best: _Candidate) -> Tuple[np.ndarray, Optional[np.ndarray], bool]:
        """LM over the inliers seeded by the best model; falls back to it on failure."""
        self._state = SolverState.REFINING
        idx = np.flatnonzero(best.inliers)
        if len(idx) < self.min_required_observations:
            self.metrics.increment_drop('refinement_failed')
            logger.warning(
                f"Only {len(idx)} inliers, keeping unrefined position"
            )
            return best.position, None, False

        solver = LaterationSolver(self.dimensions, LaterationSolverConfig(
            linear_solver_used=False,
            nonlinear_solver_used=True,
        ))
        try:
            result = solver.solve(
                observations.positions[idx],
                observations.distances[idx],
                observations.distance_stds[idx],
                initial_position=best.position,
                compute_covariance=self.config.covariance_kept,
            )
        except LaterationError as e:
            self.metrics.increment_drop('refinement_failed')
            logger.warning(f"Refinement failed ({e}), keeping unrefined position")
            return best.position, None, False

        return result.position, result.covariance, True
