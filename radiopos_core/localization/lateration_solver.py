"""
Lateration Solver.

Estimates a 2D or 3D position from reference positions and distances:
1. Linear stage (optional): closed-form least squares on the squared-range
   equations, inhomogeneous (differenced against the first observation) or
   homogeneous (SVD null vector). Reference positions are centered and
   scaled first.
2. Nonlinear stage (optional): Levenberg-Marquardt on the weighted range
   residuals (||x - p_i|| - d_i) / sigma_i.
3. Covariance (optional): (J^T J)^-1 of the weighted Jacobian at the solution.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
from scipy.optimize import least_squares

from radiopos_core.errors import (
    InvalidArgumentError,
    InsufficientObservationsError,
    SingularSystemError,
)
from radiopos_core.metrics import get_metrics

logger = logging.getLogger(__name__)


@dataclass
class LaterationSolverConfig:
    """
    Configuration for the lateration solver.

    Attributes:
        linear_solver_used: Seed the nonlinear stage with a linear solution
        homogeneous_linear_solver_used: Use the homogeneous linear form
        nonlinear_solver_used: Run Levenberg-Marquardt refinement
        max_iterations: Cap on function evaluations of the nonlinear stage
        tolerance: Relative cost / step tolerance of the nonlinear stage
        default_distance_std: Std assumed when none is provided (m)
    """

    linear_solver_used: bool = True
    homogeneous_linear_solver_used: bool = False
    nonlinear_solver_used: bool = True
    max_iterations: int = 1000
    tolerance: float = 1e-12
    default_distance_std: float = 1e-3

    def __post_init__(self):
        """Validate configuration."""
        if self.max_iterations < 1:
            raise InvalidArgumentError(f"max_iterations must be >= 1: {self.max_iterations}")
        if not self.tolerance > 0:
            raise InvalidArgumentError(f"tolerance must be positive: {self.tolerance}")
        if not self.default_distance_std > 0:
            raise InvalidArgumentError(
                f"default_distance_std must be positive: {self.default_distance_std}"
            )


@dataclass
class LaterationResult:
    """
    Output of LaterationSolver.solve().

    Attributes:
        position: Estimated position, length D
        covariance: D x D covariance or None
        cost: 0.5 * sum of squared weighted residuals
        iterations: Function evaluations of the nonlinear stage (0 if skipped)
    """

    position: np.ndarray
    covariance: Optional[np.ndarray]
    cost: float
    iterations: int


class LaterationSolver:
    """
    Range-based position solver for a fixed number of dimensions.

    Usage:
        solver = LaterationSolver(2)
        result = solver.solve(positions, distances, distance_stds)
        print(result.position)
    """

    def __init__(self, dimensions: int, config: Optional[LaterationSolverConfig] = None):
        if dimensions not in (2, 3):
            raise InvalidArgumentError(f"dimensions must be 2 or 3: {dimensions}")
        self.dimensions = dimensions
        self.config = config or LaterationSolverConfig()
        self.metrics = get_metrics()

    @property
    def min_required_observations(self) -> int:
        return self.dimensions + 1

    def solve(
        self,
        positions,
        distances,
        distance_stds=None,
        initial_position=None,
        compute_covariance: bool = False,
        linear: Optional[bool] = None,
        refine: Optional[bool] = None,
    ) -> LaterationResult:
        """
        Solve for the position.

        Args:
            positions: (n, D) reference positions
            distances: (n,) distances, negative values are clamped to 0
            distance_stds: (n,) standard deviations, > 0; None for uniform
            initial_position: Seed when the linear stage is disabled
            compute_covariance: Also return the covariance
            linear: Override config.linear_solver_used
            refine: Override config.nonlinear_solver_used

        Returns:
            LaterationResult

        Raises:
            InvalidArgumentError: Shapes disagree or a std is not positive
            InsufficientObservationsError: Fewer than D+1 observations
            SingularSystemError: Degenerate geometry or non-finite solution
        """
        self.metrics.increment('lateration_solves')
        try:
            return self._solve(
                positions, distances, distance_stds, initial_position,
                compute_covariance, linear, refine,
            )
        except SingularSystemError:
            self.metrics.increment('lateration_failures')
            raise

    def _solve(self, positions, distances, distance_stds, initial_position,
               compute_covariance, linear, refine) -> LaterationResult:
        points, ranges, stds = self._validate(positions, distances, distance_stds)
        use_linear = self.config.linear_solver_used if linear is None else linear
        use_nonlinear = self.config.nonlinear_solver_used if refine is None else refine

        if use_linear:
            if self.config.homogeneous_linear_solver_used:
                x = self._solve_homogeneous(points, ranges)
            else:
                x = self._solve_inhomogeneous(points, ranges)
        elif initial_position is not None:
            x = np.array(initial_position, dtype=float)
            if x.shape != (self.dimensions,):
                raise InvalidArgumentError(
                    f"initial_position must have {self.dimensions} coordinates: {initial_position}"
                )
        else:
            x = points.mean(axis=0)

        iterations = 0
        if use_nonlinear:
            x, iterations = self._refine(points, ranges, stds, x)

        if not np.all(np.isfinite(x)):
            raise SingularSystemError(f"Non-finite solution: {x}")

        residuals = self._residuals(x, points, ranges, stds)
        cost = 0.5 * float(residuals @ residuals)

        covariance = None
        if compute_covariance:
            covariance = self._covariance(x, points, stds)

        return LaterationResult(position=x, covariance=covariance, cost=cost, iterations=iterations)

    def _validate(self, positions, distances, distance_stds) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        points = np.asarray(positions, dtype=float)
        ranges = np.asarray(distances, dtype=float)

        if points.ndim != 2 or points.shape[1] != self.dimensions:
            raise InvalidArgumentError(
                f"positions must be (n, {self.dimensions}), got shape {points.shape}"
            )
        if ranges.shape != (len(points),):
            raise InvalidArgumentError(
                f"{len(points)} positions but {ranges.size} distances"
            )
        if len(points) < self.min_required_observations:
            raise InsufficientObservationsError(
                f"Need at least {self.min_required_observations} observations, got {len(points)}"
            )
        if not (np.all(np.isfinite(points)) and np.all(np.isfinite(ranges))):
            raise InvalidArgumentError("positions and distances must be finite")

        if distance_stds is None:
            stds = np.full(len(points), self.config.default_distance_std)
        else:
            stds = np.asarray(distance_stds, dtype=float)
            if stds.shape != ranges.shape:
                raise InvalidArgumentError(
                    f"{len(points)} positions but {stds.size} distance stds"
                )
            if not np.all(stds > 0):
                raise InvalidArgumentError("distance standard deviations must be positive")

        centered = points - points.mean(axis=0)
        if np.linalg.matrix_rank(centered) < self.dimensions:
            raise SingularSystemError(
                "Reference positions are degenerate (coincident, collinear or coplanar)"
            )

        return points, np.clip(ranges, 0.0, None), stds

    @staticmethod
    def _normalize(points: np.ndarray, ranges: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray, float]:
        center = points.mean(axis=0)
        centered = points - center
        scale = float(np.sqrt(np.mean(np.sum(centered ** 2, axis=1))))
        if scale <= 0:
            raise SingularSystemError("All reference positions coincide")
        return centered / scale, ranges / scale, center, scale

    def _solve_inhomogeneous(self, points: np.ndarray, ranges: np.ndarray) -> np.ndarray:
        """Difference every squared-range equation against the first one."""
        q, r, center, scale = self._normalize(points, ranges)
        sq = np.sum(q ** 2, axis=1)

        a = 2.0 * (q[1:] - q[0])
        b = sq[1:] - sq[0] - r[1:] ** 2 + r[0] ** 2

        y, _, rank, _ = np.linalg.lstsq(a, b, rcond=None)
        if rank < self.dimensions:
            raise SingularSystemError("Linear lateration system is rank deficient")
        return center + scale * y

    def _solve_homogeneous(self, points: np.ndarray, ranges: np.ndarray) -> np.ndarray:
        """Null vector of [-2 q_i, 1, |q_i|^2 - r_i^2] . [y, |y|^2, 1]."""
        q, r, center, scale = self._normalize(points, ranges)
        n = len(q)

        a = np.empty((n, self.dimensions + 2))
        a[:, :self.dimensions] = -2.0 * q
        a[:, self.dimensions] = 1.0
        a[:, self.dimensions + 1] = np.sum(q ** 2, axis=1) - r ** 2

        _, _, vt = np.linalg.svd(a, full_matrices=True)
        h = vt[-1]
        if abs(h[-1]) < np.finfo(float).eps * np.abs(h).max():
            raise SingularSystemError("Homogeneous lateration solution at infinity")
        return center + scale * (h[:self.dimensions] / h[-1])

    @staticmethod
    def _residuals(x: np.ndarray, points: np.ndarray, ranges: np.ndarray, stds: np.ndarray) -> np.ndarray:
        return (np.linalg.norm(x - points, axis=1) - ranges) / stds

    @staticmethod
    def _jacobian(x: np.ndarray, points: np.ndarray, stds: np.ndarray) -> np.ndarray:
        diff = x - points
        norms = np.linalg.norm(diff, axis=1)
        jac = np.zeros_like(diff)
        nonzero = norms > 0
        jac[nonzero] = diff[nonzero] / (norms[nonzero] * stds[nonzero])[:, None]
        return jac

    @classmethod
    def _residual_jacobian(cls, x: np.ndarray, points: np.ndarray, ranges: np.ndarray,
                           stds: np.ndarray) -> np.ndarray:
        """Jacobian with the same signature as _residuals for least_squares."""
        return cls._jacobian(x, points, stds)

    def _refine(self, points: np.ndarray, ranges: np.ndarray, stds: np.ndarray,
                x0: np.ndarray) -> Tuple[np.ndarray, int]:
        result = least_squares(
            self._residuals,
            x0,
            jac=self._residual_jacobian,
            method='lm',
            ftol=self.config.tolerance,
            xtol=self.config.tolerance,
            gtol=self.config.tolerance,
            max_nfev=self.config.max_iterations,
            args=(points, ranges, stds),
        )
        if result.status == 0:
            logger.debug(f"LM stopped at evaluation cap ({result.nfev})")
        elif result.status < 0:
            raise SingularSystemError(f"Levenberg-Marquardt failed: {result.message}")
        return np.asarray(result.x, dtype=float), int(result.nfev)

    def _covariance(self, x: np.ndarray, points: np.ndarray, stds: np.ndarray) -> np.ndarray:
        jac = self._jacobian(x, points, stds)
        if np.linalg.matrix_rank(jac) < self.dimensions:
            raise SingularSystemError("Jacobian is rank deficient, covariance undefined")
        covariance = np.linalg.inv(jac.T @ jac)
        return 0.5 * (covariance + covariance.T)


def solve_lateration(
    positions: Sequence[Sequence[float]],
    distances: Sequence[float],
    distance_stds: Optional[Sequence[float]] = None,
    config: Optional[LaterationSolverConfig] = None,
) -> LaterationResult:
    """Convenience wrapper: infer D from positions and solve with covariance."""
    points = np.asarray(positions, dtype=float)
    if points.ndim != 2:
        raise InvalidArgumentError(f"positions must be 2D array-like, got shape {points.shape}")
    solver = LaterationSolver(points.shape[1], config)
    return solver.solve(points, distances, distance_stds, compute_covariance=True)
