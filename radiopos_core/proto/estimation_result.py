"""
Estimation Result Schema.

Output of one estimate() call: the position, its covariance (when the final
refinement succeeded and covariance is kept) and which observations the
robust estimator classified as inliers.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np


@dataclass
class InliersData:
    """
    Consensus information of the winning model.

    Attributes:
        inliers: Boolean mask over observations
        residuals: Per-observation absolute range residual (m)
        best_score: Score of the winning model (lower is better)
        inlier_threshold: Residual cutoff used to classify inliers (m)
    """

    inliers: np.ndarray
    residuals: np.ndarray
    best_score: float
    inlier_threshold: float

    @property
    def num_inliers(self) -> int:
        return int(np.count_nonzero(self.inliers))

    @property
    def inlier_ratio(self) -> float:
        """Fraction of observations classified as inliers."""
        if len(self.inliers) == 0:
            return 0.0
        return self.num_inliers / len(self.inliers)


@dataclass
class EstimationResult:
    """
    Result of a robust position estimation.

    Attributes:
        position: Estimated position, length D
        covariance: D x D covariance (m^2), None if not computed
        inliers_data: Consensus information, None if not kept
        method: Robust method used (RobustEstimatorMethod value)
        iterations: Number of sampling iterations executed
        refined: Whether the final refinement over inliers succeeded
    """

    position: np.ndarray
    covariance: Optional[np.ndarray]
    inliers_data: Optional[InliersData]
    method: int
    iterations: int
    refined: bool = False

    @property
    def dimensions(self) -> int:
        return len(self.position)

    @property
    def position_std(self) -> Optional[np.ndarray]:
        """Per-axis standard deviation from the covariance diagonal."""
        if self.covariance is None:
            return None
        return np.sqrt(np.clip(np.diag(self.covariance), 0.0, None))

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'position': [float(v) for v in self.position],
            'covariance': None if self.covariance is None else self.covariance.tolist(),
            'num_inliers': None if self.inliers_data is None else self.inliers_data.num_inliers,
            'method': int(self.method),
            'iterations': self.iterations,
            'refined': self.refined,
        }
