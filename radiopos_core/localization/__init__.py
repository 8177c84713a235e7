"""
Localization Module: observation building, lateration, robust estimation.

Key classes:
- ObservationSet / build_observations: sources + fingerprint -> observations
- ReadingSorter: interleaves readings of different sources by quality
- LaterationSolver: linear + Levenberg-Marquardt range solver with covariance
- RobustLaterationSolver: RANSAC / LMedS / MSAC / PROSAC / PROMedS loop
- PositionEstimator: locking facade with listener callbacks
- SequentialPositionEstimator: RSSI coarse stage seeding a ranging stage
"""

from .propagation import (
    SPEED_OF_LIGHT,
    rssi_to_distance,
    distance_to_rssi,
    rssi_distance_std,
)
from .observation_builder import (
    FALLBACK_DISTANCE_STANDARD_DEVIATION,
    Observation,
    ObservationSet,
    ReadingSorter,
    build_observations,
)
from .lateration_solver import (
    LaterationSolver,
    LaterationSolverConfig,
    LaterationResult,
    solve_lateration,
)
from .robust_lateration import (
    RobustEstimatorMethod,
    RobustEstimatorConfig,
    RobustLaterationListener,
    RobustLaterationResult,
    RobustLaterationSolver,
    SolverState,
    required_iterations,
    sampling_probabilities,
    uses_quality_scores,
)
from .position_estimator import (
    DEFAULT_EVENLY_DISTRIBUTE_READINGS,
    DEFAULT_USE_RADIO_SOURCE_POSITION_COVARIANCE,
    EstimatorState,
    PositionEstimator,
    PositionEstimatorListener,
    create,
    method_names,
)
from .sequential_estimator import (
    SequentialEstimatorConfig,
    SequentialPositionEstimator,
    SequentialPositionEstimatorListener,
    split_fingerprint,
)

__all__ = [
    # Propagation
    'SPEED_OF_LIGHT',
    'rssi_to_distance',
    'distance_to_rssi',
    'rssi_distance_std',
    # Observations
    'FALLBACK_DISTANCE_STANDARD_DEVIATION',
    'Observation',
    'ObservationSet',
    'ReadingSorter',
    'build_observations',
    # Lateration
    'LaterationSolver',
    'LaterationSolverConfig',
    'LaterationResult',
    'solve_lateration',
    # Robust estimation
    'RobustEstimatorMethod',
    'RobustEstimatorConfig',
    'RobustLaterationListener',
    'RobustLaterationResult',
    'RobustLaterationSolver',
    'SolverState',
    'required_iterations',
    'sampling_probabilities',
    'uses_quality_scores',
    # Facade
    'DEFAULT_EVENLY_DISTRIBUTE_READINGS',
    'DEFAULT_USE_RADIO_SOURCE_POSITION_COVARIANCE',
    'EstimatorState',
    'PositionEstimator',
    'PositionEstimatorListener',
    'create',
    'method_names',
    # Sequential
    'SequentialEstimatorConfig',
    'SequentialPositionEstimator',
    'SequentialPositionEstimatorListener',
    'split_fingerprint',
]
