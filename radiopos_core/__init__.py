"""
Radio Positioning (radiopos) Core Package.

Robust position estimation of an unknown point from radio sources with known
positions and a fingerprint of ranging / RSSI readings.

Package structure:
- proto: Radio sources, readings, fingerprints and estimation results
- localization: Observation building, lateration, robust estimation,
  position estimator facade
- metrics: Diagnostics, counters, histograms
- errors: Exception taxonomy shared by all modules
"""

__version__ = "0.1.0"
__author__ = "radiopos team"

from .errors import (
    PositioningError,
    InvalidArgumentError,
    NotReadyError,
    LockedError,
    LaterationError,
    InsufficientObservationsError,
    SingularSystemError,
    RobustEstimationFailedError,
)
from .metrics import get_metrics
from .proto import (
    RadioSource,
    ReadingType,
    RangingReading,
    RssiReading,
    RangingAndRssiReading,
    Fingerprint,
    InliersData,
    EstimationResult,
)
from .localization import (
    RobustEstimatorMethod,
    PositionEstimator,
    PositionEstimatorListener,
    EstimatorState,
    SequentialEstimatorConfig,
    SequentialPositionEstimator,
    create,
)

__all__ = [
    'PositioningError',
    'InvalidArgumentError',
    'NotReadyError',
    'LockedError',
    'LaterationError',
    'InsufficientObservationsError',
    'SingularSystemError',
    'RobustEstimationFailedError',
    'get_metrics',
    'RadioSource',
    'ReadingType',
    'RangingReading',
    'RssiReading',
    'RangingAndRssiReading',
    'Fingerprint',
    'InliersData',
    'EstimationResult',
    'RobustEstimatorMethod',
    'PositionEstimator',
    'PositionEstimatorListener',
    'EstimatorState',
    'SequentialEstimatorConfig',
    'SequentialPositionEstimator',
    'create',
]
