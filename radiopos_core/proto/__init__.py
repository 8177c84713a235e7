"""
Protocol Module: Data schemas for sources, readings and results.

- RadioSource: transmitter with known position (and optional power model)
- RangingReading / RssiReading / RangingAndRssiReading: measurements
- Fingerprint: ordered readings at one location
- EstimationResult / InliersData: estimator output
"""

from .radio_source import (
    RadioSource,
    DEFAULT_FREQUENCY_HZ,
    DEFAULT_PATH_LOSS_EXPONENT,
)
from .reading import (
    ReadingType,
    RangingReading,
    RssiReading,
    RangingAndRssiReading,
    Reading,
    Fingerprint,
    create_fingerprint,
)
from .estimation_result import (
    InliersData,
    EstimationResult,
)

__all__ = [
    'RadioSource',
    'DEFAULT_FREQUENCY_HZ',
    'DEFAULT_PATH_LOSS_EXPONENT',
    'ReadingType',
    'RangingReading',
    'RssiReading',
    'RangingAndRssiReading',
    'Reading',
    'Fingerprint',
    'create_fingerprint',
    'InliersData',
    'EstimationResult',
]
