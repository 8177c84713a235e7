"""
Exception taxonomy for position estimation.

All errors raised by radiopos_core derive from PositioningError so callers can
catch the whole family at once. InvalidArgumentError also derives from
ValueError, matching the dataclass validation done in __post_init__ methods.
"""


class PositioningError(Exception):
    """Base class for all position estimation errors."""


class InvalidArgumentError(PositioningError, ValueError):
    """A parameter is out of range, has the wrong shape, or is missing."""


class NotReadyError(PositioningError):
    """estimate() was called before sources and fingerprint are usable."""


class LockedError(PositioningError):
    """A mutator or estimate() was called while an estimation is running."""


class LaterationError(PositioningError):
    """The lateration solver could not produce a position."""


class InsufficientObservationsError(LaterationError):
    """Fewer observations than the D+1 needed to fix a D-dimensional point."""


class SingularSystemError(LaterationError):
    """Degenerate geometry or rank-deficient system."""


class RobustEstimationFailedError(PositioningError):
    """No sampled subset produced a usable model."""
