"""
Radio Source Schema.

A radio source is a transmitter (WiFi access point, beacon, UWB anchor) at a
known position. Readings in a fingerprint refer to sources by source_id.
Sources that declare a transmitted power can turn RSSI readings into
distances through the log-distance path-loss model.
"""

from dataclasses import dataclass
from typing import Optional, Tuple
import math

import numpy as np

from radiopos_core.errors import InvalidArgumentError

DEFAULT_FREQUENCY_HZ = 2.4e9       # 2.4 GHz ISM band
DEFAULT_PATH_LOSS_EXPONENT = 2.0   # Free space


@dataclass(eq=False)
class RadioSource:
    """
    Radio source with known position.

    Attributes:
        source_id: Identifier readings use to refer to this source
        position: (x, y) or (x, y, z) in meters
        position_covariance: Optional D x D position covariance (m^2)
        transmitted_power_dbm: Transmitted power (dBm); None if unknown
        transmitted_power_std_db: Std of transmitted power (dB)
        path_loss_exponent: Log-distance path-loss exponent (2 = free space)
        path_loss_exponent_std: Std of the path-loss exponent
        frequency_hz: Carrier frequency (Hz)
    """

    source_id: str
    position: Tuple[float, ...]
    position_covariance: Optional[np.ndarray] = None
    transmitted_power_dbm: Optional[float] = None
    transmitted_power_std_db: Optional[float] = None
    path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT
    path_loss_exponent_std: Optional[float] = None
    frequency_hz: float = DEFAULT_FREQUENCY_HZ

    def __post_init__(self):
        """Validate radio source."""
        position = tuple(float(v) for v in self.position)
        if len(position) not in (2, 3):
            raise InvalidArgumentError(
                f"Source position must have 2 or 3 coordinates: {self.position}"
            )
        if not all(math.isfinite(v) for v in position):
            raise InvalidArgumentError(f"Source position must be finite: {self.position}")
        self.position = position

        if self.position_covariance is not None:
            cov = np.asarray(self.position_covariance, dtype=float)
            if cov.shape != (len(position), len(position)):
                raise InvalidArgumentError(
                    f"Position covariance must be {len(position)}x{len(position)}, "
                    f"got shape {cov.shape}"
                )
            self.position_covariance = cov

        if self.frequency_hz <= 0:
            raise InvalidArgumentError(f"Frequency must be positive: {self.frequency_hz}")

        if self.path_loss_exponent <= 0:
            raise InvalidArgumentError(
                f"Path loss exponent must be positive: {self.path_loss_exponent}"
            )

        for name in ('transmitted_power_std_db', 'path_loss_exponent_std'):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise InvalidArgumentError(f"{name} cannot be negative: {value}")

    @property
    def dimensions(self) -> int:
        """Number of coordinates (2 or 3)."""
        return len(self.position)

    @property
    def has_power(self) -> bool:
        """Whether RSSI readings of this source can be converted to distances."""
        return self.transmitted_power_dbm is not None

    def position_array(self) -> np.ndarray:
        """Position as a float numpy array."""
        return np.array(self.position, dtype=float)
