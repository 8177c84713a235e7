"""
Log-distance path-loss model.

Received power at distance d from a source transmitting P_tx (dBm) with
path-loss exponent n at frequency f:

    P_rx = P_tx + 10 n log10(k) - 10 n log10(d),   k = c / (4 pi f)

so the distance implied by a received power is

    d = k * 10^((P_tx - P_rx) / (10 n))

Uncertainty in P_tx, P_rx and n is propagated to first order in ln(d).
"""

from typing import Optional
import math

from radiopos_core.errors import InvalidArgumentError

SPEED_OF_LIGHT = 299792458.0  # m/s

_LN10 = math.log(10.0)


def wavelength_factor(frequency_hz: float) -> float:
    """k = c / (4 pi f), the free-space distance scale for frequency_hz."""
    if frequency_hz <= 0:
        raise InvalidArgumentError(f"Frequency must be positive: {frequency_hz}")
    return SPEED_OF_LIGHT / (4.0 * math.pi * frequency_hz)


def rssi_to_distance(
    rssi_dbm: float,
    transmitted_power_dbm: float,
    path_loss_exponent: float,
    frequency_hz: float,
) -> float:
    """
    Distance (m) implied by a received power.

    Args:
        rssi_dbm: Received power (dBm)
        transmitted_power_dbm: Transmitted power (dBm)
        path_loss_exponent: Path-loss exponent n (> 0)
        frequency_hz: Carrier frequency (Hz)

    Returns:
        Distance in meters
    """
    if path_loss_exponent <= 0:
        raise InvalidArgumentError(f"Path loss exponent must be positive: {path_loss_exponent}")
    k = wavelength_factor(frequency_hz)
    return k * 10.0 ** ((transmitted_power_dbm - rssi_dbm) / (10.0 * path_loss_exponent))


def distance_to_rssi(
    distance_m: float,
    transmitted_power_dbm: float,
    path_loss_exponent: float,
    frequency_hz: float,
) -> float:
    """Expected received power (dBm) at distance_m. Inverse of rssi_to_distance."""
    if distance_m <= 0:
        raise InvalidArgumentError(f"Distance must be positive: {distance_m}")
    k = wavelength_factor(frequency_hz)
    return transmitted_power_dbm + 10.0 * path_loss_exponent * math.log10(k / distance_m)


def rssi_distance_std(
    rssi_dbm: float,
    transmitted_power_dbm: float,
    path_loss_exponent: float,
    frequency_hz: float,
    rssi_std_db: Optional[float] = None,
    transmitted_power_std_db: Optional[float] = None,
    path_loss_exponent_std: Optional[float] = None,
) -> Optional[float]:
    """
    First-order standard deviation of rssi_to_distance().

    Missing standard deviations contribute nothing. Returns None when none of
    them is known, or when the propagated value is not finite and positive,
    so the caller can apply its fallback.
    """
    if rssi_std_db is None and transmitted_power_std_db is None and path_loss_exponent_std is None:
        return None

    distance = rssi_to_distance(rssi_dbm, transmitted_power_dbm, path_loss_exponent, frequency_hz)

    # d(ln d)/d(P_tx) = -d(ln d)/d(P_rx) = ln10 / (10 n)
    power_slope = _LN10 / (10.0 * path_loss_exponent)
    exponent_slope = -(transmitted_power_dbm - rssi_dbm) * _LN10 / (10.0 * path_loss_exponent ** 2)

    log_variance = 0.0
    if transmitted_power_std_db is not None:
        log_variance += (power_slope * transmitted_power_std_db) ** 2
    if rssi_std_db is not None:
        log_variance += (power_slope * rssi_std_db) ** 2
    if path_loss_exponent_std is not None:
        log_variance += (exponent_slope * path_loss_exponent_std) ** 2

    std = distance * math.sqrt(log_variance)
    if not math.isfinite(std) or std <= 0:
        return None
    return std
