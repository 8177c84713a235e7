"""
Pytest configuration and shared fixtures for radiopos_core tests.

Provides source layouts, fingerprint builders and scenario generators for
lateration, robust estimation and estimator facade tests.
"""

import sys
import math
from pathlib import Path
from typing import List, Sequence, Tuple

import numpy as np
import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from radiopos_core.metrics import get_metrics
from radiopos_core.proto import (
    Fingerprint,
    RadioSource,
    RangingReading,
)


# =============================================================================
# Metrics isolation
# =============================================================================


@pytest.fixture(autouse=True)
def clean_metrics():
    """Reset the global metrics collector around every test."""
    get_metrics().reset()
    yield
    get_metrics().reset()


# =============================================================================
# Source Layout Fixtures
# =============================================================================


@pytest.fixture
def triangle_positions_2d() -> List[Tuple[float, float]]:
    """
    Right-triangle layout used by the exact 2D round trip.

    Returns:
        [(0, 0), (10, 0), (0, 10)]
    """
    return [(0.0, 0.0), (10.0, 0.0), (0.0, 10.0)]


@pytest.fixture
def square_positions_2d() -> List[Tuple[float, float]]:
    """Five sources: square corners plus one off-center point, no three collinear (m)."""
    return [
        (0.0, 0.0),
        (20.0, 0.0),
        (20.0, 20.0),
        (0.0, 20.0),
        (7.0, 12.0),
    ]


@pytest.fixture
def cube_positions_3d() -> List[Tuple[float, float, float]]:
    """Six non-coplanar 3D sources (m)."""
    return [
        (0.0, 0.0, 0.0),
        (20.0, 0.0, 1.0),
        (0.0, 20.0, 2.0),
        (20.0, 20.0, 10.0),
        (10.0, 5.0, 15.0),
        (3.0, 17.0, 6.0),
    ]


# =============================================================================
# Builders
# =============================================================================


def make_sources(positions: Sequence[Sequence[float]], **kwargs) -> List[RadioSource]:
    """RadioSource per position, ids S0, S1, ..."""
    return [
        RadioSource(source_id=f"S{i}", position=tuple(p), **kwargs)
        for i, p in enumerate(positions)
    ]


def make_ranging_fingerprint(
    sources: Sequence[RadioSource],
    true_position: Sequence[float],
    errors: Sequence[float] = None,
    distance_std: float = None,
) -> Fingerprint:
    """
    One exact ranging reading per source, plus optional additive errors.

    Args:
        sources: Sources to range against
        true_position: Point the readings are taken at
        errors: Additive distance error per source (m)
        distance_std: Std stored on every reading
    """
    readings = []
    for i, source in enumerate(sources):
        distance = calculate_distance(source.position, true_position)
        if errors is not None:
            distance = max(distance + errors[i], 0.0)
        readings.append(RangingReading(source.source_id, distance, distance_std))
    return Fingerprint(readings)


def random_scenario(
    rng: np.random.Generator,
    dimensions: int,
    num_sources: int,
    outlier_ratio: float = 0.0,
    outlier_std: float = 10.0,
    size: float = 50.0,
    noise_std: float = 0.0,
):
    """
    Random sources and a ranging fingerprint with gross outliers.

    noise_std adds Gaussian noise to every reading, drawn after the outliers.

    Returns:
        (true_position, sources, fingerprint, errors)
    """
    true_position = rng.uniform(-size, size, dimensions)
    positions = rng.uniform(-size, size, (num_sources, dimensions))
    sources = make_sources(positions)

    errors = np.zeros(num_sources)
    num_outliers = int(round(outlier_ratio * num_sources))
    outliers = rng.choice(num_sources, num_outliers, replace=False)
    for i in outliers:
        # Keep outliers well away from zero so they are gross errors
        errors[i] = np.sign(rng.uniform(-1, 1)) * (outlier_std + abs(rng.normal(0.0, outlier_std)))
    if noise_std > 0:
        errors += rng.normal(0.0, noise_std, num_sources)

    fingerprint = make_ranging_fingerprint(sources, true_position, errors)
    return true_position, sources, fingerprint, errors


# =============================================================================
# Helper Functions
# =============================================================================


def calculate_distance(p1: Sequence[float], p2: Sequence[float]) -> float:
    """Euclidean distance between two points of equal dimension."""
    return math.sqrt(sum((a - b) ** 2 for a, b in zip(p1, p2)))


def calculate_distance_2d(p1: Tuple[float, float], p2: Tuple[float, float]) -> float:
    """Euclidean distance between two 2D points."""
    return math.sqrt((p1[0] - p2[0]) ** 2 + (p1[1] - p2[1]) ** 2)


def calculate_distance_3d(
    p1: Tuple[float, float, float], p2: Tuple[float, float, float]
) -> float:
    """Euclidean distance between two 3D points."""
    return math.sqrt(
        (p1[0] - p2[0]) ** 2 + (p1[1] - p2[1]) ** 2 + (p1[2] - p2[2]) ** 2
    )
