"""
Unit tests for the SequentialPositionEstimator.

Tests cover:
- Splitting fingerprints into ranging and RSSI readings
- Coarse RSSI stage seeding the ranging stage
- Skipped and failed RSSI stages
- Listener callbacks, progress mapping and locking
- Readiness, validation and quality score distribution
"""

from unittest.mock import patch

import numpy as np
import pytest

from radiopos_core.errors import (
    InvalidArgumentError,
    LockedError,
    NotReadyError,
    RobustEstimationFailedError,
)
from radiopos_core.localization import (
    PositionEstimator,
    RobustEstimatorConfig,
    RobustEstimatorMethod,
    SequentialEstimatorConfig,
    SequentialPositionEstimator,
    SequentialPositionEstimatorListener,
    distance_to_rssi,
    split_fingerprint,
)
from radiopos_core.metrics import get_metrics
from radiopos_core.proto import (
    DEFAULT_FREQUENCY_HZ,
    Fingerprint,
    RangingAndRssiReading,
    RangingReading,
    RssiReading,
)
from tests.conftest import calculate_distance, make_ranging_fingerprint, make_sources

TRUTH = (6.0, 9.0)
TX_POWER = -5.0


def combined_fingerprint(sources, truth=TRUTH):
    """One exact RangingAndRssiReading per source."""
    readings = []
    for source in sources:
        d = calculate_distance(source.position, truth)
        rssi = distance_to_rssi(d, TX_POWER, 2.0, DEFAULT_FREQUENCY_HZ)
        readings.append(RangingAndRssiReading(source.source_id, d, rssi))
    return Fingerprint(readings)


def seeded_config(**kwargs) -> SequentialEstimatorConfig:
    return SequentialEstimatorConfig(
        ranging=RobustEstimatorConfig(random_seed=0),
        rssi=RobustEstimatorConfig(random_seed=1),
        **kwargs,
    )


@pytest.fixture
def powered_sources(square_positions_2d):
    return make_sources(square_positions_2d, transmitted_power_dbm=TX_POWER)


@pytest.fixture
def sequential_estimator(powered_sources):
    """Ready estimator with exact combined readings at TRUTH."""
    return SequentialPositionEstimator(
        2, sources=powered_sources, fingerprint=combined_fingerprint(powered_sources),
        config=seeded_config(),
    )


# =============================================================================
# Test Fingerprint Split
# =============================================================================


class TestSplitFingerprint:
    """split_fingerprint() routing."""

    def test_combined_reading_feeds_both(self):
        """Combined readings appear in both halves with their indices."""
        fingerprint = Fingerprint([
            RangingReading("S0", 3.0, 0.1),
            RssiReading("S1", -60.0, 2.0),
            RangingAndRssiReading("S2", 4.0, -55.0, 0.2, 1.5),
        ])

        ranging, ranging_indices, rssi, rssi_indices = split_fingerprint(fingerprint)

        assert ranging_indices == [0, 2]
        assert rssi_indices == [1, 2]
        assert all(isinstance(r, RangingReading) for r in ranging)
        assert all(isinstance(r, RssiReading) for r in rssi)
        assert ranging.readings[1].distance_m == 4.0
        assert ranging.readings[1].distance_std_m == 0.2
        assert rssi.readings[1].rssi_dbm == -55.0
        assert rssi.readings[1].rssi_std_db == 1.5


# =============================================================================
# Test Estimation
# =============================================================================


class TestEstimation:
    """Two-stage estimation."""

    def test_defaults(self):
        """Both stages default to PROMedS and the estimator is not ready."""
        estimator = SequentialPositionEstimator()

        assert estimator.config.ranging_method == RobustEstimatorMethod.PROMEDS
        assert estimator.config.rssi_method == RobustEstimatorMethod.PROMEDS
        assert not estimator.is_ready()
        assert estimator.estimated_position is None
        assert estimator.coarse_position is None

    def test_exact_readings(self, sequential_estimator):
        """Coarse and final positions both land on the truth."""
        position = sequential_estimator.estimate()

        np.testing.assert_allclose(position, TRUTH, atol=1e-6)
        np.testing.assert_allclose(sequential_estimator.coarse_position, TRUTH, atol=1e-6)
        assert sequential_estimator.estimated_position is position
        assert sequential_estimator.covariance.shape == (2, 2)
        assert sequential_estimator.inliers_data is not None
        assert not sequential_estimator.is_locked()

    def test_coarse_position_seeds_ranging_stage(self, powered_sources):
        """Without the linear solver the ranging stage starts from the coarse position."""
        config = SequentialEstimatorConfig(
            ranging=RobustEstimatorConfig(linear_solver_used=False, random_seed=0),
            rssi=RobustEstimatorConfig(random_seed=1),
        )
        estimator = SequentialPositionEstimator(
            2, sources=powered_sources, fingerprint=combined_fingerprint(powered_sources),
            config=config,
        )

        position = estimator.estimate()

        assert estimator.ranging_estimator.initial_position is estimator.coarse_position
        np.testing.assert_allclose(position, TRUTH, atol=1e-6)

    def test_rssi_stage_skipped_without_power(self, square_positions_2d):
        """Sources without transmitted power leave only the ranging stage."""
        sources = make_sources(square_positions_2d)
        estimator = SequentialPositionEstimator(
            2, sources=sources, fingerprint=combined_fingerprint(sources),
            config=seeded_config(),
        )

        position = estimator.estimate()

        assert not estimator.rssi_estimator.is_ready()
        assert estimator.coarse_position is None
        np.testing.assert_allclose(position, TRUTH, atol=1e-6)

    def test_rssi_stage_failure_tolerated(self, sequential_estimator):
        """A failed RSSI stage is counted and the ranging stage still runs."""
        original = PositionEstimator.estimate

        def fail_rssi_stage(stage):
            if stage is sequential_estimator.rssi_estimator:
                raise RobustEstimationFailedError("no model")
            return original(stage)

        with patch.object(PositionEstimator, 'estimate', autospec=True,
                          side_effect=fail_rssi_stage):
            position = sequential_estimator.estimate()

        assert sequential_estimator.coarse_position is None
        np.testing.assert_allclose(position, TRUTH, atol=1e-6)
        assert get_metrics().get_drop_count('coarse_estimate_failed') == 1

    def test_ranging_stage_failure_propagates(self, sequential_estimator):
        """A failed ranging stage fails the estimate and unlocks."""
        with patch.object(PositionEstimator, 'estimate', autospec=True,
                          side_effect=RobustEstimationFailedError("no model")):
            with pytest.raises(RobustEstimationFailedError):
                sequential_estimator.estimate()

        assert not sequential_estimator.is_locked()
        assert sequential_estimator.estimated_position is None

    def test_rssi_only_fingerprint_not_ready(self, powered_sources):
        """RSSI readings alone do not make the ranging stage ready."""
        readings = [
            RssiReading(r.source_id, r.rssi_dbm)
            for r in combined_fingerprint(powered_sources)
        ]
        estimator = SequentialPositionEstimator(
            2, sources=powered_sources, fingerprint=Fingerprint(readings)
        )

        assert not estimator.is_ready()
        with pytest.raises(NotReadyError):
            estimator.estimate()
        assert get_metrics().get_drop_count('not_ready') == 1


# =============================================================================
# Test Listener
# =============================================================================


class RecordingListener(SequentialPositionEstimatorListener):
    """Records callbacks and checks that mutators are locked."""

    def __init__(self):
        self.events = []
        self.progress = []
        self.locked_failures = []

    def on_estimate_start(self, estimator):
        self.events.append('start')
        self.check_locked(estimator)

    def on_estimate_end(self, estimator):
        self.events.append('end')
        self.check_locked(estimator)

    def on_estimate_progress_change(self, estimator, progress):
        self.progress.append(progress)

    def check_locked(self, estimator):
        calls = [
            lambda: estimator.set_sources(estimator.sources),
            lambda: estimator.set_fingerprint(estimator.fingerprint),
            lambda: estimator.set_listener(self),
            lambda: estimator.set_initial_position(None),
            lambda: estimator.set_config(estimator.config),
            lambda: estimator.set_source_quality_scores([1.0] * 5),
            lambda: estimator.set_fingerprint_readings_quality_scores([1.0] * 5),
            lambda: estimator.estimate(),
        ]
        for i, call in enumerate(calls):
            try:
                call()
            except LockedError:
                continue
            self.locked_failures.append(i)


class TestListener:
    """Listener notifications and progress mapping."""

    def test_callbacks_run_locked(self, sequential_estimator):
        """Start and end fire once each, with every mutator locked."""
        listener = RecordingListener()
        sequential_estimator.set_listener(listener)

        sequential_estimator.estimate()

        assert listener.events == ['start', 'end']
        assert listener.locked_failures == []
        assert not sequential_estimator.is_locked()

    def test_progress_split_between_stages(self, sequential_estimator):
        """RSSI stage reports up to 0.5, ranging stage from 0.5 to 1.0."""
        listener = RecordingListener()
        sequential_estimator.set_listener(listener)

        sequential_estimator.estimate()

        assert 0.5 in listener.progress
        assert listener.progress[-1] == 1.0
        assert listener.progress == sorted(listener.progress)
        assert all(0.0 <= p <= 1.0 for p in listener.progress)


# =============================================================================
# Test Setters and Quality Scores
# =============================================================================


class TestSetters:
    """Validation and score distribution."""

    def test_validation(self, powered_sources):
        """Bad dimensions, sources, fingerprints and stds are rejected."""
        with pytest.raises(InvalidArgumentError):
            SequentialPositionEstimator(dimensions=4)
        estimator = SequentialPositionEstimator()
        with pytest.raises(InvalidArgumentError):
            estimator.set_sources(powered_sources[:2])
        with pytest.raises(InvalidArgumentError):
            estimator.set_fingerprint(Fingerprint([]))
        with pytest.raises(InvalidArgumentError):
            estimator.set_initial_position((1.0, 2.0, 3.0))
        with pytest.raises(InvalidArgumentError):
            SequentialEstimatorConfig(rssi_fallback_distance_std=0.0)

    def test_scores_mismatch_rejected(self, sequential_estimator):
        """Score arrays must match sources and readings."""
        with pytest.raises(InvalidArgumentError):
            sequential_estimator.set_source_quality_scores([1.0, 2.0, 3.0, 4.0])
        with pytest.raises(InvalidArgumentError):
            sequential_estimator.set_fingerprint_readings_quality_scores([1.0, 2.0])

    def test_unweighted_stages_ignore_scores(self, powered_sources):
        """RANSAC / MSAC stages store no scores."""
        config = SequentialEstimatorConfig(
            ranging_method=RobustEstimatorMethod.RANSAC,
            rssi_method=RobustEstimatorMethod.MSAC,
        )
        estimator = SequentialPositionEstimator(
            2, sources=powered_sources, config=config,
            source_quality_scores=[1.0] * 5,
        )

        assert estimator.source_quality_scores is None

    def test_reading_scores_follow_readings(self, powered_sources):
        """Each stage receives the scores of the readings it uses."""
        readings = list(combined_fingerprint(powered_sources))
        readings.append(RssiReading("S4", readings[4].rssi_dbm))
        estimator = SequentialPositionEstimator(
            2, sources=powered_sources, fingerprint=Fingerprint(readings),
            config=seeded_config(),
        )
        scores = [6.0, 5.0, 4.0, 3.0, 2.0, 1.0]

        estimator.set_fingerprint_readings_quality_scores(scores)

        assert estimator.ranging_estimator.fingerprint_readings_quality_scores == scores[:5]
        assert estimator.rssi_estimator.fingerprint_readings_quality_scores == scores
        source_scores = [1.0, 2.0, 3.0, 4.0, 5.0]
        estimator.set_source_quality_scores(source_scores)
        assert estimator.ranging_estimator.source_quality_scores is source_scores
        assert estimator.rssi_estimator.source_quality_scores is source_scores

    def test_new_source_count_clears_scores(self, sequential_estimator, caplog):
        """Source scores no longer matching the sources are dropped with a warning."""
        sequential_estimator.set_source_quality_scores([1.0, 2.0, 3.0, 4.0, 5.0])

        with caplog.at_level("WARNING"):
            sequential_estimator.set_sources(sequential_estimator.sources[:4])

        assert sequential_estimator.source_quality_scores is None
        assert "Clearing 5 source quality scores" in caplog.text
        assert sequential_estimator.is_ready()

    def test_ranging_only_fingerprint(self, powered_sources):
        """Plain ranging readings skip the RSSI stage."""
        estimator = SequentialPositionEstimator(
            2, sources=powered_sources,
            fingerprint=make_ranging_fingerprint(powered_sources, TRUTH),
            config=seeded_config(),
        )

        position = estimator.estimate()

        assert estimator.coarse_position is None
        np.testing.assert_allclose(position, TRUTH, atol=1e-6)
