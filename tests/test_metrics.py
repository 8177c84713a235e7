"""
Unit tests for metrics module.

Tests cover:
- Counter increment (single-threaded and multi-threaded)
- Drop reason tracking, including unknown reasons
- Histogram recording and statistics
- Snapshot, reset and summary output
- Counters updated by the estimation pipeline
"""

import logging
import threading
import time

import pytest

from radiopos_core.metrics import MetricsCollector, get_metrics, reset_metrics
from radiopos_core.metrics.counters import CounterSnapshot


class TestMetricsCollectorBasic:
    """Tests for basic metrics collector functionality."""

    def test_standard_counters_start_at_zero(self):
        """Standard counters exist and unknown counters read as 0."""
        collector = MetricsCollector()

        assert collector.get_counter('position_estimates') == 0
        assert collector.get_counter('robust_iterations') == 0
        assert collector.get_counter('never_touched') == 0

    def test_increment_counter(self):
        """Test incrementing a counter."""
        collector = MetricsCollector()

        collector.increment('position_estimates')
        collector.increment('position_estimates', 4)

        assert collector.get_counter('position_estimates') == 5

    def test_increment_drop_with_valid_reason(self):
        """Known drop reasons are counted and roll up into items_dropped."""
        collector = MetricsCollector()

        collector.increment_drop('singular_subset', 2)

        assert collector.get_drop_count('singular_subset') == 2
        assert collector.get_counter('items_dropped') == 2

    def test_increment_drop_unknown_reason_logs_warning(self, caplog):
        """Unknown drop reasons are logged but still counted."""
        collector = MetricsCollector()

        with caplog.at_level(logging.WARNING, logger='radiopos_core.metrics.counters'):
            collector.increment_drop('cosmic_rays')

        assert 'cosmic_rays' in caplog.text
        assert collector.get_drop_count('cosmic_rays') == 1

    def test_all_drop_reasons_initialized_to_zero(self):
        """Every documented drop reason is present in a fresh snapshot."""
        snapshot = MetricsCollector().snapshot()

        for reason in MetricsCollector.DROP_REASONS:
            assert snapshot.drop_reasons[reason] == 0


class TestHistograms:
    """Tests for histogram functionality."""

    def test_record_histogram(self):
        """Test recording values in histogram."""
        collector = MetricsCollector()

        for value in (0.5, 0.75, 1.0):
            collector.record_histogram('inlier_ratio', value)

        stats = collector.get_histogram_stats('inlier_ratio')
        assert stats['count'] == 3
        assert stats['min'] == 0.5
        assert stats['max'] == 1.0
        assert stats['mean'] == pytest.approx(0.75)

    def test_histogram_empty(self):
        """Stats of an unknown histogram are None."""
        assert MetricsCollector().get_histogram_stats('nonexistent') is None

    def test_histogram_percentiles(self):
        """Test histogram percentile calculations."""
        collector = MetricsCollector()
        for i in range(100):
            collector.record_histogram('iterations', float(i))

        stats = collector.get_histogram_stats('iterations')

        assert 49 < stats['median'] < 51
        assert 94 < stats['p95'] < 96
        assert 98 < stats['p99'] < 100

    def test_histogram_max_samples_bounded(self):
        """Histograms are trimmed to half of max_samples when exceeded."""
        collector = MetricsCollector()
        for i in range(3000):
            collector.record_histogram('iterations', float(i), max_samples=1000)

        assert len(collector.snapshot().histograms['iterations']) <= 1000


class TestSnapshotAndReset:
    """Tests for snapshot and reset."""

    def test_snapshot_is_independent_copy(self):
        """Later increments do not alter earlier snapshots."""
        collector = MetricsCollector()

        collector.increment('position_estimates', 10)
        first = collector.snapshot()
        collector.increment('position_estimates', 5)

        assert isinstance(first, CounterSnapshot)
        assert first.counters['position_estimates'] == 10
        assert collector.snapshot().counters['position_estimates'] == 15

    def test_snapshot_drop_rate(self):
        """Drop rate is a percentage of the given total."""
        collector = MetricsCollector()
        collector.increment_drop('unknown_source', 3)
        collector.increment_drop('rssi_without_power', 1)

        assert collector.snapshot().drop_rate(40) == pytest.approx(10.0)
        assert collector.snapshot().drop_rate(0) == 0.0

    def test_reset_clears_everything(self):
        """Reset clears counters, drops and histograms but keeps standard keys."""
        collector = MetricsCollector()
        collector.increment('position_estimates', 7)
        collector.increment_drop('singular_subset')
        collector.record_histogram('inlier_ratio', 0.9)

        collector.reset()
        snapshot = collector.snapshot()

        assert snapshot.counters['position_estimates'] == 0
        assert snapshot.total_dropped() == 0
        assert not snapshot.histograms

    def test_uptime_increases(self):
        """Uptime grows with wall time."""
        collector = MetricsCollector()
        first = collector.get_uptime()
        time.sleep(0.05)
        assert collector.get_uptime() > first


class TestSummary:
    """Tests for summary output."""

    def test_summary_lines_content(self):
        """Summary lists counters, non-zero drops and histograms."""
        collector = MetricsCollector()
        collector.increment('position_estimates', 3)
        collector.increment_drop('refinement_failed')
        collector.record_histogram('inlier_ratio', 0.8)

        text = "\n".join(collector.summary_lines())

        assert 'METRICS SUMMARY' in text
        assert 'position_estimates' in text
        assert 'refinement_failed' in text
        assert 'inlier_ratio' in text

    def test_log_summary_uses_logger(self, caplog):
        """log_summary writes through logging, not stdout."""
        collector = MetricsCollector()

        with caplog.at_level(logging.INFO, logger='radiopos_core.metrics.counters'):
            collector.log_summary()

        assert 'METRICS SUMMARY' in caplog.text


class TestThreadSafety:
    """Tests for thread-safe operations."""

    def test_concurrent_increment(self):
        """Concurrent increments are not lost."""
        collector = MetricsCollector()

        def worker():
            for _ in range(1000):
                collector.increment('robust_iterations')

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert collector.get_counter('robust_iterations') == 8000

    def test_concurrent_drop_reasons(self):
        """Concurrent drop increments are not lost."""
        collector = MetricsCollector()

        def worker(reason: str):
            for _ in range(200):
                collector.increment_drop(reason)

        threads = [
            threading.Thread(target=worker, args=(reason,))
            for reason in ('singular_subset', 'unknown_source')
            for _ in range(4)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert collector.get_drop_count('singular_subset') == 800
        assert collector.get_drop_count('unknown_source') == 800


class TestGlobalSingleton:
    """Tests for global metrics singleton."""

    def test_get_metrics_returns_same_instance(self):
        """get_metrics() is a singleton."""
        assert get_metrics() is get_metrics()

    def test_reset_metrics_creates_new_instance(self):
        """reset_metrics() replaces the singleton with a fresh collector."""
        first = get_metrics()
        first.increment('position_estimates', 100)

        reset_metrics()

        assert get_metrics() is not first
        assert get_metrics().get_counter('position_estimates') == 0
