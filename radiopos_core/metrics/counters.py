"""
Metrics counters and histograms implementation.

Provides thread-safe counters for:
- Estimation counts (attempts, successes, failures)
- Drop reasons (unknown source, RSSI without power, singular subset, etc.)
- Robust loop statistics (iterations, inlier ratio)

Every discarded reading or subset must be counted with a reason code.
"""

import logging
import threading
import time
from typing import Dict, List, Optional
from dataclasses import dataclass
from collections import defaultdict
import statistics

logger = logging.getLogger(__name__)


@dataclass
class CounterSnapshot:
    """Snapshot of counter state at a point in time."""

    timestamp: float
    counters: Dict[str, int]
    drop_reasons: Dict[str, int]
    histograms: Dict[str, List[float]]

    def total_dropped(self) -> int:
        """Total items dropped across all reasons."""
        return sum(self.drop_reasons.values())

    def drop_rate(self, total_items: int) -> float:
        """Calculate drop rate as percentage of total_items."""
        if total_items == 0:
            return 0.0
        return (self.total_dropped() / total_items) * 100.0


class MetricsCollector:
    """
    Thread-safe metrics collection.

    Usage:
        collector = MetricsCollector()
        collector.increment('position_estimates')
        collector.increment_drop('singular_subset')
        collector.record_histogram('inlier_ratio', 0.85)

        snapshot = collector.snapshot()
        logger.info("dropped: %d", snapshot.total_dropped())
    """

    DROP_REASONS = {
        'unknown_source': 'Reading refers to a source id not in the source list',
        'rssi_without_power': 'RSSI reading for a source with no transmitted power',
        'invalid_std': 'Derived distance standard deviation not finite',
        'singular_subset': 'Preliminary subset had degenerate geometry',
        'refinement_failed': 'Final refinement failed, preliminary model kept',
        'estimation_failed': 'No subset produced a usable model',
        'not_ready': 'estimate() called without enough observations',
        'coarse_estimate_failed': 'RSSI stage failed, ranging stage ran unseeded',
    }

    STANDARD_COUNTERS = (
        'position_estimates',
        'position_estimate_failures',
        'observations_built',
        'robust_iterations',
        'lateration_solves',
        'lateration_failures',
        'cache_rebuilds',
    )

    def __init__(self):
        """Initialize metrics collector."""
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = defaultdict(int)
        self._drop_reasons: Dict[str, int] = defaultdict(int)
        self._histograms: Dict[str, List[float]] = defaultdict(list)
        self._start_time = time.time()

        self._init_standard_counters()

    def _init_standard_counters(self):
        """Zero the standard counter and drop reason keys."""
        with self._lock:
            for counter in self.STANDARD_COUNTERS:
                self._counters.setdefault(counter, 0)
            for reason in self.DROP_REASONS:
                self._drop_reasons.setdefault(reason, 0)

    def increment(self, counter_name: str, value: int = 1):
        """
        Increment a counter by value.

        Args:
            counter_name: Name of counter to increment
            value: Amount to increment (default 1)
        """
        with self._lock:
            self._counters[counter_name] += value

    def increment_drop(self, reason: str, value: int = 1):
        """
        Increment drop counter for specific reason.

        Unknown reasons are still counted, but a warning is logged.

        Args:
            reason: Drop reason code (should be in DROP_REASONS)
            value: Amount to increment (default 1)
        """
        if reason not in self.DROP_REASONS:
            logger.warning(f"Unknown drop reason '{reason}'")

        with self._lock:
            self._drop_reasons[reason] += value
            self._counters['items_dropped'] += value

    def get_counter(self, counter_name: str) -> int:
        """Current value of a counter (0 if never incremented)."""
        with self._lock:
            return self._counters.get(counter_name, 0)

    def get_drop_count(self, reason: str) -> int:
        """Current value of a drop reason counter."""
        with self._lock:
            return self._drop_reasons.get(reason, 0)

    def record_histogram(self, histogram_name: str, value: float, max_samples: int = 10000):
        """
        Record a value in a histogram.

        Args:
            histogram_name: Name of histogram
            value: Value to record
            max_samples: Cap on retained samples; the older half is discarded
                when exceeded
        """
        with self._lock:
            samples = self._histograms[histogram_name]
            samples.append(float(value))
            if len(samples) > max_samples:
                self._histograms[histogram_name] = samples[-max_samples // 2:]

    def get_histogram_stats(self, histogram_name: str) -> Optional[Dict[str, float]]:
        """
        Get statistics for a histogram.

        Returns:
            Dict with count, min, max, mean, median, p95, p99 or None if the
            histogram is empty
        """
        with self._lock:
            samples = sorted(self._histograms.get(histogram_name, []))

        if not samples:
            return None

        count = len(samples)
        return {
            'count': count,
            'min': samples[0],
            'max': samples[-1],
            'mean': statistics.mean(samples),
            'median': statistics.median(samples),
            'p95': samples[int(count * 0.95)] if count > 1 else samples[0],
            'p99': samples[int(count * 0.99)] if count > 1 else samples[0],
        }

    def snapshot(self) -> CounterSnapshot:
        """Copy of all counters, drop reasons and histogram samples."""
        with self._lock:
            return CounterSnapshot(
                timestamp=time.time(),
                counters=dict(self._counters),
                drop_reasons=dict(self._drop_reasons),
                histograms={k: list(v) for k, v in self._histograms.items()},
            )

    def reset(self):
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self._counters.clear()
            self._drop_reasons.clear()
            self._histograms.clear()
            self._start_time = time.time()
        self._init_standard_counters()

    def get_uptime(self) -> float:
        """Seconds since initialization or last reset."""
        return time.time() - self._start_time

    def summary_lines(self) -> List[str]:
        """Human-readable metrics summary, one entry per line."""
        snapshot = self.snapshot()
        lines = [
            "=" * 70,
            f"  METRICS SUMMARY (uptime: {self.get_uptime():.1f}s)",
            "=" * 70,
            "COUNTERS:",
        ]
        for name, value in sorted(snapshot.counters.items()):
            lines.append(f"  {name:30s}: {value:8d}")

        total_dropped = snapshot.total_dropped()
        if total_dropped > 0:
            lines.append("DROP REASONS:")
            for reason, count in sorted(snapshot.drop_reasons.items()):
                if count > 0:
                    pct = (count / total_dropped) * 100
                    lines.append(f"  {reason:30s}: {count:8d} ({pct:5.1f}%)")

        if snapshot.histograms:
            lines.append("HISTOGRAMS:")
            for name in sorted(snapshot.histograms):
                stats = self.get_histogram_stats(name)
                if stats:
                    lines.append(
                        f"  {name}: count={stats['count']}, mean={stats['mean']:.3f}, "
                        f"p95={stats['p95']:.3f}, p99={stats['p99']:.3f}"
                    )
        lines.append("=" * 70)
        return lines

    def log_summary(self, level: int = logging.INFO):
        """Emit summary_lines() through the module logger."""
        for line in self.summary_lines():
            logger.log(level, line)
