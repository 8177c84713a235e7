"""
Metrics Module: Diagnostics, counters, histograms.

Every dropped observation or failed fit is counted with a reason code:
- Counters: position_estimates, robust_iterations, observations_built, etc.
- Histograms: iterations per estimate, inlier ratio, refinement cost
- Drop reason codes (no silent failures)

Usage:
    from radiopos_core.metrics import get_metrics

    metrics = get_metrics()
    metrics.increment('position_estimates')
    metrics.increment_drop('singular_subset')
    metrics.record_histogram('inlier_ratio', 0.8)
"""

from .counters import MetricsCollector, CounterSnapshot

# Global singleton for easy access
_global_metrics = None


def get_metrics() -> MetricsCollector:
    """
    Get the global metrics collector singleton.

    Returns:
        MetricsCollector instance
    """
    global _global_metrics
    if _global_metrics is None:
        _global_metrics = MetricsCollector()
    return _global_metrics


def reset_metrics():
    """Reset global metrics (for testing)."""
    global _global_metrics
    _global_metrics = MetricsCollector()


__all__ = ['MetricsCollector', 'CounterSnapshot', 'get_metrics', 'reset_metrics']
