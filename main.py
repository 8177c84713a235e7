"""
Robust position estimation demo.

Builds a synthetic scenario (radio sources, one fingerprint with ranging and
RSSI readings, a share of gross outliers), runs one robust estimate and
reports the error and the collected metrics.
"""

import sys
import logging
import argparse
from typing import List, Tuple

import numpy as np

import config
from radiopos_core.errors import PositioningError
from radiopos_core.localization import (
    PositionEstimatorListener,
    RobustEstimatorConfig,
    RobustEstimatorMethod,
    create,
    distance_to_rssi,
    method_names,
    uses_quality_scores,
)
from radiopos_core.metrics import get_metrics
from radiopos_core.proto import (
    DEFAULT_FREQUENCY_HZ,
    Fingerprint,
    RadioSource,
    RangingAndRssiReading,
)

logging.basicConfig(
    level=getattr(logging, config.LOGGING_CONFIG["level"]),
    format=config.LOGGING_CONFIG["format"]
)
logger = logging.getLogger(__name__)


class ProgressLogger(PositionEstimatorListener):
    """Logs estimator progress."""

    def on_estimate_start(self, estimator):
        logger.info(f"Estimating with {estimator.method.name} "
                    f"({len(estimator.observations)} observations)")

    def on_estimate_progress_change(self, estimator, progress):
        logger.debug(f"Progress: {progress * 100:.0f}%")

    def on_estimate_end(self, estimator):
        logger.info(f"Done: {estimator.result.iterations} iterations")


def simulate(sim: dict, rng: np.random.Generator) -> Tuple[np.ndarray, List[RadioSource], Fingerprint, List[float]]:
    """
    Synthetic sources and fingerprint.

    Returns:
        (true position, sources, fingerprint, reading quality scores)
    """
    dims = sim["dimensions"]
    size = sim["area_size_m"]
    true_position = rng.uniform(-size, size, dims)

    sources = []
    readings = []
    quality = []
    for i in range(sim["num_sources"]):
        position = rng.uniform(-size, size, dims)
        source = RadioSource(
            source_id=f"S{i}",
            position=tuple(position),
            transmitted_power_dbm=sim["transmitted_power_dbm"],
            path_loss_exponent=sim["path_loss_exponent"],
        )
        sources.append(source)

        distance = float(np.linalg.norm(position - true_position))
        error = rng.normal(0.0, sim["ranging_std_m"])
        if rng.uniform() < sim["outlier_ratio"]:
            error += rng.normal(0.0, sim["outlier_std_m"])
        rssi = distance_to_rssi(
            distance, sim["transmitted_power_dbm"], sim["path_loss_exponent"], DEFAULT_FREQUENCY_HZ
        ) + rng.normal(0.0, sim["rssi_std_db"])

        readings.append(RangingAndRssiReading(
            source_id=source.source_id,
            distance_m=max(distance + error, 0.0),
            rssi_dbm=rssi,
            distance_std_m=sim["ranging_std_m"],
            rssi_std_db=sim["rssi_std_db"],
        ))
        quality.append(1.0 / (1.0 + abs(error)))

    return true_position, sources, Fingerprint(readings), quality


def main():
    """Entry point."""
    parser = argparse.ArgumentParser(description='Robust radio position estimation demo')
    parser.add_argument('--method', '-m', type=str.upper, choices=method_names(),
                        default=config.ESTIMATOR_CONFIG["method"],
                        help='Robust method')
    parser.add_argument('--dimensions', '-D', type=int, choices=(2, 3),
                        default=config.SIMULATION_CONFIG["dimensions"],
                        help='Number of dimensions')
    parser.add_argument('--sources', '-n', type=int,
                        default=config.SIMULATION_CONFIG["num_sources"],
                        help='Number of radio sources')
    parser.add_argument('--outlier-ratio', type=float,
                        default=config.SIMULATION_CONFIG["outlier_ratio"],
                        help='Fraction of readings with gross errors')
    parser.add_argument('--seed', type=int, default=config.SIMULATION_CONFIG["seed"],
                        help='Random seed')
    parser.add_argument('--debug', '-d', action='store_true',
                        help='Enable debug logging')

    args = parser.parse_args()

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    sim = dict(config.SIMULATION_CONFIG)
    sim.update(dimensions=args.dimensions, num_sources=args.sources,
               outlier_ratio=args.outlier_ratio)
    rng = np.random.default_rng(args.seed)
    true_position, sources, fingerprint, quality = simulate(sim, rng)

    est_cfg = config.ESTIMATOR_CONFIG
    method = RobustEstimatorMethod[args.method]
    estimator = create(
        method=method,
        dimensions=args.dimensions,
        sources=sources,
        fingerprint=fingerprint,
        listener=ProgressLogger(),
        fingerprint_readings_quality_scores=quality if uses_quality_scores(method) else None,
        config=RobustEstimatorConfig(
            confidence=est_cfg["confidence"],
            max_iterations=est_cfg["max_iterations"],
            progress_delta=est_cfg["progress_delta"],
            threshold=est_cfg["threshold"],
            stop_threshold=est_cfg["stop_threshold"],
            random_seed=args.seed,
        ),
    )
    estimator.set_evenly_distribute_readings(est_cfg["evenly_distribute_readings"])
    estimator.set_fallback_distance_standard_deviation(est_cfg["fallback_distance_std"])

    try:
        position = estimator.estimate()
    except PositioningError as e:
        logger.error(f"Estimation failed: {e}")
        get_metrics().log_summary()
        return 1

    error = float(np.linalg.norm(position - true_position))
    logger.info(f"True position:      {np.round(true_position, 3)}")
    logger.info(f"Estimated position: {np.round(position, 3)} (error {error:.3f} m)")
    if estimator.covariance is not None:
        logger.info(f"Position std:       {np.round(estimator.result.position_std, 3)}")
    inliers = estimator.inliers_data
    logger.info(f"Inliers:            {inliers.num_inliers}/{len(inliers.inliers)}")

    get_metrics().log_summary()
    return 0


if __name__ == "__main__":
    sys.exit(main())
