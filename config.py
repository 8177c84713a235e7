"""
Position estimation demo configuration
"""

# Logging
LOGGING_CONFIG = {
    "level": "INFO",
    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
}

# Robust estimator defaults (see RobustEstimatorConfig)
ESTIMATOR_CONFIG = {
    "method": "PROMEDS",              # RANSAC / LMEDS / MSAC / PROSAC / PROMEDS
    "confidence": 0.99,
    "max_iterations": 5000,
    "progress_delta": 0.05,
    "threshold": 0.5,                 # inlier cutoff (m) for RANSAC/MSAC/PROSAC
    "stop_threshold": 1e-4,           # early stop (m) for LMedS/PROMedS
    "evenly_distribute_readings": True,
    "fallback_distance_std": 1e-3,    # m
}

# Synthetic scenario
SIMULATION_CONFIG = {
    "dimensions": 2,
    "num_sources": 8,
    "area_size_m": 50.0,              # sources and point drawn in [-size, size]
    "ranging_std_m": 0.05,
    "rssi_std_db": 0.5,
    "transmitted_power_dbm": -10.0,
    "path_loss_exponent": 2.0,
    "outlier_ratio": 0.2,
    "outlier_std_m": 10.0,
    "seed": 42,
}
