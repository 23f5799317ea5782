"""Rolling battery burn-rate estimation from periodic charge readings."""

from .estimator import BurnRateEstimator, EstimatorConfig

__all__ = ["BurnRateEstimator", "EstimatorConfig"]
