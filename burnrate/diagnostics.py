"""
Introspection hooks for BurnRateEstimator.

These bypass the adaptive sampling path entirely and exist so tests can
place points in the window directly. Nothing in the normal update flow
uses them.
"""

from __future__ import annotations

from .estimator import BurnRateEstimator


class EstimatorDiagnostics:
    def __init__(self, estimator: BurnRateEstimator) -> None:
        self.estimator = estimator

    @property
    def last_level(self) -> float:
        return self.estimator._last_level

    @last_level.setter
    def last_level(self, level: float) -> None:
        self.estimator._last_level = level

    @property
    def sample_budget_ms(self) -> int:
        return self.estimator._sample_budget_ms

    @property
    def epoch_start_time(self) -> int:
        return self.estimator._epoch_start_time

    def set_slot(self, index: int, time: int, level: float) -> None:
        """Overwrite one ring slot. The index is masked into the window."""
        slot = index & self.estimator._mask
        self.estimator._times[slot] = time
        self.estimator._levels[slot] = level

    def set_data_point_count(self, count: int) -> None:
        self.estimator._total_recorded = count

    def slots(self) -> list[tuple[int, float]]:
        """Raw (time, level) pairs in slot order, valid or not."""
        return list(zip(self.estimator._times, self.estimator._levels))

    def recompute(self) -> float:
        return self.estimator.update_estimate()
