from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

SECONDS_PER_HOUR = 3600
# Above any real battery percentage, so the first sample always differs.
_LEVEL_SENTINEL = 101.0


@dataclass(frozen=True)
class EstimatorConfig:
    """Tuning for the burn-rate estimator."""

    window_size: int = 16
    """Number of recorded points the regression is fitted over. Power of two."""

    sample_timeout_ms: int = 300_000
    """Force a data point after this long without a level change."""

    def __post_init__(self) -> None:
        if self.window_size < 2 or self.window_size & (self.window_size - 1):
            raise ValueError(
                f"window_size must be a power of two >= 2, got {self.window_size}"
            )
        if self.sample_timeout_ms <= 0:
            raise ValueError(
                f"sample_timeout_ms must be positive, got {self.sample_timeout_ms}"
            )


class BurnRateEstimator:
    """
    Rolling estimate of battery drain/charge rate in percent per hour.

    Samples are offered once per tick through `update`. A point is only
    recorded when the level changed or when the sampling countdown ran out,
    so a slowly moving battery still produces points spread over time. The
    rate is the least-squares slope over the last `window_size` points.

    Any change of the charging state (including to or from unknown) throws
    the window away, since drain and charge slopes cannot share a fit.
    """

    def __init__(
        self,
        now_time: int,
        config: EstimatorConfig = EstimatorConfig(),
        now_ms: Optional[int] = None,
    ) -> None:
        self.config = config
        self._mask = config.window_size - 1
        self._times: list[int] = [0] * config.window_size
        self._levels: list[float] = [0.0] * config.window_size
        self._lock = threading.Lock()

        self._charging: Optional[bool] = None
        self._last_level = _LEVEL_SENTINEL
        self._epoch_start_time = now_time

        self._total_recorded = 0
        self._sample_budget_ms = 0
        self._last_tick_ms: Optional[int] = None
        self._slope = 0.0
        self.reset(now_ms)

    def reset(self, now_ms: Optional[int] = None) -> None:
        """
        Forget all recorded points and restart the sampling countdown.

        :param now_ms: Monotonic milliseconds to measure the next interval from.
                       When omitted, the next `update` starts from its own tick.
        """
        with self._lock:
            self._reset_locked(now_ms)

    def _reset_locked(self, now_ms: Optional[int]) -> None:
        self._total_recorded = 0
        self._last_tick_ms = now_ms
        self._sample_budget_ms = self.config.sample_timeout_ms // 2
        self._slope = 0.0

    def update(
        self,
        level: Optional[float],
        is_charging: Optional[bool],
        now_time: int,
        now_ms: int,
    ) -> None:
        """
        Offer one observation to the estimator.

        :param level: Battery percentage, or None when it could not be read.
        :param is_charging: Charging flag, or None when it could not be read.
        :param now_time: Seconds timestamp stored with a recorded point.
        :param now_ms: Monotonic milliseconds used for interval accounting.
        """
        with self._lock:
            if is_charging is None or is_charging != self._charging:
                logger.debug(
                    "Charging state %s -> %s, resetting window",
                    self._charging,
                    is_charging,
                )
                self._charging = is_charging
                self._reset_locked(now_ms)
                return

            if self._last_tick_ms is None:
                duration = 0
            else:
                duration = now_ms - self._last_tick_ms
                if duration < 0:
                    # Wrapped or rewound clock, applied as-is.
                    logger.warning("Millisecond clock went backwards by %d ms", -duration)
            self._last_tick_ms = now_ms

            self._sample_budget_ms -= duration
            if level is None:
                # A forced sample that falls due now stays pending for the
                # next known level.
                self._sample_budget_ms = max(self._sample_budget_ms, 0)
                return

            timeout_fired = self._sample_budget_ms <= 0
            if timeout_fired:
                self._sample_budget_ms += self.config.sample_timeout_ms

            if not timeout_fired and level == self._last_level:
                return

            slot = self._total_recorded & self._mask
            self._times[slot] = now_time
            self._levels[slot] = level
            self._last_level = level
            self._total_recorded += 1
            logger.debug(
                "Recorded point #%d: t=%d level=%.2f%s",
                self._total_recorded,
                now_time,
                level,
                " (timeout)" if timeout_fired else "",
            )
            self._update_estimate_locked()

    def update_estimate(self) -> float:
        """Refit the slope over the current window and return it."""
        with self._lock:
            self._update_estimate_locked()
            return self._slope

    def _update_estimate_locked(self) -> None:
        if self._total_recorded < 2:
            self._slope = 0.0
            return

        fit_size = min(self._total_recorded, self.config.window_size)
        if self._total_recorded >= self.config.window_size:
            origin = self._total_recorded & self._mask
        else:
            origin = 0

        # Both axes are taken relative to the oldest point; flat data then
        # sums to exactly zero.
        first_time = self._times[origin]
        first_level = self._levels[origin]
        sum_x = sum_y = sum_xy = sum_xx = 0.0
        for i in range(fit_size):
            slot = (origin + i) & self._mask
            x = (self._times[slot] - first_time) * (1.0 / SECONDS_PER_HOUR)
            y = self._levels[slot] - first_level
            sum_x += x
            sum_y += y
            sum_xy += x * y
            sum_xx += x * x

        num = fit_size * sum_xy - sum_x * sum_y
        den = fit_size * sum_xx - sum_x * sum_x
        if num == 0 or den == 0:
            self._slope = 0.0
        else:
            self._slope = num / den
        logger.debug("Burn rate over %d points: %.3f %%/h", fit_size, self._slope)

    def burn_rate(self) -> float:
        """Percent per hour, negative while draining. 0.0 until an estimate exists."""
        return self._slope

    def is_charging(self) -> Optional[bool]:
        return self._charging

    def data_point_count(self) -> int:
        return self._total_recorded
