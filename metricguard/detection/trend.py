"""Time-series trend strategy — exponential smoothing forecast."""

from __future__ import annotations

import statistics

from metricguard.core.config import TrendConfig
from metricguard.core.types import AnomalyVerdict
from metricguard.detection.base import flat_history_verdict
from metricguard.metrics.store import MetricWindowStore


def exponential_smoothing(values: list[float], alpha: float) -> float:
    """Return the smoothed level after the last value (the next-step forecast)."""
    level = values[0]
    for v in values[1:]:
        level = alpha * v + (1.0 - alpha) * level
    return level


class TrendStrategy:
    """Flags values far from the smoothed forecast of recent samples.

    The tolerance is ``volatility_multiplier`` standard deviations of the
    same recent samples, so it widens and narrows with the metric.
    """

    name = "trend"

    def __init__(
        self,
        store: MetricWindowStore,
        config: TrendConfig | None = None,
    ) -> None:
        self._store = store
        self._config = config or TrendConfig()

    def evaluate(
        self,
        metric_name: str,
        value: float,
        context: dict[str, str] | None = None,
        timestamp_ms: int | None = None,
    ) -> AnomalyVerdict:
        recent = [s.value for s in self._store.recent(metric_name, self._config.window)]
        if len(recent) < self._config.min_samples:
            return AnomalyVerdict.abstain()

        volatility = statistics.pstdev(recent)
        predicted = exponential_smoothing(recent, self._config.alpha)
        if volatility < self._config.min_std:
            return flat_history_verdict(self.name, abs(value - predicted), self._config.min_std)

        tolerance = self._config.volatility_multiplier * volatility
        deviation = abs(value - predicted)
        confidence = min(deviation / tolerance, 1.0)
        return AnomalyVerdict(
            is_anomaly=deviation > tolerance,
            confidence=confidence,
            per_strategy={self.name: confidence},
        )
