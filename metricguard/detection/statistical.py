"""Statistical and contextual z-score strategies."""

from __future__ import annotations

from metricguard.core.config import ContextualConfig, StatisticalConfig
from metricguard.core.types import AnomalyVerdict, now_ms
from metricguard.detection.base import utc_datetime, zscore_verdict
from metricguard.metrics.store import MetricWindowStore


class StatisticalStrategy:
    """Z-score of the value against the metric's long history.

    Abstains until ``min_samples`` samples are held.
    """

    name = "statistical"

    def __init__(
        self,
        store: MetricWindowStore,
        config: StatisticalConfig | None = None,
    ) -> None:
        self._store = store
        self._config = config or StatisticalConfig()

    def evaluate(
        self,
        metric_name: str,
        value: float,
        context: dict[str, str] | None = None,
        timestamp_ms: int | None = None,
    ) -> AnomalyVerdict:
        history = [s.value for s in self._store.recent(metric_name, self._config.window)]
        if len(history) < self._config.min_samples:
            return AnomalyVerdict.abstain()
        return zscore_verdict(
            self.name,
            value,
            history,
            self._config.z_threshold,
            self._config.min_std,
        )


class ContextualStrategy:
    """Z-score against historical samples that share the value's context.

    Similar means the same UTC hour-of-day bucket and, for each key in
    ``context_keys``, the same context tag value.
    """

    name = "contextual"

    def __init__(
        self,
        store: MetricWindowStore,
        config: ContextualConfig | None = None,
    ) -> None:
        self._store = store
        self._config = config or ContextualConfig()

    def evaluate(
        self,
        metric_name: str,
        value: float,
        context: dict[str, str] | None = None,
        timestamp_ms: int | None = None,
    ) -> AnomalyVerdict:
        context = context or {}
        ts = timestamp_ms if timestamp_ms is not None else now_ms()
        hour = utc_datetime(ts).hour
        keys = self._config.context_keys

        similar = [
            s.value
            for s in self._store.recent(metric_name, self._config.window)
            if utc_datetime(s.timestamp).hour == hour
            and all(s.context.get(k) == context.get(k) for k in keys)
        ]
        if len(similar) < self._config.min_similar:
            return AnomalyVerdict.abstain()
        return zscore_verdict(
            self.name,
            value,
            similar,
            self._config.z_threshold,
            self._config.min_std,
        )
