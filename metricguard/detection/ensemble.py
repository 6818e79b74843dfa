"""AnomalyDetector — fuses the verdicts of independent detection strategies."""

from __future__ import annotations

from collections.abc import Callable

import structlog

from metricguard.core.config import DetectionConfig
from metricguard.core.types import AnomalyVerdict
from metricguard.detection.base import DetectionStrategy
from metricguard.detection.reconstruction import ReconstructionStrategy
from metricguard.detection.statistical import ContextualStrategy, StatisticalStrategy
from metricguard.detection.trend import TrendStrategy
from metricguard.metrics.store import MetricWindowStore

logger = structlog.stdlib.get_logger()

FusionPolicy = Callable[[dict[str, AnomalyVerdict]], AnomalyVerdict]


def or_max_fusion(verdicts: dict[str, AnomalyVerdict]) -> AnomalyVerdict:
    """Anomalous if any strategy says so; confidence is the highest one.

    Favours recall: a single strategy is enough to flag a sample.
    """
    per_strategy = {name: v.confidence for name, v in verdicts.items()}
    return AnomalyVerdict(
        is_anomaly=any(v.is_anomaly for v in verdicts.values()),
        confidence=max(per_strategy.values(), default=0.0),
        per_strategy=per_strategy,
    )


class AnomalyDetector:
    """Runs every registered strategy and fuses their verdicts.

    A strategy that raises is logged and counted as abstaining, so one
    broken strategy never hides the others.

    Usage::

        detector = create_detector(store, settings.detection)
        verdict = detector.evaluate("response_time", 512.0, {"region": "eu"})
    """

    def __init__(
        self,
        strategies: list[DetectionStrategy] | None = None,
        fusion: FusionPolicy = or_max_fusion,
    ) -> None:
        self._strategies: list[DetectionStrategy] = []
        self._fusion = fusion
        for strategy in strategies or []:
            self.register(strategy)

    @property
    def strategy_names(self) -> list[str]:
        return [s.name for s in self._strategies]

    def register(self, strategy: DetectionStrategy) -> None:
        """Add a strategy, replacing any registered under the same name."""
        self._strategies = [s for s in self._strategies if s.name != strategy.name]
        self._strategies.append(strategy)

    def unregister(self, name: str) -> bool:
        before = len(self._strategies)
        self._strategies = [s for s in self._strategies if s.name != name]
        return len(self._strategies) != before

    def drain(self, timeout: float | None = None) -> None:
        """Wait for background work (model fits) of every strategy."""
        for strategy in list(self._strategies):
            drain = getattr(strategy, "drain", None)
            if drain is not None:
                drain(timeout)

    def close(self) -> None:
        for strategy in list(self._strategies):
            close = getattr(strategy, "close", None)
            if close is not None:
                close()

    def evaluate(
        self,
        metric_name: str,
        value: float,
        context: dict[str, str] | None = None,
        timestamp_ms: int | None = None,
    ) -> AnomalyVerdict:
        verdicts: dict[str, AnomalyVerdict] = {}
        for strategy in list(self._strategies):
            try:
                verdicts[strategy.name] = strategy.evaluate(
                    metric_name, value, context, timestamp_ms
                )
            except Exception:
                logger.exception(
                    "strategy_evaluation_error",
                    strategy=strategy.name,
                    metric=metric_name,
                )
                verdicts[strategy.name] = AnomalyVerdict.abstain()
        return self._fusion(verdicts)

    def get_verdict(
        self,
        metric_name: str,
        value: float,
        context: dict[str, str] | None = None,
        timestamp_ms: int | None = None,
    ) -> AnomalyVerdict:
        """Diagnostic query: how would ``value`` be judged right now."""
        verdict = self.evaluate(metric_name, value, context, timestamp_ms)
        logger.debug(
            "anomaly_verdict",
            metric=metric_name,
            value=value,
            is_anomaly=verdict.is_anomaly,
            confidence=round(verdict.confidence, 4),
            per_strategy=verdict.per_strategy,
        )
        return verdict


def create_detector(
    store: MetricWindowStore,
    config: DetectionConfig | None = None,
) -> AnomalyDetector:
    """Build a detector with every enabled built-in strategy."""
    config = config or DetectionConfig()
    strategies: list[DetectionStrategy] = []
    if config.reconstruction.enabled:
        strategies.append(ReconstructionStrategy(store, config.reconstruction))
    if config.trend.enabled:
        strategies.append(TrendStrategy(store, config.trend))
    if config.statistical.enabled:
        strategies.append(StatisticalStrategy(store, config.statistical))
    if config.contextual.enabled:
        strategies.append(ContextualStrategy(store, config.contextual))
    return AnomalyDetector(strategies)
