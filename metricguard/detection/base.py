"""Strategy protocol and helpers shared by the detection strategies."""

from __future__ import annotations

import datetime
import statistics
from typing import Protocol, runtime_checkable

from metricguard.core.types import AnomalyVerdict


@runtime_checkable
class DetectionStrategy(Protocol):
    """Anything with a ``name`` and an ``evaluate`` method can join the ensemble.

    ``evaluate`` judges ``value`` against the history already held for
    ``metric_name``. It must abstain (``AnomalyVerdict.abstain()``) rather
    than guess when that history is too short.
    """

    name: str

    def evaluate(
        self,
        metric_name: str,
        value: float,
        context: dict[str, str] | None = None,
        timestamp_ms: int | None = None,
    ) -> AnomalyVerdict: ...


def utc_datetime(timestamp_ms: int) -> datetime.datetime:
    return datetime.datetime.fromtimestamp(timestamp_ms / 1000, tz=datetime.UTC)


def flat_history_verdict(name: str, deviation: float, min_std: float) -> AnomalyVerdict:
    """Verdict against a history with no spread.

    A value on the flat level abstains; any departure from it is certain.
    """
    if deviation <= min_std:
        return AnomalyVerdict.abstain()
    return AnomalyVerdict(is_anomaly=True, confidence=1.0, per_strategy={name: 1.0})


def zscore_verdict(
    name: str,
    value: float,
    history: list[float],
    threshold: float,
    min_std: float,
) -> AnomalyVerdict:
    """Flag ``value`` when its |z| against ``history`` exceeds ``threshold``.

    Confidence is ``min(|z| / threshold, 1)``. Flat history (std below
    ``min_std``) is judged by :func:`flat_history_verdict`.
    """
    mean = statistics.fmean(history)
    std = statistics.pstdev(history, mean)
    if std < min_std:
        return flat_history_verdict(name, abs(value - mean), min_std)
    z = abs(value - mean) / std
    confidence = min(z / threshold, 1.0)
    return AnomalyVerdict(
        is_anomaly=z > threshold,
        confidence=confidence,
        per_strategy={name: confidence},
    )
