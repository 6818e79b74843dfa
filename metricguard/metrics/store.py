"""MetricWindowStore — bounded per-metric sample history with windowed aggregation."""

from __future__ import annotations

import math
import threading
from collections import deque
from enum import Enum
from typing import Any

import structlog

from metricguard.core.config import StoreConfig
from metricguard.core.types import Aggregation, MetricSample, now_ms
from metricguard.metrics.exceptions import InvalidSample

logger = structlog.stdlib.get_logger()

_MS_PER_MINUTE = 60_000


class NoData(Enum):
    """Sentinel type for an aggregate over an empty range."""

    TOKEN = "NO_DATA"

    def __repr__(self) -> str:
        return "NO_DATA"


NO_DATA = NoData.TOKEN


def _aggregate(values: list[float], aggregation: Aggregation) -> float:
    if aggregation == Aggregation.AVG:
        return math.fsum(values) / len(values)
    if aggregation == Aggregation.SUM:
        return math.fsum(values)
    if aggregation == Aggregation.MIN:
        return min(values)
    if aggregation == Aggregation.MAX:
        return max(values)
    return float(len(values))


class _MetricWindow:
    """Samples for a single metric. All access goes through ``lock``."""

    __slots__ = ("lock", "samples", "last_timestamp")

    def __init__(self, max_samples: int) -> None:
        self.lock = threading.Lock()
        self.samples: deque[MetricSample] = deque(maxlen=max_samples)
        self.last_timestamp: int | None = None


class MetricWindowStore:
    """Holds recent samples per metric name.

    Each window is bounded by ``max_samples`` and, optionally, by
    ``max_age_minutes`` measured from the newest sample. Timestamps within
    a window are strictly increasing; out-of-order samples are rejected.

    Windows are created lazily and locked individually, so ingestion for
    one metric never waits on another. Reads copy the window under its
    lock and compute on the copy.
    """

    def __init__(self, config: StoreConfig | None = None) -> None:
        self._config = config or StoreConfig()
        self._max_age_ms: int | None = (
            int(self._config.max_age_minutes * _MS_PER_MINUTE)
            if self._config.max_age_minutes
            else None
        )
        self._windows: dict[str, _MetricWindow] = {}
        self._registry_lock = threading.Lock()

    # ── Ingestion ───────────────────────────────────────────────

    @staticmethod
    def validate(metric_name: str, value: float, timestamp_ms: int) -> None:
        """Check the stateless ingestion preconditions.

        Raises:
            InvalidSample: On an empty name or a non-finite value.
        """
        if not metric_name:
            raise InvalidSample("metric_name must be non-empty")
        if not isinstance(value, (int, float)) or not math.isfinite(value):
            raise InvalidSample(f"value for {metric_name!r} must be finite, got {value!r}")
        if not isinstance(timestamp_ms, int):
            raise InvalidSample(f"timestamp for {metric_name!r} must be integer ms")

    def ingest(
        self,
        metric_name: str,
        value: float,
        timestamp_ms: int,
        context: dict[str, str] | None = None,
    ) -> MetricSample:
        """Append a sample, evicting by count and age.

        Raises:
            InvalidSample: On an empty name, a non-finite value, or a
                timestamp not after the metric's last sample.
        """
        self.validate(metric_name, value, timestamp_ms)
        sample = MetricSample(
            metric_name=metric_name,
            timestamp=timestamp_ms,
            value=float(value),
            context=dict(context or {}),
        )
        window = self._window(metric_name)
        with window.lock:
            if window.last_timestamp is not None and timestamp_ms <= window.last_timestamp:
                raise InvalidSample(
                    f"timestamp {timestamp_ms} for {metric_name!r} is not after"
                    f" last sample at {window.last_timestamp}"
                )
            window.samples.append(sample)
            window.last_timestamp = timestamp_ms
            if self._max_age_ms is not None:
                cutoff = timestamp_ms - self._max_age_ms
                while window.samples and window.samples[0].timestamp < cutoff:
                    window.samples.popleft()
        return sample

    # ── Queries ─────────────────────────────────────────────────

    def aggregate(
        self,
        metric_name: str,
        window_minutes: float,
        aggregation: Aggregation,
        now: int | None = None,
    ) -> float | NoData:
        """Aggregate samples with ``timestamp >= now - window_minutes``.

        Returns ``NO_DATA`` when no sample falls in range, so a metric that
        is literally zero stays distinguishable from a missing one.
        """
        cutoff = (now if now is not None else now_ms()) - int(window_minutes * _MS_PER_MINUTE)
        values = [s.value for s in self._snapshot(metric_name) if s.timestamp >= cutoff]
        if not values:
            return NO_DATA
        return _aggregate(values, Aggregation(aggregation))

    def recent(self, metric_name: str, count: int) -> list[MetricSample]:
        """Return up to the last ``count`` samples, oldest first."""
        if count <= 0:
            return []
        samples = self._snapshot(metric_name)
        return samples[-count:]

    def latest(self, metric_name: str) -> MetricSample | None:
        samples = self.recent(metric_name, 1)
        return samples[0] if samples else None

    def metric_names(self) -> list[str]:
        with self._registry_lock:
            return sorted(self._windows)

    def size(self, metric_name: str) -> int:
        return len(self._snapshot(metric_name))

    # ── Snapshot / restore ──────────────────────────────────────

    def snapshot(self) -> dict[str, list[dict[str, Any]]]:
        """JSON-serialisable copy of every window."""
        return {
            name: [s.model_dump() for s in self._snapshot(name)]
            for name in self.metric_names()
        }

    def restore(self, data: dict[str, list[dict[str, Any]]]) -> int:
        """Re-ingest a snapshot. Invalid entries are skipped and logged.

        Returns:
            Number of samples restored.
        """
        restored = 0
        for name, samples in data.items():
            for raw in samples:
                try:
                    self.ingest(
                        name,
                        raw["value"],
                        int(raw["timestamp"]),
                        raw.get("context") or {},
                    )
                    restored += 1
                except (InvalidSample, KeyError, TypeError, ValueError):
                    logger.warning("snapshot_sample_skipped", metric=name, sample=raw)
        return restored

    # ── Internal ────────────────────────────────────────────────

    def _window(self, metric_name: str) -> _MetricWindow:
        window = self._windows.get(metric_name)
        if window is not None:
            return window
        with self._registry_lock:
            window = self._windows.get(metric_name)
            if window is None:
                window = _MetricWindow(self._config.max_samples)
                self._windows[metric_name] = window
                logger.debug("metric_window_created", metric=metric_name)
            return window

    def _snapshot(self, metric_name: str) -> list[MetricSample]:
        window = self._windows.get(metric_name)
        if window is None:
            return []
        with window.lock:
            return list(window.samples)
