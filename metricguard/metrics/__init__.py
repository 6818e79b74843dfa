"""Metric window storage."""

from metricguard.metrics.exceptions import InvalidSample, MetricsError
from metricguard.metrics.store import NO_DATA, MetricWindowStore, NoData

__all__ = [
    "NO_DATA",
    "InvalidSample",
    "MetricWindowStore",
    "MetricsError",
    "NoData",
]
