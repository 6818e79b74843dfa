"""End-to-end pipeline wiring."""

from metricguard.pipeline.engine import MetricGuard

__all__ = ["MetricGuard"]
