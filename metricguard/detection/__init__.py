"""Anomaly detection strategies and the ensemble that fuses them."""

from metricguard.detection.base import DetectionStrategy
from metricguard.detection.ensemble import (
    AnomalyDetector,
    FusionPolicy,
    create_detector,
    or_max_fusion,
)
from metricguard.detection.exceptions import DetectionError, ModelTrainingFailure
from metricguard.detection.reconstruction import ReconstructionStrategy
from metricguard.detection.statistical import ContextualStrategy, StatisticalStrategy
from metricguard.detection.trend import TrendStrategy

__all__ = [
    "AnomalyDetector",
    "ContextualStrategy",
    "DetectionError",
    "DetectionStrategy",
    "FusionPolicy",
    "ModelTrainingFailure",
    "ReconstructionStrategy",
    "StatisticalStrategy",
    "TrendStrategy",
    "create_detector",
    "or_max_fusion",
]
