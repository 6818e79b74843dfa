"""Exceptions raised inside detection strategies."""

from __future__ import annotations


class DetectionError(Exception):
    """Base exception for anomaly detection errors."""


class ModelTrainingFailure(DetectionError):
    """A learned model could not be fitted (bad data, numerical failure)."""
