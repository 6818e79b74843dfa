"""Exceptions raised by the metric window store."""

from __future__ import annotations


class MetricsError(Exception):
    """Base exception for metric storage errors."""


class InvalidSample(MetricsError):
    """Malformed ingestion input (empty name, non-finite value, out-of-order timestamp)."""
