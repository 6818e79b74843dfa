"""Notification delivery exceptions."""

from __future__ import annotations


class MonitorError(Exception):
    """Base exception for notification errors."""


class DispatchError(MonitorError):
    """A channel rejected or failed to deliver an alert."""


class PoolSaturatedError(MonitorError):
    """The worker pool queue is full; the job was rejected."""
