"""Notification delivery and decision logging subsystem."""

from metricguard.monitor.channels import (
    LogChannel,
    NotificationChannel,
    SlackChannel,
    WebhookChannel,
)
from metricguard.monitor.dispatcher import NotificationDispatcher
from metricguard.monitor.exceptions import DispatchError, MonitorError, PoolSaturatedError
from metricguard.monitor.factory import create_dispatcher, default_channels
from metricguard.monitor.formatters import (
    format_escalation,
    format_rule_firing,
    slack_payload,
    webhook_payload,
)
from metricguard.monitor.pool import WorkerPool

__all__ = [
    "DispatchError",
    "LogChannel",
    "MonitorError",
    "NotificationChannel",
    "NotificationDispatcher",
    "PoolSaturatedError",
    "SlackChannel",
    "WebhookChannel",
    "WorkerPool",
    "create_dispatcher",
    "default_channels",
    "format_escalation",
    "format_rule_firing",
    "slack_payload",
    "webhook_payload",
]
