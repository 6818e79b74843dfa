"""Convenience factory for wiring the notification stack."""

from __future__ import annotations

from metricguard.core.config import DispatchConfig
from metricguard.core.types import ChannelType
from metricguard.monitor.channels import (
    LogChannel,
    NotificationChannel,
    SlackChannel,
    WebhookChannel,
)
from metricguard.monitor.dispatcher import NotificationDispatcher
from metricguard.monitor.pool import WorkerPool


def default_channels() -> dict[ChannelType, NotificationChannel]:
    """Built-in channel implementations. Email and SMS are left to callers."""
    return {
        ChannelType.WEBHOOK: WebhookChannel(),
        ChannelType.SLACK: SlackChannel(),
        ChannelType.LOG: LogChannel(),
    }


def create_dispatcher(
    config: DispatchConfig | None = None,
    channels: dict[ChannelType, NotificationChannel] | None = None,
) -> NotificationDispatcher:
    """Build a dispatcher with a bounded pool from config.

    ``channels`` entries override (or add to) the built-in ones.
    """
    config = config or DispatchConfig()
    registered = default_channels()
    registered.update(channels or {})
    return NotificationDispatcher(
        channels=registered,
        channel_timeout_secs=config.channel_timeout_secs,
        pool=WorkerPool(max_workers=config.max_workers, max_pending=config.max_pending),
    )
