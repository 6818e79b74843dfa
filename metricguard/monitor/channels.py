"""Notification channels — webhook, Slack and log delivery."""

from __future__ import annotations

import abc

import aiohttp
import structlog

from metricguard.core.types import Alert, ChannelConfig, ChannelType
from metricguard.monitor.exceptions import DispatchError
from metricguard.monitor.formatters import slack_payload, webhook_payload

logger = structlog.get_logger(__name__)


class NotificationChannel(abc.ABC):
    """Base class for alert delivery channels.

    ``send`` returns normally on success and raises ``DispatchError`` when
    delivery fails. Per-rule destination details (URLs, recipients) come
    from ``ChannelConfig.settings``.
    """

    channel_type: ChannelType

    @abc.abstractmethod
    async def send(self, alert: Alert, config: ChannelConfig) -> None:
        """Deliver ``alert``; raise ``DispatchError`` on failure."""

    async def close(self) -> None:
        """Release resources (HTTP sessions, etc.)."""


class _HttpChannel(NotificationChannel):
    """Shared aiohttp session handling for HTTP-based channels."""

    def __init__(self) -> None:
        self._session: aiohttp.ClientSession | None = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _post(self, url: str, payload: dict[str, object]) -> None:
        try:
            session = self._get_session()
            async with session.post(url, json=payload) as resp:
                if 200 <= resp.status < 300:
                    return
                body = await resp.text()
                raise DispatchError(
                    f"{self.channel_type.value} returned HTTP {resp.status}: {body[:200]}"
                )
        except aiohttp.ClientError as exc:
            raise DispatchError(f"{self.channel_type.value} request failed: {exc}") from exc

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None


class WebhookChannel(_HttpChannel):
    """POSTs the alert as JSON to ``settings["url"]``."""

    channel_type = ChannelType.WEBHOOK

    async def send(self, alert: Alert, config: ChannelConfig) -> None:
        url = config.settings.get("url")
        if not url:
            raise DispatchError("webhook channel requires settings.url")
        await self._post(url, webhook_payload(alert))


class SlackChannel(_HttpChannel):
    """Delivers alerts to a Slack incoming webhook (``settings["webhook_url"]``)."""

    channel_type = ChannelType.SLACK

    async def send(self, alert: Alert, config: ChannelConfig) -> None:
        url = config.settings.get("webhook_url")
        if not url:
            raise DispatchError("slack channel requires settings.webhook_url")
        await self._post(url, slack_payload(alert, config))


class LogChannel(NotificationChannel):
    """Writes the alert to the structured log. Never fails."""

    channel_type = ChannelType.LOG

    async def send(self, alert: Alert, config: ChannelConfig) -> None:
        logger.warning(
            "alert_notification",
            alert_id=alert.id,
            rule_id=alert.rule_id,
            severity=alert.severity.value,
            message=alert.message,
            values=alert.values,
            correlation_id=alert.correlation_id,
            settings=config.settings,
        )
