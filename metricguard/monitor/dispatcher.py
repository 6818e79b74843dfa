"""Notification dispatcher — fans alerts out to channels with per-channel isolation."""

from __future__ import annotations

import asyncio
from collections import Counter

import structlog

from metricguard.core.types import Alert, ChannelConfig, ChannelType, DispatchResult
from metricguard.monitor.channels import NotificationChannel
from metricguard.monitor.exceptions import DispatchError
from metricguard.monitor.pool import WorkerPool

# Dedicated structured logger for decision records.
decision_logger = structlog.get_logger("decision_log")

logger = structlog.get_logger(__name__)


class NotificationDispatcher:
    """Delivers an Alert to a list of channel configs.

    - Every channel is attempted concurrently and independently; each send
      is bounded by ``channel_timeout_secs``.
    - A timeout or exception on one channel is logged, counted and
      reported in that channel's ``DispatchResult``; siblings are unaffected.
    - ``dispatch`` awaits the fan-out; ``submit`` hands it to the worker
      pool and returns immediately with a task for the results.
    """

    def __init__(
        self,
        channels: dict[ChannelType, NotificationChannel] | None = None,
        channel_timeout_secs: float = 10.0,
        pool: WorkerPool | None = None,
    ) -> None:
        self._channels: dict[ChannelType, NotificationChannel] = dict(channels or {})
        self._timeout = channel_timeout_secs
        self._pool = pool or WorkerPool()
        self._sent: Counter[ChannelType] = Counter()
        self._failed: Counter[ChannelType] = Counter()

    # ── Registration ────────────────────────────────────────────

    def register(self, channel_type: ChannelType, channel: NotificationChannel) -> None:
        """Register the implementation used for ``channel_type`` configs."""
        self._channels[channel_type] = channel

    @property
    def channel_types(self) -> list[ChannelType]:
        return list(self._channels)

    @property
    def stats(self) -> dict[str, dict[str, int]]:
        """Sent / failed counts per channel type."""
        return {
            "sent": {t.value: n for t, n in self._sent.items()},
            "failed": {t.value: n for t, n in self._failed.items()},
        }

    # ── Dispatch ────────────────────────────────────────────────

    async def dispatch(
        self,
        alert: Alert,
        configs: list[ChannelConfig],
    ) -> list[DispatchResult]:
        """Send to every channel; results are in ``configs`` order."""
        results = list(
            await asyncio.gather(*(self._send_one(alert, cfg) for cfg in configs))
        )
        self._log_decision(alert, results)
        return results

    def submit(
        self,
        alert: Alert,
        configs: list[ChannelConfig],
    ) -> asyncio.Task[list[DispatchResult]]:
        """Fire-and-continue dispatch through the worker pool.

        Raises:
            PoolSaturatedError: If the pool is full.
        """
        return self._pool.submit(lambda: self.dispatch(alert, configs))

    async def drain(self) -> None:
        """Wait for every submitted dispatch to finish."""
        await self._pool.drain()

    # ── Internal ────────────────────────────────────────────────

    async def _send_one(self, alert: Alert, config: ChannelConfig) -> DispatchResult:
        channel = self._channels.get(config.type)
        if channel is None:
            self._failed[config.type] += 1
            logger.warning(
                "channel_not_registered",
                channel=config.type.value,
                alert_id=alert.id,
            )
            return DispatchResult(
                channel_type=config.type,
                success=False,
                error=f"no channel registered for {config.type.value}",
            )

        error: str | None = None
        try:
            await asyncio.wait_for(channel.send(alert, config), timeout=self._timeout)
        except TimeoutError:
            error = f"timed out after {self._timeout}s"
            logger.warning("channel_dispatch_timeout", channel=config.type.value, alert_id=alert.id)
        except DispatchError as exc:
            error = str(exc)
            logger.warning(
                "channel_dispatch_failed",
                channel=config.type.value,
                alert_id=alert.id,
                error=error,
            )
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
            logger.exception(
                "channel_dispatch_error",
                channel=config.type.value,
                alert_id=alert.id,
            )

        if error is None:
            self._sent[config.type] += 1
            return DispatchResult(channel_type=config.type, success=True)
        self._failed[config.type] += 1
        return DispatchResult(channel_type=config.type, success=False, error=error)

    def _log_decision(self, alert: Alert, results: list[DispatchResult]) -> None:
        decision_logger.info(
            "decision",
            action="dispatched",
            alert_id=alert.id,
            rule_id=alert.rule_id,
            severity=alert.severity.value,
            message=alert.message,
            correlation_id=alert.correlation_id,
            results=[r.model_dump(mode="json") for r in results],
        )

    # ── Lifecycle ───────────────────────────────────────────────

    async def close(self) -> None:
        await self._pool.drain()
        await self._pool.close()
        for channel in self._channels.values():
            try:
                await channel.close()
            except Exception:
                logger.exception("channel_close_error", channel=type(channel).__name__)
