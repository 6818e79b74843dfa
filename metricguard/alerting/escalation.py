"""EscalationScheduler — deferred, cancellable re-notification of alerts."""

from __future__ import annotations

import asyncio
import heapq
import itertools
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field

import structlog

from metricguard.core.types import (
    Alert,
    AlertRule,
    ChannelConfig,
    EscalationMode,
    now_ms,
)
from metricguard.monitor.dispatcher import NotificationDispatcher
from metricguard.monitor.exceptions import PoolSaturatedError
from metricguard.monitor.formatters import format_escalation

decision_logger = structlog.get_logger("decision_log")

logger = structlog.stdlib.get_logger()

_MS_PER_MINUTE = 60_000

StillFiringFn = Callable[[str, int], bool]


@dataclass(order=True)
class EscalationTask:
    """A pending escalation, ordered by ``fire_at`` then insertion."""

    fire_at: int
    seq: int
    alert: Alert = field(compare=False)
    channels: list[ChannelConfig] = field(compare=False)
    mode: EscalationMode = field(compare=False, default=EscalationMode.UNCONDITIONAL)
    cancelled: bool = field(compare=False, default=False)

    @property
    def alert_id(self) -> str:
        return self.alert.id

    @property
    def rule_id(self) -> str:
        return self.alert.rule_id


class EscalationScheduler:
    """Min-heap of escalation tasks polled by its own background loop.

    Cancelled tasks are flagged and dropped from the index immediately;
    the heap is compacted once they make up half of it, so removed alerts
    and rules leave nothing behind.

    Usage::

        scheduler = EscalationScheduler(dispatcher, still_firing=rules.is_firing)
        scheduler.schedule(alert, rule)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        still_firing: StillFiringFn | None = None,
        poll_interval_secs: float = 1.0,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._dispatcher = dispatcher
        self._still_firing = still_firing
        self._poll_interval = poll_interval_secs
        self._clock = clock
        self._heap: list[EscalationTask] = []
        self._by_alert: dict[str, EscalationTask] = {}
        self._cancelled = 0
        self._seq = itertools.count()
        self._lock = threading.Lock()
        self._task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def pending(self) -> int:
        """Number of live (not cancelled, not fired) tasks."""
        with self._lock:
            return len(self._by_alert)

    @property
    def running(self) -> bool:
        return self._running

    def pending_tasks(self) -> list[EscalationTask]:
        with self._lock:
            return sorted(self._by_alert.values())

    # ── Scheduling ──────────────────────────────────────────────

    def schedule(
        self,
        alert: Alert,
        rule: AlertRule,
        now: int | None = None,
    ) -> EscalationTask | None:
        """Queue an escalation for ``alert`` if ``rule`` has a policy."""
        policy = rule.escalation
        if policy is None:
            return None
        now = now if now is not None else self._clock()
        task = EscalationTask(
            fire_at=now + int(policy.delay_minutes * _MS_PER_MINUTE),
            seq=next(self._seq),
            alert=alert,
            channels=list(policy.channels),
            mode=policy.mode,
        )
        with self._lock:
            previous = self._by_alert.pop(alert.id, None)
            if previous is not None:
                self._mark_cancelled(previous)
            heapq.heappush(self._heap, task)
            self._by_alert[alert.id] = task
        logger.debug(
            "escalation_scheduled",
            alert_id=alert.id,
            rule_id=alert.rule_id,
            fire_at=task.fire_at,
        )
        return task

    def cancel(self, alert_id: str) -> bool:
        """Cancel the escalation for ``alert_id``. Returns False if none was pending."""
        with self._lock:
            task = self._by_alert.pop(alert_id, None)
            if task is None:
                return False
            self._mark_cancelled(task)
        logger.debug("escalation_cancelled", alert_id=alert_id)
        return True

    def cancel_rule(self, rule_id: str) -> int:
        """Cancel every pending escalation raised by ``rule_id``."""
        with self._lock:
            doomed = [t for t in self._by_alert.values() if t.rule_id == rule_id]
            for task in doomed:
                del self._by_alert[task.alert_id]
                self._mark_cancelled(task)
        if doomed:
            logger.debug("escalations_cancelled", rule_id=rule_id, count=len(doomed))
        return len(doomed)

    def pop_due(self, now: int | None = None) -> list[EscalationTask]:
        """Remove and return every live task with ``fire_at <= now``."""
        now = now if now is not None else self._clock()
        due: list[EscalationTask] = []
        with self._lock:
            while self._heap and self._heap[0].fire_at <= now:
                task = heapq.heappop(self._heap)
                if task.cancelled:
                    self._cancelled -= 1
                    continue
                self._by_alert.pop(task.alert_id, None)
                due.append(task)
        return due

    def next_deadline(self) -> int | None:
        with self._lock:
            live = [t.fire_at for t in self._by_alert.values()]
        return min(live) if live else None

    # ── Firing ──────────────────────────────────────────────────

    async def run_due(self, now: int | None = None) -> list[Alert]:
        """Submit escalation notifications for every due task.

        Returns the escalation alerts handed to the dispatcher.
        """
        now = now if now is not None else self._clock()
        sent: list[Alert] = []
        for task in self.pop_due(now):
            if (
                task.mode == EscalationMode.IF_STILL_FIRING
                and self._still_firing is not None
                and not self._still_firing(task.rule_id, now)
            ):
                decision_logger.info(
                    "decision",
                    action="escalation_skipped",
                    alert_id=task.alert_id,
                    rule_id=task.rule_id,
                    reason="rule no longer firing",
                )
                continue

            escalated = task.alert.model_copy(update={
                "id": uuid.uuid4().hex,
                "message": format_escalation(task.alert),
                "timestamp": now,
            })
            try:
                self._dispatcher.submit(escalated, task.channels)
            except PoolSaturatedError:
                logger.warning(
                    "escalation_dispatch_rejected",
                    alert_id=task.alert_id,
                    rule_id=task.rule_id,
                )
                continue
            decision_logger.info(
                "decision",
                action="escalated",
                alert_id=escalated.id,
                original_alert_id=task.alert_id,
                rule_id=task.rule_id,
                correlation_id=escalated.correlation_id,
            )
            sent.append(escalated)
        return sent

    # ── Lifecycle ───────────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("escalation_scheduler_started", poll_interval=self._poll_interval)

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("escalation_scheduler_stopped", pending=self.pending)

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.run_due()
            except asyncio.CancelledError:
                return
            except Exception:
                logger.exception("escalation_loop_error")
            await asyncio.sleep(self._poll_interval)

    # ── Internal ────────────────────────────────────────────────

    def _mark_cancelled(self, task: EscalationTask) -> None:
        """Flag a task already removed from the index. Caller holds the lock."""
        task.cancelled = True
        self._cancelled += 1
        if self._cancelled * 2 >= len(self._heap):
            self._heap = [t for t in self._heap if not t.cancelled]
            heapq.heapify(self._heap)
            self._cancelled = 0
