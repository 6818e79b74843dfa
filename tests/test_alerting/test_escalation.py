"""Tests for EscalationScheduler — scheduling, cancellation, firing modes."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock, patch

from metricguard.alerting.escalation import EscalationScheduler
from metricguard.core.types import (
    Alert,
    AlertRule,
    ChannelConfig,
    ChannelType,
    EscalationConfig,
    EscalationMode,
    RuleCondition,
    Severity,
)
from metricguard.monitor.exceptions import PoolSaturatedError
from metricguard.monitor.formatters import ESCALATION_PREFIX

MIN = 60_000
T0 = 1_700_000_000_000

_ONCALL = [ChannelConfig(type=ChannelType.LOG, settings={"route": "oncall"})]


def _rule(
    rule_id: str = "err",
    delay: float = 30,
    mode: EscalationMode = EscalationMode.UNCONDITIONAL,
    escalate: bool = True,
) -> AlertRule:
    return AlertRule(
        id=rule_id,
        name=rule_id,
        condition=RuleCondition(metric="m", operator=">", threshold=1.0, window_minutes=5),
        escalation=EscalationConfig(delay_minutes=delay, channels=_ONCALL, mode=mode) if escalate else None,
    )


def _alert(rule_id: str = "err") -> Alert:
    return Alert(rule_id=rule_id, severity=Severity.HIGH, message="[HIGH] err: boom", timestamp=T0)


def _scheduler(still_firing=None) -> tuple[EscalationScheduler, MagicMock]:  # type: ignore[no-untyped-def]
    dispatcher = MagicMock()
    return EscalationScheduler(dispatcher, still_firing=still_firing, clock=lambda: T0), dispatcher


# ── Scheduling ──────────────────────────────────────────────────


class TestSchedule:
    def test_rule_without_policy(self) -> None:
        scheduler, _ = _scheduler()
        assert scheduler.schedule(_alert(), _rule(escalate=False), T0) is None
        assert scheduler.pending == 0

    def test_fire_at_is_delay_after_now(self) -> None:
        scheduler, _ = _scheduler()
        task = scheduler.schedule(_alert(), _rule(delay=30), T0)
        assert task is not None
        assert task.fire_at == T0 + 30 * MIN
        assert scheduler.next_deadline() == T0 + 30 * MIN
        assert scheduler.pending == 1

    def test_defaults_to_clock(self) -> None:
        scheduler, _ = _scheduler()
        task = scheduler.schedule(_alert(), _rule(delay=1))
        assert task is not None and task.fire_at == T0 + MIN

    def test_rescheduling_same_alert_replaces(self) -> None:
        scheduler, _ = _scheduler()
        alert = _alert()
        scheduler.schedule(alert, _rule(delay=5), T0)
        scheduler.schedule(alert, _rule(delay=10), T0)
        assert scheduler.pending == 1
        assert scheduler.next_deadline() == T0 + 10 * MIN

    def test_pending_tasks_ordered(self) -> None:
        scheduler, _ = _scheduler()
        late = scheduler.schedule(_alert(), _rule(delay=20), T0)
        early = scheduler.schedule(_alert(), _rule(delay=5), T0)
        assert scheduler.pending_tasks() == [early, late]


# ── Cancellation ────────────────────────────────────────────────


class TestCancel:
    def test_cancel_alert(self) -> None:
        scheduler, _ = _scheduler()
        alert = _alert()
        scheduler.schedule(alert, _rule(), T0)
        assert scheduler.cancel(alert.id) is True
        assert scheduler.cancel(alert.id) is False
        assert scheduler.pending == 0
        assert scheduler.pop_due(T0 + 60 * MIN) == []

    def test_cancel_rule(self) -> None:
        scheduler, _ = _scheduler()
        for _ in range(3):
            scheduler.schedule(_alert("err"), _rule("err"), T0)
        keep = scheduler.schedule(_alert("cpu"), _rule("cpu"), T0)

        assert scheduler.cancel_rule("err") == 3
        assert scheduler.pending_tasks() == [keep]
        assert scheduler.cancel_rule("err") == 0

    def test_cancelled_tasks_compacted(self) -> None:
        scheduler, _ = _scheduler()
        alerts = [_alert() for _ in range(4)]
        for alert in alerts:
            scheduler.schedule(alert, _rule(), T0)
        scheduler.cancel(alerts[0].id)
        scheduler.cancel(alerts[1].id)
        assert len(scheduler._heap) == 2


# ── Firing ──────────────────────────────────────────────────────


class TestRunDue:
    async def test_nothing_due_yet(self) -> None:
        scheduler, dispatcher = _scheduler()
        scheduler.schedule(_alert(), _rule(delay=30), T0)
        assert await scheduler.run_due(T0 + 29 * MIN) == []
        dispatcher.submit.assert_not_called()
        assert scheduler.pending == 1

    async def test_unconditional_escalation(self) -> None:
        scheduler, dispatcher = _scheduler()
        original = _alert()
        scheduler.schedule(original, _rule(delay=30), T0)

        with patch("metricguard.alerting.escalation.decision_logger") as mock_log:
            sent = await scheduler.run_due(T0 + 30 * MIN)

        assert len(sent) == 1
        escalated = sent[0]
        assert escalated.id != original.id
        assert escalated.correlation_id == original.correlation_id
        assert escalated.rule_id == "err"
        assert escalated.message.startswith(ESCALATION_PREFIX)
        assert escalated.timestamp == T0 + 30 * MIN
        dispatcher.submit.assert_called_once_with(escalated, _ONCALL)
        assert mock_log.info.call_args.kwargs["action"] == "escalated"
        assert scheduler.pending == 0

    async def test_fires_once(self) -> None:
        scheduler, dispatcher = _scheduler()
        scheduler.schedule(_alert(), _rule(delay=1), T0)
        await scheduler.run_due(T0 + MIN)
        await scheduler.run_due(T0 + 2 * MIN)
        assert dispatcher.submit.call_count == 1

    async def test_if_still_firing_skips_resolved_rule(self) -> None:
        still_firing = MagicMock(return_value=False)
        scheduler, dispatcher = _scheduler(still_firing)
        scheduler.schedule(_alert(), _rule(mode=EscalationMode.IF_STILL_FIRING), T0)

        with patch("metricguard.alerting.escalation.decision_logger") as mock_log:
            sent = await scheduler.run_due(T0 + 30 * MIN)

        assert sent == []
        dispatcher.submit.assert_not_called()
        still_firing.assert_called_once_with("err", T0 + 30 * MIN)
        assert mock_log.info.call_args.kwargs["action"] == "escalation_skipped"

    async def test_if_still_firing_sends_when_firing(self) -> None:
        scheduler, dispatcher = _scheduler(MagicMock(return_value=True))
        scheduler.schedule(_alert(), _rule(mode=EscalationMode.IF_STILL_FIRING), T0)
        assert len(await scheduler.run_due(T0 + 30 * MIN)) == 1
        dispatcher.submit.assert_called_once()

    async def test_unconditional_ignores_firing_state(self) -> None:
        still_firing = MagicMock(return_value=False)
        scheduler, dispatcher = _scheduler(still_firing)
        scheduler.schedule(_alert(), _rule(), T0)
        assert len(await scheduler.run_due(T0 + 30 * MIN)) == 1
        still_firing.assert_not_called()

    async def test_saturated_pool_drops_escalation(self) -> None:
        scheduler, dispatcher = _scheduler()
        dispatcher.submit.side_effect = PoolSaturatedError("full")
        scheduler.schedule(_alert(), _rule(), T0)
        assert await scheduler.run_due(T0 + 30 * MIN) == []
        assert scheduler.pending == 0


class TestLifecycle:
    async def test_loop_fires_due_tasks(self) -> None:
        dispatcher = MagicMock()
        clock = MagicMock(return_value=T0)
        scheduler = EscalationScheduler(dispatcher, poll_interval_secs=0.01, clock=clock)
        scheduler.schedule(_alert(), _rule(delay=1), T0)

        await scheduler.start()
        assert scheduler.running is True
        clock.return_value = T0 + MIN
        for _ in range(50):
            if dispatcher.submit.called:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()

        assert scheduler.running is False
        dispatcher.submit.assert_called_once()
