"""MetricGuard — wires ingestion, detection, rules, throttling, dispatch and escalation."""

from __future__ import annotations

import asyncio
import functools
import json
import threading
from collections.abc import Callable
from pathlib import Path

import structlog

from metricguard.alerting.escalation import EscalationScheduler
from metricguard.alerting.rules import AlertRuleEngine
from metricguard.alerting.throttle import ThrottleController
from metricguard.core.config import Settings, get_settings
from metricguard.core.types import Alert, AlertRule, AnomalyVerdict, DispatchResult, now_ms
from metricguard.detection.ensemble import AnomalyDetector, create_detector
from metricguard.metrics.exceptions import InvalidSample
from metricguard.metrics.store import MetricWindowStore
from metricguard.monitor.dispatcher import NotificationDispatcher
from metricguard.monitor.exceptions import PoolSaturatedError
from metricguard.monitor.factory import create_dispatcher
from metricguard.monitor.formatters import format_rule_firing

decision_logger = structlog.get_logger("decision_log")

logger = structlog.stdlib.get_logger()


class MetricGuard:
    """End-to-end anomaly detection and alerting engine.

    - ``ingest`` validates a sample, judges it against prior history, then
      stores it. With ``detection.record_verdicts`` on, the verdict
      confidence is also stored as ``<anomaly_metric_prefix><metric>`` so
      rules can alert on it. Names under that prefix are reserved.
    - ``tick`` evaluates all rules; each firing passes the throttle,
      becomes an Alert and is submitted for dispatch. Once at least one
      channel has delivered it, it is queued for escalation when its rule
      asks for one.
    - ``start`` runs ``tick`` every ``engine.tick_interval_secs`` and starts
      the escalation loop.

    Usage::

        guard = MetricGuard(settings)
        guard.add_rule(rule)
        await guard.start()
        guard.ingest("error_rate", 0.08, ts)
        ...
        await guard.stop()
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        store: MetricWindowStore | None = None,
        detector: AnomalyDetector | None = None,
        dispatcher: NotificationDispatcher | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._settings = settings or get_settings()
        self._clock = clock

        self.store = store or MetricWindowStore(self._settings.store)
        self.detector = detector or create_detector(self.store, self._settings.detection)
        self.rules = AlertRuleEngine(self.store)
        self.throttle = ThrottleController()
        self.dispatcher = dispatcher or create_dispatcher(self._settings.dispatch)
        self.escalations = EscalationScheduler(
            self.dispatcher,
            still_firing=self.rules.is_firing,
            poll_interval_secs=self._settings.engine.escalation_poll_secs,
            clock=clock,
        )

        for rule in self._settings.rules:
            self.rules.add_rule(rule)

        self._task: asyncio.Task[None] | None = None
        self._running = False
        self._ticks = 0
        self._alerts_sent = 0
        self._alerts_suppressed = 0
        self._ingest_locks: dict[str, threading.Lock] = {}
        self._ingest_registry_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def stats(self) -> dict[str, object]:
        return {
            "ticks": self._ticks,
            "alerts_sent": self._alerts_sent,
            "alerts_suppressed": self._alerts_suppressed,
            "pending_escalations": self.escalations.pending,
            "dispatch": self.dispatcher.stats,
        }

    # ── Ingestion ───────────────────────────────────────────────

    def ingest(
        self,
        metric_name: str,
        value: float,
        timestamp_ms: int,
        context: dict[str, str] | None = None,
    ) -> AnomalyVerdict | None:
        """Store a sample and return its anomaly verdict.

        Judging, storing and recording the derived confidence happen under
        the metric's own lock, so concurrent writers of one metric never
        interleave. A derived sample the store refuses is logged and
        skipped; the primary sample stays stored. Returns None when verdict
        recording is disabled.

        Raises:
            InvalidSample: On malformed input, an out-of-order timestamp, or
                a name under the reserved anomaly prefix while verdicts are
                recorded.
        """
        detection = self._settings.detection
        self.store.validate(metric_name, value, timestamp_ms)
        if detection.record_verdicts and metric_name.startswith(detection.anomaly_metric_prefix):
            raise InvalidSample(
                f"{metric_name!r} is under the reserved prefix "
                f"{detection.anomaly_metric_prefix!r}"
            )

        with self._ingest_lock_for(metric_name):
            verdict: AnomalyVerdict | None = None
            if detection.record_verdicts:
                verdict = self.detector.evaluate(metric_name, value, context, timestamp_ms)

            self.store.ingest(metric_name, value, timestamp_ms, context)

            if verdict is not None:
                derived = detection.anomaly_metric_prefix + metric_name
                try:
                    self.store.ingest(derived, verdict.confidence, timestamp_ms, context)
                except InvalidSample as exc:
                    logger.warning(
                        "derived_sample_skipped",
                        metric=derived,
                        timestamp=timestamp_ms,
                        error=str(exc),
                    )

        if verdict is not None and verdict.is_anomaly:
            logger.info(
                "anomaly_detected",
                metric=metric_name,
                value=value,
                confidence=round(verdict.confidence, 4),
                per_strategy=verdict.per_strategy,
            )
        return verdict

    def _ingest_lock_for(self, metric_name: str) -> threading.Lock:
        with self._ingest_registry_lock:
            lock = self._ingest_locks.get(metric_name)
            if lock is None:
                lock = threading.Lock()
                self._ingest_locks[metric_name] = lock
            return lock

    def get_verdict(
        self,
        metric_name: str,
        value: float,
        context: dict[str, str] | None = None,
    ) -> AnomalyVerdict:
        """Judge ``value`` against current history without storing it."""
        return self.detector.get_verdict(metric_name, value, context, self._clock())

    # ── Rule configuration ──────────────────────────────────────

    def add_rule(self, rule: AlertRule) -> None:
        self.rules.add_rule(rule)

    def remove_rule(self, rule_id: str) -> None:
        """Remove a rule with its throttle state and pending escalations.

        Raises:
            UnknownRule: If the rule is not registered.
        """
        self.rules.remove_rule(rule_id)
        self.throttle.reset(rule_id)
        self.escalations.cancel_rule(rule_id)

    def list_rules(self) -> list[AlertRule]:
        return self.rules.list_rules()

    # ── Evaluation ──────────────────────────────────────────────

    async def tick(self, now: int | None = None) -> list[Alert]:
        """Run one evaluation pass. Returns the alerts submitted for dispatch."""
        now = now if now is not None else self._clock()
        self._ticks += 1
        alerts: list[Alert] = []

        for firing in self.rules.evaluate(now):
            rule = firing.rule
            if not self.throttle.should_send(rule, now):
                self._alerts_suppressed += 1
                decision_logger.info(
                    "decision",
                    action="suppressed",
                    rule_id=rule.id,
                    value=firing.value,
                    reason="throttled",
                )
                continue

            alert = Alert(
                rule_id=rule.id,
                severity=rule.severity,
                message=format_rule_firing(firing),
                timestamp=now,
                values=[firing.value],
            )
            try:
                task = self.dispatcher.submit(alert, rule.channels)
            except PoolSaturatedError:
                logger.warning("alert_dispatch_rejected", rule_id=rule.id, alert_id=alert.id)
                continue

            self._alerts_sent += 1
            if rule.escalation is not None:
                task.add_done_callback(functools.partial(self._on_dispatched, alert, rule))
            alerts.append(alert)

        return alerts

    def _on_dispatched(
        self,
        alert: Alert,
        rule: AlertRule,
        task: asyncio.Task[list[DispatchResult]],
    ) -> None:
        """Queue the escalation once some channel has delivered the alert."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("alert_dispatch_error", rule_id=rule.id, alert_id=alert.id, error=str(exc))
            return
        if rule.id not in self.rules:
            return
        if not any(result.success for result in task.result()):
            decision_logger.info(
                "decision",
                action="escalation_not_scheduled",
                rule_id=rule.id,
                alert_id=alert.id,
                reason="dispatch_failed",
            )
            return
        self.escalations.schedule(alert, rule, alert.timestamp)

    # ── Lifecycle ───────────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        await self.escalations.start()
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "metricguard_started",
            rules=len(self.rules),
            strategies=self.detector.strategy_names,
            tick_interval=self._settings.engine.tick_interval_secs,
        )

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.escalations.stop()
        await self.dispatcher.close()
        await asyncio.to_thread(self.detector.close)
        logger.info("metricguard_stopped", **self.stats)

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                return
            except Exception:
                logger.exception("tick_error")
            await asyncio.sleep(self._settings.engine.tick_interval_secs)

    # ── Persisted state ─────────────────────────────────────────

    def save_state(self, path: str | Path) -> None:
        """Write metric windows and throttle states to a JSON file."""
        data = {
            "store": self.store.snapshot(),
            "throttle": self.throttle.snapshot(),
        }
        Path(path).write_text(json.dumps(data))
        logger.info("state_saved", path=str(path), metrics=len(data["store"]))

    def load_state(self, path: str | Path) -> bool:
        """Restore state written by ``save_state``. Returns False if the file is missing."""
        state_path = Path(path)
        if not state_path.exists():
            return False
        data = json.loads(state_path.read_text())
        restored = self.store.restore(data.get("store", {}))
        self.throttle.restore(data.get("throttle", {}))
        logger.info("state_loaded", path=str(path), samples=restored)
        return True
