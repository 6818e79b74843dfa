"""AlertRuleEngine — rule registry and threshold evaluation over metric windows."""

from __future__ import annotations

import threading

import structlog

from metricguard.alerting.exceptions import UnknownRule
from metricguard.core.types import AlertRule, RuleFiring, now_ms
from metricguard.metrics.store import NO_DATA, MetricWindowStore

logger = structlog.stdlib.get_logger()


class AlertRuleEngine:
    """Holds alert rules and decides which of them fire.

    Evaluation only reads the store and returns firings; throttling,
    dispatch and escalation happen elsewhere, so ``evaluate`` can be
    repeated safely.

    Usage::

        engine = AlertRuleEngine(store)
        engine.add_rule(rule)
        for firing in engine.evaluate():
            ...
    """

    def __init__(self, store: MetricWindowStore) -> None:
        self._store = store
        self._rules: dict[str, AlertRule] = {}
        self._lock = threading.Lock()

    # ── Registry ────────────────────────────────────────────────

    def add_rule(self, rule: AlertRule) -> None:
        """Register a rule, replacing any rule with the same id."""
        with self._lock:
            replaced = rule.id in self._rules
            self._rules[rule.id] = rule
        logger.info(
            "rule_replaced" if replaced else "rule_added",
            rule_id=rule.id,
            metric=rule.condition.metric,
        )

    def remove_rule(self, rule_id: str, missing_ok: bool = False) -> AlertRule | None:
        """Unregister a rule.

        Raises:
            UnknownRule: If no rule has ``rule_id`` and ``missing_ok`` is False.
        """
        with self._lock:
            rule = self._rules.pop(rule_id, None)
        if rule is None:
            if missing_ok:
                return None
            raise UnknownRule(rule_id)
        logger.info("rule_removed", rule_id=rule_id)
        return rule

    def get_rule(self, rule_id: str) -> AlertRule:
        with self._lock:
            rule = self._rules.get(rule_id)
        if rule is None:
            raise UnknownRule(rule_id)
        return rule

    def list_rules(self) -> list[AlertRule]:
        with self._lock:
            return list(self._rules.values())

    def __contains__(self, rule_id: object) -> bool:
        with self._lock:
            return rule_id in self._rules

    def __len__(self) -> int:
        with self._lock:
            return len(self._rules)

    # ── Evaluation ──────────────────────────────────────────────

    def evaluate_rule(self, rule: AlertRule, now: int | None = None) -> RuleFiring | None:
        """Return a firing if ``rule``'s condition holds, else None.

        A metric with no samples in the window never fires.
        """
        now = now if now is not None else now_ms()
        cond = rule.condition
        value = self._store.aggregate(cond.metric, cond.window_minutes, cond.aggregation, now)
        if value is NO_DATA:
            return None
        if not cond.operator.compare(value, cond.threshold):
            return None
        return RuleFiring(rule=rule, value=value, evaluated_at=now)

    def evaluate(self, now: int | None = None) -> list[RuleFiring]:
        """Evaluate every rule. A rule that errors is logged and skipped."""
        now = now if now is not None else now_ms()
        firings: list[RuleFiring] = []
        for rule in self.list_rules():
            try:
                firing = self.evaluate_rule(rule, now)
            except Exception:
                logger.exception("rule_evaluation_error", rule_id=rule.id)
                continue
            if firing is not None:
                firings.append(firing)
        logger.debug("rules_evaluated", rules=len(self), fired=len(firings))
        return firings

    def is_firing(self, rule_id: str, now: int | None = None) -> bool:
        """Whether a registered rule currently fires. Unknown ids never fire."""
        with self._lock:
            rule = self._rules.get(rule_id)
        if rule is None:
            return False
        try:
            return self.evaluate_rule(rule, now) is not None
        except Exception:
            logger.exception("rule_evaluation_error", rule_id=rule_id)
            return False
