"""ThrottleController — per-rule fixed-window notification rate limit."""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass
from typing import Any

import structlog

from metricguard.core.types import AlertRule, now_ms

logger = structlog.stdlib.get_logger()

_MS_PER_MINUTE = 60_000


@dataclass
class ThrottleState:
    """Send count inside the window that opened at ``window_start``."""

    window_start: int
    count: int


class ThrottleController:
    """Decides whether a firing may be sent, per rule id.

    State machine per rule:

    - unseen: the first call opens a window at ``now`` with count 1 -> send.
    - window elapsed (``now - window_start >= duration``): reopen at ``now``
      with count 1 -> send.
    - ``count < max_alerts``: increment -> send.
    - otherwise -> suppress.

    Rules without a throttle always send. Calls for the same rule are
    serialised by a per-rule lock so two evaluators cannot both take the
    last slot.
    """

    def __init__(self) -> None:
        self._states: dict[str, ThrottleState] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def should_send(self, rule: AlertRule, now: int | None = None) -> bool:
        throttle = rule.throttle
        if throttle is None:
            return True

        now = now if now is not None else now_ms()
        duration_ms = throttle.duration_minutes * _MS_PER_MINUTE

        with self._lock_for(rule.id):
            state = self._states.get(rule.id)
            if state is None or now - state.window_start >= duration_ms:
                self._states[rule.id] = ThrottleState(window_start=now, count=1)
                return True
            if state.count < throttle.max_alerts:
                state.count += 1
                return True

        logger.debug(
            "alert_throttled",
            rule_id=rule.id,
            window_start=state.window_start,
            count=state.count,
            max_alerts=throttle.max_alerts,
        )
        return False

    def state(self, rule_id: str) -> ThrottleState | None:
        """Copy of a rule's throttle state, or None if unseen."""
        with self._lock_for(rule_id):
            state = self._states.get(rule_id)
            return ThrottleState(state.window_start, state.count) if state else None

    def reset(self, rule_id: str) -> None:
        """Forget a rule's state (it becomes unseen again).

        Only the state is dropped; the rule's lock outlives it.
        """
        with self._lock_for(rule_id):
            self._states.pop(rule_id, None)

    # ── Snapshot / restore ──────────────────────────────────────

    def snapshot(self) -> dict[str, dict[str, Any]]:
        with self._registry_lock:
            rule_ids = list(self._states)
        result: dict[str, dict[str, Any]] = {}
        for rule_id in rule_ids:
            state = self.state(rule_id)
            if state is not None:
                result[rule_id] = asdict(state)
        return result

    def restore(self, data: dict[str, dict[str, Any]]) -> None:
        for rule_id, raw in data.items():
            with self._lock_for(rule_id):
                self._states[rule_id] = ThrottleState(
                    window_start=int(raw["window_start"]),
                    count=int(raw["count"]),
                )

    # ── Internal ────────────────────────────────────────────────

    def _lock_for(self, rule_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(rule_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[rule_id] = lock
            return lock
