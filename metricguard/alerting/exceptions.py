"""Alert rule management exceptions."""

from __future__ import annotations


class AlertingError(Exception):
    """Base exception for alerting errors."""


class UnknownRule(AlertingError):
    """An operation referenced a rule id that is not registered."""

    def __init__(self, rule_id: str) -> None:
        super().__init__(f"unknown rule: {rule_id!r}")
        self.rule_id = rule_id
