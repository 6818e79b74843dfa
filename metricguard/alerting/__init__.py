"""Alert rules, throttling and escalation."""

from metricguard.alerting.escalation import EscalationScheduler, EscalationTask
from metricguard.alerting.exceptions import AlertingError, UnknownRule
from metricguard.alerting.rules import AlertRuleEngine
from metricguard.alerting.throttle import ThrottleController, ThrottleState

__all__ = [
    "AlertRuleEngine",
    "AlertingError",
    "EscalationScheduler",
    "EscalationTask",
    "ThrottleController",
    "ThrottleState",
    "UnknownRule",
]
