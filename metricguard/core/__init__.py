"""Core module — config, types, logging."""

from metricguard.core.config import Settings, get_settings, load_settings, reset_settings
from metricguard.core.logging import setup_logging
from metricguard.core.types import (
    Aggregation,
    Alert,
    AlertRule,
    AnomalyVerdict,
    ChannelConfig,
    ChannelType,
    DispatchResult,
    EscalationConfig,
    EscalationMode,
    MetricSample,
    Operator,
    RuleCondition,
    RuleFiring,
    Severity,
    ThrottleConfig,
)

__all__ = [
    "Aggregation",
    "Alert",
    "AlertRule",
    "AnomalyVerdict",
    "ChannelConfig",
    "ChannelType",
    "DispatchResult",
    "EscalationConfig",
    "EscalationMode",
    "MetricSample",
    "Operator",
    "RuleCondition",
    "RuleFiring",
    "Settings",
    "Severity",
    "ThrottleConfig",
    "get_settings",
    "load_settings",
    "reset_settings",
    "setup_logging",
]
