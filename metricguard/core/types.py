"""Domain types shared by the store, detectors, rule engine and dispatcher."""

from __future__ import annotations

import operator as _op
import time
import uuid
from collections.abc import Callable
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


def _new_id() -> str:
    return uuid.uuid4().hex


def now_ms() -> int:
    """Current wall-clock time in integer milliseconds."""
    return int(time.time() * 1000)


# ── Enums ────────────────────────────────────────────────────────


class Severity(StrEnum):
    """Alert severity."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Operator(StrEnum):
    """Comparison operator of a rule condition."""

    GT = ">"
    LT = "<"
    GE = ">="
    LE = "<="
    EQ = "=="
    NE = "!="

    def compare(self, value: float, threshold: float) -> bool:
        return _OPERATORS[self](value, threshold)


_OPERATORS: dict[Operator, Callable[[float, float], bool]] = {
    Operator.GT: _op.gt,
    Operator.LT: _op.lt,
    Operator.GE: _op.ge,
    Operator.LE: _op.le,
    Operator.EQ: _op.eq,
    Operator.NE: _op.ne,
}


class Aggregation(StrEnum):
    """Window aggregation function."""

    AVG = "avg"
    SUM = "sum"
    MIN = "min"
    MAX = "max"
    COUNT = "count"


class ChannelType(StrEnum):
    """Notification channel kind."""

    EMAIL = "email"
    SLACK = "slack"
    WEBHOOK = "webhook"
    SMS = "sms"
    LOG = "log"


class EscalationMode(StrEnum):
    """Whether an escalation re-checks its rule before sending."""

    UNCONDITIONAL = "unconditional"
    IF_STILL_FIRING = "if_still_firing"


# ── Metric Types ─────────────────────────────────────────────────


class MetricSample(BaseModel):
    """A single timestamped observation of a named metric."""

    model_config = ConfigDict(frozen=True)

    metric_name: str
    timestamp: int  # epoch milliseconds
    value: float
    context: dict[str, str] = Field(default_factory=dict)


class AnomalyVerdict(BaseModel):
    """Anomaly decision of one strategy or of the ensemble."""

    is_anomaly: bool = False
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    per_strategy: dict[str, float] = Field(default_factory=dict)

    @classmethod
    def abstain(cls) -> AnomalyVerdict:
        """Verdict of a strategy that lacks the history to decide."""
        return cls(is_anomaly=False, confidence=0.0)


# ── Rule Types ───────────────────────────────────────────────────


class ChannelConfig(BaseModel):
    """Where and how a notification is delivered."""

    type: ChannelType
    settings: dict[str, str] = Field(default_factory=dict)


class RuleCondition(BaseModel):
    """Threshold comparison over an aggregated metric window."""

    metric: str
    operator: Operator
    threshold: float
    window_minutes: float = Field(gt=0)
    aggregation: Aggregation = Aggregation.AVG


class ThrottleConfig(BaseModel):
    """At most ``max_alerts`` notifications per ``duration_minutes`` window."""

    duration_minutes: float = Field(gt=0)
    max_alerts: int = Field(ge=1)


class EscalationConfig(BaseModel):
    """Deferred re-notification policy."""

    delay_minutes: float = Field(ge=0)
    channels: list[ChannelConfig] = Field(default_factory=list)
    mode: EscalationMode = EscalationMode.UNCONDITIONAL


class AlertRule(BaseModel):
    """Declarative alert rule, keyed uniquely by ``id``."""

    id: str = Field(min_length=1)
    name: str = ""
    description: str = ""
    condition: RuleCondition
    severity: Severity = Severity.MEDIUM
    channels: list[ChannelConfig] = Field(default_factory=list)
    throttle: ThrottleConfig | None = None
    escalation: EscalationConfig | None = None


class RuleFiring(BaseModel):
    """A rule whose condition held at ``evaluated_at``."""

    rule: AlertRule
    value: float
    evaluated_at: int


# ── Alert Types ──────────────────────────────────────────────────


class Alert(BaseModel):
    """Notification payload created when a firing passes the throttle."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    rule_id: str
    severity: Severity
    message: str
    timestamp: int = Field(default_factory=now_ms)
    values: list[float] = Field(default_factory=list)
    correlation_id: str = Field(default_factory=_new_id)


class DispatchResult(BaseModel):
    """Outcome of delivering one alert to one channel."""

    channel_type: ChannelType
    success: bool
    error: str | None = None
