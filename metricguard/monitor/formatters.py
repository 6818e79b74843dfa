"""Pure functions that turn firings and alerts into message text and channel payloads."""

from __future__ import annotations

import datetime
from typing import Any

from metricguard.core.types import Alert, ChannelConfig, RuleFiring, Severity

ESCALATION_PREFIX = "[ESCALATED] "

# ── Severity mappings ───────────────────────────────────────────

_SLACK_COLORS: dict[Severity, str] = {
    Severity.LOW: "#95A5A6",       # grey
    Severity.MEDIUM: "#2ECC71",    # green
    Severity.HIGH: "#F39C12",      # orange
    Severity.CRITICAL: "#E74C3C",  # red
}


def _format_minutes(minutes: float) -> str:
    return f"{minutes:g}m"


def _format_time(timestamp_ms: int) -> str:
    dt = datetime.datetime.fromtimestamp(timestamp_ms / 1000, tz=datetime.UTC)
    return dt.strftime("%Y-%m-%d %H:%M:%S UTC")


# ── Message text ────────────────────────────────────────────────


def format_rule_firing(firing: RuleFiring) -> str:
    """One-line description of why a rule fired."""
    rule = firing.rule
    cond = rule.condition
    title = rule.name or rule.id
    return (
        f"[{rule.severity.value.upper()}] {title}: "
        f"{cond.aggregation.value}({cond.metric}) over {_format_minutes(cond.window_minutes)}"
        f" = {firing.value:.4g} {cond.operator.value} {cond.threshold:g}"
    )


def format_escalation(alert: Alert) -> str:
    if alert.message.startswith(ESCALATION_PREFIX):
        return alert.message
    return ESCALATION_PREFIX + alert.message


# ── Channel payloads ────────────────────────────────────────────


def webhook_payload(alert: Alert) -> dict[str, Any]:
    """JSON body for generic webhook receivers."""
    return alert.model_dump(mode="json")


def slack_payload(alert: Alert, config: ChannelConfig) -> dict[str, Any]:
    """Slack incoming-webhook body with a severity-coloured attachment."""
    fields = [
        {"title": "Rule", "value": alert.rule_id, "short": True},
        {"title": "Severity", "value": alert.severity.value, "short": True},
    ]
    if alert.values:
        fields.append({
            "title": "Values",
            "value": ", ".join(f"{v:.4g}" for v in alert.values),
            "short": True,
        })
    fields.append({"title": "Correlation", "value": alert.correlation_id, "short": True})

    payload: dict[str, Any] = {
        "text": alert.message,
        "attachments": [
            {
                "color": _SLACK_COLORS.get(alert.severity, "#95A5A6"),
                "fields": fields,
                "footer": _format_time(alert.timestamp),
            }
        ],
    }
    channel = config.settings.get("channel")
    if channel:
        payload["channel"] = channel
    username = config.settings.get("username")
    if username:
        payload["username"] = username
    return payload
