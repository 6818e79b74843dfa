"""Tests for metricguard/core/config.py — YAML loading, defaults, rule parsing."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from metricguard.core.config import (
    DetectionConfig,
    DispatchConfig,
    LoggingConfig,
    Settings,
    StoreConfig,
    get_settings,
    load_settings,
    reset_settings,
)
from metricguard.core.types import Aggregation, ChannelType, EscalationMode, Operator, Severity


@pytest.fixture(autouse=True)
def _clean_settings() -> None:
    """Reset the global settings cache before each test."""
    reset_settings()


class TestDefaults:
    """Settings should have sensible defaults when no YAML is provided."""

    def test_default_store_config(self) -> None:
        cfg = StoreConfig()
        assert cfg.max_samples == 1000
        assert cfg.max_age_minutes is None

    def test_default_detection_config(self) -> None:
        cfg = DetectionConfig()
        assert cfg.statistical.min_samples == 30
        assert cfg.statistical.z_threshold == 3.0
        assert cfg.statistical.window == 1000
        assert cfg.trend.alpha == 0.3
        assert cfg.trend.window == 100
        assert cfg.trend.min_samples == 10
        assert cfg.contextual.z_threshold == 2.5
        assert cfg.contextual.min_similar == 5
        assert cfg.reconstruction.training_workers == 2
        assert cfg.reconstruction.max_pending_trainings == 16
        assert cfg.anomaly_metric_prefix == "anomaly."

    def test_default_dispatch_config(self) -> None:
        cfg = DispatchConfig()
        assert cfg.channel_timeout_secs == 10.0
        assert cfg.max_workers == 4

    def test_default_logging_config(self) -> None:
        cfg = LoggingConfig()
        assert cfg.level == "INFO"
        assert cfg.format == "json"
        assert cfg.decision_file is None

    def test_default_settings(self) -> None:
        s = Settings()
        assert s.store.max_samples == 1000
        assert s.engine.tick_interval_secs == 30.0
        assert s.rules == []
        assert s.logging.level == "INFO"


class TestYamlLoading:
    """Settings should load correctly from YAML files."""

    def test_load_from_yaml(self, tmp_path: Path) -> None:
        config_data = {
            "store": {"max_samples": 50, "max_age_minutes": 60},
            "detection": {"statistical": {"z_threshold": 4.0}},
            "rules": [
                {
                    "id": "err",
                    "name": "Errors",
                    "condition": {
                        "metric": "error_rate",
                        "operator": ">",
                        "threshold": 0.05,
                        "window_minutes": 5,
                        "aggregation": "avg",
                    },
                    "severity": "critical",
                    "channels": [{"type": "slack", "settings": {"webhook_url": "https://x"}}],
                    "throttle": {"duration_minutes": 15, "max_alerts": 3},
                    "escalation": {
                        "delay_minutes": 30,
                        "mode": "if_still_firing",
                        "channels": [{"type": "log"}],
                    },
                }
            ],
            "logging": {"level": "DEBUG", "format": "console"},
        }
        config_file = tmp_path / "settings.yaml"
        config_file.write_text(yaml.dump(config_data))

        settings = load_settings(config_file)

        assert settings.store.max_samples == 50
        assert settings.store.max_age_minutes == 60
        assert settings.detection.statistical.z_threshold == 4.0
        assert settings.logging.level == "DEBUG"
        assert settings.logging.format == "console"

        rule = settings.rules[0]
        assert rule.id == "err"
        assert rule.condition.operator == Operator.GT
        assert rule.condition.aggregation == Aggregation.AVG
        assert rule.severity == Severity.CRITICAL
        assert rule.channels[0].type == ChannelType.SLACK
        assert rule.throttle is not None
        assert rule.throttle.max_alerts == 3
        assert rule.escalation is not None
        assert rule.escalation.mode == EscalationMode.IF_STILL_FIRING

    def test_load_missing_file_uses_defaults(self, tmp_path: Path) -> None:
        settings = load_settings(tmp_path / "nonexistent.yaml")
        assert settings.store.max_samples == 1000
        assert settings.rules == []

    def test_load_empty_file_uses_defaults(self, tmp_path: Path) -> None:
        config_file = tmp_path / "empty.yaml"
        config_file.write_text("")
        settings = load_settings(config_file)
        assert settings.dispatch.max_pending == 100

    def test_partial_yaml_merges_with_defaults(self, tmp_path: Path) -> None:
        config_data = {"detection": {"trend": {"alpha": 0.5}}}
        config_file = tmp_path / "settings.yaml"
        config_file.write_text(yaml.dump(config_data))

        settings = load_settings(config_file)
        assert settings.detection.trend.alpha == 0.5
        # Other defaults still intact
        assert settings.detection.trend.window == 100
        assert settings.detection.statistical.min_samples == 30

    def test_invalid_rule_rejected(self, tmp_path: Path) -> None:
        config_data = {
            "rules": [
                {
                    "id": "bad",
                    "condition": {
                        "metric": "m",
                        "operator": "~=",
                        "threshold": 1,
                        "window_minutes": 5,
                    },
                }
            ]
        }
        config_file = tmp_path / "settings.yaml"
        config_file.write_text(yaml.dump(config_data))
        with pytest.raises(ValidationError):
            load_settings(config_file)


class TestCaching:
    def test_get_settings_caches(self, tmp_path: Path) -> None:
        config_file = tmp_path / "settings.yaml"
        config_file.write_text(yaml.dump({"store": {"max_samples": 7}}))
        loaded = load_settings(config_file)
        assert get_settings() is loaded

    def test_reset_clears_cache(self, tmp_path: Path) -> None:
        config_file = tmp_path / "settings.yaml"
        config_file.write_text(yaml.dump({"store": {"max_samples": 7}}))
        loaded = load_settings(config_file)
        reset_settings()
        assert get_settings() is not loaded
