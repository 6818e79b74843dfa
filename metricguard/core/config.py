"""Pydantic settings loaded from YAML configuration."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from metricguard.core.types import AlertRule

_settings: Settings | None = None

_DEFAULT_CONFIG_PATH = Path("config/settings.yaml")


class StoreConfig(BaseModel):
    """Per-metric window bounds."""

    max_samples: int = 1000
    max_age_minutes: float | None = None


class StatisticalConfig(BaseModel):
    """Z-score strategy over long history."""

    enabled: bool = True
    window: int = 1000
    min_samples: int = 30
    z_threshold: float = 3.0
    min_std: float = 1e-9


class TrendConfig(BaseModel):
    """Exponential smoothing forecast strategy."""

    enabled: bool = True
    window: int = 100
    min_samples: int = 10
    alpha: float = 0.3
    volatility_multiplier: float = 3.0
    min_std: float = 1e-9


class ContextualConfig(BaseModel):
    """Z-score against samples sharing the same context."""

    enabled: bool = True
    window: int = 1000
    min_similar: int = 5
    z_threshold: float = 2.5
    context_keys: list[str] = Field(default_factory=list)
    min_std: float = 1e-9


class ReconstructionConfig(BaseModel):
    """Centroid reconstruction model over feature vectors."""

    enabled: bool = True
    min_observations: int = 50
    training_window: int = 500
    refit_interval: int = 50
    n_clusters: int = 4
    max_iterations: int = 25
    threshold_quantile: float = 0.99
    threshold_margin: float = 1.5
    context_signals: list[str] = Field(default_factory=list)
    seed: int = 7
    training_workers: int = 2
    max_pending_trainings: int = 16


class DetectionConfig(BaseModel):
    """Container for all detection strategy configurations."""

    statistical: StatisticalConfig = StatisticalConfig()
    trend: TrendConfig = TrendConfig()
    contextual: ContextualConfig = ContextualConfig()
    reconstruction: ReconstructionConfig = ReconstructionConfig()
    # Verdict confidences are recorded as ``<prefix><metric>`` samples.
    record_verdicts: bool = True
    anomaly_metric_prefix: str = "anomaly."


class EngineConfig(BaseModel):
    """Evaluation tick and escalation loop timing."""

    tick_interval_secs: float = 30.0
    escalation_poll_secs: float = 1.0


class DispatchConfig(BaseModel):
    """Notification fan-out limits."""

    channel_timeout_secs: float = 10.0
    max_workers: int = 4
    max_pending: int = 100


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "json"
    decision_file: str | None = None


class Settings(BaseModel):
    """Root settings container."""

    store: StoreConfig = StoreConfig()
    detection: DetectionConfig = DetectionConfig()
    engine: EngineConfig = EngineConfig()
    dispatch: DispatchConfig = DispatchConfig()
    rules: list[AlertRule] = Field(default_factory=list)
    logging: LoggingConfig = LoggingConfig()


def load_settings(path: str | Path | None = None) -> Settings:
    """Load settings from a YAML file and cache globally.

    Args:
        path: Path to YAML config. Defaults to config/settings.yaml.

    Returns:
        Parsed Settings instance.
    """
    global _settings  # noqa: PLW0603

    config_path = Path(path) if path else _DEFAULT_CONFIG_PATH

    data: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f)
            if isinstance(raw, dict):
                data = raw

    _settings = Settings(**data)
    return _settings


def get_settings() -> Settings:
    """Return the cached settings, loading defaults if not yet loaded."""
    global _settings  # noqa: PLW0603
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Reset the cached settings (useful for testing)."""
    global _settings  # noqa: PLW0603
    _settings = None
