"""Tests for the centroid reconstruction strategy."""

from __future__ import annotations

import math
import threading
import time
from unittest.mock import patch

import numpy as np
import pytest

from metricguard.core.config import ReconstructionConfig
from metricguard.core.types import MetricSample
from metricguard.detection.exceptions import ModelTrainingFailure
from metricguard.detection.reconstruction import (
    ReconstructionStrategy,
    build_features,
    fit_centroids,
)
from metricguard.metrics.store import MetricWindowStore

MIDNIGHT = 1_699_920_000_000  # Tuesday 2023-11-14T00:00:00Z
HOUR = 3_600_000


def _fill(store: MetricWindowStore, n: int, start: int = MIDNIGHT) -> None:
    for i in range(n):
        store.ingest("latency", 99.0 if i % 2 == 0 else 101.0, start + i * 1000)


class TestBuildFeatures:
    def test_layout(self) -> None:
        features = build_features(5.0, MIDNIGHT, {}, [])
        assert features.shape == (5,)
        assert features[0] == 5.0
        assert features[1] == pytest.approx(0.0)  # sin(hour 0)
        assert features[2] == pytest.approx(1.0)  # cos(hour 0)

    def test_hours_wrap_around(self) -> None:
        late = build_features(0.0, MIDNIGHT - 1, {}, [])  # 23:59:59
        early = build_features(0.0, MIDNIGHT, {}, [])
        noon = build_features(0.0, MIDNIGHT + 12 * HOUR, {}, [])
        assert np.linalg.norm(late - early) < np.linalg.norm(noon - early)

    def test_context_signals(self) -> None:
        features = build_features(1.0, MIDNIGHT, {"cpu": "0.75", "junk": "abc"}, ["cpu", "junk", "gone"])
        assert list(features[5:]) == [0.75, 0.0, 0.0]

    def test_non_finite_signal_zeroed(self) -> None:
        features = build_features(1.0, MIDNIGHT, {"cpu": "inf"}, ["cpu"])
        assert features[5] == 0.0
        assert all(math.isfinite(f) for f in features)


class TestFitCentroids:
    def _samples(self, n: int) -> list[MetricSample]:
        return [
            MetricSample(metric_name="m", timestamp=MIDNIGHT + i, value=99.0 if i % 2 == 0 else 101.0)
            for i in range(n)
        ]

    def test_threshold_floor(self) -> None:
        model = fit_centroids(self._samples(60), ReconstructionConfig())
        assert model.threshold == 1.0
        assert model.observations == 60
        assert model.fitted_through == MIDNIGHT + 59

    def test_clusters_capped_by_distinct_points(self) -> None:
        model = fit_centroids(self._samples(60), ReconstructionConfig(n_clusters=8))
        assert len(model.centroids) == 2

    def test_deterministic_for_seed(self) -> None:
        samples = [
            MetricSample(metric_name="m", timestamp=MIDNIGHT + i * 60_000, value=float(i % 7))
            for i in range(100)
        ]
        a = fit_centroids(samples, ReconstructionConfig(seed=3))
        b = fit_centroids(samples, ReconstructionConfig(seed=3))
        np.testing.assert_array_equal(a.centroids, b.centroids)
        assert a.threshold == b.threshold

    def test_empty_training_set_fails(self) -> None:
        with pytest.raises(ModelTrainingFailure):
            fit_centroids([], ReconstructionConfig())


def _trained(
    store: MetricWindowStore,
    config: ReconstructionConfig | None = None,
) -> ReconstructionStrategy:
    strategy = ReconstructionStrategy(store, config)
    strategy.evaluate("latency", 100.0, timestamp_ms=MIDNIGHT)
    strategy.drain(timeout=5)
    return strategy


class TestReconstructionStrategy:
    def test_abstains_below_min_observations(self) -> None:
        store = MetricWindowStore()
        _fill(store, 49)
        strategy = ReconstructionStrategy(store)
        verdict = strategy.evaluate("latency", 10_000.0, timestamp_ms=MIDNIGHT + 60_000)
        strategy.drain(timeout=5)
        assert verdict.confidence == 0.0
        assert strategy.models == {}
        assert strategy.pending_trainings == 0

    def test_cold_start_abstains_while_first_fit_runs(self) -> None:
        store = MetricWindowStore()
        _fill(store, 60)
        strategy = ReconstructionStrategy(store)
        verdict = strategy.evaluate("latency", 10_000.0, timestamp_ms=MIDNIGHT)
        assert verdict.confidence == 0.0
        strategy.drain(timeout=5)
        assert "latency" in strategy.models
        strategy.close()

    def test_normal_value_passes(self) -> None:
        store = MetricWindowStore()
        _fill(store, 60)
        strategy = _trained(store)
        verdict = strategy.evaluate("latency", 101.0, timestamp_ms=MIDNIGHT + 60_000)
        assert verdict.is_anomaly is False
        assert verdict.per_strategy == {"reconstruction": pytest.approx(0.0)}
        strategy.close()

    def test_outlying_value_flagged(self) -> None:
        store = MetricWindowStore()
        _fill(store, 60)
        strategy = _trained(store)
        verdict = strategy.evaluate("latency", 200.0, timestamp_ms=MIDNIGHT + 60_000)
        assert verdict.is_anomaly is True
        assert verdict.confidence == 1.0
        strategy.close()

    def test_unusual_time_of_day_flagged(self) -> None:
        store = MetricWindowStore()
        _fill(store, 60)
        strategy = _trained(store)
        verdict = strategy.evaluate("latency", 100.0, timestamp_ms=MIDNIGHT + 12 * HOUR)
        assert verdict.is_anomaly is True
        strategy.close()

    def test_refits_after_interval(self) -> None:
        store = MetricWindowStore()
        _fill(store, 60)
        strategy = _trained(store, ReconstructionConfig(refit_interval=10))
        first = strategy.models["latency"]

        _fill(store, 9, start=MIDNIGHT + 100_000)
        strategy.evaluate("latency", 100.0, timestamp_ms=MIDNIGHT)
        strategy.drain(timeout=5)
        assert strategy.models["latency"] is first

        _fill(store, 1, start=MIDNIGHT + 200_000)
        strategy.evaluate("latency", 100.0, timestamp_ms=MIDNIGHT)
        strategy.drain(timeout=5)
        assert strategy.models["latency"] is not first
        assert strategy.models["latency"].fitted_through == MIDNIGHT + 200_000
        strategy.close()

    def test_training_failure_abstains(self) -> None:
        store = MetricWindowStore()
        _fill(store, 60)
        strategy = ReconstructionStrategy(store)
        with patch(
            "metricguard.detection.reconstruction.fit_centroids",
            side_effect=ModelTrainingFailure("singular"),
        ):
            strategy.evaluate("latency", 10_000.0, timestamp_ms=MIDNIGHT)
            strategy.drain(timeout=5)
            verdict = strategy.evaluate("latency", 10_000.0, timestamp_ms=MIDNIGHT)
            strategy.drain(timeout=5)
        assert verdict.is_anomaly is False
        assert verdict.confidence == 0.0
        assert "latency" not in strategy.models
        strategy.close()


class TestBackgroundTraining:
    def test_slow_fit_does_not_block_other_metrics(self) -> None:
        store = MetricWindowStore()
        for i in range(60):
            store.ingest("a", 99.0 if i % 2 == 0 else 101.0, MIDNIGHT + i * 1000)
            store.ingest("b", 99.0 if i % 2 == 0 else 101.0, MIDNIGHT + i * 1000)
        strategy = ReconstructionStrategy(store)
        strategy.evaluate("a", 100.0, timestamp_ms=MIDNIGHT)
        strategy.drain(timeout=5)

        gate = threading.Event()
        real_fit = fit_centroids

        def slow_fit(history, config):  # type: ignore[no-untyped-def]
            if history[0].metric_name == "b":
                gate.wait(timeout=5)
            return real_fit(history, config)

        with patch("metricguard.detection.reconstruction.fit_centroids", side_effect=slow_fit):
            started = time.monotonic()
            cold = strategy.evaluate("b", 10_000.0, timestamp_ms=MIDNIGHT)
            served = strategy.evaluate("a", 200.0, timestamp_ms=MIDNIGHT + 60_000)
            elapsed = time.monotonic() - started

            assert elapsed < 1.0
            assert cold.confidence == 0.0
            assert served.is_anomaly is True
            assert strategy.pending_trainings == 1

            gate.set()
            strategy.drain(timeout=5)
        assert "b" in strategy.models
        strategy.close()

    def test_previous_model_serves_during_refit(self) -> None:
        store = MetricWindowStore()
        _fill(store, 60)
        strategy = _trained(store, ReconstructionConfig(refit_interval=10))
        first = strategy.models["latency"]
        _fill(store, 10, start=MIDNIGHT + 100_000)

        gate = threading.Event()
        real_fit = fit_centroids

        def slow_fit(history, config):  # type: ignore[no-untyped-def]
            gate.wait(timeout=5)
            return real_fit(history, config)

        with patch("metricguard.detection.reconstruction.fit_centroids", side_effect=slow_fit):
            verdict = strategy.evaluate("latency", 200.0, timestamp_ms=MIDNIGHT + 60_000)
            again = strategy.evaluate("latency", 200.0, timestamp_ms=MIDNIGHT + 60_000)
            assert verdict.is_anomaly is True
            assert again.is_anomaly is True
            assert strategy.models["latency"] is first
            assert strategy.pending_trainings == 1
            gate.set()
            strategy.drain(timeout=5)
        assert strategy.models["latency"] is not first
        strategy.close()

    def test_submissions_over_bound_rejected(self) -> None:
        store = MetricWindowStore()
        for name in ("a", "b"):
            for i in range(60):
                store.ingest(name, 99.0 if i % 2 == 0 else 101.0, MIDNIGHT + i * 1000)
        strategy = ReconstructionStrategy(
            store, ReconstructionConfig(training_workers=1, max_pending_trainings=1)
        )
        gate = threading.Event()
        real_fit = fit_centroids

        def slow_fit(history, config):  # type: ignore[no-untyped-def]
            gate.wait(timeout=5)
            return real_fit(history, config)

        with patch("metricguard.detection.reconstruction.fit_centroids", side_effect=slow_fit):
            strategy.evaluate("a", 100.0, timestamp_ms=MIDNIGHT)
            strategy.evaluate("b", 100.0, timestamp_ms=MIDNIGHT)
            assert strategy.pending_trainings == 1
            gate.set()
            strategy.drain(timeout=5)
        assert list(strategy.models) == ["a"]

        strategy.evaluate("b", 100.0, timestamp_ms=MIDNIGHT)
        strategy.drain(timeout=5)
        assert set(strategy.models) == {"a", "b"}
        strategy.close()
