"""Reconstruction strategy — learned centroid model of normal feature vectors.

Each sample becomes a feature vector::

    [value, sin(hour), cos(hour), sin(weekday), cos(weekday), *context_signals]

Hour and weekday are encoded on the unit circle so 23:00 sits next to
00:00. Features are standardised with the training mean and spread, and
k-means centroids are fitted on the result. A sample is reconstructed as
its nearest centroid; the reconstruction error is the distance to it.

The anomaly threshold is calibrated from the training errors:
``quantile(errors, threshold_quantile) * threshold_margin``, never below
``_MIN_THRESHOLD``.
"""

from __future__ import annotations

import math
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass

import numpy as np
import structlog

from metricguard.core.config import ReconstructionConfig
from metricguard.core.types import AnomalyVerdict, MetricSample, now_ms
from metricguard.detection.base import utc_datetime
from metricguard.detection.exceptions import ModelTrainingFailure
from metricguard.metrics.store import MetricWindowStore

logger = structlog.stdlib.get_logger()

_MIN_THRESHOLD = 1.0
_MIN_SCALE = 1e-9


@dataclass
class CentroidModel:
    """Fitted representation of one metric's normal behaviour."""

    centroids: np.ndarray
    center: np.ndarray
    scale: np.ndarray
    threshold: float
    fitted_through: int  # timestamp of the newest training sample
    observations: int

    def reconstruction_error(self, features: np.ndarray) -> float:
        x = (features - self.center) / self.scale
        return float(np.min(np.linalg.norm(self.centroids - x, axis=1)))


def _signal(raw: str | None) -> float:
    if raw is None:
        return 0.0
    try:
        value = float(raw)
    except ValueError:
        return 0.0
    return value if math.isfinite(value) else 0.0


def build_features(
    value: float,
    timestamp_ms: int,
    context: dict[str, str],
    signals: list[str],
) -> np.ndarray:
    dt = utc_datetime(timestamp_ms)
    hour_angle = 2 * math.pi * dt.hour / 24
    day_angle = 2 * math.pi * dt.weekday() / 7
    return np.array(
        [
            value,
            math.sin(hour_angle),
            math.cos(hour_angle),
            math.sin(day_angle),
            math.cos(day_angle),
            *(_signal(context.get(key)) for key in signals),
        ],
        dtype=float,
    )


def fit_centroids(
    samples: list[MetricSample],
    config: ReconstructionConfig,
) -> CentroidModel:
    """Fit a centroid model on ``samples``.

    Raises:
        ModelTrainingFailure: On non-finite features or a numerical error.
    """
    try:
        matrix = np.vstack([
            build_features(s.value, s.timestamp, s.context, config.context_signals)
            for s in samples
        ])
        if not np.all(np.isfinite(matrix)):
            raise ModelTrainingFailure("non-finite training features")

        center = matrix.mean(axis=0)
        scale = matrix.std(axis=0)
        scale = np.where(scale < _MIN_SCALE, 1.0, scale)
        x = (matrix - center) / scale

        unique_rows = np.unique(x, axis=0)
        k = max(1, min(config.n_clusters, len(unique_rows)))
        rng = np.random.default_rng(config.seed)
        centroids = unique_rows[rng.choice(len(unique_rows), size=k, replace=False)]

        for _ in range(config.max_iterations):
            distances = np.linalg.norm(x[:, None, :] - centroids[None, :, :], axis=2)
            labels = np.argmin(distances, axis=1)
            updated = centroids.copy()
            for i in range(k):
                members = x[labels == i]
                if len(members):
                    updated[i] = members.mean(axis=0)
            if np.allclose(updated, centroids):
                break
            centroids = updated

        errors = np.min(np.linalg.norm(x[:, None, :] - centroids[None, :, :], axis=2), axis=1)
        threshold = max(
            float(np.quantile(errors, config.threshold_quantile)) * config.threshold_margin,
            _MIN_THRESHOLD,
        )
    except ModelTrainingFailure:
        raise
    except (ValueError, FloatingPointError, np.linalg.LinAlgError) as exc:
        raise ModelTrainingFailure(str(exc)) from exc

    return CentroidModel(
        centroids=centroids,
        center=center,
        scale=scale,
        threshold=threshold,
        fitted_through=samples[-1].timestamp,
        observations=len(samples),
    )


class _MetricModelState:
    """Fitted model and training flag for one metric, behind its own lock."""

    __slots__ = ("lock", "model", "training")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.model: CentroidModel | None = None
        self.training = False


class ReconstructionStrategy:
    """Model-based strategy; one centroid model per metric.

    A metric's model is fitted once ``min_observations`` samples exist and
    refitted on the latest ``training_window`` samples whenever
    ``refit_interval`` new samples have arrived since the last fit.

    Fits never run on the evaluating thread. They are submitted to a
    bounded thread pool, one at a time per metric; while a refit runs the
    previous model keeps serving, and a metric without a model abstains.
    Submissions beyond ``max_pending_trainings`` are rejected and retried
    on a later sample. Training failures are logged and the strategy
    abstains until a fit succeeds.
    """

    name = "reconstruction"

    def __init__(
        self,
        store: MetricWindowStore,
        config: ReconstructionConfig | None = None,
    ) -> None:
        self._store = store
        self._config = config or ReconstructionConfig()
        self._states: dict[str, _MetricModelState] = {}
        self._active_futures: dict[str, Future[None]] = {}
        self._registry_lock = threading.Lock()
        self._executor: ThreadPoolExecutor | None = None

    @property
    def models(self) -> dict[str, CentroidModel]:
        """Read-only copy of the fitted models."""
        with self._registry_lock:
            states = dict(self._states)
        result: dict[str, CentroidModel] = {}
        for name, state in states.items():
            with state.lock:
                if state.model is not None:
                    result[name] = state.model
        return result

    @property
    def pending_trainings(self) -> int:
        with self._registry_lock:
            return len(self._active_futures)

    def evaluate(
        self,
        metric_name: str,
        value: float,
        context: dict[str, str] | None = None,
        timestamp_ms: int | None = None,
    ) -> AnomalyVerdict:
        history = self._store.recent(metric_name, self._config.training_window)
        if len(history) < self._config.min_observations:
            return AnomalyVerdict.abstain()

        model = self._current_model(metric_name, history)
        if model is None:
            return AnomalyVerdict.abstain()

        features = build_features(
            value,
            timestamp_ms if timestamp_ms is not None else now_ms(),
            context or {},
            self._config.context_signals,
        )
        error = model.reconstruction_error(features)
        confidence = min(error / model.threshold, 1.0)
        return AnomalyVerdict(
            is_anomaly=error > model.threshold,
            confidence=confidence,
            per_strategy={self.name: confidence},
        )

    def drain(self, timeout: float | None = None) -> None:
        """Block until every submitted fit has finished (test and shutdown helper)."""
        with self._registry_lock:
            active = list(self._active_futures.items())
        wait([future for _, future in active], timeout=timeout)
        for metric_name, future in active:
            if future.done():
                self._forget(metric_name, future)

    def close(self) -> None:
        """Shut the training pool down, letting running fits finish."""
        with self._registry_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True, cancel_futures=True)

    # ── Internal ────────────────────────────────────────────────

    def _state_for(self, metric_name: str) -> _MetricModelState:
        with self._registry_lock:
            state = self._states.get(metric_name)
            if state is None:
                state = _MetricModelState()
                self._states[metric_name] = state
            return state

    def _current_model(
        self,
        metric_name: str,
        history: list[MetricSample],
    ) -> CentroidModel | None:
        state = self._state_for(metric_name)
        with state.lock:
            model = state.model
            stale = model is None or (
                sum(1 for s in history if s.timestamp > model.fitted_through)
                >= self._config.refit_interval
            )
            submit = stale and not state.training
            if submit:
                state.training = True
        if submit:
            self._submit_fit(metric_name, state, history)
        return model

    def _submit_fit(
        self,
        metric_name: str,
        state: _MetricModelState,
        history: list[MetricSample],
    ) -> None:
        with self._registry_lock:
            if len(self._active_futures) >= self._config.max_pending_trainings:
                rejected = True
            else:
                rejected = False
                if self._executor is None:
                    self._executor = ThreadPoolExecutor(
                        max_workers=self._config.training_workers,
                        thread_name_prefix="reconstruction-fit",
                    )
                future = self._executor.submit(self._train, metric_name, state, history)
                self._active_futures[metric_name] = future
        if rejected:
            with state.lock:
                state.training = False
            logger.warning(
                "reconstruction_training_rejected",
                metric=metric_name,
                limit=self._config.max_pending_trainings,
            )
            return
        future.add_done_callback(lambda done: self._fit_done(metric_name, state, done))

    def _fit_done(
        self,
        metric_name: str,
        state: _MetricModelState,
        future: Future[None],
    ) -> None:
        if future.cancelled():
            with state.lock:
                state.training = False
        self._forget(metric_name, future)

    def _forget(self, metric_name: str, future: Future[None]) -> None:
        with self._registry_lock:
            if self._active_futures.get(metric_name) is future:
                del self._active_futures[metric_name]

    def _train(
        self,
        metric_name: str,
        state: _MetricModelState,
        history: list[MetricSample],
    ) -> None:
        try:
            model = fit_centroids(history, self._config)
        except ModelTrainingFailure as exc:
            logger.warning(
                "reconstruction_training_failed",
                metric=metric_name,
                samples=len(history),
                error=str(exc),
            )
            with state.lock:
                state.model = None
                state.training = False
            return
        except Exception:
            logger.exception("reconstruction_training_error", metric=metric_name)
            with state.lock:
                state.training = False
            return

        with state.lock:
            state.model = model
            state.training = False
        logger.debug(
            "reconstruction_model_fitted",
            metric=metric_name,
            samples=model.observations,
            clusters=len(model.centroids),
            threshold=round(model.threshold, 4),
        )
