"""Stage orchestration between the data loader, the forecaster and a presentation layer.

The controller walks ``IDLE -> LOADED -> PREPROCESSED -> TRAINED -> PREDICTED``.
Each action checks its precondition, rejects overlapping invocations, and
turns library failures into status events so a failed stage can simply be
retried.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Awaitable, Callable, Optional

import numpy as np

from .config import ForecasterConfig
from .data.series import PriceSeries, compute_returns, compute_statistics, downsample
from .data.sources import PriceDataLoader
from .data.windows import (
    DatasetSplit,
    WindowSequence,
    build_windows,
    latest_window,
    split_dataset,
    stack_examples,
)
from .exceptions import ForecasterError, InsufficientDataError
from .formatting import format_evaluation, format_predictions, format_statistics
from .models.gru import DayPrediction, EvaluationReport, GRUForecaster, TrainingSummary

LOGGER = logging.getLogger(__name__)


class Stage(IntEnum):
    IDLE = 0
    LOADED = 1
    PREPROCESSED = 2
    TRAINED = 3
    PREDICTED = 4


class StatusLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


def _ignore(*_: Any) -> None:
    return None


@dataclass
class PresentationCallbacks:
    """Event sinks supplied by the host UI; every sink defaults to a no-op."""

    on_progress: Callable[[float, str], None] = _ignore
    on_status: Callable[[str, StatusLevel], None] = _ignore
    on_chart_update: Callable[[str, list[dict[str, Any]]], None] = _ignore


@dataclass(slots=True)
class ActionResult:
    """Outcome of one user-triggered action."""

    action: str
    status: str
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == "ok"


@dataclass
class PreparedDataset:
    """Windowed arrays produced by the preprocess stage."""

    returns: np.ndarray
    windows: WindowSequence
    split: DatasetSplit
    train_x: np.ndarray
    train_y: np.ndarray
    val_x: np.ndarray
    val_y: np.ndarray
    test_x: np.ndarray
    test_y: np.ndarray
    test_returns: np.ndarray


_REQUIRED_STAGE: dict[str, Stage] = {
    "load": Stage.IDLE,
    "preprocess": Stage.LOADED,
    "train": Stage.PREPROCESSED,
    "predict": Stage.TRAINED,
}

_PRECONDITION_HINTS: dict[str, str] = {
    "preprocess": "Load data first.",
    "train": "Preprocess the data first.",
    "predict": "Train the model first.",
}


class ForecastController:
    """Coordinate loading, preprocessing, training and prediction for one session."""

    def __init__(
        self,
        config: ForecasterConfig,
        callbacks: PresentationCallbacks | None = None,
        *,
        loader: PriceDataLoader | None = None,
        forecaster: GRUForecaster | None = None,
    ) -> None:
        self.config = config
        self.callbacks = callbacks or PresentationCallbacks()
        self.loader = loader or PriceDataLoader(config)
        self.forecaster = forecaster or GRUForecaster(config)
        self._stage = Stage.IDLE
        self._busy = False
        self._cancel_event: Optional[threading.Event] = None
        self.series: Optional[PriceSeries] = None
        self.dataset: Optional[PreparedDataset] = None
        self.summary: Optional[TrainingSummary] = None
        self.evaluation: Optional[EvaluationReport] = None
        self.predictions: list[DayPrediction] = []
        self._loss_history: list[float] = []
        self._val_history: list[Optional[float]] = []

    @property
    def stage(self) -> Stage:
        return self._stage

    @property
    def busy(self) -> bool:
        return self._busy

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------
    async def load(self, source: Optional[str] = None, *, synthetic: bool = False) -> ActionResult:
        return await self._run("load", lambda: self._load(source, synthetic))

    async def preprocess(self) -> ActionResult:
        return await self._run("preprocess", self._preprocess)

    async def train(self) -> ActionResult:
        return await self._run("train", self._train)

    async def predict(self) -> ActionResult:
        return await self._run("predict", self._predict)

    def cancel_training(self) -> bool:
        """Ask a running ``train`` action to stop at the next epoch boundary."""

        if self._cancel_event is None or self._cancel_event.is_set():
            return False
        self._cancel_event.set()
        self._status("Stopping training after the current epoch.", StatusLevel.INFO)
        return True

    async def aclose(self) -> None:
        self.forecaster.release()
        leaked = self.forecaster.tracker.release_all()
        if leaked:
            LOGGER.warning("Released %s resources still live at shutdown", leaked)
        await self.loader.aclose()

    async def __aenter__(self) -> "ForecastController":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Guarded dispatch
    # ------------------------------------------------------------------
    async def _run(self, action: str, handler: Callable[[], Awaitable[dict[str, Any]]]) -> ActionResult:
        if self._busy:
            message = f"Cannot {action} while another action is running."
            LOGGER.warning(message)
            self._status(message, StatusLevel.WARNING)
            return ActionResult(action, "rejected", {"reason": "busy", "message": message})

        required = _REQUIRED_STAGE[action]
        if self._stage < required:
            message = f"Cannot {action} yet. {_PRECONDITION_HINTS.get(action, '')}".strip()
            LOGGER.warning("%s (stage=%s)", message, self._stage.name)
            self._status(message, StatusLevel.WARNING)
            return ActionResult(
                action, "rejected", {"reason": "precondition", "stage": self._stage.name, "message": message}
            )

        self._busy = True
        try:
            payload = await handler()
        except ForecasterError as exc:
            LOGGER.error("%s failed: %s", action, exc)
            self._status(f"{action.capitalize()} failed: {exc}", StatusLevel.ERROR)
            return ActionResult(action, "failed", {"error": type(exc).__name__, "message": str(exc)})
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.exception("Unexpected failure during %s", action)
            self._status(f"{action.capitalize()} failed: {exc}", StatusLevel.ERROR)
            return ActionResult(action, "failed", {"error": type(exc).__name__, "message": str(exc)})
        finally:
            self._busy = False
            self._cancel_event = None

        payload["stage"] = self._stage.name
        return ActionResult(action, "ok", payload)

    # ------------------------------------------------------------------
    # Stage handlers
    # ------------------------------------------------------------------
    async def _load(self, source: Optional[str], synthetic: bool) -> dict[str, Any]:
        self._progress(10, "Fetching price data...")
        if synthetic:
            series = self.loader.synthetic_series()
        else:
            series = await self.loader.load_series(source)
        stats = compute_statistics(series)

        self._discard_downstream()
        self.series = series
        self._stage = Stage.LOADED
        LOGGER.info("Loaded %s prices for %s from %s", len(series), series.symbol, series.source)

        self._progress(100, "Data loaded.")
        self._chart("price", [point.as_dict() for point in downsample(series, self.config.max_chart_points)])
        if series.fallback_reason:
            self._status(f"Using synthetic data: {series.fallback_reason}", StatusLevel.WARNING)
        elif series.synthetic:
            self._status(f"Generated {len(series)} synthetic prices.", StatusLevel.WARNING)
        else:
            self._status(f"Loaded {len(series)} prices for {series.symbol}.", StatusLevel.SUCCESS)
        return {
            "rows": len(series),
            "source": series.source,
            "synthetic": series.synthetic,
            "fallback_reason": series.fallback_reason,
            "statistics": stats.to_dict(),
            "display": format_statistics(stats),
        }

    async def _preprocess(self) -> dict[str, Any]:
        series = self.series
        self._progress(20, "Computing returns...")
        returns = compute_returns(series.closes)
        windows = build_windows(returns, self.config.lookback, self.config.horizon)
        self._progress(50, "Building windows...")
        split = split_dataset(
            windows,
            self.config.train_fraction,
            self.config.validation_fraction,
            purge=self.config.purge_boundaries,
        )
        if not len(split.train) or not len(split.test):
            raise InsufficientDataError(
                f"Not enough history for lookback={self.config.lookback} and "
                f"horizon={self.config.horizon}; got {len(windows)} windows.",
                required=self.config.lookback + self.config.horizon,
                available=int(returns.size),
            )

        task = self.config.task
        train_x, train_y = stack_examples(split.train, task)
        val_x, val_y = stack_examples(split.validation, task)
        test_x, test_y = stack_examples(split.test, task)
        _, test_returns = stack_examples(split.test, "regression")
        stats = compute_statistics(series, returns)

        self.forecaster.release()
        self.summary = None
        self.evaluation = None
        self.predictions = []
        self.dataset = PreparedDataset(
            returns=returns,
            windows=windows,
            split=split,
            train_x=train_x,
            train_y=train_y,
            val_x=val_x,
            val_y=val_y,
            test_x=test_x,
            test_y=test_y,
            test_returns=test_returns,
        )
        self._stage = Stage.PREPROCESSED

        self._progress(100, "Dataset ready.")
        self._status(
            f"Prepared {len(split.train)} training, {len(split.validation)} validation and "
            f"{len(split.test)} test windows.",
            StatusLevel.SUCCESS,
        )
        return {
            "returns": int(returns.size),
            "windows": len(windows),
            "split": split.sizes(),
            "statistics": stats.to_dict(),
            "display": format_statistics(stats),
        }

    async def _train(self) -> dict[str, Any]:
        data = self.dataset
        epochs = self.config.epochs
        self._loss_history = []
        self._val_history = []
        self._progress(5, "Building model...")
        self.forecaster.configure(self.config.lookback, self.config.horizon)

        loop = asyncio.get_running_loop()
        self._cancel_event = threading.Event()

        def on_epoch(epoch: int, train_loss: float, val_loss: Optional[float]) -> None:
            loop.call_soon_threadsafe(self._on_epoch, epoch, epochs, train_loss, val_loss)

        self._progress(10, "Starting training...")
        try:
            summary = await asyncio.to_thread(
                self.forecaster.fit,
                data.train_x,
                data.train_y,
                data.val_x,
                data.val_y,
                epochs=epochs,
                batch_size=self.config.batch_size,
                on_epoch=on_epoch,
                cancel_event=self._cancel_event,
            )
            report = self.forecaster.evaluate(data.test_x, data.test_y, actual_returns=data.test_returns)
        except Exception:
            self.forecaster.release()
            self.summary = None
            self.evaluation = None
            self.predictions = []
            self._stage = Stage.PREPROCESSED
            raise

        self.summary = summary
        self.evaluation = report
        self.predictions = []
        self._stage = Stage.TRAINED
        self._progress(100, "Training complete.")
        outcome = "stopped by user" if summary.cancelled else "completed"
        self._status(
            f"Training {outcome} after {summary.epochs_run} epochs; test accuracy "
            f"{report.accuracy:.1%}.",
            StatusLevel.SUCCESS,
        )
        return {
            "training": summary.to_dict(),
            "evaluation": report.to_dict(),
            "display": format_evaluation(report),
            "model": self.forecaster.describe(),
        }

    async def _predict(self) -> dict[str, Any]:
        self._progress(30, "Running inference...")
        window = latest_window(self.dataset.returns, self.config.lookback)
        predictions = self.forecaster.predict_horizon(window)
        self.predictions = predictions
        self._stage = Stage.PREDICTED

        self._chart(
            "forecast",
            [{"x": f"Day +{item.day}", "y": item.value, "index": item.day} for item in predictions],
        )
        self._progress(100, "Predictions ready.")
        self._status(f"Predictions generated for the next {len(predictions)} days.", StatusLevel.SUCCESS)
        return {
            "predictions": [item.to_dict() for item in predictions],
            "display": format_predictions(predictions, task=self.config.task),
            "as_of": self.series.dates.iloc[-1].date().isoformat(),
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _discard_downstream(self) -> None:
        self.forecaster.release()
        self.dataset = None
        self.summary = None
        self.evaluation = None
        self.predictions = []

    def _on_epoch(self, epoch: int, epochs: int, train_loss: float, val_loss: Optional[float]) -> None:
        self._loss_history.append(train_loss)
        self._val_history.append(val_loss)
        percent = 10 + 90 * epoch / max(epochs, 1)
        val_text = "n/a" if val_loss is None else f"{val_loss:.4f}"
        self._progress(percent, f"Epoch {epoch}/{epochs} - loss {train_loss:.4f}, val_loss {val_text}")
        self._chart(
            "train_loss",
            [{"x": idx, "y": value, "index": idx} for idx, value in enumerate(self._loss_history, start=1)],
        )
        self._chart(
            "val_loss",
            [
                {"x": idx, "y": value, "index": idx}
                for idx, value in enumerate(self._val_history, start=1)
                if value is not None
            ],
        )

    def _progress(self, percent: float, message: str) -> None:
        self.callbacks.on_progress(float(percent), message)

    def _status(self, message: str, level: StatusLevel) -> None:
        self.callbacks.on_status(message, level)

    def _chart(self, name: str, points: list[dict[str, Any]]) -> None:
        self.callbacks.on_chart_update(name, points)


__all__ = [
    "ActionResult",
    "ForecastController",
    "PreparedDataset",
    "PresentationCallbacks",
    "Stage",
    "StatusLevel",
]
