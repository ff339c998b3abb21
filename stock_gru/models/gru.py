"""GRU direction forecaster built on PyTorch.

The wrapper owns exactly one network at a time through a :class:`ModelHandle`.
Tensors created while fitting, evaluating or predicting are registered with a
:class:`~stock_gru.models.resources.ResourceTracker` scope and released before
the call returns.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

import numpy as np
import torch
from sklearn.metrics import accuracy_score, confusion_matrix, f1_score, precision_score, recall_score
from sklearn.preprocessing import StandardScaler
from torch import Tensor, nn
from torch.utils.data import DataLoader, TensorDataset

from ..config import ForecasterConfig
from ..data.windows import WindowedExample
from ..exceptions import (
    InsufficientDataError,
    NotConfiguredError,
    NotTrainedError,
    TrainingDivergenceError,
)
from .resources import ResourceTracker

LOGGER = logging.getLogger(__name__)

EpochCallback = Callable[[int, float, Optional[float]], None]

PROBABILITY_THRESHOLD = 0.5
RETURN_THRESHOLD = 0.0


class Direction(str, Enum):
    UP = "UP"
    DOWN = "DOWN"


@dataclass
class TrainingSummary:
    """Loss history and stopping information for one ``fit`` call."""

    train_loss: list[float] = field(default_factory=list)
    val_loss: list[Optional[float]] = field(default_factory=list)
    best_epoch: Optional[int] = None
    best_val_loss: Optional[float] = None
    stopped_early: bool = False
    cancelled: bool = False
    elapsed_seconds: float = 0.0

    @property
    def epochs_run(self) -> int:
        return len(self.train_loss)

    def record(self, train_loss: float, val_loss: Optional[float]) -> None:
        self.train_loss.append(float(train_loss))
        self.val_loss.append(None if val_loss is None else float(val_loss))

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["epochs_run"] = self.epochs_run
        return payload


@dataclass
class EvaluationReport:
    """Test-set metrics for a trained forecaster."""

    loss: float
    accuracy: float
    precision: float
    recall: float
    f1_score: float
    rmse: float
    directional_accuracy: float
    samples: int
    confusion: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DayPrediction:
    """Forecast for a single day ahead of the latest observation."""

    day: int
    value: float
    direction: Direction
    confidence: float
    strength: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "day": self.day,
            "value": self.value,
            "direction": self.direction.value,
            "confidence": self.confidence,
            "strength": self.strength,
        }


@dataclass(frozen=True)
class UncertainPrediction:
    """Monte Carlo dropout summary for a single day."""

    day: int
    mean: float
    std: float
    lower: float
    upper: float
    direction: Direction

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["direction"] = self.direction.value
        return payload


class GRUNetwork(nn.Module):
    """GRU encoder followed by dropout, a dense hidden layer and a per-day output head."""

    def __init__(
        self,
        *,
        input_size: int,
        gru_units: int,
        dropout: float,
        dense_units: int,
        horizon: int,
    ) -> None:
        super().__init__()
        self.gru = nn.GRU(input_size=input_size, hidden_size=gru_units, batch_first=True)
        self.dropout = nn.Dropout(dropout)
        self.hidden = nn.Linear(gru_units, dense_units)
        self.activation = nn.ReLU()
        self.head = nn.Linear(dense_units, horizon)

    def forward(self, x: Tensor) -> Tensor:  # type: ignore[override]
        output, _ = self.gru(x)
        final_state = output[:, -1, :]
        return self.head(self.activation(self.hidden(self.dropout(final_state))))


@dataclass
class ModelHandle:
    """Exclusive owner of one configured network and its training state."""

    network: Optional[GRUNetwork]
    optimizer: Optional[torch.optim.Optimizer]
    criterion: Optional[nn.Module]
    input_length: int
    horizon: int
    task: str
    device: torch.device
    scaler: Optional[StandardScaler] = None
    target_scale: float = 1.0
    trained: bool = False
    released: bool = False
    summary: Optional[TrainingSummary] = None

    @property
    def parameter_count(self) -> int:
        if self.network is None:
            return 0
        return int(sum(p.numel() for p in self.network.parameters() if p.requires_grad))

    def release(self) -> bool:
        """Drop the network, optimizer and scaler; ``False`` when already released."""

        if self.released:
            return False
        self.network = None
        self.optimizer = None
        self.criterion = None
        self.scaler = None
        self.trained = False
        self.released = True
        return True


def _as_sequences(data: Any) -> np.ndarray:
    array = np.asarray(data, dtype=np.float32)
    if array.ndim == 2:
        array = array[:, :, None]
    if array.ndim != 3:
        raise ValueError(f"Expected inputs shaped (samples, lookback[, features]), got {array.shape}.")
    return array


def _as_targets(data: Any) -> np.ndarray:
    array = np.asarray(data, dtype=np.float32)
    if array.ndim == 1:
        array = array[:, None]
    if array.ndim != 2:
        raise ValueError(f"Expected targets shaped (samples, horizon), got {array.shape}.")
    return array


class GRUForecaster:
    """Configure, train, evaluate and query a small GRU network."""

    def __init__(self, config: ForecasterConfig, *, tracker: ResourceTracker | None = None) -> None:
        self.config = config
        self.tracker = tracker or ResourceTracker()
        self.device_name = config.device or ("cuda" if torch.cuda.is_available() else "cpu")
        self._handle: Optional[ModelHandle] = None

    def __enter__(self) -> "GRUForecaster":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def handle(self) -> Optional[ModelHandle]:
        return self._handle

    @property
    def is_configured(self) -> bool:
        return self._handle is not None

    @property
    def is_trained(self) -> bool:
        return self._handle is not None and self._handle.trained

    def configure(self, input_length: int, horizon: Optional[int] = None) -> ModelHandle:
        """Build a fresh network, releasing any previously configured one."""

        horizon = int(horizon or self.config.horizon)
        if int(input_length) < 1 or horizon < 1:
            raise ValueError("input_length and horizon must both be at least 1.")

        self.release()
        torch.manual_seed(self.config.seed)
        device = torch.device(self.device_name)
        network = GRUNetwork(
            input_size=1,
            gru_units=self.config.gru_units,
            dropout=self.config.dropout,
            dense_units=self.config.dense_units,
            horizon=horizon,
        ).to(device)
        criterion: nn.Module = nn.BCEWithLogitsLoss() if self.config.task == "classification" else nn.MSELoss()
        handle = ModelHandle(
            network=network,
            optimizer=torch.optim.Adam(network.parameters(), lr=self.config.learning_rate),
            criterion=criterion,
            input_length=int(input_length),
            horizon=horizon,
            task=self.config.task,
            device=device,
        )
        self.tracker.acquire(handle, "model")
        self._handle = handle
        LOGGER.info(
            "Configured GRU %s model (lookback=%s, horizon=%s, params=%s, device=%s)",
            handle.task,
            handle.input_length,
            handle.horizon,
            handle.parameter_count,
            device,
        )
        return handle

    def release(self) -> None:
        """Tear down the current network; safe to call repeatedly."""

        handle = self._handle
        self._handle = None
        if handle is None:
            return
        if handle.release():
            self.tracker.release(handle)
            if handle.device.type == "cuda":
                torch.cuda.empty_cache()
            LOGGER.debug("Released GRU model handle")

    def describe(self) -> dict[str, Any]:
        handle = self._handle
        return {
            "task": self.config.task,
            "lookback": handle.input_length if handle else None,
            "horizon": handle.horizon if handle else self.config.horizon,
            "gru_units": self.config.gru_units,
            "dense_units": self.config.dense_units,
            "dropout": self.config.dropout,
            "learning_rate": self.config.learning_rate,
            "device": self.device_name,
            "configured": handle is not None,
            "trained": bool(handle and handle.trained),
            "total_params": handle.parameter_count if handle else 0,
        }

    def _require_configured(self) -> ModelHandle:
        if self._handle is None:
            raise NotConfiguredError("Model not configured. Call configure() first.")
        return self._handle

    def _require_trained(self) -> ModelHandle:
        if self._handle is None or not self._handle.trained:
            raise NotTrainedError("Model not trained. Call fit() first.")
        return self._handle

    def _transform(self, handle: ModelHandle, sequences: np.ndarray) -> np.ndarray:
        if handle.scaler is None:
            return sequences.astype(np.float32)
        n_samples, length, n_features = sequences.shape
        flat = handle.scaler.transform(sequences.reshape(-1, n_features))
        return flat.reshape(n_samples, length, n_features).astype(np.float32)

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------
    def fit(
        self,
        train_x: Any,
        train_y: Any,
        val_x: Any = None,
        val_y: Any = None,
        *,
        epochs: Optional[int] = None,
        batch_size: Optional[int] = None,
        on_epoch: Optional[EpochCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> TrainingSummary:
        """Train on the given windows, reporting each epoch through ``on_epoch``."""

        handle = self._require_configured()
        X = _as_sequences(train_x)
        y = _as_targets(train_y)
        if X.shape[0] == 0:
            raise InsufficientDataError("Training set is empty.", required=1, available=0)
        if X.shape[0] != y.shape[0]:
            raise ValueError("Training inputs and targets have different lengths.")
        if X.shape[1] != handle.input_length or y.shape[1] != handle.horizon:
            raise ValueError(
                f"Model expects lookback={handle.input_length}, horizon={handle.horizon}; "
                f"got inputs {X.shape} and targets {y.shape}."
            )
        has_validation = val_x is not None and len(val_x) > 0
        epochs = int(epochs or self.config.epochs)
        batch_size = int(batch_size or self.config.batch_size)

        handle.trained = False
        handle.summary = None
        handle.scaler = StandardScaler().fit(X.reshape(-1, X.shape[2])) if self.config.scale_inputs else None
        handle.target_scale = float(np.std(y)) or 1.0

        network = handle.network
        optimizer = handle.optimizer
        criterion = handle.criterion
        summary = TrainingSummary()
        best_state: Optional[dict[str, Tensor]] = None
        best_val = math.inf
        waited = 0
        started = time.perf_counter()

        with self.tracker.scope("fit") as scope:
            inputs = scope.track(torch.from_numpy(self._transform(handle, X)).to(handle.device), "train_x")
            targets = scope.track(torch.from_numpy(y).to(handle.device), "train_y")
            val_inputs = val_targets = None
            if has_validation:
                val_inputs = scope.track(
                    torch.from_numpy(self._transform(handle, _as_sequences(val_x))).to(handle.device), "val_x"
                )
                val_targets = scope.track(torch.from_numpy(_as_targets(val_y)).to(handle.device), "val_y")

            generator = torch.Generator().manual_seed(self.config.seed)
            loader = DataLoader(
                TensorDataset(inputs, targets), batch_size=batch_size, shuffle=True, generator=generator
            )

            for epoch in range(1, epochs + 1):
                network.train()
                running = 0.0
                seen = 0
                for batch_X, batch_y in loader:
                    optimizer.zero_grad()
                    loss = criterion(network(batch_X), batch_y)
                    loss.backward()
                    optimizer.step()
                    running += float(loss.item()) * batch_X.shape[0]
                    seen += batch_X.shape[0]
                train_loss = running / max(seen, 1)
                val_loss = self._loss_on(handle, val_inputs, val_targets) if has_validation else None
                summary.record(train_loss, val_loss)
                LOGGER.info(
                    "Epoch %s/%s | loss %.6f | val_loss %s",
                    epoch,
                    epochs,
                    train_loss,
                    "n/a" if val_loss is None else f"{val_loss:.6f}",
                )

                if on_epoch is not None:
                    on_epoch(epoch, train_loss, val_loss)

                if not math.isfinite(train_loss) or (val_loss is not None and not math.isfinite(val_loss)):
                    if self.config.fail_on_divergence:
                        raise TrainingDivergenceError(epoch, train_loss, val_loss)
                    LOGGER.warning("Non-finite loss at epoch %s; continuing", epoch)

                if val_loss is not None and math.isfinite(val_loss):
                    if val_loss < best_val:
                        best_val = val_loss
                        summary.best_epoch = epoch
                        summary.best_val_loss = val_loss
                        waited = 0
                        if self.config.early_stopping:
                            best_state = {k: v.detach().clone() for k, v in network.state_dict().items()}
                    else:
                        waited += 1
                        if self.config.early_stopping and waited >= self.config.patience:
                            summary.stopped_early = True
                            LOGGER.info("Early stopping after epoch %s (best epoch %s)", epoch, summary.best_epoch)
                            break

                if cancel_event is not None and cancel_event.is_set():
                    summary.cancelled = True
                    LOGGER.info("Training cancelled after epoch %s", epoch)
                    break

            if best_state is not None:
                network.load_state_dict(best_state)

        summary.elapsed_seconds = time.perf_counter() - started
        handle.summary = summary
        handle.trained = summary.epochs_run > 0
        LOGGER.info("Training finished after %s epochs in %.2fs", summary.epochs_run, summary.elapsed_seconds)
        return summary

    def _loss_on(self, handle: ModelHandle, inputs: Tensor, targets: Tensor) -> float:
        handle.network.eval()
        with torch.no_grad():
            return float(handle.criterion(handle.network(inputs), targets).item())

    # ------------------------------------------------------------------
    # Evaluation and inference
    # ------------------------------------------------------------------
    def evaluate(self, test_x: Any, test_y: Any, *, actual_returns: Any = None) -> EvaluationReport:
        """Score the trained network on held-out windows."""

        handle = self._require_trained()
        X = _as_sequences(test_x)
        y = _as_targets(test_y)
        if X.shape[0] == 0:
            raise InsufficientDataError("Test set is empty.", required=1, available=0)

        with self.tracker.scope("evaluate") as scope:
            inputs = scope.track(torch.from_numpy(self._transform(handle, X)).to(handle.device), "test_x")
            targets = scope.track(torch.from_numpy(y).to(handle.device), "test_y")
            handle.network.eval()
            with torch.no_grad():
                raw = scope.track(handle.network(inputs), "test_raw")
                loss = float(handle.criterion(raw, targets).item())
                outputs = scope.track(self._activate(handle, raw), "test_outputs")
                predicted = outputs.cpu().numpy()

        threshold = PROBABILITY_THRESHOLD if handle.task == "classification" else RETURN_THRESHOLD
        predicted_up = (predicted >= threshold).astype(int)
        actual_up = (y >= threshold).astype(int)
        pred_flat = predicted_up.ravel()
        true_flat = actual_up.ravel()
        tn, fp, fn, tp = confusion_matrix(true_flat, pred_flat, labels=[0, 1]).ravel()

        accuracy = float(accuracy_score(true_flat, pred_flat))
        if actual_returns is not None:
            realised = np.asarray(actual_returns, dtype=float).reshape(predicted.shape)
            directional = float(np.mean(predicted_up == (realised >= RETURN_THRESHOLD)))
        else:
            directional = accuracy

        report = EvaluationReport(
            loss=loss,
            accuracy=accuracy,
            precision=float(precision_score(true_flat, pred_flat, zero_division=0)),
            recall=float(recall_score(true_flat, pred_flat, zero_division=0)),
            f1_score=float(f1_score(true_flat, pred_flat, zero_division=0)),
            rmse=float(np.sqrt(np.mean((predicted - y) ** 2))),
            directional_accuracy=directional,
            samples=int(X.shape[0]),
            confusion={
                "true_positives": int(tp),
                "false_positives": int(fp),
                "true_negatives": int(tn),
                "false_negatives": int(fn),
            },
        )
        LOGGER.info(
            "Evaluation on %s windows: loss=%.4f accuracy=%.3f directional=%.3f rmse=%.4f",
            report.samples,
            report.loss,
            report.accuracy,
            report.directional_accuracy,
            report.rmse,
        )
        return report

    def predict_horizon(self, window: WindowedExample | Any) -> list[DayPrediction]:
        """Predict each day of the horizon from the most recent lookback window."""

        handle = self._require_trained()
        sequence = self._window_inputs(handle, window)
        with self.tracker.scope("predict") as scope:
            inputs = scope.track(torch.from_numpy(sequence).to(handle.device), "predict_x")
            handle.network.eval()
            with torch.no_grad():
                raw = scope.track(handle.network(inputs), "predict_raw")
                outputs = scope.track(self._activate(handle, raw), "predict_outputs")
                values = outputs.cpu().numpy().reshape(-1)
        return [self._day_prediction(handle, day, float(value)) for day, value in enumerate(values, start=1)]

    def predict_with_uncertainty(self, window: WindowedExample | Any, samples: int = 10) -> list[UncertainPrediction]:
        """Run ``samples`` forward passes with dropout active and summarise the spread."""

        if samples < 2:
            raise ValueError("samples must be at least 2.")
        handle = self._require_trained()
        sequence = self._window_inputs(handle, window)
        with self.tracker.scope("uncertainty") as scope:
            inputs = scope.track(torch.from_numpy(sequence).to(handle.device), "uncertainty_x")
            handle.network.train()
            try:
                with torch.no_grad():
                    draws = [
                        scope.track(self._activate(handle, handle.network(inputs)), "uncertainty_draw")
                        for _ in range(samples)
                    ]
                    stacked = scope.track(torch.stack(draws), "uncertainty_stack")
                    mean = stacked.mean(dim=0).cpu().numpy().reshape(-1)
                    std = stacked.std(dim=0).cpu().numpy().reshape(-1)
            finally:
                handle.network.eval()

        classification = handle.task == "classification"
        threshold = PROBABILITY_THRESHOLD if classification else RETURN_THRESHOLD
        results = []
        for day, (mu, sigma) in enumerate(zip(mean, std), start=1):
            lower = float(mu - 1.96 * sigma)
            upper = float(mu + 1.96 * sigma)
            if classification:
                lower, upper = max(0.0, lower), min(1.0, upper)
            results.append(
                UncertainPrediction(
                    day=day,
                    mean=float(mu),
                    std=float(sigma),
                    lower=lower,
                    upper=upper,
                    direction=Direction.UP if mu >= threshold else Direction.DOWN,
                )
            )
        return results

    def _activate(self, handle: ModelHandle, raw: Tensor) -> Tensor:
        return torch.sigmoid(raw) if handle.task == "classification" else raw

    def _window_inputs(self, handle: ModelHandle, window: WindowedExample | Any) -> np.ndarray:
        values = window.inputs if isinstance(window, WindowedExample) else window
        values = np.asarray(values, dtype=np.float32).reshape(-1)
        if values.size < handle.input_length:
            raise InsufficientDataError(
                "Window is shorter than the trained lookback.",
                required=handle.input_length,
                available=int(values.size),
            )
        sequence = values[-handle.input_length :].reshape(1, handle.input_length, 1)
        return self._transform(handle, sequence)

    def _day_prediction(self, handle: ModelHandle, day: int, value: float) -> DayPrediction:
        if handle.task == "classification":
            direction = Direction.UP if value >= PROBABILITY_THRESHOLD else Direction.DOWN
            confidence = abs(value - PROBABILITY_THRESHOLD) * 2
            strength = max(value, 1.0 - value)
        else:
            direction = Direction.UP if value >= RETURN_THRESHOLD else Direction.DOWN
            confidence = min(1.0, abs(value) / handle.target_scale)
            strength = 0.5 + confidence / 2
        return DayPrediction(
            day=day,
            value=value,
            direction=direction,
            confidence=float(confidence),
            strength=float(strength),
        )


__all__ = [
    "DayPrediction",
    "Direction",
    "EvaluationReport",
    "GRUForecaster",
    "GRUNetwork",
    "ModelHandle",
    "TrainingSummary",
    "UncertainPrediction",
]
