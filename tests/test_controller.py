"""Tests for the staged forecast controller."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any, Optional

import httpx
import pandas as pd
import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

torch = pytest.importorskip("torch")

from stock_gru.config import ForecasterConfig
from stock_gru.controller import ForecastController, PresentationCallbacks, Stage, StatusLevel
from stock_gru.data.series import PriceSeries
from stock_gru.data.sources import PriceDataLoader, generate_synthetic_series
from stock_gru.exceptions import DataFetchError, TrainingDivergenceError
from stock_gru.models.gru import GRUForecaster


def _config(**overrides) -> ForecasterConfig:
    params = {
        "lookback": 10,
        "horizon": 3,
        "epochs": 2,
        "batch_size": 32,
        "gru_units": 8,
        "dense_units": 4,
        "synthetic_length": 300,
        "device": "cpu",
    }
    params.update(overrides)
    return ForecasterConfig(**params)


class _Recorder:
    """Collects every presentation event emitted by the controller."""

    def __init__(self) -> None:
        self.progress: list[tuple[float, str]] = []
        self.statuses: list[tuple[StatusLevel, str]] = []
        self.charts: dict[str, list[dict[str, Any]]] = {}

    def callbacks(self) -> PresentationCallbacks:
        return PresentationCallbacks(
            on_progress=lambda percent, message: self.progress.append((percent, message)),
            on_status=lambda message, level: self.statuses.append((level, message)),
            on_chart_update=lambda name, points: self.charts.__setitem__(name, points),
        )

    def levels(self) -> list[StatusLevel]:
        return [level for level, _ in self.statuses]


class _StubLoader:
    """Loader returning a fixed series, optionally failing or waiting on a gate."""

    def __init__(
        self,
        series: PriceSeries,
        *,
        error: Optional[Exception] = None,
        gate: Optional[asyncio.Event] = None,
    ) -> None:
        self.series = series
        self.error = error
        self.gate = gate
        self.calls: list[Optional[str]] = []
        self.closed = False

    async def load_series(self, source: Optional[str] = None) -> PriceSeries:
        self.calls.append(source)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.series

    def synthetic_series(self, *, fallback_reason: Optional[str] = None) -> PriceSeries:
        return self.series

    async def aclose(self) -> None:
        self.closed = True


class _ExplodingForecaster(GRUForecaster):
    def fit(self, *args: Any, **kwargs: Any):
        raise RuntimeError("boom")


def _series(length: int = 300) -> PriceSeries:
    return generate_synthetic_series(length, seed=11, symbol="TEST")


def test_actions_out_of_order_are_rejected():
    recorder = _Recorder()
    controller = ForecastController(_config(), recorder.callbacks(), loader=_StubLoader(_series()))

    async def _run():
        return [await controller.preprocess(), await controller.train(), await controller.predict()]

    results = asyncio.run(_run())
    assert [result.status for result in results] == ["rejected"] * 3
    assert all(result.payload["reason"] == "precondition" for result in results)
    assert recorder.levels() == [StatusLevel.WARNING] * 3
    assert controller.stage is Stage.IDLE
    assert not controller.busy


def test_overlapping_actions_are_rejected_not_queued():
    recorder = _Recorder()

    async def _run():
        loader = _StubLoader(_series(), gate=asyncio.Event())
        controller = ForecastController(_config(), recorder.callbacks(), loader=loader)
        pending = asyncio.create_task(controller.load())
        await asyncio.sleep(0)
        assert controller.busy
        overlapping = [await controller.load(), await controller.preprocess()]
        loader.gate.set()
        first = await pending
        return controller, loader, first, overlapping

    controller, loader, first, overlapping = asyncio.run(_run())
    assert first.ok
    assert [result.payload["reason"] for result in overlapping] == ["busy", "busy"]
    assert loader.calls == [None]
    assert controller.stage is Stage.LOADED
    assert not controller.busy


def test_failed_stage_reports_error_and_allows_retry():
    recorder = _Recorder()
    loader = _StubLoader(_series(), error=DataFetchError("network down", source="http://x"))
    controller = ForecastController(_config(), recorder.callbacks(), loader=loader)

    failed = asyncio.run(controller.load("http://x"))
    assert failed.status == "failed"
    assert failed.payload["error"] == "DataFetchError"
    assert recorder.levels()[-1] is StatusLevel.ERROR
    assert controller.stage is Stage.IDLE
    assert not controller.busy

    loader.error = None
    retried = asyncio.run(controller.load("http://x"))
    assert retried.ok
    assert controller.stage is Stage.LOADED
    assert recorder.levels()[-1] is StatusLevel.SUCCESS
    assert "price" in recorder.charts


def test_preprocess_rejects_series_that_is_too_short():
    recorder = _Recorder()
    controller = ForecastController(_config(lookback=60), recorder.callbacks(), loader=_StubLoader(_series(40)))

    async def _run():
        await controller.load()
        return await controller.preprocess()

    result = asyncio.run(_run())
    assert result.status == "failed"
    assert result.payload["error"] == "InsufficientDataError"
    assert controller.stage is Stage.LOADED


def test_unexpected_errors_are_contained():
    recorder = _Recorder()
    config = _config()
    forecaster = _ExplodingForecaster(config)
    controller = ForecastController(config, recorder.callbacks(), loader=_StubLoader(_series()), forecaster=forecaster)

    async def _run():
        await controller.load()
        await controller.preprocess()
        return await controller.train()

    result = asyncio.run(_run())
    assert result.status == "failed"
    assert result.payload == {"error": "RuntimeError", "message": "boom"}
    assert controller.stage is Stage.PREPROCESSED
    assert not forecaster.is_configured
    assert forecaster.tracker.live == 0


def test_failed_retrain_returns_to_preprocessed():
    recorder = _Recorder()
    controller = ForecastController(_config(), recorder.callbacks(), loader=_StubLoader(_series()))

    def diverging_fit(*args: Any, **kwargs: Any):
        raise TrainingDivergenceError(1, float("nan"), None)

    async def _run():
        await controller.load()
        await controller.preprocess()
        first = await controller.train()
        await controller.predict()
        controller.forecaster.fit = diverging_fit
        retrain = await controller.train()
        return first, retrain, await controller.predict()

    first, retrain, predicted = asyncio.run(_run())
    assert first.ok
    assert retrain.status == "failed"
    assert retrain.payload["error"] == "TrainingDivergenceError"
    assert controller.stage is Stage.PREPROCESSED
    assert controller.summary is None
    assert controller.evaluation is None
    assert controller.predictions == []
    assert not controller.forecaster.is_configured
    assert predicted.status == "rejected"
    assert predicted.payload["reason"] == "precondition"


def test_aclose_sweeps_leftover_resources():
    controller = ForecastController(_config(), loader=_StubLoader(_series()))
    tracker = controller.forecaster.tracker
    tracker.acquire(object(), "orphan")

    asyncio.run(controller.aclose())
    assert tracker.live == 0
    assert controller.loader.closed


def test_full_pipeline_on_synthetic_data():
    recorder = _Recorder()
    controller = ForecastController(_config(), recorder.callbacks())
    tracker = controller.forecaster.tracker

    async def _run():
        results = [
            await controller.load(synthetic=True),
            await controller.preprocess(),
            await controller.train(),
            await controller.predict(),
        ]
        live_before_close = tracker.live
        await controller.aclose()
        return results, live_before_close

    (loaded, prepared, trained, predicted), live_before_close = asyncio.run(_run())

    assert all(result.ok for result in (loaded, prepared, trained, predicted))
    assert loaded.payload["synthetic"]
    assert loaded.payload["rows"] == 300
    sizes = prepared.payload["split"]
    assert sizes["train"] + sizes["validation"] + sizes["test"] + sizes["purged"] == prepared.payload["windows"]
    assert trained.payload["training"]["epochs_run"] == 2
    assert 0.0 <= trained.payload["evaluation"]["accuracy"] <= 1.0
    assert len(predicted.payload["predictions"]) == 3
    assert predicted.payload["display"][0].startswith("Day +1: ")
    assert predicted.payload["stage"] == "PREDICTED"

    assert controller.stage is Stage.PREDICTED
    assert set(recorder.charts) == {"price", "train_loss", "val_loss", "forecast"}
    assert len(recorder.charts["train_loss"]) == 2
    assert [point["index"] for point in recorder.charts["forecast"]] == [1, 2, 3]
    assert StatusLevel.WARNING in recorder.levels()
    epoch_progress = [percent for percent, message in recorder.progress if message.startswith("Epoch")]
    assert epoch_progress == [55.0, 100.0]
    assert live_before_close == 1
    assert tracker.live == 0


def test_reload_discards_trained_model():
    controller = ForecastController(_config(), loader=_StubLoader(_series()))

    async def _run():
        await controller.load()
        await controller.preprocess()
        await controller.train()
        assert controller.forecaster.is_trained
        return await controller.load()

    result = asyncio.run(_run())
    assert result.ok
    assert controller.stage is Stage.LOADED
    assert controller.dataset is None
    assert controller.evaluation is None
    assert not controller.forecaster.is_configured
    assert controller.forecaster.tracker.live == 0


def test_cancel_training_stops_early():
    config = _config(epochs=200, early_stopping=False)
    controller: ForecastController

    def on_progress(percent: float, message: str) -> None:
        if message.startswith("Epoch 1/"):
            assert controller.cancel_training()

    controller = ForecastController(
        config, PresentationCallbacks(on_progress=on_progress), loader=_StubLoader(_series())
    )
    assert not controller.cancel_training()

    async def _run():
        await controller.load()
        await controller.preprocess()
        return await controller.train()

    result = asyncio.run(_run())
    assert result.ok
    assert result.payload["training"]["cancelled"]
    assert result.payload["training"]["epochs_run"] < 200
    assert controller.stage is Stage.TRAINED


def test_fetch_failure_surfaces_synthetic_fallback_warning():
    recorder = _Recorder()

    async def _run():
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(404)))
        config = _config(csv_url="https://example.test/missing.csv")
        controller = ForecastController(config, recorder.callbacks(), loader=PriceDataLoader(config, client=client))
        try:
            return await controller.load()
        finally:
            await client.aclose()

    result = asyncio.run(_run())
    assert result.ok
    assert result.payload["synthetic"]
    assert "HTTP 404" in result.payload["fallback_reason"]
    level, message = recorder.statuses[-1]
    assert level is StatusLevel.WARNING
    assert message.startswith("Using synthetic data")
    assert pd.Timestamp(result.payload["statistics"]["start_date"]) == pd.Timestamp("2020-01-01")
