"""Command line entry point running the full load/preprocess/train/predict pipeline."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from .config import SUPPORTED_TASKS, build_config
from .controller import ActionResult, ForecastController, PresentationCallbacks, StatusLevel

LOGGER = logging.getLogger("stock_gru")

_STATUS_LEVELS = {
    StatusLevel.INFO: logging.INFO,
    StatusLevel.SUCCESS: logging.INFO,
    StatusLevel.WARNING: logging.WARNING,
    StatusLevel.ERROR: logging.ERROR,
}


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Train a GRU on daily closing prices and forecast the direction of the next days.",
    )
    parser.add_argument("--source", help="CSV URL or local path (default: configured csv_url).")
    parser.add_argument(
        "--offline",
        action="store_true",
        help="Skip the download and train on the synthetic series.",
    )
    parser.add_argument("--lookback", type=int, help="Days of returns fed to the model.")
    parser.add_argument("--horizon", type=int, help="Days ahead to forecast.")
    parser.add_argument("--epochs", type=int, help="Maximum training epochs.")
    parser.add_argument("--batch-size", type=int, help="Mini-batch size.")
    parser.add_argument("--train-fraction", type=float, help="Share of windows used for training.")
    parser.add_argument("--validation-fraction", type=float, help="Share of windows used for validation.")
    parser.add_argument(
        "--task",
        choices=SUPPORTED_TASKS,
        help="Predict up/down probabilities or raw returns.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ...).",
    )
    return parser.parse_args(argv)


class LoggingPresenter:
    """Render controller events through the ``stock_gru`` logger."""

    def __init__(self) -> None:
        self.charts: dict[str, int] = {}

    def callbacks(self) -> PresentationCallbacks:
        return PresentationCallbacks(
            on_progress=self.on_progress,
            on_status=self.on_status,
            on_chart_update=self.on_chart_update,
        )

    def on_progress(self, percent: float, message: str) -> None:
        LOGGER.debug("[%3.0f%%] %s", percent, message)

    def on_status(self, message: str, level: StatusLevel) -> None:
        LOGGER.log(_STATUS_LEVELS[level], message)

    def on_chart_update(self, series_name: str, points: list[dict[str, Any]]) -> None:
        self.charts[series_name] = len(points)


async def run_pipeline(controller: ForecastController, source: str | None, *, offline: bool) -> list[ActionResult]:
    """Run every stage in order, stopping at the first one that does not succeed."""

    results: list[ActionResult] = []
    steps = (
        lambda: controller.load(source, synthetic=offline),
        controller.preprocess,
        controller.train,
        controller.predict,
    )
    try:
        for step in steps:
            result = await step()
            results.append(result)
            if not result.ok:
                break
    finally:
        await controller.aclose()
    return results


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    try:
        config = build_config(
            lookback=args.lookback,
            horizon=args.horizon,
            epochs=args.epochs,
            batch_size=args.batch_size,
            train_fraction=args.train_fraction,
            validation_fraction=args.validation_fraction,
            task=args.task,
        )
    except ValueError as exc:
        print(json.dumps({"status": "error", "message": str(exc)}), file=sys.stderr)
        return 2

    presenter = LoggingPresenter()
    controller = ForecastController(config, presenter.callbacks())
    results = asyncio.run(run_pipeline(controller, args.source, offline=args.offline))

    failed = next((result for result in results if not result.ok), None)
    if failed is not None:
        print(
            json.dumps({"status": "error", "action": failed.action, **failed.payload}, default=str),
            file=sys.stderr,
        )
        return 1

    output = {"status": "ok", "charts": presenter.charts}
    for result in results:
        output[result.action] = result.payload
    print(json.dumps(output, indent=2, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
