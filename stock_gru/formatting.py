"""Human readable renderings of statistics, evaluations and forecasts."""

from __future__ import annotations

from typing import Iterable

from .data.series import Statistics
from .models.gru import DayPrediction, EvaluationReport


def format_percent(value: float, digits: int = 2, *, signed: bool = False) -> str:
    text = f"{value * 100:+.{digits}f}%" if signed else f"{value * 100:.{digits}f}%"
    return text


def format_price(value: float) -> str:
    return f"${value:,.2f}"


def format_statistics(stats: Statistics) -> dict[str, object]:
    """Return display strings for a :class:`Statistics` snapshot."""

    display: dict[str, object] = {
        "data_points": stats.count,
        "date_range": f"{stats.start_date.date().isoformat()} - {stats.end_date.date().isoformat()}",
        "current_price": format_price(stats.current_price),
        "price_range": f"{format_price(stats.min_price)} - {format_price(stats.max_price)}",
        "average_price": format_price(stats.mean_price),
        "total_return": format_percent(stats.total_return),
    }
    if stats.has_returns:
        display["returns"] = {
            "positive_days": f"{stats.positive_days} of {stats.return_count}",
            "positive_rate": format_percent(stats.positive_days / stats.return_count, 1),
            "avg_daily_return": format_percent(stats.mean_return, 3),
            "volatility": format_percent(stats.volatility),
            "sharpe_ratio": f"{stats.sharpe_ratio:.2f}",
        }
    return display


def format_evaluation(report: EvaluationReport) -> dict[str, str]:
    return {
        "loss": f"{report.loss:.4f}",
        "accuracy": format_percent(report.accuracy, 1),
        "directional_accuracy": format_percent(report.directional_accuracy, 1),
        "precision": format_percent(report.precision, 1),
        "recall": format_percent(report.recall, 1),
        "f1_score": f"{report.f1_score:.3f}",
        "rmse": f"{report.rmse:.4f}",
    }


def format_prediction(prediction: DayPrediction, *, task: str = "classification") -> str:
    """Render one forecast day, e.g. ``Day +1: UP (p=62.3%, confidence 24.6%)``."""

    if task == "classification":
        value = f"p={format_percent(prediction.value, 1)}"
    else:
        value = f"return={format_percent(prediction.value, 2, signed=True)}"
    return (
        f"Day +{prediction.day}: {prediction.direction.value} "
        f"({value}, confidence {format_percent(prediction.confidence, 1)})"
    )


def format_predictions(predictions: Iterable[DayPrediction], *, task: str = "classification") -> list[str]:
    return [format_prediction(item, task=task) for item in predictions]


__all__ = [
    "format_evaluation",
    "format_percent",
    "format_prediction",
    "format_predictions",
    "format_price",
    "format_statistics",
]
