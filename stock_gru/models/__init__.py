"""Recurrent forecasting model and its resource bookkeeping."""

from stock_gru.models.gru import (
    DayPrediction,
    Direction,
    EvaluationReport,
    GRUForecaster,
    GRUNetwork,
    ModelHandle,
    TrainingSummary,
    UncertainPrediction,
)
from stock_gru.models.resources import ResourceScope, ResourceTracker

__all__ = [
    "DayPrediction",
    "Direction",
    "EvaluationReport",
    "GRUForecaster",
    "GRUNetwork",
    "ModelHandle",
    "ResourceScope",
    "ResourceTracker",
    "TrainingSummary",
    "UncertainPrediction",
]
