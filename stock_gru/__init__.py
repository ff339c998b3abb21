"""GRU based multi-day stock direction forecaster."""

from stock_gru.config import ForecasterConfig, build_config
from stock_gru.controller import (
    ActionResult,
    ForecastController,
    PresentationCallbacks,
    Stage,
    StatusLevel,
)
from stock_gru.exceptions import (
    DataFetchError,
    ForecasterError,
    InsufficientDataError,
    InvalidSplitError,
    LeakageError,
    ModelStateError,
    NotConfiguredError,
    NotTrainedError,
    ParseError,
    TrainingDivergenceError,
)

__all__ = [
    "ActionResult",
    "DataFetchError",
    "ForecastController",
    "ForecasterConfig",
    "ForecasterError",
    "InsufficientDataError",
    "InvalidSplitError",
    "LeakageError",
    "ModelStateError",
    "NotConfiguredError",
    "NotTrainedError",
    "ParseError",
    "PresentationCallbacks",
    "Stage",
    "StatusLevel",
    "TrainingDivergenceError",
    "build_config",
]
