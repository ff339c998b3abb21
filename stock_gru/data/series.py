"""Price series container, daily returns and summary statistics."""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, Optional

import numpy as np
import pandas as pd

from ..config import TRADING_DAYS_PER_YEAR
from ..exceptions import InsufficientDataError

LOGGER = logging.getLogger(__name__)


@dataclass
class PriceSeries:
    """Chronologically ascending closing prices for a single symbol.

    ``frame`` holds a ``Date`` column (datetime64) and a ``Close`` column
    (float). ``synthetic`` marks generated data and ``fallback_reason`` keeps
    the error that forced the loader onto the synthetic generator.
    """

    frame: pd.DataFrame
    symbol: str
    source: str
    synthetic: bool = False
    fallback_reason: Optional[str] = None

    def __post_init__(self) -> None:
        missing = {"Date", "Close"} - set(self.frame.columns)
        if missing:
            raise ValueError(f"Price frame is missing columns: {sorted(missing)}")
        self.frame = self.frame[["Date", "Close"]].reset_index(drop=True)

    def __len__(self) -> int:
        return int(self.frame.shape[0])

    @property
    def dates(self) -> pd.Series:
        return self.frame["Date"]

    @property
    def closes(self) -> np.ndarray:
        return self.frame["Close"].to_numpy(dtype=float)

    @classmethod
    def from_values(
        cls,
        dates: Iterable[Any],
        closes: Iterable[float],
        *,
        symbol: str = "TEST",
        source: str = "memory",
    ) -> "PriceSeries":
        frame = pd.DataFrame({"Date": pd.to_datetime(list(dates)), "Close": list(closes)})
        return cls(frame=frame.astype({"Close": float}), symbol=symbol, source=source)


@dataclass
class Statistics:
    """Summary of a price series and, when available, its daily returns."""

    count: int
    start_date: pd.Timestamp
    end_date: pd.Timestamp
    min_price: float
    max_price: float
    current_price: float
    mean_price: float
    total_return: float
    return_count: Optional[int] = None
    positive_days: Optional[int] = None
    mean_return: Optional[float] = None
    volatility: Optional[float] = None
    sharpe_ratio: Optional[float] = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def has_returns(self) -> bool:
        return self.return_count is not None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start_date"] = self.start_date.isoformat()
        payload["end_date"] = self.end_date.isoformat()
        extra = payload.pop("extra")
        return {**extra, **payload}


@dataclass(frozen=True)
class ChartPoint:
    """Single point handed to the presentation layer."""

    x: str
    y: float
    index: int

    def as_dict(self) -> dict[str, Any]:
        return {"x": self.x, "y": self.y, "index": self.index}


def compute_returns(prices: Iterable[float] | np.ndarray) -> np.ndarray:
    """Return simple daily returns ``(p[i] - p[i-1]) / p[i-1]``."""

    values = np.asarray(prices, dtype=float)
    if values.ndim != 1:
        raise ValueError("Prices must be a one dimensional sequence.")
    if values.size < 2:
        return np.empty(0, dtype=float)
    return np.diff(values) / values[:-1]


def compute_statistics(series: PriceSeries, returns: Optional[np.ndarray] = None) -> Statistics:
    """Summarise ``series`` and, when supplied, its ``returns``."""

    if len(series) < 2:
        raise InsufficientDataError(
            "At least two prices are needed for statistics.", required=2, available=len(series)
        )

    closes = series.closes
    dates = series.dates
    stats = Statistics(
        count=len(series),
        start_date=pd.Timestamp(dates.iloc[0]),
        end_date=pd.Timestamp(dates.iloc[-1]),
        min_price=float(closes.min()),
        max_price=float(closes.max()),
        current_price=float(closes[-1]),
        mean_price=float(closes.mean()),
        total_return=float((closes[-1] - closes[0]) / closes[0]),
        extra={"symbol": series.symbol, "source": series.source, "synthetic": series.synthetic},
    )

    if returns is not None and len(returns) > 0:
        values = np.asarray(returns, dtype=float)
        mean_return = float(values.mean())
        # Population standard deviation, matching the daily volatility readout.
        volatility = float(values.std())
        if volatility > 0:
            sharpe = mean_return / volatility * math.sqrt(TRADING_DAYS_PER_YEAR)
        else:
            sharpe = 0.0
        stats.return_count = int(values.size)
        stats.positive_days = int((values > 0).sum())
        stats.mean_return = mean_return
        stats.volatility = volatility
        stats.sharpe_ratio = float(sharpe)

    LOGGER.debug("Computed statistics for %s over %s prices", series.symbol, stats.count)
    return stats


def downsample(series: PriceSeries, max_points: int = 200) -> list[ChartPoint]:
    """Thin ``series`` to roughly ``max_points`` chart points, always keeping the last one."""

    if max_points < 2:
        raise ValueError("max_points must be at least 2.")
    total = len(series)
    if total == 0:
        return []

    dates = series.dates
    closes = series.closes
    step = 1 if total <= max_points else math.ceil(total / max_points)
    indices = list(range(0, total, step))
    if indices[-1] != total - 1:
        indices.append(total - 1)
    return [
        ChartPoint(x=pd.Timestamp(dates.iloc[idx]).date().isoformat(), y=float(closes[idx]), index=idx)
        for idx in indices
    ]


__all__ = [
    "ChartPoint",
    "PriceSeries",
    "Statistics",
    "compute_returns",
    "compute_statistics",
    "downsample",
]
