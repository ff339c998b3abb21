"""Price loading, return statistics and dataset windowing."""

from stock_gru.data.series import (
    ChartPoint,
    PriceSeries,
    Statistics,
    compute_returns,
    compute_statistics,
    downsample,
)
from stock_gru.data.sources import (
    PriceDataLoader,
    PriceRecord,
    generate_synthetic_series,
    parse_price_csv,
)
from stock_gru.data.windows import (
    DatasetSplit,
    WindowSequence,
    WindowedExample,
    build_windows,
    check_no_leakage,
    direction_labels,
    latest_window,
    split_dataset,
    stack_examples,
)

__all__ = [
    "ChartPoint",
    "DatasetSplit",
    "PriceDataLoader",
    "PriceRecord",
    "PriceSeries",
    "Statistics",
    "WindowSequence",
    "WindowedExample",
    "build_windows",
    "check_no_leakage",
    "compute_returns",
    "compute_statistics",
    "direction_labels",
    "downsample",
    "generate_synthetic_series",
    "latest_window",
    "parse_price_csv",
    "split_dataset",
    "stack_examples",
]
