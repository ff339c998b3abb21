"""Configuration utilities for the GRU forecasting pipeline."""

from __future__ import annotations

import math
import os
from dataclasses import dataclass, fields
from typing import Any, Callable, Optional

from dotenv import load_dotenv

ENV_PREFIX = "STOCK_GRU_"

DEFAULT_CSV_URL = "https://raw.githubusercontent.com/buschevapoly-del/again/main/my_data.csv"
DEFAULT_SYMBOL = "S&P 500"

SUPPORTED_TASKS: tuple[str, ...] = ("classification", "regression")

TRADING_DAYS_PER_YEAR = 252


@dataclass
class ForecasterConfig:
    """Runtime configuration shared by the loader, the model wrapper and the controller."""

    csv_url: str = DEFAULT_CSV_URL
    symbol: str = DEFAULT_SYMBOL
    lookback: int = 60
    horizon: int = 5
    train_fraction: float = 0.7
    validation_fraction: float = 0.15
    purge_boundaries: bool = True
    task: str = "classification"
    epochs: int = 100
    batch_size: int = 32
    learning_rate: float = 1e-3
    gru_units: int = 64
    dense_units: int = 32
    dropout: float = 0.3
    early_stopping: bool = True
    patience: int = 15
    scale_inputs: bool = True
    fail_on_divergence: bool = True
    fallback_to_synthetic: bool = True
    synthetic_length: int = 1000
    request_timeout: float = 30.0
    max_chart_points: int = 200
    seed: int = 42
    device: Optional[str] = None

    def __post_init__(self) -> None:
        self.task = str(self.task).strip().lower()
        self.validate()

    def validate(self) -> None:
        """Raise ``ValueError`` when a setting is outside its usable range."""

        for name in ("lookback", "horizon", "epochs", "batch_size", "gru_units", "dense_units"):
            if int(getattr(self, name)) <= 0:
                raise ValueError(f"{name} must be positive.")
        if self.patience < 0:
            raise ValueError("patience cannot be negative.")
        if self.synthetic_length < 2:
            raise ValueError("synthetic_length must be at least 2.")
        if self.max_chart_points < 2:
            raise ValueError("max_chart_points must be at least 2.")
        if not 0.0 <= self.dropout < 1.0:
            raise ValueError("dropout must be in [0, 1).")
        if not math.isfinite(self.learning_rate) or self.learning_rate <= 0:
            raise ValueError("learning_rate must be a positive number.")
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be positive.")
        if self.task not in SUPPORTED_TASKS:
            raise ValueError(f"task must be one of {', '.join(SUPPORTED_TASKS)}.")
        if not 0 < self.train_fraction < 1 or not 0 < self.validation_fraction < 1:
            raise ValueError("train_fraction and validation_fraction must be between 0 and 1.")
        if self.train_fraction + self.validation_fraction >= 1:
            raise ValueError("train_fraction + validation_fraction must leave room for a test split.")

    def to_dict(self) -> dict[str, Any]:
        return {item.name: getattr(self, item.name) for item in fields(self)}


def load_environment() -> None:
    """Load configuration from an optional ``.env`` file."""

    load_dotenv()


def _coerce_bool(value: Optional[object], *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"true", "1", "yes", "y", "on"}:
            return True
        if normalized in {"false", "0", "no", "n", "off"}:
            return False
        raise ValueError(f"Cannot interpret {value!r} as a boolean.")
    return bool(value)


def _coerce_optional_str(value: Optional[object]) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


_COERCERS: dict[str, Callable[[Any], Any]] = {
    "int": int,
    "float": float,
    "str": str,
    "Optional[str]": _coerce_optional_str,
}


def _coerce(field_type: str, value: Any, default: Any) -> Any:
    if field_type == "bool":
        return _coerce_bool(value, default=default)
    coercer = _COERCERS.get(field_type, lambda item: item)
    try:
        return coercer(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid value {value!r} for a {field_type} setting.") from exc


def build_config(**overrides: Any) -> ForecasterConfig:
    """Build a :class:`ForecasterConfig` from overrides, environment variables and defaults.

    Explicit keyword overrides win over ``STOCK_GRU_*`` environment variables,
    which win over the dataclass defaults. ``None`` overrides are ignored so
    CLI arguments that were not supplied fall through to the environment.
    """

    load_environment()

    known = {item.name: item for item in fields(ForecasterConfig)}
    unknown = sorted(set(overrides) - set(known))
    if unknown:
        raise TypeError(f"Unknown configuration keys: {', '.join(unknown)}")

    defaults = ForecasterConfig()
    values: dict[str, Any] = {}
    for name, item in known.items():
        raw = overrides.get(name)
        if raw is None:
            raw = os.getenv(f"{ENV_PREFIX}{name.upper()}")
        if raw is None:
            continue
        values[name] = _coerce(str(item.type), raw, getattr(defaults, name))
    return ForecasterConfig(**values)


__all__ = [
    "DEFAULT_CSV_URL",
    "DEFAULT_SYMBOL",
    "ENV_PREFIX",
    "ForecasterConfig",
    "SUPPORTED_TASKS",
    "TRADING_DAYS_PER_YEAR",
    "build_config",
    "load_environment",
]
