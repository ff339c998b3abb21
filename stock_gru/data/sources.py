"""Price CSV retrieval, parsing and the synthetic fallback series."""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime
from io import StringIO
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlparse

import httpx
import numpy as np
import pandas as pd
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..config import ForecasterConfig
from ..exceptions import DataFetchError, ParseError
from .series import PriceSeries

LOGGER = logging.getLogger(__name__)

SYNTHETIC_SOURCE = "synthetic"
SYNTHETIC_START_DATE = "2020-01-01"

_EUROPEAN_DATE = re.compile(r"^\d{1,2}\.\d{1,2}\.\d{4}$")
_PRICE_HEADER_TOKENS = ("close", "price", "value", "adj", "s&p", "p500")


class PriceRecord(BaseModel):
    """One validated ``(date, close)`` row."""

    model_config = ConfigDict(frozen=True)

    date: datetime
    close: float = Field(gt=0, allow_inf_nan=False)

    def as_frame_row(self) -> dict[str, Any]:
        return {"Date": self.date, "Close": self.close}


def _is_url(source: str) -> bool:
    return urlparse(source).scheme in {"http", "https"}


def _sniff_separator(header: str) -> str:
    return ";" if ";" in header else ","


def _locate_columns(headers: list[str]) -> tuple[int, int]:
    date_col = -1
    price_col = -1
    for idx, header in enumerate(headers):
        lowered = header.lower()
        if date_col == -1 and "date" in lowered:
            date_col = idx
        if any(token in lowered for token in _PRICE_HEADER_TOKENS):
            price_col = idx
    return (0 if date_col == -1 else date_col), (1 if price_col == -1 else price_col)


def _parse_date(text: str) -> Optional[datetime]:
    text = text.strip()
    if not text:
        return None
    if _EUROPEAN_DATE.match(text):
        try:
            return datetime.strptime(text, "%d.%m.%Y")
        except ValueError:
            return None
    stamp = pd.to_datetime(text, errors="coerce")
    if pd.isna(stamp):
        return None
    if stamp.tzinfo is not None:
        stamp = stamp.tz_convert(None)
    return stamp.to_pydatetime()


def _parse_price(text: str, separator: str) -> Optional[float]:
    cleaned = text.replace('"', "").strip()
    if separator == ";" and "," in cleaned and "." not in cleaned:
        cleaned = cleaned.replace(",", ".")
    try:
        return float(cleaned)
    except ValueError:
        return None


def parse_price_csv(
    text: str,
    *,
    symbol: str,
    source: str,
) -> PriceSeries:
    """Parse a delimited price table into a :class:`PriceSeries`.

    Accepts comma or semicolon separated text. Rows with an unreadable date or
    a missing, non-numeric or non-positive price are skipped; duplicate dates
    keep their last row. Raises :class:`ParseError` when nothing usable
    remains.
    """

    lines = [line for line in text.strip().splitlines() if line.strip()]
    if len(lines) < 2:
        raise ParseError("CSV needs a header and at least one data row.", source=source)

    separator = _sniff_separator(lines[0])
    try:
        frame = pd.read_csv(
            StringIO("\n".join(lines)),
            sep=separator,
            dtype=str,
            keep_default_na=False,
            skipinitialspace=True,
            on_bad_lines="skip",
        )
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as exc:
        raise ParseError(f"Unable to read CSV: {exc}", source=source) from exc

    headers = [str(column).strip() for column in frame.columns]
    if len(headers) < 2:
        raise ParseError("CSV must have at least two columns (date and price).", source=source)

    date_col, price_col = _locate_columns(headers)
    LOGGER.debug(
        "Parsing %s rows with separator %r (date=%s, price=%s)",
        frame.shape[0],
        separator,
        headers[date_col],
        headers[price_col],
    )

    records: list[PriceRecord] = []
    skipped = 0
    for raw_date, raw_price in zip(frame.iloc[:, date_col], frame.iloc[:, price_col]):
        parsed_date = _parse_date(str(raw_date))
        parsed_price = _parse_price(str(raw_price), separator)
        if parsed_date is None or parsed_price is None:
            skipped += 1
            continue
        try:
            records.append(PriceRecord(date=parsed_date, close=parsed_price))
        except ValidationError:
            skipped += 1

    if skipped:
        LOGGER.warning("Skipped %s unusable rows while parsing %s", skipped, source)
    if not records:
        raise ParseError("No valid price rows found in CSV.", source=source)

    prices = pd.DataFrame([record.as_frame_row() for record in records])
    prices["Date"] = pd.to_datetime(prices["Date"])
    duplicates = int(prices["Date"].duplicated(keep="last").sum())
    if duplicates:
        LOGGER.warning("Dropped %s duplicate dates from %s", duplicates, source)
        prices = prices.drop_duplicates(subset="Date", keep="last")
    prices = prices.sort_values("Date", kind="mergesort").reset_index(drop=True)

    LOGGER.info(
        "Parsed %s prices for %s from %s (%s to %s)",
        prices.shape[0],
        symbol,
        source,
        prices["Date"].iloc[0].date(),
        prices["Date"].iloc[-1].date(),
    )
    return PriceSeries(frame=prices, symbol=symbol, source=source)


def generate_synthetic_series(
    length: int = 1000,
    *,
    seed: int = 42,
    start_price: float = 100.0,
    drift: float = 0.0003,
    volatility: float = 0.01,
    symbol: str = "SYNTHETIC",
    fallback_reason: Optional[str] = None,
) -> PriceSeries:
    """Generate a deterministic geometric random walk on business days."""

    if length < 2:
        raise ValueError("Synthetic series needs at least two points.")
    if start_price <= 0:
        raise ValueError("start_price must be positive.")
    rng = np.random.default_rng(seed)
    shocks = rng.normal(loc=drift, scale=volatility, size=length - 1)
    # Keep every step above -100% so prices stay strictly positive.
    growth = np.cumprod(1.0 + np.clip(shocks, -0.5, None))
    closes = np.concatenate([[start_price], start_price * growth])
    dates = pd.bdate_range(SYNTHETIC_START_DATE, periods=length)
    frame = pd.DataFrame({"Date": dates, "Close": closes.astype(float)})
    return PriceSeries(
        frame=frame,
        symbol=symbol,
        source=SYNTHETIC_SOURCE,
        synthetic=True,
        fallback_reason=fallback_reason,
    )


class PriceDataLoader:
    """Fetch price tables over HTTP or from disk, with an explicit synthetic fallback."""

    def __init__(self, config: ForecasterConfig, *, client: httpx.AsyncClient | None = None) -> None:
        self.config = config
        self._client = client
        self._owns_client = client is None
        self._closed = False

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.request_timeout, follow_redirects=True)
        return self._client

    async def aclose(self) -> None:
        if self._closed:
            return
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._closed = True

    async def __aenter__(self) -> "PriceDataLoader":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def fetch_series(self, source: Optional[str] = None) -> PriceSeries:
        """Retrieve and parse ``source`` (URL or path), defaulting to the configured CSV URL."""

        target = source or self.config.csv_url
        text = await (self._download(target) if _is_url(target) else self._read_file(target))
        if not text.strip():
            raise DataFetchError("CSV file is empty.", source=target)
        return parse_price_csv(text, symbol=self.config.symbol, source=target)

    async def load_series(self, source: Optional[str] = None) -> PriceSeries:
        """Fetch ``source``, switching to synthetic data when fetching fails and fallback is enabled."""

        try:
            return await self.fetch_series(source)
        except DataFetchError as exc:
            if not self.config.fallback_to_synthetic:
                raise
            LOGGER.warning("Falling back to synthetic data: %s", exc)
            return self.synthetic_series(fallback_reason=str(exc))

    def synthetic_series(self, *, fallback_reason: Optional[str] = None) -> PriceSeries:
        return generate_synthetic_series(
            self.config.synthetic_length,
            seed=self.config.seed,
            symbol=self.config.symbol,
            fallback_reason=fallback_reason,
        )

    async def _download(self, url: str) -> str:
        LOGGER.info("Fetching price CSV from %s", url)
        try:
            response = await self.client.get(url)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise DataFetchError(f"{url} returned HTTP {status}.", source=url) from exc
        except httpx.HTTPError as exc:
            raise DataFetchError(f"Request to {url} failed: {exc}", source=url) from exc
        return response.text

    async def _read_file(self, path_value: str) -> str:
        path = Path(path_value).expanduser()
        LOGGER.info("Reading price CSV from %s", path)
        try:
            return await asyncio.to_thread(path.read_text, encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise DataFetchError(f"Unable to read {path}: {exc}", source=str(path)) from exc


__all__ = [
    "PriceDataLoader",
    "PriceRecord",
    "SYNTHETIC_SOURCE",
    "generate_synthetic_series",
    "parse_price_csv",
]
