"""Historical price data container and loaders."""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Sequence

import pandas as pd

__all__ = ["StockData", "load_stock_data", "stock_data_from_frame", "slice_stock_data"]

logger = logging.getLogger(__name__)


def _clean_price(value: Any) -> float | None:
    if value is None:
        return None
    try:
        price = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(price) or math.isinf(price):
        return None
    return price


@dataclass(frozen=True, slots=True)
class StockData:
    """Index-aligned price history; ``None`` marks a period without a price."""

    tickers: tuple[str, ...]
    dates: tuple[str, ...]
    price_data: Mapping[str, tuple[float | None, ...]]

    def __post_init__(self) -> None:
        expected = len(self.dates)
        for ticker in self.tickers:
            series = self.price_data.get(ticker)
            if series is None:
                raise ValueError(f"No price series supplied for ticker {ticker}")
            if len(series) != expected:
                raise ValueError(
                    f"Price series for {ticker} has {len(series)} points, expected {expected}"
                )

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "StockData":
        tickers = tuple(str(ticker) for ticker in payload.get("tickers", ()))
        dates = tuple(str(date) for date in payload.get("dates", ()))
        raw_prices = payload.get("priceData", payload.get("price_data", {})) or {}
        unknown = set(raw_prices) - set(tickers)
        if unknown:
            raise ValueError(f"Price data supplied for unknown tickers: {sorted(unknown)}")
        price_data = {
            ticker: tuple(_clean_price(value) for value in raw_prices.get(ticker, ()))
            for ticker in tickers
        }
        return cls(tickers=tickers, dates=dates, price_data=price_data)

    def to_dict(self) -> Dict[str, object]:
        return {
            "tickers": list(self.tickers),
            "dates": list(self.dates),
            "priceData": {ticker: list(self.price_data[ticker]) for ticker in self.tickers},
        }

    @property
    def periods(self) -> int:
        return len(self.dates)

    def prices(self, ticker: str) -> Sequence[float | None]:
        return self.price_data.get(ticker, ())


def stock_data_from_frame(frame: pd.DataFrame, *, tickers: Iterable[str] | None = None) -> StockData:
    """Convert a wide price table (date index, one column per ticker) into ``StockData``."""

    if frame.empty:
        raise ValueError("Price table is empty")
    frame = frame.sort_index()
    columns = [str(column) for column in (tickers if tickers is not None else frame.columns)]
    index = frame.index
    if isinstance(index, pd.DatetimeIndex):
        dates = tuple(ts.isoformat() for ts in index)
    else:
        dates = tuple(str(value) for value in index)
    numeric = frame[columns].apply(pd.to_numeric, errors="coerce")
    price_data = {
        column: tuple(_clean_price(value) for value in numeric[column].tolist())
        for column in columns
    }
    return StockData(tickers=tuple(columns), dates=dates, price_data=price_data)


def load_stock_data(path: Path | str) -> StockData:
    """Load prices from the JSON input contract or a wide CSV/parquet table."""

    path = Path(path)
    suffix = path.suffix.lower()
    if suffix == ".json":
        with path.open("r", encoding="utf-8") as handle:
            return StockData.from_dict(json.load(handle))
    if suffix == ".parquet":
        frame = pd.read_parquet(path)
    elif suffix == ".csv":
        frame = pd.read_csv(path)
    else:
        raise ValueError(f"Unsupported price file format: {path.suffix}")
    if not isinstance(frame.index, pd.DatetimeIndex):
        date_column = frame.columns[0]
        frame[date_column] = pd.to_datetime(frame[date_column], utc=True, errors="coerce")
        frame = frame.dropna(subset=[date_column]).set_index(date_column)
    logger.info("Loaded %d tickers x %d periods from %s", len(frame.columns), len(frame.index), path)
    return stock_data_from_frame(frame)


def _window_mask(dates: Sequence[str], start: str, end: str) -> list[bool]:
    stamps = pd.to_datetime(pd.Series(list(dates), dtype=object), utc=True, errors="coerce")
    low = pd.to_datetime(start, utc=True, errors="coerce")
    high = pd.to_datetime(end, utc=True, errors="coerce")
    if stamps.isna().any() or pd.isna(low) or pd.isna(high):
        # Free-form labels: plain string order.
        return [start <= date <= end for date in dates]
    return ((stamps >= low) & (stamps <= high)).tolist()


def slice_stock_data(data: StockData, start: str, end: str) -> StockData:
    """Return the aligned sub-range ``start <= date <= end``.

    Dates and bounds are compared as UTC timestamps, so ``"2022-01-07"`` keeps a
    row dated ``"2022-01-07T00:00:00+00:00"``. An empty or inverted window
    returns ``data`` unchanged.
    """

    kept = [idx for idx, inside in enumerate(_window_mask(data.dates, start, end)) if inside]
    if not kept:
        return data
    start_index, end_index = kept[0], kept[-1]
    return StockData(
        tickers=data.tickers,
        dates=data.dates[start_index : end_index + 1],
        price_data={
            ticker: tuple(data.price_data[ticker][start_index : end_index + 1]) for ticker in data.tickers
        },
    )
