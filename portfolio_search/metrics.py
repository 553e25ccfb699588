"""Risk/return metrics computed from value or price series."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Dict, List, Mapping, Sequence

import numpy as np
import pandas as pd

from .data_loader import StockData
from .defaults import INITIAL_PORTFOLIO_VALUE, TRADING_DAYS_PER_YEAR

__all__ = [
    "Metrics",
    "MonthlyReturn",
    "elapsed_years",
    "calculate_metrics",
    "calculate_stock_metrics",
    "moving_average",
    "monthly_returns",
    "correlation_matrix",
    "RotationTrail",
    "CyclePosition",
    "asset_rotation",
    "cycle_positions",
]

_MIN_YEARS = 0.0027  # roughly one calendar day
_EPSILON = 1e-12

ROTATION_MIN_WEIGHT = 0.001
ROTATION_LONG_WINDOW = 60
ROTATION_MIN_SHORT_WINDOW = 5
ROTATION_FLAT_STD = 0.01


@dataclass(slots=True)
class Metrics:
    cagr: float = 0.0
    volatility: float = 0.0
    max_dd: float = 0.0
    sharpe: float = 0.0
    sortino: float = 0.0
    calmar: float = 0.0
    total_return: float = 0.0
    duration: float = 0.0
    smoothness: float = 0.0
    win_rate: float = 0.0

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class MonthlyReturn:
    year: int
    month: int
    value: float


@dataclass(slots=True, frozen=True)
class RotationTrail:
    """Recent path of one holding in relative-strength space, centred on 100."""

    x: List[float]
    y: List[float]
    dates: List[str]

    def as_dict(self) -> Dict[str, list]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class CyclePosition:
    ticker: str
    angle: float
    radius: float
    x: float
    y: float

    def as_dict(self) -> Dict[str, float | str]:
        return asdict(self)


def _finite(value: float) -> float:
    return value if math.isfinite(value) else 0.0


def elapsed_years(dates: Sequence[str] | None, periods: int) -> float:
    """Calendar span of ``dates`` in years, or ``periods / 252`` for sub-day spans."""

    years = 1.0
    if dates is not None and len(dates) >= 2:
        first = pd.to_datetime(dates[0], utc=True, errors="coerce")
        last = pd.to_datetime(dates[-1], utc=True, errors="coerce")
        if not pd.isna(first) and not pd.isna(last):
            years = abs((last - first).total_seconds()) / (365.25 * 24 * 3600)
    if years < _MIN_YEARS:
        years = periods / TRADING_DAYS_PER_YEAR
    return years


def calculate_metrics(
    values: Sequence[float | None],
    dates: Sequence[str] | None = None,
    *,
    years: float | None = None,
) -> Metrics | None:
    """Compute CAGR, volatility, drawdown and ratio metrics; ``None`` if fewer than two valid points.

    ``years`` may be supplied by callers that evaluate many series over the same
    calendar, which avoids re-parsing the dates on every call. Every ratio is
    normalised to 0 when its denominator vanishes, so no NaN or infinity ever
    leaves this function.
    """

    series = np.asarray([v for v in values if v is not None], dtype=float)
    series = series[np.isfinite(series)]
    if series.size < 2:
        return None

    prev = series[:-1]
    with np.errstate(divide="ignore", invalid="ignore"):
        returns = np.where(prev != 0, (series[1:] - prev) / prev, 0.0)
    if years is None:
        years = elapsed_years(dates, returns.size)
    if years <= 0:
        years = returns.size / TRADING_DAYS_PER_YEAR
    periods_per_year = returns.size / years

    total_return = (series[-1] - series[0]) / series[0] if series[0] != 0 else 0.0
    growth = 1 + total_return
    cagr = growth ** (1 / years) - 1 if growth > 0 else -1.0

    volatility = float(returns.std()) * math.sqrt(periods_per_year)

    peaks = np.maximum.accumulate(series)
    with np.errstate(divide="ignore", invalid="ignore"):
        drawdowns = np.where(peaks != 0, (peaks - series) / peaks, 0.0)
    max_dd = max(0.0, float(drawdowns.max()))

    sharpe = cagr / volatility if volatility > _EPSILON else 0.0
    downside = returns[returns < 0]
    down_variance = float(np.mean(downside**2)) if downside.size > 1 else 0.0
    down_vol = math.sqrt(down_variance) * math.sqrt(periods_per_year)
    sortino = cagr / down_vol if down_vol > _EPSILON else 0.0
    calmar = cagr / max_dd if max_dd > _EPSILON else 0.0

    return Metrics(
        cagr=_finite(float(cagr)),
        volatility=_finite(volatility),
        max_dd=_finite(max_dd),
        sharpe=_finite(float(sharpe)),
        sortino=_finite(float(sortino)),
        calmar=_finite(float(calmar)),
        total_return=_finite(float(total_return)),
        duration=_finite(float(years)),
    )


def calculate_stock_metrics(data: StockData, *, years: float | None = None) -> Dict[str, Metrics]:
    """Per-ticker metrics; tickers with fewer than two valid prices are left out."""

    stock_metrics: Dict[str, Metrics] = {}
    for ticker in data.tickers:
        metrics = calculate_metrics(data.prices(ticker), data.dates, years=years)
        if metrics is not None:
            stock_metrics[ticker] = metrics
    return stock_metrics


def moving_average(values: Sequence[float | None], period: int) -> List[float | None]:
    """Trailing mean over the non-missing points of each full window."""

    if period <= 1:
        return list(values)
    series = pd.Series([np.nan if v is None else v for v in values], dtype=float)
    window_sum = series.rolling(period, min_periods=1).sum()
    window_count = series.rolling(period, min_periods=1).count()
    averages = (window_sum / window_count).where(window_count > 0)
    averages.iloc[: period - 1] = np.nan
    return [None if pd.isna(v) else float(v) for v in averages.tolist()]


def monthly_returns(values: Sequence[float], dates: Sequence[str]) -> List[MonthlyReturn]:
    """Month-over-month returns of the month-end values; the first month is measured from 100."""

    if len(values) != len(dates) or not dates:
        return []
    stamps = pd.to_datetime(pd.Series(list(dates)), utc=True, errors="coerce")
    frame = pd.DataFrame({"stamp": stamps, "value": list(values)}).dropna(subset=["stamp"])
    if frame.empty:
        return []
    frame["year"] = frame["stamp"].dt.year
    frame["month"] = frame["stamp"].dt.month
    month_end = frame.groupby(["year", "month"], sort=True)["value"].last()

    results: List[MonthlyReturn] = []
    previous = INITIAL_PORTFOLIO_VALUE
    for (year, month), current in month_end.items():
        change = (current - previous) / previous if previous != 0 else 0.0
        results.append(MonthlyReturn(year=int(year), month=int(month), value=_finite(float(change))))
        previous = current
    return results


def correlation_matrix(data: StockData, tickers: Sequence[str]) -> List[List[float]]:
    """Pearson correlation of period returns; gaps count as zero returns."""

    n = len(tickers)
    if n > 500:
        return [[0.0] * n for _ in range(n)]
    length = max(data.periods - 1, 0)
    rows = []
    for ticker in tickers:
        prices = data.prices(ticker)
        row = np.zeros(length)
        for i in range(1, len(prices)):
            current, previous = prices[i], prices[i - 1]
            if current is not None and previous is not None and previous != 0:
                row[i - 1] = (current - previous) / previous
        rows.append(row)
    if length < 2:
        return [[0.0] * n for _ in range(n)]

    matrix = np.vstack(rows) if rows else np.zeros((0, length))
    centred = matrix - matrix.mean(axis=1, keepdims=True)
    covariance = centred @ centred.T
    scale = np.sqrt(np.outer(np.diag(covariance), np.diag(covariance)))
    with np.errstate(divide="ignore", invalid="ignore"):
        corr = np.where(scale > 0, covariance / scale, 0.0)
    np.fill_diagonal(corr, 1.0)
    return corr.tolist()



def _at(series: Sequence[float | None], index: int) -> float:
    if index < 0 or index >= len(series):
        return 0.0
    return series[index] or 0.0


def _window_return(series: Sequence[float | None], index: int, window: int) -> float:
    past = _at(series, index - window)
    return (_at(series, index) - past) / past if past > 0 else 0.0


def asset_rotation(
    weights: Mapping[str, float],
    data: StockData,
    values: Sequence[float | None],
    *,
    trail_length: int = 20,
    downsample_step: int = 1,
) -> Dict[str, RotationTrail]:
    """Relative-strength trails of the held tickers against the portfolio itself.

    For each sampled period the x axis is a ticker's long-window return minus
    the portfolio's, the y axis the same over the short window. Both are
    z-scored across the held tickers of that period and mapped to ``z * 100 + 100``,
    so 100 is the cross-sectional average and x > 100, y > 100 is the leading
    quadrant. Missing prices count as 0, which zeroes the affected return.
    """

    tickers = [ticker for ticker, weight in weights.items() if weight > ROTATION_MIN_WEIGHT]
    if not tickers:
        return {}
    n = len(values)
    long_window = min(n // 2, ROTATION_LONG_WINDOW)
    short_window = max(long_window // 4, ROTATION_MIN_SHORT_WINDOW)
    start = max(long_window, n - trail_length)
    step = max(1, downsample_step)
    indices = [i for i in range(start, n) if (i - start) % step == 0 or i == n - 1]

    raw_x = np.zeros((len(tickers), len(indices)))
    raw_y = np.zeros((len(tickers), len(indices)))
    for col, i in enumerate(indices):
        portfolio_long = _window_return(values, i, long_window)
        portfolio_short = _window_return(values, i, short_window)
        for row, ticker in enumerate(tickers):
            prices = data.prices(ticker)
            raw_x[row, col] = _window_return(prices, i, long_window) - portfolio_long
            raw_y[row, col] = _window_return(prices, i, short_window) - portfolio_short

    def normalise(raw: np.ndarray) -> np.ndarray:
        std = raw.std(axis=0)
        std = np.where(std > 0, std, ROTATION_FLAT_STD)
        return (raw - raw.mean(axis=0)) / std * 100 + 100

    z_x = normalise(raw_x)
    z_y = normalise(raw_y)
    dates = [data.dates[i] if i < len(data.dates) else "" for i in indices]
    return {
        ticker: RotationTrail(x=z_x[row].tolist(), y=z_y[row].tolist(), dates=list(dates))
        for row, ticker in enumerate(tickers)
    }


def cycle_positions(
    weights: Mapping[str, float],
    data: StockData,
    values: Sequence[float | None],
) -> List[CyclePosition]:
    """Latest rotation point of every holding as polar coordinates around (100, 100).

    Ordered clockwise from 12 o'clock, so tickers entering the leading quadrant
    come first.
    """

    positions: List[CyclePosition] = []
    for ticker, trail in asset_rotation(weights, data, values, trail_length=1).items():
        if not trail.x:
            continue
        x = trail.x[-1] - 100
        y = trail.y[-1] - 100
        angle = math.degrees(math.atan2(y, x)) % 360
        positions.append(CyclePosition(ticker=ticker, angle=angle, radius=math.hypot(x, y), x=x + 100, y=y + 100))
    positions.sort(key=lambda position: 90 - position.angle if position.angle <= 90 else 450 - position.angle)
    return positions
