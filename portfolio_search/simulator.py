"""Day-by-day portfolio value simulation with rebalancing and a moving-average hedge."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Sequence

from .config import HedgeConfig, RebalanceMode, ReentryStrategy
from .data_loader import StockData
from .defaults import DYNAMIC_REBALANCE_WINDOW, INITIAL_PORTFOLIO_VALUE, QUARTERLY_REBALANCE_PERIODS
from .kernels import NumpyScoringBackend, ScoringBackend
from .metrics import moving_average

__all__ = [
    "HedgeState",
    "CashPeriod",
    "HedgeSchedule",
    "PerformanceResult",
    "PerformanceSimulator",
]

logger = logging.getLogger(__name__)

REBOUND_SMOOTHING = 5


class HedgeState(str, Enum):
    INVESTED = "invested"
    CASH = "cash"


@dataclass(frozen=True, slots=True)
class CashPeriod:
    start: int
    end: int


@dataclass(slots=True)
class PerformanceResult:
    values: List[float]
    drawdowns: List[float]
    smoothness: float
    win_rate: float
    cash_periods: List[CashPeriod] = field(default_factory=list)
    # Period index -> fraction of value per held ticker ("CASH" while hedged).
    allocation_history: Dict[int, Dict[str, float]] = field(default_factory=dict)


def _signal_series(data: StockData, hedge: HedgeConfig) -> List[float | None]:
    if hedge.signal_ticker and hedge.signal_ticker in data.price_data:
        return list(data.prices(hedge.signal_ticker))
    signal: List[float | None] = []
    for i in range(data.periods):
        prices = [data.price_data[t][i] for t in data.tickers if data.price_data[t][i] is not None]
        signal.append(sum(prices) / len(prices) if prices else None)
    return signal


@dataclass(slots=True)
class HedgeSchedule:
    """Per-period hedge state derived from the signal series.

    The crossover signal depends only on market data, never on portfolio
    weights, so one schedule serves every candidate of a run.
    """

    states: List[HedgeState]
    cash_periods: List[CashPeriod]
    reentries: frozenset[int]

    @classmethod
    def invested_throughout(cls, periods: int) -> "HedgeSchedule":
        return cls(states=[HedgeState.INVESTED] * periods, cash_periods=[], reentries=frozenset())

    @classmethod
    def build(cls, data: StockData, hedge: HedgeConfig) -> "HedgeSchedule":
        periods = data.periods
        if not hedge.enabled:
            return cls.invested_throughout(periods)

        signal = _signal_series(data, hedge)
        short_ma = moving_average(signal, hedge.short_ma_period)
        long_ma = moving_average(signal, hedge.long_ma_period)
        smoothed = (
            moving_average(short_ma, REBOUND_SMOOTHING)
            if hedge.reentry_strategy is ReentryStrategy.SHORT_MA_REBOUND
            else [None] * periods
        )

        def crossed_above(fast: list, slow: list, i: int) -> bool:
            if None in (fast[i], slow[i], fast[i - 1], slow[i - 1]):
                return False
            return fast[i] > slow[i] and fast[i - 1] <= slow[i - 1]

        state = HedgeState.INVESTED
        states: List[HedgeState] = []
        open_periods: List[List[int]] = []
        reentries: set[int] = set()
        for i in range(periods):
            if i > 0 and None not in (short_ma[i], long_ma[i], short_ma[i - 1], long_ma[i - 1]):
                previous = state
                if short_ma[i] < long_ma[i] and short_ma[i - 1] >= long_ma[i - 1]:
                    state = HedgeState.CASH
                if state is HedgeState.CASH:
                    reenter = crossed_above(short_ma, long_ma, i)
                    if not reenter and hedge.reentry_strategy is ReentryStrategy.SHORT_MA_REBOUND:
                        reenter = crossed_above(short_ma, smoothed, i)
                    if reenter:
                        state = HedgeState.INVESTED
                if state is HedgeState.CASH and previous is HedgeState.INVESTED:
                    open_periods.append([i, -1])
                elif state is HedgeState.INVESTED and previous is HedgeState.CASH:
                    if open_periods and open_periods[-1][1] == -1:
                        open_periods[-1][1] = i
                    reentries.add(i)
            states.append(state)

        if open_periods and open_periods[-1][1] == -1:
            open_periods[-1][1] = periods - 1
        cash_periods = [CashPeriod(start=start, end=end) for start, end in open_periods]
        logger.debug("Hedge schedule has %d cash periods", len(cash_periods))
        return cls(states=states, cash_periods=cash_periods, reentries=frozenset(reentries))


class PerformanceSimulator:
    """Replays a weight vector over the price history.

    A missing price is never read as zero. A ticker without a price in some
    period is marked at its last known price, so a gap in one holding does not
    crash the portfolio value; a period in which none of the held tickers
    trades keeps the previous portfolio value.
    """

    def __init__(
        self,
        data: StockData,
        *,
        rebalance_mode: RebalanceMode = RebalanceMode.NONE,
        hedge: HedgeConfig | None = None,
        dynamic_threshold: float = 0.2,
        backend: ScoringBackend | None = None,
    ) -> None:
        self.data = data
        self.rebalance_mode = rebalance_mode
        self.hedge = hedge or HedgeConfig()
        self.dynamic_threshold = dynamic_threshold
        self.backend = backend or NumpyScoringBackend()
        self.schedule = HedgeSchedule.build(data, self.hedge)
        self._filled: dict[str, List[float | None]] = {}
        self._trading: dict[str, List[bool]] = {}
        for ticker in data.tickers:
            last: float | None = None
            filled: List[float | None] = []
            trading: List[bool] = []
            for price in data.prices(ticker):
                is_valid = price is not None and price > 0
                if is_valid:
                    last = price
                filled.append(last)
                trading.append(is_valid)
            self._filled[ticker] = filled
            self._trading[ticker] = trading

    def simulate(self, weights: Mapping[str, float], *, history_step: int = 0) -> PerformanceResult:
        """Run ``weights`` through the history.

        With ``history_step > 0`` the realised allocation is recorded every
        ``history_step`` periods and on the last one.
        """

        tickers = [t for t, w in weights.items() if w > 0 and t in self._filled]
        target = [float(weights[t]) for t in tickers]
        filled = [self._filled[t] for t in tickers]
        trading = [self._trading[t] for t in tickers]
        holdings = [0.0] * len(tickers)
        periods = self.data.periods
        states = self.schedule.states

        def invest(value: float, period: int) -> bool:
            priced = [filled[j][period] is not None for j in range(len(tickers))]
            total = sum(w for w, ok in zip(target, priced) if ok)
            if total <= 0:
                for j in range(len(holdings)):
                    holdings[j] = 0.0
                return False
            for j, ok in enumerate(priced):
                holdings[j] = value * target[j] / total / filled[j][period] if ok else 0.0
            return True

        values: List[float] = []
        previous = INITIAL_PORTFOLIO_VALUE
        history: Dict[int, Dict[str, float]] = {}
        invested = False
        window_sum = 0.0
        for i in range(periods):
            in_cash = states[i] is HedgeState.CASH
            if i in self.schedule.reentries:
                invested = invest(previous, i)

            if in_cash:
                value = previous
            else:
                if not invested:
                    invested = invest(previous, i)
                value = previous
                if invested:
                    total = 0.0
                    any_trading = False
                    for j, held in enumerate(holdings):
                        price = filled[j][i]
                        if held <= 0 or price is None:
                            continue
                        total += held * price
                        if trading[j][i]:
                            any_trading = True
                    if any_trading:
                        value = total

            if history_step > 0 and (i % history_step == 0 or i == periods - 1):
                history[i] = self._snapshot(tickers, holdings, filled, i, in_cash or not invested)

            values.append(value)
            previous = value
            window_sum += value
            if i >= DYNAMIC_REBALANCE_WINDOW:
                window_sum -= values[i - DYNAMIC_REBALANCE_WINDOW]

            if in_cash or not invested:
                continue
            if self.rebalance_mode is RebalanceMode.QUARTERLY:
                if i > 0 and i % QUARTERLY_REBALANCE_PERIODS == 0:
                    invest(value, i)
            elif self.rebalance_mode is RebalanceMode.DYNAMIC and i > DYNAMIC_REBALANCE_WINDOW:
                ma = window_sum / DYNAMIC_REBALANCE_WINDOW
                if ma and abs(value - ma) / ma > self.dynamic_threshold:
                    invest(value, i)

        return PerformanceResult(
            values=values,
            drawdowns=_drawdowns(values),
            smoothness=self.backend.r_squared(values),
            win_rate=_win_rate(values),
            cash_periods=list(self.schedule.cash_periods),
            allocation_history=history,
        )

    @staticmethod
    def _snapshot(
        tickers: Sequence[str],
        holdings: Sequence[float],
        filled: Sequence[Sequence[float | None]],
        period: int,
        idle: bool,
    ) -> Dict[str, float]:
        """Fractions of the marked holdings value; all ``CASH`` while hedged or not yet invested."""

        if idle:
            snapshot = {ticker: 0.0 for ticker in tickers}
            snapshot["CASH"] = 1.0
            return snapshot
        marked = {}
        for j, ticker in enumerate(tickers):
            price = filled[j][period]
            if holdings[j] > 0 and price is not None:
                marked[ticker] = holdings[j] * price
        total = sum(marked.values())
        return {ticker: amount / total for ticker, amount in marked.items()} if total > 0 else marked


def _drawdowns(values: Sequence[float]) -> List[float]:
    peak = INITIAL_PORTFOLIO_VALUE
    drawdowns: List[float] = []
    for value in values:
        if value > peak:
            peak = value
        drawdowns.append((value - peak) / peak * 100 if peak != 0 else 0.0)
    return drawdowns


def _win_rate(values: Sequence[float]) -> float:
    if len(values) < 2:
        return 0.0
    wins = sum(1 for i in range(1, len(values)) if values[i] > values[i - 1])
    return wins / (len(values) - 1)
