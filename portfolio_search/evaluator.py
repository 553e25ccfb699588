"""Turns a weight vector into a scored ``PortfolioCandidate``."""

from __future__ import annotations

import logging
from typing import Dict, Mapping

from .config import HedgeConfig, OptimizationSettings, RebalanceMode
from .data_loader import StockData
from .kernels import ScoringBackend, resolve_backend
from .metrics import Metrics, calculate_metrics, calculate_stock_metrics, elapsed_years
from .results import PortfolioCandidate, ScatterPoint
from .scoring import Objective, ScoringContext, score_candidate
from .simulator import PerformanceSimulator
from .weights import WeightSpace

__all__ = ["PortfolioEvaluator", "USER_PORTFOLIO_LABEL"]

logger = logging.getLogger(__name__)

USER_PORTFOLIO_LABEL = "Original"


class PortfolioEvaluator:
    """Owns the per-run state needed to score candidates: calendar, usable tickers, simulator."""

    def __init__(
        self,
        stock_data: StockData,
        settings: OptimizationSettings,
        *,
        backend: str | ScoringBackend | None = None,
    ) -> None:
        self.stock_data = stock_data
        self.settings = settings
        self.backend = resolve_backend(backend)
        self.objective = Objective.parse(settings.objective, target_cagr=settings.target_cagr)
        self.years = elapsed_years(stock_data.dates, stock_data.periods)
        self.stock_metrics: Dict[str, Metrics] = calculate_stock_metrics(stock_data, years=self.years)
        unusable = [ticker for ticker in stock_data.tickers if ticker not in self.stock_metrics]
        if unusable:
            logger.warning("Skipping %d tickers with fewer than two valid prices: %s", len(unusable), unusable)
        self.space = WeightSpace(settings, tuple(t for t in stock_data.tickers if t in self.stock_metrics))
        self.simulator = PerformanceSimulator(
            stock_data,
            rebalance_mode=settings.rebalance_mode,
            hedge=settings.hedge,
            dynamic_threshold=settings.dynamic_rebalance_threshold,
            backend=self.backend,
        )
        self._benchmark_simulator: PerformanceSimulator | None = None

    @property
    def usable_tickers(self) -> tuple[str, ...]:
        return tuple(self.space.tickers)

    def passes_thresholds(self, metrics: Metrics) -> bool:
        return (
            metrics.cagr >= self.settings.cagr_threshold
            and metrics.max_dd <= self.settings.max_dd_threshold
            and metrics.sharpe >= self.settings.sharpe_threshold
        )

    def evaluate(
        self,
        weights: Mapping[str, float],
        *,
        simulator: PerformanceSimulator | None = None,
    ) -> PortfolioCandidate | None:
        """Simulate and score ``weights``; ``None`` when the run yields fewer than two values."""

        if not weights:
            return None
        performance = (simulator or self.simulator).simulate(weights)
        metrics = calculate_metrics(performance.values, years=self.years)
        if metrics is None:
            return None
        metrics.smoothness = performance.smoothness
        metrics.win_rate = performance.win_rate

        scored = score_candidate(
            self.objective,
            ScoringContext(values=performance.values, metrics=metrics, years=self.years),
            self.backend,
        )
        for name, value in scored.metric_updates.items():
            setattr(metrics, name, value)

        return PortfolioCandidate(
            weights=dict(weights),
            metrics=metrics,
            score=scored.score,
            valid=not scored.disqualified and self.passes_thresholds(metrics),
            disqualified=scored.disqualified,
            reason=scored.reason,
            components=scored.components,
            values=performance.values,
            drawdowns=performance.drawdowns,
            cash_periods=performance.cash_periods,
        )

    def evaluate_user_portfolio(self, weights: Mapping[str, float]) -> PortfolioCandidate | None:
        """Evaluate a caller-supplied portfolio under the run settings, restricted to usable tickers."""

        return self.evaluate(self.space.restrict(weights))

    def evaluate_benchmark(self, weights: Mapping[str, float]) -> ScatterPoint | None:
        """Evaluate ``weights`` as held, with quarterly rebalancing and no hedge, as a labelled scatter point."""

        if self._benchmark_simulator is None:
            self._benchmark_simulator = PerformanceSimulator(
                self.stock_data,
                rebalance_mode=RebalanceMode.QUARTERLY,
                hedge=HedgeConfig(enabled=False),
                dynamic_threshold=0.0,
                backend=self.backend,
            )
        held = {t: float(w) for t, w in weights.items() if t in self.space.tickers and w > 0}
        candidate = self.evaluate(held, simulator=self._benchmark_simulator)
        if candidate is None:
            logger.warning("User portfolio %s could not be evaluated", dict(weights))
            return None
        return candidate.to_scatter(label=USER_PORTFOLIO_LABEL)
