from __future__ import annotations

import random

import numpy as np
import pandas as pd
import pytest

from portfolio_search.config import OptimizationSettings, SearchAlgorithm
from portfolio_search.data_loader import StockData
from portfolio_search.evaluator import USER_PORTFOLIO_LABEL, PortfolioEvaluator
from portfolio_search.results import ProgressKind
from portfolio_search.search import (
    GeneticParameters,
    GeneticSearch,
    GridSearch,
    MonteCarloSearch,
    build_search_engine,
)
from portfolio_search.worker import SearchWorker


def _make_stock_data(
    drifts: dict[str, float],
    *,
    vols: dict[str, float] | None = None,
    periods: int = 252,
    seed: int = 0,
) -> StockData:
    rng = np.random.default_rng(seed)
    dates = tuple(ts.strftime("%Y-%m-%d") for ts in pd.bdate_range("2022-01-03", periods=periods))
    price_data = {}
    for ticker, drift in drifts.items():
        vol = (vols or {}).get(ticker, 0.0)
        steps = drift + rng.normal(0.0, vol, periods) if vol else np.full(periods, drift)
        steps[0] = 0.0
        price_data[ticker] = tuple((100.0 * np.exp(np.cumsum(steps))).tolist())
    return StockData(tickers=tuple(drifts), dates=dates, price_data=price_data)


def _make_settings(**overrides) -> OptimizationSettings:
    payload = {
        "simulations": 120,
        "maxStocks": 3,
        "minWeight": 0.0,
        "maxWeight": 1.0,
        "strictMode": True,
        "rebalanceMode": "none",
        "optimizeTarget": "cagr",
    }
    payload.update(overrides)
    return OptimizationSettings.from_dict(payload)


DRIFTS = {"A": 0.001, "B": 0.0005, "C": 0.0002}


def _drain(engine) -> list:
    return list(engine.run())


def test_population_sizing() -> None:
    params = GeneticParameters()
    assert params.population_size(50_000) == 500
    assert params.population_size(1_000) == 200
    assert params.population_size(3) == 2
    assert params.elite_count(200) == 10
    assert params.elite_count(10) == 1


@pytest.mark.parametrize("engine_cls", [MonteCarloSearch, GridSearch, GeneticSearch])
def test_engines_spend_exactly_their_budget(engine_cls) -> None:
    settings = _make_settings(simulations=57)
    evaluator = PortfolioEvaluator(_make_stock_data(DRIFTS), settings)
    engine = engine_cls(evaluator, settings, rng=random.Random(4), report_every=10)
    updates = _drain(engine)

    assert all(update.kind is ProgressKind.PROGRESS for update in updates)
    assert sum(update.sim_count for update in updates) == 57
    assert engine.simulations == 57
    assert sum(update.valid_count for update in updates) == engine.valid_count
    assert updates[-1].progress == pytest.approx(1.0)
    # The running best travels only when it changed since the last report.
    announced = [update.best_candidate for update in updates if update.best_candidate is not None]
    assert announced and announced[-1] is engine.best


def test_monte_carlo_samples_every_twentieth_candidate_for_the_scatter() -> None:
    settings = _make_settings(simulations=100, optimizationAlgorithm="monte_carlo")
    evaluator = PortfolioEvaluator(_make_stock_data(DRIFTS), settings)
    engine = build_search_engine(evaluator, settings, rng=random.Random(1), report_every=1_000)
    assert isinstance(engine, MonteCarloSearch)
    updates = _drain(engine)
    scatter = [point for update in updates for point in update.scatter_chunk]
    assert len(scatter) == 5


def test_grid_search_draws_five_percent_steps() -> None:
    settings = _make_settings(simulations=40, optimizationAlgorithm="grid", minWeight=0.05, maxWeight=0.6)
    evaluator = PortfolioEvaluator(_make_stock_data(DRIFTS), settings)
    engine = build_search_engine(evaluator, settings, rng=random.Random(2))
    assert isinstance(engine, GridSearch)
    _drain(engine)
    for weight in engine.best.weights.values():
        assert round(weight / 0.05) * 0.05 == pytest.approx(weight, abs=1e-9)


def test_genetic_search_prefers_the_fastest_grower() -> None:
    settings = _make_settings(simulations=600, optimizationAlgorithm="genetic")
    evaluator = PortfolioEvaluator(_make_stock_data(DRIFTS), settings)
    engine = build_search_engine(evaluator, settings, rng=random.Random(7))
    assert isinstance(engine, GeneticSearch)
    _drain(engine)
    assert engine.generation >= 1
    assert engine.best is not None and engine.best.valid
    assert engine.best.weights.get("A", 0.0) > 0.6


def test_genetic_search_seeds_the_user_portfolio() -> None:
    settings = _make_settings(simulations=40, userPortfolio={"A": 1.0, "ZZZ": 1.0})
    evaluator = PortfolioEvaluator(_make_stock_data(DRIFTS), settings)
    engine = GeneticSearch(evaluator, settings, rng=random.Random(3))
    _drain(engine)
    # Holding only the fastest grower is the best possible portfolio here.
    assert engine.best.weights == {"A": pytest.approx(1.0)}


def test_genetic_seed_goes_through_the_user_portfolio_evaluation() -> None:
    settings = _make_settings(simulations=20, userPortfolio={"B": 2.0, "ZZZ": 1.0})
    evaluator = PortfolioEvaluator(_make_stock_data(DRIFTS), settings)
    seen = []
    original = evaluator.evaluate_user_portfolio

    def recording(weights):
        seen.append(dict(weights))
        return original(weights)

    evaluator.evaluate_user_portfolio = recording
    engine = GeneticSearch(evaluator, settings, rng=random.Random(3))
    _drain(engine)
    assert seen == [{"B": 2.0, "ZZZ": 1.0}]
    assert engine.simulations == 20


def test_lower_is_better_objectives_keep_the_lowest_score() -> None:
    settings = _make_settings(simulations=80, optimizeTarget="min_dd", optimizationAlgorithm="monte_carlo")
    data = _make_stock_data(DRIFTS, vols={"A": 0.02, "B": 0.01, "C": 0.001}, seed=5)
    evaluator = PortfolioEvaluator(data, settings)
    engine = MonteCarloSearch(evaluator, settings, rng=random.Random(9), report_every=1)
    scores = []
    original = engine._evaluate

    def recording(weights, *, sample=False):
        candidate = original(weights, sample=sample)
        if candidate is not None and candidate.valid:
            scores.append(candidate.score)
        return candidate

    engine._evaluate = recording
    _drain(engine)
    assert engine.best.score == pytest.approx(min(scores))


def test_thresholds_mark_candidates_invalid_without_dropping_them() -> None:
    settings = _make_settings(simulations=30, cagrThreshold=5.0, optimizationAlgorithm="monte_carlo")
    evaluator = PortfolioEvaluator(_make_stock_data(DRIFTS), settings)
    engine = MonteCarloSearch(evaluator, settings, rng=random.Random(0))
    _drain(engine)
    assert engine.valid_count == 0
    assert engine.best is not None
    assert not engine.best.valid


def test_evaluator_skips_unusable_tickers_and_labels_the_benchmark() -> None:
    data = _make_stock_data(DRIFTS)
    price_data = dict(data.price_data)
    price_data["D"] = (None,) * data.periods
    data = StockData(tickers=data.tickers + ("D",), dates=data.dates, price_data=price_data)
    settings = _make_settings(rebalanceMode="dynamic", hedgeConfig={"enabled": True})
    evaluator = PortfolioEvaluator(data, settings)

    assert evaluator.usable_tickers == ("A", "B", "C")
    assert evaluator.evaluate({}) is None
    assert evaluator.evaluate_user_portfolio({"D": 1.0}) is None

    point = evaluator.evaluate_benchmark({"A": 0.5, "B": 0.5, "D": 1.0})
    assert point is not None
    assert point.label == USER_PORTFOLIO_LABEL
    assert point.weights == {"A": 0.5, "B": 0.5}
    assert point.y == pytest.approx(evaluator.evaluate({"A": 0.5, "B": 0.5}).metrics.cagr, rel=0.05)


def test_worker_reports_missing_history_as_an_error() -> None:
    data = StockData(tickers=("A",), dates=("2024-01-02", "2024-01-03"), price_data={"A": (None, None)})
    updates = list(SearchWorker(0, data, seed=1).run(_make_settings(simulations=5)))
    assert len(updates) == 1
    assert updates[0].kind is ProgressKind.ERROR
    assert "price history" in updates[0].message


def test_worker_ends_with_a_single_complete_update() -> None:
    updates = list(SearchWorker(3, _make_stock_data(DRIFTS), seed=1, report_every=7).run(_make_settings(simulations=20)))
    assert [u.kind for u in updates].count(ProgressKind.COMPLETE) == 1
    assert updates[-1].kind is ProgressKind.COMPLETE
    assert all(u.worker_id == 3 for u in updates)
    assert sum(u.sim_count for u in updates) == 20


def test_settings_parse_algorithm_aliases() -> None:
    assert SearchAlgorithm.parse("Monte-Carlo") is SearchAlgorithm.MONTE_CARLO
    assert SearchAlgorithm.parse(None) is SearchAlgorithm.MONTE_CARLO
    assert SearchAlgorithm.parse("grid") is SearchAlgorithm.GRID
