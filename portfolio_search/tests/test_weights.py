from __future__ import annotations

import math
import random

import pytest

from portfolio_search.config import OptimizationSettings, PriorityStockConfig
from portfolio_search.weights import (
    WeightSpace,
    crossover_weights,
    generate_discrete_weights,
    generate_random_weights,
    mutate_weights,
    repair_weights,
)

TICKERS = tuple(f"T{i:02d}" for i in range(12))


def _random_case(seed: int) -> tuple[dict[str, float], float, float]:
    rng = random.Random(seed)
    count = rng.randint(1, 8)
    min_weight = rng.uniform(0.0, 1.0 / count)
    max_weight = rng.uniform(max(min_weight, 1.0 / count), 1.0)
    weights = {TICKERS[i]: rng.uniform(0.0, 1.0) ** rng.choice((1, 3)) + 1e-6 for i in range(count)}
    return weights, min_weight, max_weight


def _assert_feasible(weights: dict[str, float], min_weight: float, max_weight: float) -> None:
    assert sum(weights.values()) == pytest.approx(1.0, abs=1e-6)
    for weight in weights.values():
        assert min_weight - 1e-6 <= weight <= max_weight + 1e-6


@pytest.mark.parametrize("seed", range(40))
def test_repair_meets_bounds_whenever_feasible(seed: int) -> None:
    weights, min_weight, max_weight = _random_case(seed)
    repaired = repair_weights(weights, max_weight, min_weight)
    _assert_feasible(repaired, min_weight, max_weight)


def test_repair_handles_single_dominant_weight() -> None:
    repaired = repair_weights({"A": 50.0, "B": 1.0, "C": 1.0, "D": 1.0}, max_weight=0.4, min_weight=0.1)
    _assert_feasible(repaired, 0.1, 0.4)
    assert repaired["A"] == pytest.approx(0.4)


def test_repair_drops_non_positive_and_non_finite_weights() -> None:
    repaired = repair_weights({"A": 0.5, "B": 0.0, "C": -1.0, "D": math.nan, "E": 0.5}, max_weight=1.0)
    assert set(repaired) == {"A", "E"}
    assert repaired["A"] == pytest.approx(0.5)


def test_repair_falls_back_to_renormalising_infeasible_bounds() -> None:
    # Two tickers can never reach 100% with a 30% cap.
    repaired = repair_weights({"A": 0.7, "B": 0.3}, max_weight=0.3, min_weight=0.0)
    assert sum(repaired.values()) == pytest.approx(1.0)


def test_repair_of_empty_map_is_empty() -> None:
    assert repair_weights({}, max_weight=0.5) == {}


def test_strict_generator_uses_exact_cardinality_within_bounds() -> None:
    settings = OptimizationSettings(max_stocks=5, min_weight=0.05, max_weight=0.4, strict_mode=True)
    rng = random.Random(3)
    for _ in range(200):
        weights = generate_random_weights(settings, TICKERS, rng)
        assert len(weights) == 5
        assert set(weights) <= set(TICKERS)
        _assert_feasible(weights, 0.05, 0.4)


def test_general_generator_stays_under_cardinality_bound() -> None:
    settings = OptimizationSettings(max_stocks=6, min_weight=0.05, max_weight=0.4, strict_mode=False)
    rng = random.Random(11)
    counts = set()
    for _ in range(300):
        weights = generate_random_weights(settings, TICKERS, rng)
        counts.add(len(weights))
        assert 1 <= len(weights) <= 6
        _assert_feasible(weights, 0.05, 0.4)
    # A 40% cap needs at least three tickers.
    assert min(counts) >= 3
    assert max(counts) == 6


def test_priority_ticker_is_always_held_inside_its_band() -> None:
    settings = OptimizationSettings(
        max_stocks=4,
        min_weight=0.0,
        max_weight=1.0,
        strict_mode=True,
        priority_stock=PriorityStockConfig(ticker="T05", min_weight=0.1, max_weight=0.2),
    )
    rng = random.Random(5)
    for _ in range(100):
        weights = generate_random_weights(settings, TICKERS, rng)
        assert 0.1 - 1e-9 <= weights["T05"] <= 0.2 + 1e-9
        assert len(weights) == 4


def test_discrete_generator_uses_five_percent_steps() -> None:
    settings = OptimizationSettings(max_stocks=4, min_weight=0.05, max_weight=0.5, strict_mode=True)
    rng = random.Random(8)
    for _ in range(100):
        weights = generate_discrete_weights(settings, TICKERS, rng)
        assert len(weights) == 4
        _assert_feasible(weights, 0.05, 0.5)
        for weight in weights.values():
            assert round(weight / 0.05) * 0.05 == pytest.approx(weight, abs=1e-9)


def test_mutation_and_crossover_keep_candidates_feasible() -> None:
    settings = OptimizationSettings(max_stocks=3, min_weight=0.1, max_weight=0.6)
    rng = random.Random(21)
    parent_a = {"T00": 0.5, "T01": 0.3, "T02": 0.2}
    parent_b = {"T03": 0.6, "T04": 0.3, "T05": 0.1}
    for _ in range(100):
        child = crossover_weights(parent_a, parent_b, settings, rng)
        assert len(child) <= 3
        _assert_feasible(child, 0.1, 0.6)
        mutated = mutate_weights(child, settings, rng, rate=1.0)
        assert set(mutated) <= set(child)
        _assert_feasible(mutated, 0.1, 0.6)


def test_crossover_keeps_the_heaviest_tickers_when_over_cardinality() -> None:
    settings = OptimizationSettings(max_stocks=2, min_weight=0.0, max_weight=1.0)
    child = crossover_weights(
        {"A": 0.7, "B": 0.2, "C": 0.1},
        {"A": 0.6, "B": 0.3, "D": 0.1},
        settings,
        random.Random(0),
        jitter=0.0,
    )
    assert set(child) == {"A", "B"}
    assert child["A"] == pytest.approx(0.65 / 0.9)


def test_weight_space_restrict_ignores_unknown_tickers() -> None:
    space = WeightSpace(OptimizationSettings(max_weight=1.0, min_weight=0.0), ("A", "B"))
    assert space.restrict({"A": 1.0, "ZZZ": 3.0}) == {"A": pytest.approx(1.0)}
    assert space.restrict({"ZZZ": 1.0}) == {}
