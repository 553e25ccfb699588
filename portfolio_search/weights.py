"""Candidate weight generation, genetic operators and constraint repair."""

from __future__ import annotations

import math
import random
from dataclasses import dataclass, field
from typing import Dict, Mapping, MutableMapping, Sequence

from .config import OptimizationSettings, PriorityStockConfig

__all__ = [
    "WeightVector",
    "repair_weights",
    "generate_random_weights",
    "generate_discrete_weights",
    "mutate_weights",
    "crossover_weights",
    "WeightSpace",
]

WeightVector = Dict[str, float]

GRID_STEP = 0.05
GRID_STEPS = 20
MIN_CROSSOVER_WEIGHT = 0.001
_TOLERANCE = 1e-9


def _settle_residual(weights: MutableMapping[str, float], min_weight: float, max_weight: float) -> None:
    """Push any leftover sum error onto the tickers that still have room inside their bounds."""

    residual = 1.0 - sum(weights.values())
    if abs(residual) <= _TOLERANCE:
        return
    if residual > 0:
        room = {t: max_weight - w for t, w in weights.items() if w < max_weight - _TOLERANCE}
    else:
        room = {t: w - min_weight for t, w in weights.items() if w > min_weight + _TOLERANCE}
    available = sum(room.values())
    if available + _TOLERANCE < abs(residual):
        # Bounds cannot be met by this ticker set; fall back to plain renormalisation.
        total = sum(weights.values())
        for ticker in weights:
            weights[ticker] /= total
        return
    for ticker, slack in room.items():
        weights[ticker] += residual * slack / available


def repair_weights(
    weights: Mapping[str, float],
    max_weight: float,
    min_weight: float = 0.0,
    *,
    max_passes: int = 20,
) -> WeightVector:
    """Return a feasible copy of ``weights``: sums to 1, every active weight within bounds.

    Non-positive entries are dropped. Each pass clamps out-of-bound weights,
    pins them, and spreads the surplus or deficit proportionally over the
    remaining adjustable tickers. If the bounds are infeasible for the active
    ticker count the result is simply renormalised.
    """

    active = {t: float(w) for t, w in weights.items() if w is not None and math.isfinite(w) and w > 0}
    total = sum(active.values())
    if total <= 0:
        return {}
    repaired = {t: w / total for t, w in active.items()}

    pinned: set[str] = set()
    for _ in range(max_passes):
        surplus = 0.0
        deficit = 0.0
        adjustable: list[str] = []
        for ticker, weight in repaired.items():
            if ticker in pinned:
                continue
            if weight > max_weight + _TOLERANCE:
                surplus += weight - max_weight
                repaired[ticker] = max_weight
                pinned.add(ticker)
            elif weight < min_weight - _TOLERANCE:
                deficit += min_weight - weight
                repaired[ticker] = min_weight
                pinned.add(ticker)
            else:
                adjustable.append(ticker)

        if surplus == 0.0 and deficit == 0.0:
            break
        net_change = surplus - deficit
        adjustable_total = sum(repaired[t] for t in adjustable)
        if not adjustable or adjustable_total <= 0:
            break
        for ticker in adjustable:
            repaired[ticker] += net_change * repaired[ticker] / adjustable_total

    _settle_residual(repaired, min_weight, max_weight)
    return {t: w for t, w in repaired.items() if w > 0}


def _remaining_slots(settings: OptimizationSettings, taken: int, remaining: float, rng: random.Random) -> int:
    """Ticker count to draw: all free slots in strict mode, else a random count able to absorb ``remaining``."""

    slots = settings.max_stocks - taken
    if slots <= 0:
        return 0
    if settings.strict_mode:
        return slots
    fewest = math.ceil(remaining / settings.max_weight - _TOLERANCE) if settings.max_weight > 0 else slots
    return rng.randint(min(slots, max(1, fewest)), slots)


def _priority_band(priority: PriorityStockConfig, settings: OptimizationSettings) -> tuple[float, float]:
    return max(priority.min_weight, settings.min_weight), min(priority.max_weight, settings.max_weight)


def generate_random_weights(
    settings: OptimizationSettings,
    tickers: Sequence[str],
    rng: random.Random,
) -> WeightVector:
    """Draw a random feasible weight vector over a random subset of ``tickers``."""

    weights: WeightVector = {}
    remaining = 1.0
    pool = list(tickers)
    priority = settings.priority_stock

    if priority.ticker and priority.ticker in pool:
        low, high = _priority_band(priority, settings)
        if high >= low:
            weights[priority.ticker] = rng.uniform(low, high)
            remaining -= weights[priority.ticker]
            pool.remove(priority.ticker)

    if remaining <= 0:
        return repair_weights(weights, settings.max_weight, settings.min_weight)

    count = min(_remaining_slots(settings, len(weights), remaining, rng), len(pool))
    if count <= 0:
        return repair_weights(weights, settings.max_weight, settings.min_weight)

    selected = rng.sample(pool, count)
    draws = [rng.random() for _ in selected]
    draw_total = sum(draws) or 1.0
    floor_needed = count * settings.min_weight
    if remaining >= floor_needed:
        spread = remaining - floor_needed
        for ticker, draw in zip(selected, draws):
            weights[ticker] = settings.min_weight + draw / draw_total * spread
    else:
        for ticker, draw in zip(selected, draws):
            weights[ticker] = draw / draw_total * remaining

    return repair_weights(weights, settings.max_weight, settings.min_weight)


def generate_discrete_weights(
    settings: OptimizationSettings,
    tickers: Sequence[str],
    rng: random.Random,
) -> WeightVector:
    """Like ``generate_random_weights`` but quantised to 5% steps."""

    weights: WeightVector = {}
    remaining_steps = GRID_STEPS
    pool = list(tickers)
    priority = settings.priority_stock

    if priority.ticker and priority.ticker in pool:
        min_steps = math.ceil(max(priority.min_weight, settings.min_weight) / GRID_STEP - _TOLERANCE)
        max_steps = min(
            math.floor(priority.max_weight / GRID_STEP + _TOLERANCE),
            math.floor(settings.max_weight / GRID_STEP + _TOLERANCE),
        )
        if max_steps >= min_steps:
            steps = rng.randint(min_steps, max_steps)
            weights[priority.ticker] = steps * GRID_STEP
            remaining_steps -= steps
            pool.remove(priority.ticker)

    if remaining_steps <= 0:
        return repair_weights(weights, settings.max_weight, settings.min_weight)

    count = min(_remaining_slots(settings, len(weights), remaining_steps * GRID_STEP, rng), len(pool))
    if count <= 0:
        return repair_weights(weights, settings.max_weight, settings.min_weight)
    selected = rng.sample(pool, count)

    floor_steps = math.ceil(settings.min_weight / GRID_STEP - _TOLERANCE)
    if floor_steps > 0 and remaining_steps >= count * floor_steps:
        for ticker in selected:
            weights[ticker] = floor_steps * GRID_STEP
            remaining_steps -= floor_steps
    else:
        for ticker in selected:
            if remaining_steps > 0:
                weights[ticker] = GRID_STEP
                remaining_steps -= 1

    growable = [t for t in selected if t in weights]
    while remaining_steps > 0 and growable:
        ticker = rng.choice(growable)
        if weights[ticker] + GRID_STEP <= settings.max_weight + 0.0001:
            weights[ticker] += GRID_STEP
            remaining_steps -= 1
        else:
            growable.remove(ticker)

    rounded = {t: round(w, 2) for t, w in weights.items()}
    return repair_weights(rounded, settings.max_weight, settings.min_weight)


def mutate_weights(
    weights: Mapping[str, float],
    settings: OptimizationSettings,
    rng: random.Random,
    *,
    rate: float = 0.2,
    swap_amount: float = 0.05,
) -> WeightVector:
    """With probability ``rate`` either shift weight between two tickers or reset one ticker."""

    mutated = dict(weights)
    tickers = list(mutated)
    if tickers and rng.random() < rate:
        if rng.random() < 0.5 and len(tickers) > 1:
            source, sink = rng.sample(tickers, 2)
            amount = rng.random() * swap_amount
            mutated[source] -= amount
            mutated[sink] += amount
        else:
            ticker = rng.choice(tickers)
            mutated[ticker] = rng.uniform(settings.min_weight, settings.max_weight)
    return repair_weights(mutated, settings.max_weight, settings.min_weight)


def crossover_weights(
    parent_a: Mapping[str, float],
    parent_b: Mapping[str, float],
    settings: OptimizationSettings,
    rng: random.Random,
    *,
    jitter: float = 0.1,
) -> WeightVector:
    """Average the parents over the union of their tickers with a small random multiplier."""

    child: WeightVector = {}
    for ticker in dict.fromkeys([*parent_a, *parent_b]):
        weight = (parent_a.get(ticker, 0.0) + parent_b.get(ticker, 0.0)) / 2
        weight *= 1 - jitter + rng.random() * 2 * jitter
        if weight > MIN_CROSSOVER_WEIGHT:
            child[ticker] = weight

    if len(child) > settings.max_stocks:
        kept = sorted(child, key=child.__getitem__, reverse=True)[: settings.max_stocks]
        child = {ticker: child[ticker] for ticker in kept}
    return repair_weights(child, settings.max_weight, settings.min_weight)


@dataclass(slots=True)
class WeightSpace:
    """Binds the weight constraints of a run to the tickers usable in it."""

    settings: OptimizationSettings
    tickers: Sequence[str] = field(default_factory=tuple)

    def sample(self, rng: random.Random) -> WeightVector:
        return generate_random_weights(self.settings, self.tickers, rng)

    def sample_discrete(self, rng: random.Random) -> WeightVector:
        return generate_discrete_weights(self.settings, self.tickers, rng)

    def repair(self, weights: Mapping[str, float]) -> WeightVector:
        return repair_weights(weights, self.settings.max_weight, self.settings.min_weight)

    def restrict(self, weights: Mapping[str, float]) -> WeightVector:
        """Drop tickers outside the usable universe, then repair."""

        return self.repair({t: w for t, w in weights.items() if t in self.tickers})
