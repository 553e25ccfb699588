"""Canonical defaults shared by the CLI, the orchestrator and the search engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

__all__ = [
    "INITIAL_PORTFOLIO_VALUE",
    "TRADING_DAYS_PER_YEAR",
    "QUARTERLY_REBALANCE_PERIODS",
    "DYNAMIC_REBALANCE_WINDOW",
    "ALLOCATION_HISTORY_STEP",
    "SUPPORTED_OBJECTIVES",
    "SearchControls",
    "DEFAULT_SEARCH_CONTROLS",
]

# -- Simulation constants ---------------------------------------------------
# Every simulated portfolio starts at 100 so value series of different
# candidates can be compared and drawn on the same axis.
INITIAL_PORTFOLIO_VALUE: float = 100.0
TRADING_DAYS_PER_YEAR: int = 252
QUARTERLY_REBALANCE_PERIODS: int = 63
DYNAMIC_REBALANCE_WINDOW: int = 60
# Allocation snapshots of the winning portfolio are kept every fifth period.
ALLOCATION_HISTORY_STEP: int = 5

# -- Objectives ---------------------------------------------------------------
# Ordering matters when we print CLI help, so stick to tuples.
SUPPORTED_OBJECTIVES: Tuple[str, ...] = (
    "super_ai",
    "sharpe",
    "cagr",
    "calmar",
    "sortino",
    "min_dd",
    "smoothness",
    "winrate",
    "ultra_smooth_v1",
    "ultra_smooth",
    "ultra_smooth_v3",
    "super_ai_v2",
    "target_return_mindd",
    "target_return_smooth",
    "target_return_winrate",
)


@dataclass(slots=True)
class SearchControls:
    """Friendly knobs that act as the optimizer's control panel."""

    simulations: int
    objective: str
    algorithm: str
    max_workers: int
    report_every: int
    scatter_window: int
    backend: str

    def serialise_objectives(self) -> str:
        return ",".join(SUPPORTED_OBJECTIVES)


DEFAULT_SEARCH_CONTROLS = SearchControls(
    simulations=50_000,
    objective="super_ai",
    algorithm="genetic",
    max_workers=8,
    report_every=1_000,
    scatter_window=5_000,
    backend="numpy",
)
