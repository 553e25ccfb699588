"""Configuration primitives for the portfolio search engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Mapping

from .defaults import DEFAULT_SEARCH_CONTROLS

__all__ = [
    "RebalanceMode",
    "SearchAlgorithm",
    "ReentryStrategy",
    "HedgeConfig",
    "PriorityStockConfig",
    "OptimizationSettings",
    "EngineConfig",
]

CONTROLS = DEFAULT_SEARCH_CONTROLS


class RebalanceMode(str, Enum):
    NONE = "none"
    QUARTERLY = "quarterly"
    DYNAMIC = "dynamic"


class SearchAlgorithm(str, Enum):
    GENETIC = "genetic"
    MONTE_CARLO = "monte_carlo"
    GRID = "grid"

    @classmethod
    def parse(cls, value: str | "SearchAlgorithm" | None) -> "SearchAlgorithm":
        if isinstance(value, cls):
            return value
        key = (value or "").strip().lower().replace("-", "_")
        if key in {"", "random", "montecarlo", "monte_carlo", "mc"}:
            return cls.MONTE_CARLO
        return cls(key)


class ReentryStrategy(str, Enum):
    GOLDEN_CROSS = "golden_cross"
    SHORT_MA_REBOUND = "short_ma_rebound"


@dataclass(frozen=True, slots=True)
class HedgeConfig:
    """Moving-average hedge: flatten to cash on a bearish crossover of the signal series."""

    enabled: bool = False
    short_ma_period: int = 20
    long_ma_period: int = 60
    reentry_strategy: ReentryStrategy = ReentryStrategy.GOLDEN_CROSS
    signal_ticker: str | None = None  # None -> equal-weighted average of every ticker

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> "HedgeConfig":
        if not payload:
            return cls()
        return cls(
            enabled=_flag(payload.get("enabled", False), "enabled"),
            short_ma_period=int(_pick(payload, "shortMAPeriod", "short_ma_period", default=20)),
            long_ma_period=int(_pick(payload, "longMAPeriod", "long_ma_period", default=60)),
            reentry_strategy=ReentryStrategy(
                _pick(payload, "reentryStrategy", "reentry_strategy", default="golden_cross")
            ),
            signal_ticker=_pick(payload, "signalTicker", "signal_ticker", default=None) or None,
        )


@dataclass(frozen=True, slots=True)
class PriorityStockConfig:
    """Optional ticker whose weight is drawn first, inside its own band."""

    ticker: str | None = None
    min_weight: float = 0.05
    max_weight: float = 0.20

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> "PriorityStockConfig":
        if not payload:
            return cls()
        return cls(
            ticker=payload.get("ticker") or None,
            min_weight=float(_pick(payload, "minWeight", "min_weight", default=0.05)),
            max_weight=float(_pick(payload, "maxWeight", "max_weight", default=0.20)),
        )


@dataclass(frozen=True, slots=True)
class OptimizationSettings:
    """Immutable inputs for one optimization run."""

    simulations: int = CONTROLS.simulations
    max_stocks: int = 10
    max_weight: float = 0.40
    min_weight: float = 0.05
    strict_mode: bool = False
    cagr_threshold: float = 0.0
    sharpe_threshold: float = 0.0
    max_dd_threshold: float = 0.60
    target_cagr: float = 0.25
    rebalance_mode: RebalanceMode = RebalanceMode.QUARTERLY
    dynamic_rebalance_threshold: float = 0.20
    objective: str = CONTROLS.objective
    algorithm: SearchAlgorithm = SearchAlgorithm.GENETIC
    priority_stock: PriorityStockConfig = field(default_factory=PriorityStockConfig)
    hedge: HedgeConfig = field(default_factory=HedgeConfig)
    user_portfolio: Mapping[str, float] | None = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "OptimizationSettings":
        """Build settings from either the camelCase wire contract or snake_case keys."""

        defaults = cls()
        user_portfolio = _pick(payload, "userPortfolio", "user_portfolio", default=None)
        settings = cls(
            simulations=int(_pick(payload, "simulations", default=defaults.simulations)),
            max_stocks=int(_pick(payload, "maxStocks", "max_stocks", default=defaults.max_stocks)),
            max_weight=float(_pick(payload, "maxWeight", "max_weight", default=defaults.max_weight)),
            min_weight=float(_pick(payload, "minWeight", "min_weight", default=defaults.min_weight)),
            strict_mode=_flag(
                _pick(payload, "strictMode", "strict_mode", default=defaults.strict_mode), "strictMode"
            ),
            cagr_threshold=float(_pick(payload, "cagrThreshold", "cagr_threshold", default=defaults.cagr_threshold)),
            sharpe_threshold=float(
                _pick(payload, "sharpeThreshold", "sharpe_threshold", default=defaults.sharpe_threshold)
            ),
            max_dd_threshold=float(
                _pick(payload, "maxDDThreshold", "max_dd_threshold", default=defaults.max_dd_threshold)
            ),
            target_cagr=float(_pick(payload, "targetCAGR", "target_cagr", default=defaults.target_cagr)),
            rebalance_mode=RebalanceMode(
                _pick(payload, "rebalanceMode", "rebalance_mode", default=defaults.rebalance_mode.value)
            ),
            dynamic_rebalance_threshold=float(
                _pick(
                    payload,
                    "dynamicRebalanceThreshold",
                    "dynamic_rebalance_threshold",
                    default=defaults.dynamic_rebalance_threshold,
                )
            ),
            objective=str(_pick(payload, "optimizeTarget", "objective", default=defaults.objective)),
            algorithm=SearchAlgorithm.parse(
                _pick(payload, "optimizationAlgorithm", "algorithm", default=defaults.algorithm.value)
            ),
            priority_stock=PriorityStockConfig.from_dict(
                _pick(payload, "priorityStockConfig", "priority_stock", default=None)
            ),
            hedge=HedgeConfig.from_dict(_pick(payload, "hedgeConfig", "hedge", default=None)),
            user_portfolio={str(k): float(v) for k, v in user_portfolio.items()} if user_portfolio else None,
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.simulations < 1:
            raise ValueError("simulations must be at least 1")
        if self.max_stocks < 1:
            raise ValueError("max_stocks must be at least 1")
        for label, value in (("min_weight", self.min_weight), ("max_weight", self.max_weight)):
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{label} must be a fraction in [0, 1], got {value}")
        if self.min_weight > self.max_weight:
            raise ValueError("min_weight must not exceed max_weight")
        if self.dynamic_rebalance_threshold < 0:
            raise ValueError("dynamic_rebalance_threshold must be non-negative")
        if self.hedge.enabled and (self.hedge.short_ma_period < 1 or self.hedge.long_ma_period < 1):
            raise ValueError("Hedge moving-average periods must be at least 1")

    def with_budget(self, simulations: int) -> "OptimizationSettings":
        return replace(self, simulations=simulations)

    @property
    def has_user_portfolio(self) -> bool:
        return bool(self.user_portfolio)


@dataclass(frozen=True, slots=True)
class EngineConfig:
    """Process-level knobs for the parallel orchestrator."""

    max_workers: int = CONTROLS.max_workers
    start_method: str | None = None
    report_every: int = CONTROLS.report_every
    scatter_window: int = CONTROLS.scatter_window
    backend: str = CONTROLS.backend
    poll_interval: float = 0.2

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Build an engine config using environment hints with sane defaults."""

        return cls(
            max_workers=int(os.getenv("PORTFOLIO_SEARCH_MAX_WORKERS", str(CONTROLS.max_workers))),
            start_method=os.getenv("PORTFOLIO_SEARCH_START_METHOD") or None,
            report_every=int(os.getenv("PORTFOLIO_SEARCH_REPORT_EVERY", str(CONTROLS.report_every))),
            scatter_window=int(os.getenv("PORTFOLIO_SEARCH_SCATTER_WINDOW", str(CONTROLS.scatter_window))),
            backend=os.getenv("PORTFOLIO_SEARCH_BACKEND", CONTROLS.backend),
        )

    def resolve_worker_count(self, simulations: int) -> int:
        cpu_total = max(1, int(os.cpu_count() or 1))
        return max(1, min(cpu_total, self.max_workers, simulations))


def _pick(payload: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return default


_TRUE_STRINGS = frozenset({"true", "1", "yes", "on"})
_FALSE_STRINGS = frozenset({"false", "0", "no", "off", ""})


def _flag(value: Any, name: str) -> bool:
    """Boolean from JSON or environment text; ``"false"`` is False."""

    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
        raise ValueError(f"{name} must be a boolean, got {value!r}")
    return bool(value)
