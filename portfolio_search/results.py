"""Result and progress containers exchanged between workers, the orchestrator and callers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Sequence

from .metrics import CyclePosition, Metrics, MonthlyReturn, RotationTrail
from .simulator import CashPeriod

__all__ = [
    "PortfolioCandidate",
    "ScatterPoint",
    "ProgressKind",
    "ProgressUpdate",
    "OptimizationResult",
]


@dataclass(slots=True)
class PortfolioCandidate:
    """One evaluated weight vector with everything derived from it."""

    weights: Dict[str, float]
    metrics: Metrics
    score: float
    valid: bool = True
    disqualified: bool = False
    reason: str | None = None
    components: Dict[str, float] = field(default_factory=dict)
    values: List[float] = field(default_factory=list)
    drawdowns: List[float] = field(default_factory=list)
    cash_periods: List[CashPeriod] = field(default_factory=list)

    def to_scatter(self, label: str | None = None) -> "ScatterPoint":
        return ScatterPoint(
            x=self.metrics.max_dd,
            y=self.metrics.cagr,
            weights=dict(self.weights),
            metrics=self.metrics,
            score=self.score,
            label=label,
        )

    def summary(self) -> Mapping[str, object]:
        return {
            "weights": dict(self.weights),
            "score": self.score,
            "valid": self.valid,
            "metrics": self.metrics.as_dict(),
            "components": dict(self.components),
            "cash_periods": [[period.start, period.end] for period in self.cash_periods],
        }


@dataclass(slots=True)
class ScatterPoint:
    """A (drawdown, return) sample of the explored search space."""

    x: float
    y: float
    weights: Dict[str, float]
    metrics: Metrics | None = None
    score: float | None = None
    label: str | None = None

    def as_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {"x": self.x, "y": self.y, "weights": dict(self.weights)}
        if self.score is not None:
            payload["score"] = self.score
        if self.label is not None:
            payload["label"] = self.label
        return payload


class ProgressKind(str, Enum):
    PROGRESS = "progress"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass(slots=True)
class ProgressUpdate:
    """Incremental message; worker updates carry deltas, merged updates carry totals."""

    kind: ProgressKind
    worker_id: int | None = None
    sim_count: int = 0
    valid_count: int = 0
    best_score: float | None = None
    best_candidate: PortfolioCandidate | None = None
    scatter_chunk: List[ScatterPoint] = field(default_factory=list)
    progress: float = 0.0
    message: str | None = None
    cancelled: bool = False
    result: "OptimizationResult | None" = None

    @property
    def is_terminal(self) -> bool:
        return self.kind is not ProgressKind.PROGRESS


@dataclass(slots=True)
class OptimizationResult:
    """Final payload of a completed run."""

    best: PortfolioCandidate
    stock_metrics: Dict[str, Metrics] = field(default_factory=dict)
    monthly_returns: List[MonthlyReturn] = field(default_factory=list)
    correlation_matrix: List[List[float]] = field(default_factory=list)
    correlation_tickers: Sequence[str] = field(default_factory=tuple)
    scatter: List[ScatterPoint] = field(default_factory=list)
    user_portfolio_result: ScatterPoint | None = None
    total_simulations: int = 0
    valid_simulations: int = 0
    asset_rotation: Dict[str, RotationTrail] = field(default_factory=dict)
    cycle_positions: List[CyclePosition] = field(default_factory=list)
    allocation_history: Dict[int, Dict[str, float]] = field(default_factory=dict)

    @property
    def weights(self) -> Dict[str, float]:
        return self.best.weights

    @property
    def score(self) -> float:
        return self.best.score

    def to_report(self, *, include_series: bool = False) -> Dict[str, object]:
        report: Dict[str, object] = {
            "best": self.best.summary(),
            "total_simulations": self.total_simulations,
            "valid_simulations": self.valid_simulations,
            "stock_metrics": {ticker: metrics.as_dict() for ticker, metrics in self.stock_metrics.items()},
            "monthly_returns": [
                {"year": entry.year, "month": entry.month, "value": entry.value} for entry in self.monthly_returns
            ],
            "correlation": {
                "tickers": list(self.correlation_tickers),
                "matrix": self.correlation_matrix,
            },
            "scatter_points": len(self.scatter),
            "asset_rotation": {ticker: trail.as_dict() for ticker, trail in self.asset_rotation.items()},
            "cycle_positions": [position.as_dict() for position in self.cycle_positions],
        }
        if self.user_portfolio_result is not None:
            report["user_portfolio"] = self.user_portfolio_result.as_dict()
        if include_series:
            report["values"] = list(self.best.values)
            report["drawdowns"] = list(self.best.drawdowns)
            report["allocation_history"] = {
                str(index): dict(snapshot) for index, snapshot in sorted(self.allocation_history.items())
            }
        return report
