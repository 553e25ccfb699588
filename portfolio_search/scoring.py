"""Objective functions that turn a simulated portfolio into a single comparable score."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Mapping, Sequence

from .kernels import ScoringBackend, SuperAIGates
from .metrics import Metrics

__all__ = [
    "ObjectiveKind",
    "Objective",
    "ScoringContext",
    "ScoreResult",
    "DISQUALIFIED_SCORE",
    "score_candidate",
]

logger = logging.getLogger(__name__)

DISQUALIFIED_SCORE = 9999.0
ZSCORE_CEILING = 0.1
ZSCORE_PENALTY = 0.1


class ObjectiveKind(str, Enum):
    COMPOSITE = "composite"
    SUPER_AI = "super_ai"
    SHARPE = "sharpe"
    CAGR = "cagr"
    CALMAR = "calmar"
    SORTINO = "sortino"
    MIN_DD = "min_dd"
    SMOOTHNESS = "smoothness"
    WINRATE = "winrate"
    ULTRA_SMOOTH_V1 = "ultra_smooth_v1"
    ULTRA_SMOOTH = "ultra_smooth"
    ULTRA_SMOOTH_V3 = "ultra_smooth_v3"
    SUPER_AI_V2 = "super_ai_v2"
    TARGET_RETURN_MINDD = "target_return_mindd"
    TARGET_RETURN_SMOOTH = "target_return_smooth"
    TARGET_RETURN_WINRATE = "target_return_winrate"


_LOWER_IS_BETTER = frozenset(
    {
        ObjectiveKind.MIN_DD,
        ObjectiveKind.WINRATE,
        ObjectiveKind.TARGET_RETURN_MINDD,
        ObjectiveKind.TARGET_RETURN_SMOOTH,
        ObjectiveKind.TARGET_RETURN_WINRATE,
    }
)


@dataclass(slots=True)
class ScoringContext:
    """Everything an objective may look at for one candidate."""

    values: Sequence[float]
    metrics: Metrics
    years: float


@dataclass(slots=True)
class ScoreResult:
    score: float
    disqualified: bool = False
    reason: str | None = None
    components: Dict[str, float] = field(default_factory=dict)
    # Metric fields the objective recomputed more precisely than the generic calculator.
    metric_updates: Dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Objective:
    """A tagged objective kind together with the parameters it scores with."""

    kind: ObjectiveKind = ObjectiveKind.COMPOSITE
    target_cagr: float = 0.25
    gates: SuperAIGates = field(default_factory=SuperAIGates)

    @classmethod
    def parse(cls, identifier: str | ObjectiveKind | None, *, target_cagr: float = 0.25) -> "Objective":
        if isinstance(identifier, ObjectiveKind):
            return cls(kind=identifier, target_cagr=target_cagr)
        key = (identifier or "").strip().lower()
        try:
            kind = ObjectiveKind(key)
        except ValueError:
            logger.warning("Unknown objective %r; using the composite Sharpe/Calmar/smoothness score", identifier)
            kind = ObjectiveKind.COMPOSITE
        return cls(kind=kind, target_cagr=target_cagr)

    @property
    def lower_is_better(self) -> bool:
        return self.kind in _LOWER_IS_BETTER

    def sentinel(self, magnitude: float = DISQUALIFIED_SCORE) -> float:
        """Disqualification score that loses every comparison in this objective's direction."""

        return abs(magnitude) if self.lower_is_better else -abs(magnitude)

    def is_better(self, score: float, incumbent: float | None) -> bool:
        if incumbent is None:
            return True
        return score < incumbent if self.lower_is_better else score > incumbent

    def sort_key(self, score: float) -> float:
        """Key that orders scores best-first under ``sorted``."""

        return score if self.lower_is_better else -score

    def score(self, context: ScoringContext, backend: ScoringBackend) -> ScoreResult:
        return _SCORERS[self.kind](self, context, backend)


def _composite(_: Objective, ctx: ScoringContext, __: ScoringBackend) -> ScoreResult:
    m = ctx.metrics
    return ScoreResult(score=m.sharpe * 0.6 + m.calmar * 0.2 + m.smoothness * 0.2)


def _metric(name: str, sign: float = 1.0) -> Callable[[Objective, ScoringContext, ScoringBackend], ScoreResult]:
    def scorer(_: Objective, ctx: ScoringContext, __: ScoringBackend) -> ScoreResult:
        return ScoreResult(score=sign * getattr(ctx.metrics, name))

    return scorer


def _ultra_smooth_v1(_: Objective, ctx: ScoringContext, __: ScoringBackend) -> ScoreResult:
    m = ctx.metrics
    return ScoreResult(score=m.smoothness**2 * (1 - m.max_dd) ** 2 * m.win_rate)


def _stability(objective: Objective, ctx: ScoringContext, backend: ScoringBackend, *, with_zscore: bool) -> ScoreResult:
    stability = backend.stability_score(ctx.values)
    if stability.disqualified:
        return ScoreResult(score=objective.sentinel(), disqualified=True, reason=stability.reason)

    score = stability.score
    z = stability.current_z_score
    if with_zscore:
        score = score * ZSCORE_PENALTY if z > ZSCORE_CEILING else score * (1 + abs(z))
    return ScoreResult(
        score=score,
        components={
            "annualized_return": stability.annualized_return,
            "symmetric_ulcer_index": stability.symmetric_ulcer_index,
            "max_residual": stability.max_residual,
            "max_rolling_std": stability.max_rolling_std,
            "channel_consistency": stability.channel_consistency,
            "current_z_score": z,
        },
        metric_updates={"smoothness": stability.channel_consistency},
    )


def _ultra_smooth(objective: Objective, ctx: ScoringContext, backend: ScoringBackend) -> ScoreResult:
    return _stability(objective, ctx, backend, with_zscore=False)


def _ultra_smooth_v3(objective: Objective, ctx: ScoringContext, backend: ScoringBackend) -> ScoreResult:
    return _stability(objective, ctx, backend, with_zscore=True)


def _super_ai_v2(objective: Objective, ctx: ScoringContext, backend: ScoringBackend) -> ScoreResult:
    result = backend.super_ai_v2(ctx.values, frequency="auto", hint_days=ctx.years * 365, gates=objective.gates)
    if result.disqualified:
        return ScoreResult(
            score=objective.sentinel(result.score),
            disqualified=True,
            reason=result.reason,
            components={"frequency_" + result.frequency: 1.0},
        )
    return ScoreResult(
        score=result.score,
        components=dict(result.components),
        metric_updates={
            "smoothness": result.components["smoothness"],
            "sortino": result.components["sortino"],
        },
    )


def _target_return(attribute: str, sign: float) -> Callable[[Objective, ScoringContext, ScoringBackend], ScoreResult]:
    def scorer(objective: Objective, ctx: ScoringContext, _: ScoringBackend) -> ScoreResult:
        m = ctx.metrics
        if m.cagr >= objective.target_cagr:
            return ScoreResult(score=sign * getattr(m, attribute), components={"target_met": 1.0})
        return ScoreResult(score=1 + (objective.target_cagr - m.cagr), components={"target_met": 0.0})

    return scorer


_SCORERS: Mapping[ObjectiveKind, Callable[[Objective, ScoringContext, ScoringBackend], ScoreResult]] = {
    ObjectiveKind.COMPOSITE: _composite,
    ObjectiveKind.SUPER_AI: _composite,
    ObjectiveKind.SHARPE: _metric("sharpe"),
    ObjectiveKind.CAGR: _metric("cagr"),
    ObjectiveKind.CALMAR: _metric("calmar"),
    ObjectiveKind.SORTINO: _metric("sortino"),
    ObjectiveKind.MIN_DD: _metric("max_dd"),
    ObjectiveKind.SMOOTHNESS: _metric("smoothness"),
    ObjectiveKind.WINRATE: _metric("win_rate", -1.0),
    ObjectiveKind.ULTRA_SMOOTH_V1: _ultra_smooth_v1,
    ObjectiveKind.ULTRA_SMOOTH: _ultra_smooth,
    ObjectiveKind.ULTRA_SMOOTH_V3: _ultra_smooth_v3,
    ObjectiveKind.SUPER_AI_V2: _super_ai_v2,
    ObjectiveKind.TARGET_RETURN_MINDD: _target_return("max_dd", 1.0),
    ObjectiveKind.TARGET_RETURN_SMOOTH: _target_return("smoothness", -1.0),
    ObjectiveKind.TARGET_RETURN_WINRATE: _target_return("win_rate", -1.0),
}


def score_candidate(objective: Objective, context: ScoringContext, backend: ScoringBackend) -> ScoreResult:
    """Score one candidate; non-finite scores are normalised to the objective's sentinel."""

    result = objective.score(context, backend)
    if not math.isfinite(result.score):
        return ScoreResult(score=objective.sentinel(), disqualified=True, reason="non-finite score")
    return result
