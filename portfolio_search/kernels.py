"""Numeric scoring kernels behind a swappable backend interface.

Two backends ship with the package: ``PythonScoringBackend`` is the plain-loop
reference and ``NumpyScoringBackend`` is the vectorised default. Both accept
plain sequences of floats and return plain floats / dataclasses, so the rest of
the engine never needs to know which one is active.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, Mapping, Sequence, Tuple

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

__all__ = [
    "FREQUENCY_PROFILES",
    "FrequencyProfile",
    "StabilityResult",
    "SuperAIGates",
    "SuperAIResult",
    "ScoringBackend",
    "PythonScoringBackend",
    "NumpyScoringBackend",
    "resolve_backend",
]

MAX_SPIKE = 0.08
CHANNEL_WIDTH = 0.03
RESIDUAL_WEIGHT = 0.6
VOLATILITY_WEIGHT = 0.4
MIN_STABILITY_POINTS = 20


@dataclass(frozen=True, slots=True)
class FrequencyProfile:
    periods_per_year: float
    typical_max_move: float


FREQUENCY_PROFILES: Mapping[str, FrequencyProfile] = {
    "hourly": FrequencyProfile(periods_per_year=252 * 6.5, typical_max_move=0.02),
    "daily": FrequencyProfile(periods_per_year=252, typical_max_move=0.05),
    "weekly": FrequencyProfile(periods_per_year=52, typical_max_move=0.08),
    "monthly": FrequencyProfile(periods_per_year=12, typical_max_move=0.15),
}


@dataclass(slots=True)
class StabilityResult:
    """Regression-channel stability score and its diagnostics."""

    score: float
    disqualified: bool
    reason: str | None = None
    annualized_return: float = 0.0
    symmetric_ulcer_index: float = 0.0
    max_residual: float = 0.0
    max_rolling_std: float = 0.0
    channel_consistency: float = 0.0
    current_z_score: float = 0.0


@dataclass(frozen=True, slots=True)
class SuperAIGates:
    """Hard gates of the adaptive composite; ``max_single_period_move=None`` scales with frequency."""

    max_drawdown: float = 0.25
    min_annual_return: float = 0.05
    max_single_period_move: float | None = None
    min_smoothness: float = 0.85


@dataclass(slots=True)
class SuperAIResult:
    score: float
    disqualified: bool
    reason: str | None = None
    frequency: str = "daily"
    components: Dict[str, float] = field(default_factory=dict)


def _saturate(x: float, scale: float) -> float:
    return x / (x + scale) if x > 0 else 0.0


class ScoringBackend:
    """Kernel contract shared by every backend."""

    name = "base"

    def linear_regression(self, values: Sequence[float]) -> Tuple[float, float]:
        raise NotImplementedError

    def r_squared(self, values: Sequence[float]) -> float:
        raise NotImplementedError

    def stability_score(self, values: Sequence[float]) -> StabilityResult:
        raise NotImplementedError

    def cvar_penalty(self, log_returns: Sequence[float]) -> float:
        raise NotImplementedError

    def channel_score(self, values: Sequence[float]) -> float:
        raise NotImplementedError

    def log_returns(self, values: Sequence[float]) -> list[float]:
        raise NotImplementedError

    def max_drawdown(self, values: Sequence[float]) -> float:
        raise NotImplementedError

    def detect_frequency(self, values: Sequence[float], hint_days: float = 0.0) -> str:
        n = len(values)
        if hint_days and hint_days > 0:
            points_per_day = n / hint_days
            if points_per_day > 4:
                return "hourly"
            if points_per_day > 0.8:
                return "daily"
            if points_per_day > 0.15:
                return "weekly"
            return "monthly"

        returns = [
            math.log(values[i] / values[i - 1])
            for i in range(1, n)
            if values[i] > 0 and values[i - 1] > 0
        ]
        if not returns:
            return "daily"
        std = float(np.std(returns))
        if std < 0.008:
            return "hourly"
        if std < 0.025:
            return "daily"
        if std < 0.050:
            return "weekly"
        return "monthly"

    def super_ai_v2(
        self,
        values: Sequence[float],
        *,
        frequency: str = "auto",
        hint_days: float = 0.0,
        gates: SuperAIGates | None = None,
    ) -> SuperAIResult:
        """Adaptive-frequency composite of Sortino, Calmar x CVaR, smoothness and channel width."""

        gates = gates or SuperAIGates()
        if not frequency or frequency == "auto":
            frequency = self.detect_frequency(values, hint_days)
        profile = FREQUENCY_PROFILES.get(frequency, FREQUENCY_PROFILES["daily"])
        sqrt_periods = math.sqrt(profile.periods_per_year)

        log_returns = self.log_returns(values)
        if not log_returns:
            return SuperAIResult(score=-9999.0, disqualified=True, reason="no returns", frequency=frequency)

        mean_return = sum(log_returns) / len(log_returns)
        annual_return = mean_return * profile.periods_per_year
        negatives = [r for r in log_returns if r < 0]
        if negatives:
            down_dev = math.sqrt(sum(r * r for r in negatives) / len(negatives)) * sqrt_periods
        else:
            down_dev = 0.001
        sortino = annual_return / down_dev if down_dev > 0.001 else 3.0

        max_dd = self.max_drawdown(values)
        calmar = annual_return / max_dd if max_dd > 0.001 else 0.0
        max_move = max(abs(max(log_returns)), abs(min(log_returns)))
        max_move_pct = math.exp(max_move) - 1
        smoothness = self.r_squared(values)

        max_allowed_move = gates.max_single_period_move or profile.typical_max_move * 2
        if max_dd > gates.max_drawdown:
            return SuperAIResult(score=-9000.0, disqualified=True, reason="max drawdown exceeded", frequency=frequency)
        if annual_return < gates.min_annual_return:
            return SuperAIResult(score=-9001.0, disqualified=True, reason="low return", frequency=frequency)
        if max_move_pct > max_allowed_move:
            return SuperAIResult(score=-9002.0, disqualified=True, reason="volatility spike", frequency=frequency)
        if smoothness < gates.min_smoothness:
            return SuperAIResult(score=-9003.0, disqualified=True, reason="low smoothness", frequency=frequency)

        return_component = _saturate(sortino, 4.0)
        risk_component = _saturate(calmar, 4.0) * self.cvar_penalty(log_returns)
        stability_component = smoothness**2
        channel_component = self.channel_score(values)
        score = (
            return_component**0.4
            * risk_component**0.3
            * stability_component**0.2
            * channel_component**0.1
            * 100.0
        )
        return SuperAIResult(
            score=score,
            disqualified=False,
            frequency=frequency,
            components={
                "return": return_component,
                "risk": risk_component,
                "stability": stability_component,
                "channel": channel_component,
                "sortino": sortino,
                "calmar": calmar,
                "smoothness": smoothness,
            },
        )


class PythonScoringBackend(ScoringBackend):
    """Reference implementation written with plain loops."""

    name = "python"

    def linear_regression(self, values: Sequence[float]) -> Tuple[float, float]:
        n = len(values)
        if n == 0:
            return 0.0, 0.0
        sum_x = sum_y = sum_xy = sum_xx = 0.0
        for i, y in enumerate(values):
            sum_x += i
            sum_y += y
            sum_xy += i * y
            sum_xx += i * i
        denominator = n * sum_xx - sum_x * sum_x
        if denominator == 0:
            return 0.0, sum_y / n
        slope = (n * sum_xy - sum_x * sum_y) / denominator
        intercept = (sum_y - slope * sum_x) / n
        return slope, intercept

    def r_squared(self, values: Sequence[float]) -> float:
        if len(values) < 2:
            return 0.0
        y = [math.log(v) if v > 0 else 0.0 for v in values]
        slope, intercept = self.linear_regression(y)
        mean_y = sum(y) / len(y)
        ss_tot = sum((value - mean_y) ** 2 for value in y)
        ss_res = sum((value - (intercept + slope * i)) ** 2 for i, value in enumerate(y))
        return 1 - ss_res / ss_tot if ss_tot > 0 else 0.0

    def log_returns(self, values: Sequence[float]) -> list[float]:
        return [
            math.log(values[i] / values[i - 1]) if values[i] > 0 and values[i - 1] > 0 else 0.0
            for i in range(1, len(values))
        ]

    def max_drawdown(self, values: Sequence[float]) -> float:
        if not values:
            return 0.0
        peak = values[0]
        worst = 0.0
        for value in values:
            if value > peak:
                peak = value
            if peak > 0:
                worst = max(worst, (peak - value) / peak)
        return worst

    def cvar_penalty(self, log_returns: Sequence[float]) -> float:
        if not log_returns:
            return 1.0
        ordered = sorted(log_returns)
        tail = ordered[: max(1, int(len(ordered) * 0.05))]
        return math.exp(sum(tail) / len(tail) * 10)

    def channel_score(self, values: Sequence[float]) -> float:
        y = [math.log(v) if v > 0 else 0.0 for v in values]
        slope, intercept = self.linear_regression(y)
        max_dev = max((abs(value - (intercept + slope * i)) for i, value in enumerate(y)), default=0.0)
        width_pct = (math.exp(max_dev) - 1) * 2
        return math.exp(-width_pct / 0.10)

    def stability_score(self, values: Sequence[float]) -> StabilityResult:
        values = [v for v in values if v is not None and not math.isnan(v)]
        n = len(values)
        if n < MIN_STABILITY_POINTS or values[0] <= 0:
            return StabilityResult(score=0.0, disqualified=True, reason="insufficient data")

        total_return = (values[-1] - values[0]) / values[0]
        annualized = (1 + total_return) ** (252 / n) - 1 if total_return > -1 else -1.0
        period_returns = [
            (values[i] - values[i - 1]) / values[i - 1] if values[i - 1] != 0 else 0.0
            for i in range(1, n)
        ]
        if max(period_returns) > MAX_SPIKE or min(period_returns) < -MAX_SPIKE:
            return StabilityResult(
                score=0.0,
                disqualified=True,
                reason="single-period move too large",
                annualized_return=annualized,
            )

        slope, intercept = self.linear_regression([math.log(v) if v > 0 else 0.0 for v in values])
        abs_devs: list[float] = []
        signed_devs: list[float] = []
        for i, value in enumerate(values):
            trend = math.exp(intercept + slope * i)
            if trend <= 0.0001:
                abs_devs.append(1.0)
                signed_devs.append(0.0)
                continue
            deviation = (value - trend) / trend
            signed_devs.append(deviation)
            abs_devs.append(abs(deviation))

        mean_dev = sum(signed_devs) / n
        dev_std = math.sqrt(sum((d - mean_dev) ** 2 for d in signed_devs) / n)
        z_score = (signed_devs[-1] - mean_dev) / dev_std if dev_std > 0.000001 else 0.0

        max_residual = max(abs_devs)
        ulcer = math.sqrt(sum(d * d for d in abs_devs) / n)

        window = min(20, n // 5)
        rolling = []
        for i in range(window, len(period_returns)):
            chunk = period_returns[i - window : i]
            mean = sum(chunk) / window
            rolling.append(math.sqrt(sum((r - mean) ** 2 for r in chunk) / window))
        max_rolling = max(rolling) if rolling else 0.0

        consistency = sum(1 for d in abs_devs if d <= CHANNEL_WIDTH) / n
        return _finish_stability(annualized, ulcer, max_residual, max_rolling, consistency, z_score)


class NumpyScoringBackend(ScoringBackend):
    """Vectorised kernels; the default backend."""

    name = "numpy"

    def linear_regression(self, values: Sequence[float]) -> Tuple[float, float]:
        y = np.asarray(values, dtype=float)
        n = y.size
        if n == 0:
            return 0.0, 0.0
        x = np.arange(n, dtype=float)
        sum_x = x.sum()
        sum_y = y.sum()
        denominator = n * np.dot(x, x) - sum_x * sum_x
        if denominator == 0:
            return 0.0, float(sum_y / n)
        slope = (n * np.dot(x, y) - sum_x * sum_y) / denominator
        intercept = (sum_y - slope * sum_x) / n
        return float(slope), float(intercept)

    @staticmethod
    def _safe_log(values: Sequence[float]) -> np.ndarray:
        arr = np.asarray(values, dtype=float)
        out = np.zeros_like(arr)
        positive = arr > 0
        out[positive] = np.log(arr[positive])
        return out

    def r_squared(self, values: Sequence[float]) -> float:
        if len(values) < 2:
            return 0.0
        y = self._safe_log(values)
        slope, intercept = self.linear_regression(y)
        fitted = intercept + slope * np.arange(y.size)
        ss_tot = float(np.sum((y - y.mean()) ** 2))
        ss_res = float(np.sum((y - fitted) ** 2))
        return 1 - ss_res / ss_tot if ss_tot > 0 else 0.0

    def log_returns(self, values: Sequence[float]) -> list[float]:
        arr = np.asarray(values, dtype=float)
        if arr.size < 2:
            return []
        prev, curr = arr[:-1], arr[1:]
        valid = (prev > 0) & (curr > 0)
        out = np.zeros(curr.size)
        out[valid] = np.log(curr[valid] / prev[valid])
        return out.tolist()

    def max_drawdown(self, values: Sequence[float]) -> float:
        arr = np.asarray(values, dtype=float)
        if arr.size == 0:
            return 0.0
        peaks = np.maximum.accumulate(arr)
        with np.errstate(divide="ignore", invalid="ignore"):
            drawdowns = np.where(peaks > 0, (peaks - arr) / peaks, 0.0)
        return float(max(0.0, drawdowns.max()))

    def cvar_penalty(self, log_returns: Sequence[float]) -> float:
        arr = np.sort(np.asarray(log_returns, dtype=float))
        if arr.size == 0:
            return 1.0
        tail = arr[: max(1, int(arr.size * 0.05))]
        return float(np.exp(tail.mean() * 10))

    def channel_score(self, values: Sequence[float]) -> float:
        y = self._safe_log(values)
        if y.size == 0:
            return 1.0
        slope, intercept = self.linear_regression(y)
        max_dev = float(np.max(np.abs(y - (intercept + slope * np.arange(y.size)))))
        width_pct = (math.exp(max_dev) - 1) * 2
        return math.exp(-width_pct / 0.10)

    def stability_score(self, values: Sequence[float]) -> StabilityResult:
        arr = np.asarray([v for v in values if v is not None], dtype=float)
        arr = arr[~np.isnan(arr)]
        n = arr.size
        if n < MIN_STABILITY_POINTS or arr[0] <= 0:
            return StabilityResult(score=0.0, disqualified=True, reason="insufficient data")

        total_return = (arr[-1] - arr[0]) / arr[0]
        annualized = float((1 + total_return) ** (252 / n) - 1) if total_return > -1 else -1.0
        prev = arr[:-1]
        with np.errstate(divide="ignore", invalid="ignore"):
            period_returns = np.where(prev != 0, (arr[1:] - prev) / prev, 0.0)
        if period_returns.max() > MAX_SPIKE or period_returns.min() < -MAX_SPIKE:
            return StabilityResult(
                score=0.0,
                disqualified=True,
                reason="single-period move too large",
                annualized_return=annualized,
            )

        slope, intercept = self.linear_regression(self._safe_log(arr))
        trend = np.exp(intercept + slope * np.arange(n))
        degenerate = trend <= 0.0001
        with np.errstate(divide="ignore", invalid="ignore"):
            signed = np.where(degenerate, 0.0, (arr - trend) / trend)
        abs_devs = np.where(degenerate, 1.0, np.abs(signed))

        mean_dev = signed.mean()
        dev_std = signed.std()
        z_score = float((signed[-1] - mean_dev) / dev_std) if dev_std > 0.000001 else 0.0

        window = min(20, n // 5)
        usable = period_returns.size - window
        if usable > 0:
            windows = sliding_window_view(period_returns, window)[:usable]
            max_rolling = float(windows.std(axis=1).max())
        else:
            max_rolling = 0.0

        return _finish_stability(
            annualized,
            float(np.sqrt(np.mean(abs_devs**2))),
            float(abs_devs.max()),
            max_rolling,
            float(np.count_nonzero(abs_devs <= CHANNEL_WIDTH) / n),
            z_score,
        )


def _finish_stability(
    annualized: float,
    ulcer: float,
    max_residual: float,
    max_rolling: float,
    consistency: float,
    z_score: float,
) -> StabilityResult:
    base = annualized / ulcer if ulcer > 0 else 0.0
    residual_penalty = max(0.0, 1 - (max_residual - 0.05) * 5) if max_residual > 0.05 else 1.0
    volatility_penalty = max(0.0, 1 - (max_rolling - 0.02) * 10) if max_rolling > 0.02 else 1.0
    score = (
        base
        * (residual_penalty * RESIDUAL_WEIGHT + volatility_penalty * VOLATILITY_WEIGHT)
        * (0.5 + 0.5 * consistency)
    )
    return StabilityResult(
        score=max(0.0, score),
        disqualified=False,
        annualized_return=annualized,
        symmetric_ulcer_index=ulcer,
        max_residual=max_residual,
        max_rolling_std=max_rolling,
        channel_consistency=consistency,
        current_z_score=z_score,
    )


_BACKENDS: Mapping[str, type[ScoringBackend]] = {
    PythonScoringBackend.name: PythonScoringBackend,
    NumpyScoringBackend.name: NumpyScoringBackend,
}


def resolve_backend(name: str | ScoringBackend | None) -> ScoringBackend:
    """Return a backend instance by name, defaulting to the numpy kernels."""

    if isinstance(name, ScoringBackend):
        return name
    key = (name or NumpyScoringBackend.name).lower().strip()
    try:
        return _BACKENDS[key]()
    except KeyError:
        raise ValueError(f"Unknown scoring backend: {name}") from None
