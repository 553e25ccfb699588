from __future__ import annotations

import math

import numpy as np
import pandas as pd
import pytest

from portfolio_search.data_loader import StockData
from portfolio_search.kernels import NumpyScoringBackend, PythonScoringBackend, resolve_backend
from portfolio_search.metrics import (
    asset_rotation,
    calculate_metrics,
    calculate_stock_metrics,
    correlation_matrix,
    cycle_positions,
    elapsed_years,
    monthly_returns,
    moving_average,
)


def _dates(periods: int, start: str = "2022-01-03") -> list[str]:
    return [ts.strftime("%Y-%m-%d") for ts in pd.bdate_range(start, periods=periods)]


def _random_walk(periods: int, seed: int, drift: float = 0.0004, vol: float = 0.01) -> list[float]:
    rng = np.random.default_rng(seed)
    returns = rng.normal(drift, vol, periods - 1)
    return (100.0 * np.exp(np.concatenate([[0.0], np.cumsum(returns)]))).tolist()


def test_metrics_are_deterministic() -> None:
    values = _random_walk(300, seed=1)
    dates = _dates(300)
    first = calculate_metrics(values, dates)
    second = calculate_metrics(list(values), list(dates))
    assert first is not None and second is not None
    assert first.as_dict() == second.as_dict()


def test_non_decreasing_series_has_no_drawdown() -> None:
    values = [100.0, 100.0, 101.0, 103.5, 103.5, 110.0, 111.0]
    metrics = calculate_metrics(values, _dates(len(values)))
    assert metrics is not None
    assert metrics.max_dd == 0.0
    assert metrics.calmar == 0.0


def test_cagr_matches_total_return_over_one_year() -> None:
    values = [100.0, 105.0, 110.0]
    metrics = calculate_metrics(values, years=1.0)
    assert metrics is not None
    assert metrics.total_return == pytest.approx(0.10)
    assert metrics.cagr == pytest.approx(0.10)
    assert metrics.duration == pytest.approx(1.0)


def test_drawdown_is_a_positive_fraction_of_the_running_peak() -> None:
    metrics = calculate_metrics([100.0, 120.0, 90.0, 130.0], years=1.0)
    assert metrics is not None
    assert metrics.max_dd == pytest.approx(0.25)


def test_flat_series_normalises_every_ratio_to_zero() -> None:
    metrics = calculate_metrics([100.0] * 50, _dates(50))
    assert metrics is not None
    for value in metrics.as_dict().values():
        assert math.isfinite(value)
    assert metrics.volatility == 0.0
    assert metrics.sharpe == 0.0
    assert metrics.sortino == 0.0


def test_too_short_series_returns_none() -> None:
    assert calculate_metrics([100.0]) is None
    assert calculate_metrics([None, 100.0, None]) is None


def test_sub_day_calendar_falls_back_to_trading_periods() -> None:
    dates = ["2024-01-01T10:00:00"] * 126
    assert elapsed_years(dates, 126) == pytest.approx(0.5)
    assert elapsed_years(["2023-01-01", "2024-01-01"], 2) == pytest.approx(365 / 365.25)


@pytest.mark.parametrize("backend", [PythonScoringBackend(), NumpyScoringBackend()])
def test_exponential_series_is_perfectly_smooth(backend) -> None:
    values = [100.0 * 1.001**i for i in range(250)]
    assert backend.r_squared(values) == pytest.approx(1.0, abs=1e-12)


def test_backends_agree_on_every_kernel() -> None:
    python_backend = PythonScoringBackend()
    numpy_backend = NumpyScoringBackend()
    values = _random_walk(400, seed=9, drift=0.0006, vol=0.004)

    assert numpy_backend.linear_regression(values) == pytest.approx(python_backend.linear_regression(values))
    assert numpy_backend.r_squared(values) == pytest.approx(python_backend.r_squared(values))
    assert numpy_backend.channel_score(values) == pytest.approx(python_backend.channel_score(values))
    log_returns = python_backend.log_returns(values)
    assert numpy_backend.log_returns(values) == pytest.approx(log_returns)
    assert numpy_backend.cvar_penalty(log_returns) == pytest.approx(python_backend.cvar_penalty(log_returns))
    assert numpy_backend.max_drawdown(values) == pytest.approx(python_backend.max_drawdown(values))

    py_stability = python_backend.stability_score(values)
    np_stability = numpy_backend.stability_score(values)
    assert np_stability.disqualified is py_stability.disqualified is False
    assert np_stability.score == pytest.approx(py_stability.score)
    assert np_stability.current_z_score == pytest.approx(py_stability.current_z_score)
    assert np_stability.channel_consistency == pytest.approx(py_stability.channel_consistency)
    assert np_stability.max_rolling_std == pytest.approx(py_stability.max_rolling_std)

    py_ai = python_backend.super_ai_v2(values, hint_days=400)
    np_ai = numpy_backend.super_ai_v2(values, hint_days=400)
    assert np_ai.frequency == py_ai.frequency == "daily"
    assert np_ai.score == pytest.approx(py_ai.score)


def test_stability_score_disqualifies_single_period_spikes() -> None:
    values = [100.0 * 1.001**i for i in range(100)]
    values[50] *= 1.2
    for backend in (PythonScoringBackend(), NumpyScoringBackend()):
        result = backend.stability_score(values)
        assert result.disqualified
        assert result.score == 0.0


def test_detect_frequency_uses_days_hint_before_volatility() -> None:
    backend = NumpyScoringBackend()
    values = [100.0 + i for i in range(100)]
    assert backend.detect_frequency(values, hint_days=10) == "hourly"
    assert backend.detect_frequency(values, hint_days=100) == "daily"
    assert backend.detect_frequency(values, hint_days=300) == "weekly"
    assert backend.detect_frequency(values, hint_days=3000) == "monthly"


def test_resolve_backend_by_name() -> None:
    assert resolve_backend(None).name == "numpy"
    assert resolve_backend("python").name == "python"
    with pytest.raises(ValueError):
        resolve_backend("wasm")


def test_moving_average_skips_missing_points() -> None:
    averages = moving_average([1.0, 2.0, None, 4.0, 5.0], 3)
    assert averages[:2] == [None, None]
    assert averages[2] == pytest.approx(1.5)
    assert averages[3] == pytest.approx(3.0)
    assert averages[4] == pytest.approx(4.5)
    assert moving_average([1.0, 2.0], 1) == [1.0, 2.0]


def test_monthly_returns_measure_first_month_from_initial_value() -> None:
    dates = ["2024-01-15", "2024-01-31", "2024-02-15", "2024-02-29", "2024-03-29"]
    values = [101.0, 110.0, 100.0, 121.0, 121.0]
    months = monthly_returns(values, dates)
    assert [(m.year, m.month) for m in months] == [(2024, 1), (2024, 2), (2024, 3)]
    assert months[0].value == pytest.approx(0.10)
    assert months[1].value == pytest.approx(0.10)
    assert months[2].value == pytest.approx(0.0)


def test_correlation_matrix_of_related_tickers() -> None:
    base = _random_walk(120, seed=4)
    inverse = [10_000.0 / value for value in base]
    flat = [50.0] * 120
    data = StockData(
        tickers=("A", "B", "C", "D"),
        dates=tuple(_dates(120)),
        price_data={"A": tuple(base), "B": tuple(base), "C": tuple(inverse), "D": tuple(flat)},
    )
    matrix = correlation_matrix(data, ["A", "B", "C", "D"])
    assert matrix[0][0] == 1.0
    assert matrix[0][1] == pytest.approx(1.0)
    assert matrix[0][2] < -0.95
    assert matrix[0][3] == 0.0
    assert matrix[3][3] == 1.0


def test_stock_metrics_skip_tickers_without_history() -> None:
    data = StockData(
        tickers=("A", "B"),
        dates=tuple(_dates(5)),
        price_data={"A": (10.0, 11.0, 12.0, 13.0, 14.0), "B": (None, None, 5.0, None, None)},
    )
    metrics = calculate_stock_metrics(data)
    assert set(metrics) == {"A"}
    assert metrics["A"].total_return == pytest.approx(0.4)


def _rotation_fixture(periods: int = 120) -> tuple[StockData, list[float]]:
    prices = {ticker: _random_walk(periods, seed) for seed, ticker in enumerate(("AAA", "BBB", "CCC"))}
    data = StockData(
        tickers=tuple(prices),
        dates=tuple(_dates(periods)),
        price_data={ticker: tuple(series) for ticker, series in prices.items()},
    )
    values = np.mean([np.asarray(series) / series[0] * 100 for series in prices.values()], axis=0).tolist()
    return data, values


def test_asset_rotation_trails_are_centred_on_the_cross_section() -> None:
    data, values = _rotation_fixture()
    weights = {"AAA": 0.4, "BBB": 0.4, "CCC": 0.2, "DUST": 0.0005}
    rotation = asset_rotation(weights, data, values)

    assert set(rotation) == {"AAA", "BBB", "CCC"}
    for trail in rotation.values():
        assert len(trail.x) == len(trail.y) == 20
        assert trail.dates == list(data.dates[100:])
    xs = np.array([trail.x for trail in rotation.values()])
    ys = np.array([trail.y for trail in rotation.values()])
    assert xs.mean(axis=0) == pytest.approx(np.full(20, 100.0))
    assert ys.mean(axis=0) == pytest.approx(np.full(20, 100.0))
    assert xs.std(axis=0) == pytest.approx(np.full(20, 100.0))


def test_asset_rotation_downsamples_but_keeps_the_last_period() -> None:
    data, values = _rotation_fixture()
    trail = asset_rotation({"AAA": 0.5, "BBB": 0.5}, data, values, downsample_step=5)["AAA"]
    assert trail.dates == [data.dates[i] for i in (100, 105, 110, 115, 119)]


def test_single_holding_sits_at_the_centre() -> None:
    data, values = _rotation_fixture()
    trail = asset_rotation({"AAA": 1.0}, data, values)["AAA"]
    assert trail.x == pytest.approx([100.0] * 20)
    assert trail.y == pytest.approx([100.0] * 20)
    assert asset_rotation({}, data, values) == {}


def test_cycle_positions_are_the_latest_rotation_points_in_clockwise_order() -> None:
    data, values = _rotation_fixture()
    weights = {"AAA": 0.4, "BBB": 0.4, "CCC": 0.2}
    rotation = asset_rotation(weights, data, values)
    positions = cycle_positions(weights, data, values)

    assert {position.ticker for position in positions} == set(weights)
    for position in positions:
        assert position.x == pytest.approx(rotation[position.ticker].x[-1])
        assert position.y == pytest.approx(rotation[position.ticker].y[-1])
        assert position.radius == pytest.approx(math.hypot(position.x - 100, position.y - 100))
        assert 0.0 <= position.angle < 360.0
    keys = [90 - p.angle if p.angle <= 90 else 450 - p.angle for p in positions]
    assert keys == sorted(keys)
