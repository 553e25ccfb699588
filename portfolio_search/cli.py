"""Command-line front-end for running a portfolio weight search."""

from __future__ import annotations

import argparse
import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Sequence

from .config import EngineConfig, OptimizationSettings
from .data_loader import load_stock_data, slice_stock_data
from .defaults import DEFAULT_SEARCH_CONTROLS, SUPPORTED_OBJECTIVES
from .orchestrator import OptimizationCancelledError, OptimizationError, run_optimization
from .results import ProgressUpdate

logger = logging.getLogger(__name__)
CONTROLS = DEFAULT_SEARCH_CONTROLS


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Search for portfolio weights that maximise a chosen objective")
    parser.add_argument("--data", required=True, help="Price file (.json input contract, .csv or .parquet table)")
    parser.add_argument("--settings", default=None, help="JSON file with optimization settings (camelCase or snake_case)")
    parser.add_argument(
        "--objective",
        default=None,
        help=f"Objective to optimise ({CONTROLS.serialise_objectives()})",
    )
    parser.add_argument("--algorithm", default=None, help="Search strategy: genetic, monte_carlo or grid")
    parser.add_argument("--simulations", type=int, default=None, help="Total simulation budget")
    parser.add_argument("--max-stocks", type=int, default=None, help="Maximum number of tickers held")
    parser.add_argument("--min-weight", type=float, default=None, help="Minimum weight per held ticker (fraction)")
    parser.add_argument("--max-weight", type=float, default=None, help="Maximum weight per held ticker (fraction)")
    parser.add_argument("--strict", action="store_true", default=None, help="Hold exactly --max-stocks tickers")
    parser.add_argument("--rebalance", choices=("none", "quarterly", "dynamic"), default=None)
    parser.add_argument("--hedge", action="store_true", default=None, help="Enable the moving-average hedge")
    parser.add_argument("--hedge-short", type=int, default=None, help="Short moving-average period of the hedge")
    parser.add_argument("--hedge-long", type=int, default=None, help="Long moving-average period of the hedge")
    parser.add_argument("--reentry", choices=("golden_cross", "short_ma_rebound"), default=None)
    parser.add_argument("--hedge-ticker", default=None, help="Signal ticker for the hedge (default: equal average)")
    parser.add_argument("--start", default=None, help="First date (ISO) of the window to optimise over")
    parser.add_argument("--end", default=None, help="Last date (ISO) of the window to optimise over")
    parser.add_argument("--workers", type=int, default=None, help="Maximum number of worker processes")
    parser.add_argument("--backend", choices=("numpy", "python"), default=None, help="Scoring kernel backend")
    parser.add_argument("--inline", action="store_true", help="Run workers sequentially in this process")
    parser.add_argument("--seed", type=int, default=None, help="Random seed for reproducibility")
    parser.add_argument("--include-series", action="store_true", help="Include value and drawdown series in the report")
    parser.add_argument("--log-level", default="INFO", help="Logging verbosity (DEBUG, INFO, WARNING, ERROR)")
    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace) -> OptimizationSettings:
    payload: Dict[str, Any] = {}
    if args.settings:
        payload.update(json.loads(Path(args.settings).read_text(encoding="utf-8")))

    overrides = {
        "optimizeTarget": args.objective,
        "optimizationAlgorithm": args.algorithm,
        "simulations": args.simulations,
        "maxStocks": args.max_stocks,
        "minWeight": args.min_weight,
        "maxWeight": args.max_weight,
        "strictMode": args.strict,
        "rebalanceMode": args.rebalance,
    }
    payload.update({key: value for key, value in overrides.items() if value is not None})

    hedge = dict(payload.get("hedgeConfig") or payload.get("hedge") or {})
    hedge_overrides = {
        "enabled": args.hedge,
        "shortMAPeriod": args.hedge_short,
        "longMAPeriod": args.hedge_long,
        "reentryStrategy": args.reentry,
        "signalTicker": args.hedge_ticker,
    }
    hedge.update({key: value for key, value in hedge_overrides.items() if value is not None})
    if hedge:
        payload["hedgeConfig"] = hedge

    if args.objective is not None and args.objective not in SUPPORTED_OBJECTIVES:
        logger.warning("Objective %s is not one of %s", args.objective, CONTROLS.serialise_objectives())
    return OptimizationSettings.from_dict(payload)


def build_engine_config(args: argparse.Namespace) -> EngineConfig:
    config = EngineConfig.from_env()
    if args.workers is not None:
        config = replace(config, max_workers=args.workers)
    if args.backend is not None:
        config = replace(config, backend=args.backend)
    return config


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format="%(asctime)s [%(levelname)s] %(message)s")


def _log_progress(update: ProgressUpdate) -> None:
    logger.info(
        "Progress %.0f%%: %d simulations, %d valid, best score %s",
        update.progress * 100,
        update.sim_count,
        update.valid_count,
        f"{update.best_score:.6f}" if update.best_score is not None else "n/a",
    )


def run_cli(argv: Sequence[str] | None = None) -> dict[str, object]:
    args = parse_args(argv)
    configure_logging(args.log_level)

    stock_data = load_stock_data(args.data)
    if (args.start or args.end) and stock_data.dates:
        start = args.start or stock_data.dates[0]
        end = args.end or stock_data.dates[-1]
        stock_data = slice_stock_data(stock_data, start, end)
    settings = build_settings(args)
    engine_config = build_engine_config(args)

    try:
        result = run_optimization(
            stock_data,
            settings,
            on_progress=_log_progress,
            engine_config=engine_config,
            seed=args.seed,
            inline=args.inline,
        )
    except OptimizationCancelledError:
        logger.warning("Optimization was cancelled")
        return {"best": None, "cancelled": True}
    except OptimizationError as exc:
        logger.error("Optimization failed: %s", exc)
        return {"best": None, "error": str(exc)}

    report = result.to_report(include_series=args.include_series)
    print(json.dumps(report, indent=2, default=str))
    return report


def main() -> None:  # pragma: no cover - CLI wiring
    run_cli()


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    main()
