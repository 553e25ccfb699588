"""Parallel stochastic search for long-only portfolio weights."""

from .config import (
    EngineConfig,
    HedgeConfig,
    OptimizationSettings,
    PriorityStockConfig,
    RebalanceMode,
    ReentryStrategy,
    SearchAlgorithm,
)
from .data_loader import StockData, load_stock_data, slice_stock_data, stock_data_from_frame
from .evaluator import PortfolioEvaluator
from .kernels import NumpyScoringBackend, PythonScoringBackend, ScoringBackend, resolve_backend
from .metrics import Metrics, asset_rotation, calculate_metrics, correlation_matrix, cycle_positions, monthly_returns
from .orchestrator import (
    OptimizationCancelledError,
    OptimizationError,
    ParallelOrchestrator,
    run_optimization,
)
from .results import OptimizationResult, PortfolioCandidate, ProgressKind, ProgressUpdate, ScatterPoint
from .scoring import Objective, ObjectiveKind
from .search import GeneticSearch, GridSearch, MonteCarloSearch, SearchEngine
from .simulator import HedgeState, PerformanceSimulator
from .weights import repair_weights
from .worker import SearchWorker

__all__ = [
    "EngineConfig",
    "HedgeConfig",
    "OptimizationSettings",
    "PriorityStockConfig",
    "RebalanceMode",
    "ReentryStrategy",
    "SearchAlgorithm",
    "StockData",
    "load_stock_data",
    "slice_stock_data",
    "stock_data_from_frame",
    "PortfolioEvaluator",
    "ScoringBackend",
    "PythonScoringBackend",
    "NumpyScoringBackend",
    "resolve_backend",
    "Metrics",
    "calculate_metrics",
    "correlation_matrix",
    "monthly_returns",
    "asset_rotation",
    "cycle_positions",
    "OptimizationError",
    "OptimizationCancelledError",
    "ParallelOrchestrator",
    "run_optimization",
    "OptimizationResult",
    "PortfolioCandidate",
    "ProgressKind",
    "ProgressUpdate",
    "ScatterPoint",
    "Objective",
    "ObjectiveKind",
    "SearchEngine",
    "GeneticSearch",
    "MonteCarloSearch",
    "GridSearch",
    "HedgeState",
    "PerformanceSimulator",
    "repair_weights",
    "SearchWorker",
]
