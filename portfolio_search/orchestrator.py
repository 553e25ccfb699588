"""Parallel orchestration of search workers and merging of their progress streams."""

from __future__ import annotations

import logging
import multiprocessing
import queue as queue_module
import random
import threading
from collections import deque
from typing import Callable, Deque, Iterator, List, Sequence

from .config import EngineConfig, OptimizationSettings
from .data_loader import StockData
from .evaluator import PortfolioEvaluator
from .defaults import ALLOCATION_HISTORY_STEP
from .metrics import asset_rotation, correlation_matrix, cycle_positions, monthly_returns
from .results import OptimizationResult, PortfolioCandidate, ProgressKind, ProgressUpdate, ScatterPoint
from .scoring import Objective
from .worker import SearchWorker, run_worker_process

__all__ = [
    "OptimizationError",
    "OptimizationCancelledError",
    "ParallelOrchestrator",
    "split_budget",
    "derive_seeds",
    "run_optimization",
]

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "cancelled"


class OptimizationError(RuntimeError):
    """Raised when an optimization run ends with an error update."""


class OptimizationCancelledError(OptimizationError):
    """Raised when an optimization run was stopped before completing."""


def split_budget(total: int, workers: int) -> List[int]:
    """Even split; the first ``total % workers`` workers take one extra simulation."""

    base, extra = divmod(total, workers)
    return [base + (1 if index < extra else 0) for index in range(workers)]


def derive_seeds(seed: int | None, workers: int) -> List[int | None]:
    if seed is None:
        return [None] * workers
    rng = random.Random(seed)
    return [rng.getrandbits(63) for _ in range(workers)]


class ParallelOrchestrator:
    """Fans a run out over independent workers and merges their updates into one stream.

    ``stream()`` yields merged ``progress`` updates carrying running totals and
    ends with exactly one ``complete`` or ``error`` update. ``stop()`` may be
    called from any thread, any number of times.
    """

    def __init__(
        self,
        stock_data: StockData,
        settings: OptimizationSettings,
        *,
        engine_config: EngineConfig | None = None,
        seed: int | None = None,
        inline: bool = False,
    ) -> None:
        settings.validate()
        self.stock_data = stock_data
        self.settings = settings
        self.engine_config = engine_config or EngineConfig()
        self.seed = seed
        self.inline = inline
        self.objective = Objective.parse(settings.objective, target_cagr=settings.target_cagr)
        self.worker_count = self.engine_config.resolve_worker_count(settings.simulations)

        self.total_simulations = 0
        self.valid_simulations = 0
        self.best: PortfolioCandidate | None = None
        self.scatter: Deque[ScatterPoint] = deque(maxlen=max(1, self.engine_config.scatter_window))

        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._processes: List[multiprocessing.process.BaseProcess] = []
        self._draining = False

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        """Request cancellation.

        While a stream is reading the update queue, that stream terminates the
        workers itself within one poll interval.
        """

        with self._lock:
            if self._stop_event.is_set():
                return
            self._stop_event.set()
            logger.info("Stop requested with %d worker processes running", len(self._processes))
            if not self._draining:
                self._terminate_processes()

    def stream(self) -> Iterator[ProgressUpdate]:
        budgets = split_budget(self.settings.simulations, self.worker_count)
        seeds = derive_seeds(self.seed, self.worker_count)
        logger.info(
            "Starting %s optimization: %d simulations over %d workers (objective=%s)",
            self.settings.algorithm.value,
            self.settings.simulations,
            self.worker_count,
            self.objective.kind.value,
        )
        source = (self._inline_updates if self.inline else self._process_updates)(budgets, seeds)
        try:
            for update in source:
                if update.kind is ProgressKind.ERROR:
                    yield self._error(update.message or "worker failed", cancelled=update.cancelled)
                    return
                yield self._merge(update)
        finally:
            source.close()
        if self.stopped:
            yield self._error(CANCELLED_MESSAGE, cancelled=True)
            return
        yield self._complete()

    def _inline_updates(self, budgets: Sequence[int], seeds: Sequence[int | None]) -> Iterator[ProgressUpdate]:
        for worker_id, (budget, seed) in enumerate(zip(budgets, seeds)):
            worker = SearchWorker(
                worker_id,
                self.stock_data,
                seed=seed,
                backend=self.engine_config.backend,
                report_every=self.engine_config.report_every,
            )
            for update in worker.run(self.settings.with_budget(budget)):
                if self.stopped:
                    yield ProgressUpdate(kind=ProgressKind.ERROR, message=CANCELLED_MESSAGE, cancelled=True)
                    return
                if update.kind is ProgressKind.COMPLETE:
                    continue
                yield update
                if update.kind is ProgressKind.ERROR:
                    return

    def _process_updates(self, budgets: Sequence[int], seeds: Sequence[int | None]) -> Iterator[ProgressUpdate]:
        context = multiprocessing.get_context(self.engine_config.start_method)
        updates = context.Queue()
        with self._lock:
            for worker_id, (budget, seed) in enumerate(zip(budgets, seeds)):
                if self.stopped:
                    break
                process = context.Process(
                    target=run_worker_process,
                    args=(
                        worker_id,
                        self.stock_data,
                        self.settings.with_budget(budget),
                        seed,
                        self.engine_config.backend,
                        self.engine_config.report_every,
                        updates,
                    ),
                    name=f"portfolio-search-worker-{worker_id}",
                    daemon=True,
                )
                process.start()
                self._processes.append(process)
            processes = list(self._processes)
            self._draining = True

        pending = set(range(len(processes)))
        suspects: set[int] = set()
        try:
            while pending:
                if self.stopped:
                    yield ProgressUpdate(kind=ProgressKind.ERROR, message=CANCELLED_MESSAGE, cancelled=True)
                    return
                try:
                    update = updates.get(timeout=self.engine_config.poll_interval)
                except queue_module.Empty:
                    dead = {i for i in pending if not processes[i].is_alive()}
                    # A worker must look dead on two consecutive idle polls before it is
                    # declared lost, so a final message still in flight is not missed.
                    lost = dead & suspects
                    suspects = dead
                    if lost:
                        worker_id = min(lost)
                        exitcode = processes[worker_id].exitcode
                        logger.error("Worker %d exited with code %s without reporting", worker_id, exitcode)
                        yield ProgressUpdate(
                            kind=ProgressKind.ERROR,
                            worker_id=worker_id,
                            message=f"worker {worker_id} exited unexpectedly (exit code {exitcode})",
                        )
                        return
                    continue
                if update.kind is ProgressKind.COMPLETE:
                    pending.discard(update.worker_id)
                    continue
                yield update
                if update.kind is ProgressKind.ERROR:
                    return
        finally:
            with self._lock:
                self._draining = False
                self._terminate_processes()
            updates.close()
            updates.cancel_join_thread()

    def _terminate_processes(self) -> None:
        for process in self._processes:
            if process.is_alive():
                process.terminate()
        for process in self._processes:
            process.join(timeout=1.0)
        self._processes = []

    def _merge(self, update: ProgressUpdate) -> ProgressUpdate:
        self.total_simulations += update.sim_count
        self.valid_simulations += update.valid_count
        self.scatter.extend(update.scatter_chunk)
        candidate = update.best_candidate
        if candidate is not None and self._ranks_above(candidate):
            self.best = candidate
            logger.info("New global best %.6f from worker %s", candidate.score, update.worker_id)
        return ProgressUpdate(
            kind=ProgressKind.PROGRESS,
            worker_id=update.worker_id,
            sim_count=self.total_simulations,
            valid_count=self.valid_simulations,
            best_score=self.best.score if self.best is not None else None,
            best_candidate=self.best,
            scatter_chunk=list(update.scatter_chunk),
            progress=min(1.0, self.total_simulations / self.settings.simulations),
        )

    def _ranks_above(self, candidate: PortfolioCandidate) -> bool:
        if self.best is None:
            return True
        if candidate.valid != self.best.valid:
            return candidate.valid
        return self.objective.is_better(candidate.score, self.best.score)

    def _error(self, message: str, *, cancelled: bool = False) -> ProgressUpdate:
        if cancelled:
            logger.info("Optimization cancelled after %d simulations", self.total_simulations)
        else:
            logger.error("Optimization failed: %s", message)
        return ProgressUpdate(
            kind=ProgressKind.ERROR,
            sim_count=self.total_simulations,
            valid_count=self.valid_simulations,
            best_score=self.best.score if self.best is not None else None,
            best_candidate=self.best,
            message=message,
            cancelled=cancelled,
        )

    def _complete(self) -> ProgressUpdate:
        if self.best is None:
            return self._error("no portfolio could be evaluated; check that the tickers have price history")

        evaluator = PortfolioEvaluator(self.stock_data, self.settings, backend=self.engine_config.backend)
        held = sorted(self.best.weights, key=self.best.weights.__getitem__, reverse=True)
        user_result = None
        if self.settings.has_user_portfolio:
            user_result = evaluator.evaluate_benchmark(self.settings.user_portfolio or {})
        replay = evaluator.simulator.simulate(self.best.weights, history_step=ALLOCATION_HISTORY_STEP)
        result = OptimizationResult(
            best=self.best,
            stock_metrics=evaluator.stock_metrics,
            monthly_returns=monthly_returns(self.best.values, self.stock_data.dates),
            correlation_matrix=correlation_matrix(self.stock_data, held),
            correlation_tickers=tuple(held),
            scatter=list(self.scatter),
            user_portfolio_result=user_result,
            total_simulations=self.total_simulations,
            valid_simulations=self.valid_simulations,
            asset_rotation=asset_rotation(self.best.weights, self.stock_data, self.best.values),
            cycle_positions=cycle_positions(self.best.weights, self.stock_data, self.best.values),
            allocation_history=replay.allocation_history,
        )
        message = None
        if self.valid_simulations == 0:
            message = "no candidate met the CAGR, Sharpe and drawdown thresholds"
            logger.warning("Optimization finished but %s", message)
        logger.info(
            "Optimization complete: %d simulations, %d valid, best score %.6f",
            self.total_simulations,
            self.valid_simulations,
            self.best.score,
        )
        return ProgressUpdate(
            kind=ProgressKind.COMPLETE,
            sim_count=self.total_simulations,
            valid_count=self.valid_simulations,
            best_score=self.best.score,
            best_candidate=self.best,
            progress=1.0,
            message=message,
            result=result,
        )


def run_optimization(
    stock_data: StockData,
    settings: OptimizationSettings,
    on_progress: Callable[[ProgressUpdate], None] | None = None,
    *,
    engine_config: EngineConfig | None = None,
    seed: int | None = None,
    inline: bool = False,
) -> OptimizationResult:
    """Run to completion and return the final result, raising on ``error`` updates."""

    orchestrator = ParallelOrchestrator(
        stock_data,
        settings,
        engine_config=engine_config,
        seed=seed,
        inline=inline,
    )
    for update in orchestrator.stream():
        if update.kind is ProgressKind.PROGRESS:
            if on_progress is not None:
                on_progress(update)
            continue
        if update.kind is ProgressKind.ERROR:
            if update.cancelled:
                raise OptimizationCancelledError(update.message or CANCELLED_MESSAGE)
            raise OptimizationError(update.message or "optimization failed")
        if update.result is None:
            raise OptimizationError(update.message or "optimization completed without a result")
        return update.result
    raise OptimizationError("optimization stream ended without a terminal update")
