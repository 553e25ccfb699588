"""A single search worker and the process entry point that hosts it."""

from __future__ import annotations

import logging
import random
from typing import Iterator

from .config import OptimizationSettings
from .data_loader import StockData
from .evaluator import PortfolioEvaluator
from .kernels import ScoringBackend
from .results import ProgressKind, ProgressUpdate
from .search import build_search_engine

__all__ = ["SearchWorker", "run_worker_process"]

logger = logging.getLogger(__name__)


class SearchWorker:
    """Runs one independent search engine; owns its RNG, population and scoring backend."""

    def __init__(
        self,
        worker_id: int,
        stock_data: StockData,
        *,
        seed: int | None = None,
        backend: str | ScoringBackend | None = None,
        report_every: int = 1_000,
    ) -> None:
        self.worker_id = worker_id
        self.stock_data = stock_data
        self.seed = seed
        self.backend = backend
        self.report_every = report_every

    def run(self, settings: OptimizationSettings) -> Iterator[ProgressUpdate]:
        """Yield progress deltas, then exactly one ``complete`` or ``error`` update."""

        try:
            evaluator = PortfolioEvaluator(self.stock_data, settings, backend=self.backend)
            engine = build_search_engine(
                evaluator,
                settings,
                rng=random.Random(self.seed),
                report_every=self.report_every,
                worker_id=self.worker_id,
            )
            logger.info("Worker %d started (%d simulations)", self.worker_id, settings.simulations)
            yield from engine.run()
        except Exception as exc:
            logger.exception("Worker %d failed", self.worker_id)
            yield ProgressUpdate(
                kind=ProgressKind.ERROR,
                worker_id=self.worker_id,
                message=str(exc) or type(exc).__name__,
            )
            return
        logger.info(
            "Worker %d finished: %d simulations, %d valid",
            self.worker_id,
            engine.simulations,
            engine.valid_count,
        )
        yield ProgressUpdate(kind=ProgressKind.COMPLETE, worker_id=self.worker_id, progress=1.0)


def run_worker_process(
    worker_id: int,
    stock_data: StockData,
    settings: OptimizationSettings,
    seed: int | None,
    backend: str,
    report_every: int,
    queue,
) -> None:
    """Process target: forward every update of one worker onto ``queue``."""

    worker = SearchWorker(worker_id, stock_data, seed=seed, backend=backend, report_every=report_every)
    for update in worker.run(settings):
        queue.put(update)
