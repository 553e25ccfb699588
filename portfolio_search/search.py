"""Search strategies: genetic, Monte Carlo and grid sampling over portfolio weights."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Iterator, List, Sequence

from .config import OptimizationSettings, SearchAlgorithm
from .evaluator import PortfolioEvaluator
from .results import PortfolioCandidate, ProgressKind, ProgressUpdate, ScatterPoint
from .weights import WeightVector, crossover_weights, mutate_weights

__all__ = [
    "GeneticParameters",
    "SearchEngine",
    "MonteCarloSearch",
    "GridSearch",
    "GeneticSearch",
    "build_search_engine",
]

logger = logging.getLogger(__name__)

SCATTER_SAMPLE_EVERY = 20
SCATTER_TOP_PER_GENERATION = 5


@dataclass(frozen=True, slots=True)
class GeneticParameters:
    population_cap: int = 500
    population_divisor: int = 5
    elite_fraction: float = 0.05
    tournament_size: int = 3
    mutation_rate: float = 0.2
    fill_attempts_factor: int = 10

    def population_size(self, budget: int) -> int:
        return max(2, min(self.population_cap, budget // self.population_divisor))

    def elite_count(self, population_size: int) -> int:
        return max(1, int(population_size * self.elite_fraction))


class SearchEngine:
    """Shared bookkeeping: budget, running best, valid count, scatter buffer and batched reports."""

    def __init__(
        self,
        evaluator: PortfolioEvaluator,
        settings: OptimizationSettings,
        *,
        rng: random.Random | None = None,
        report_every: int = 1_000,
        worker_id: int = 0,
    ) -> None:
        self.evaluator = evaluator
        self.settings = settings
        self.objective = evaluator.objective
        self.rng = rng or random.Random()
        self.report_every = max(1, report_every)
        self.worker_id = worker_id
        self.budget = settings.simulations
        self.simulations = 0
        self.valid_count = 0
        self.best: PortfolioCandidate | None = None
        self._pending_sims = 0
        self._pending_valid = 0
        self._best_changed = False
        self._scatter: List[ScatterPoint] = []

    @property
    def remaining(self) -> int:
        return self.budget - self.simulations

    def run(self) -> Iterator[ProgressUpdate]:
        """Spend the budget, yielding batched progress deltas, and finish with a final flush."""

        if not self.evaluator.usable_tickers:
            raise ValueError("No ticker has enough price history to build a portfolio")
        logger.debug("Worker %d starting %s search with budget %d", self.worker_id, type(self).__name__, self.budget)
        yield from self._search()
        yield self._flush()

    def _search(self) -> Iterator[ProgressUpdate]:
        raise NotImplementedError

    def _ranks_above(self, candidate: PortfolioCandidate, incumbent: PortfolioCandidate | None) -> bool:
        if incumbent is None:
            return True
        if candidate.valid != incumbent.valid:
            return candidate.valid
        return self.objective.is_better(candidate.score, incumbent.score)

    def _evaluate(self, weights: WeightVector, *, sample: bool = False) -> PortfolioCandidate | None:
        return self._record(self.evaluator.evaluate(weights), sample=sample)

    def _record(self, candidate: PortfolioCandidate | None, *, sample: bool = False) -> PortfolioCandidate | None:
        """Count one simulation against the budget and track ``candidate`` as a possible best."""

        self.simulations += 1
        self._pending_sims += 1
        if candidate is None:
            return None
        if candidate.valid:
            self.valid_count += 1
            self._pending_valid += 1
        if sample:
            self._scatter.append(candidate.to_scatter())
        if self._ranks_above(candidate, self.best):
            self.best = candidate
            self._best_changed = True
        return candidate

    def _report_due(self) -> bool:
        return self._pending_sims >= self.report_every

    def _flush(self) -> ProgressUpdate:
        update = ProgressUpdate(
            kind=ProgressKind.PROGRESS,
            worker_id=self.worker_id,
            sim_count=self._pending_sims,
            valid_count=self._pending_valid,
            best_score=self.best.score if self.best is not None else None,
            best_candidate=self.best if self._best_changed else None,
            scatter_chunk=self._scatter,
            progress=self.simulations / self.budget if self.budget else 1.0,
        )
        self._pending_sims = 0
        self._pending_valid = 0
        self._best_changed = False
        self._scatter = []
        return update


class MonteCarloSearch(SearchEngine):
    """Independent random draws from the weight generator."""

    def _generate(self) -> WeightVector:
        return self.evaluator.space.sample(self.rng)

    def _search(self) -> Iterator[ProgressUpdate]:
        for index in range(self.budget):
            self._evaluate(self._generate(), sample=index % SCATTER_SAMPLE_EVERY == 0)
            if self._report_due():
                yield self._flush()


class GridSearch(MonteCarloSearch):
    """Monte Carlo over the 5%-step weight lattice."""

    def _generate(self) -> WeightVector:
        return self.evaluator.space.sample_discrete(self.rng)


class GeneticSearch(SearchEngine):
    """Elitist genetic algorithm with tournament selection, crossover and mutation."""

    def __init__(self, *args, parameters: GeneticParameters | None = None, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.parameters = parameters or GeneticParameters()
        self.population_size = self.parameters.population_size(self.budget)
        self.generation = 0

    def _sorted(self, population: Sequence[PortfolioCandidate]) -> List[PortfolioCandidate]:
        return sorted(population, key=lambda candidate: self.objective.sort_key(candidate.score))

    def _tournament(self, population: Sequence[PortfolioCandidate]) -> PortfolioCandidate:
        winner = self.rng.choice(population)
        for _ in range(self.parameters.tournament_size - 1):
            challenger = self.rng.choice(population)
            if self.objective.is_better(challenger.score, winner.score):
                winner = challenger
        return winner

    def _search(self) -> Iterator[ProgressUpdate]:
        population: List[PortfolioCandidate] = []
        if self.settings.has_user_portfolio:
            seeded = self._record(self.evaluator.evaluate_user_portfolio(self.settings.user_portfolio or {}))
            if seeded is not None:
                population.append(seeded)

        attempts = self.population_size * self.parameters.fill_attempts_factor
        while len(population) < self.population_size and attempts > 0 and self.remaining > 0:
            attempts -= 1
            candidate = self._evaluate(self.evaluator.space.sample(self.rng))
            if candidate is not None:
                population.append(candidate)
            if self._report_due():
                yield self._flush()
        if not population:
            logger.warning("Worker %d could not build an initial population", self.worker_id)
            return

        while self.remaining > 0:
            self.generation += 1
            population = self._sorted(population)
            for candidate in population[:SCATTER_TOP_PER_GENERATION]:
                self._scatter.append(candidate.to_scatter())

            next_generation = population[: self.parameters.elite_count(len(population))]
            while len(next_generation) < self.population_size and self.remaining > 0:
                parent_a = self._tournament(population)
                parent_b = self._tournament(population)
                child = crossover_weights(parent_a.weights, parent_b.weights, self.settings, self.rng)
                child = mutate_weights(child, self.settings, self.rng, rate=self.parameters.mutation_rate)
                candidate = self._evaluate(child)
                if candidate is not None:
                    next_generation.append(candidate)
                if self._report_due():
                    yield self._flush()
            population = next_generation
            logger.debug(
                "Worker %d generation %d done, best score %s",
                self.worker_id,
                self.generation,
                self.best.score if self.best is not None else None,
            )


_ENGINES = {
    SearchAlgorithm.GENETIC: GeneticSearch,
    SearchAlgorithm.MONTE_CARLO: MonteCarloSearch,
    SearchAlgorithm.GRID: GridSearch,
}


def build_search_engine(
    evaluator: PortfolioEvaluator,
    settings: OptimizationSettings,
    *,
    rng: random.Random | None = None,
    report_every: int = 1_000,
    worker_id: int = 0,
) -> SearchEngine:
    engine_cls = _ENGINES[SearchAlgorithm.parse(settings.algorithm)]
    return engine_cls(evaluator, settings, rng=rng, report_every=report_every, worker_id=worker_id)
