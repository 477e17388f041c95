"""
Genetic-algorithm parameter search over rule parameters.

Each generation: evaluate every genome (in parallel when workers > 0), keep the elites,
and fill the rest of the population by selection, uniform crossover and adaptive
mutation. All genomes are scored on the same derived seeds, so fitness differences
come from parameters rather than from run-to-run noise.
"""

from __future__ import annotations

import logging
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from .config import FITNESS_COMPONENTS, MutationConfig, SearchConfig, check_configs
from .engine import run_world
from .errors import ConfigValidationError
from .fitness import FitnessBreakdown, FitnessEvaluator
from .loader import WorldDefinition
from .mutation import AdaptiveMutation, mean_pairwise_distance
from .params import Genome, Overrides, genome_to_overrides
from .rng import derive_seed, make_rng, seed_stream
from .tracker import EvolutionTracker, GenerationRecord


log = logging.getLogger(__name__)


@dataclass(frozen=True)
class EvalTask:
    world: WorldDefinition
    overrides: Overrides
    seeds: Tuple[int, ...]


def evaluate_genome(task: EvalTask) -> Tuple[float, Dict[str, float]]:
    """Top-level (picklable) worker: mean fitness over the task's seeds."""
    evaluator = FitnessEvaluator(task.world.fitness)
    runs = [evaluator.evaluate_run(run_world(task.world, seed=s, overrides=task.overrides)) for s in task.seeds]
    mean = FitnessBreakdown.mean(runs)
    return mean.total, mean.to_dict()


@dataclass
class Evaluation:
    genome: Genome
    fitness: float
    breakdown: Dict[str, float]
    parent: Optional[Genome] = None
    parent_fitness: Optional[float] = None


@dataclass
class SearchResult:
    best_genome: Genome
    best_fitness: float
    best_breakdown: Dict[str, float]
    generations: int
    stop_reason: str
    tracker: EvolutionTracker
    diagnostics: List[str] = field(default_factory=list)

    @property
    def best_overrides(self) -> Overrides:
        return genome_to_overrides(self.best_genome)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "best_fitness": self.best_fitness,
            "best_breakdown": dict(self.best_breakdown),
            "best_overrides": self.best_overrides,
            "generations": self.generations,
            "stop_reason": self.stop_reason,
            "diagnostics": list(self.diagnostics),
        }


class ParameterSearch:
    def __init__(
        self,
        world: WorldDefinition,
        *,
        config: Optional[SearchConfig] = None,
        mutation: Optional[MutationConfig] = None,
    ):
        self.world = world
        self.config = config or world.search
        mutation = mutation or world.mutation
        # caller-replaced configs get the same checks the loader ran
        issues = check_configs(world.engine, world.fitness, mutation, self.config)
        if issues:
            raise ConfigValidationError(issues)
        self.space = world.parameter_space()
        self.mutation = AdaptiveMutation(self.space, mutation, self.config.max_generations)
        self.tracker = EvolutionTracker(top_n=self.config.top_n)
        self.seeds = seed_stream(self.config.seed, "eval", self.config.runs_per_genome)
        self.rng = make_rng(derive_seed(self.config.seed, "search"))

    # --------------------------------------------------------- evaluation

    def evaluate(self, genomes: Sequence[Genome]) -> List[Tuple[float, Dict[str, float]]]:
        tasks = [EvalTask(self.world, genome_to_overrides(g), self.seeds) for g in genomes]
        if self.config.workers > 0:
            with ProcessPoolExecutor(max_workers=self.config.workers) as ex:
                return list(ex.map(evaluate_genome, tasks))
        return [evaluate_genome(t) for t in tasks]

    # ----------------------------------------------------------- operators

    def initial_population(self) -> List[Genome]:
        defaults = self.space.defaults()
        pop = [defaults]
        while len(pop) < self.config.population_size:
            pop.append(self.space.random_around(defaults, self.config.initial_spread, self.rng))
        return pop

    def select(self, evals: Sequence[Evaluation]) -> Evaluation:
        if self.config.selection == "roulette":
            fit = np.array([max(0.0, e.fitness) for e in evals], dtype=float)
            if fit.sum() <= 0:
                return evals[int(self.rng.integers(len(evals)))]
            return evals[int(self.rng.choice(len(evals), p=fit / fit.sum()))]
        k = min(len(evals), max(1, self.config.tournament_size))
        contenders = [int(i) for i in self.rng.choice(len(evals), size=k, replace=False)]
        return evals[max(contenders, key=lambda i: (evals[i].fitness, -i))]

    def crossover(self, a: Genome, b: Genome) -> Genome:
        mask = self.rng.random(len(self.space.keys)) < 0.5
        return {k: (a[k] if take_a else b[k]) for k, take_a in zip(self.space.keys, mask)}

    def diversity(self, genomes: Sequence[Genome]) -> float:
        return mean_pairwise_distance(self.space.normalized(g) for g in genomes)

    def _offspring(self, evals: Sequence[Evaluation], generation: int, scores: Mapping[str, float]) -> List[Tuple[Genome, Genome, float]]:
        out: List[Tuple[Genome, Genome, float]] = []
        while len(out) < self.config.population_size - self.config.elitism:
            p1 = self.select(evals)
            if self.rng.random() < self.config.crossover_rate:
                child = self.crossover(p1.genome, self.select(evals).genome)
            else:
                child = dict(p1.genome)
            child = self.mutation.mutate(child, generation, self.rng, scores)
            out.append((child, p1.genome, p1.fitness))
        return out

    # ----------------------------------------------------------------- run

    def run(self) -> SearchResult:
        cfg = self.config
        genomes = self.initial_population()
        evals = [Evaluation(g, f, b) for g, (f, b) in zip(genomes, self.evaluate(genomes))]
        history: List[float] = []
        diagnostics: List[str] = []
        stop_reason = "max_generations"
        generation = 0

        for generation in range(cfg.max_generations):
            evals.sort(key=lambda e: -e.fitness)
            for e in evals:
                self.tracker.offer(e.fitness, generation, e.genome, e.breakdown)
                if e.parent is not None:
                    self.mutation.observe(e.parent, e.genome, e.parent_fitness, e.fitness)

            fits = [e.fitness for e in evals]
            div = self.diversity([e.genome for e in evals])
            best = evals[0]
            history.append(best.fitness)
            notes: List[str] = []

            w = cfg.stagnation_window
            stagnated = w > 0 and len(history) > w and history[-1] <= history[-1 - w] + 1e-12
            if stagnated:
                notes.append(f"stagnation: no improvement over {w} generation(s)")
            collapsed = len(self.space) > 0 and div < cfg.diversity_floor
            if collapsed and cfg.diversity_policy != "ignore":
                notes.append(f"diversity collapse: {div:.4f} < {cfg.diversity_floor}")

            self.tracker.record(
                GenerationRecord(
                    generation=generation,
                    best=float(best.fitness),
                    mean=float(np.mean(fits)),
                    worst=float(min(fits)),
                    diversity=div,
                    base_rate=self.mutation.base_rate(generation),
                    best_breakdown=dict(best.breakdown),
                    diagnostics=notes,
                )
            )
            for note in notes:
                log.warning("generation %d: %s", generation, note)
                diagnostics.append(f"generation {generation}: {note}")
            log.info("generation %d best=%.4f mean=%.4f diversity=%.4f", generation, best.fitness, np.mean(fits), div)

            if stagnated and cfg.stop_on_stagnation:
                stop_reason = "stagnation"
                break
            if collapsed and cfg.diversity_policy == "stop":
                stop_reason = "diversity_collapse"
                break
            if generation == cfg.max_generations - 1:
                break

            scores = {k: v for k, v in best.breakdown.items() if k in FITNESS_COMPONENTS}
            children = self._offspring(evals, generation, scores)
            if collapsed and cfg.diversity_policy == "inject":
                n_inject = min(len(children), max(1, int(round(cfg.inject_fraction * cfg.population_size))))
                defaults = self.space.defaults()
                for i in range(len(children) - n_inject, len(children)):
                    children[i] = (self.space.random_around(defaults, 1.0, self.rng), None, None)

            child_genomes = [c[0] for c in children]
            scored = self.evaluate(child_genomes)
            evals = [Evaluation(e.genome, e.fitness, e.breakdown) for e in evals[: cfg.elitism]] + [
                Evaluation(g, f, b, parent=p, parent_fitness=pf) for (g, p, pf), (f, b) in zip(children, scored)
            ]

        best = self.tracker.best
        return SearchResult(
            best_genome=dict(best.genome),
            best_fitness=best.fitness,
            best_breakdown=dict(best.breakdown),
            generations=generation + 1,
            stop_reason=stop_reason,
            tracker=self.tracker,
            diagnostics=diagnostics,
        )
