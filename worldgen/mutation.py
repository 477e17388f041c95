"""
Adaptive per-parameter mutation.

Three signals combine multiplicatively into a mutation probability and a Gaussian
step size for every gene:

- impact: an EMA of |corr(|parameter change| / span, |fitness change|)| over a sliding
  window of parent->child observations (starts at 0.5, i.e. unknown);
- component focus: genes whose declared fitness components are currently weak;
- annealing: a global base rate decaying from initial_rate to final_rate.
"""

from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, Dict, Iterable, List, Mapping, Set, Tuple

import numpy as np

from .config import MutationConfig
from .params import GeneKey, Genome, ParameterSpace


class MutationStrategy(Enum):
    IMPACT = "impact"
    COMPONENT_FOCUS = "component"
    ANNEALING = "annealing"
    HYBRID = "hybrid"

    @property
    def uses_impact(self) -> bool:
        return self in (MutationStrategy.IMPACT, MutationStrategy.HYBRID)

    @property
    def uses_components(self) -> bool:
        return self in (MutationStrategy.COMPONENT_FOCUS, MutationStrategy.HYBRID)

    @property
    def anneals(self) -> bool:
        return self in (MutationStrategy.ANNEALING, MutationStrategy.HYBRID)


class AnnealingSchedule(Enum):
    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    COSINE = "cosine"

    def fraction(self, progress: float) -> float:
        """Share of the (initial - final) gap still remaining at `progress` in [0, 1]."""
        p = min(1.0, max(0.0, progress))
        if self is AnnealingSchedule.LINEAR:
            return 1.0 - p
        if self is AnnealingSchedule.EXPONENTIAL:
            return math.exp(-5.0 * p)
        return 0.5 * (1.0 + math.cos(math.pi * p))


@dataclass(frozen=True)
class GeneRate:
    probability: float
    sigma: float


class AdaptiveMutation:
    def __init__(self, space: ParameterSpace, config: MutationConfig, max_generations: int):
        self.space = space
        self.config = config
        self.strategy = MutationStrategy(config.strategy)
        self.schedule = AnnealingSchedule(config.schedule)
        self.max_generations = max(1, int(max_generations))
        self.impact: Dict[GeneKey, float] = {k: 0.5 for k in space.keys}
        self._window: Dict[GeneKey, Deque[Tuple[float, float]]] = {
            k: deque(maxlen=max(3, config.impact_window)) for k in space.keys
        }

    # ------------------------------------------------------------ signals

    def base_rate(self, generation: int) -> float:
        cfg = self.config
        if not self.strategy.anneals:
            return cfg.initial_rate
        progress = generation / max(1, self.max_generations - 1)
        return cfg.final_rate + (cfg.initial_rate - cfg.final_rate) * self.schedule.fraction(progress)

    def impact_multiplier(self, key: GeneKey) -> float:
        if not self.strategy.uses_impact:
            return 1.0
        v = self.impact[key]
        if v > self.config.high_impact:
            return self.config.impact_boost
        if v < self.config.low_impact:
            return self.config.impact_damp
        return 1.0

    def component_multiplier(self, key: GeneKey, weak: Set[str]) -> float:
        if not self.strategy.uses_components:
            return 1.0
        comps = self.space.spec(key).components
        return self.config.component_boost if any(c in weak for c in comps) else 1.0

    def weak_components(self, scores: Mapping[str, float]) -> Set[str]:
        return {k for k, v in scores.items() if v < self.config.component_threshold}

    def rates(self, generation: int, component_scores: Mapping[str, float]) -> Dict[GeneKey, GeneRate]:
        base = self.base_rate(generation)
        weak = self.weak_components(component_scores)
        out: Dict[GeneKey, GeneRate] = {}
        for key in self.space.keys:
            m = self.impact_multiplier(key) * self.component_multiplier(key, weak)
            out[key] = GeneRate(
                probability=min(self.config.max_rate, base * m),
                sigma=self.config.sigma_fraction * self.space.spec(key).span * m,
            )
        return out

    # ----------------------------------------------------------- learning

    def observe(self, parent: Mapping[GeneKey, float], child: Mapping[GeneKey, float], parent_fitness: float, child_fitness: float) -> None:
        df = abs(float(child_fitness) - float(parent_fitness))
        lr = self.config.impact_learning_rate
        for key in self.space.keys:
            span = self.space.spec(key).span or 1.0
            window = self._window[key]
            window.append((abs(float(child[key]) - float(parent[key])) / span, df))
            if len(window) < 3:
                continue
            arr = np.asarray(window, dtype=float)
            if np.std(arr[:, 0]) == 0 or np.std(arr[:, 1]) == 0:
                continue
            corr = float(np.corrcoef(arr[:, 0], arr[:, 1])[0, 1])
            self.impact[key] = (1.0 - lr) * self.impact[key] + lr * abs(corr)

    # ----------------------------------------------------------- mutation

    def mutate(
        self,
        genome: Mapping[GeneKey, float],
        generation: int,
        rng: np.random.Generator,
        component_scores: Mapping[str, float],
    ) -> Genome:
        rates = self.rates(generation, component_scores)
        out: Genome = dict(genome)
        for key in self.space.keys:
            r = rates[key]
            roll = rng.random()
            step = rng.normal(0.0, 1.0)
            if roll < r.probability:
                out[key] = float(out[key]) + step * r.sigma
        return self.space.clamp(out)

    def impact_report(self, top_n: int = 10) -> List[Dict[str, object]]:
        ranked = sorted(self.impact.items(), key=lambda kv: (-kv[1], kv[0]))
        return [
            {"rule": rule_id, "parameter": name, "impact": float(v), "observations": len(self._window[(rule_id, name)])}
            for (rule_id, name), v in ranked[: int(top_n)]
        ]


def mean_pairwise_distance(vectors: Iterable[np.ndarray]) -> float:
    """Mean Euclidean distance between all pairs of normalized genomes, scaled by sqrt(dim)."""
    arr = np.asarray(list(vectors), dtype=float)
    if arr.ndim != 2 or arr.shape[0] < 2 or arr.shape[1] == 0:
        return 0.0
    diffs = arr[:, None, :] - arr[None, :, :]
    dists = np.sqrt((diffs ** 2).sum(axis=-1)) / math.sqrt(arr.shape[1])
    n = arr.shape[0]
    return float(dists[np.triu_indices(n, k=1)].mean())
