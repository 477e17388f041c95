from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Dict, Mapping

import numpy as np

from .config import FitnessConfig
from .distribution import DeviationVector


@dataclass(frozen=True)
class FitnessBreakdown:
    entity_distribution: float
    prominence_distribution: float
    relationship_diversity: float
    connectivity: float
    violation: float
    violation_rate: float
    total: float

    def components(self) -> Dict[str, float]:
        return {
            "entity_distribution": self.entity_distribution,
            "prominence_distribution": self.prominence_distribution,
            "relationship_diversity": self.relationship_diversity,
            "connectivity": self.connectivity,
            "violation": self.violation,
        }

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)

    @classmethod
    def mean(cls, items) -> "FitnessBreakdown":
        items = list(items)
        fields = {k: float(np.mean([getattr(b, k) for b in items])) for k in asdict(items[0])}
        return cls(**fields)


def _histogram_fit(deviation: Mapping[str, float], actual: Mapping[str, float]) -> float:
    """1 - total variation distance between target and actual proportions.

    `deviation` holds target - actual for every targeted key; observed keys without a
    target count with a target of 0.
    """
    if not deviation:
        return 1.0
    untargeted = sum(r for k, r in actual.items() if k not in deviation)
    tv = 0.5 * (sum(abs(v) for v in deviation.values()) + untargeted)
    return float(max(0.0, 1.0 - tv))


def _clip01(x: float) -> float:
    return float(min(1.0, max(0.0, x)))


class FitnessEvaluator:
    """Scores a finished run; every component lies in [0, 1] and higher is better."""

    def __init__(self, config: FitnessConfig):
        self.config = config

    def violation_score(self, rate: float) -> float:
        return math.exp(-max(0.0, float(rate)) / self.config.violation_decay)

    def connectivity_score(self, dev: DeviationVector) -> float:
        conn = dev.stats.connectivity
        t = dev.targets.connectivity
        lo, hi = t.cluster_range
        if lo <= conn.clusters <= hi:
            cluster = 1.0
        else:
            gap = lo - conn.clusters if conn.clusters < lo else conn.clusters - hi
            cluster = _clip01(1.0 - gap / max(hi, 1.0))
        if conn.isolated_ratio <= t.max_isolated_ratio:
            isolated = 1.0
        else:
            isolated = _clip01(1.0 - (conn.isolated_ratio - t.max_isolated_ratio) / max(1e-9, 1.0 - t.max_isolated_ratio))
        intra = _clip01(1.0 - abs(dev.intra_density))
        inter = _clip01(1.0 - abs(dev.inter_density))
        return float(np.mean([cluster, intra, inter, isolated]))

    def component_scores(self, dev: DeviationVector, violation_rate: float) -> Dict[str, float]:
        return {
            "entity_distribution": _histogram_fit(dev.entity_kinds, dev.stats.entity_kind_ratios),
            "prominence_distribution": _histogram_fit(dev.prominence, dev.stats.prominence_ratios),
            "relationship_diversity": _clip01(1.0 - abs(dev.relationship_diversity)),
            "connectivity": self.connectivity_score(dev),
            "violation": self.violation_score(violation_rate),
        }

    def evaluate(self, dev: DeviationVector, violation_rate: float) -> FitnessBreakdown:
        scores = self.component_scores(dev, violation_rate)
        total = sum(self.config.weights.get(k, 0.0) * v for k, v in scores.items())
        return FitnessBreakdown(violation_rate=float(violation_rate), total=float(total), **scores)

    def evaluate_run(self, result) -> FitnessBreakdown:
        return self.evaluate(result.deviation, result.violation_rate)
