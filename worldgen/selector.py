from __future__ import annotations

from typing import Callable, Dict, List, Sequence

import numpy as np

from .config import SelectorTuning
from .distribution import DeviationVector
from .rules import GenerativeRule


class RuleSelector:
    """Turns era weights and the current deviation vector into rule selection weights.

    weight = era_weight * clamp(kind_factor * prominence_factor * relationship_factor * cluster_factor)

    - kind_factor: mean over produced entity kinds of 1 + sensitivity * (deviation / target)
    - prominence_factor: boosts rules producing under-target prominence levels
    - relationship_factor: penalizes rules producing kinds above max_single_kind_ratio
    - cluster_factor: boosts "cluster" rules below the cluster range, "disperse" rules above it
    """

    def __init__(self, tuning: SelectorTuning):
        self.tuning = tuning

    def multiplier(self, rule: GenerativeRule, dev: DeviationVector) -> float:
        t = self.tuning
        targets = dev.targets
        mult = 1.0

        factors: List[float] = []
        for kind in rule.produces.entity_kinds:
            target = targets.entity_kinds.get(kind)
            if target is None:
                continue
            if target > 0:
                rel = dev.entity_kinds[kind] / target
            else:
                rel = dev.entity_kinds[kind]  # any presence of a zero-target kind is surplus
            factors.append(max(t.min_multiplier, 1.0 + t.deficit_sensitivity * rel))
        if factors:
            mult *= float(np.mean(factors))

        for level in rule.produces.prominence:
            target = targets.prominence.get(level, 0.0)
            gap = dev.prominence.get(level, 0.0)
            if target > 0 and gap > 0:
                mult *= 1.0 + t.prominence_boost * gap / target

        cap = targets.max_single_kind_ratio
        for kind in rule.produces.relationship_kinds:
            surplus = -dev.relationship_kinds.get(kind, 0.0)
            if surplus > 0:
                mult /= 1.0 + t.relationship_penalty * surplus / max(cap, 1e-9)

        lo, hi = targets.connectivity.cluster_range
        clusters = dev.stats.connectivity.clusters
        if rule.shape == "cluster" and clusters < lo:
            mult *= 1.0 + t.cluster_boost
        elif rule.shape == "disperse" and clusters > hi:
            mult *= 1.0 + t.cluster_boost

        return float(min(t.max_multiplier, max(t.min_multiplier, mult)))

    def weights(
        self,
        rules: Sequence[GenerativeRule],
        dev: DeviationVector,
        era_weight: Callable[[str], float],
    ) -> Dict[str, float]:
        out: Dict[str, float] = {}
        for rule in sorted(rules, key=lambda r: r.id):
            base = max(0.0, float(era_weight(rule.id)))
            out[rule.id] = base * self.multiplier(rule, dev) if base > 0 else 0.0
        return out

    @staticmethod
    def sample(weights: Dict[str, float], budget: int, rng: np.random.Generator) -> List[str]:
        """Weighted sampling with replacement over rule ids in sorted order."""
        ids = sorted(k for k, w in weights.items() if w > 0)
        if not ids or budget <= 0:
            return []
        w = np.array([weights[k] for k in ids], dtype=float)
        picks = rng.choice(len(ids), size=int(budget), replace=True, p=w / w.sum())
        return [ids[int(i)] for i in picks]
