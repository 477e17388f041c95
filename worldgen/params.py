from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from .errors import ConfigValidationError


GeneKey = Tuple[str, str]  # (rule_id, parameter name)
Genome = Dict[GeneKey, float]
Overrides = Dict[str, Dict[str, float]]


@dataclass(frozen=True)
class ParameterSpec:
    name: str
    default: float
    min: float
    max: float
    integer: bool = False
    # fitness components this parameter is known to influence (used for targeted mutation)
    components: Tuple[str, ...] = ()

    @property
    def span(self) -> float:
        return float(self.max - self.min)

    @property
    def optimizable(self) -> bool:
        return self.max > self.min

    def clamp(self, value: float) -> float:
        v = float(min(self.max, max(self.min, float(value))))
        return float(round(v)) if self.integer else v

    def contains(self, value: float) -> bool:
        return self.min <= float(value) <= self.max


def parse_parameter(name: str, doc: Any) -> ParameterSpec:
    """A bare number declares a fixed parameter; a mapping declares default and bounds."""
    if isinstance(doc, (int, float)) and not isinstance(doc, bool):
        return ParameterSpec(name=name, default=float(doc), min=float(doc), max=float(doc))
    default = float(doc["default"])
    comps = doc.get("components", ()) or ()
    return ParameterSpec(
        name=name,
        default=default,
        min=float(doc.get("min", default)),
        max=float(doc.get("max", default)),
        integer=bool(doc.get("integer", False)),
        components=(comps,) if isinstance(comps, str) else tuple(str(c) for c in comps),
    )


def parse_parameters(doc: Optional[Mapping[str, Any]]) -> Dict[str, ParameterSpec]:
    return {str(name): parse_parameter(str(name), v) for name, v in (doc or {}).items()}


def check_parameters(rule_id: str, specs: Mapping[str, ParameterSpec]) -> List[str]:
    issues: List[str] = []
    for spec in specs.values():
        if spec.min > spec.max:
            issues.append(f"rule {rule_id!r}: parameter {spec.name!r} has min > max")
        elif not spec.contains(spec.default):
            issues.append(
                f"rule {rule_id!r}: parameter {spec.name!r} default {spec.default} outside [{spec.min}, {spec.max}]"
            )
    return issues


class ParameterSpace:
    """Every declared (rule_id, parameter) with its bounds, in stable sorted order.

    Genes are the optimizable subset (max > min). Fixed parameters still take part in
    override merging but are never mutated.
    """

    def __init__(self, specs: Mapping[str, Mapping[str, ParameterSpec]]):
        self._specs: Dict[str, Dict[str, ParameterSpec]] = {r: dict(p) for r, p in specs.items()}
        self.keys: List[GeneKey] = sorted(
            (rule_id, name)
            for rule_id, params in self._specs.items()
            for name, spec in params.items()
            if spec.optimizable
        )
        self.lower = np.array([self.spec(k).min for k in self.keys], dtype=float)
        self.upper = np.array([self.spec(k).max for k in self.keys], dtype=float)

    def __len__(self) -> int:
        return len(self.keys)

    def spec(self, key: GeneKey) -> ParameterSpec:
        rule_id, name = key
        return self._specs[rule_id][name]

    @property
    def spans(self) -> np.ndarray:
        return self.upper - self.lower

    def defaults(self) -> Genome:
        return {k: self.spec(k).default for k in self.keys}

    def clamp(self, genome: Mapping[GeneKey, float]) -> Genome:
        return {k: self.spec(k).clamp(genome.get(k, self.spec(k).default)) for k in self.keys}

    def to_vector(self, genome: Mapping[GeneKey, float]) -> np.ndarray:
        return np.array([float(genome[k]) for k in self.keys], dtype=float)

    def from_vector(self, vec: Sequence[float]) -> Genome:
        return self.clamp({k: float(v) for k, v in zip(self.keys, vec)})

    def normalized(self, genome: Mapping[GeneKey, float]) -> np.ndarray:
        spans = np.where(self.spans > 0, self.spans, 1.0)
        return (self.to_vector(genome) - self.lower) / spans

    def random_around(self, center: Mapping[GeneKey, float], spread: float, rng: np.random.Generator) -> Genome:
        """center +/- uniform(spread * span), clamped."""
        offsets = rng.uniform(-1.0, 1.0, size=len(self.keys)) * float(spread) * self.spans
        return self.from_vector(self.to_vector(center) + offsets)

    # ------------------------------------------------------------- overrides

    def validate_overrides(self, overrides: Mapping[str, Mapping[str, Any]]) -> List[str]:
        issues: List[str] = []
        for rule_id, params in (overrides or {}).items():
            if rule_id not in self._specs:
                issues.append(f"override references unknown rule {rule_id!r}")
                continue
            if not isinstance(params, Mapping):
                issues.append(f"override for rule {rule_id!r} must be a mapping of parameter values")
                continue
            for name, value in params.items():
                spec = self._specs[rule_id].get(name)
                if spec is None:
                    issues.append(f"override references unknown parameter {rule_id}.{name}")
                    continue
                try:
                    v = float(value)
                except (TypeError, ValueError):
                    issues.append(f"override {rule_id}.{name} is not numeric: {value!r}")
                    continue
                if not spec.contains(v):
                    issues.append(f"override {rule_id}.{name}={v} outside [{spec.min}, {spec.max}]")
        return issues

    def effective(self, overrides: Optional[Mapping[str, Mapping[str, Any]]] = None) -> Overrides:
        """Deep-merge overrides onto declared defaults; out-of-bounds values are rejected."""
        issues = self.validate_overrides(overrides or {})
        if issues:
            raise ConfigValidationError(issues)
        out: Overrides = {r: {n: s.default for n, s in params.items()} for r, params in self._specs.items()}
        for rule_id, params in (overrides or {}).items():
            for name, value in params.items():
                out[rule_id][name] = float(value)
        return out


def merge_overrides(base: Mapping[str, Mapping[str, float]], overrides: Mapping[str, Mapping[str, float]]) -> Overrides:
    """Deep merge keyed by (rule_id, parameter); override leaves replace base leaves."""
    out: Overrides = {r: dict(p) for r, p in base.items()}
    for rule_id, params in overrides.items():
        out.setdefault(rule_id, {}).update({n: float(v) for n, v in params.items()})
    return out


def genome_to_overrides(genome: Mapping[GeneKey, float]) -> Overrides:
    out: Overrides = {}
    for (rule_id, name), value in sorted(genome.items()):
        out.setdefault(rule_id, {})[name] = float(value)
    return out


def overrides_to_genome(overrides: Mapping[str, Mapping[str, float]]) -> Genome:
    return {(r, n): float(v) for r, params in overrides.items() for n, v in params.items()}
