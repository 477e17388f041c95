from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml


@dataclass(frozen=True)
class SelectorTuning:
    deficit_sensitivity: float = 2.0  # multiplier per unit of relative entity-kind deviation
    prominence_boost: float = 1.0
    relationship_penalty: float = 2.0
    cluster_boost: float = 0.5
    min_multiplier: float = 0.1
    max_multiplier: float = 5.0


@dataclass(frozen=True)
class EngineConfig:
    max_epochs: int = 20
    max_ticks: int = 400
    ticks_per_epoch: int = 10
    growth_per_epoch: int = 5
    selection_budget_factor: int = 3  # sampled rule invocations = growth_per_epoch * factor
    default_strength: float = 0.5
    stagnation_epochs: Optional[int] = None  # None disables stagnation stop
    max_entities: int = 2000  # hard per-run memory bound
    predicate_max_depth: Optional[int] = None  # None = unlimited and/or nesting
    selector: SelectorTuning = field(default_factory=SelectorTuning)


FITNESS_COMPONENTS = (
    "entity_distribution",
    "prominence_distribution",
    "relationship_diversity",
    "connectivity",
    "violation",
)


@dataclass(frozen=True)
class FitnessConfig:
    weights: Dict[str, float] = field(
        default_factory=lambda: {
            "entity_distribution": 0.3,
            "prominence_distribution": 0.15,
            "relationship_diversity": 0.15,
            "connectivity": 0.2,
            "violation": 0.2,
        }
    )
    # exp(-rate / k); k chosen so that 15 violations/tick scores ~0.51
    violation_decay: float = 22.3


@dataclass(frozen=True)
class MutationConfig:
    strategy: str = "hybrid"  # "impact" | "component" | "annealing" | "hybrid"
    initial_rate: float = 0.3
    final_rate: float = 0.05
    schedule: str = "cosine"  # "linear" | "exponential" | "cosine"
    impact_learning_rate: float = 0.3
    impact_window: int = 10
    high_impact: float = 0.7
    low_impact: float = 0.3
    impact_boost: float = 3.0
    impact_damp: float = 0.5
    component_threshold: float = 0.7
    component_boost: float = 2.0
    sigma_fraction: float = 0.15
    max_rate: float = 0.5


@dataclass(frozen=True)
class SearchConfig:
    population_size: int = 12
    max_generations: int = 10
    elitism: int = 2
    selection: str = "tournament"  # "tournament" | "roulette"
    tournament_size: int = 3
    crossover_rate: float = 0.7
    initial_spread: float = 0.25
    workers: int = 0  # 0 = evaluate in-process
    runs_per_genome: int = 1
    seed: int = 0
    stagnation_window: int = 5
    stop_on_stagnation: bool = False
    diversity_floor: float = 0.02
    diversity_policy: str = "warn"  # "ignore" | "warn" | "inject" | "stop"
    inject_fraction: float = 0.25
    top_n: int = 5


def _require(d: Mapping[str, Any], key: str) -> Any:
    if key not in d:
        raise KeyError(f"Missing required config key: {key}")
    return d[key]


def _get(d: Mapping[str, Any], key: str, default: Any) -> Any:
    return d[key] if key in d else default


def engine_config_from_dict(d: Optional[Mapping[str, Any]]) -> EngineConfig:
    d = d or {}
    base = EngineConfig()
    sel = dict(_get(d, "selector", {}) or {})
    stag = _get(d, "stagnation_epochs", base.stagnation_epochs)
    depth = _get(d, "predicate_max_depth", base.predicate_max_depth)
    return EngineConfig(
        max_epochs=int(_get(d, "max_epochs", base.max_epochs)),
        max_ticks=int(_get(d, "max_ticks", base.max_ticks)),
        ticks_per_epoch=int(_get(d, "ticks_per_epoch", base.ticks_per_epoch)),
        growth_per_epoch=int(_get(d, "growth_per_epoch", base.growth_per_epoch)),
        selection_budget_factor=int(_get(d, "selection_budget_factor", base.selection_budget_factor)),
        default_strength=float(_get(d, "default_strength", base.default_strength)),
        stagnation_epochs=None if stag is None else int(stag),
        max_entities=int(_get(d, "max_entities", base.max_entities)),
        predicate_max_depth=None if depth is None else int(depth),
        selector=SelectorTuning(**sel),
    )


def fitness_config_from_dict(d: Optional[Mapping[str, Any]]) -> FitnessConfig:
    d = d or {}
    base = FitnessConfig()
    weights = dict(base.weights)
    weights.update({str(k): float(v) for k, v in (_get(d, "weights", {}) or {}).items()})
    return FitnessConfig(weights=weights, violation_decay=float(_get(d, "violation_decay", base.violation_decay)))


def mutation_config_from_dict(d: Optional[Mapping[str, Any]]) -> MutationConfig:
    return MutationConfig(**dict(d or {}))


def search_config_from_dict(d: Optional[Mapping[str, Any]]) -> SearchConfig:
    return SearchConfig(**dict(d or {}))


def check_configs(engine: EngineConfig, fitness: FitnessConfig, mutation: MutationConfig, search: SearchConfig) -> List[str]:
    issues: List[str] = []
    if engine.ticks_per_epoch < 1 or engine.max_epochs < 1:
        issues.append("engine: ticks_per_epoch and max_epochs must be >= 1")
    if not 0.0 <= engine.default_strength <= 1.0:
        issues.append("engine: default_strength must lie in [0, 1]")

    unknown = sorted(set(fitness.weights) - set(FITNESS_COMPONENTS))
    if unknown:
        issues.append(f"fitness: unknown weight component(s) {unknown}")
    total = sum(fitness.weights.values())
    if abs(total - 1.0) > 1e-6:
        issues.append(f"fitness: weights sum to {total:.4f}, expected 1.0")
    if fitness.violation_decay <= 0:
        issues.append("fitness: violation_decay must be > 0")

    if mutation.strategy not in ("impact", "component", "annealing", "hybrid"):
        issues.append(f"mutation: unknown strategy {mutation.strategy!r}")
    if mutation.schedule not in ("linear", "exponential", "cosine"):
        issues.append(f"mutation: unknown schedule {mutation.schedule!r}")

    if search.selection not in ("tournament", "roulette"):
        issues.append(f"search: unknown selection {search.selection!r}")
    if search.diversity_policy not in ("ignore", "warn", "inject", "stop"):
        issues.append(f"search: unknown diversity_policy {search.diversity_policy!r}")
    if search.max_generations < 1:
        issues.append("search: max_generations must be >= 1")
    if search.population_size < 2:
        issues.append("search: population_size must be >= 2")
    if not 0 <= search.elitism < search.population_size:
        issues.append("search: elitism must be in [0, population_size)")
    if search.workers < 0:
        issues.append("search: workers must be >= 0")
    return issues


def load_yaml(path: str | Path) -> Dict[str, Any]:
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    data = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping at the top level")
    return data
