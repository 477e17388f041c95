"""worldgen: procedural world-graph growth steered toward population targets.

Core components:

- **WorldGraph** / **PressureModel**: the entity/relationship store and bounded feedback scalars.
- **GenerativeRule** / tick rules: predicate-gated creation rules and per-tick mutators.
- **DistributionTracker** / **RuleSelector**: deviation from targets and the weights it induces.
- **WorldEngine**: the epoch loop (growth phase, simulation ticks, era checks).
- **FitnessEvaluator**, **AdaptiveMutation**, **ParameterSearch**: scoring and genetic tuning.

See:
- `configs/frontier.yaml`
- `python -m worldgen`
"""

__all__ = [
    "config",
    "distribution",
    "engine",
    "eras",
    "errors",
    "export",
    "fitness",
    "graph",
    "loader",
    "mutation",
    "params",
    "plots",
    "predicates",
    "pressures",
    "repro",
    "rng",
    "rules",
    "schema",
    "search",
    "selector",
    "systems",
    "tracker",
]
