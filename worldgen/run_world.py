from __future__ import annotations

import argparse
import logging
from pathlib import Path

from .engine import WorldEngine
from .export import write_run_outputs
from .fitness import FitnessEvaluator
from .loader import load_overrides, load_world
from .plots import plot_distribution
from .repro import write_meta


def main() -> None:
    ap = argparse.ArgumentParser(description="Grow one world from a world document and write its snapshot")
    ap.add_argument("--config", type=str, required=True, help="world document (.yaml or .json)")
    ap.add_argument("--overrides", type=str, default=None, help="optional {rule_id: {param: value}} document")
    ap.add_argument("--seed", type=int, default=0)
    ap.add_argument("--out_dir", type=str, default="results/world")
    ap.add_argument("--no_plots", action="store_true")
    ap.add_argument("--log-level", type=str, default="INFO")
    args = ap.parse_args()

    logging.basicConfig(level=args.log_level.upper(), format="%(levelname)s %(name)s: %(message)s")

    world = load_world(args.config)
    overrides = load_overrides(args.overrides)
    result = WorldEngine(world, seed=args.seed, overrides=overrides).run()
    fitness = FitnessEvaluator(world.fitness).evaluate_run(result)

    out_dir = Path(args.out_dir)
    snap = result.snapshot()
    for p in write_run_outputs(out_dir, snap, fitness.to_dict()):
        print(f"[worldgen] wrote {p}")

    if not args.no_plots:
        stats = result.deviation.stats
        targets = result.deviation.targets
        fig = out_dir / "entity_kinds.png"
        plot_distribution(stats.entity_kind_ratios, targets.entity_kinds, fig, "Entity kinds: target vs actual")
        print(f"[worldgen] wrote {fig}")

    inputs = [Path(args.config)] + ([Path(args.overrides)] if args.overrides else [])
    write_meta(out_dir / "meta.json", {"seed": args.seed, "termination": result.stats.termination_reason}, inputs)
    print(f"[worldgen] wrote {out_dir / 'meta.json'}")
    print(
        f"[worldgen] {snap['stats']['epochs']} epochs, {len(snap['entities'])} entities, "
        f"{len(snap['relationships'])} relationships, fitness={fitness.total:.4f}"
    )


if __name__ == "__main__":
    main()
