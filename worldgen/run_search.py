from __future__ import annotations

import argparse
import logging
from dataclasses import asdict, replace
from pathlib import Path

from .export import write_json, write_yaml
from .loader import load_world
from .repro import write_meta
from .search import ParameterSearch


def main() -> None:
    ap = argparse.ArgumentParser(description="Tune rule parameters with a genetic search over world runs")
    ap.add_argument("--config", type=str, required=True, help="world document (.yaml or .json)")
    ap.add_argument("--out_dir", type=str, default="results/search")
    ap.add_argument("--generations", type=int, default=None)
    ap.add_argument("--population", type=int, default=None)
    ap.add_argument("--workers", type=int, default=None, help="0 = evaluate in-process")
    ap.add_argument("--seed", type=int, default=None)
    ap.add_argument("--no_plots", action="store_true")
    ap.add_argument("--log-level", type=str, default="INFO")
    args = ap.parse_args()

    logging.basicConfig(level=args.log_level.upper(), format="%(levelname)s %(name)s: %(message)s")

    world = load_world(args.config)
    cfg = world.search
    changes = {
        "max_generations": args.generations,
        "population_size": args.population,
        "workers": args.workers,
        "seed": args.seed,
    }
    cfg = replace(cfg, **{k: v for k, v in changes.items() if v is not None})

    search = ParameterSearch(world, config=cfg)
    result = search.run()

    out_dir = Path(args.out_dir)
    for p in result.tracker.export(out_dir, search.mutation.impact_report(cfg.top_n), plot=not args.no_plots):
        print(f"[worldgen] wrote {p}")
    write_json(out_dir / "result.json", result.to_dict())
    print(f"[worldgen] wrote {out_dir / 'result.json'}")
    write_yaml(out_dir / "best_overrides.yaml", result.best_overrides)
    print(f"[worldgen] wrote {out_dir / 'best_overrides.yaml'}")
    write_meta(out_dir / "meta.json", {"search": asdict(cfg), "stop_reason": result.stop_reason}, [Path(args.config)])
    print(f"[worldgen] wrote {out_dir / 'meta.json'}")
    print(f"[worldgen] best fitness {result.best_fitness:.4f} after {result.generations} generation(s) ({result.stop_reason})")


if __name__ == "__main__":
    main()
