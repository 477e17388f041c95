from __future__ import annotations

HELP = """worldgen: rule-driven world-graph growth with a genetic parameter search

Common commands:
  python -m worldgen.run_world --config configs/frontier.yaml --seed 1 --out_dir results/world_seed1
  python -m worldgen.run_world --config configs/frontier.yaml --overrides results/search/best_overrides.yaml
  python -m worldgen.run_search --config configs/frontier.yaml --generations 10 --workers 4 --out_dir results/search

"""


def main() -> None:
    print(HELP)


if __name__ == "__main__":
    main()
