from __future__ import annotations

from pathlib import Path
from typing import Dict, Sequence

import matplotlib.pyplot as plt
import numpy as np


def plot_fitness_curve(records: Sequence, out_path: Path) -> None:
    gens = [r.generation for r in records]
    plt.figure()
    plt.plot(gens, [r.best for r in records], label="best")
    plt.plot(gens, [r.mean for r in records], label="mean")
    plt.plot(gens, [r.worst for r in records], label="worst", alpha=0.6)
    plt.xlabel("generation")
    plt.ylabel("fitness")
    plt.title("Parameter search progress")
    plt.legend()
    out_path.parent.mkdir(parents=True, exist_ok=True)
    plt.tight_layout()
    plt.savefig(out_path, dpi=200)
    plt.close()


def plot_distribution(actual: Dict[str, float], target: Dict[str, float], out_path: Path, title: str) -> None:
    keys = sorted(set(actual) | set(target))
    x = np.arange(len(keys))
    plt.figure()
    plt.bar(x - 0.2, [target.get(k, 0.0) for k in keys], width=0.4, label="target")
    plt.bar(x + 0.2, [actual.get(k, 0.0) for k in keys], width=0.4, label="actual")
    plt.xticks(x, keys, rotation=30, ha="right")
    plt.ylabel("proportion")
    plt.title(title)
    plt.legend()
    out_path.parent.mkdir(parents=True, exist_ok=True)
    plt.tight_layout()
    plt.savefig(out_path, dpi=200)
    plt.close()
