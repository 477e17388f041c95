from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from .export import write_json
from .params import Genome, genome_to_overrides
from .plots import plot_fitness_curve


@dataclass(frozen=True)
class GenerationRecord:
    generation: int
    best: float
    mean: float
    worst: float
    diversity: float
    base_rate: float
    best_breakdown: Dict[str, float]
    diagnostics: List[str] = field(default_factory=list)

    def row(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "generation": self.generation,
            "best": self.best,
            "mean": self.mean,
            "worst": self.worst,
            "diversity": self.diversity,
            "base_rate": self.base_rate,
            "diagnostics": "; ".join(self.diagnostics),
        }
        for k, v in self.best_breakdown.items():
            out[f"best_{k}"] = v
        return out


@dataclass
class RankedConfig:
    fitness: float
    generation: int
    genome: Genome
    breakdown: Dict[str, float]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fitness": self.fitness,
            "generation": self.generation,
            "overrides": genome_to_overrides(self.genome),
            "breakdown": dict(self.breakdown),
        }


class EvolutionTracker:
    """Per-generation history plus the best distinct configurations seen so far."""

    def __init__(self, top_n: int = 5):
        self.top_n = int(top_n)
        self.records: List[GenerationRecord] = []
        self.top: List[RankedConfig] = []

    def record(self, rec: GenerationRecord) -> None:
        self.records.append(rec)

    def offer(self, fitness: float, generation: int, genome: Genome, breakdown: Dict[str, float]) -> None:
        key = tuple(sorted(genome.items()))
        for existing in self.top:
            if tuple(sorted(existing.genome.items())) == key:
                if fitness > existing.fitness:
                    existing.fitness, existing.generation, existing.breakdown = fitness, generation, dict(breakdown)
                    self.top.sort(key=lambda c: -c.fitness)
                return
        self.top.append(RankedConfig(float(fitness), int(generation), dict(genome), dict(breakdown)))
        self.top.sort(key=lambda c: -c.fitness)
        del self.top[self.top_n :]

    @property
    def best(self) -> Optional[RankedConfig]:
        return self.top[0] if self.top else None

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame([r.row() for r in self.records])

    def summary(self) -> Dict[str, Any]:
        return {
            "generations": len(self.records),
            "best": None if self.best is None else self.best.to_dict(),
            "top": [c.to_dict() for c in self.top],
            "history": [r.row() for r in self.records],
        }

    def export(self, out_dir: Path, impact_report: Optional[List[Dict[str, Any]]] = None, *, plot: bool = True) -> List[Path]:
        out_dir = Path(out_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        written: List[Path] = []

        csv_path = out_dir / "generations.csv"
        self.to_frame().to_csv(csv_path, index=False)
        written.append(csv_path)

        summary_path = out_dir / "evolution.json"
        summary = self.summary()
        summary["impact"] = list(impact_report or [])
        write_json(summary_path, summary)
        written.append(summary_path)

        if self.best is not None:
            best_path = out_dir / "best_overrides.json"
            write_json(best_path, genome_to_overrides(self.best.genome))
            written.append(best_path)

        if plot and self.records:
            fig_path = out_dir / "fitness_curve.png"
            plot_fitness_curve(self.records, fig_path)
            written.append(fig_path)
        return written
