from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List

import pandas as pd
import yaml


def write_json(path: Path, obj: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(obj, indent=2, sort_keys=True, default=str))


def write_yaml(path: Path, obj: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(obj, sort_keys=True))


def write_entities_csv(path: Path, snapshot: Dict[str, Any]) -> None:
    rows: List[Dict[str, Any]] = []
    for e in snapshot["entities"]:
        r = dict(e)
        r["tags"] = ";".join(e["tags"])
        rows.append(r)
    df = pd.DataFrame(rows, columns=["id", "kind", "subtype", "status", "prominence", "tags", "description", "culture", "created_at", "updated_at"])
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False)


def write_relationships_csv(path: Path, snapshot: Dict[str, Any]) -> None:
    rows = [
        {"kind": r["kind"], "src": r["src"], "dst": r["dst"], "strength": r["strength"], "created_at": r["created_at"]}
        for r in snapshot["relationships"]
    ]
    df = pd.DataFrame(rows, columns=["kind", "src", "dst", "strength", "created_at"])
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False)


def write_history_csv(path: Path, snapshot: Dict[str, Any]) -> None:
    rows = []
    for h in snapshot["history"]:
        rows.append({
            "tick": h["tick"],
            "epoch": h["epoch"],
            "era": h["era"],
            "event": h["event"],
            "source": h["source"],
            "description": h["description"],
            "entities_created": len(h["entities_created"]),
            "relationships_created": len(h["relationships_created"]),
        })
    df = pd.DataFrame(rows, columns=["tick", "epoch", "era", "event", "source", "description", "entities_created", "relationships_created"])
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False)


def write_run_outputs(out_dir: Path, snapshot: Dict[str, Any], fitness: Dict[str, float]) -> List[Path]:
    out_dir = Path(out_dir)
    paths = {
        "snapshot": out_dir / "snapshot.json",
        "entities": out_dir / "entities.csv",
        "relationships": out_dir / "relationships.csv",
        "history": out_dir / "history.csv",
        "summary": out_dir / "summary.json",
    }
    write_json(paths["snapshot"], snapshot)
    write_entities_csv(paths["entities"], snapshot)
    write_relationships_csv(paths["relationships"], snapshot)
    write_history_csv(paths["history"], snapshot)
    write_json(
        paths["summary"],
        {
            "seed": snapshot["seed"],
            "era": snapshot["era"],
            "stats": snapshot["stats"],
            "distribution": snapshot["distribution"],
            "deviation": snapshot["deviation"],
            "pressures": snapshot["pressures"],
            "fitness": fitness,
        },
    )
    return list(paths.values())
