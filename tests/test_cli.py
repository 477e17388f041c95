from __future__ import annotations

import json
import sys

import pytest
import yaml

from worldgen import run_search, run_world
from worldgen.errors import ConfigValidationError


def test_run_world_writes_snapshot_and_meta(world_doc, tmp_path, monkeypatch, capsys):
    cfg = tmp_path / "world.yaml"
    cfg.write_text(yaml.safe_dump(world_doc))
    out = tmp_path / "out"
    monkeypatch.setattr(sys, "argv", ["run_world", "--config", str(cfg), "--seed", "4", "--out_dir", str(out)])
    run_world.main()

    for name in ("snapshot.json", "entities.csv", "relationships.csv", "history.csv", "summary.json", "meta.json", "entity_kinds.png"):
        assert (out / name).exists(), name
    snap = json.loads((out / "snapshot.json").read_text())
    assert snap["seed"] == 4
    meta = json.loads((out / "meta.json").read_text())
    assert str(cfg) in meta["inputs_sha256"]
    assert "[worldgen] wrote" in capsys.readouterr().out


def test_run_search_writes_best_overrides(world_doc, tmp_path, monkeypatch):
    cfg = tmp_path / "world.yaml"
    cfg.write_text(yaml.safe_dump(world_doc))
    out = tmp_path / "search"
    monkeypatch.setattr(
        sys,
        "argv",
        ["run_search", "--config", str(cfg), "--generations", "2", "--population", "3", "--out_dir", str(out), "--no_plots"],
    )
    run_search.main()

    best = yaml.safe_load((out / "best_overrides.yaml").read_text())
    assert set(best) == {"found_settlement", "settle_person"}
    result = json.loads((out / "result.json").read_text())
    assert result["generations"] == 2
    assert not (out / "fitness_curve.png").exists()


def test_run_search_rejects_flags_that_break_the_config(world_doc, tmp_path, monkeypatch):
    cfg = tmp_path / "world.yaml"
    cfg.write_text(yaml.safe_dump(world_doc))
    out = tmp_path / "search"
    monkeypatch.setattr(sys, "argv", ["run_search", "--config", str(cfg), "--population", "1", "--out_dir", str(out)])
    with pytest.raises(ConfigValidationError):
        run_search.main()
    assert not out.exists()
