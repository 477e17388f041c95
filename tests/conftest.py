from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Dict

import numpy as np
import pytest

from worldgen.graph import WorldGraph
from worldgen.loader import load_world
from worldgen.predicates import PredicateContext, UsageLedger
from worldgen.pressures import PressureModel, PressureSpec
from worldgen.schema import parse_schema


CONFIG_DIR = Path(__file__).resolve().parents[1] / "configs"

SCHEMA_DOC: Dict[str, Any] = {
    "entity_kinds": [
        {"kind": "settlement", "subtypes": ["village", "town"]},
        {"kind": "person", "statuses": ["active", "dead"]},
        "faction",
    ],
    "relationship_kinds": [
        {"kind": "resides_in", "protected": True, "cullable": False, "decay": "none"},
        {"kind": "member_of", "protected": True, "decay": "none"},
        {"kind": "ally_of", "decay": "medium"},
        {"kind": "rival_of", "decay": "fast"},
    ],
    "requirements": [
        {"entity_kind": "person", "relationship_kind": "resides_in", "statuses": ["active"]},
    ],
}

SMALL_WORLD: Dict[str, Any] = {
    "schema": SCHEMA_DOC,
    "pressures": [
        {"id": "prosperity", "initial": 10, "bounds": [0, 100]},
        {"id": "conflict", "initial": 0, "bounds": [0, 100]},
    ],
    "rules": {
        "generative": [
            {
                "id": "found_settlement",
                "applicability": {"type": "entity_count", "kind": "settlement", "max": "$cap"},
                "creates": [{"ref": "s", "kind": "settlement", "subtype": "village"}],
                "parameters": {"cap": {"default": 3, "min": 1, "max": 8, "integer": True, "components": ["entity_distribution"]}},
                "produces": {"entity_kinds": ["settlement"]},
            },
            {
                "id": "settle_person",
                "applicability": {"type": "entity_count", "kind": "settlement", "min": 1},
                "variables": [{"name": "home", "kind": "settlement"}],
                "creates": [{"ref": "p", "kind": "person", "subtype": "commoner"}],
                "relationships": [{"kind": "resides_in", "src": "p", "dst": "home", "strength": "$tie"}],
                "parameters": {"tie": {"default": 0.6, "min": 0.2, "max": 1.0, "components": ["connectivity"]}},
                "produces": {"entity_kinds": ["person"], "relationship_kinds": ["resides_in"]},
            },
        ],
        "tick": [
            {"id": "bonds", "type": "relationship_maintenance", "grace_period": 2},
        ],
    },
    "targets": {
        "entity_kinds": {"settlement": 0.3, "person": 0.6, "faction": 0.1},
        "connectivity": {"cluster_range": [1, 3], "cluster_threshold": 0.5},
    },
    "engine": {"max_epochs": 4, "ticks_per_epoch": 3, "growth_per_epoch": 3},
    "search": {"population_size": 4, "max_generations": 3, "elitism": 1, "seed": 3, "workers": 0},
}


@pytest.fixture
def schema():
    return parse_schema(SCHEMA_DOC)


@pytest.fixture
def graph(schema):
    return WorldGraph(schema)


@pytest.fixture
def rng():
    return np.random.default_rng(0)


@pytest.fixture
def pressures():
    return PressureModel(
        [
            PressureSpec(id="prosperity", initial=10.0, bounds=(0.0, 100.0)),
            PressureSpec(id="conflict", initial=40.0, bounds=(0.0, 100.0)),
        ]
    )


@pytest.fixture
def make_ctx(graph, pressures, rng):
    def _make(rule_id: str = "r", params=None, era=None, usage=None, **kw) -> PredicateContext:
        return PredicateContext(
            graph=kw.pop("graph", graph),
            pressures=kw.pop("pressures", pressures),
            rng=kw.pop("rng", rng),
            era=era,
            rule_id=rule_id,
            params=params or {},
            usage=usage or UsageLedger(),
            **kw,
        )

    return _make


@pytest.fixture
def world_doc():
    return copy.deepcopy(SMALL_WORLD)


@pytest.fixture
def frontier_path():
    return CONFIG_DIR / "frontier.yaml"


@pytest.fixture
def frontier(frontier_path):
    return load_world(frontier_path)
