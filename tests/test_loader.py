from __future__ import annotations

import json

import pytest

from worldgen.engine import run_world
from worldgen.errors import ConfigValidationError
from worldgen.loader import build_world, load_overrides, load_world


def test_frontier_document_loads(frontier):
    assert frontier.schema.kind_names == ["settlement", "person", "faction", "artifact"]
    assert [e.id for e in frontier.eras] == ["founding", "expansion", "strife"]
    assert len(frontier.generative) == 7
    assert [r.id for r in frontier.tick] == ["unrest", "plague", "bonds", "renown", "guilds"]
    assert frontier.engine.predicate_max_depth == 3
    assert frontier.targets.per_era["expansion"]["entity_kinds"]["person"] == 0.65
    space = frontier.parameter_space()
    assert ("found_settlement", "max_settlements") in space.keys
    assert ("plague", "spread") in space.keys


def test_every_bad_reference_is_reported_at_once(world_doc):
    rules = world_doc["rules"]["generative"]
    rules[0]["creates"][0]["kind"] = "castle"
    rules[1]["pressure_deltas"] = {"dread": 1}
    rules[1]["relationships"][0]["strength"] = "$missing"
    world_doc["rules"]["tick"].append({"id": "ghost", "type": "contagion", "vectors": ["haunts"]})
    world_doc["targets"]["entity_kinds"]["person"] = 0.9
    world_doc["eras"] = [{"id": "dawn", "rule_weights": {"nobody": 2.0}}]

    with pytest.raises(ConfigValidationError) as exc:
        build_world(world_doc)
    text = "\n".join(exc.value.issues)
    for needle in ("'castle'", "'dread'", "'$missing'", "'haunts'", "sum to 1.3000", "'nobody'"):
        assert needle in text


def test_parse_errors_are_collected_not_raised_one_by_one(world_doc):
    world_doc["rules"]["tick"].append({"id": "odd", "type": "weather"})
    world_doc["pressures"].append({"bounds": [0, 1]})
    with pytest.raises(ConfigValidationError) as exc:
        build_world(world_doc)
    assert len(exc.value.issues) >= 2
    assert any("tick rule #1" in i for i in exc.value.issues)
    assert any("pressure #2" in i for i in exc.value.issues)


def test_predicate_depth_limit_applies_to_rules(world_doc):
    world_doc["engine"]["predicate_max_depth"] = 1
    world_doc["rules"]["generative"][0]["applicability"] = {
        "and": [{"or": [{"type": "always"}, {"type": "chance", "probability": 0.5}]}]
    }
    with pytest.raises(ConfigValidationError) as exc:
        build_world(world_doc)
    assert any("max depth" in i for i in exc.value.issues)


def test_duplicate_ids_and_dangling_endpoints(world_doc):
    world_doc["pressures"].append({"id": "conflict"})
    world_doc["rules"]["generative"][1]["relationships"].append({"kind": "ally_of", "src": "p", "dst": "nowhere"})
    world_doc["initial_relationships"] = [{"kind": "ally_of", "src": "a", "dst": "b"}]
    with pytest.raises(ConfigValidationError) as exc:
        build_world(world_doc)
    text = "\n".join(exc.value.issues)
    assert "duplicate pressure id(s): ['conflict']" in text
    assert "'nowhere'" in text
    assert "unknown endpoint 'a'" in text


def test_missing_schema_section():
    with pytest.raises(ConfigValidationError):
        build_world({"rules": {}})


def test_overrides_out_of_bounds_rejected_before_run(world_doc):
    world = build_world(world_doc)
    with pytest.raises(ConfigValidationError):
        world.effective_params({"settle_person": {"tie": 5.0}})
    assert world.effective_params({"settle_person": {"tie": 0.9}})["settle_person"]["tie"] == 0.9


def test_json_world_and_yaml_overrides(world_doc, tmp_path):
    path = tmp_path / "world.json"
    path.write_text(json.dumps(world_doc))
    assert [r.id for r in load_world(path).generative] == ["found_settlement", "settle_person"]

    ov = tmp_path / "ov.yaml"
    ov.write_text("found_settlement:\n  cap: 4\n")
    assert load_overrides(ov) == {"found_settlement": {"cap": 4}}
    assert load_overrides(None) == {}


def test_cluster_formation_references_are_checked(world_doc):
    world_doc["rules"]["tick"].append(
        {
            "id": "guilds",
            "type": "cluster_formation",
            "entity_kind": "person",
            "criteria": [{"type": "shared_relationship", "weight": "$bond"}],
            "meta_kind": "castle",
            "archive_status": "exiled",
            "pressure_changes": {"dread": 1},
        }
    )
    with pytest.raises(ConfigValidationError) as exc:
        build_world(world_doc)
    text = "\n".join(exc.value.issues)
    for needle in ("needs member_relationship", "'castle'", "'exiled'", "needs a relationship_kind", "'$bond'", "'dread'"):
        assert needle in text


def test_frontier_guilds_form_during_a_run(frontier):
    guilds = frontier.tick[-1]
    assert guilds.meta_kind == "faction" and guilds.member_relationship == "member_of"
    result = run_world(frontier, seed=3)
    metas = [e for e in result.graph.entities("faction") if "meta-entity" in e.tags]
    for meta in metas:
        members = result.graph.relationships_of(meta.id, "member_of", direction="dst")
        assert len(members) >= 3
        assert all(result.graph.get_entity(r.src).subtype == "merchant" for r in members)
