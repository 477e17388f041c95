from __future__ import annotations

import pytest

from worldgen.graph import Prominence
from worldgen.systems import (
    META_TAG,
    ClusterFormationRule,
    ContagionRule,
    ProminenceEvolutionRule,
    RelationshipMaintenanceRule,
    SimilarityCriterion,
    TickContext,
    parse_tick_rule,
)
from worldgen.predicates import UsageLedger


@pytest.fixture
def tick_ctx(graph, pressures, rng):
    def _make(rule, **kw):
        params = {name: spec.default for name, spec in rule.parameters.items()}
        return TickContext(graph=graph, pressures=pressures, rng=rng, rule_id=rule.id, params=params, usage=UsageLedger(), **kw)

    return _make


def _village_with_residents(graph, n, strength=0.5):
    home = graph.add_entity("settlement", "village")
    people = []
    for _ in range(n):
        p = graph.add_entity("person", "commoner")
        graph.add_relationship("resides_in", p.id, home.id, strength=strength)
        people.append(p)
    return home, people


def test_maintenance_never_culls_required_protected_links(graph, tick_ctx):
    _, people = _village_with_residents(graph, 3, strength=0.05)
    graph.add_relationship("ally_of", people[0].id, people[1].id, strength=0.35)
    rule = RelationshipMaintenanceRule(id="bonds", grace_period=0)
    ctx = tick_ctx(rule, cluster_threshold=0.3)
    for t in range(1, 20):
        graph.tick = t
        rule.run(ctx)
    assert graph.relationship_count("resides_in") == 3
    assert graph.relationship_count("ally_of") == 0
    assert graph.structural_violations() == []


def test_maintenance_decay_rate_and_grace(graph, tick_ctx):
    a = graph.add_entity("faction", "guild")
    b = graph.add_entity("faction", "cult")
    rel = graph.add_relationship("ally_of", a.id, b.id, strength=0.8)
    rule = RelationshipMaintenanceRule(id="bonds", grace_period=3)
    ctx = tick_ctx(rule)

    graph.tick = 2
    rule.run(ctx)
    assert rel.strength == pytest.approx(0.8)

    graph.tick = 3
    rule.run(ctx)
    assert rel.strength == pytest.approx(0.77)

    ctx.intensity = 2.0
    rule.run(ctx)
    assert rel.strength == pytest.approx(0.71)


def test_shared_membership_reinforces(graph, tick_ctx):
    f = graph.add_entity("faction", "guild")
    a = graph.add_entity("faction", "cult")
    b = graph.add_entity("faction", "cult")
    graph.add_relationship("member_of", a.id, f.id)
    graph.add_relationship("member_of", b.id, f.id)
    rel = graph.add_relationship("rival_of", a.id, b.id, strength=0.5)
    rule = RelationshipMaintenanceRule(id="bonds", grace_period=0, reinforcement=0.1, reinforcing_kinds=("member_of",))
    rule.run(tick_ctx(rule))
    assert rel.strength == pytest.approx(0.6)


def test_contagion_spreads_along_vectors_and_respects_immunity(graph, tick_ctx):
    home, people = _village_with_residents(graph, 3)
    graph.add_tag(home, "plague")
    graph.add_tag(people[2], "immune")
    rule = ContagionRule(id="plague", marker="plague", vectors=("resides_in",), base_rate=1.0, max_probability=1.0)
    out = rule.run(tick_ctx(rule))
    assert sorted(out.changed_entities) == sorted([people[0].id, people[1].id])
    assert "plague" not in people[2].tags


def test_contagion_probability_grows_with_contacts_but_caps(graph, tick_ctx):
    target = graph.add_entity("faction", "guild")
    for _ in range(4):
        c = graph.add_entity("faction", "cult", tags=["sick"])
        graph.add_relationship("ally_of", c.id, target.id)
    # 0 + 0.5 * 3 contacts beyond the first, capped at 1.0
    rule = ContagionRule(id="c", marker="sick", base_rate=0.0, contact_multiplier=0.5, max_probability=1.0)
    rule.run(tick_ctx(rule))
    assert "sick" in target.tags


def test_contagion_recovery_grants_immunity(graph, tick_ctx, pressures):
    home, people = _village_with_residents(graph, 1)
    graph.add_tag(people[0], "plague")
    rule = ContagionRule(
        id="plague",
        marker="plague",
        base_rate=0.0,
        recovery_rate=1.0,
        pressure_per_infection=(("prosperity", -1.0),),
    )
    rule.run(tick_ctx(rule))
    assert "plague" not in people[0].tags and "immune" in people[0].tags
    assert pressures.value("prosperity") == 10.0


def test_threshold_trigger_conditions_and_actions(graph, tick_ctx, pressures):
    a = graph.add_entity("settlement", "village")
    b = graph.add_entity("settlement", "town", tags=["unrest"])
    graph.add_entity("faction", "cult", tags=["rebels"])
    rule = parse_tick_rule(
        {
            "id": "unrest",
            "type": "threshold_trigger",
            "entity_kind": "settlement",
            "conditions": [
                {"type": "pressure_above", "pressure": "conflict", "threshold": 30},
                {"type": "tag_absent", "tag": "unrest"},
            ],
            "actions": [
                {"type": "set_tag", "tag": "unrest"},
                {"type": "modify_pressure", "pressure": "prosperity", "delta": -2},
                {"type": "connect", "relationship_kind": "rival_of", "target_kind": "faction", "target_tag": "rebels"},
            ],
        }
    )
    out = rule.run(tick_ctx(rule))
    assert out.changed_entities == [a.id]
    assert "unrest" in a.tags
    assert pressures.value("prosperity") == 8.0
    assert len(out.relationships_created) == 1
    assert graph.relationship_count("rival_of") == 1
    assert b.id not in out.changed_entities


def test_prominence_evolution_gain_and_fade(graph, tick_ctx):
    hub, people = _village_with_residents(graph, 3)
    rule = ProminenceEvolutionRule(
        id="renown", entity_kind="settlement", gain_connections=3, fade_connections=0, gain_probability=1.0
    )
    rule.run(tick_ctx(rule))
    assert hub.prominence is Prominence.RECOGNIZED

    loner = graph.add_entity("faction", "cult")
    fade = ProminenceEvolutionRule(id="fade", entity_kind="faction", fade_connections=0, fade_probability=1.0)
    fade.run(tick_ctx(fade))
    assert loner.prominence is Prominence.FORGOTTEN


def test_due_honours_frequency_throttle_and_intensity(graph, tick_ctx):
    rule = RelationshipMaintenanceRule(id="bonds", frequency=3)
    ctx = tick_ctx(rule)
    graph.tick = 4
    assert not rule.due(ctx)
    graph.tick = 6
    assert rule.due(ctx)
    ctx.intensity = 0.0
    assert not rule.due(ctx)
    throttled = RelationshipMaintenanceRule(id="bonds", throttle=0.0)
    assert not throttled.due(tick_ctx(throttled))


def test_parse_tick_rule_rejects_unknown_types():
    with pytest.raises(ValueError):
        parse_tick_rule({"id": "x", "type": "weather"})
    with pytest.raises(ValueError):
        parse_tick_rule({"id": "x", "type": "threshold_trigger", "actions": [{"type": "explode"}]})


def _guild_rule(**kw):
    doc = {
        "id": "guilds",
        "type": "cluster_formation",
        "entity_kind": "person",
        "criteria": [{"type": "shared_relationship", "relationship_kind": "resides_in", "weight": 2.0}],
        "min_size": 3,
        "minimum_score": 2.0,
        "meta_kind": "faction",
        "meta_subtype": "guild",
        "member_relationship": "member_of",
        "recognized_size": 4,
        "pressure_changes": {"prosperity": 2},
    }
    doc.update(kw)
    return parse_tick_rule(doc)


def test_cluster_formation_groups_neighbours_under_one_meta_entity(graph, tick_ctx, pressures):
    _, locals_ = _village_with_residents(graph, 4)
    _, strangers = _village_with_residents(graph, 2)
    rule = _guild_rule()
    assert isinstance(rule, ClusterFormationRule)

    out = rule.run(tick_ctx(rule))
    assert len(out.entities_created) == 1
    meta = graph.get_entity(out.entities_created[0])
    assert (meta.kind, meta.subtype) == ("faction", "guild")
    assert META_TAG in meta.tags
    assert meta.prominence == Prominence.RECOGNIZED
    assert sorted(out.changed_entities) == sorted(p.id for p in locals_)
    assert {r.src for r in graph.relationships_of(meta.id, "member_of", direction="dst")} == {p.id for p in locals_}
    assert not any(graph.relationships_of(p.id, "member_of") for p in strangers)
    assert pressures.value("prosperity") == pytest.approx(12.0)

    again = rule.run(tick_ctx(rule))
    assert not again.changed
    assert graph.count("faction") == 1


def test_cluster_formation_can_archive_members(graph, tick_ctx):
    _, people = _village_with_residents(graph, 3)
    rule = _guild_rule(archive_status="dead", meta_subtype=None)
    out = rule.run(tick_ctx(rule))
    meta = graph.get_entity(out.entities_created[0])
    assert meta.subtype == "commoner"
    assert meta.prominence == Prominence.MARGINAL
    assert all(p.status == "dead" for p in people)
    assert graph.structural_violations() == []


def test_weak_similarity_never_forms_a_cluster(graph, tick_ctx):
    _village_with_residents(graph, 5)
    rule = _guild_rule(criteria=[{"type": "shared_relationship", "relationship_kind": "resides_in", "weight": 1.0}])
    assert rule.detect(tick_ctx(rule), rule.clusterable(tick_ctx(rule))) == []
    assert not rule.run(tick_ctx(rule)).changed


def test_similarity_criteria(graph, tick_ctx):
    a = graph.add_entity("person", "commoner", tags=["sailor", "northern"], culture="north")
    b = graph.add_entity("person", "commoner", tags=["sailor"], culture="south")
    graph.tick = 50
    c = graph.add_entity("person", "merchant", tags=["miner"], culture="north")
    ctx = tick_ctx(_guild_rule())

    assert SimilarityCriterion("shared_tags").matches(ctx, a, b)
    assert not SimilarityCriterion("shared_tags", threshold=0.6).matches(ctx, a, b)
    assert SimilarityCriterion("temporal_proximity").matches(ctx, a, b)
    assert not SimilarityCriterion("temporal_proximity").matches(ctx, a, c)
    assert SimilarityCriterion("same_subtype").matches(ctx, a, b)
    assert SimilarityCriterion("same_culture").matches(ctx, a, c)
    assert not SimilarityCriterion("shared_relationship").matches(ctx, a, b)


def test_cluster_formation_parse_errors():
    with pytest.raises(ValueError, match="similarity criterion"):
        _guild_rule(criteria=[{"type": "same_moon"}])
    with pytest.raises(ValueError, match="direction"):
        _guild_rule(criteria=[{"type": "shared_relationship", "relationship_kind": "resides_in", "direction": "up"}])
