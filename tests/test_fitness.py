from __future__ import annotations

import pytest

from worldgen.config import FitnessConfig, FITNESS_COMPONENTS, check_configs, EngineConfig, MutationConfig, SearchConfig
from worldgen.distribution import DistributionTracker, parse_targets
from worldgen.fitness import FitnessBreakdown, FitnessEvaluator


def _deviation(graph, schema, **targets):
    doc = {"entity_kinds": {"settlement": 0.5, "person": 0.5}, "connectivity": {"cluster_range": [1, 2]}}
    doc.update(targets)
    return DistributionTracker(schema, parse_targets(doc)).deviation(graph)


def test_violation_score_decreases_strictly_with_rate():
    ev = FitnessEvaluator(FitnessConfig())
    rates = [0.0, 0.5, 1.0, 5.0, 15.0, 40.0]
    scores = [ev.violation_score(r) for r in rates]
    assert scores[0] == 1.0
    assert all(a > b for a, b in zip(scores, scores[1:]))
    assert scores[4] == pytest.approx(0.51, abs=0.01)


def test_entity_distribution_score_is_one_minus_total_variation(graph, schema):
    graph.add_entity("settlement", "village")
    ev = FitnessEvaluator(FitnessConfig())
    dev = _deviation(graph, schema)
    scores = ev.component_scores(dev, 0.0)
    assert scores["entity_distribution"] == pytest.approx(0.5)

    graph.add_entity("person", "commoner")
    assert ev.component_scores(_deviation(graph, schema), 0.0)["entity_distribution"] == pytest.approx(1.0)


def test_untargeted_kinds_count_against_entity_distribution(graph, schema):
    graph.add_entity("settlement", "village")
    graph.add_entity("person", "commoner")
    ev = FitnessEvaluator(FitnessConfig())
    dev = _deviation(graph, schema, entity_kinds={"settlement": 1.0})
    assert dev.entity_kinds == {"settlement": pytest.approx(0.5)}
    # half the world is an untargeted kind: total variation 0.5
    assert ev.component_scores(dev, 0.0)["entity_distribution"] == pytest.approx(0.5)


def test_total_is_weighted_sum_of_components(graph, schema):
    graph.add_entity("settlement", "village")
    graph.add_entity("person", "commoner")
    cfg = FitnessConfig()
    ev = FitnessEvaluator(cfg)
    b = ev.evaluate(_deviation(graph, schema), violation_rate=2.0)
    expected = sum(cfg.weights[k] * v for k, v in b.components().items())
    assert b.total == pytest.approx(expected)
    for v in b.components().values():
        assert 0.0 <= v <= 1.0
    assert set(b.components()) == set(FITNESS_COMPONENTS)


def test_connectivity_score_rewards_clusters_in_range(graph, schema):
    ev = FitnessEvaluator(FitnessConfig())
    s = graph.add_entity("settlement", "village")
    people = [graph.add_entity("person", "commoner") for _ in range(2)]
    lonely = ev.connectivity_score(_deviation(graph, schema))
    for p in people:
        graph.add_relationship("resides_in", p.id, s.id, strength=0.9)
    joined = ev.connectivity_score(_deviation(graph, schema))
    assert joined > lonely


def test_breakdown_mean():
    a = FitnessBreakdown(1.0, 0.0, 0.5, 0.5, 1.0, 0.0, 0.6)
    b = FitnessBreakdown(0.0, 1.0, 0.5, 0.5, 0.0, 2.0, 0.4)
    m = FitnessBreakdown.mean([a, b])
    assert m.entity_distribution == 0.5 and m.violation_rate == 1.0 and m.total == pytest.approx(0.5)


def test_config_checks_collect_weight_problems():
    bad = FitnessConfig(weights={"entity_distribution": 0.5, "vibes": 0.2}, violation_decay=0)
    issues = check_configs(EngineConfig(), bad, MutationConfig(), SearchConfig(max_generations=0))
    assert any("vibes" in i for i in issues)
    assert any("sum to 0.7000" in i for i in issues)
    assert any("violation_decay" in i for i in issues)
    assert any("max_generations" in i for i in issues)
