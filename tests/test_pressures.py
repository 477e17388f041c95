from __future__ import annotations

import numpy as np
import pytest

from worldgen.pressures import (
    ConstantFactor,
    EntityCountFactor,
    PressureFactor,
    PressureModel,
    PressureSpec,
    RatioFactor,
    parse_factor,
    parse_pressure,
)


def test_constant_growth_saturates_at_upper_bound(graph):
    model = PressureModel([PressureSpec(id="p", initial=90.0, bounds=(0.0, 100.0), positive=(ConstantFactor(5.0),))])
    seen = []
    for _ in range(3):
        model.tick(graph)
        seen.append(model.value("p"))
    assert seen == [95.0, 100.0, 100.0]


def test_values_never_leave_bounds(graph):
    rng = np.random.default_rng(11)
    specs = [
        PressureSpec(
            id=f"p{i}",
            initial=float(rng.uniform(-20, 20)),
            bounds=(-10.0, 10.0),
            homeostasis=float(rng.uniform(0, 0.3)),
            positive=(ConstantFactor(float(rng.uniform(0, 30))),),
            negative=(ConstantFactor(float(rng.uniform(0, 30))),),
        )
        for i in range(6)
    ]
    model = PressureModel(specs)
    for v in model.values().values():
        assert -10.0 <= v <= 10.0
    for _ in range(25):
        model.tick(graph)
        for v in model.values().values():
            assert -10.0 <= v <= 10.0


def test_homeostasis_pulls_toward_zero(graph):
    model = PressureModel([PressureSpec(id="p", initial=50.0, bounds=(0.0, 100.0), homeostasis=0.1)])
    applied = model.tick(graph)
    assert model.value("p") == pytest.approx(45.0)
    assert applied["p"] == pytest.approx(-5.0)


def test_later_pressures_see_updated_earlier_values(graph):
    model = PressureModel(
        [
            PressureSpec(id="a", initial=0.0, bounds=(0.0, 100.0), positive=(ConstantFactor(10.0),)),
            PressureSpec(id="b", initial=0.0, bounds=(0.0, 100.0), positive=(PressureFactor("a", 0.5),)),
        ]
    )
    model.tick(graph)
    assert model.value("a") == 10.0
    assert model.value("b") == 5.0


def test_graph_factors(graph):
    for _ in range(4):
        graph.add_entity("settlement", "village")
    graph.add_entity("faction", "guild")
    assert EntityCountFactor("settlement", coefficient=2.0, cap=5.0).evaluate(graph, {}) == 5.0
    assert RatioFactor("faction", "settlement", coefficient=4.0).evaluate(graph, {}) == 1.0
    assert RatioFactor("faction", "person").evaluate(graph, {}) == 1.0


def test_adjust_and_set_clamp():
    model = PressureModel([PressureSpec(id="p", initial=150.0, bounds=(0.0, 100.0))])
    assert model.value("p") == 100.0
    assert model.adjust("p", -130.0) == 0.0
    assert model.set("p", 42.0) == 42.0


def test_parse_pressure_and_factors():
    spec = parse_pressure(
        {
            "id": "conflict",
            "initial": 5,
            "bounds": [0, 50],
            "positive": [{"type": "relationship_count", "kind": "rival_of", "coefficient": 0.5}],
            "negative": [{"type": "constant", "value": 1}],
        }
    )
    assert spec.bounds == (0.0, 50.0)
    assert spec.name == "conflict"
    assert len(spec.positive) == 1 and len(spec.negative) == 1
    with pytest.raises(ValueError):
        parse_factor({"type": "weather"})


def test_tick_feeds_graph_factors_from_the_world(graph):
    model = PressureModel(
        [PressureSpec(id="p", initial=0.0, bounds=(0.0, 100.0), positive=(EntityCountFactor("settlement", coefficient=1.5),))]
    )
    with pytest.raises(TypeError):
        model.tick()
    graph.add_entity("settlement", "village")
    graph.add_entity("settlement", "town")
    assert model.tick(graph) == {"p": pytest.approx(3.0)}
