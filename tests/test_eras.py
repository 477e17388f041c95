from __future__ import annotations

import logging

import pytest

from worldgen.eras import DEFAULT_ERA, EraController, parse_era


def _eras():
    return [
        parse_era(
            {
                "id": "founding",
                "exit": {"type": "entity_count", "kind": "settlement", "min": 2},
                "rule_weights": {"found": 3.0},
                "on_exit": {"pressure_deltas": {"prosperity": 5}, "rule_weights": {"found": 0.5}},
            }
        ),
        parse_era(
            {
                "id": "strife",
                "entry": {"type": "pressure", "pressure": "conflict", "min": 80},
                "exit": {"type": "ticks_in_era", "min": 2},
            }
        ),
        parse_era(
            {
                "id": "expansion",
                "entry": {"type": "pressure", "pressure": "prosperity", "min": 10},
                "exit": {"type": "ticks_in_era", "min": 1},
                "default_weight": 2.0,
                "tick_modifiers": {"plague": 0.0},
                "on_entry": {"pressure_deltas": {"conflict": 10}, "rule_weights": {"trade": 1.5}},
            }
        ),
    ]


def test_no_transition_until_exit_holds(graph, make_ctx):
    ctrl = EraController(_eras())
    graph.add_entity("settlement", "village")
    assert ctrl.check(make_ctx()) is None
    assert ctrl.active.id == "founding"


def test_transition_applies_effects_and_skips_failing_entries(graph, make_ctx, pressures, caplog):
    ctrl = EraController(_eras())
    graph.add_entity("settlement", "village")
    graph.add_entity("settlement", "village")
    graph.tick = 9
    with caplog.at_level(logging.INFO, logger="worldgen.eras"):
        t = ctrl.check(make_ctx())

    assert (t.from_era, t.to_era, t.tick) == ("founding", "expansion", 9)
    assert ctrl.active.id == "expansion"
    assert pressures.value("prosperity") == 15.0
    assert pressures.value("conflict") == 50.0
    assert ctrl.ticks_in_era == 0
    assert "founding -> expansion" in caplog.text


def test_weights_combine_era_entry_and_persistent_exit_modifiers(graph, make_ctx):
    ctrl = EraController(_eras())
    assert ctrl.weight("found") == 3.0
    assert ctrl.weight("other") == 1.0
    graph.add_entity("settlement", "village")
    graph.add_entity("settlement", "village")
    ctrl.check(make_ctx())
    assert ctrl.weight("found") == pytest.approx(2.0 * 0.5)
    assert ctrl.weight("trade") == pytest.approx(2.0 * 1.5)
    assert ctrl.tick_modifier("plague") == 0.0
    assert ctrl.tick_modifier("bonds") == 1.0


def test_visited_eras_are_not_reentered(graph, make_ctx, pressures):
    ctrl = EraController(_eras())
    graph.add_entity("settlement", "village")
    graph.add_entity("settlement", "village")
    ctrl.check(make_ctx())
    ctrl.advance()
    # strife's entry fails, founding was visited: nothing left to enter
    assert ctrl.check(make_ctx()) is None
    pressures.set("conflict", 90.0)
    t = ctrl.check(make_ctx())
    assert t.to_era == "strife"
    ctrl.advance()
    ctrl.advance()
    assert ctrl.check(make_ctx()) is None
    assert [x.to_era for x in ctrl.transitions] == ["expansion", "strife"]


def test_controller_without_eras_uses_default():
    ctrl = EraController([])
    assert ctrl.active is DEFAULT_ERA
    assert ctrl.weight("anything") == 1.0
