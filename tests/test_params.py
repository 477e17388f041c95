from __future__ import annotations

import numpy as np
import pytest

from worldgen.errors import ConfigValidationError
from worldgen.params import (
    ParameterSpace,
    check_parameters,
    genome_to_overrides,
    merge_overrides,
    overrides_to_genome,
    parse_parameters,
)


@pytest.fixture
def space():
    return ParameterSpace(
        {
            "found": parse_parameters({"cap": {"default": 6, "min": 2, "max": 15, "integer": True}, "boom": 2}),
            "spread": parse_parameters({"rate": {"default": 0.1, "min": 0.0, "max": 0.5, "components": "violation"}}),
        }
    )


def test_overrides_merge_idempotently(space):
    overrides = {"found": {"cap": 9}}
    once = merge_overrides(space.effective(), overrides)
    twice = merge_overrides(once, overrides)
    assert once == twice == space.effective(overrides)
    assert once["found"] == {"cap": 9.0, "boom": 2.0}
    assert once["spread"] == {"rate": 0.1}


def test_out_of_bounds_and_unknown_overrides_rejected_together(space):
    with pytest.raises(ConfigValidationError) as exc:
        space.effective({"found": {"cap": 40, "nope": 1}, "ghost": {"x": 1}, "spread": {"rate": "fast"}})
    issues = exc.value.issues
    assert len(issues) == 4
    assert any("outside [2.0, 15.0]" in i for i in issues)


def test_fixed_parameter_accepts_only_its_value(space):
    assert space.validate_overrides({"found": {"boom": 2}}) == []
    assert space.validate_overrides({"found": {"boom": 3}})


def test_genome_and_override_views_agree(space):
    genome = space.defaults()
    assert sorted(genome) == [("found", "cap"), ("spread", "rate")]
    overrides = genome_to_overrides(genome)
    assert overrides == {"found": {"cap": 6.0}, "spread": {"rate": 0.1}}
    assert overrides_to_genome(overrides) == genome


def test_vector_helpers_clamp_and_round(space):
    g = space.from_vector([20.4, -1.0])
    assert g == {("found", "cap"): 15.0, ("spread", "rate"): 0.0}
    assert space.normalized(g).tolist() == [1.0, 0.0]
    rng = np.random.default_rng(1)
    for _ in range(20):
        g = space.random_around(space.defaults(), 0.5, rng)
        assert 2 <= g[("found", "cap")] <= 15 and float(g[("found", "cap")]).is_integer()


def test_check_parameters_flags_bad_declarations():
    specs = parse_parameters({"x": {"default": 5, "min": 0, "max": 1}, "y": {"default": 0, "min": 3, "max": 1}})
    issues = check_parameters("r", specs)
    assert len(issues) == 2
