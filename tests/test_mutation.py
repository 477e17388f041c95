from __future__ import annotations

import numpy as np
import pytest

from worldgen.config import MutationConfig
from worldgen.mutation import AdaptiveMutation, AnnealingSchedule, MutationStrategy, mean_pairwise_distance
from worldgen.params import ParameterSpace, ParameterSpec


A = ("r", "a")
B = ("r", "b")


@pytest.fixture
def space():
    return ParameterSpace(
        {
            "r": {
                "a": ParameterSpec("a", 0.5, 0.0, 1.0, components=("connectivity",)),
                "b": ParameterSpec("b", 5.0, 0.0, 10.0, integer=True),
                "fixed": ParameterSpec("fixed", 2.0, 2.0, 2.0),
            }
        }
    )


def test_fixed_parameters_are_not_genes(space):
    assert space.keys == [A, B]


@pytest.mark.parametrize("schedule", ["linear", "exponential", "cosine"])
def test_annealed_rate_runs_from_initial_to_final(space, schedule):
    cfg = MutationConfig(strategy="annealing", schedule=schedule, initial_rate=0.4, final_rate=0.1)
    m = AdaptiveMutation(space, cfg, max_generations=11)
    rates = [m.base_rate(g) for g in range(11)]
    assert rates[0] == pytest.approx(0.4)
    assert rates[-1] == pytest.approx(0.1, abs=0.003)
    assert all(a >= b for a, b in zip(rates, rates[1:]))


def test_schedule_shapes():
    assert AnnealingSchedule.COSINE.fraction(0.5) == pytest.approx(0.5)
    assert AnnealingSchedule.LINEAR.fraction(0.25) == pytest.approx(0.75)
    assert AnnealingSchedule.EXPONENTIAL.fraction(1.0) == pytest.approx(np.exp(-5.0))


def test_non_annealing_strategy_keeps_initial_rate(space):
    m = AdaptiveMutation(space, MutationConfig(strategy="impact", initial_rate=0.3), max_generations=5)
    assert m.base_rate(0) == m.base_rate(4) == 0.3


def test_correlated_gene_gains_impact_and_mutation_probability(space):
    m = AdaptiveMutation(space, MutationConfig(strategy="impact", initial_rate=0.3, max_rate=0.9), max_generations=5)
    parent = {A: 0.0, B: 0.0}
    for i in range(1, 7):
        child = {A: 0.1 * i, B: 5.0}
        m.observe(parent, child, parent_fitness=0.2, child_fitness=0.2 + 0.1 * i)
    assert m.impact[A] > 0.7
    assert m.impact[B] == 0.5
    rates = m.rates(0, {})
    assert rates[A].probability == pytest.approx(0.9)
    assert rates[B].probability == pytest.approx(0.3)
    report = m.impact_report(1)
    assert report[0]["parameter"] == "a" and report[0]["observations"] == 6


def test_weak_component_focuses_mutation(space):
    cfg = MutationConfig(strategy="component", initial_rate=0.2, component_boost=2.0, component_threshold=0.7)
    m = AdaptiveMutation(space, cfg, max_generations=5)
    rates = m.rates(0, {"connectivity": 0.3, "violation": 0.95})
    assert rates[A].probability == pytest.approx(0.4)
    assert rates[B].probability == pytest.approx(0.2)
    assert rates[A].sigma == pytest.approx(2 * cfg.sigma_fraction * 1.0)
    calm = m.rates(0, {"connectivity": 0.9})
    assert calm[A].probability == pytest.approx(0.2)


def test_mutation_respects_bounds_and_integers(space):
    cfg = MutationConfig(strategy="annealing", initial_rate=1.0, final_rate=1.0, max_rate=1.0, sigma_fraction=3.0)
    m = AdaptiveMutation(space, cfg, max_generations=3)
    rng = np.random.default_rng(8)
    genome = space.defaults()
    moved = False
    for _ in range(30):
        child = m.mutate(genome, 1, rng, {})
        assert 0.0 <= child[A] <= 1.0
        assert 0.0 <= child[B] <= 10.0 and float(child[B]).is_integer()
        moved = moved or child != genome
    assert moved
    assert MutationStrategy.HYBRID.uses_impact and MutationStrategy.HYBRID.anneals


def test_mean_pairwise_distance():
    assert mean_pairwise_distance([np.zeros(3), np.zeros(3)]) == 0.0
    assert mean_pairwise_distance([np.zeros(4), np.ones(4)]) == pytest.approx(1.0)
    assert mean_pairwise_distance([np.zeros(2)]) == 0.0
