"""Tests for fitness tracking and strategy evolution."""

from __future__ import annotations

import math
import random

import pytest
from conftest import make_experience
from hypothesis import given, settings
from hypothesis import strategies as st

from collective.errors import ValidationError
from collective.learning import EvolutionEngine, Pattern, Strategy


def _engine(**kwargs):
    kwargs.setdefault("rng", random.Random(7))
    return EvolutionEngine(**kwargs)


def _seed(engine, n, **params):
    return [
        engine.seed(params or {"team_size": 3.0, "threshold": 0.5}, fitness=i / n, strategy_id=f"s{i}")
        for i in range(n)
    ]


# ═══════════════════════════════════════════════════════════════════════════
# FITNESS
# ═══════════════════════════════════════════════════════════════════════════


class TestFitness:
    @pytest.mark.parametrize(
        "overrides, expected",
        [
            ({"success": True}, 0.01),
            ({"success": False}, -0.005),
            ({"success": True, "duration": 1.0, "expected_duration": 10.0}, 0.015),
            (
                {"success": True, "duration": 1.0, "expected_duration": 10.0, "innovative": True},
                0.025,
            ),
            ({"success": True, "duration": 9.0, "expected_duration": 10.0}, 0.01),
        ],
    )
    def test_delta(self, overrides, expected):
        engine = _engine()
        assert engine.fitness_delta(make_experience(**overrides)) == pytest.approx(expected)

    def test_global_fitness_is_clipped(self):
        engine = _engine()
        engine.load([], fitness_score=0.995)
        engine.record_outcome(make_experience())
        assert engine.fitness_score == 1.0

    def test_strategy_fitness_follows_its_executions(self):
        engine = _engine()
        engine.seed({"x": 1.0}, fitness=0.5, strategy_id="s1")
        engine.record_outcome(make_experience(strategy_id="s1"))
        assert engine.get("s1").fitness == pytest.approx(0.51)

    def test_interval_marks_evolution_due(self):
        engine = _engine(evolution_interval=5)
        for _ in range(4):
            engine.record_outcome(make_experience())
        assert not engine.evolution_due
        engine.record_outcome(make_experience())
        assert engine.evolution_due

    def test_flat_fitness_plateaus_once_window_is_full(self):
        engine = _engine()
        for _ in range(19):
            engine.record_outcome(make_experience(success=False, quality=0.1))
        assert not engine.plateaued()
        engine.record_outcome(make_experience(success=False, quality=0.1))
        assert engine.plateaued()
        assert engine.evolution_due

    def test_steady_improvement_is_not_a_plateau(self):
        engine = _engine()
        for _ in range(20):
            engine.record_outcome(make_experience())
        assert not engine.plateaued()
        assert not engine.evolution_due


# ═══════════════════════════════════════════════════════════════════════════
# POPULATION
# ═══════════════════════════════════════════════════════════════════════════


class TestPopulation:
    def test_duplicate_id_rejected(self):
        engine = _engine()
        engine.seed({"x": 1.0}, strategy_id="s1")
        with pytest.raises(ValidationError):
            engine.seed({"x": 2.0}, strategy_id="s1")

    def test_non_numeric_parameter_rejected(self):
        with pytest.raises(ValidationError):
            Strategy(id="s", parameters={"mode": "fast"})  # type: ignore[dict-item]

    def test_seed_from_patterns_is_idempotent(self):
        engine = _engine()
        pattern = Pattern(
            id="pattern-review-a+b",
            task_type="review",
            agent_combo=("a", "b"),
            frequency=10,
            success_rate=0.9,
            confidence=0.7,
            last_reinforced=0.0,
        )
        [strategy] = engine.seed_from_patterns([pattern])
        assert strategy.parameters == {"team_size": 2.0, "min_success_rate": 0.9, "confidence": 0.7}
        assert strategy.fitness == 0.9
        assert strategy.source_pattern == pattern.id
        assert engine.seed_from_patterns([pattern]) == []

    def test_load_never_moves_generation_back(self):
        engine = _engine()
        engine.load([], generation=3)
        engine.load([], generation=1)
        assert engine.generation == 3

    def test_lineage_walks_the_index(self):
        engine = _engine()
        engine.add(Strategy(id="g", parameters={}))
        engine.add(Strategy(id="p", parameters={}, lineage=("g",)))
        engine.add(Strategy(id="c", parameters={}, lineage=("p", "q")))
        assert engine.lineage("c") == ["p", "q", "g"]
        assert engine.lineage("g") == []


# ═══════════════════════════════════════════════════════════════════════════
# CYCLE
# ═══════════════════════════════════════════════════════════════════════════


class TestEvolve:
    def test_empty_population(self):
        engine = _engine()
        assert engine.evolve() is None
        assert engine.generation == 0

    def test_cycle_shape(self):
        engine = _engine(mutation_rate=0.0)
        _seed(engine, 10)
        result = engine.evolve()

        assert result.previous_generation == 0
        assert result.new_generation == 1
        assert engine.generation == 1
        assert len(result.survivors) == 8
        assert sorted(result.discarded) == ["s0", "s1"]
        assert len(result.offspring) == 3
        assert result.population_after == 11
        assert len(engine.population()) == 11
        assert result.mutated == []

    def test_offspring_average_their_parents(self):
        engine = _engine(mutation_rate=0.0)
        engine.seed({"x": 2.0}, fitness=0.9, strategy_id="top")
        engine.seed({"x": 4.0, "y": 1.0}, fitness=0.8, strategy_id="next")
        result = engine.evolve()

        [child_id] = result.offspring
        child = engine.get(child_id)
        assert child.parameters == {"x": 3.0, "y": 1.0}
        assert child.lineage == ("top", "next")
        assert child.generation == 1
        assert child.fitness == 0.5
        assert engine.lineage(child_id) == ["top", "next"]

    def test_mutation_stays_in_range(self):
        engine = _engine(mutation_rate=1.0)
        _seed(engine, 5, a=10.0, b=1.0)
        result = engine.evolve()

        assert len(result.mutated) == len(result.survivors)
        for strategy_id in result.mutated:
            params = engine.get(strategy_id).parameters
            assert 8.0 - 1e-9 <= params["a"] <= 12.0 + 1e-9
            assert 0.8 - 1e-9 <= params["b"] <= 1.2 + 1e-9
            assert engine.get(strategy_id).generation == 1

    def test_strategies_added_mid_cycle_survive(self):
        class AddsDuringMutation(random.Random):
            def random(self):
                if engine.get("late") is None:
                    engine.add(Strategy(id="late", parameters={"x": 1.0}))
                    engine.record_outcome(make_experience(strategy_id="s4"))
                return super().random()

        engine = _engine(mutation_rate=0.0, rng=AddsDuringMutation(1))
        _seed(engine, 5)
        result = engine.evolve()

        assert result.carried_over == ["late"]
        assert "late" not in result.discarded
        assert "late" in {s.id for s in engine.population()}
        assert engine.get("s4").fitness == pytest.approx(0.8 + 0.01)
        assert result.population_after == len(engine.population())

    def test_discarded_stay_resolvable(self):
        engine = _engine(mutation_rate=0.0)
        _seed(engine, 10)
        engine.evolve()
        assert engine.get("s0") is not None
        assert "s0" not in {s.id for s in engine.population()}

    def test_cycle_resets_due_flag(self):
        engine = _engine(evolution_interval=1)
        _seed(engine, 3)
        engine.record_outcome(make_experience())
        assert engine.evolution_due
        engine.evolve()
        assert not engine.evolution_due


@given(
    n=st.integers(min_value=1, max_value=40),
    fitness=st.lists(st.floats(min_value=0.0, max_value=1.0), min_size=40, max_size=40),
    seed=st.integers(min_value=0, max_value=2**16),
)
@settings(max_examples=100)
def test_selection_keeps_at_least_the_survival_ratio(n, fitness, seed):
    engine = EvolutionEngine(rng=random.Random(seed))
    for i in range(n):
        engine.seed({"x": 1.0}, fitness=fitness[i], strategy_id=f"s{i}")
    result = engine.evolve()

    assert len(result.survivors) == math.ceil(round(0.8 * n, 9))
    assert len(result.survivors) >= 0.8 * n
    assert len(result.offspring) == max(0, min(4, len(result.survivors)) - 1)
    assert result.new_generation == result.previous_generation + 1
    assert set(result.survivors) | set(result.discarded) == {f"s{i}" for i in range(n)}
    kept = {s.fitness for s in engine.population() if s.id in result.survivors}
    dropped = [fitness[int(sid[1:])] for sid in result.discarded]
    if kept and dropped:
        assert max(dropped) <= min(kept)
