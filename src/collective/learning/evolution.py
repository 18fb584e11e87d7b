"""
Evolution Engine — population-based strategy optimisation.

Per-execution fitness delta:
- +0.01 on success, -0.005 on failure
- +0.005 when duration < 0.8x the expected duration
- +0.01 when the outcome is marked innovative

The running global fitness is clipped to [0, 1]. A cycle is due every 100
recorded executions, or when the last 20 running fitness values have a
variance below 0.001 (plateau).

Cycle, in order:
1. Selection: keep the top ceil(80%) of strategies by fitness
2. Mutation: each survivor, with p=0.1, has every parameter scaled by U[0.8, 1.2]
3. Crossover: the top 4 survivors pair up into 3 averaged offspring
4. Deprecation: strategies that failed selection are discarded
5. Generation counter +1, fitness window reset

Lineage is stored as parent ids and resolved through an id index, so no
strategy holds a reference to another.
"""

from __future__ import annotations

import math
import random
import statistics
import threading
import time
import uuid
from collections import deque
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any

import structlog

from collective.errors import ValidationError
from collective.learning.models import Experience, Pattern, Strategy

logger = structlog.get_logger()


@dataclass
class EvolutionResult:
    """What one cycle did. Nothing leaves the population without being listed here."""

    previous_generation: int
    new_generation: int
    population_before: int
    survivors: list[str] = field(default_factory=list)
    mutated: list[str] = field(default_factory=list)
    offspring: list[str] = field(default_factory=list)
    discarded: list[str] = field(default_factory=list)
    carried_over: list[str] = field(default_factory=list)
    deprecated_patterns: list[str] = field(default_factory=list)

    @property
    def population_after(self) -> int:
        return len(self.survivors) + len(self.offspring) + len(self.carried_over)

    def to_dict(self) -> dict[str, Any]:
        return {
            "previous_generation": self.previous_generation,
            "new_generation": self.new_generation,
            "population_before": self.population_before,
            "population_after": self.population_after,
            "survivors": list(self.survivors),
            "mutated": list(self.mutated),
            "offspring": list(self.offspring),
            "discarded": list(self.discarded),
            "carried_over": list(self.carried_over),
            "deprecated_patterns": list(self.deprecated_patterns),
        }


class EvolutionEngine:
    """Strategy population, global fitness tracking and evolution cycles."""

    EVOLUTION_INTERVAL = 100
    PLATEAU_WINDOW = 20
    PLATEAU_VARIANCE = 0.001
    SURVIVAL_RATIO = 0.8
    MUTATION_RATE = 0.1
    MUTATION_RANGE = (0.8, 1.2)
    CROSSOVER_PARENTS = 4
    OFFSPRING_FITNESS = 0.5

    SUCCESS_DELTA = 0.01
    FAILURE_DELTA = -0.005
    EFFICIENCY_BONUS = 0.005
    EFFICIENCY_RATIO = 0.8
    INNOVATION_BONUS = 0.01

    def __init__(
        self,
        evolution_interval: int = EVOLUTION_INTERVAL,
        plateau_window: int = PLATEAU_WINDOW,
        plateau_variance: float = PLATEAU_VARIANCE,
        survival_ratio: float = SURVIVAL_RATIO,
        mutation_rate: float = MUTATION_RATE,
        mutation_range: tuple[float, float] = MUTATION_RANGE,
        crossover_parents: int = CROSSOVER_PARENTS,
        success_delta: float = SUCCESS_DELTA,
        failure_delta: float = FAILURE_DELTA,
        efficiency_bonus: float = EFFICIENCY_BONUS,
        efficiency_ratio: float = EFFICIENCY_RATIO,
        innovation_bonus: float = INNOVATION_BONUS,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not 0.0 < survival_ratio <= 1.0:
            raise ValueError(f"survival_ratio must be in (0.0, 1.0], got {survival_ratio}")
        if mutation_range[0] > mutation_range[1]:
            raise ValueError(f"invalid mutation_range {mutation_range}")
        if plateau_window < 2:
            raise ValueError(f"plateau_window must be >= 2, got {plateau_window}")

        self.evolution_interval = evolution_interval
        self.plateau_variance = plateau_variance
        self.survival_ratio = survival_ratio
        self.mutation_rate = mutation_rate
        self.mutation_range = mutation_range
        self.crossover_parents = crossover_parents
        self.success_delta = success_delta
        self.failure_delta = failure_delta
        self.efficiency_bonus = efficiency_bonus
        self.efficiency_ratio = efficiency_ratio
        self.innovation_bonus = innovation_bonus
        self._rng = rng if rng is not None else random.Random()
        self._clock = clock

        self.generation = 0
        self.fitness_score = 0.5
        self.executions = 0
        self.evolution_due = False
        self._window: deque[float] = deque(maxlen=plateau_window)
        self._population: dict[str, Strategy] = {}
        self._index: dict[str, Strategy] = {}
        self._lock = threading.Lock()
        self._cycle_lock = threading.Lock()

    # -- fitness ------------------------------------------------------------

    def fitness_delta(self, experience: Experience) -> float:
        delta = self.success_delta if experience.success else self.failure_delta
        expected = experience.expected_duration
        if expected and experience.duration < self.efficiency_ratio * expected:
            delta += self.efficiency_bonus
        if experience.innovative:
            delta += self.innovation_bonus
        return delta

    def record_outcome(self, experience: Experience) -> float:
        """
        Fold one execution into global fitness and, when named, its strategy.

        Returns:
            The fitness delta applied
        """
        delta = self.fitness_delta(experience)
        with self._lock:
            self.fitness_score = _clip(self.fitness_score + delta)
            self.executions += 1
            self._window.append(self.fitness_score)

            strategy = self._population.get(experience.strategy_id or "")
            if strategy is not None:
                strategy.fitness = _clip(strategy.fitness + delta)

            if self.executions % self.evolution_interval == 0 or self._plateaued():
                self.evolution_due = True
        return delta

    def plateaued(self) -> bool:
        with self._lock:
            return self._plateaued()

    def _plateaued(self) -> bool:
        if len(self._window) < (self._window.maxlen or 0):
            return False
        return statistics.pvariance(self._window) < self.plateau_variance

    # -- population ---------------------------------------------------------

    def seed(
        self,
        parameters: Mapping[str, float],
        fitness: float = 0.5,
        source_pattern: str | None = None,
        strategy_id: str | None = None,
    ) -> Strategy:
        """Create a strategy at the current generation and add it."""
        strategy = Strategy(
            id=strategy_id or f"strategy-{uuid.uuid4().hex[:12]}",
            parameters=dict(parameters),
            fitness=fitness,
            generation=self.generation,
            source_pattern=source_pattern,
            created_at=self._clock(),
        )
        return self.add(strategy)

    def add(self, strategy: Strategy) -> Strategy:
        with self._lock:
            if strategy.id in self._population:
                raise ValidationError(f"Duplicate strategy id: {strategy.id}")
            stored = replace(strategy, parameters=dict(strategy.parameters))
            self._population[stored.id] = stored
            self._index[stored.id] = replace(stored, parameters=dict(stored.parameters))
        return replace(stored, parameters=dict(stored.parameters))

    def seed_from_patterns(self, patterns: Iterable[Pattern]) -> list[Strategy]:
        """One strategy per pattern not already represented in the population."""
        with self._lock:
            represented = {s.source_pattern for s in self._population.values()}
        seeded = []
        for pattern in patterns:
            if pattern.id in represented:
                continue
            seeded.append(
                self.seed(
                    {
                        "team_size": float(len(pattern.agent_combo)),
                        "min_success_rate": pattern.success_rate,
                        "confidence": pattern.confidence,
                    },
                    fitness=_clip(pattern.success_rate),
                    source_pattern=pattern.id,
                )
            )
            represented.add(pattern.id)
        return seeded

    def population(self) -> list[Strategy]:
        with self._lock:
            strategies = [replace(s, parameters=dict(s.parameters)) for s in self._population.values()]
        strategies.sort(key=lambda s: (-s.fitness, s.id))
        return strategies

    def get(self, strategy_id: str) -> Strategy | None:
        """Look up a live strategy, falling back to the index of discarded ones."""
        with self._lock:
            strategy = self._population.get(strategy_id) or self._index.get(strategy_id)
            return replace(strategy, parameters=dict(strategy.parameters)) if strategy else None

    def lineage(self, strategy_id: str) -> list[str]:
        """All known ancestor ids, nearest first."""
        ancestors: list[str] = []
        seen = {strategy_id}
        queue = deque([strategy_id])
        with self._lock:
            while queue:
                node_id = queue.popleft()
                node = self._population.get(node_id) or self._index.get(node_id)
                if node is None:
                    continue
                for parent in node.lineage:
                    if parent not in seen:
                        seen.add(parent)
                        ancestors.append(parent)
                        queue.append(parent)
        return ancestors

    def load(
        self,
        strategies: Iterable[Strategy],
        generation: int | None = None,
        fitness_score: float | None = None,
    ) -> int:
        """Replace the population. The generation only ever moves forward."""
        fresh = {s.id: replace(s, parameters=dict(s.parameters)) for s in strategies}
        # Waits for a running cycle so its swap cannot overwrite the loaded population.
        with self._cycle_lock, self._lock:
            self._population = fresh
            for strategy in fresh.values():
                self._index[strategy.id] = replace(strategy, parameters=dict(strategy.parameters))
            if generation is not None:
                self.generation = max(self.generation, generation)
            if fitness_score is not None:
                self.fitness_score = _clip(fitness_score)
        return len(fresh)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "generation": self.generation,
                "fitness_score": self.fitness_score,
                "executions": self.executions,
                "population": len(self._population),
                "evolution_due": self.evolution_due,
            }

    # -- cycle --------------------------------------------------------------

    def evolve(self) -> EvolutionResult | None:
        """
        Run one evolution cycle.

        Returns None (and logs) when the population is empty or another
        cycle is already running.
        """
        if not self._cycle_lock.acquire(blocking=False):
            logger.debug("Evolution cycle already running, skipping")
            return None

        try:
            with self._lock:
                snapshot = [replace(s, parameters=dict(s.parameters)) for s in self._population.values()]
                previous = self.generation

            if not snapshot:
                logger.warning("Evolution skipped: empty population", generation=previous)
                with self._lock:
                    self.evolution_due = False
                    self._window.clear()
                return None

            new_generation = previous + 1
            result = EvolutionResult(
                previous_generation=previous,
                new_generation=new_generation,
                population_before=len(snapshot),
            )

            ranked = sorted(snapshot, key=lambda s: (-s.fitness, s.id))
            keep = math.ceil(round(self.survival_ratio * len(ranked), 9))
            survivors, failed = ranked[:keep], ranked[keep:]
            result.survivors = [s.id for s in survivors]
            result.discarded = [s.id for s in failed]

            low, high = self.mutation_range
            for strategy in survivors:
                if self._rng.random() < self.mutation_rate:
                    strategy.parameters = {
                        k: v * self._rng.uniform(low, high) for k, v in strategy.parameters.items()
                    }
                    strategy.generation = max(strategy.generation, new_generation)
                    result.mutated.append(strategy.id)

            offspring = self._crossover(survivors[: self.crossover_parents])
            result.offspring = [c.id for c in offspring]

            with self._lock:
                live = self._population
                for strategy in survivors:
                    # Outcomes recorded during the cycle still count.
                    current = live.get(strategy.id)
                    if current is not None:
                        strategy.fitness = current.fitness
                taken = {s.id for s in snapshot}
                late = [s for s in live.values() if s.id not in taken]
                result.carried_over = [s.id for s in late]
                self._population = {s.id: s for s in survivors + offspring + late}
                for strategy in survivors + offspring:
                    self._index[strategy.id] = replace(strategy, parameters=dict(strategy.parameters))
                self.generation = new_generation
                self.evolution_due = False
                self._window.clear()

            logger.info(
                "Evolution cycle complete",
                previous_generation=previous,
                new_generation=new_generation,
                survivors=len(result.survivors),
                mutated=len(result.mutated),
                offspring=len(result.offspring),
                discarded=len(result.discarded),
            )
            return result
        finally:
            self._cycle_lock.release()

    def _crossover(self, parents: list[Strategy]) -> list[Strategy]:
        """Pair neighbours in fitness order: (0,1), (1,2), (2,3)."""
        children = []
        now = self._clock()
        for a, b in zip(parents, parents[1:]):
            params: dict[str, float] = {}
            for key in a.parameters.keys() | b.parameters.keys():
                if key in a.parameters and key in b.parameters:
                    params[key] = (a.parameters[key] + b.parameters[key]) / 2
                else:
                    params[key] = a.parameters.get(key, b.parameters.get(key, 0.0))
            children.append(
                Strategy(
                    id=f"strategy-{uuid.uuid4().hex[:12]}",
                    parameters=dict(sorted(params.items())),
                    fitness=self.OFFSPRING_FITNESS,
                    generation=max(a.generation, b.generation) + 1,
                    lineage=(a.id, b.id),
                    created_at=now,
                )
            )
        return children


def _clip(value: float) -> float:
    return min(1.0, max(0.0, value))
