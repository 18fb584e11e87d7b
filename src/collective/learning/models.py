"""Learning data models: experiences, patterns and strategies."""

from __future__ import annotations

import math
import time
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from collective.errors import ValidationError


def combo_key(agent_set: Iterable[str]) -> str:
    """Canonical key for an agent combination: sorted members joined by '+'."""
    return "+".join(sorted(agent_set))


@dataclass(frozen=True)
class Experience:
    """
    One completed task outcome. Immutable once created.

    ``agent_set`` holds agent *types* (capabilities) that took part;
    ``participants`` optionally names the concrete agent ids.
    """

    id: str
    timestamp: float
    task_type: str
    agent_set: frozenset[str]
    success: bool
    quality: float
    duration: float = 0.0
    complexity: float = 0.5
    participants: tuple[str, ...] = ()
    expected_duration: float | None = None
    innovative: bool = False
    strategy_id: str | None = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ValidationError("experience id must be non-empty")
        if not isinstance(self.task_type, str) or not self.task_type.strip():
            raise ValidationError("task_type must be a non-empty string")
        if isinstance(self.agent_set, str) or not isinstance(self.agent_set, Iterable):
            raise ValidationError("agent_set must be a collection of agent types")
        agents = frozenset(self.agent_set)
        if not agents or not all(isinstance(a, str) and a for a in agents):
            raise ValidationError("agent_set must contain at least one non-empty agent type")
        if not isinstance(self.success, bool):
            raise ValidationError(f"success must be a bool, got {self.success!r}")
        if not _is_number(self.quality) or not 0.0 <= self.quality <= 1.0:
            raise ValidationError(f"quality must be in [0.0, 1.0], got {self.quality!r}")
        if not _is_number(self.duration) or self.duration < 0.0:
            raise ValidationError(f"duration must be >= 0.0, got {self.duration!r}")
        if not _is_number(self.complexity):
            raise ValidationError(f"complexity must be a number, got {self.complexity!r}")
        if self.expected_duration is not None and (
            not _is_number(self.expected_duration) or self.expected_duration <= 0.0
        ):
            raise ValidationError(f"expected_duration must be > 0, got {self.expected_duration!r}")
        object.__setattr__(self, "agent_set", agents)
        object.__setattr__(self, "participants", tuple(self.participants))

    @classmethod
    def create(
        cls,
        task_type: str,
        agent_set: Iterable[str],
        success: bool,
        quality: float,
        duration: float = 0.0,
        complexity: float = 0.5,
        *,
        timestamp: float | None = None,
        **extra: Any,
    ) -> Experience:
        """Build an experience with a fresh id and the current time."""
        return cls(
            id=f"exp-{uuid.uuid4().hex[:12]}",
            timestamp=time.time() if timestamp is None else timestamp,
            task_type=task_type,
            agent_set=agent_set,  # type: ignore[arg-type]
            success=success,
            quality=quality,
            duration=duration,
            complexity=complexity,
            **extra,
        )

    @property
    def combo(self) -> str:
        return combo_key(self.agent_set)


@dataclass
class Pattern:
    """A recurring successful agent combination for a task type."""

    id: str
    task_type: str
    agent_combo: tuple[str, ...]
    frequency: int
    success_rate: float
    confidence: float
    last_reinforced: float
    sample_size: int = 0
    avg_quality: float = 0.0

    @staticmethod
    def make_id(task_type: str, agent_combo: Iterable[str]) -> str:
        return f"pattern-{task_type}-{combo_key(agent_combo)}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "task_type": self.task_type,
            "agent_combo": list(self.agent_combo),
            "frequency": self.frequency,
            "success_rate": self.success_rate,
            "confidence": self.confidence,
            "last_reinforced": self.last_reinforced,
            "sample_size": self.sample_size,
            "avg_quality": self.avg_quality,
        }


@dataclass
class Strategy:
    """
    An evolvable parameter set.

    ``lineage`` holds parent ids only; ancestors are looked up through the
    evolution engine's index rather than referenced directly.
    """

    id: str
    parameters: dict[str, float]
    fitness: float = 0.5
    generation: int = 0
    lineage: tuple[str, ...] = ()
    source_pattern: str | None = None
    created_at: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        for key, value in self.parameters.items():
            if not _is_number(value):
                raise ValidationError(f"parameter {key!r} must be numeric, got {value!r}")
        if not 0.0 <= self.fitness <= 1.0:
            raise ValidationError(f"fitness must be in [0.0, 1.0], got {self.fitness}")
        if self.generation < 0:
            raise ValidationError(f"generation must be >= 0, got {self.generation}")
        self.lineage = tuple(self.lineage)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "parameters": dict(self.parameters),
            "fitness": self.fitness,
            "generation": self.generation,
            "lineage": list(self.lineage),
            "source_pattern": self.source_pattern,
            "created_at": self.created_at,
        }


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )
