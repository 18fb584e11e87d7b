"""
Versioned state document.

``export_state`` produces one JSON-compatible document holding the generation,
global fitness, the full trust-edge set, the pattern table and the strategy
population. Documents carry ``schema_version``; readers ignore unknown fields
and refuse versions newer than they understand.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from collective.errors import ValidationError
from collective.learning.models import Pattern, Strategy
from collective.mesh.models import TrustEdge

SCHEMA_VERSION = 1


class _Record(BaseModel):
    model_config = ConfigDict(extra="ignore")


class TrustEdgeRecord(_Record):
    source: str = Field(min_length=1)
    target: str = Field(min_length=1)
    score: float = Field(ge=0.0, le=1.0)
    last_updated: float = 0.0
    successes: int = Field(default=0, ge=0)
    failures: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def check_not_self(self) -> TrustEdgeRecord:
        if self.source == self.target:
            raise ValueError(f"self-trust edge for {self.source}")
        return self


class PatternRecord(_Record):
    id: str = Field(min_length=1)
    task_type: str = Field(min_length=1)
    agent_combo: list[str] = Field(min_length=1)
    frequency: int = Field(ge=0)
    success_rate: float = Field(ge=0.0, le=1.0)
    confidence: float = Field(ge=0.0, le=1.0)
    last_reinforced: float = 0.0
    sample_size: int = Field(default=0, ge=0)
    avg_quality: float = Field(default=0.0, ge=0.0, le=1.0)


class StrategyRecord(_Record):
    id: str = Field(min_length=1)
    parameters: dict[str, float] = Field(default_factory=dict)
    fitness: float = Field(ge=0.0, le=1.0)
    generation: int = Field(ge=0)
    lineage: list[str] = Field(default_factory=list)
    source_pattern: str | None = None
    created_at: float = 0.0


class StateDocument(_Record):
    schema_version: int = Field(default=SCHEMA_VERSION, ge=1)
    exported_at: str = ""
    generation: int = Field(default=0, ge=0)
    fitness_score: float = Field(default=0.5, ge=0.0, le=1.0)
    executions: int = Field(default=0, ge=0)
    trust_edges: list[TrustEdgeRecord] = Field(default_factory=list)
    patterns: list[PatternRecord] = Field(default_factory=list)
    strategies: list[StrategyRecord] = Field(default_factory=list)

    @field_validator("schema_version")
    @classmethod
    def check_version(cls, v: int) -> int:
        if v > SCHEMA_VERSION:
            raise ValueError(
                f"schema_version {v} is newer than supported version {SCHEMA_VERSION}"
            )
        return v

    def edges(self) -> list[TrustEdge]:
        return [TrustEdge(**r.model_dump()) for r in self.trust_edges]

    def pattern_models(self) -> list[Pattern]:
        return [
            Pattern(**{**r.model_dump(), "agent_combo": tuple(sorted(r.agent_combo))})
            for r in self.patterns
        ]

    def strategy_models(self) -> list[Strategy]:
        return [
            Strategy(**{**r.model_dump(), "lineage": tuple(r.lineage)}) for r in self.strategies
        ]


@dataclass
class ImportResult:
    trust_edges: int = 0
    patterns_added: int = 0
    patterns_merged: int = 0
    strategies: int = 0
    generation: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "trust_edges": self.trust_edges,
            "patterns_added": self.patterns_added,
            "patterns_merged": self.patterns_merged,
            "strategies": self.strategies,
            "generation": self.generation,
        }


def build_document(
    edges: Iterable[TrustEdge],
    patterns: Iterable[Pattern],
    strategies: Iterable[Strategy],
    generation: int,
    fitness_score: float,
    executions: int = 0,
) -> dict[str, Any]:
    """Assemble and validate a state document; returns plain JSON-compatible data."""
    document = StateDocument(
        schema_version=SCHEMA_VERSION,
        exported_at=datetime.now(timezone.utc).isoformat(),
        generation=generation,
        fitness_score=fitness_score,
        executions=executions,
        trust_edges=[
            TrustEdgeRecord(
                source=e.source,
                target=e.target,
                score=e.score,
                last_updated=e.last_updated,
                successes=e.successes,
                failures=e.failures,
            )
            for e in edges
        ],
        patterns=[PatternRecord(**p.to_dict()) for p in patterns],
        strategies=[StrategyRecord(**s.to_dict()) for s in strategies],
    )
    return document.model_dump(mode="json")


def parse_document(document: Mapping[str, Any]) -> StateDocument:
    """
    Validate an exported document.

    Raises:
        ValidationError: malformed document or unsupported schema_version
    """
    if not isinstance(document, Mapping):
        raise ValidationError("state document must be a mapping")
    try:
        return StateDocument.model_validate(dict(document))
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid state document: {e}") from e
