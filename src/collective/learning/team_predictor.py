"""Team prediction from learned patterns and the trust graph."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from collective.errors import ValidationError
from collective.learning.models import Pattern
from collective.learning.pattern_recognizer import PatternRecognizer

if TYPE_CHECKING:
    from collective.mesh.communication import CommunicationMesh
    from collective.mesh.trust_ledger import TrustLedger

logger = structlog.get_logger()

DOMAINS = ("code", "test", "security", "performance", "review", "design")

CAPABILITY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "analysis": ("analyze", "review", "assess"),
    "creation": ("create", "build", "generate"),
    "optimization": ("optimize", "improve", "enhance"),
    "testing": ("test", "verify", "validate"),
}

_TOKEN = re.compile(r"[a-z0-9]+")


@dataclass
class TaskFeatures:
    keywords: list[str]
    complexity: float
    domain: str
    required_capabilities: list[str]


@dataclass
class TeamMember:
    agent_type: str
    agent_id: str | None = None


@dataclass
class TeamOption:
    pattern_id: str
    agent_combo: tuple[str, ...]
    confidence: float
    match_score: float
    success_rate: float
    sample_size: int

    @property
    def score(self) -> float:
        return self.confidence * self.match_score


@dataclass
class TeamPrediction:
    description: str
    features: TaskFeatures
    members: list[TeamMember] = field(default_factory=list)
    confidence: float = 0.0
    pattern_id: str | None = None
    justification: list[str] = field(default_factory=list)
    alternatives: list[TeamOption] = field(default_factory=list)
    truncated: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "domain": self.features.domain,
            "complexity": self.features.complexity,
            "required_capabilities": list(self.features.required_capabilities),
            "members": [{"agent_type": m.agent_type, "agent_id": m.agent_id} for m in self.members],
            "confidence": self.confidence,
            "pattern_id": self.pattern_id,
            "justification": list(self.justification),
            "alternatives": [
                {
                    "pattern_id": o.pattern_id,
                    "agent_combo": list(o.agent_combo),
                    "confidence": o.confidence,
                    "match_score": o.match_score,
                    "success_rate": o.success_rate,
                    "sample_size": o.sample_size,
                }
                for o in self.alternatives
            ],
            "truncated": self.truncated,
        }


def extract_features(description: str) -> TaskFeatures:
    """Coarse features of a free-text task description."""
    text = description.lower()
    domain = next((d for d in DOMAINS if d in text), "general")
    capabilities = [
        name for name, words in CAPABILITY_KEYWORDS.items() if any(w in text for w in words)
    ]
    return TaskFeatures(
        keywords=_TOKEN.findall(text),
        complexity=min(1.0, len(description) / 500),
        domain=domain,
        required_capabilities=capabilities,
    )


class TeamPredictor:
    """
    Recommends an agent team for a task description.

    The primary recommendation is the highest-confidence pattern for the
    task's domain with success_rate above ``success_threshold``. Without one,
    up to ``max_alternatives`` partially matching patterns are ranked by
    confidence x match score.
    """

    SUCCESS_THRESHOLD = 0.7
    MAX_ALTERNATIVES = 3

    def __init__(
        self,
        recognizer: PatternRecognizer,
        trust: TrustLedger | None = None,
        mesh: CommunicationMesh | None = None,
        success_threshold: float = SUCCESS_THRESHOLD,
        max_alternatives: int = MAX_ALTERNATIVES,
    ) -> None:
        self.recognizer = recognizer
        self.trust = trust
        self.mesh = mesh
        self.success_threshold = success_threshold
        self.max_alternatives = max_alternatives

    def predict(self, description: str, max_team_size: int | None = None) -> TeamPrediction:
        if not isinstance(description, str) or not description.strip():
            raise ValidationError("task description must be a non-empty string")
        if max_team_size is not None and max_team_size <= 0:
            raise ValidationError(f"max_team_size must be > 0, got {max_team_size}")

        features = extract_features(description)
        prediction = TeamPrediction(description=description, features=features)
        patterns = self.recognizer.all()

        primary = self._primary(patterns, features.domain)
        if primary is not None:
            prediction.pattern_id = primary.id
            prediction.confidence = primary.confidence
            prediction.members = self._staff(primary.agent_combo)
            prediction.justification.append(
                f"Pattern {primary.id} succeeded at {primary.success_rate:.0%} "
                f"across {primary.sample_size} observations (frequency {primary.frequency})"
            )
        else:
            prediction.alternatives = self._alternatives(patterns, features)
            if prediction.alternatives:
                best = prediction.alternatives[0]
                prediction.confidence = best.score
                prediction.justification.append(
                    f"No {features.domain} pattern above {self.success_threshold:.0%} success; "
                    f"best partial match is {best.pattern_id} "
                    f"({best.sample_size} observations)"
                )
            else:
                prediction.justification.append(
                    f"No learned pattern matches domain {features.domain}"
                )

        if max_team_size is not None and len(prediction.members) > max_team_size:
            prediction.justification.append(
                f"Team truncated from {len(prediction.members)} to {max_team_size} members"
            )
            prediction.members = prediction.members[:max_team_size]
            prediction.truncated = True

        logger.debug(
            "Team predicted",
            domain=features.domain,
            pattern_id=prediction.pattern_id,
            alternatives=len(prediction.alternatives),
        )
        return prediction

    def _primary(self, patterns: list[Pattern], domain: str) -> Pattern | None:
        eligible = [
            p
            for p in patterns
            if _matches_domain(p.task_type, domain) and p.success_rate > self.success_threshold
        ]
        if not eligible:
            return None
        return max(eligible, key=lambda p: (p.confidence, p.success_rate, p.frequency))

    def _alternatives(self, patterns: list[Pattern], features: TaskFeatures) -> list[TeamOption]:
        options = []
        keywords = set(features.keywords)
        for pattern in patterns:
            if _matches_domain(pattern.task_type, features.domain):
                match = 1.0
            else:
                tokens = _task_tokens(pattern.task_type)
                match = len(tokens & keywords) / len(tokens) if tokens else 0.0
            if match <= 0.0:
                continue
            options.append(
                TeamOption(
                    pattern_id=pattern.id,
                    agent_combo=tuple(pattern.agent_combo),
                    confidence=pattern.confidence,
                    match_score=match,
                    success_rate=pattern.success_rate,
                    sample_size=pattern.sample_size,
                )
            )
        options.sort(key=lambda o: (-o.score, -o.success_rate, o.pattern_id))
        return options[: self.max_alternatives]

    def _staff(self, agent_combo: tuple[str, ...]) -> list[TeamMember]:
        """Resolve agent types to registered agents, favouring trust toward those already picked."""
        members: list[TeamMember] = []
        chosen: list[str] = []
        registry = self.mesh.agents() if self.mesh is not None else []

        for agent_type in agent_combo:
            candidates = [
                a.agent_id
                for a in registry
                if agent_type in a.capabilities and a.agent_id not in chosen
            ]
            if not candidates:
                members.append(TeamMember(agent_type=agent_type))
                continue
            pick = max(candidates, key=lambda c: self._affinity(chosen, c))
            chosen.append(pick)
            members.append(TeamMember(agent_type=agent_type, agent_id=pick))
        return members

    def _affinity(self, chosen: list[str], candidate: str) -> float:
        if self.trust is None or not chosen:
            return 0.5
        return sum(self.trust.get(c, candidate) for c in chosen) / len(chosen)


def _task_tokens(task_type: str) -> set[str]:
    return set(_TOKEN.findall(task_type.lower()))


def _matches_domain(task_type: str, domain: str) -> bool:
    return task_type == domain or domain in _task_tokens(task_type)
