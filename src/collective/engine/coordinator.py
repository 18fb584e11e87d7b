"""
Coordinator — one object wiring every collective component.

Registries are process-wide state with explicit lifecycle: a fresh
Coordinator starts empty, ``export_state`` snapshots it, ``import_state``
restores a snapshot. Calls spanning components only take the locks local to
each component they touch.
"""

from __future__ import annotations

import asyncio
import itertools
import random
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog

from collective.config import Settings, get_settings
from collective.engine.state import ImportResult, build_document, parse_document
from collective.learning.evolution import EvolutionEngine, EvolutionResult
from collective.learning.experience_store import ExperienceStore
from collective.learning.models import Experience, Pattern
from collective.learning.pattern_recognizer import PatternRecognizer, RecognitionResult
from collective.learning.team_predictor import TeamPrediction, TeamPredictor
from collective.mesh.communication import CommunicationMesh
from collective.mesh.models import Agent, Message, MessageType, Protocol
from collective.mesh.negotiation import (
    Negotiation,
    NegotiationCoordinator,
    ScaleTerm,
    TrustWeightedAcceptance,
)
from collective.mesh.transport import Transport
from collective.mesh.trust_ledger import TrustLedger

logger = structlog.get_logger()


@dataclass
class ExperienceOutcome:
    """Everything one recorded experience changed."""

    experience: Experience
    fitness_delta: float
    trust_updates: dict[tuple[str, str], float] = field(default_factory=dict)
    evolution: EvolutionResult | None = None


@dataclass
class MaintenanceReport:
    decayed_edges: int
    recognition: RecognitionResult


class Coordinator:
    """
    Facade over the trust ledger, mesh, negotiations, experience store,
    pattern recognizer, evolution engine and team predictor.

    Every ``recognition_interval`` recorded experiences trigger a recognition
    pass; when the evolution engine reports a cycle is due and
    ``auto_evolve`` is set, the cycle runs right after the recording call.
    With ``background_learning`` both are left to ``maintain``, so recording
    never waits on a pass.
    """

    def __init__(
        self,
        trust: TrustLedger | None = None,
        mesh: CommunicationMesh | None = None,
        negotiations: NegotiationCoordinator | None = None,
        store: ExperienceStore | None = None,
        recognizer: PatternRecognizer | None = None,
        evolution: EvolutionEngine | None = None,
        predictor: TeamPredictor | None = None,
        auto_evolve: bool = True,
        decay_idle_seconds: float = 0.0,
        background_learning: bool = False,
    ) -> None:
        self.trust = trust if trust is not None else TrustLedger()
        self.mesh = mesh if mesh is not None else CommunicationMesh(self.trust)
        self.negotiations = (
            negotiations if negotiations is not None else NegotiationCoordinator(self.mesh, self.trust)
        )
        self.recognizer = recognizer if recognizer is not None else PatternRecognizer()
        self.store = store if store is not None else ExperienceStore()
        if self.store.on_interval is None and not background_learning:
            self.store.on_interval = self.recognizer.recognize
        self.evolution = evolution if evolution is not None else EvolutionEngine()
        self.predictor = (
            predictor
            if predictor is not None
            else TeamPredictor(self.recognizer, self.trust, self.mesh)
        )
        self.auto_evolve = auto_evolve
        self.decay_idle_seconds = decay_idle_seconds
        self.background_learning = background_learning

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        transport: Transport | None = None,
        rng: random.Random | None = None,
        draw: Callable[[], float] | None = None,
    ) -> Coordinator:
        """Build a coordinator whose every heuristic comes from ``Settings``."""
        s = settings or get_settings()
        trust = TrustLedger(
            learning_rate=s.trust_learning_rate,
            failure_multiplier=s.trust_failure_multiplier,
            decay_rate=s.trust_decay_rate,
        )
        mesh = CommunicationMesh(trust, capacity=s.queue_capacity, transport=transport)
        negotiations = NegotiationCoordinator(
            mesh,
            trust,
            acceptance=TrustWeightedAcceptance(
                base=s.acceptance_base,
                trust_weight=s.acceptance_trust_weight,
                round_weight=s.acceptance_round_weight,
                draw=draw,
            ),
            counter=ScaleTerm(factor=s.negotiation_counter_factor),
            max_rounds=s.negotiation_max_rounds,
        )
        recognizer = PatternRecognizer(
            min_samples=s.pattern_min_samples,
            confidence_threshold=s.pattern_confidence_threshold,
            reinforcement_weight=s.pattern_reinforcement_weight,
            deprecation_frequency=s.pattern_deprecation_frequency,
            deprecation_success_rate=s.pattern_deprecation_success_rate,
        )
        store = ExperienceStore(
            capacity=s.experience_capacity,
            recognition_interval=s.recognition_interval,
        )
        evolution = EvolutionEngine(
            evolution_interval=s.evolution_interval,
            plateau_window=s.plateau_window,
            plateau_variance=s.plateau_variance,
            survival_ratio=s.survival_ratio,
            mutation_rate=s.mutation_rate,
            mutation_range=(s.mutation_low, s.mutation_high),
            crossover_parents=s.crossover_parents,
            success_delta=s.fitness_success_delta,
            failure_delta=s.fitness_failure_delta,
            efficiency_bonus=s.fitness_efficiency_bonus,
            efficiency_ratio=s.fitness_efficiency_ratio,
            innovation_bonus=s.fitness_innovation_bonus,
            rng=rng,
        )
        predictor = TeamPredictor(
            recognizer,
            trust,
            mesh,
            success_threshold=s.prediction_success_threshold,
            max_alternatives=s.prediction_max_alternatives,
        )
        return cls(
            trust=trust,
            mesh=mesh,
            negotiations=negotiations,
            store=store,
            recognizer=recognizer,
            evolution=evolution,
            predictor=predictor,
            decay_idle_seconds=s.trust_decay_idle_seconds,
            background_learning=s.background_learning,
        )

    # -- agents and messaging -----------------------------------------------

    def register_agent(self, agent_id: str, capabilities: Iterable[str] = ()) -> Agent:
        return self.mesh.register(agent_id, capabilities)

    def unregister_agent(self, agent_id: str) -> bool:
        return self.mesh.unregister(agent_id)

    def send_message(
        self,
        sender: str,
        recipient: str,
        type: MessageType | str,
        payload: Mapping[str, Any] | None = None,
        in_reply_to: str | None = None,
        protocol: Protocol | str | None = None,
    ) -> Message:
        return self.mesh.send(sender, recipient, type, payload, in_reply_to, protocol)

    def receive_messages(self, agent_id: str) -> list[Message]:
        return self.mesh.receive(agent_id)

    def broadcast(
        self,
        sender: str,
        payload: Mapping[str, Any] | None = None,
        protocol: Protocol | str | None = None,
    ) -> list[Message]:
        return self.mesh.broadcast(sender, payload, protocol)

    # -- trust ----------------------------------------------------------------

    def get_trust(self, a: str, b: str) -> float:
        return self.trust.get(a, b)

    def update_trust(self, a: str, b: str, success: bool, quality: float = 1.0) -> float:
        return self.trust.update(a, b, success, quality)

    # -- negotiation ----------------------------------------------------------

    def negotiate(
        self,
        initiator: str,
        responder: str,
        proposal: Mapping[str, Any],
        max_rounds: int | None = None,
    ) -> Negotiation:
        return self.negotiations.negotiate(initiator, responder, proposal, max_rounds)

    def abort_negotiation(self, negotiation_id: str) -> Negotiation:
        return self.negotiations.abort(negotiation_id)

    # -- learning -------------------------------------------------------------

    def record_experience(self, experience: Experience) -> ExperienceOutcome:
        """
        Store an experience and fold it into trust and fitness.

        Every ordered pair of distinct participants gets a trust update with
        the experience's success and quality. Validation happens before any
        state changes.
        """
        self.store.record(experience)

        outcome = ExperienceOutcome(
            experience=experience,
            fitness_delta=self.evolution.record_outcome(experience),
        )
        participants = list(dict.fromkeys(experience.participants))
        for a, b in itertools.permutations(participants, 2):
            outcome.trust_updates[(a, b)] = self.trust.update(
                a, b, experience.success, experience.quality
            )

        if self.auto_evolve and not self.background_learning and self.evolution.evolution_due:
            outcome.evolution = self.trigger_evolution()
        return outcome

    def query_patterns(self, task_type: str, min_confidence: float = 0.0) -> list[Pattern]:
        return self.recognizer.find(task_type, min_confidence)

    def trigger_evolution(self) -> EvolutionResult | None:
        """
        Seed strategies from any new patterns, run one cycle, then drop weak
        patterns. Returns None when there was nothing to evolve.
        """
        seeded = self.evolution.seed_from_patterns(self.recognizer.all())
        if seeded:
            logger.debug("Strategies seeded from patterns", count=len(seeded))
        result = self.evolution.evolve()
        deprecated = self.recognizer.deprecate_weak()
        if result is not None:
            result.deprecated_patterns = deprecated
        return result

    def predict_team(self, description: str, max_team_size: int | None = None) -> TeamPrediction:
        return self.predictor.predict(description, max_team_size)

    # -- lifecycle ------------------------------------------------------------

    def export_state(self) -> dict[str, Any]:
        return build_document(
            edges=self.trust.edges(),
            patterns=self.recognizer.all(),
            strategies=self.evolution.population(),
            generation=self.evolution.generation,
            fitness_score=self.evolution.fitness_score,
            executions=self.evolution.executions,
        )

    def import_state(self, document: Mapping[str, Any]) -> ImportResult:
        """
        Restore a snapshot produced by ``export_state``.

        Trust edges and strategies are replaced, patterns are merged and the
        larger generation wins. The whole document is validated first;
        nothing changes if it is rejected.
        """
        parsed = parse_document(document)
        edges = parsed.edges()
        patterns = parsed.pattern_models()
        strategies = parsed.strategy_models()

        result = ImportResult()
        result.trust_edges = self.trust.load(edges)
        result.patterns_added, result.patterns_merged = self.recognizer.load(patterns)
        result.strategies = self.evolution.load(
            strategies, generation=parsed.generation, fitness_score=parsed.fitness_score
        )
        result.generation = self.evolution.generation

        logger.info("State imported", **result.to_dict())
        return result

    def run_maintenance(
        self, decay_rate: float | None = None, idle_seconds: float | None = None
    ) -> MaintenanceReport:
        """Decay trust and run a recognition pass over the current store."""
        decayed = self.trust.decay_all(
            rate=decay_rate,
            idle_seconds=self.decay_idle_seconds if idle_seconds is None else idle_seconds,
        )
        recognition = self.recognizer.recognize(self.store.snapshot())
        return MaintenanceReport(decayed_edges=decayed, recognition=recognition)

    async def maintain(
        self,
        interval: float,
        stop: asyncio.Event | None = None,
        iterations: int | None = None,
    ) -> int:
        """
        Periodic background maintenance until ``stop`` is set.

        Each tick runs in a worker thread so the event loop stays free.
        Returns the number of ticks run.
        """
        stop = stop or asyncio.Event()
        ticks = 0
        while not stop.is_set() and (iterations is None or ticks < iterations):
            await asyncio.to_thread(self.run_maintenance)
            ticks += 1
            if self.evolution.evolution_due:
                await asyncio.to_thread(self.trigger_evolution)
            if iterations is not None and ticks >= iterations:
                break
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        return ticks

    def stats(self) -> dict[str, Any]:
        return {
            "mesh": self.mesh.stats(),
            "trust": self.trust.stats(),
            "experiences": len(self.store),
            "patterns": len(self.recognizer),
            "evolution": self.evolution.stats(),
            "active_negotiations": len(self.negotiations.active()),
        }
