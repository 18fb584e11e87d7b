"""
Negotiation Coordinator — bounded-round proposal exchange over the mesh.

State machine:

    OPEN ──advance──> COUNTERED ──advance──> ... ──> ACCEPTED | REJECTED | EXPIRED
      └──────────────────── abort ─────────────────> REJECTED

Round r is sent by the initiator when r is even and by the responder when r
is odd. The receiving party accepts, rejects or counters. After ``max_rounds``
proposals without agreement the negotiation EXPIRES. Every terminal state
feeds one outcome into the trust ledger for (initiator, responder).
"""

from __future__ import annotations

import random
import threading
import time
import uuid
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol as TypingProtocol

import structlog

from collective.errors import InvalidOperationError, ValidationError
from collective.mesh.communication import CommunicationMesh
from collective.mesh.models import MessageType
from collective.mesh.trust_ledger import TrustLedger

logger = structlog.get_logger()


class NegotiationState(StrEnum):
    OPEN = "open"
    COUNTERED = "countered"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (
            NegotiationState.ACCEPTED,
            NegotiationState.REJECTED,
            NegotiationState.EXPIRED,
        )


class Decision(StrEnum):
    ACCEPT = "accept"
    REJECT = "reject"
    COUNTER = "counter"


@dataclass
class Negotiation:
    """One negotiation and its full proposal history."""

    id: str
    initiator: str
    responder: str
    max_rounds: int
    proposals: list[dict[str, Any]]
    state: NegotiationState = NegotiationState.OPEN
    rounds: int = 0
    message_ids: list[str] = field(default_factory=list)
    outcome: dict[str, Any] | None = None
    final_trust: float | None = None
    created_at: float = 0.0
    closed_at: float | None = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def current_proposal(self) -> dict[str, Any]:
        return self.proposals[-1]

    def sender_for(self, round_index: int) -> tuple[str, str]:
        """(sender, receiver) for the given round."""
        if round_index % 2 == 0:
            return self.initiator, self.responder
        return self.responder, self.initiator

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "initiator": self.initiator,
            "responder": self.responder,
            "state": self.state.value,
            "rounds": self.rounds,
            "max_rounds": self.max_rounds,
            "proposals": [dict(p) for p in self.proposals],
            "outcome": self.outcome,
            "final_trust": self.final_trust,
            "created_at": self.created_at,
            "closed_at": self.closed_at,
        }


class AcceptancePolicy(TypingProtocol):
    def decide(self, negotiation: Negotiation, round_index: int, trust: float) -> Decision: ...


class TrustWeightedAcceptance:
    """
    Default acceptance policy.

    p = base + trust_weight * trust(initiator, responder) + round_weight * round

    The receiver accepts when p exceeds a decision draw in [0, 1), otherwise
    it counters. The draw source is injectable for deterministic runs.
    """

    BASE = 0.3
    TRUST_WEIGHT = 0.4
    ROUND_WEIGHT = 0.1

    def __init__(
        self,
        base: float = BASE,
        trust_weight: float = TRUST_WEIGHT,
        round_weight: float = ROUND_WEIGHT,
        draw: Callable[[], float] | None = None,
    ) -> None:
        self.base = base
        self.trust_weight = trust_weight
        self.round_weight = round_weight
        self._draw = draw if draw is not None else random.Random().random

    def probability(self, trust: float, round_index: int) -> float:
        return self.base + self.trust_weight * trust + self.round_weight * round_index

    def decide(self, negotiation: Negotiation, round_index: int, trust: float) -> Decision:
        if self.probability(trust, round_index) > self._draw():
            return Decision.ACCEPT
        return Decision.COUNTER


CounterPolicy = Callable[[Mapping[str, Any]], dict[str, Any]]


class ScaleTerm:
    """
    Default counter policy: scale a numeric proposal term.

    With ``term=None`` every numeric (non-bool) term is scaled.
    """

    def __init__(self, factor: float = 0.9, term: str | None = "value") -> None:
        self.factor = factor
        self.term = term

    def __call__(self, proposal: Mapping[str, Any]) -> dict[str, Any]:
        counter = dict(proposal)
        for key, value in proposal.items():
            if self.term is not None and key != self.term:
                continue
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                counter[key] = value * self.factor
        return counter


class NegotiationCoordinator:
    """Runs negotiations over a mesh and settles their trust outcomes."""

    MAX_ROUNDS = 5
    ACCEPTED_QUALITY = 0.8
    FAILED_QUALITY = 0.2
    HISTORY_LIMIT = 1000

    def __init__(
        self,
        mesh: CommunicationMesh,
        trust: TrustLedger,
        acceptance: AcceptancePolicy | None = None,
        counter: CounterPolicy | None = None,
        max_rounds: int = MAX_ROUNDS,
        clock: Callable[[], float] = time.time,
        history_limit: int = HISTORY_LIMIT,
    ) -> None:
        if max_rounds <= 0:
            raise ValueError(f"max_rounds must be > 0, got {max_rounds}")
        self.mesh = mesh
        self.trust = trust
        self.acceptance = acceptance if acceptance is not None else TrustWeightedAcceptance()
        self.counter = counter if counter is not None else ScaleTerm()
        self.max_rounds = max_rounds
        self._clock = clock
        self._negotiations: dict[str, Negotiation] = {}
        self._closed: deque[str] = deque()
        self._history_limit = history_limit
        self._lock = threading.Lock()

    def open(
        self,
        initiator: str,
        responder: str,
        proposal: Mapping[str, Any],
        max_rounds: int | None = None,
    ) -> Negotiation:
        """Create a negotiation in OPEN. The round-0 proposal goes out on the first advance."""
        if initiator == responder:
            raise InvalidOperationError(f"Agent {initiator} cannot negotiate with itself")
        if not isinstance(proposal, Mapping):
            raise ValidationError("proposal must be a mapping")
        rounds = self.max_rounds if max_rounds is None else max_rounds
        if rounds <= 0:
            raise ValidationError(f"max_rounds must be > 0, got {rounds}")
        for agent in (initiator, responder):
            self.mesh.require(agent)

        negotiation = Negotiation(
            id=f"neg-{uuid.uuid4().hex[:12]}",
            initiator=initiator,
            responder=responder,
            max_rounds=rounds,
            proposals=[dict(proposal)],
            created_at=self._clock(),
        )
        with self._lock:
            self._negotiations[negotiation.id] = negotiation
        return negotiation

    def advance(self, negotiation_id: str) -> NegotiationState:
        """
        Play one round.

        Raises:
            InvalidOperationError: unknown id or negotiation already terminal
        """
        negotiation = self.get(negotiation_id)
        with negotiation.lock:
            if negotiation.state.is_terminal:
                raise InvalidOperationError(
                    f"Negotiation {negotiation_id} is already {negotiation.state.value}"
                )

            round_index = negotiation.rounds
            sender, receiver = negotiation.sender_for(round_index)
            proposal = negotiation.current_proposal
            message = self.mesh.send(
                sender,
                receiver,
                MessageType.NEGOTIATE,
                {"negotiation_id": negotiation.id, "round": round_index, "proposal": proposal},
                in_reply_to=negotiation.message_ids[-1] if negotiation.message_ids else None,
            )
            negotiation.message_ids.append(message.id)
            negotiation.rounds += 1

            trust = self.trust.get(negotiation.initiator, negotiation.responder)
            decision = self.acceptance.decide(negotiation, round_index, trust)

            if decision is Decision.ACCEPT:
                negotiation.state = NegotiationState.ACCEPTED
                negotiation.outcome = dict(proposal)
            elif decision is Decision.REJECT:
                negotiation.state = NegotiationState.REJECTED
            elif negotiation.rounds >= negotiation.max_rounds:
                negotiation.state = NegotiationState.EXPIRED
            else:
                negotiation.proposals.append(self.counter(proposal))
                negotiation.state = NegotiationState.COUNTERED

            try:
                if decision is not Decision.COUNTER:
                    self._reply(negotiation, receiver, sender, decision, round_index, message.id)
            finally:
                # A reply that cannot be delivered still closes the negotiation.
                if negotiation.state.is_terminal:
                    self._settle(negotiation)
            return negotiation.state

    def negotiate(
        self,
        initiator: str,
        responder: str,
        proposal: Mapping[str, Any],
        max_rounds: int | None = None,
    ) -> Negotiation:
        """Open a negotiation and advance it until it reaches a terminal state."""
        negotiation = self.open(initiator, responder, proposal, max_rounds)
        while not negotiation.state.is_terminal:
            self.advance(negotiation.id)
        return negotiation

    def abort(self, negotiation_id: str) -> Negotiation:
        """Cancel from outside. Messages already enqueued stay enqueued."""
        negotiation = self.get(negotiation_id)
        with negotiation.lock:
            if negotiation.state.is_terminal:
                raise InvalidOperationError(
                    f"Negotiation {negotiation_id} is already {negotiation.state.value}"
                )
            negotiation.state = NegotiationState.REJECTED
            self._settle(negotiation)
        return negotiation

    def get(self, negotiation_id: str) -> Negotiation:
        negotiation = self._negotiations.get(negotiation_id)
        if negotiation is None:
            raise InvalidOperationError(f"Unknown negotiation: {negotiation_id}")
        return negotiation

    def active(self) -> list[Negotiation]:
        return [n for n in list(self._negotiations.values()) if not n.state.is_terminal]

    def _reply(
        self,
        negotiation: Negotiation,
        sender: str,
        recipient: str,
        decision: Decision,
        round_index: int,
        in_reply_to: str,
    ) -> None:
        self.mesh.send(
            sender,
            recipient,
            MessageType.RESPONSE,
            {
                "negotiation_id": negotiation.id,
                "round": round_index,
                "decision": decision.value,
                "proposal": negotiation.current_proposal,
            },
            in_reply_to=in_reply_to,
        )

    def _settle(self, negotiation: Negotiation) -> None:
        # Caller holds negotiation.lock.
        success = negotiation.state is NegotiationState.ACCEPTED
        quality = self.ACCEPTED_QUALITY if success else self.FAILED_QUALITY
        negotiation.final_trust = self.trust.update(
            negotiation.initiator, negotiation.responder, success, quality
        )
        negotiation.closed_at = self._clock()
        logger.info(
            "Negotiation closed",
            negotiation_id=negotiation.id,
            state=negotiation.state.value,
            rounds=negotiation.rounds,
            trust=round(negotiation.final_trust, 4),
        )

        with self._lock:
            self._closed.append(negotiation.id)
            while len(self._closed) > self._history_limit:
                self._negotiations.pop(self._closed.popleft(), None)
