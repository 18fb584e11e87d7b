"""
Mesh Data Models

Agents, directed trust edges, channels and messages exchanged over the
communication mesh.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from collective.errors import ValidationError


class MessageType(StrEnum):
    """Message kinds carried by the mesh."""

    QUERY = "query"
    RESPONSE = "response"
    NEGOTIATE = "negotiate"
    BROADCAST = "broadcast"

    @property
    def requires_response(self) -> bool:
        return self in (MessageType.QUERY, MessageType.NEGOTIATE)


class Protocol(StrEnum):
    """Sub-protocols a message payload may belong to."""

    TASK = "task"
    REVIEW = "review"
    CAPABILITY = "capability"
    RESOURCE = "resource"


@dataclass(frozen=True)
class Agent:
    """A registered mesh participant."""

    agent_id: str
    capabilities: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        if not self.agent_id:
            raise ValidationError("agent_id must be non-empty")
        object.__setattr__(self, "capabilities", frozenset(self.capabilities))


@dataclass
class TrustEdge:
    """Directed trust from ``source`` toward ``target``."""

    source: str
    target: str
    score: float = 0.5
    last_updated: float = 0.0
    successes: int = 0
    failures: int = 0

    def __post_init__(self) -> None:
        if self.source == self.target:
            raise ValidationError(f"self-trust edge for {self.source} is not allowed")
        if not 0.0 <= self.score <= 1.0:
            raise ValidationError(f"score must be in [0.0, 1.0], got {self.score}")

    @property
    def interactions(self) -> int:
        return self.successes + self.failures


@dataclass
class Channel:
    """Activity record for an unordered agent pair."""

    agents: tuple[str, str]
    created_at: float
    message_count: int = 0
    last_activity: float = 0.0

    @staticmethod
    def key(a: str, b: str) -> tuple[str, str]:
        return (a, b) if a <= b else (b, a)


@dataclass(frozen=True)
class Message:
    """An immutable message routed between two agents."""

    id: str
    sender: str
    recipient: str
    type: MessageType
    payload: Mapping[str, Any]
    timestamp: float
    confidence: float
    requires_response: bool
    in_reply_to: str | None = None
    protocol: Protocol | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sender": self.sender,
            "recipient": self.recipient,
            "type": self.type.value,
            "payload": dict(self.payload),
            "timestamp": self.timestamp,
            "confidence": self.confidence,
            "requires_response": self.requires_response,
            "in_reply_to": self.in_reply_to,
            "protocol": self.protocol.value if self.protocol else None,
        }
