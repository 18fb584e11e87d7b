"""Agent mesh: trust ledger, messaging, protocol dispatch and negotiation."""

from collective.mesh.communication import CommunicationMesh
from collective.mesh.models import Agent, Channel, Message, MessageType, Protocol, TrustEdge
from collective.mesh.negotiation import (
    Decision,
    Negotiation,
    NegotiationCoordinator,
    NegotiationState,
    ScaleTerm,
    TrustWeightedAcceptance,
)
from collective.mesh.protocols import ProtocolRouter
from collective.mesh.transport import RecordingTransport, Transport
from collective.mesh.trust_ledger import TrustLedger

__all__ = [
    "Agent",
    "Channel",
    "CommunicationMesh",
    "Decision",
    "Message",
    "MessageType",
    "Negotiation",
    "NegotiationCoordinator",
    "NegotiationState",
    "Protocol",
    "ProtocolRouter",
    "RecordingTransport",
    "ScaleTerm",
    "Transport",
    "TrustEdge",
    "TrustLedger",
    "TrustWeightedAcceptance",
]
