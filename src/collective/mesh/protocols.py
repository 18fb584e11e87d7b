"""
Protocol Dispatch — handler table for mesh messages.

Messages are a tagged union on (protocol, type). Handlers are looked up in
order of specificity:

1. (protocol, type)
2. (protocol, any type)
3. (any protocol, type)
4. fallback
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

import structlog

from collective.mesh.models import Message, MessageType, Protocol

if TYPE_CHECKING:
    from collective.mesh.communication import CommunicationMesh

logger = structlog.get_logger()

Handler = Callable[[Message], Mapping[str, Any] | None]


class ProtocolRouter:
    """Routes messages to handlers and answers those that require a response."""

    def __init__(self) -> None:
        self._handlers: dict[tuple[Protocol | None, MessageType | None], Handler] = {}

    def register(
        self,
        handler: Handler,
        protocol: Protocol | str | None = None,
        type: MessageType | str | None = None,
    ) -> None:
        key = (
            Protocol(protocol) if protocol is not None else None,
            MessageType(type) if type is not None else None,
        )
        self._handlers[key] = handler

    def resolve(self, message: Message) -> Handler | None:
        for key in (
            (message.protocol, message.type),
            (message.protocol, None),
            (None, message.type),
            (None, None),
        ):
            handler = self._handlers.get(key)
            if handler is not None:
                return handler
        return None

    def dispatch(self, message: Message) -> Mapping[str, Any] | None:
        """Run the matching handler; None when nothing handles the message."""
        handler = self.resolve(message)
        if handler is None:
            logger.debug(
                "No handler for message",
                message_id=message.id,
                protocol=message.protocol,
                type=message.type,
            )
            return None
        return handler(message)

    def process(self, mesh: CommunicationMesh, agent: str) -> list[Message]:
        """
        Drain ``agent``'s mailbox and dispatch each message in order.

        A message that requires a response is answered with a RESPONSE in
        reply to it whenever its handler returns a payload.

        Returns:
            The replies sent
        """
        replies: list[Message] = []
        for message in mesh.receive(agent):
            result = self.dispatch(message)
            if result is None or not message.requires_response:
                continue
            if not mesh.is_registered(message.sender):
                logger.warning("Reply target gone", message_id=message.id, sender=message.sender)
                continue
            replies.append(
                mesh.send(
                    agent,
                    message.sender,
                    MessageType.RESPONSE,
                    result,
                    in_reply_to=message.id,
                    protocol=message.protocol,
                )
            )
        return replies

    @classmethod
    def with_defaults(cls, mesh: CommunicationMesh) -> ProtocolRouter:
        """Router pre-loaded with the capability query handler."""
        router = cls()
        router.register(capability_handler(mesh), Protocol.CAPABILITY, MessageType.QUERY)
        return router


def capability_handler(mesh: CommunicationMesh) -> Handler:
    """Answer capability queries from the recipient's registry entry."""

    def handle(message: Message) -> Mapping[str, Any] | None:
        agent = mesh.get_agent(message.recipient)
        if agent is None:
            return None
        wanted = message.payload.get("capability")
        return {
            "agent_id": agent.agent_id,
            "capabilities": sorted(agent.capabilities),
            "has_capability": wanted in agent.capabilities if wanted else None,
        }

    return handle
