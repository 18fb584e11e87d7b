"""Transport seam: moves messages between isolated agent processes."""

from __future__ import annotations

from typing import Protocol as TypingProtocol, runtime_checkable

from collective.mesh.models import Message


@runtime_checkable
class Transport(TypingProtocol):
    """
    Physical delivery of a routed message.

    The mesh enqueues locally first, then hands the message to the transport.
    Implementations own wire encoding; the mesh only defines routing and trust.
    """

    def deliver(self, message: Message) -> None: ...


class RecordingTransport:
    """Transport that keeps delivered messages in memory, in delivery order."""

    def __init__(self) -> None:
        self.delivered: list[Message] = []

    def deliver(self, message: Message) -> None:
        self.delivered.append(message)
